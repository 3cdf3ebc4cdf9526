"""Bag metadata persistence.

Stores one row per bag plus the rows it owns outright (topics, positions,
message type links). Message types themselves are global and owned by
``MessageTypeCatalog``; deleting a bag only removes its links to them.

**Database Schema:** see ``bagcatalog.catalog.database.SCHEMA``.

The bag's representative coordinate is kept as one WKT point. Latitude
and longitude are derived from it on read (``latitude_deg``,
``longitude_deg``) and never stored separately.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

from bagcatalog.bag.gps import BagPosition, Coordinate, latitude_deg, longitude_deg
from bagcatalog.bag.metadata import BagMetadata, Topic
from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.catalog.message_types import MessageTypeCatalog

__all__ = ['BagCatalog']

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BagCatalog:
    """Read/write access to cataloged bags.

    Thread-safe: every method goes through the shared database lock.

    Parameters
    ----------
    db : CatalogDatabase
        Shared catalog database.
    message_types : MessageTypeCatalog
        Resolves message types that were created outside the catalog.

    Examples
    --------
    >>> catalog = BagCatalog(db, MessageTypeCatalog(db))
    >>> bag_id = catalog.persist(metadata)
    >>> catalog.get_bag(bag_id).topics
    """

    def __init__(self, db: CatalogDatabase, message_types: MessageTypeCatalog):
        self.db = db
        self.message_types = message_types

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def persist(self, meta: BagMetadata) -> int:
        """Insert a bag and everything it owns in one transaction.

        The checksum reservation is committed to the new bag id in the
        same transaction.

        Parameters
        ----------
        meta : BagMetadata
            Fully assembled metadata, checksum included.

        Returns
        -------
        int
            The new bag id.

        Raises
        ------
        sqlite3.IntegrityError
            If the checksum is already cataloged.
        """
        # Resolved again here: a prune may have run since extraction
        type_ids = {}
        for message_type in meta.message_types:
            stored = self.message_types.get_or_create(
                message_type.name, message_type.md5sum, message_type.definition)
            type_ids[(message_type.name, message_type.md5sum)] = stored.id

        now = datetime.now(timezone.utc).isoformat()
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO bags (
                    filename, path, version, duration, start_time, end_time, size,
                    message_count, indexed, compressed, checksum, storage_id, coordinate,
                    has_path, missing, degraded, extraction_notes, created_on, updated_on
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                meta.filename,
                meta.path,
                meta.version,
                meta.duration,
                _iso(meta.start_time),
                _iso(meta.end_time),
                meta.size,
                meta.message_count,
                int(meta.indexed),
                int(meta.compressed),
                meta.checksum,
                meta.storage_id,
                meta.coordinate.to_wkt() if meta.coordinate else None,
                int(meta.has_path),
                int(meta.missing),
                int(meta.degraded),
                json.dumps(meta.notes) if meta.notes else None,
                now,
                now,
            ))
            bag_id = cursor.lastrowid

            conn.executemany(
                "INSERT INTO bag_message_types (bag_id, message_type_id) VALUES (?, ?)",
                [(bag_id, type_id) for type_id in sorted(set(type_ids.values()))],
            )
            conn.executemany(
                "INSERT INTO topics (bag_id, name, conn_id, message_type_id, message_count) VALUES (?, ?, ?, ?, ?)",
                [
                    (bag_id, t.name, t.conn_id,
                     type_ids[(t.message_type.name, t.message_type.md5sum)], t.message_count)
                    for t in meta.topics
                ],
            )
            conn.executemany(
                "INSERT INTO bag_positions (bag_id, seq, timestamp_ns, latitude, longitude, altitude) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (bag_id, seq, p.timestamp, p.latitude, p.longitude, p.altitude)
                    for seq, p in enumerate(meta.positions)
                ],
            )
            if meta.checksum is not None:
                # Reservation commits in the same transaction as the bag row
                conn.execute(
                    "INSERT INTO checksum_reservations (checksum, state, bag_id, reserved_at) "
                    "VALUES (?, 'committed', ?, ?) "
                    "ON CONFLICT(checksum) DO UPDATE SET state = 'committed', bag_id = excluded.bag_id",
                    (meta.checksum, bag_id, now),
                )

        logger.info("Cataloged bag %d: %s (%d topics, %d positions%s)", bag_id, meta.filename,
                    len(meta.topics), len(meta.positions), ", degraded" if meta.degraded else "")
        return bag_id

    def mark_missing(self, bag_id: int, missing: bool = True) -> bool:
        """Set the missing flag. Returns False if the bag does not exist."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE bags SET missing = ?, updated_on = ? WHERE id = ?",
                (int(missing), datetime.now(timezone.utc).isoformat(), bag_id),
            )
        return cursor.rowcount == 1

    def delete_bag(self, bag_id: int) -> bool:
        """Delete a bag, its topics, positions and type links, and its checksum.

        Message types stay in the global catalog; use
        ``MessageTypeCatalog.prune_unused`` to drop orphans.
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT checksum FROM bags WHERE id = ?", (bag_id,)).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM bags WHERE id = ?", (bag_id,))
            conn.execute("DELETE FROM checksum_reservations WHERE checksum = ?", (row["checksum"],))
        logger.info("Deleted bag %d", bag_id)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_bag(self, bag_id: int) -> Optional[BagMetadata]:
        """Load a bag with its topics, message types and positions."""
        row = self.db.query_one("SELECT * FROM bags WHERE id = ?", (bag_id,))
        if row is None:
            return None

        topics = []
        message_types = set()
        for t in self.db.query(
                "SELECT name, conn_id, message_type_id, message_count FROM topics WHERE bag_id = ? ORDER BY conn_id",
                (bag_id,)):
            message_type = self.message_types.by_id(t["message_type_id"])
            topics.append(Topic(t["name"], message_type, t["message_count"], t["conn_id"]))
        for link in self.db.query(
                "SELECT message_type_id FROM bag_message_types WHERE bag_id = ?", (bag_id,)):
            message_types.add(self.message_types.by_id(link["message_type_id"]))

        positions = [
            BagPosition(p["timestamp_ns"], p["latitude"], p["longitude"], p["altitude"])
            for p in self.db.query(
                "SELECT timestamp_ns, latitude, longitude, altitude FROM bag_positions "
                "WHERE bag_id = ? ORDER BY seq", (bag_id,))
        ]

        return BagMetadata(
            filename=row["filename"],
            path=row["path"],
            version=row["version"],
            size=row["size"],
            message_count=row["message_count"],
            indexed=bool(row["indexed"]),
            compressed=bool(row["compressed"]),
            start_time=_from_iso(row["start_time"]),
            end_time=_from_iso(row["end_time"]),
            duration=row["duration"],
            topics=topics,
            message_types=message_types,
            positions=positions,
            coordinate=Coordinate.from_wkt(row["coordinate"]) if row["coordinate"] else None,
            checksum=row["checksum"],
            storage_id=row["storage_id"],
            degraded=bool(row["degraded"]),
            notes=json.loads(row["extraction_notes"]) if row["extraction_notes"] else [],
            missing=bool(row["missing"]),
            bag_id=row["id"],
        )

    def find_by_checksum(self, checksum: str) -> Optional[int]:
        row = self.db.query_one("SELECT id FROM bags WHERE checksum = ?", (checksum,))
        return row["id"] if row else None

    def find_by_storage_id(self, storage_id: str) -> Optional[int]:
        row = self.db.query_one("SELECT id FROM bags WHERE storage_id = ?", (storage_id,))
        return row["id"] if row else None

    def list_storage_ids(self) -> list[dict]:
        """``{id, storage_id, missing}`` for every cataloged bag with a storage id."""
        return self.db.query(
            "SELECT id, storage_id, missing FROM bags WHERE storage_id IS NOT NULL ORDER BY id")

    def get_statistics(self) -> dict:
        """Summary counts across the catalog.

        Returns
        -------
        dict
            ``total``, ``missing``, ``degraded``, ``indexed``, ``with_path``,
            ``total_messages``, ``total_bytes``, ``message_types``.
        """
        row = self.db.query_one("""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(missing), 0) AS missing,
                COALESCE(SUM(degraded), 0) AS degraded,
                COALESCE(SUM(indexed), 0) AS indexed,
                COALESCE(SUM(has_path), 0) AS with_path,
                COALESCE(SUM(message_count), 0) AS total_messages,
                COALESCE(SUM(size), 0) AS total_bytes
            FROM bags
        """)
        row["message_types"] = self.db.query_one("SELECT COUNT(*) AS n FROM message_types")["n"]
        return row

    def get_results(self) -> pd.DataFrame:
        """All cataloged bags as a DataFrame, one row per bag.

        ``latitude_deg`` and ``longitude_deg`` are computed from the stored
        coordinate.
        """
        with self.db.lock:
            df = pd.read_sql("SELECT * FROM bags ORDER BY id", self.db.connection)
        if df.empty:
            return df
        df["latitude_deg"] = df["coordinate"].map(latitude_deg, na_action="ignore")
        df["longitude_deg"] = df["coordinate"].map(longitude_deg, na_action="ignore")
        for col in ("start_time", "end_time", "created_on", "updated_on"):
            df[col] = pd.to_datetime(df[col], utc=True, errors="coerce")
        return df

    def save_results(self, filepath: Path | str, compression: str = "snappy") -> int:
        """Export the bag table to Parquet.

        Returns
        -------
        int
            Number of rows written (0 writes nothing).
        """
        df = self.get_results()
        if df.empty:
            logger.warning("No results to export")
            return 0

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        df.to_parquet(filepath, engine="pyarrow",
                      compression=None if compression == "none" else compression,
                      index=False)
        logger.info("Exported %d rows to: %s", len(df), filepath)
        return len(df)
