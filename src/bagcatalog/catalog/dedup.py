"""Checksum-based deduplication gate.

Every bag is keyed by a digest of its raw bytes. Before a worker parses a
file it reserves that checksum; the reservation either succeeds (this
worker owns the file) or reports the bag already cataloged (or being
cataloged) under that checksum. The reservation is then finalized with
the new bag id, or released so a later attempt can retry.

Reservation states (``checksum_reservations.state``):

- ``reserved``: a worker is ingesting this content right now
- ``committed``: a catalog entry exists (``bag_id``)
"""

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.catalog.locks import KeyedLock
from bagcatalog.errors import IngestionCancelled

__all__ = ['Reserved', 'AlreadyExists', 'DeduplicationGate', 'compute_checksum']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reserved:
    checksum: str


@dataclass(frozen=True)
class AlreadyExists:
    """The checksum is taken. ``existing_id`` is None while the owner is still ingesting."""
    checksum: str
    existing_id: Optional[int]


def compute_checksum(reader, algorithm: str = "md5", block_size: int = 1 << 20,
                     cancel_event=None) -> str:
    """Digest every byte of a file.

    The digest is over the raw bytes, so damaged bags still get a stable
    checksum.

    Parameters
    ----------
    reader : BinaryReader
        Rewound to the start and read to the end; not closed. Storage
        stalls raise ``IngestionTimeout`` through the reader.
    algorithm : str
        Any ``hashlib`` algorithm name.
    block_size : int
        Bytes per read.
    cancel_event : threading.Event, optional
        Checked between blocks.
    """
    digest = hashlib.new(algorithm)
    reader.seek(0)
    while reader.remaining() > 0:
        if cancel_event is not None and cancel_event.is_set():
            raise IngestionCancelled("Checksum computation cancelled")
        digest.update(reader.read_exact(min(block_size, reader.remaining())))
    return digest.hexdigest()


class DeduplicationGate:
    """At-most-one catalog entry per checksum.

    Within one process a per-checksum lock makes check-then-insert atomic;
    across processes the primary key on ``checksum_reservations`` does.

    Parameters
    ----------
    db : CatalogDatabase
        Shared catalog database.
    clock : callable, optional
        Returns the current UTC datetime (for testing).
    """

    def __init__(self, db: CatalogDatabase, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._locks = KeyedLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def reserve(self, checksum: str) -> Union[Reserved, AlreadyExists]:
        """Claim ``checksum`` for one ingestion.

        Returns
        -------
        Reserved
            The caller now owns this content and must commit it
            (``BagCatalog.persist`` or ``finalize``) or ``release`` it.
        AlreadyExists
            Another bag holds the checksum, either through a reservation or
            a catalog entry. Not an error.
        """
        with self._locks.hold(checksum):
            row = self._lookup(checksum)
            if row is not None:
                logger.debug("Checksum %s already %s", checksum, row["state"])
                return AlreadyExists(checksum, row["bag_id"])

            cataloged = self.db.query_one("SELECT id FROM bags WHERE checksum = ?", (checksum,))
            if cataloged is not None:
                # Bag row without a reservation row: restore the committed entry
                with self.db.transaction() as conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO checksum_reservations (checksum, state, bag_id, reserved_at) "
                        "VALUES (?, 'committed', ?, ?)",
                        (checksum, cataloged["id"], self._clock().isoformat()),
                    )
                logger.warning("Checksum %s cataloged as bag %d without a reservation; restored",
                               checksum, cataloged["id"])
                return AlreadyExists(checksum, cataloged["id"])

            try:
                with self.db.transaction() as conn:
                    conn.execute(
                        "INSERT INTO checksum_reservations (checksum, state, reserved_at) VALUES (?, 'reserved', ?)",
                        (checksum, self._clock().isoformat()),
                    )
            except sqlite3.IntegrityError:
                # Lost the race to another process sharing the database
                row = self._lookup(checksum)
                return AlreadyExists(checksum, row["bag_id"] if row else None)

            logger.debug("Reserved checksum %s", checksum)
            return Reserved(checksum)

    def _lookup(self, checksum: str) -> Optional[dict]:
        return self.db.query_one(
            "SELECT state, bag_id FROM checksum_reservations WHERE checksum = ?", (checksum,))

    def finalize(self, checksum: str, bag_id: int):
        """Mark the reservation committed to ``bag_id``."""
        with self._locks.hold(checksum):
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    "UPDATE checksum_reservations SET state = 'committed', bag_id = ? "
                    "WHERE checksum = ? AND state = 'reserved'",
                    (bag_id, checksum),
                )
                if cursor.rowcount != 1:
                    raise KeyError(f"No open reservation for checksum {checksum}")
        logger.debug("Finalized checksum %s -> bag %d", checksum, bag_id)

    def release(self, checksum: str) -> bool:
        """Drop an open reservation so the content can be ingested again.

        Returns
        -------
        bool
            False if there was no open reservation (already committed or
            never reserved).
        """
        with self._locks.hold(checksum):
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM checksum_reservations WHERE checksum = ? AND state = 'reserved'",
                    (checksum,),
                )
        released = cursor.rowcount == 1
        if released:
            logger.debug("Released checksum %s", checksum)
        return released

    def forget(self, checksum: str):
        """Remove the reservation of a bag deleted from the catalog."""
        with self._locks.hold(checksum):
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM checksum_reservations WHERE checksum = ?", (checksum,))

    def reset_stale(self, max_age_sec: int) -> int:
        """Release reservations older than ``max_age_sec`` (left by a crashed worker).

        Returns
        -------
        int
            Number of reservations released.
        """
        cutoff = (self._clock() - timedelta(seconds=max_age_sec)).isoformat()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM checksum_reservations WHERE state = 'reserved' AND reserved_at < ?",
                (cutoff,),
            )
        if cursor.rowcount:
            logger.info("Released %d stale reservation(s)", cursor.rowcount)
        return cursor.rowcount

    def get_statistics(self) -> dict:
        """Counts of reservations by state."""
        row = self.db.query_one("""
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN state = 'reserved' THEN 1 ELSE 0 END), 0) AS reserved,
                COALESCE(SUM(CASE WHEN state = 'committed' THEN 1 ELSE 0 END), 0) AS committed
            FROM checksum_reservations
        """)
        return row or {}
