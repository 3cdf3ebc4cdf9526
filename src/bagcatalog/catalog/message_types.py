"""Global, content-addressed catalog of message types.

A message type is identified by ``(name, md5sum)``. The catalog hands out
exactly one ``MessageType`` object per identity for the life of the
process, and one ``message_types`` row per identity for the life of the
database. Two schemas that share a name but not a hash are unrelated
entries.
"""

import sqlite3
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.catalog.locks import KeyedLock

__all__ = ['MessageType', 'MessageTypeCatalog']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageType:
    """Immutable message schema reference. Equality is ``(name, md5sum)``."""
    name: str
    md5sum: str
    definition: str = field(default="", compare=False, repr=False)
    id: Optional[int] = field(default=None, compare=False)


class MessageTypeCatalog:
    """Get-or-create access to the ``message_types`` table.

    Concurrent callers asking for the same identity are serialized by a
    per-identity lock; callers asking for different identities proceed in
    parallel. The UNIQUE constraint on ``(name, md5sum)`` covers other
    processes writing to the same database file.
    """

    def __init__(self, db: CatalogDatabase):
        self.db = db
        self._locks = KeyedLock()
        self._cache: dict[tuple[str, str], MessageType] = {}
        self._cache_lock = threading.Lock()

    def get_or_create(self, name: str, md5sum: str, definition: str = "") -> MessageType:
        """Return the shared MessageType for ``(name, md5sum)``, inserting it if new."""
        key = (name, md5sum)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        with self._locks.hold(key):
            with self._cache_lock:
                cached = self._cache.get(key)
            if cached is not None:
                return cached

            row = self._select(name, md5sum)
            if row is None:
                try:
                    with self.db.transaction() as conn:
                        conn.execute(
                            "INSERT INTO message_types (name, md5sum, definition) VALUES (?, ?, ?)",
                            (name, md5sum, definition),
                        )
                    logger.debug("New message type: %s [%s]", name, md5sum)
                except sqlite3.IntegrityError:
                    # Another process inserted it between our select and insert
                    pass
                row = self._select(name, md5sum)

            message_type = MessageType(name, md5sum, row["definition"] or "", row["id"])
            with self._cache_lock:
                self._cache[key] = message_type
            return message_type

    def _select(self, name: str, md5sum: str) -> Optional[dict]:
        return self.db.query_one(
            "SELECT id, definition FROM message_types WHERE name = ? AND md5sum = ?",
            (name, md5sum),
        )

    def get(self, name: str, md5sum: str) -> Optional[MessageType]:
        """Look up an identity without creating it."""
        with self._cache_lock:
            cached = self._cache.get((name, md5sum))
        if cached is not None:
            return cached
        row = self._select(name, md5sum)
        if row is None:
            return None
        return self.get_or_create(name, md5sum, row["definition"] or "")

    def by_id(self, type_id: int) -> Optional[MessageType]:
        row = self.db.query_one(
            "SELECT name, md5sum, definition FROM message_types WHERE id = ?", (type_id,))
        if row is None:
            return None
        return self.get_or_create(row["name"], row["md5sum"], row["definition"] or "")

    def usage_count(self, message_type: MessageType) -> int:
        """Number of cataloged bags referencing ``message_type``."""
        row = self.db.query_one(
            "SELECT COUNT(*) AS n FROM bag_message_types WHERE message_type_id = ?",
            (message_type.id,),
        )
        return row["n"]

    def list_types(self) -> list[MessageType]:
        rows = self.db.query("SELECT name, md5sum, definition FROM message_types ORDER BY name, md5sum")
        return [self.get_or_create(r["name"], r["md5sum"], r["definition"] or "") for r in rows]

    def prune_unused(self) -> int:
        """Delete message types no bag references any more.

        Returns
        -------
        int
            Number of rows deleted.
        """
        with self.db.transaction() as conn:
            unused = [
                (row["name"], row["md5sum"])
                for row in conn.execute("""
                    SELECT name, md5sum FROM message_types
                    WHERE id NOT IN (SELECT message_type_id FROM bag_message_types)
                      AND id NOT IN (SELECT message_type_id FROM topics)
                """).fetchall()
            ]
            conn.execute("""
                DELETE FROM message_types
                WHERE id NOT IN (SELECT message_type_id FROM bag_message_types)
                  AND id NOT IN (SELECT message_type_id FROM topics)
            """)

        with self._cache_lock:
            for key in unused:
                self._cache.pop(key, None)

        if unused:
            logger.info("Pruned %d unused message type(s)", len(unused))
        return len(unused)
