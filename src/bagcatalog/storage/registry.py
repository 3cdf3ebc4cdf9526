"""Storage identifier assignment.

A bag's storage id names the logical file (backend + key), not its
content: the same file keeps the same id across re-scans, even if its
bytes change.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Optional

from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.storage.backends import FileRef

__all__ = ['StorageRegistry']

logger = logging.getLogger(__name__)


class StorageRegistry:
    """Maps ``(backend_id, key)`` to a stable storage id.

    Parameters
    ----------
    db : CatalogDatabase
        Shared catalog database (``storage_ids`` table).
    """

    def __init__(self, db: CatalogDatabase):
        self.db = db

    def assign(self, backend_id: str, key: str) -> str:
        """Return the storage id of a file, creating one on first sight."""
        existing = self.lookup(backend_id, key)
        if existing is not None:
            return existing

        storage_id = uuid.uuid4().hex
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT INTO storage_ids (backend_id, key, storage_id, created_at) VALUES (?, ?, ?, ?)",
                    (backend_id, key, storage_id, datetime.now(timezone.utc).isoformat()),
                )
        except sqlite3.IntegrityError:
            # Assigned concurrently
            return self.lookup(backend_id, key)

        logger.debug("Assigned storage id %s to %s:%s", storage_id, backend_id, key)
        return storage_id

    def lookup(self, backend_id: str, key: str) -> Optional[str]:
        row = self.db.query_one(
            "SELECT storage_id FROM storage_ids WHERE backend_id = ? AND key = ?", (backend_id, key))
        return row["storage_id"] if row else None

    def resolve(self, storage_id: str) -> Optional[FileRef]:
        """The file a storage id was assigned to."""
        row = self.db.query_one(
            "SELECT backend_id, key FROM storage_ids WHERE storage_id = ?", (storage_id,))
        return FileRef(row["backend_id"], row["key"]) if row else None
