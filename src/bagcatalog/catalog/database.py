"""Shared SQLite connection for the bag catalog.

One ``CatalogDatabase`` is shared by the dedup gate, the message type
catalog, the storage registry and the bag store. All statements go
through one connection guarded by one lock, so worker threads can share
it safely.
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS bags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    filename TEXT NOT NULL,
    path TEXT NOT NULL,
    version TEXT NOT NULL,
    duration REAL NOT NULL DEFAULT 0,
    start_time TEXT,
    end_time TEXT,
    size INTEGER NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    indexed INTEGER NOT NULL DEFAULT 0,
    compressed INTEGER NOT NULL DEFAULT 0,
    checksum TEXT NOT NULL UNIQUE,
    storage_id TEXT,
    coordinate TEXT,
    has_path INTEGER NOT NULL DEFAULT 0,
    missing INTEGER NOT NULL DEFAULT 0,
    degraded INTEGER NOT NULL DEFAULT 0,
    extraction_notes TEXT,
    created_on TEXT NOT NULL,
    updated_on TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS message_types (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    md5sum TEXT NOT NULL,
    definition TEXT,
    UNIQUE (name, md5sum)
);

CREATE TABLE IF NOT EXISTS topics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bag_id INTEGER NOT NULL REFERENCES bags(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    conn_id INTEGER NOT NULL,
    message_type_id INTEGER NOT NULL REFERENCES message_types(id),
    message_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS bag_message_types (
    bag_id INTEGER NOT NULL REFERENCES bags(id) ON DELETE CASCADE,
    message_type_id INTEGER NOT NULL REFERENCES message_types(id),
    PRIMARY KEY (bag_id, message_type_id)
);

CREATE TABLE IF NOT EXISTS bag_positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bag_id INTEGER NOT NULL REFERENCES bags(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    timestamp_ns INTEGER NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    altitude REAL
);

CREATE TABLE IF NOT EXISTS checksum_reservations (
    checksum TEXT PRIMARY KEY,
    state TEXT NOT NULL DEFAULT 'reserved',
    bag_id INTEGER,
    reserved_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS storage_ids (
    backend_id TEXT NOT NULL,
    key TEXT NOT NULL,
    storage_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (backend_id, key)
);

CREATE INDEX IF NOT EXISTS idx_topics_bag ON topics(bag_id);
CREATE INDEX IF NOT EXISTS idx_positions_bag ON bag_positions(bag_id, seq);
CREATE INDEX IF NOT EXISTS idx_bags_storage ON bags(storage_id);
CREATE INDEX IF NOT EXISTS idx_bag_types_type ON bag_message_types(message_type_id);
"""


class CatalogDatabase:
    """Thread-safe wrapper around the catalog's SQLite file.

    Parameters
    ----------
    db_path : Path or str
        Database file, created with its parent directory if missing.
        ``":memory:"`` gives a private in-memory catalog (tests).
    timeout : float
        Seconds SQLite waits on a lock held by another process.

    Examples
    --------
    >>> db = CatalogDatabase(tmp_path / "catalog.db")
    >>> with db.transaction() as conn:
    ...     conn.execute("UPDATE bags SET missing = 1 WHERE id = ?", (3,))
    >>> db.close()
    """

    def __init__(self, db_path: Path | str, timeout: float = 30.0):
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._timeout = timeout
        self._lock = threading.RLock()

        self._init_database()
        logger.info("Catalog database initialized: %s", self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), timeout=self._timeout,
                                         check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                # Readers can query while workers write
                self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def _init_database(self):
        conn = self._get_connection()
        with self._lock:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def transaction(self):
        """Hold the lock and commit on success, roll back on any exception."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def query(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._lock:
            cursor = self._get_connection().execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        with self._lock:
            row = self._get_connection().execute(sql, params).fetchone()
            return dict(row) if row else None

    @property
    def connection(self) -> sqlite3.Connection:
        """Raw connection, for pandas readers. Hold ``lock`` while using it."""
        return self._get_connection()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def close(self):
        """Close database connection. Safe to call multiple times."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
