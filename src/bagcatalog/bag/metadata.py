"""Bag metadata extraction.

``MetadataExtractor`` consumes the parser's record stream once and
accumulates everything the catalog stores about a bag except its
checksum and storage identifier, which come from the dedup gate and the
storage registry.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from bagcatalog.bag.gps import BagPosition, Coordinate
from bagcatalog.bag.records import (
    BagHeaderRecord,
    ChunkInfoRecord,
    ChunkRecord,
    ChunksSkippedRecord,
    ConnectionRecord,
    CorruptChunkRecord,
    IndexCompleteRecord,
    MessageRecord,
)
from bagcatalog.catalog.message_types import MessageType, MessageTypeCatalog

__all__ = ['Topic', 'BagMetadata', 'MetadataExtractor', 'ns_to_datetime']

logger = logging.getLogger(__name__)


def ns_to_datetime(ns: Optional[int]) -> Optional[datetime]:
    """Nanoseconds since the epoch to an aware UTC datetime (microsecond precision)."""
    if ns is None:
        return None
    seconds, rest = divmod(ns, 1_000_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=rest // 1000)


@dataclass
class Topic:
    """One connection of a bag. Two connections on one topic name stay two Topics."""
    name: str
    message_type: MessageType
    message_count: int
    conn_id: int


@dataclass
class BagMetadata:
    """Everything the catalog records for one bag."""
    filename: str
    path: str
    version: str
    size: int
    message_count: int
    indexed: bool
    compressed: bool
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration: float
    topics: list[Topic] = field(default_factory=list)
    message_types: set[MessageType] = field(default_factory=set)
    positions: list[BagPosition] = field(default_factory=list)
    coordinate: Optional[Coordinate] = None
    checksum: Optional[str] = None
    storage_id: Optional[str] = None
    degraded: bool = False
    notes: list[str] = field(default_factory=list)
    missing: bool = False
    bag_id: Optional[int] = None

    @property
    def has_path(self) -> bool:
        return len(self.positions) > 0


class MetadataExtractor:
    """Accumulates bag metadata over one pass of the record stream.

    Message counts and the time range come from the index when the parser
    reports a complete index (``IndexCompleteRecord``), and from the
    decoded messages otherwise. Messages decoded after a complete index
    are not counted a second time.

    Parameters
    ----------
    message_types : MessageTypeCatalog, optional
        Shared catalog resolving ``(name, md5sum)`` to one MessageType
        object. Without it, types are shared within this bag only.
    """

    def __init__(self, message_types: Optional[MessageTypeCatalog] = None):
        self._catalog = message_types
        self._local_types: dict[tuple[str, str], MessageType] = {}

        self.version: Optional[str] = None
        self._connections: dict[int, tuple[ConnectionRecord, MessageType]] = {}
        self._tallies: Counter = Counter()
        self._min_ts: Optional[int] = None
        self._max_ts: Optional[int] = None
        self._chunk_infos: list[ChunkInfoRecord] = []
        self._index_complete = False
        self._compressed = False
        self._corrupt: list[CorruptChunkRecord] = []
        self._skipped_chunks = 0

    @property
    def indexed(self) -> bool:
        return self._index_complete

    def consume(self, record):
        if isinstance(record, MessageRecord):
            if not self._index_complete:
                self._tallies[record.conn_id] += 1
                ts = record.timestamp
                if self._min_ts is None or ts < self._min_ts:
                    self._min_ts = ts
                if self._max_ts is None or ts > self._max_ts:
                    self._max_ts = ts
        elif isinstance(record, ConnectionRecord):
            if record.conn_id not in self._connections:
                self._connections[record.conn_id] = (record, self._resolve_type(record))
        elif isinstance(record, ChunkRecord):
            if record.compression != "none":
                self._compressed = True
        elif isinstance(record, ChunkInfoRecord):
            self._chunk_infos.append(record)
            if record.compression not in (None, "none"):
                self._compressed = True
        elif isinstance(record, IndexCompleteRecord):
            self._index_complete = True
        elif isinstance(record, CorruptChunkRecord):
            self._corrupt.append(record)
        elif isinstance(record, ChunksSkippedRecord):
            self._skipped_chunks += record.count
        elif isinstance(record, BagHeaderRecord):
            self.version = record.version

    def _resolve_type(self, conn: ConnectionRecord) -> MessageType:
        key = (conn.message_type, conn.md5sum)
        if self._catalog is not None:
            return self._catalog.get_or_create(conn.message_type, conn.md5sum, conn.message_definition)
        if key not in self._local_types:
            self._local_types[key] = MessageType(conn.message_type, conn.md5sum, conn.message_definition)
        return self._local_types[key]

    def _counts_and_range(self):
        if not self._index_complete:
            return self._tallies, self._min_ts, self._max_ts

        tallies = Counter()
        min_ts = max_ts = None
        for info in self._chunk_infos:
            for conn_id, n in info.connection_counts.items():
                tallies[conn_id] += n
            if info.message_count == 0:
                continue
            if min_ts is None or info.start_time < min_ts:
                min_ts = info.start_time
            if max_ts is None or info.end_time > max_ts:
                max_ts = info.end_time
        return tallies, min_ts, max_ts

    def finish(self, filename: str, path: str, size: int) -> BagMetadata:
        """Assemble the BagMetadata seen so far.

        Parameters
        ----------
        filename, path : str
            Display name and containing directory, from the storage backend.
        size : int
            File size in bytes, from the storage stat.
        """
        tallies, min_ts, max_ts = self._counts_and_range()
        message_count = sum(tallies.values())
        notes = []

        topics = []
        message_types = set()
        for conn_id in sorted(self._connections):
            conn, message_type = self._connections[conn_id]
            topics.append(Topic(conn.topic, message_type, tallies.get(conn_id, 0), conn_id))
            message_types.add(message_type)

        orphans = sum(n for conn_id, n in tallies.items() if conn_id not in self._connections)
        if orphans:
            notes.append(f"{orphans} message(s) on connections with no connection record")

        if message_count == 0:
            start_time = end_time = None
            duration = 0.0
        else:
            start_time = ns_to_datetime(min_ts)
            end_time = ns_to_datetime(max_ts)
            duration = (max_ts - min_ts) / 1e9

        for corrupt in self._corrupt:
            notes.append(f"Corrupt chunk at offset {corrupt.offset}: {corrupt.reason}")
        if self._skipped_chunks:
            notes.append(f"{self._skipped_chunks} chunk(s) read from the index only; "
                         "damage inside them is not checked")

        return BagMetadata(
            filename=filename,
            path=path,
            version=self.version or "",
            size=size,
            message_count=message_count,
            indexed=self._index_complete,
            compressed=self._compressed,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
            topics=topics,
            message_types=message_types,
            degraded=bool(self._corrupt),
            notes=notes,
        )
