"""Record types produced by the bag parser.

Records are transient: they live only between the parser that yields
them and the extractors that consume them. Timestamps are integer
nanoseconds since the Unix epoch.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional


class OpCode(IntEnum):
    """Record op codes of the ROS bag 2.0 container."""
    MSG_DEF = 0x01
    MSG_DATA = 0x02
    BAG_HEADER = 0x03
    INDEX_DATA = 0x04
    CHUNK = 0x05
    CHUNK_INFO = 0x06
    CONNECTION = 0x07


@dataclass(frozen=True)
class BagHeaderRecord:
    version: str
    index_pos: int
    conn_count: int
    chunk_count: int


@dataclass(frozen=True)
class ConnectionRecord:
    conn_id: int
    topic: str
    message_type: str
    md5sum: str
    message_definition: str = ""
    callerid: Optional[str] = None
    latching: bool = False


@dataclass(frozen=True)
class ChunkRecord:
    """A chunk header. ``size`` is the uncompressed payload size."""
    offset: int
    compression: str
    size: int


@dataclass(frozen=True)
class ChunkInfoRecord:
    """Index summary of one chunk: where it is and what it holds."""
    chunk_pos: int
    start_time: int
    end_time: int
    connection_counts: dict[int, int] = field(default_factory=dict)
    compression: Optional[str] = None

    @property
    def message_count(self) -> int:
        return sum(self.connection_counts.values())


@dataclass(frozen=True)
class IndexEntryRecord:
    conn_id: int
    timestamp: int
    chunk_offset: int


@dataclass(frozen=True)
class MessageRecord:
    conn_id: int
    timestamp: int
    payload: bytes


@dataclass(frozen=True)
class IndexCompleteRecord:
    """Marker: the index section was read and matched the bag header counts."""
    conn_count: int
    chunk_count: int


@dataclass(frozen=True)
class CorruptChunkRecord:
    """Partial-extraction note for a chunk that could not be decoded."""
    offset: int
    reason: str


@dataclass(frozen=True)
class ChunksSkippedRecord:
    """Indexed bag: ``count`` chunks were left compressed and not checked."""
    count: int
