"""ROS bag 2.0 record parser.

Turns a ``BinaryReader`` into a lazy stream of records in three phases:

1. **Header**: magic line and bag header record. A wrong format version
   or an unreadable header ends the parse with an error.
2. **Index pass**: when the bag header points at an index section inside
   the file, connections and chunk infos are read from there without
   touching any chunk. The pass only counts if it finds exactly the
   number of connections and chunks the bag header declares.
3. **Chunk pass**: with a valid index, only chunks holding a wanted
   connection are decompressed (every chunk with ``parser.verify_chunks``;
   otherwise a ``ChunksSkippedRecord`` reports how many were left alone).
   Without a valid index (recording interrupted, index damaged) every
   record after the bag header is scanned in order.

A chunk that cannot be decoded yields a ``CorruptChunkRecord`` and the
parse moves on to the next chunk. Its messages are dropped as a unit,
never half-yielded.
"""

import logging
import os
import re
import struct
import threading
from typing import Callable, Iterator, Optional, TYPE_CHECKING

from bagcatalog.bag.reader import (
    BinaryReader,
    field_op,
    field_str,
    field_time,
    field_uint32,
    field_uint64,
    parse_fields,
)
from bagcatalog.bag.records import (
    BagHeaderRecord,
    ChunkInfoRecord,
    ChunkRecord,
    ChunksSkippedRecord,
    ConnectionRecord,
    CorruptChunkRecord,
    IndexCompleteRecord,
    IndexEntryRecord,
    MessageRecord,
    OpCode,
)
from bagcatalog.errors import (
    CorruptChunk,
    CorruptHeader,
    IngestionCancelled,
    Truncated,
    UnsupportedVersion,
)

if TYPE_CHECKING:
    from bagcatalog.schemas import InternalConfig

__all__ = ['BagFormatParser']

logger = logging.getLogger(__name__)

_MAGIC = re.compile(rb'^#ROSBAG V(\d+)\.(\d+)\n$')
_INDEX_ENTRY = struct.Struct('<IIi')
_CONN_COUNT = struct.Struct('<II')

# Errors that mean "this chunk's bytes do not make sense"
_CHUNK_ERRORS = (CorruptChunk, Truncated, KeyError, struct.error, UnicodeDecodeError)


def _connection_from(fields: dict, data: bytes) -> ConnectionRecord:
    """Build a connection record from its header fields and its data block."""
    info = parse_fields(data)
    return ConnectionRecord(
        conn_id=field_uint32(fields, 'conn'),
        topic=field_str(fields, 'topic'),
        message_type=field_str(info, 'type'),
        md5sum=field_str(info, 'md5sum'),
        message_definition=field_str(info, 'message_definition', default=""),
        callerid=info['callerid'].decode('utf-8') if 'callerid' in info else None,
        latching=info.get('latching', b'0') == b'1',
    )


def _chunk_info_from(fields: dict, data: bytes) -> ChunkInfoRecord:
    count = field_uint32(fields, 'count')
    if len(data) < count * _CONN_COUNT.size:
        raise Truncated(f"Chunk info lists {count} connections in {len(data)} bytes")
    counts = {}
    for i in range(count):
        conn_id, n = _CONN_COUNT.unpack_from(data, i * _CONN_COUNT.size)
        counts[conn_id] = counts.get(conn_id, 0) + n
    return ChunkInfoRecord(
        chunk_pos=field_uint64(fields, 'chunk_pos'),
        start_time=field_time(fields, 'start_time'),
        end_time=field_time(fields, 'end_time'),
        connection_counts=counts,
    )


def _index_entries_from(fields: dict, data: bytes) -> list[IndexEntryRecord]:
    conn_id = field_uint32(fields, 'conn')
    count = field_uint32(fields, 'count')
    if len(data) < count * _INDEX_ENTRY.size:
        raise Truncated(f"Index data lists {count} entries in {len(data)} bytes")
    entries = []
    for i in range(count):
        sec, nsec, offset = _INDEX_ENTRY.unpack_from(data, i * _INDEX_ENTRY.size)
        entries.append(IndexEntryRecord(conn_id, sec * 1_000_000_000 + nsec, offset))
    return entries


class BagFormatParser:
    """Lazy record parser for ROS bag 2.0 files.

    Parameters
    ----------
    config : InternalConfig
        Uses ``format.supported_version`` and ``parser.compression_codecs``.

    Examples
    --------
    >>> parser = BagFormatParser(config)
    >>> with BinaryReader.open(backend, "run1.bag") as reader:
    ...     for record in parser.parse(reader):
    ...         handle(record)
    """

    def __init__(self, config: "InternalConfig"):
        self.supported_version = config.format.supported_version
        self.supported_major = config.format.supported_major
        self.codecs = frozenset(config.parser.compression_codecs)
        self.verify_chunks = config.parser.verify_chunks

    def parse(self, reader: BinaryReader,
              wants: Optional[Callable[[ConnectionRecord], bool]] = None,
              cancel_event: Optional[threading.Event] = None) -> Iterator[object]:
        """Yield the records of one bag file.

        Parameters
        ----------
        reader : BinaryReader
            Open reader. Closed when the generator finishes or is closed.
        wants : callable, optional
            Predicate over connections. In indexed bags only chunks holding
            a wanted connection are decompressed; None decompresses all.
            Unindexed bags are always scanned in full.
        cancel_event : threading.Event, optional
            Checked before every chunk.

        Raises
        ------
        UnsupportedVersion, CorruptHeader, Truncated
            The file cannot be parsed at all.
        IngestionCancelled
            ``cancel_event`` was set.
        """
        try:
            header = self._read_header(reader)
            yield header
            data_start = reader.tell()

            index = self._read_index(reader, header)
            if index is not None:
                connections, chunk_infos = index
                yield from connections
                yield from chunk_infos
                yield IndexCompleteRecord(header.conn_count, header.chunk_count)
                yield from self._indexed_chunk_pass(reader, connections, chunk_infos, wants, cancel_event)
            else:
                reader.seek(data_start)
                yield from self._linear_scan(reader, cancel_event)
        finally:
            reader.close()

    # ------------------------------------------------------------------
    # Phase 1: header
    # ------------------------------------------------------------------

    def _read_header(self, reader: BinaryReader) -> BagHeaderRecord:
        reader.seek(0)
        line = reader.read_line(64)
        match = _MAGIC.match(line)
        if not match:
            raise UnsupportedVersion(f"{reader.name}: not a ROS bag (magic line {line[:20]!r})")
        major, minor = (m.decode() for m in match.groups())
        version = f"{major}.{minor}"
        if major != self.supported_major:
            raise UnsupportedVersion(
                f"{reader.name}: format version {version}, supported {self.supported_version}")

        try:
            fields, _padding = reader.read_record()
            if field_op(fields) != OpCode.BAG_HEADER:
                raise CorruptHeader(f"{reader.name}: first record is op {field_op(fields):#04x}, not a bag header")
            header = BagHeaderRecord(
                version=version,
                index_pos=field_uint64(fields, 'index_pos'),
                conn_count=field_uint32(fields, 'conn_count'),
                chunk_count=field_uint32(fields, 'chunk_count'),
            )
        except (KeyError, struct.error) as e:
            raise CorruptHeader(f"{reader.name}: malformed bag header: {e}") from e

        logger.debug("%s: version=%s index_pos=%d conns=%d chunks=%d", reader.name,
                     header.version, header.index_pos, header.conn_count, header.chunk_count)
        return header

    # ------------------------------------------------------------------
    # Phase 2: index
    # ------------------------------------------------------------------

    def _read_index(self, reader: BinaryReader, header: BagHeaderRecord):
        """Return ``(connections, chunk_infos)`` or None if the index is unusable."""
        if header.index_pos == 0 or header.index_pos >= reader.size:
            logger.info("%s: no index section (index_pos=%d, size=%d), scanning linearly",
                        reader.name, header.index_pos, reader.size)
            return None

        connections = []
        chunk_infos = []
        try:
            reader.seek(header.index_pos)
            while reader.remaining() > 0:
                fields, data = reader.read_record()
                op = field_op(fields)
                if op == OpCode.CONNECTION:
                    connections.append(_connection_from(fields, data))
                elif op == OpCode.CHUNK_INFO:
                    chunk_infos.append(_chunk_info_from(fields, data))
                else:
                    raise CorruptChunk(f"Unexpected op {op:#04x} in index section")

            if len(connections) != header.conn_count or len(chunk_infos) != header.chunk_count:
                logger.warning("%s: index lists %d connections/%d chunks, header declares %d/%d; scanning linearly",
                               reader.name, len(connections), len(chunk_infos),
                               header.conn_count, header.chunk_count)
                return None

            # Peek at each chunk header for its codec and data length without reading the payload
            peeked = []
            for info in chunk_infos:
                reader.seek(info.chunk_pos)
                fields = reader.read_record_header()
                if field_op(fields) != OpCode.CHUNK:
                    raise CorruptChunk(f"Chunk info points at op {field_op(fields):#04x}")
                reader.read_length()
                peeked.append(ChunkInfoRecord(
                    chunk_pos=info.chunk_pos,
                    start_time=info.start_time,
                    end_time=info.end_time,
                    connection_counts=info.connection_counts,
                    compression=field_str(fields, 'compression'),
                ))
        except _CHUNK_ERRORS as e:
            logger.warning("%s: index section unreadable (%s); scanning linearly", reader.name, e)
            return None

        return connections, peeked

    # ------------------------------------------------------------------
    # Phase 3: chunks
    # ------------------------------------------------------------------

    def _indexed_chunk_pass(self, reader, connections, chunk_infos, wants, cancel_event):
        wanted = {c.conn_id for c in connections if wants is None or wants(c)}
        selected = sum(1 for info in chunk_infos if wanted.intersection(info.connection_counts))
        logger.debug("%s: decoding %d of %d chunks%s", reader.name, selected, len(chunk_infos),
                     " (verifying the rest)" if self.verify_chunks else "")

        for info in chunk_infos:
            needed = bool(wanted.intersection(info.connection_counts))
            if not needed and not self.verify_chunks:
                continue
            self._check_cancel(cancel_event, reader)
            reader.seek(info.chunk_pos)
            try:
                fields = reader.read_record_header()
            except _CHUNK_ERRORS as e:
                yield CorruptChunkRecord(info.chunk_pos, f"unreadable chunk header: {e}")
                continue
            records = self._decode_chunk(reader, info.chunk_pos, fields)
            if needed:
                yield from records
            else:
                # Verified only: report the chunk and any damage, drop its messages
                yield from (r for r in records if isinstance(r, (ChunkRecord, CorruptChunkRecord)))

        skipped = len(chunk_infos) - selected
        if skipped and not self.verify_chunks:
            yield ChunksSkippedRecord(skipped)

    def _linear_scan(self, reader: BinaryReader, cancel_event) -> Iterator[object]:
        while reader.remaining() > 0:
            offset = reader.tell()
            try:
                fields = reader.read_record_header()
                op = field_op(fields)
            except (Truncated, KeyError) as e:
                # Outer framing is gone; nothing after this point can be located
                yield CorruptChunkRecord(offset, f"record framing lost: {e}")
                return

            if op == OpCode.CHUNK:
                self._check_cancel(cancel_event, reader)
                yield from self._decode_chunk(reader, offset, fields)
                continue

            try:
                data = reader.read_exact(reader.read_length())
            except Truncated as e:
                yield CorruptChunkRecord(offset, f"record framing lost: {e}")
                return

            try:
                yield from self._decode_plain(op, fields, data)
            except _CHUNK_ERRORS as e:
                yield CorruptChunkRecord(offset, f"bad op {op:#04x} record: {e}")

    def _decode_plain(self, op: int, fields: dict, data: bytes) -> list:
        """Decode a record that is not a chunk."""
        if op == OpCode.CONNECTION:
            return [_connection_from(fields, data)]
        if op == OpCode.MSG_DATA:
            return [MessageRecord(field_uint32(fields, 'conn'), field_time(fields, 'time'), data)]
        if op == OpCode.INDEX_DATA:
            return _index_entries_from(fields, data)
        if op == OpCode.CHUNK_INFO:
            return [_chunk_info_from(fields, data)]
        if op not in (OpCode.MSG_DEF, OpCode.BAG_HEADER):
            logger.debug("Skipping record with unknown op %#04x", op)
        return []

    def _decode_chunk(self, reader: BinaryReader, offset: int, fields: dict) -> Iterator[object]:
        """Decode one chunk atomically.

        The reader must be positioned right after the chunk's header. On
        return it is positioned after the chunk's data, whatever happened.
        """
        try:
            length = reader.read_length()
        except Truncated as e:
            reader.seek(0, os.SEEK_END)
            yield CorruptChunkRecord(offset, f"chunk data runs past end of file: {e}")
            return

        try:
            compression = field_str(fields, 'compression')
            size = field_uint32(fields, 'size')
        except _CHUNK_ERRORS as e:
            reader.seek(length, os.SEEK_CUR)
            yield CorruptChunkRecord(offset, f"bad chunk header: {e}")
            return

        yield ChunkRecord(offset, compression, size)

        if compression not in self.codecs:
            reader.seek(length, os.SEEK_CUR)
            yield CorruptChunkRecord(offset, f"compression {compression!r} not enabled")
            return

        records = []
        try:
            with reader.decompressed(compression, length, size):
                while reader.remaining() > 0:
                    inner, data = reader.read_record()
                    records.extend(self._decode_plain(field_op(inner), inner, data))
        except _CHUNK_ERRORS as e:
            logger.warning("%s: corrupt chunk at offset %d: %s", reader.name, offset, e)
            yield CorruptChunkRecord(offset, str(e))
            return

        yield from records

    @staticmethod
    def _check_cancel(cancel_event, reader):
        if cancel_event is not None and cancel_event.is_set():
            raise IngestionCancelled(f"{reader.name}: cancelled")
