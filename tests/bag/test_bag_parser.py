import io
import threading

import pytest

from bagcatalog.bag.parser import BagFormatParser
from bagcatalog.bag.reader import BinaryReader
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
from bagcatalog.errors import CorruptHeader, IngestionCancelled, Truncated, UnsupportedVersion
from tests.helpers.fake_bag import (
    FakeBag,
    NAVSATFIX_TYPE,
    STRING_MD5,
    STRING_TYPE,
    _op,
    _record,
    gps_bag,
    string_payload,
)

pytestmark = [pytest.mark.unit, pytest.mark.bag]


def _parse(config, data, **kwargs):
    return list(BagFormatParser(config).parse(BinaryReader(io.BytesIO(data)), **kwargs))


def _of(records, cls):
    return [r for r in records if isinstance(r, cls)]


def test_parser_init(internal_config):
    parser = BagFormatParser(internal_config)
    assert parser.supported_major == "2"
    assert parser.codecs == {"none", "bz2", "lz4"}


def test_header_is_first_record(internal_config):
    records = _parse(internal_config, gps_bag().build())
    header = records[0]
    assert isinstance(header, BagHeaderRecord)
    assert header.version == "2.0"
    assert header.conn_count == 2
    assert header.chunk_count == 4


@pytest.mark.parametrize("compression", ["none", "bz2", "lz4"])
def test_indexed_bag_yields_index_then_messages(internal_config, compression):
    records = _parse(internal_config, gps_bag().build(compression=compression))

    assert len(_of(records, IndexCompleteRecord)) == 1
    infos = _of(records, ChunkInfoRecord)
    assert len(infos) == 4
    assert {i.compression for i in infos} == {compression}
    assert sum(i.message_count for i in infos) == 8

    # Without a predicate every chunk is decoded
    messages = _of(records, MessageRecord)
    assert len(messages) == 8
    assert not _of(records, CorruptChunkRecord)


def test_index_records_precede_chunk_records(internal_config):
    records = _parse(internal_config, gps_bag().build())
    marker = next(i for i, r in enumerate(records) if isinstance(r, IndexCompleteRecord))
    first_chunk = next(i for i, r in enumerate(records) if isinstance(r, ChunkRecord))
    assert marker < first_chunk


def test_wants_limits_decoded_chunks(internal_config):
    bag = (FakeBag()
           .connection(0, "/gps/fix", NAVSATFIX_TYPE, "a" * 32)
           .connection(1, "/chatter", STRING_TYPE, STRING_MD5))
    bag.message(1, 1, string_payload("a")).message(1, 2, string_payload("b"))
    bag.message(0, 3, b"").message(1, 4, string_payload("c"))
    data = bag.build(chunk_size=2)

    records = _parse(internal_config, data, wants=lambda c: c.message_type == NAVSATFIX_TYPE)

    assert len(_of(records, ChunkInfoRecord)) == 2
    assert len(_of(records, ChunkRecord)) == 1
    assert [m.timestamp for m in _of(records, MessageRecord)] == [3, 4]
    assert _of(records, ChunksSkippedRecord) == [ChunksSkippedRecord(1)]


def _chatter_chunk_then_gps_chunk():
    bag = (FakeBag()
           .connection(0, "/gps/fix", NAVSATFIX_TYPE, "a" * 32)
           .connection(1, "/chatter", STRING_TYPE, STRING_MD5))
    bag.message(1, 1, string_payload("a")).message(1, 2, string_payload("b"))
    bag.message(0, 3, b"").message(1, 4, string_payload("c"))
    return bag.build(chunk_size=2, corrupt_chunks={0})


def test_skipped_chunk_damage_goes_unseen(internal_config):
    records = _parse(internal_config, _chatter_chunk_then_gps_chunk(),
                     wants=lambda c: c.message_type == NAVSATFIX_TYPE)
    assert not _of(records, CorruptChunkRecord)
    assert _of(records, ChunksSkippedRecord) == [ChunksSkippedRecord(1)]


def test_verify_chunks_reports_damage_in_skipped_chunks(make_config):
    config = make_config(VERIFY_CHUNKS=True)
    records = _parse(config, _chatter_chunk_then_gps_chunk(),
                     wants=lambda c: c.message_type == NAVSATFIX_TYPE)

    assert len(_of(records, ChunkRecord)) == 2
    assert len(_of(records, CorruptChunkRecord)) == 1
    assert not _of(records, ChunksSkippedRecord)
    # The verified chunk contributes no messages, the wanted one all of its own
    assert [m.timestamp for m in _of(records, MessageRecord)] == [3, 4]


def test_unindexed_bag_is_scanned_linearly(internal_config):
    records = _parse(internal_config, gps_bag(n=3).build(indexed=False, compression="bz2"))

    assert not _of(records, IndexCompleteRecord)
    assert len(_of(records, ChunkRecord)) == 3
    assert len(_of(records, MessageRecord)) == 6
    assert {c.topic for c in _of(records, ConnectionRecord)} == {"/gps/fix", "/chatter"}


def test_connection_record_fields(internal_config):
    bag = FakeBag().connection(3, "/status", STRING_TYPE, STRING_MD5, "string data\n",
                               callerid="/recorder", latching=True)
    bag.message(3, 10, string_payload("x"))
    conn = _of(_parse(internal_config, bag.build()), ConnectionRecord)[0]
    assert conn.conn_id == 3
    assert conn.md5sum == STRING_MD5
    assert conn.message_definition == "string data\n"
    assert conn.callerid == "/recorder"
    assert conn.latching is True


@pytest.mark.parametrize("compression", ["none", "bz2", "lz4"])
def test_corrupt_chunk_is_skipped_as_unit(internal_config, compression):
    data = gps_bag(n=3).build(compression=compression, corrupt_chunks={1})
    records = _parse(internal_config, data)

    corrupt = _of(records, CorruptChunkRecord)
    assert len(corrupt) == 1
    # Chunk 1 held two messages; both are dropped, the other chunks survive
    assert len(_of(records, MessageRecord)) == 4


def test_corrupt_chunk_in_unindexed_bag_does_not_stop_scan(internal_config):
    data = gps_bag(n=3).build(indexed=False, corrupt_chunks={1})
    records = _parse(internal_config, data)

    assert len(_of(records, CorruptChunkRecord)) == 1
    assert len(_of(records, MessageRecord)) == 4


def test_disabled_codec_yields_corrupt_chunk(make_config):
    config = make_config(COMPRESSION_CODECS=["none"])
    records = _parse(config, gps_bag(n=2).build(compression="lz4"))
    assert len(_of(records, CorruptChunkRecord)) == 2
    assert not _of(records, MessageRecord)


def test_truncated_bag_falls_back_to_linear_scan(internal_config):
    data = gps_bag(n=4).build()
    last_chunk = max(i.chunk_pos for i in _of(_parse(internal_config, data), ChunkInfoRecord))
    records = _parse(internal_config, data[:last_chunk + 20])

    assert not _of(records, IndexCompleteRecord)
    assert len(_of(records, MessageRecord)) == 6
    assert len(_of(records, CorruptChunkRecord)) == 1


def test_index_count_mismatch_falls_back(internal_config):
    bag = gps_bag(n=2)
    data = bytearray(bag.build())
    index_pos = _parse(internal_config, bytes(data))[0].index_pos
    # Same index, but the header claims more chunks than it lists
    bad_header = bag._bag_header(index_pos, 2, 9)
    start = len(b"#ROSBAG V2.0\n")
    data[start:start + len(bad_header)] = bad_header

    records = _parse(internal_config, bytes(data))
    assert not _of(records, IndexCompleteRecord)
    assert len(_of(records, MessageRecord)) == 4


def test_unsupported_version(internal_config):
    data = gps_bag(n=1).build()
    with pytest.raises(UnsupportedVersion):
        _parse(internal_config, data.replace(b"#ROSBAG V2.0", b"#ROSBAG V1.2", 1))


def test_not_a_bag(internal_config):
    with pytest.raises(UnsupportedVersion):
        _parse(internal_config, b"PK\x03\x04 this is a zip file")


def test_minor_version_difference_is_accepted(internal_config):
    records = _parse(internal_config, FakeBag(version="2.1").build())
    assert records[0].version == "2.1"


def test_first_record_not_a_bag_header(internal_config):
    data = b"#ROSBAG V2.0\n" + _record([_op(0x02)], b"")
    with pytest.raises(CorruptHeader):
        _parse(internal_config, data)


def test_truncated_header_record(internal_config):
    with pytest.raises(Truncated):
        _parse(internal_config, b"#ROSBAG V2.0\n" + b"\x02\x00\x00\x00op")


def test_empty_bag(internal_config):
    records = _parse(internal_config, FakeBag().build())
    assert isinstance(records[0], BagHeaderRecord)
    assert not _of(records, MessageRecord)


def test_cancel_between_chunks(internal_config):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(IngestionCancelled):
        _parse(internal_config, gps_bag().build(), cancel_event=cancel)


def test_reader_closed_after_parse(internal_config):
    stream = io.BytesIO(gps_bag(n=1).build())
    list(BagFormatParser(internal_config).parse(BinaryReader(stream)))
    assert stream.closed
