import bz2
import io
import struct
import threading

import lz4.frame
import pytest

from bagcatalog.bag.reader import BinaryReader, decompress, parse_fields
from bagcatalog.errors import CorruptChunk, IngestionTimeout, NotFound, Truncated

pytestmark = [pytest.mark.unit, pytest.mark.bag]


def _field(name, value):
    body = name + b"=" + value
    return struct.pack("<I", len(body)) + body


def _record(fields, data):
    header = b"".join(fields)
    return struct.pack("<I", len(header)) + header + struct.pack("<I", len(data)) + data


def test_read_exact_short_read_raises_truncated():
    with BinaryReader(io.BytesIO(b"abc")) as reader:
        with pytest.raises(Truncated):
            reader.read_exact(4)


def test_size_and_remaining_track_position():
    with BinaryReader(io.BytesIO(b"0123456789")) as reader:
        assert reader.size == 10
        reader.read_exact(3)
        assert reader.tell() == 3
        assert reader.remaining() == 7


def test_read_length_rejects_length_beyond_remaining():
    raw = struct.pack("<I", 100) + b"x" * 10
    with BinaryReader(io.BytesIO(raw)) as reader:
        with pytest.raises(Truncated):
            reader.read_length()


def test_read_record_returns_fields_and_data():
    raw = _record([_field(b"op", b"\x02"), _field(b"conn", struct.pack("<I", 7))], b"payload")
    with BinaryReader(io.BytesIO(raw)) as reader:
        fields, data = reader.read_record()
    assert fields["op"] == b"\x02"
    assert struct.unpack("<I", fields["conn"])[0] == 7
    assert data == b"payload"


def test_parse_fields_keeps_equals_sign_in_value():
    fields = parse_fields(_field(b"message_definition", b"int8 A=1"))
    assert fields["message_definition"] == b"int8 A=1"


def test_parse_fields_truncated_field():
    buf = struct.pack("<I", 50) + b"op=\x02"
    with pytest.raises(Truncated):
        parse_fields(buf)


def test_read_line_stops_at_newline():
    with BinaryReader(io.BytesIO(b"#ROSBAG V2.0\nrest")) as reader:
        assert reader.read_line() == b"#ROSBAG V2.0\n"
        assert reader.tell() == 13


@pytest.mark.parametrize("codec,compress", [
    ("none", lambda d: d),
    ("bz2", bz2.compress),
    ("lz4", lz4.frame.compress),
])
def test_decompression_filter_reads_inner_region(codec, compress):
    inner = b"inner bytes " * 20
    packed = compress(inner)
    raw = packed + b"TAIL"
    with BinaryReader(io.BytesIO(raw)) as reader:
        with reader.decompressed(codec, len(packed), len(inner)):
            assert reader.filtered
            assert reader.remaining() == len(inner)
            assert reader.read_exact(len(inner)) == inner
            with pytest.raises(Truncated):
                reader.read_exact(1)
        assert not reader.filtered
        assert reader.read_exact(4) == b"TAIL"


def test_filter_size_mismatch_leaves_reader_after_payload():
    packed = bz2.compress(b"12345")
    raw = packed + b"NEXT"
    with BinaryReader(io.BytesIO(raw)) as reader:
        with pytest.raises(CorruptChunk):
            reader.push_filter("bz2", len(packed), expected_size=99)
        assert not reader.filtered
        assert reader.read_exact(4) == b"NEXT"


def test_decompress_rejects_garbage_and_unknown_codec():
    with pytest.raises(CorruptChunk):
        decompress("bz2", b"\xff" * 32)
    with pytest.raises(CorruptChunk):
        decompress("lz4", b"\xff" * 32)
    with pytest.raises(CorruptChunk):
        decompress("zstd", b"data")


def test_pop_filter_without_push():
    with BinaryReader(io.BytesIO(b"x")) as reader:
        with pytest.raises(RuntimeError):
            reader.pop_filter()


class StallingStream(io.BytesIO):
    """Reads block until released."""

    def __init__(self, data):
        super().__init__(data)
        self.release = threading.Event()

    def read(self, n=-1):
        self.release.wait(5)
        return super().read(n)


def test_stalled_read_raises_timeout():
    stream = StallingStream(b"x" * 64)
    reader = BinaryReader(stream, size=64, timeout=0.1)
    try:
        with pytest.raises(IngestionTimeout):
            reader.read_exact(8)
    finally:
        stream.release.set()
        reader.close()


def test_open_through_backend(local_backend, bag_root):
    (bag_root / "a.bag").write_bytes(b"#ROSBAG V2.0\n")
    with BinaryReader.open(local_backend, "a.bag", timeout=5) as reader:
        assert reader.name == "a.bag"
        assert reader.size == 13


def test_open_missing_key_raises_not_found(local_backend):
    with pytest.raises(NotFound):
        BinaryReader.open(local_backend, "nope.bag")


class SlowOpenBackend:
    """Returns a stream only after ``release`` is set."""

    def __init__(self, data):
        self.stream = io.BytesIO(data)
        self.release = threading.Event()
        self.returned = threading.Event()

    def open(self, key):
        self.release.wait(5)
        self.returned.set()
        return self.stream


def test_open_timeout_closes_late_stream():
    backend = SlowOpenBackend(b"#ROSBAG V2.0\n")
    with pytest.raises(IngestionTimeout):
        BinaryReader.open(backend, "slow.bag", timeout=0.1)
    assert not backend.stream.closed

    backend.release.set()
    assert backend.returned.wait(5)
    for _ in range(50):
        if backend.stream.closed:
            break
        threading.Event().wait(0.05)
    assert backend.stream.closed


def test_close_is_idempotent():
    reader = BinaryReader(io.BytesIO(b"abc"))
    reader.close()
    reader.close()
