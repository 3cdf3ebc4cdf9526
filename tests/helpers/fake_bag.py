"""Synthetic ROS bag 2.0 files for tests.

Builds byte-exact bags in memory: indexed or unindexed, any of the
supported chunk codecs, with optional damage (garbage chunk payloads,
truncation, wrong format version).
"""

import bz2
import struct

import lz4.frame


NAVSATFIX_TYPE = "sensor_msgs/NavSatFix"
NAVSATFIX_MD5 = "2d3a8cd499b9b4a0249fb98fd05cfa48"
NAVSATFIX_DEF = """\
uint8 COVARIANCE_TYPE_UNKNOWN=0
uint8 COVARIANCE_TYPE_APPROXIMATED=1
uint8 COVARIANCE_TYPE_DIAGONAL_KNOWN=2
uint8 COVARIANCE_TYPE_KNOWN=3
Header header
NavSatStatus status
float64 latitude
float64 longitude
float64 altitude
float64[9] position_covariance
uint8 position_covariance_type
================================================================================
MSG: std_msgs/Header
uint32 seq
time stamp
string frame_id
================================================================================
MSG: sensor_msgs/NavSatStatus
int8 STATUS_NO_FIX=-1
int8 STATUS_FIX=0
int8 STATUS_SBAS_FIX=1
int8 STATUS_GBAS_FIX=2
uint16 SERVICE_GPS=1
uint16 SERVICE_GLONASS=2
uint16 SERVICE_COMPASS=4
uint16 SERVICE_GALILEO=8
int8 status
uint16 service
"""

STRING_TYPE = "std_msgs/String"
STRING_MD5 = "992ce8a1687cec8c8bd883ec73ca41d1"
STRING_DEF = "string data\n"

# A geolocation type unknown to the stock typestore
FIX_TYPE = "test_msgs/Fix"
FIX_MD5 = "0123456789abcdef0123456789abcdef"
FIX_DEF = "float64 lat\nfloat64 lon\n"

SEC = 1_000_000_000
T0 = 1_600_000_000 * SEC


def navsatfix_payload(lat, lon, alt=0.0, stamp=T0, seq=0, frame_id="gps"):
    """ROS1 serialization of sensor_msgs/NavSatFix."""
    frame = frame_id.encode()
    sec, nsec = divmod(stamp, SEC)
    return (
        struct.pack("<III", seq, sec, nsec)
        + struct.pack("<I", len(frame)) + frame
        + struct.pack("<bH", 0, 1)
        + struct.pack("<ddd", lat, lon, alt)
        + struct.pack("<9d", *([0.0] * 9))
        + struct.pack("<B", 0)
    )


def string_payload(text):
    data = text.encode()
    return struct.pack("<I", len(data)) + data


def fix_payload(lat, lon):
    return struct.pack("<dd", lat, lon)


def _field(name, value):
    body = name.encode() + b"=" + value
    return struct.pack("<I", len(body)) + body


def _record(fields, data=b""):
    header = b"".join(_field(name, value) for name, value in fields)
    return struct.pack("<I", len(header)) + header + struct.pack("<I", len(data)) + data


def _op(code):
    return ("op", bytes([code]))


def _u32(v):
    return struct.pack("<I", v)


def _time(ns):
    return struct.pack("<II", *divmod(ns, SEC))


def _compress(codec, data):
    if codec == "bz2":
        return bz2.compress(data)
    if codec == "lz4":
        return lz4.frame.compress(data)
    return data


class FakeBag:
    """Builder for synthetic bag files.

    Example::

        data = (FakeBag()
                .connection(0, "/fix", NAVSATFIX_TYPE, NAVSATFIX_MD5, NAVSATFIX_DEF)
                .message(0, T0, navsatfix_payload(29.4, -98.5))
                .build(compression="lz4"))
    """

    def __init__(self, version="2.0"):
        self.version = version
        self.connections = {}
        self.messages = []

    def connection(self, conn_id, topic, msg_type, md5sum, definition="", callerid=None, latching=False):
        self.connections[conn_id] = (topic, msg_type, md5sum, definition, callerid, latching)
        return self

    def message(self, conn_id, timestamp, payload):
        self.messages.append((conn_id, timestamp, payload))
        return self

    def _connection_record(self, conn_id):
        topic, msg_type, md5sum, definition, callerid, latching = self.connections[conn_id]
        info = [("topic", topic.encode()), ("type", msg_type.encode()), ("md5sum", md5sum.encode()),
                ("message_definition", definition.encode())]
        if callerid is not None:
            info.append(("callerid", callerid.encode()))
        if latching:
            info.append(("latching", b"1"))
        data = b"".join(_field(n, v) for n, v in info)
        return _record([_op(0x07), ("conn", _u32(conn_id)), ("topic", topic.encode())], data)

    def _bag_header(self, index_pos, conn_count, chunk_count):
        return _record([_op(0x03), ("index_pos", struct.pack("<Q", index_pos)),
                        ("conn_count", _u32(conn_count)), ("chunk_count", _u32(chunk_count))],
                       b" " * 64)

    def build(self, compression="none", chunk_size=2, indexed=True, corrupt_chunks=(),
              chunk_compressions=None):
        """Serialize the bag.

        Parameters
        ----------
        compression : str
            Codec of every chunk ("none", "bz2", "lz4", or anything else to
            test rejected codecs).
        chunk_size : int
            Messages per chunk.
        indexed : bool
            Write the index section (False mimics an interrupted recording).
        corrupt_chunks : iterable of int
            Chunk numbers whose payload is overwritten with garbage.
        chunk_compressions : list of str, optional
            Per-chunk codec, overriding ``compression``.
        """
        out = bytearray(f"#ROSBAG V{self.version}\n".encode())
        header_pos = len(out)
        out += self._bag_header(0, 0, 0)

        chunks = [self.messages[i:i + chunk_size] for i in range(0, len(self.messages), chunk_size)]
        written = set()
        chunk_infos = []
        for n, chunk in enumerate(chunks):
            chunk_pos = len(out)
            inner = bytearray()
            introduce = [c for c in self.connections if c not in written] if n == 0 else []
            introduce += [c for c, _, _ in chunk if c not in written and c not in introduce]
            for conn_id in introduce:
                inner += self._connection_record(conn_id)
                written.add(conn_id)

            entries = {}
            for conn_id, ts, payload in chunk:
                entries.setdefault(conn_id, []).append((ts, len(inner)))
                inner += _record([_op(0x02), ("conn", _u32(conn_id)), ("time", _time(ts))], payload)

            codec = chunk_compressions[n] if chunk_compressions else compression
            payload = _compress(codec, bytes(inner))
            if n in corrupt_chunks:
                payload = b"\xff" * len(payload)
            out += _record([_op(0x05), ("compression", codec.encode()), ("size", _u32(len(inner)))], payload)

            for conn_id, items in entries.items():
                data = b"".join(struct.pack("<IIi", *divmod(ts, SEC), offset) for ts, offset in items)
                out += _record([_op(0x04), ("ver", _u32(1)), ("conn", _u32(conn_id)),
                                ("count", _u32(len(items)))], data)

            stamps = [ts for _, ts, _ in chunk]
            chunk_infos.append((chunk_pos, min(stamps), max(stamps),
                                {c: len(items) for c, items in entries.items()}))

        if indexed:
            index_pos = len(out)
            for conn_id in self.connections:
                out += self._connection_record(conn_id)
            for chunk_pos, start, end, counts in chunk_infos:
                data = b"".join(struct.pack("<II", c, k) for c, k in counts.items())
                out += _record([_op(0x06), ("ver", _u32(1)), ("chunk_pos", struct.pack("<Q", chunk_pos)),
                                ("start_time", _time(start)), ("end_time", _time(end)),
                                ("count", _u32(len(counts)))], data)
            header = self._bag_header(index_pos, len(self.connections), len(chunk_infos))
            out[header_pos:header_pos + len(header)] = header

        return bytes(out)


def gps_bag(n=4, lat0=29.45, lon0=-98.61, step=0.001, with_chatter=True):
    """A bag with a NavSatFix track of ``n`` fixes, one per second, plus a chatter topic."""
    bag = FakeBag().connection(0, "/gps/fix", NAVSATFIX_TYPE, NAVSATFIX_MD5, NAVSATFIX_DEF)
    if with_chatter:
        bag.connection(1, "/chatter", STRING_TYPE, STRING_MD5, STRING_DEF)
    for i in range(n):
        ts = T0 + i * SEC
        bag.message(0, ts, navsatfix_payload(lat0 + i * step, lon0 + i * step, 200.0 + i, stamp=ts, seq=i))
        if with_chatter:
            bag.message(1, ts + SEC // 2, string_payload(f"hello {i}"))
    return bag


def write_bag(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path
