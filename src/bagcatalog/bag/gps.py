"""GPS track extraction.

Picks the messages whose type is in the configured allow-list of
geolocation schemas, decodes them with a ``rosbags`` typestore built from
the bag's own message definitions, and merges every matching topic into
one chronological track.

Coordinates are stored in the catalog as a single WKT point. Latitude
and longitude are read back with ``latitude_deg``/``longitude_deg``.
"""

import logging
import math
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

import numpy as np
from rosbags.serde import SerdeError
from rosbags.typesys import Stores, TypesysError, get_typestore, get_types_from_msg

from bagcatalog.bag.records import ConnectionRecord, MessageRecord
from bagcatalog.schemas.param import normalize_type_name

if TYPE_CHECKING:
    from bagcatalog.schemas import InternalConfig

__all__ = [
    'BagPosition',
    'Coordinate',
    'GpsTrackExtractor',
    'representative_coordinate',
    'latitude_deg',
    'longitude_deg',
]

logger = logging.getLogger(__name__)

_WKT_POINT = re.compile(r'^\s*POINT\s*\(\s*(\S+)\s+(\S+)\s*\)\s*$', re.IGNORECASE)

_DECODE_ERRORS = (SerdeError, ValueError, IndexError, KeyError, TypeError, struct.error, UnicodeDecodeError)


@dataclass(frozen=True)
class BagPosition:
    """One GPS sample. ``timestamp`` is nanoseconds since the epoch."""
    timestamp: int
    latitude: float
    longitude: float
    altitude: Optional[float] = None

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1e9, tz=timezone.utc)


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def to_wkt(self) -> str:
        return f"POINT({self.longitude!r} {self.latitude!r})"

    @classmethod
    def from_wkt(cls, wkt: str) -> "Coordinate":
        match = _WKT_POINT.match(wkt)
        if not match:
            raise ValueError(f"Not a WKT point: {wkt!r}")
        lon, lat = (float(v) for v in match.groups())
        return cls(latitude=lat, longitude=lon)


def latitude_deg(wkt: Optional[str]) -> Optional[float]:
    """Latitude of a stored WKT point, or None (also for NULL read back as NaN)."""
    return Coordinate.from_wkt(wkt).latitude if isinstance(wkt, str) and wkt else None


def longitude_deg(wkt: Optional[str]) -> Optional[float]:
    """Longitude of a stored WKT point, or None."""
    return Coordinate.from_wkt(wkt).longitude if isinstance(wkt, str) and wkt else None


def representative_coordinate(positions: list[BagPosition]) -> Optional[Coordinate]:
    """Centre of the bounding box of a track.

    Parameters
    ----------
    positions : list of BagPosition

    Returns
    -------
    Coordinate or None
        None for an empty track.
    """
    if not positions:
        return None
    lats = np.array([p.latitude for p in positions], dtype=np.float64)
    lons = np.array([p.longitude for p in positions], dtype=np.float64)
    return Coordinate(
        latitude=float((lats.min() + lats.max()) / 2.0),
        longitude=float((lons.min() + lons.max()) / 2.0),
    )


def decimate(positions: list[BagPosition], max_positions: Optional[int]) -> list[BagPosition]:
    """Keep at most ``max_positions`` evenly spaced samples, first and last included."""
    if max_positions is None or len(positions) <= max_positions:
        return positions
    idx = np.unique(np.linspace(0, len(positions) - 1, max_positions).round().astype(int))
    return [positions[i] for i in idx]


def _to_rosbags_name(type_name: str) -> str:
    if "/msg/" in type_name:
        return type_name
    return type_name.replace("/", "/msg/", 1)


def _resolve(msg, path: str):
    value = msg
    for attr in path.split("."):
        value = getattr(value, attr)
    return value


class GpsTrackExtractor:
    """Builds the GPS track of one bag from its record stream.

    Create one per ingestion: it holds the typestore the bag's message
    definitions are registered into.

    Parameters
    ----------
    config : InternalConfig
        Uses ``gps.geo_message_types`` and ``gps.max_positions``.
    typestore : rosbags Typestore, optional
        Base typestore. Defaults to the ROS1 Noetic store.
    """

    def __init__(self, config: "InternalConfig", typestore=None):
        self.mappings = config.gps.geo_message_types
        self.max_positions = config.gps.max_positions
        self._typestore = typestore

        self._geo_connections: dict[int, tuple] = {}
        self._rejected: set[int] = set()
        self._samples: list[BagPosition] = []
        self._decode_failures: dict[int, int] = {}
        self._skipped_invalid = 0
        self.notes: list[str] = []

    def wants(self, connection: ConnectionRecord) -> bool:
        """True if the connection carries an allow-listed geolocation type."""
        return normalize_type_name(connection.message_type) in self.mappings

    def consume(self, record):
        if isinstance(record, MessageRecord):
            if record.conn_id in self._geo_connections:
                self._decode(record)
        elif isinstance(record, ConnectionRecord):
            if (record.conn_id not in self._geo_connections
                    and record.conn_id not in self._rejected
                    and self.wants(record)):
                self._register(record)

    def _store(self):
        if self._typestore is None:
            self._typestore = get_typestore(Stores.ROS1_NOETIC)
        return self._typestore

    def _register(self, conn: ConnectionRecord):
        typename = _to_rosbags_name(conn.message_type)
        store = self._store()
        if typename not in store.fielddefs:
            try:
                types = get_types_from_msg(conn.message_definition, typename)
                store.register({k: v for k, v in types.items() if k not in store.fielddefs})
            except (TypesysError, ValueError) as e:
                self._rejected.add(conn.conn_id)
                self.notes.append(f"GPS topic {conn.topic}: cannot load {conn.message_type} definition: {e}")
                logger.warning("Cannot register %s for %s: %s", conn.message_type, conn.topic, e)
                return

        mapping = self.mappings[normalize_type_name(conn.message_type)]
        self._geo_connections[conn.conn_id] = (typename, mapping, conn.topic)
        logger.debug("GPS source: %s (%s)", conn.topic, conn.message_type)

    def _decode(self, record: MessageRecord):
        typename, mapping, topic = self._geo_connections[record.conn_id]
        try:
            msg = self._store().deserialize_ros1(record.payload, typename)
            lat = float(_resolve(msg, mapping.latitude))
            lon = float(_resolve(msg, mapping.longitude))
            alt = float(_resolve(msg, mapping.altitude)) if mapping.altitude else None
        except (AttributeError, *_DECODE_ERRORS):
            self._decode_failures[record.conn_id] = self._decode_failures.get(record.conn_id, 0) + 1
            return

        if not (math.isfinite(lat) and math.isfinite(lon)) or abs(lat) > 90.0 or abs(lon) > 180.0:
            self._skipped_invalid += 1
            return
        if alt is not None and not math.isfinite(alt):
            alt = None

        self._samples.append(BagPosition(record.timestamp, lat, lon, alt))

    def finish(self) -> list[BagPosition]:
        """Return the merged track, sorted by timestamp.

        ``sorted`` is stable, so samples with equal timestamps keep the
        order they arrived in.
        """
        for conn_id, n in self._decode_failures.items():
            _typename, _mapping, topic = self._geo_connections[conn_id]
            self.notes.append(f"GPS topic {topic}: {n} message(s) could not be decoded")
        if self._skipped_invalid:
            self.notes.append(f"Skipped {self._skipped_invalid} GPS fix(es) without a valid position")

        track = sorted(self._samples, key=lambda p: p.timestamp)
        return decimate(track, self.max_positions)
