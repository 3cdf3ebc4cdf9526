"""ROS bag 2.0 reading.

- reader: checked binary reader with decompression filters
- records: transient record types yielded by the parser
- parser: lazy three-phase bag parser
- metadata: topic, count and time range extraction
- gps: geolocation track extraction
"""

from bagcatalog.bag.reader import BinaryReader
from bagcatalog.bag.parser import BagFormatParser
from bagcatalog.bag.metadata import BagMetadata, MetadataExtractor, Topic
from bagcatalog.bag.gps import BagPosition, Coordinate, GpsTrackExtractor, representative_coordinate

__all__ = [
    "BinaryReader",
    "BagFormatParser",
    "BagMetadata",
    "MetadataExtractor",
    "Topic",
    "BagPosition",
    "Coordinate",
    "GpsTrackExtractor",
    "representative_coordinate",
]
