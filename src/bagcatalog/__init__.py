"""`bagcatalog` - ingestion and indexing engine for ROS1 bag catalogs.

Subpackages:
- bag: container reader, record parser, metadata and GPS extraction
- storage: storage backends and storage identifiers
- catalog: SQLite catalog, checksum deduplication, message type catalog
- pipeline: ingestion workers, discovery scanner, orchestrator
"""

__version__ = "0.1.0"
