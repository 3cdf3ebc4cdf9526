"""Catalog persistence.

- database: shared SQLite connection and schema
- locks: key-scoped mutual exclusion
- dedup: checksum reservation gate
- message_types: global content-addressed message type catalog
- store: bag metadata persistence (``bagcatalog.catalog.store``)
"""

from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.catalog.locks import KeyedLock
from bagcatalog.catalog.dedup import DeduplicationGate, Reserved, AlreadyExists, compute_checksum
from bagcatalog.catalog.message_types import MessageType, MessageTypeCatalog

__all__ = [
    "CatalogDatabase",
    "KeyedLock",
    "DeduplicationGate",
    "Reserved",
    "AlreadyExists",
    "compute_checksum",
    "MessageType",
    "MessageTypeCatalog",
]
