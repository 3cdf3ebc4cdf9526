"""Storage backends and storage identifiers."""

from bagcatalog.storage.backends import (
    FileRef,
    LocalFilesystemBackend,
    ObjectStoreBackend,
    ArchiveBackend,
)
from bagcatalog.storage.registry import StorageRegistry

__all__ = [
    "FileRef",
    "LocalFilesystemBackend",
    "ObjectStoreBackend",
    "ArchiveBackend",
    "StorageRegistry",
]
