"""Error taxonomy for bag ingestion.

Every failure that can end an ingestion attempt maps to one of these
classes. ``kind`` is the short name reported back to the discovery side
and ``retryable`` tells the orchestrator whether the file may succeed on
a later attempt.

Key distinction (same as ``ContractViolation`` in ``bagcatalog.contracts``):
- BagCatalogError: the file or the storage is the problem
- ContractViolation: the extraction code produced an inconsistent result
"""


class BagCatalogError(Exception):
    """Base class for all ingestion errors."""
    kind = "error"
    retryable = False


class NotFound(BagCatalogError):
    """The storage key does not exist."""
    kind = "not_found"


class PermissionDenied(BagCatalogError):
    """The storage refused read access."""
    kind = "permission_denied"


class Truncated(BagCatalogError):
    """A read ran past the end of the available bytes."""
    kind = "truncated"


class UnsupportedVersion(BagCatalogError):
    """The magic line names a format version this engine does not read."""
    kind = "unsupported_version"


class CorruptHeader(BagCatalogError):
    """The bag header record is missing or malformed."""
    kind = "corrupt_header"


class CorruptChunk(BagCatalogError):
    """One chunk could not be decompressed or decoded.

    Never escapes the parser: it is turned into a
    ``CorruptChunkRecord`` note and parsing continues with the next chunk.
    """
    kind = "corrupt_chunk"


class IngestionTimeout(BagCatalogError):
    """Open or read on the storage stalled longer than the configured timeout."""
    kind = "timeout"
    retryable = True


class IngestionCancelled(BagCatalogError):
    """The ingestion was cancelled between two chunks."""
    kind = "cancelled"
    retryable = True


class StorageUnreachable(BagCatalogError):
    """The backend holding the file cannot be reached right now."""
    kind = "storage_unreachable"
    retryable = True
