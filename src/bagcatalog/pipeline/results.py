"""Per-file ingestion outcomes reported back to discovery."""

from dataclasses import dataclass
from typing import Optional

__all__ = ['IngestionResult']

INGESTED = "ingested"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of one ``BagIngestor.ingest`` call.

    ``status`` is one of ``ingested``, ``duplicate`` or ``failed``. A failed
    result carries the error ``kind`` from ``bagcatalog.errors`` (or
    ``contract_violation`` / ``internal``) and whether a retry may succeed.
    """
    ref: object
    status: str
    bag_id: Optional[int] = None
    existing_id: Optional[int] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    message: str = ""
    degraded: bool = False
    missing: bool = False

    @classmethod
    def ingested(cls, ref, bag_id: int, degraded: bool = False) -> "IngestionResult":
        return cls(ref, INGESTED, bag_id=bag_id, degraded=degraded)

    @classmethod
    def duplicate(cls, ref, existing_id: Optional[int], missing: bool = False) -> "IngestionResult":
        return cls(ref, DUPLICATE, existing_id=existing_id, missing=missing)

    @classmethod
    def failed(cls, ref, kind: str, message: str, retryable: bool = False) -> "IngestionResult":
        return cls(ref, FAILED, error_kind=kind, retryable=retryable, message=message)

    @property
    def ok(self) -> bool:
        return self.status != FAILED
