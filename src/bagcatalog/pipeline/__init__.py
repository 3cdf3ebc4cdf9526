"""Ingestion pipeline.

- results: per-file outcome
- ingestor: one ingestion attempt and the worker thread running it
- scanner: discovery thread feeding the work queue
- orchestrator: lifecycle of scanner and workers
"""

from bagcatalog.pipeline.results import IngestionResult
from bagcatalog.pipeline.ingestor import BagIngestor, IngestionWorker
from bagcatalog.pipeline.scanner import CatalogScanner
from bagcatalog.pipeline.orchestrator import IndexingOrchestrator

__all__ = [
    "IngestionResult",
    "BagIngestor",
    "IngestionWorker",
    "CatalogScanner",
    "IndexingOrchestrator",
]
