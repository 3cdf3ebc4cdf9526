"""Single-file bag ingestion.

``BagIngestor.ingest`` runs one file through the whole engine and never
lets an exception escape: every outcome is an ``IngestionResult``.
``IngestionWorker`` is the thread that feeds it from the work queue.
"""

import logging
import queue
import threading
from typing import Callable, Optional, TYPE_CHECKING

from bagcatalog.bag.gps import GpsTrackExtractor, representative_coordinate
from bagcatalog.bag.metadata import BagMetadata, MetadataExtractor
from bagcatalog.bag.parser import BagFormatParser
from bagcatalog.bag.reader import BinaryReader
from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.catalog.dedup import AlreadyExists, DeduplicationGate, compute_checksum
from bagcatalog.catalog.message_types import MessageTypeCatalog
from bagcatalog.catalog.store import BagCatalog
from bagcatalog.contracts import ContractViolation, FailurePolicy, assert_metadata_consistent
from bagcatalog.errors import BagCatalogError, NotFound, StorageUnreachable
from bagcatalog.pipeline.results import IngestionResult
from bagcatalog.storage.backends import FileRef
from bagcatalog.storage.registry import StorageRegistry

if TYPE_CHECKING:
    from bagcatalog.schemas import InternalConfig

__all__ = ['BagIngestor', 'IngestionWorker']

logger = logging.getLogger(__name__)


class BagIngestor:
    """Ingests one bag file at a time; safe to share between worker threads.

    **Sequence per file:**

    1. Stat the key on its backend (size).
    2. Open a checked reader and digest every byte (checksum).
    3. Reserve the checksum. A taken checksum ends here as ``duplicate``.
    4. One parse pass feeding both the metadata and the GPS extractor.
    5. Representative coordinate, storage id, metadata contract.
    6. Persist the graph and commit the reservation in one transaction.

    Any failure after step 3 releases the reservation so the content can
    be retried. Damaged chunks are not failures: the bag is committed with
    ``degraded=True`` and extraction notes.

    Parameters
    ----------
    config : InternalConfig
        Fully validated runtime configuration.
    backends : dict or list
        Storage backends, keyed (or keyable) by ``backend_id``.
    db : CatalogDatabase
        Shared catalog database.
    typestore : rosbags Typestore, optional
        Base typestore for GPS decoding (tests); a fresh ROS1 store per
        file otherwise.
    """

    def __init__(self, config: "InternalConfig", backends, db: CatalogDatabase,
                 message_types: Optional[MessageTypeCatalog] = None,
                 gate: Optional[DeduplicationGate] = None,
                 registry: Optional[StorageRegistry] = None,
                 catalog: Optional[BagCatalog] = None,
                 typestore=None):
        self.config = config
        if isinstance(backends, dict):
            self.backends = dict(backends)
        else:
            self.backends = {b.backend_id: b for b in backends}
        self.db = db
        self.message_types = message_types or MessageTypeCatalog(db)
        self.gate = gate or DeduplicationGate(db)
        self.registry = registry or StorageRegistry(db)
        self.catalog = catalog or BagCatalog(db, self.message_types)
        self.parser = BagFormatParser(config)
        self._typestore = typestore

    def ingest(self, ref: FileRef, cancel_event: Optional[threading.Event] = None) -> IngestionResult:
        """Catalog one file.

        Parameters
        ----------
        ref : FileRef
            Backend and key of the file.
        cancel_event : threading.Event, optional
            Set it to abandon the ingestion between two chunks.

        Returns
        -------
        IngestionResult
        """
        backend = self.backends.get(ref.backend_id)
        if backend is None:
            return IngestionResult.failed(ref, NotFound.kind, f"Unknown backend: {ref.backend_id}")

        logger.info("Ingesting: %s", ref)
        checksum = None
        reserved = False
        try:
            size = backend.stat_size(ref.key)
            with BinaryReader.open(backend, ref.key, timeout=self.config.reader.chunk_read_timeout_sec) as reader:
                checksum = compute_checksum(reader, self.config.ingestion.checksum_algorithm,
                                            self.config.reader.checksum_block_size, cancel_event)
                outcome = self.gate.reserve(checksum)
                if isinstance(outcome, AlreadyExists):
                    logger.info("Duplicate: %s (checksum %s, bag %s)", ref, checksum, outcome.existing_id)
                    return IngestionResult.duplicate(ref, outcome.existing_id)
                reserved = True

                meta = self._extract(reader, backend, ref, size, cancel_event)

            meta.checksum = checksum
            meta.storage_id = self.registry.assign(ref.backend_id, ref.key)
            assert_metadata_consistent(meta)

            bag_id = self.catalog.persist(meta)
            reserved = False

            if meta.degraded:
                logger.warning("Ingested with damage: %s -> bag %d (%s)", ref, bag_id, "; ".join(meta.notes))
            else:
                logger.info("Ingested: %s -> bag %d", ref, bag_id)
            return IngestionResult.ingested(ref, bag_id, degraded=meta.degraded)

        except StorageUnreachable as e:
            known = self._known_bag(ref)
            if known is not None:
                self.catalog.mark_missing(known)
                logger.warning("Storage unreachable, marked bag %d missing: %s", known, ref)
                return IngestionResult.duplicate(ref, known, missing=True)
            logger.warning("Storage unreachable: %s (%s)", ref, e)
            return IngestionResult.failed(ref, e.kind, str(e), retryable=True)

        except BagCatalogError as e:
            logger.error("Failed to ingest %s: [%s] %s", ref, e.kind, e)
            return IngestionResult.failed(ref, e.kind, str(e), retryable=e.retryable)

        except ContractViolation as e:
            logger.critical("CRITICAL: Metadata contract violated for %s: %s", ref, e)
            return IngestionResult.failed(ref, "contract_violation", str(e))

        except Exception as e:
            logger.exception("Error ingesting %s", ref)
            return IngestionResult.failed(ref, "internal", str(e))

        finally:
            if reserved:
                self.gate.release(checksum)

    def _extract(self, reader: BinaryReader, backend, ref: FileRef, size: int,
                 cancel_event: Optional[threading.Event]) -> BagMetadata:
        metadata = MetadataExtractor(self.message_types)
        gps = GpsTrackExtractor(self.config, typestore=self._typestore)

        for record in self.parser.parse(reader, wants=gps.wants, cancel_event=cancel_event):
            metadata.consume(record)
            gps.consume(record)

        filename, path = backend.describe(ref.key)
        meta = metadata.finish(filename, path, size)
        meta.positions = gps.finish()
        meta.coordinate = representative_coordinate(meta.positions)
        meta.notes.extend(gps.notes)
        return meta

    def _known_bag(self, ref: FileRef) -> Optional[int]:
        storage_id = self.registry.lookup(ref.backend_id, ref.key)
        if storage_id is None:
            return None
        return self.catalog.find_by_storage_id(storage_id)


class IngestionWorker(threading.Thread):
    """Pulls ``FileRef`` items off a queue and ingests them.

    One file at a time per worker; run several workers for parallelism.
    A result is handed to ``on_result`` for every item taken off the queue.

    Parameters
    ----------
    input_queue : queue.Queue
        Work queue of FileRef items (filled by ``CatalogScanner``).
    ingestor : BagIngestor
        Shared ingestor.
    on_result : callable, optional
        Called with each IngestionResult.
    failure_policy : str
        ``fail_fast`` stops this worker on a contract violation.
    name : str, optional
        Thread name for logging.
    """

    def __init__(self, input_queue: queue.Queue, ingestor: BagIngestor,
                 on_result: Optional[Callable[[IngestionResult], None]] = None,
                 failure_policy: str = FailurePolicy.FAIL_FILE.value,
                 name: str = "IngestionWorker"):
        super().__init__(daemon=True, name=name)
        self.input_queue = input_queue
        self.ingestor = ingestor
        self.on_result = on_result
        self.failure_policy = FailurePolicy(failure_policy)
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self.processed = 0

    def stop(self, cancel: bool = False):
        """Signal worker to stop; ``cancel=True`` also abandons the file in progress."""
        self._stop_event.set()
        if cancel:
            self._cancel_event.set()

    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self):
        logger.info("%s started, waiting for files...", self.name)

        while not self.stopped():
            try:
                ref = self.input_queue.get(timeout=1)
            except queue.Empty:
                continue

            try:
                result = self.ingestor.ingest(ref, cancel_event=self._cancel_event)
                self.processed += 1
                if self.on_result is not None:
                    self.on_result(result)
                if (result.error_kind == "contract_violation"
                        and self.failure_policy == FailurePolicy.FAIL_FAST):
                    logger.critical("This indicates a bug in extraction logic. Stopping %s.", self.name)
                    self.stop()
            except Exception:
                logger.exception("Failed to ingest: %s", ref)
            finally:
                self.input_queue.task_done()

        logger.info("%s stopped", self.name)
