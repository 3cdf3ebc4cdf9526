"""Multi-threaded indexing orchestration.

Coordinates the scanner thread and the ingestion worker threads with a
bounded work queue. Manages lifecycle, monitoring, and graceful shutdown.
"""

import queue
import threading
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, TYPE_CHECKING

from bagcatalog.catalog.database import CatalogDatabase
from bagcatalog.catalog.dedup import DeduplicationGate
from bagcatalog.catalog.message_types import MessageTypeCatalog
from bagcatalog.catalog.store import BagCatalog
from bagcatalog.errors import StorageUnreachable
from bagcatalog.pipeline.ingestor import BagIngestor, IngestionWorker
from bagcatalog.pipeline.results import IngestionResult
from bagcatalog.pipeline.scanner import CatalogScanner
from bagcatalog.setup_directories import (
    get_catalog_path,
    get_export_path,
    get_log_path,
    setup_output_directories,
)
from bagcatalog.storage.backends import FileRef, LocalFilesystemBackend
from bagcatalog.storage.registry import StorageRegistry

if TYPE_CHECKING:
    from bagcatalog.schemas import InternalConfig

__all__ = ['IndexingOrchestrator']

logger = logging.getLogger(__name__)


class IndexingOrchestrator:
    """Manages the multi-threaded bag indexing engine.

    This is the main entry point for running ``bagcatalog``. It wires one
    shared catalog database into the dedup gate, the message type catalog,
    the storage registry and the bag store, and runs a scanner thread plus
    ``max_concurrent_ingestions`` worker threads around a bounded queue.

    **Architecture:**

    1. **Scanner Thread**: Walks the storage backends and queues every
       candidate bag file not yet cataloged.

    2. **Worker Threads**: Each takes one file at a time off the queue and
       runs it through ``BagIngestor``: checksum, dedup, parse, extract,
       persist. Files are independent; only the dedup gate and the message
       type catalog are shared.

    **Modes:**

    - **Once**: Scan every backend once, ingest everything, sweep missing
      files, export and exit.

    - **Watch**: Re-scan every ``scanner.poll_interval_sec`` until stopped
      or ``max_runtime`` is exceeded.

    **Queue Management:**

    The work queue holds at most ``ingestion.queue_size`` files. When the
    workers fall behind, the scanner blocks (backpressure).

    **Logging:**

    All output goes to both console and log file (logs/indexer.log).
    Log level controlled via config: "DEBUG", "INFO", "WARNING", "ERROR".

    Example usage::

        from bagcatalog.pipeline.orchestrator import IndexingOrchestrator

        orch = IndexingOrchestrator(config)
        orch.start()                       # once mode: returns when done

        results = orch.ingest_all(refs)    # or a synchronous batch
    """

    def __init__(self, config: "InternalConfig", backends=None, output_dirs: Optional[dict] = None,
                 db: Optional[CatalogDatabase] = None, sleeper=None, status_interval: int = 30,
                 typestore=None):
        """Initialize orchestrator with validated configuration.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration.
        backends : list, optional
            Storage backends. Defaults to one ``LocalFilesystemBackend`` per
            ``scanner.roots`` entry.
        output_dirs : dict, optional
            From ``setup_output_directories``. Created under ``base_dir``
            when omitted.
        db : CatalogDatabase, optional
            Shared catalog. Opened at ``catalog/<db_filename>`` when omitted
            (and then closed by ``stop()``).
        sleeper : callable, optional
            Function to sleep (for testing). If None, uses `time.sleep`.
        status_interval : int
            Seconds between status lines in the monitoring loop.
        typestore : rosbags Typestore, optional
            Base typestore for GPS decoding.
        """
        self.config = config
        self.output_dirs = output_dirs or setup_output_directories(config.base_dir)

        if backends is None:
            backends = [
                LocalFilesystemBackend(root, patterns=config.scanner.patterns,
                                       min_file_size=config.scanner.min_file_size)
                for root in config.scanner.roots
            ]
        self.backends = {b.backend_id: b for b in backends}

        self._owns_db = db is None
        self.db = db or CatalogDatabase(get_catalog_path(self.output_dirs, config.catalog.db_filename))
        self.message_types = MessageTypeCatalog(self.db)
        self.gate = DeduplicationGate(self.db)
        self.registry = StorageRegistry(self.db)
        self.catalog = BagCatalog(self.db, self.message_types)
        self.ingestor = BagIngestor(
            config, self.backends, self.db,
            message_types=self.message_types,
            gate=self.gate,
            registry=self.registry,
            catalog=self.catalog,
            typestore=typestore,
        )

        self.work_queue = queue.Queue(maxsize=config.ingestion.queue_size)

        # Threads (created in start())
        self.scanner = None
        self.workers: list[IngestionWorker] = []

        self._results: list[IngestionResult] = []
        self._results_lock = threading.Lock()
        self._sleep = sleeper or time.sleep
        self._status_interval = status_interval

        # Lifecycle state
        self._stop_event = False
        self._start_time = None
        self._max_duration = None
        self._swept_scans = 0

    @property
    def results(self) -> list[IngestionResult]:
        """Results of every file handled so far, in completion order."""
        with self._results_lock:
            return list(self._results)

    def _record(self, result: IngestionResult):
        with self._results_lock:
            self._results.append(result)
        if result.retryable and self.scanner is not None:
            self.scanner.forget(result.ref)

    def _setup_logging(self):
        """Configure root logger with file and console handlers.

        Log level from ``config.logging.level``; file at logs/indexer.log.
        """
        log_level = getattr(logging, self.config.logging.level, logging.INFO)
        log_path = get_log_path(self.output_dirs)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Clear existing handlers and add new ones
        root = logging.getLogger()
        root.setLevel(log_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)

        # File handler
        fh = logging.FileHandler(log_path)
        fh.setLevel(log_level)
        fh.setFormatter(formatter)
        root.addHandler(fh)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(log_level)
        ch.setFormatter(formatter)
        root.addHandler(ch)

        logger.info("Logging: level=%s, file=%s", self.config.logging.level, log_path)

    # ------------------------------------------------------------------
    # Threaded mode
    # ------------------------------------------------------------------

    def start(self, max_runtime: Optional[int] = None, setup_logging: bool = True):
        """Start the indexer and run until completion or user interrupt.

        Blocking. Starts the scanner and worker threads, then monitors them,
        logging status every ``status_interval`` seconds.

        **Once Mode:** Returns when every discovered file was handled.

        **Watch Mode:** Runs until Ctrl+C or ``max_runtime`` is exceeded.

        Parameters
        ----------
        max_runtime : int, optional
            Maximum runtime in minutes (watch mode only).
            If None, runs until KeyboardInterrupt (Ctrl+C).
        setup_logging : bool
            Install the file and console handlers (off in tests).

        Notes
        -----
        The stop() method is called automatically to stop threads, export
        results and close the catalog.
        """
        if setup_logging:
            self._setup_logging()

        logger.info("=" * 60)
        logger.info("Starting Bag Indexer")
        logger.info("=" * 60)

        self._start_time = time.time()
        self._max_duration = max_runtime * 60 if max_runtime else None

        if self._max_duration:
            logger.info("Max runtime: %d minutes", max_runtime)
        elif self.config.mode == "watch":
            logger.info("Max runtime: Until interrupted")

        self.gate.reset_stale(self.config.ingestion.stale_reservation_sec)

        n_workers = self.config.ingestion.max_concurrent_ingestions
        logger.info("Starting %d worker(s)...", n_workers)
        for i in range(n_workers):
            worker = IngestionWorker(
                input_queue=self.work_queue,
                ingestor=self.ingestor,
                on_result=self._record,
                failure_policy=self.config.ingestion.failure_policy,
                name=f"IngestionWorker-{i + 1}",
            )
            worker.start()
            self.workers.append(worker)

        logger.info("Starting Scanner...")
        self.scanner = CatalogScanner(
            backends=list(self.backends.values()),
            output_queue=self.work_queue,
            mode=self.config.mode,
            poll_interval_sec=self.config.scanner.poll_interval_sec,
            skip=self._already_cataloged,
            sleeper=self._sleep,
        )
        self.scanner.start()

        logger.info("Indexer running in %s mode. Press Ctrl+C to stop.", self.config.mode.upper())

        try:
            self._main_loop()
        except KeyboardInterrupt:
            logger.info("Shutdown signal received (Ctrl+C)")
        finally:
            self.stop()

    def _main_loop(self):
        """Main monitoring loop."""
        last_status = time.time()
        while True:
            if not any(w.is_alive() for w in self.workers):
                logger.error("All workers stopped")
                break

            if self.config.mode == "once":
                if self._check_once_complete():
                    break
            else:
                if self._max_duration and time.time() - self._start_time > self._max_duration:
                    logger.info("Max duration reached")
                    break
                if self.scanner.scan_count > self._swept_scans:
                    self._swept_scans = self.scanner.scan_count
                    self.sweep_missing()

            self._sleep(1)
            if time.time() - last_status >= self._status_interval:
                self._log_status()
                last_status = time.time()

    def _check_once_complete(self) -> bool:
        """Check if a once-mode run is complete. Returns True to exit."""
        if not (self.scanner.is_complete() or not self.scanner.is_alive()):
            return False

        logger.info("Scanner complete: %d file(s) queued", self.scanner.queued_count)
        self._drain_queue(self.work_queue, "ingestion")
        self.sweep_missing()
        logger.info("Once mode complete")
        return True

    def _drain_queue(self, q: queue.Queue, name: str, timeout: int = 3600):
        """Wait until every queued file was handled, with timeout."""
        start_time = time.time()
        while q.unfinished_tasks > 0:
            if not any(w.is_alive() for w in self.workers):
                logger.warning("No live workers left for %s queue", name)
                break
            if (time.time() - start_time) > timeout:
                logger.warning("%s queue drain timeout (%d seconds)", name, timeout)
                break
            logger.debug("Waiting for %s queue: %d remaining", name, q.unfinished_tasks)
            self._sleep(1)

    def _already_cataloged(self, ref: FileRef) -> bool:
        storage_id = self.registry.lookup(ref.backend_id, ref.key)
        return storage_id is not None and self.catalog.find_by_storage_id(storage_id) is not None

    def stop(self):
        """Stop the indexer gracefully and finalize all results.

        Safe to call multiple times.

        **Operations:**

        1. Signals the scanner and all workers to stop
        2. Waits up to 5 seconds for each thread to finish
        3. Exports the bag table to Parquet (exports/)
        4. Logs catalog statistics and closes the catalog
        """
        if self._stop_event:
            return

        self._stop_event = True
        logger.info("Stopping indexer...")

        if self.scanner:
            self.scanner.stop()
        for worker in self.workers:
            worker.stop(cancel=True)

        threads = [("Scanner", self.scanner)] + [(w.name, w) for w in self.workers]
        for name, thread in threads:
            if thread and thread.is_alive():
                thread.join(timeout=5)
                if thread.is_alive():
                    logger.warning("%s did not stop cleanly", name)

        if self.workers:
            self.save_results()

        elapsed = time.time() - self._start_time if self._start_time else 0
        logger.info("=" * 60)
        logger.info("Indexer stopped. Runtime: %.1f seconds", elapsed)
        self._log_statistics()
        logger.info("=" * 60)

        if self._owns_db:
            self.db.close()

    def _log_status(self):
        """Log current indexer status."""
        with self._results_lock:
            done = len(self._results)
        logger.info(
            "Status: S=%s W=%d/%d Q=%d done=%d",
            "✓" if self.scanner and self.scanner.is_alive() else "✗",
            sum(1 for w in self.workers if w.is_alive()),
            len(self.workers),
            self.work_queue.qsize(),
            done,
        )

    def _log_statistics(self):
        counts = {"ingested": 0, "duplicate": 0, "failed": 0}
        for result in self.results:
            counts[result.status] += 1
        logger.info("This run: ingested=%d, duplicate=%d, failed=%d",
                    counts["ingested"], counts["duplicate"], counts["failed"])
        stats = self.catalog.get_statistics()
        logger.info("Catalog: bags=%d, missing=%d, degraded=%d, message_types=%d",
                    stats["total"], stats["missing"], stats["degraded"], stats["message_types"])

    # ------------------------------------------------------------------
    # Synchronous operations
    # ------------------------------------------------------------------

    def ingest_all(self, refs, cancel_event: Optional[threading.Event] = None) -> list[IngestionResult]:
        """Ingest a batch of files and wait for all of them.

        At most ``ingestion.max_concurrent_ingestions`` files are in flight.

        Parameters
        ----------
        refs : iterable of FileRef
        cancel_event : threading.Event, optional
            Abandons every in-flight ingestion between two chunks.

        Returns
        -------
        list of IngestionResult
            In the order of ``refs``.
        """
        refs = list(refs)
        with ThreadPoolExecutor(max_workers=self.config.ingestion.max_concurrent_ingestions,
                                thread_name_prefix="ingest") as pool:
            results = list(pool.map(lambda ref: self.ingestor.ingest(ref, cancel_event), refs))
        for result in results:
            self._record(result)
        return results

    def sweep_missing(self) -> dict:
        """Re-check that every cataloged bag is still on its storage.

        Bags whose file is gone are marked missing; bags whose file is back
        are marked present. Bags on an unreachable backend are left alone.

        Returns
        -------
        dict
            ``checked``, ``marked_missing``, ``marked_present``, ``unreachable``.
        """
        stats = {"checked": 0, "marked_missing": 0, "marked_present": 0, "unreachable": 0}
        for row in self.catalog.list_storage_ids():
            ref = self.registry.resolve(row["storage_id"])
            backend = self.backends.get(ref.backend_id) if ref else None
            if backend is None:
                stats["unreachable"] += 1
                continue
            try:
                exists = backend.check_exists(ref.key)
            except StorageUnreachable:
                stats["unreachable"] += 1
                continue

            stats["checked"] += 1
            was_missing = bool(row["missing"])
            if exists == was_missing:
                self.catalog.mark_missing(row["id"], not exists)
                stats["marked_present" if exists else "marked_missing"] += 1
                logger.info("Bag %d %s: %s", row["id"], "present again" if exists else "missing", ref)

        logger.info("Missing sweep: checked=%d, missing=%d, present=%d, unreachable=%d",
                    stats["checked"], stats["marked_missing"], stats["marked_present"], stats["unreachable"])
        return stats

    def save_results(self, filepath: Optional[Path] = None) -> int:
        """Export the catalog's bag table to Parquet (exports/ by default)."""
        filepath = filepath or get_export_path(self.output_dirs)
        return self.catalog.save_results(filepath, compression=self.config.catalog.export_compression)
