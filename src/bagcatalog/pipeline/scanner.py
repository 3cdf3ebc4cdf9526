"""Storage discovery.

Walks every configured backend and feeds candidate bag files into the
ingestion work queue, once or on a polling interval.
"""

import queue
import threading
import time
import logging
from typing import Callable, Optional

from bagcatalog.errors import BagCatalogError
from bagcatalog.storage.backends import FileRef

__all__ = ['CatalogScanner']

logger = logging.getLogger(__name__)


class CatalogScanner(threading.Thread):
    """Discovers bag files on storage backends and queues them for ingestion.

    **Once Mode:** Scans every backend a single time, queues what it found,
    then exits. Used for batch cataloging of an existing archive.

    **Watch Mode:** Re-scans every ``poll_interval_sec`` until stopped, so
    files copied onto storage later are picked up.

    **Backpressure:** ``put`` on the bounded work queue blocks while the
    workers are busy; the scanner re-checks ``stop()`` every second while
    waiting.

    **Deduplication:** A file is queued once per scanner lifetime unless
    ``forget`` is called for it, which the orchestrator does after a
    retryable failure. Content duplicates under other names are caught
    later by the checksum gate.
    ``skip`` lets the caller exclude files it already cataloged.

    **Unreachable storage:** A backend that raises ``StorageUnreachable``
    is logged and skipped for this scan; the others are still scanned.

    Example usage (typically called by orchestrator)::

        scanner = CatalogScanner(
            backends=[LocalFilesystemBackend("/data/bags")],
            output_queue=work_queue,
            mode="watch",
            poll_interval_sec=300,
        )
        scanner.start()
        ...
        scanner.stop()
        scanner.join(timeout=10)
    """

    def __init__(self, backends, output_queue: queue.Queue, mode: str = "once",
                 poll_interval_sec: int = 300,
                 skip: Optional[Callable[[FileRef], bool]] = None,
                 sleeper=None, name: str = "CatalogScanner"):
        """Initialize scanner.

        Parameters
        ----------
        backends : list
            Storage backends to walk, in order.
        output_queue : queue.Queue
            Bounded work queue read by the ingestion workers.
        mode : str
            ``once`` or ``watch``.
        poll_interval_sec : int
            Seconds between scans in watch mode.
        skip : callable, optional
            ``skip(ref) -> True`` excludes a file from the queue.
        sleeper : callable, optional
            Function to sleep (for testing). If None, uses `time.sleep`.
        name : str
            Thread name for logging.
        """
        super().__init__(daemon=True, name=name)
        self.backends = list(backends)
        self.output_queue = output_queue
        self.mode = mode
        self.poll_interval_sec = poll_interval_sec
        self._skip = skip
        self._sleep = sleeper or time.sleep

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._queued: set[FileRef] = set()
        self._scan_count = 0
        self._scan_complete = threading.Event()

    def stop(self):
        """Signal scanner to stop after the current file."""
        self._stop_event.set()

    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def is_complete(self) -> bool:
        """True once a once-mode scan has queued everything it found."""
        return self._scan_complete.is_set()

    @property
    def scan_count(self) -> int:
        return self._scan_count

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queued)

    def run(self):
        logger.info("Starting %s in %s mode", self.name, self.mode)

        while not self.stopped():
            try:
                self.scan_once()
            except Exception:
                logger.exception("Scan failed")

            if self.mode == "once":
                self._scan_complete.set()
                logger.info("Scan complete: %d file(s) queued", self.queued_count)
                break

            self._interruptible_sleep(self.poll_interval_sec)

        logger.info("Stopped %s", self.name)

    def _interruptible_sleep(self, seconds: int):
        """Sleep that can be interrupted by stop event."""
        for _ in range(max(1, seconds // 2)):
            if self.stopped():
                break
            self._sleep(2)

    def scan_once(self) -> list[FileRef]:
        """Walk every backend once and queue new candidates.

        Returns
        -------
        list of FileRef
            Files queued by this scan.
        """
        queued = []
        for backend in self.backends:
            try:
                for key in backend.iter_candidates():
                    if self.stopped():
                        return queued
                    ref = FileRef(backend.backend_id, key)
                    if self._should_queue(ref) and self._put(ref):
                        queued.append(ref)
            except BagCatalogError as e:
                logger.warning("Skipping backend %s: %s", backend.backend_id, e)

        self._scan_count += 1
        logger.debug("Scan %d: %d new file(s)", self._scan_count, len(queued))
        return queued

    def _should_queue(self, ref: FileRef) -> bool:
        with self._lock:
            if ref in self._queued:
                return False
        if self._skip is not None and self._skip(ref):
            logger.debug("Already cataloged: %s", ref)
            return False
        return True

    def forget(self, ref: FileRef) -> bool:
        """Allow ``ref`` to be queued again by the next scan (after a retryable failure)."""
        with self._lock:
            if ref not in self._queued:
                return False
            self._queued.discard(ref)
        logger.debug("Will rescan: %s", ref)
        return True

    def _put(self, ref: FileRef) -> bool:
        while not self.stopped():
            try:
                self.output_queue.put(ref, timeout=1)
            except queue.Full:
                continue
            with self._lock:
                self._queued.add(ref)
            logger.debug("Queued: %s", ref)
            return True
        return False
