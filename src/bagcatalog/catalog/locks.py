"""Key-scoped mutual exclusion."""

import threading
from contextlib import contextmanager
from typing import Hashable


class KeyedLock:
    """One lock per key, created on demand and dropped when unused.

    Threads holding different keys never block each other; threads
    holding the same key run one at a time::

        locks = KeyedLock()
        with locks.hold(checksum):
            ...  # check-then-insert for this checksum only
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.Lock(), 0]
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def active_keys(self) -> int:
        """Number of keys currently held or waited on."""
        with self._guard:
            return len(self._entries)
