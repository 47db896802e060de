"""
Striped per-key locking.
Unrelated task identifiers rarely share a stripe, so updates for different
tasks proceed in parallel while updates for one task are serialised.
"""

import threading
import zlib
from contextlib import contextmanager

from conversion_client.core.constants import LOCK_STRIPES


class StripedLock:
    def __init__(self, stripes: int = LOCK_STRIPES):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.RLock() for _ in range(stripes)]

    def _index(self, key: str) -> int:
        # crc32 is stable across processes, unlike hash()
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @contextmanager
    def hold(self, *keys: str):
        """Acquire the stripes for all keys in a fixed order."""
        indexes = sorted({self._index(k) for k in keys if k})
        acquired = []
        try:
            for i in indexes:
                self._locks[i].acquire()
                acquired.append(i)
            yield
        finally:
            for i in reversed(acquired):
                self._locks[i].release()
