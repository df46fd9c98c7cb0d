"""
Concurrency limiter shared by every outbound provider call
"""
from contextlib import contextmanager
from typing import Optional
import threading

DEFAULT_MAX_CONCURRENT = 6


class ConcurrencyLimiter:
    """Counting semaphore with a little bookkeeping for diagnostics"""

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = int(max_concurrent)
        self._semaphore = threading.BoundedSemaphore(self.max_concurrent)
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    @contextmanager
    def slot(self, timeout: Optional[float] = None):
        if not self._semaphore.acquire(timeout=timeout):
            raise TimeoutError("Timed out waiting for a free slot")
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        try:
            yield
        finally:
            with self._lock:
                self._active -= 1
            self._semaphore.release()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak
