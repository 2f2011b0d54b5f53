"""
Permit-pool rate limiter shared by all download workers.
"""
import time
import logging
import threading
from typing import Optional

import schedule

from ..exceptions import DownloadCancelled

logger = logging.getLogger(__name__)


class RateLimiter:
    """Bounds how many downloads may start per refill interval.

    The pool holds up to ``permits`` permits. Each ``acquire()`` consumes one;
    a background job tops the pool back up to ``permits`` once per
    ``interval`` seconds. Refill resets to the cap instead of adding, so
    unused permits never accumulate.
    """

    # How often the refill thread polls its scheduler
    POLL_INTERVAL = 0.01

    def __init__(self, permits: int, interval: float = 1.0):
        if permits < 1:
            raise ValueError(f"permits must be >= 1, got {permits}")
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")

        self.permits = permits
        self.interval = interval
        self._available = permits
        self._cond = threading.Condition()
        self._closed = threading.Event()
        self._scheduler = schedule.Scheduler()
        self._thread: Optional[threading.Thread] = None
        logger.info(f"Initialized RateLimiter with {permits} permits every {interval}s")

    @property
    def available(self) -> int:
        with self._cond:
            return self._available

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self):
        """Start the periodic refill job in a background thread."""
        if self._thread is not None:
            return
        self._scheduler.every(self.interval).seconds.do(self.refill)
        self._thread = threading.Thread(
            target=self._run_refills, name="rate-limit-refill", daemon=True
        )
        self._thread.start()

    def _run_refills(self):
        while not self._closed.wait(self.POLL_INTERVAL):
            self._scheduler.run_pending()

    def refill(self):
        """Reset the pool to its cap and wake any waiting workers."""
        with self._cond:
            self._available = self.permits
            self._cond.notify_all()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take one permit, blocking until one is available.

        Args:
            timeout: Maximum seconds to wait, or None to wait until a permit
                is available or the limiter is closed

        Returns:
            bool: True if a permit was taken, False if the timeout elapsed

        Raises:
            DownloadCancelled: If the limiter is closed
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed.is_set():
                    raise DownloadCancelled("Rate limiter closed")
                if self._available > 0:
                    self._available -= 1
                    return True
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._cond.wait(remaining)

    def close(self):
        """Stop refilling and release every worker blocked in acquire()."""
        if self._closed.is_set():
            return
        self._closed.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._scheduler.clear()
        logger.debug("Rate limiter closed")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
