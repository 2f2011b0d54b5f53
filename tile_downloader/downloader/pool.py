"""
Fixed-size worker pool with a bounded submission queue.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class BoundedExecutor:
    """Thread pool that blocks producers once ``max_pending`` tasks are in flight.

    ``ThreadPoolExecutor`` queues without limit; a bounded semaphore in front
    of it keeps memory flat no matter how many tiles are enumerated.
    """

    def __init__(self, max_workers: int, max_pending: Optional[int] = None):
        """Initialize the pool.

        Args:
            max_workers: Number of worker threads
            max_pending: Maximum number of queued plus running tasks
                (defaults to 16 per worker)
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self.max_pending = max(max_pending or max_workers * 16, max_workers)
        self._slots = threading.BoundedSemaphore(self.max_pending)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tile-worker"
        )
        logger.info(f"Initialized worker pool with {max_workers} workers, "
                    f"{self.max_pending} pending tasks max")

    def submit(self, fn: Callable[..., Any], *args: Any,
               timeout: Optional[float] = None) -> Optional[Future]:
        """Submit a task, waiting for a free slot.

        Args:
            fn: Callable to run on a worker
            *args: Arguments for ``fn``
            timeout: Maximum seconds to wait for a slot, None to wait forever

        Returns:
            The task's Future, or None if no slot freed up within ``timeout``
        """
        if not self._slots.acquire(timeout=timeout):
            return None
        try:
            future = self._executor.submit(fn, *args)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(self._release_slot)
        return future

    def _release_slot(self, _future: Future):
        self._slots.release()

    def shutdown(self, wait: bool = True, cancel_futures: bool = False):
        self._executor.shutdown(wait=wait, cancel_futures=cancel_futures)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=True)
