"""
Job dispatcher: expands a bounding box into tiles and drives them through
the worker pool until every tile is resolved, the deadline passes, or the
job is cancelled.
"""
import time
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .coords import GeoBoundingBox, TileCoordinate, TileRectangle, ZoomRange, rectangles_for
from .core import FetchOutcome, FetchResult, TileDownloader
from .pool import BoundedExecutor
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)


class JobState(Enum):
    NOT_STARTED = "not_started"
    ENUMERATING = "enumerating"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class JobSummary:
    state: JobState
    total: int
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: int = 0
    elapsed: float = 0.0
    failures: List[Tuple[TileCoordinate, str]] = field(default_factory=list)

    @property
    def resolved(self) -> int:
        return self.downloaded + self.skipped + self.failed

    @property
    def outstanding(self) -> int:
        return self.total - self.resolved

    @property
    def exit_code(self) -> int:
        return 0 if self.state is JobState.COMPLETED else 1

    def describe(self) -> str:
        text = (f"{self.state.value}: {self.downloaded} downloaded, {self.skipped} skipped, "
                f"{self.failed} failed of {self.total} tiles in {self.elapsed:.1f}s")
        if self.outstanding:
            text += f" ({self.outstanding} outstanding)"
        return text


class DownloadJob:
    """One download run over a bounding box and zoom range.

    The job owns its worker pool and shuts down the rate limiter it is given
    when it finishes. ``run()`` may be called once.
    """

    # Seconds between checks for cancellation and the deadline
    POLL_INTERVAL = 0.1
    MAX_RECORDED_FAILURES = 100
    PROGRESS_EVERY = 1000

    def __init__(self, bbox: GeoBoundingBox, zoom_range: ZoomRange,
                 downloader: TileDownloader, rate_limiter: RateLimiter,
                 concurrency: int = 4, max_pending: Optional[int] = None,
                 overall_timeout: float = 3600.0):
        self.bbox = bbox
        self.zoom_range = zoom_range
        self.downloader = downloader
        self.rate_limiter = rate_limiter
        self.concurrency = concurrency
        self.max_pending = max_pending
        self.overall_timeout = overall_timeout

        self.state = JobState.NOT_STARTED
        self.current_zoom: Optional[int] = None
        self._cancel_requested = False
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._counts: Dict[FetchOutcome, int] = {outcome: 0 for outcome in FetchOutcome}
        self._failures: List[Tuple[TileCoordinate, str]] = []

    def cancel(self):
        """Ask the job to stop.

        Only sets a flag, so it is safe from signal handlers; the dispatcher
        notices it within POLL_INTERVAL.
        """
        self._cancel_requested = True

    def run(self) -> JobSummary:
        if self.state is not JobState.NOT_STARTED:
            raise RuntimeError("A DownloadJob can only be run once")

        started = time.monotonic()
        deadline = started + self.overall_timeout
        rectangles = rectangles_for(self.bbox, self.zoom_range)
        total = sum(rect.tile_count for rect in rectangles)
        logger.info(f"Starting download of {total} tiles, zoom {self.zoom_range.min_zoom}-"
                    f"{self.zoom_range.max_zoom}, {self.concurrency} workers")

        pool = BoundedExecutor(self.concurrency, self.max_pending)
        self.rate_limiter.start()
        final_state = JobState.CANCELLED
        try:
            stopped = self._dispatch(rectangles, pool, deadline)
            final_state = stopped if stopped is not None else self._drain(deadline)
        finally:
            self._shutdown(pool, final_state)
            self.state = final_state

        summary = self._summary(final_state, total, time.monotonic() - started)
        if final_state is JobState.COMPLETED:
            logger.info(f"All downloads completed: {summary.describe()}")
        else:
            logger.warning(f"Download stopped early: {summary.describe()}")
        return summary

    def _dispatch(self, rectangles: List[TileRectangle], pool: BoundedExecutor,
                  deadline: float) -> Optional[JobState]:
        """Submit every tile; returns a terminal state if stopped early."""
        for rect in rectangles:
            self.state = JobState.ENUMERATING
            self.current_zoom = rect.zoom
            logger.info(f"Processing zoom level {rect.zoom}: x={rect.x_min}-{rect.x_max}, "
                        f"y={rect.y_min}-{rect.y_max} ({rect.tile_count} tiles)")

            self.state = JobState.DISPATCHING
            for tile in rect.tiles():
                future = None
                while future is None:
                    stop = self._stop_state(deadline)
                    if stop is not None:
                        return stop
                    wait_for = min(self.POLL_INTERVAL, max(deadline - time.monotonic(), 0))
                    future = pool.submit(self._run_task, tile, timeout=wait_for)
                self._track(future)

        return None

    def _drain(self, deadline: float) -> JobState:
        """Wait for submitted tiles to resolve."""
        self.state = JobState.DRAINING
        logger.debug("All tiles submitted, waiting for workers")

        while True:
            with self._lock:
                outstanding = set(self._pending)
            if not outstanding:
                return JobState.COMPLETED
            stop = self._stop_state(deadline)
            if stop is not None:
                return stop
            wait_for = min(self.POLL_INTERVAL, max(deadline - time.monotonic(), 0))
            wait(outstanding, timeout=wait_for, return_when=FIRST_COMPLETED)

    def _stop_state(self, deadline: float) -> Optional[JobState]:
        if self._cancel_requested:
            logger.warning("Cancellation requested, stopping dispatch")
            return JobState.CANCELLED
        if time.monotonic() >= deadline:
            logger.warning(f"Overall timeout of {self.overall_timeout}s exceeded")
            return JobState.TIMED_OUT
        return None

    def _shutdown(self, pool: BoundedExecutor, final_state: JobState):
        # Closing the limiter releases workers blocked waiting for a permit.
        if final_state is JobState.COMPLETED:
            pool.shutdown(wait=True)
            self.rate_limiter.close()
        else:
            self.rate_limiter.close()
            pool.shutdown(wait=False, cancel_futures=True)

    def _track(self, future: Future):
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _run_task(self, tile: TileCoordinate) -> FetchResult:
        try:
            return self.downloader.fetch(tile)
        except Exception as e:
            logger.exception(f"Unexpected error fetching {tile}")
            return FetchResult(tile, FetchOutcome.FAILED, f"{type(e).__name__}: {e}")

    def _on_done(self, future: Future):
        with self._lock:
            self._pending.discard(future)
            if future.cancelled():
                return
            result: FetchResult = future.result()
            self._counts[result.outcome] += 1
            if result.outcome is FetchOutcome.FAILED and \
                    len(self._failures) < self.MAX_RECORDED_FAILURES:
                self._failures.append((result.tile, result.reason or ""))
            resolved = sum(self._counts.values())

        if resolved % self.PROGRESS_EVERY == 0:
            logger.info(f"Progress: {resolved} tiles processed")

    def _summary(self, state: JobState, total: int, elapsed: float) -> JobSummary:
        with self._lock:
            return JobSummary(
                state=state,
                total=total,
                downloaded=self._counts[FetchOutcome.DOWNLOADED],
                skipped=self._counts[FetchOutcome.SKIPPED],
                failed=self._counts[FetchOutcome.FAILED],
                cancelled=self._counts[FetchOutcome.CANCELLED],
                elapsed=elapsed,
                failures=list(self._failures),
            )
