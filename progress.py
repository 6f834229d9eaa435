"""
Rate-limited job progress publishing.

Adapters report progress far more often than the database needs to see it
(yt-dlp calls its hook for every chunk). ProgressReporter keeps only the
latest (progress, message) pair and writes it at most once per interval,
with a trailing write so the last value is never lost.
"""
import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session

from database import update_job_progress

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Coalescing progress writer for a single job.

    Must be used from the event loop thread; adapters that report from
    worker threads hand their updates over with ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        db: Session,
        job_id: int,
        min_interval_ms: int = 800,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.job_id = job_id
        self.min_interval = min_interval_ms / 1000
        self._clock = clock
        self._last_flush: Optional[float] = None
        self._pending: Optional[Tuple[int, str]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._high_water = 0
        self._closed = False

    @property
    def pending(self) -> Optional[Tuple[int, str]]:
        return self._pending

    def update(self, progress: float, message: str) -> None:
        """Record the latest progress; write now or schedule a trailing write."""
        if self._closed:
            return

        # Progress never moves backwards within a job
        progress = max(self._high_water, min(100, max(0, int(round(progress)))))
        self._high_water = progress
        self._pending = (progress, message)

        elapsed = None if self._last_flush is None else self._clock() - self._last_flush
        if elapsed is None or elapsed >= self.min_interval:
            self._cancel_timer()
            self._write()
        elif self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.min_interval - elapsed, self._on_timer)

    def flush(self) -> None:
        """Cancel any scheduled write and persist the pending value now."""
        self._cancel_timer()
        self._write()

    def close(self) -> None:
        """Flush and ignore any later updates (e.g. from an abandoned thread)."""
        self.flush()
        self._closed = True

    def _on_timer(self) -> None:
        self._timer = None
        self._write()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _write(self) -> None:
        if self._pending is None:
            return
        progress, message = self._pending
        self._pending = None
        self._last_flush = self._clock()
        try:
            update_job_progress(self.db, self.job_id, progress, message)
        except Exception as e:
            # Best-effort: progress is advisory and never fails the job
            logger.debug(f"[job:{self.job_id}] Progress write dropped: {e}")
