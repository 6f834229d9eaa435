"""Periodic job draining.

A tick fires every ``scheduler_interval_seconds``. Each tick recovers stale
jobs and then processes pending jobs oldest first until none are left,
including jobs created by the jobs it runs. Ticks never overlap: a tick that
fires while a drain is running is dropped.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional, Set

from loguru import logger as profile_logger
from sqlalchemy.orm import Session

from config import settings
from database import (
    JobStatus, JobType, SessionLocal, create_job, get_next_pending_job, recover_stale_jobs, utcnow,
)
from jobs import run_job
from monitoring import drain_in_progress, record_job, stale_jobs_recovered
from utils.formatting import error_message

logger = logging.getLogger(__name__)

_profile_sink_id: Optional[int] = None


def add_profile_log() -> None:
    """Send per-job timings to the rotating profile log (once per process).

    Everything else the scheduler logs goes through the stdlib handlers.
    """
    global _profile_sink_id
    if _profile_sink_id is None:
        _profile_sink_id = profile_logger.add(
            settings.worker_profile_log, rotation="1 week", retention="4 weeks", level="INFO"
        )


class Scheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: Optional[float] = None,
        poll_interval_minutes: Optional[float] = None,
        stale_timeout_seconds: Optional[int] = None,
        min_progress_interval_ms: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.scheduler_interval_seconds
        self.poll_interval_seconds = (poll_interval_minutes or settings.poll_interval_minutes) * 60
        self.stale_timeout_seconds = stale_timeout_seconds or settings.stale_job_timeout_seconds
        self.min_progress_interval_ms = min_progress_interval_ms

        self._drain_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False

        self.last_drain_at: Optional[datetime] = None
        self.last_poll_at: Optional[datetime] = None
        self.jobs_processed = 0

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    async def tick(self) -> bool:
        """Run one drain unless one is already running. Returns whether it ran."""
        # No await between the check and the acquire, so this cannot race
        if self._drain_lock.locked():
            logger.debug("[cron] Drain already in progress, skipping tick")
            return False

        async with self._drain_lock:
            drain_in_progress.set(1)
            try:
                await self.drain()
            except Exception as e:
                logger.exception(f"[cron] Job processing error: {error_message(e)}")
            finally:
                drain_in_progress.set(0)
        return True

    async def drain(self) -> int:
        """Recover stale jobs, then process pending jobs until the queue is empty."""
        start = time.time()
        processed = 0
        db = self.session_factory()
        try:
            recovered = recover_stale_jobs(db, self.stale_timeout_seconds)
            if recovered:
                stale_jobs_recovered.inc(recovered)
                logger.warning(f"[cron] Recovered {recovered} stale job(s)")

            seen = set()
            while True:
                job = get_next_pending_job(db)
                if job is None:
                    break

                job_id, job_type = job.id, job.type
                if job_id in seen:
                    # Claiming or failing it did not stick; try again next tick
                    logger.error(f"[cron] Job {job_id} is still pending after running, stopping drain")
                    break
                seen.add(job_id)

                await self._process(db, job_id, job_type)
                processed += 1
        finally:
            db.close()
            self.last_drain_at = utcnow()

        if processed:
            logger.info(f"[cron] Drained {processed} job(s) in {time.time() - start:.2f}s")
        return processed

    async def _process(self, db: Session, job_id: int, job_type: str) -> None:
        start = time.time()
        try:
            ran = await run_job(db, job_id, self.min_progress_interval_ms)
            status = JobStatus.COMPLETED if ran else None
        except Exception as e:
            # The job has been marked failed already; keep draining
            db.rollback()
            status = JobStatus.FAILED
            logger.error(f"[job:{job_id}] {job_type} failed: {error_message(e)}")

        if status is None:
            return

        elapsed = time.time() - start
        self.jobs_processed += 1
        record_job(job_type, status, elapsed)
        profile_logger.info(f"[job:{job_id}] {job_type} {status} in {elapsed:.2f} seconds")

    def enqueue_poll(self) -> int:
        """Queue a poll_sources job covering every podcast."""
        db = self.session_factory()
        try:
            job = create_job(db, JobType.POLL_SOURCES)
        finally:
            db.close()
        self.last_poll_at = utcnow()
        logger.info(f"[cron] Queued poll_sources job {job.id}")
        return job.id

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_forever(self) -> None:
        """Fire a tick every interval and a poll every poll interval until stopped."""
        loop = asyncio.get_running_loop()
        next_poll = loop.time() + self.poll_interval_seconds
        self._stopping = False
        logger.info(
            f"[cron] Background job scheduler started "
            f"(every {self.interval_seconds}s, polling sources every {self.poll_interval_seconds / 60:g} min)"
        )

        try:
            while not self._stopping:
                if loop.time() >= next_poll:
                    next_poll = loop.time() + self.poll_interval_seconds
                    try:
                        self.enqueue_poll()
                    except Exception as e:
                        logger.error(f"[cron] Poll scheduling error: {error_message(e)}")

                self._spawn(self.tick())
                await asyncio.sleep(self.interval_seconds)
        finally:
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("[cron] Background job scheduler stopped")

    def stop(self) -> None:
        self._stopping = True


# Global instance
scheduler = Scheduler()
