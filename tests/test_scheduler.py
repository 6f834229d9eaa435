import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from database import Job, JobStatus, JobType, create_job, create_source, SourceType, utcnow
from jobs import run_job
from scheduler import Scheduler
from utils.yt_download import VideoMetadata


def make_scheduler(**kwargs):
    kwargs.setdefault("min_progress_interval_ms", 0)
    kwargs.setdefault("stale_timeout_seconds", 30 * 60)
    return Scheduler(**kwargs)


def statuses(db):
    db.expire_all()
    return {job.id: job.status for job in db.query(Job).all()}


class TestStaleRecovery:

    def test_stuck_job_is_failed(self, db):
        stuck = create_job(db, JobType.DOWNLOAD_VIDEO, {})
        recent = create_job(db, JobType.DOWNLOAD_VIDEO, {})
        for job, age in ((stuck, 31), (recent, 5)):
            job.status = JobStatus.PROCESSING
            job.started_at = utcnow() - timedelta(minutes=age)
        db.commit()

        with patch("scheduler.run_job", new=AsyncMock()) as mock_run:
            asyncio.run(make_scheduler().drain())

        db.expire_all()
        stuck = db.query(Job).filter(Job.id == stuck.id).one()
        assert stuck.status == JobStatus.FAILED
        assert stuck.error == "Job timed out after 30 minutes"
        assert stuck.ended_at is not None
        assert db.query(Job).filter(Job.id == recent.id).one().status == JobStatus.PROCESSING
        # Neither was pending, so nothing ran
        mock_run.assert_not_awaited()


class TestDrain:

    def test_drains_jobs_created_during_the_drain(self, db, podcast, fakes):
        """N pending jobs spawning M more are all processed in one drain, oldest first"""
        fakes.youtube.playlist = [VideoMetadata(id="A", title="A"), VideoMetadata(id="B", title="B")]
        scan = create_job(db, JobType.SCAN_PLAYLIST, {"playlistId": "PL1", "podcastId": podcast.id})
        poll = create_job(db, JobType.POLL_SOURCES)

        order = []

        async def tracking_run_job(session, job_id, min_interval_ms=None):
            order.append(job_id)
            return await run_job(session, job_id, min_interval_ms)

        with patch("scheduler.run_job", side_effect=tracking_run_job):
            processed = asyncio.run(make_scheduler().drain())

        assert processed == 4
        assert order[:2] == [scan.id, poll.id]
        assert len(order) == 4
        assert set(statuses(db).values()) == {JobStatus.COMPLETED}
        assert sorted(fakes.youtube.downloaded) == ["A", "B"]

    def test_failing_job_does_not_halt_the_queue(self, db, fakes):
        broken = create_job(db, "transcribe")
        poll = create_job(db, JobType.POLL_SOURCES)

        scheduler = make_scheduler()
        processed = asyncio.run(scheduler.drain())

        assert processed == 2
        result = statuses(db)
        assert result[broken.id] == JobStatus.FAILED
        assert result[poll.id] == JobStatus.COMPLETED
        assert scheduler.jobs_processed == 2
        assert scheduler.last_drain_at is not None

    def test_job_that_stays_pending_stops_the_drain(self, db):
        job = create_job(db, JobType.POLL_SOURCES)

        with patch("scheduler.run_job", new=AsyncMock(return_value=None)) as mock_run:
            asyncio.run(make_scheduler().drain())

        assert mock_run.await_count == 1
        assert statuses(db)[job.id] == JobStatus.PENDING


class TestTick:

    def test_overlapping_tick_is_skipped(self, db):
        """A tick fired during a drain does nothing"""
        scheduler = make_scheduler()
        calls = []

        async def scenario():
            release = asyncio.Event()
            started = asyncio.Event()

            async def slow_drain():
                calls.append("drain")
                started.set()
                await release.wait()
                return 0

            with patch.object(scheduler, "drain", new=slow_drain):
                first = asyncio.create_task(scheduler.tick())
                await started.wait()
                assert scheduler.is_draining
                assert await scheduler.tick() is False
                release.set()
                assert await first is True

        asyncio.run(scenario())
        assert calls == ["drain"]
        assert not scheduler.is_draining

    def test_drain_errors_are_logged_not_raised(self, db):
        scheduler = make_scheduler()

        with patch("scheduler.recover_stale_jobs", side_effect=RuntimeError("connection refused")):
            assert asyncio.run(scheduler.tick()) is True

        assert not scheduler.is_draining

    def test_drain_errors_reach_the_application_log(self, db, caplog):
        scheduler = make_scheduler()

        with caplog.at_level(logging.ERROR, logger="scheduler"), \
                patch("scheduler.recover_stale_jobs", side_effect=RuntimeError("connection refused")):
            asyncio.run(scheduler.tick())

        assert "[cron] Job processing error: connection refused" in caplog.text


class TestPolling:

    def test_enqueue_poll_creates_unscoped_job(self, db):
        scheduler = make_scheduler()
        job_id = scheduler.enqueue_poll()

        db.expire_all()
        job = db.query(Job).filter(Job.id == job_id).one()
        assert job.type == JobType.POLL_SOURCES
        assert job.status == JobStatus.PENDING
        assert job.payload == {}
        assert scheduler.last_poll_at is not None

    def test_run_forever_ticks_and_polls_until_stopped(self, db, podcast, fakes):
        create_source(db, podcast.id, SourceType.PLAYLIST, "PL1")
        scheduler = make_scheduler(interval_seconds=0.01, poll_interval_minutes=0.03 / 60)

        async def scenario():
            task = asyncio.create_task(scheduler.run_forever())
            await asyncio.sleep(0.3)
            scheduler.stop()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        db.expire_all()
        polls = db.query(Job).filter(Job.type == JobType.POLL_SOURCES).all()
        scans = db.query(Job).filter(Job.type == JobType.SCAN_PLAYLIST).all()
        assert polls
        assert scans
        assert scheduler.last_drain_at is not None
