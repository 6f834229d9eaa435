import asyncio
from unittest.mock import Mock, patch

from progress import ProgressReporter


def recorded(mock_write):
    return [(c.args[2], c.args[3]) for c in mock_write.call_args_list]


class TestProgressReporter:

    @patch('progress.update_job_progress')
    def test_first_update_is_written_immediately(self, mock_write):
        async def scenario():
            reporter = ProgressReporter(Mock(), 1, min_interval_ms=50)
            reporter.update(5, "Metadata retrieved")

        asyncio.run(scenario())
        assert recorded(mock_write) == [(5, "Metadata retrieved")]

    @patch('progress.update_job_progress')
    def test_burst_is_coalesced_to_last_value(self, mock_write):
        """Updates inside one interval produce a single trailing write of the latest value"""
        async def scenario():
            reporter = ProgressReporter(Mock(), 1, min_interval_ms=50)
            reporter.update(10, "Downloading… 10%")
            for pct in (20, 30, 40):
                reporter.update(pct, f"Downloading… {pct}%")
            assert mock_write.call_count == 1
            await asyncio.sleep(0.2)

        asyncio.run(scenario())
        assert recorded(mock_write) == [(10, "Downloading… 10%"), (40, "Downloading… 40%")]

    @patch('progress.update_job_progress')
    def test_flush_writes_pending_exactly_once(self, mock_write):
        async def scenario():
            reporter = ProgressReporter(Mock(), 1, min_interval_ms=50)
            reporter.update(10, "a")
            reporter.update(20, "b")
            reporter.flush()
            assert reporter.pending is None
            # The scheduled trailing write was cancelled
            await asyncio.sleep(0.2)

        asyncio.run(scenario())
        assert recorded(mock_write) == [(10, "a"), (20, "b")]

    @patch('progress.update_job_progress')
    def test_flush_with_nothing_pending_is_noop(self, mock_write):
        reporter = ProgressReporter(Mock(), 1)
        reporter.flush()
        reporter.flush()
        mock_write.assert_not_called()

    @patch('progress.update_job_progress')
    def test_progress_never_decreases_and_is_clamped(self, mock_write):
        async def scenario():
            reporter = ProgressReporter(Mock(), 1, min_interval_ms=0)
            reporter.update(50, "half")
            reporter.update(30, "late callback")
            reporter.update(150, "overshoot")

        asyncio.run(scenario())
        assert [p for p, _ in recorded(mock_write)] == [50, 50, 100]

    @patch('progress.update_job_progress')
    def test_close_ignores_later_updates(self, mock_write):
        async def scenario():
            reporter = ProgressReporter(Mock(), 1, min_interval_ms=50)
            reporter.update(10, "a")
            reporter.update(20, "b")
            reporter.close()
            reporter.update(30, "from an abandoned thread")
            await asyncio.sleep(0.2)

        asyncio.run(scenario())
        assert recorded(mock_write) == [(10, "a"), (20, "b")]

    @patch('progress.update_job_progress', side_effect=RuntimeError("database is locked"))
    def test_write_errors_are_swallowed(self, mock_write):
        async def scenario():
            reporter = ProgressReporter(Mock(), 1, min_interval_ms=0)
            reporter.update(10, "a")
            reporter.flush()

        asyncio.run(scenario())
        assert mock_write.call_count == 1

    @patch('progress.update_job_progress')
    def test_uses_injected_clock(self, mock_write):
        now = [100.0]
        reporter = ProgressReporter(Mock(), 1, min_interval_ms=800, clock=lambda: now[0])

        async def scenario():
            reporter.update(10, "a")
            now[0] += 1.0
            # A full interval has passed, so this writes without a timer
            reporter.update(20, "b")

        asyncio.run(scenario())
        assert recorded(mock_write) == [(10, "a"), (20, "b")]
