"""Tests for the remote poll scheduler."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from drivesync.scheduler import RemotePollScheduler


class TestRemotePollScheduler:
    """Test scheduling and self-removal of the poll job."""

    def _scheduler(self, interval=30):
        self.active = True
        self.poll = AsyncMock(return_value=None)
        return RemotePollScheduler(self.poll, interval, is_active=lambda: self.active)

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = self._scheduler()

        scheduler.start()
        status = scheduler.get_status()

        assert scheduler.running
        assert status["running"] is True
        assert status["interval_seconds"] == 30
        assert status["next_run"] is not None

        scheduler.stop()
        assert not scheduler.running
        assert scheduler.get_status()["next_run"] is None

    @pytest.mark.asyncio
    async def test_double_start_and_stop_are_harmless(self):
        scheduler = self._scheduler()
        scheduler.start()
        scheduler.start()
        assert len(scheduler.scheduler.get_jobs()) == 1

        scheduler.stop()
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_polls_periodically(self):
        scheduler = self._scheduler(interval=0.1)
        scheduler.start()
        try:
            await asyncio.sleep(0.45)
        finally:
            scheduler.stop()

        assert self.poll.await_count >= 2
        assert scheduler.run_count >= 2
        assert scheduler.last_run is not None

    @pytest.mark.asyncio
    async def test_inactive_tick_removes_job(self):
        scheduler = self._scheduler()
        scheduler.start()

        self.active = False
        await scheduler._run_poll()

        self.poll.assert_not_awaited()
        assert scheduler.scheduler.get_job(RemotePollScheduler.JOB_ID) is None
        await scheduler._run_poll()
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_active_tick_runs_poll(self):
        scheduler = self._scheduler()
        await scheduler._run_poll()
        self.poll.assert_awaited_once()

    def test_error_listener_records_failure(self):
        scheduler = self._scheduler()

        scheduler._job_error(Mock(job_id="remote_poll", exception=RuntimeError("drive down")))
        scheduler._job_missed(Mock(job_id="remote_poll", scheduled_run_time=None))

        status = scheduler.get_status()
        assert status["error_count"] == 1
        assert status["run_count"] == 1
        assert status["last_error"] == "drive down"
