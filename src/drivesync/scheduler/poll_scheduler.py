"""Periodic remote poll scheduling."""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..utils.logging import get_logger


class RemotePollScheduler:
    """Runs the remote poll on a fixed interval while sync is active.

    The job removes itself on the first tick after ``is_active()`` turns
    false.
    """

    JOB_ID = "remote_poll"

    def __init__(
        self,
        poll: Callable[[], Awaitable[Any]],
        interval_seconds: int,
        is_active: Callable[[], bool]
    ):
        self.poll = poll
        self.interval_seconds = interval_seconds
        self.is_active = is_active
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': max(1, int(interval_seconds))
            }
        )

        self.run_count = 0
        self.error_count = 0
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start polling; must be called from a running event loop."""
        if self.scheduler.running:
            self.logger.warning("Poll scheduler is already running")
            return

        self.scheduler.add_job(
            func=self._run_poll,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Remote poll",
            replace_existing=True
        )
        self.scheduler.start()
        self.logger.info("Remote poll scheduled", interval_seconds=self.interval_seconds)

    def stop(self):
        if not self.scheduler.running:
            return

        self.scheduler.shutdown(wait=False)
        self.logger.info("Remote poll stopped", run_count=self.run_count)

    def get_status(self) -> Dict[str, Any]:
        job = self.scheduler.get_job(self.JOB_ID) if self.scheduler.running else None
        return {
            "running": self.scheduler.running,
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
        }

    async def _run_poll(self):
        if not self.is_active():
            self.logger.info("Sync inactive, removing remote poll job")
            try:
                self.scheduler.remove_job(self.JOB_ID)
            except JobLookupError:
                pass
            return None

        return await self.poll()

    def _job_executed(self, event):
        self.run_count += 1
        self.last_run = datetime.now(timezone.utc)

    def _job_error(self, event):
        self.run_count += 1
        self.error_count += 1
        self.last_run = datetime.now(timezone.utc)
        self.last_error = str(event.exception)

        self.logger.error("Remote poll failed", job_id=event.job_id, error=str(event.exception))

    def _job_missed(self, event):
        self.logger.warning(
            "Remote poll missed",
            job_id=event.job_id,
            scheduled_run_time=event.scheduled_run_time
        )
