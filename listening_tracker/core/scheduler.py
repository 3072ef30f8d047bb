"""Timer scheduling for ticks, periodic saves and debounced writes."""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger


class TimerScheduler:
    """Runs interval and one-shot jobs on the asyncio event loop.

    Every job runs through :meth:`_safe_call`, so an exception raised by a
    job is logged and never cancels the timer that invoked it.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        """Initialize scheduler.

        Args:
            logger: Logger instance
            scheduler: APScheduler instance (a fresh AsyncIOScheduler if None)
        """
        self.logger = logger or logging.getLogger(__name__)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            self.logger.debug("Timer scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler, dropping every pending job.

        AsyncIOScheduler defers its shutdown to the event loop; yielding once
        lets it complete before this returns.
        """
        try:
            if self.scheduler.running:
                self.scheduler.remove_all_jobs()
                self.scheduler.shutdown(wait=False)
                await asyncio.sleep(0)
                self.logger.debug("Timer scheduler stopped")
        except Exception as e:
            self.logger.error(f"Error stopping scheduler: {e}")

    def schedule_interval(self, job_id: str, func: Callable[[], Any], seconds: float) -> None:
        """Run ``func`` every ``seconds``, replacing any job with the same id."""
        self.scheduler.add_job(
            self._safe_call,
            trigger=IntervalTrigger(seconds=seconds),
            args=[job_id, func],
            id=job_id,
            name=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
        )

    def schedule_once(
        self,
        job_id: str,
        func: Callable[[], Any],
        delay_seconds: float,
        replace_existing: bool = False
    ) -> bool:
        """Run ``func`` once after ``delay_seconds``.

        With ``replace_existing`` False an already pending job with the same
        id is kept, which coalesces bursts of requests into one run.

        Returns:
            True if a job was scheduled or rescheduled
        """
        if not replace_existing and self.has_job(job_id):
            return False

        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            self._safe_call,
            trigger=DateTrigger(run_date=run_date),
            args=[job_id, func],
            id=job_id,
            name=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        return True

    def cancel(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def has_job(self, job_id: str) -> bool:
        return self.scheduler.get_job(job_id) is not None

    def get_next_run_time(self, job_id: str) -> Optional[str]:
        """Get the next run time of a job.

        Returns:
            Next run time as string, or None if the job is not scheduled
        """
        job = self.scheduler.get_job(job_id)
        if job and job.next_run_time:
            return str(job.next_run_time)
        return None

    def is_running(self) -> bool:
        return self.scheduler.running

    async def _safe_call(self, job_id: str, func: Callable[[], Any]) -> None:
        """Wrapper for job functions with error handling.

        Accepts plain and coroutine functions.
        """
        try:
            result = func()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Error in scheduled job '{job_id}': {e}", exc_info=True)
