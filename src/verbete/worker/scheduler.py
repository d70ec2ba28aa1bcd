"""Wall-clock scheduler for the periodic jobs.

Jobs run once per local day (or once a week, on a set weekday) at a
configured time:
- expiry_check: Expiration alerts (09:00)
- expired_cleanup: Expired-token sweep (00:30)
- daily_digest: Admin summary (08:00)
- communication_cleanup: Communication log purge (Sundays, 02:00)

Each job holds its own asyncio.Lock. A scheduled fire while the job is
still running is skipped; a manual trigger raises JobAlreadyRunningError.
The locks live in this process only, so a deployment must run a single
scheduler instance.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from typing import TYPE_CHECKING, Any

from verbete.worker.handlers import (
    communication_cleanup_handler,
    daily_digest_handler,
    expired_cleanup_handler,
    expiry_check_handler,
)

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from verbete.core.config import SchedulerSettings
    from verbete.worker.context import JobContext, JobHandler

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Base exception for scheduler operations."""


class UnknownJobError(SchedulerError):
    """Raised when a job name is not scheduled."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown job: {name}")


class JobAlreadyRunningError(SchedulerError):
    """Raised when a manual trigger hits a job that is in flight."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Job already running: {name}")


@dataclass
class ScheduledJob:
    """Definition of a daily or weekly job.

    Attributes:
        name: Job name, also used for manual triggers.
        at: Local time of day the job fires.
        handler: Coroutine function doing the work.
        enabled: Whether the job fires on schedule.
        weekday: Fire only on this weekday (0 = Monday); None means daily.
        last_run_on: Local date of the last scheduled fire.
    """

    name: str
    at: time
    handler: JobHandler
    enabled: bool = True
    weekday: int | None = None
    last_run_on: date | None = None


def default_schedules(settings: SchedulerSettings) -> list[ScheduledJob]:
    """The standard jobs at their configured times."""
    return [
        ScheduledJob("expiry_check", settings.expiry_check_at, expiry_check_handler),
        ScheduledJob("expired_cleanup", settings.expired_cleanup_at, expired_cleanup_handler),
        ScheduledJob("daily_digest", settings.daily_digest_at, daily_digest_handler),
        ScheduledJob(
            "communication_cleanup",
            settings.communication_cleanup_at,
            communication_cleanup_handler,
            weekday=settings.communication_cleanup_weekday,
        ),
    ]


class JobScheduler:
    """Fires daily jobs and guards each against overlapping runs.

    Example:
        scheduler = JobScheduler(session_factory, context)
        await scheduler.tick()                 # fire whatever is due
        await scheduler.run_job("expiry_check")  # manual trigger
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        context: JobContext,
        schedules: list[ScheduledJob] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            session_factory: Factory for per-run database sessions.
            context: Collaborators passed to every handler.
            schedules: Job definitions (the defaults when omitted).
        """
        self._session_factory = session_factory
        self.context = context
        self.tz: ZoneInfo = context.settings.scheduler.tzinfo
        jobs = schedules if schedules is not None else default_schedules(context.settings.scheduler)
        self._schedules: dict[str, ScheduledJob] = {job.name: job for job in jobs}
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self._schedules}

    @property
    def job_names(self) -> list[str]:
        return list(self._schedules)

    def is_running(self, name: str) -> bool:
        return name in self._locks and self._locks[name].locked()

    def is_due(self, job: ScheduledJob, now: datetime) -> bool:
        """Due once the local time passes ``job.at``, at most once per local day.

        Weekly jobs are only due on their weekday.
        """
        if not job.enabled:
            return False
        local = now.astimezone(self.tz)
        if job.weekday is not None and local.weekday() != job.weekday:
            return False
        return local.time() >= job.at and job.last_run_on != local.date()

    def prime(self, now: datetime | None = None) -> None:
        """Mark jobs whose time already passed today as done.

        Called at startup so a restart late in the day does not replay
        that day's jobs.
        """
        local = (now or datetime.now(UTC)).astimezone(self.tz)
        for job in self._schedules.values():
            if local.time() >= job.at:
                job.last_run_on = local.date()

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Fire every due job, in definition order.

        Errors are logged; the other jobs still run.

        Returns:
            Names of the jobs that ran.
        """
        now = now or datetime.now(UTC)
        ran: list[str] = []

        for job in self._schedules.values():
            if not self.is_due(job, now):
                continue
            job.last_run_on = now.astimezone(self.tz).date()

            if self.is_running(job.name):
                logger.warning("Skipping scheduled run, job still in flight: job=%s", job.name)
                continue

            try:
                await self._execute(job)
                ran.append(job.name)
            except Exception as e:
                logger.exception("Scheduled job failed: job=%s, error=%s", job.name, e)

        return ran

    async def run_job(self, name: str) -> dict[str, Any] | None:
        """Run a job now, outside its schedule.

        Raises:
            UnknownJobError: No job with that name.
            JobAlreadyRunningError: The job is in flight.
        """
        job = self._schedules.get(name)
        if job is None:
            raise UnknownJobError(name)
        if self.is_running(name):
            raise JobAlreadyRunningError(name)

        logger.info("Manual job trigger: job=%s", name)
        return await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> dict[str, Any] | None:
        async with self._locks[job.name]:
            started = datetime.now(UTC)
            logger.info("Job started: job=%s", job.name)

            async with self._session_factory() as session:
                try:
                    result = await job.handler(session, self.context)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

            elapsed = (datetime.now(UTC) - started).total_seconds()
            logger.info("Job completed: job=%s, elapsed=%.2fs, result=%s", job.name, elapsed, result)
            return result


async def run_scheduler_loop(
    scheduler: JobScheduler,
    check_interval: float = 30.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the scheduler until ``shutdown_event`` is set.

    Args:
        scheduler: Scheduler to drive.
        check_interval: Seconds between checks.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    scheduler.prime()
    logger.info(
        "Scheduler starting: check_interval=%ss, timezone=%s, jobs=%s",
        check_interval,
        scheduler.tz,
        ",".join(scheduler.job_names),
    )

    while not shutdown_event.is_set():
        try:
            ran = await scheduler.tick()
            if ran:
                logger.debug("Jobs run this tick: %s", ran)
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        # wait_for lets a shutdown interrupt the sleep
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Scheduler stopped")
