"""Tests for the job scheduler, the job handlers and the worker entry point.

Tests verify:
- Jobs fire once per local day, after their configured time; weekly
  jobs only on their weekday
- A restart does not replay jobs whose time already passed
- Overlapping runs are skipped (scheduled) or refused (manual)
- Handler failures are logged and roll back their session
- Handlers wire the alert engine to the communication log
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, time, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from tests.factories import NOW, create_admin, create_communication, create_submission
from verbete.db.models import AdminUser, CommunicationLog
from verbete.worker.context import JobContext
from verbete.worker.main import run
from verbete.worker.scheduler import (
    JobAlreadyRunningError,
    JobScheduler,
    ScheduledJob,
    UnknownJobError,
    run_scheduler_loop,
)


@pytest.fixture
def context(settings, notifier) -> JobContext:
    return JobContext(settings=settings, notifier=notifier)


@pytest.fixture
def scheduler(session_factory, context) -> JobScheduler:
    """Scheduler with the default jobs."""
    return JobScheduler(session_factory, context)


def single_job(session_factory, context, handler, at=time(8, 0)) -> JobScheduler:
    return JobScheduler(session_factory, context, [ScheduledJob("job", at, handler)])


class TestSchedule:
    """Tests for due-time calculation."""

    def test_default_jobs(self, scheduler):
        assert scheduler.job_names == [
            "expiry_check",
            "expired_cleanup",
            "daily_digest",
            "communication_cleanup",
        ]

    def test_due_after_local_time(self, session_factory, context):
        """NOW is 09:00 in Sao Paulo, so an 08:00 job is due and a 10:00 one is not."""
        early = ScheduledJob("early", time(8, 0), AsyncMock())
        late = ScheduledJob("late", time(10, 0), AsyncMock())
        scheduler = JobScheduler(session_factory, context, [early, late])

        assert scheduler.is_due(early, NOW)
        assert not scheduler.is_due(late, NOW)

    def test_not_due_twice_on_same_day(self, session_factory, context):
        job = ScheduledJob("job", time(8, 0), AsyncMock(), last_run_on=NOW.date())
        scheduler = JobScheduler(session_factory, context, [job])

        assert not scheduler.is_due(job, NOW)
        assert scheduler.is_due(job, NOW + timedelta(days=1))

    def test_weekly_job_waits_for_its_weekday(self, scheduler):
        """NOW is a Monday; the log purge fires on Sunday after 02:00 local."""
        job = scheduler._schedules["communication_cleanup"]
        sunday = NOW + timedelta(days=6)

        assert job.weekday == 6
        assert job.at == time(2, 0)
        assert not scheduler.is_due(job, NOW)
        assert not scheduler.is_due(job, sunday - timedelta(hours=8))
        assert scheduler.is_due(job, sunday)
        assert not scheduler.is_due(job, sunday + timedelta(days=1))

    def test_disabled_job_never_due(self, session_factory, context):
        job = ScheduledJob("job", time(0, 0), AsyncMock(), enabled=False)
        scheduler = JobScheduler(session_factory, context, [job])

        assert not scheduler.is_due(job, NOW)

    def test_prime_skips_passed_jobs(self, scheduler):
        """At 08:30 local, cleanup (00:30) and digest (08:00) already passed today."""
        scheduler.prime(NOW - timedelta(minutes=30))

        due = [
            name
            for name in scheduler.job_names
            if scheduler.is_due(scheduler._schedules[name], NOW)
        ]
        assert due == ["expiry_check"]


class TestTick:
    """Tests for scheduled firing."""

    @pytest.mark.asyncio
    async def test_runs_due_job_once_per_day(self, session_factory, context):
        handler = AsyncMock(return_value={"ok": True})
        scheduler = single_job(session_factory, context, handler)

        first = await scheduler.tick(NOW)
        second = await scheduler.tick(NOW + timedelta(hours=1))
        next_day = await scheduler.tick(NOW + timedelta(days=1))

        assert first == ["job"]
        assert second == []
        assert next_day == ["job"]
        assert handler.await_count == 2
        session_arg, context_arg = handler.call_args.args
        assert context_arg is context

    @pytest.mark.asyncio
    async def test_handler_error_is_logged_and_others_run(
        self, session_factory, context, caplog
    ):
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock(return_value=None)
        scheduler = JobScheduler(
            session_factory,
            context,
            [
                ScheduledJob("failing", time(7, 0), failing),
                ScheduledJob("healthy", time(7, 30), healthy),
            ],
        )

        with caplog.at_level(logging.ERROR, logger="verbete.worker.scheduler"):
            ran = await scheduler.tick(NOW)

        assert ran == ["healthy"]
        assert "Scheduled job failed: job=failing" in caplog.text
        # No retry later the same day
        assert await scheduler.tick(NOW + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_commits_on_success(self, session_factory, context):
        async def handler(session, ctx):
            await create_admin(session, "novo@verbete.test")
            return None

        scheduler = single_job(session_factory, context, handler)
        await scheduler.run_job("job")

        async with session_factory() as session:
            count = await session.scalar(select(func.count(AdminUser.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_rolls_back_on_failure(self, session_factory, context):
        async def handler(session, ctx):
            await create_admin(session, "novo@verbete.test")
            raise RuntimeError("boom")

        scheduler = single_job(session_factory, context, handler)
        with pytest.raises(RuntimeError):
            await scheduler.run_job("job")

        async with session_factory() as session:
            count = await session.scalar(select(func.count(AdminUser.id)))
        assert count == 0


class TestOverlap:
    """Tests for the per-job lock."""

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler):
        with pytest.raises(UnknownJobError) as exc_info:
            await scheduler.run_job("nope")

        assert exc_info.value.name == "nope"

    @pytest.mark.asyncio
    async def test_running_job_refuses_manual_trigger_and_skips_tick(
        self, session_factory, context
    ):
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(session, ctx):
            started.set()
            await release.wait()
            return {"done": True}

        scheduler = single_job(session_factory, context, handler)
        first = asyncio.create_task(scheduler.run_job("job"))
        await started.wait()

        assert scheduler.is_running("job")
        with pytest.raises(JobAlreadyRunningError):
            await scheduler.run_job("job")
        assert await scheduler.tick(NOW) == []

        release.set()
        assert await first == {"done": True}
        assert not scheduler.is_running("job")


class TestSchedulerLoop:
    @pytest.mark.asyncio
    async def test_loop_stops_on_shutdown(self, session_factory, context):
        handler = AsyncMock(return_value=None)
        scheduler = single_job(session_factory, context, handler, at=time(23, 59, 59))
        shutdown = asyncio.Event()

        loop_task = asyncio.create_task(
            run_scheduler_loop(scheduler, check_interval=0.01, shutdown_event=shutdown)
        )
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(loop_task, timeout=1)

        assert loop_task.done()


class TestHandlers:
    """Handlers run the engine passes against the real clock."""

    @pytest.mark.asyncio
    async def test_expiry_check(self, session_factory, scheduler, notifier):
        now = datetime.now(UTC)
        async with session_factory() as session:
            await create_submission(session, now=now, expires_in=timedelta(days=2, hours=12))
            await session.commit()

        result = await scheduler.run_job("expiry_check")

        assert result["alerts_sent"] == 1
        assert result["thresholds"] == [5, 3, 1]
        notifier.send_expiration_alert.assert_awaited_once()
        async with session_factory() as session:
            count = await session.scalar(select(func.count(CommunicationLog.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_expired_cleanup(self, session_factory, scheduler, notifier):
        now = datetime.now(UTC)
        async with session_factory() as session:
            await create_submission(session, now=now, expires_in=timedelta(days=-1))
            await session.commit()

        result = await scheduler.run_job("expired_cleanup")

        assert result["expired_count"] == 1
        assert result["notified"] == 1
        assert result["admins_notified"] == 0
        assert "communications_purged" not in result

    @pytest.mark.asyncio
    async def test_communication_cleanup(self, session_factory, scheduler):
        """Rows past the six-month retention go; recent ones stay."""
        now = datetime.now(UTC)
        async with session_factory() as session:
            await create_communication(session, created_at=now - timedelta(days=200))
            await create_communication(session, created_at=now - timedelta(days=10))
            await session.commit()

        result = await scheduler.run_job("communication_cleanup")

        assert result == {"communications_purged": 1, "retention_months": 6}
        async with session_factory() as session:
            count = await session.scalar(select(func.count(CommunicationLog.id)))
        assert count == 1

    @pytest.mark.asyncio
    async def test_daily_digest_without_activity(self, scheduler, notifier):
        result = await scheduler.run_job("daily_digest")

        assert result["skipped_reason"] == "no activity"
        assert result["sent"] == 0
        notifier.send_daily_summary.assert_not_awaited()


class TestWorkerMain:
    """Tests for the worker command line."""

    def test_rejects_unknown_job_name(self):
        with pytest.raises(SystemExit) as exc_info:
            run(["--run-job", "nope"])

        assert exc_info.value.code == 2

    def test_single_job_success(self):
        with (
            patch("verbete.worker.main._run_once", new_callable=AsyncMock) as mock_run,
            pytest.raises(SystemExit) as exc_info,
        ):
            run(["--run-job", "expiry_check"])

        assert exc_info.value.code == 0
        mock_run.assert_awaited_once_with("expiry_check")

    def test_single_job_failure(self):
        with (
            patch(
                "verbete.worker.main._run_once",
                new_callable=AsyncMock,
                side_effect=RuntimeError("db down"),
            ),
            pytest.raises(SystemExit) as exc_info,
        ):
            run(["--run-job", "daily_digest"])

        assert exc_info.value.code == 1
