"""Verbete worker entry point.

Runs the job scheduler until SIGTERM/SIGINT, or runs one job and
exits:

    verbete-worker                       # scheduler loop
    verbete-worker --run-job expiry_check
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import NoReturn

from verbete.core.settings import get_settings
from verbete.db import close_engine, get_session_factory
from verbete.services.email import EmailNotifier
from verbete.worker.context import JobContext
from verbete.worker.scheduler import (
    JobScheduler,
    SchedulerError,
    default_schedules,
    run_scheduler_loop,
)

logger = logging.getLogger(__name__)

JOB_NAMES = ("expiry_check", "expired_cleanup", "daily_digest", "communication_cleanup")

# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


def _build_scheduler() -> JobScheduler:
    settings = get_settings()
    context = JobContext(settings=settings, notifier=EmailNotifier.from_settings(settings))
    return JobScheduler(
        get_session_factory(),
        context,
        default_schedules(settings.scheduler),
    )


async def _run_loop(shutdown_event: asyncio.Event) -> None:
    settings = get_settings()
    if not settings.scheduler.enabled:
        logger.warning("Scheduler disabled by configuration; waiting for shutdown")
        await shutdown_event.wait()
        return

    scheduler = _build_scheduler()
    try:
        await run_scheduler_loop(
            scheduler,
            check_interval=settings.scheduler.check_interval,
            shutdown_event=shutdown_event,
        )
    finally:
        await close_engine()


async def _run_once(name: str) -> None:
    scheduler = _build_scheduler()
    try:
        result = await scheduler.run_job(name)
        logger.info("Job %s finished: %s", name, result)
    finally:
        await close_engine()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="verbete-worker",
        description="Run the Verbete scheduled jobs",
    )
    parser.add_argument(
        "--run-job",
        metavar="NAME",
        choices=JOB_NAMES,
        help="Run one job immediately and exit",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> NoReturn:
    """Run the worker process.

    Sets up logging, registers signal handlers and runs either the
    scheduler loop or a single job.
    """
    global _shutdown_event

    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.run_job:
        try:
            asyncio.run(_run_once(args.run_job))
        except SchedulerError as e:
            logger.error("%s", e)
            sys.exit(2)
        except Exception as e:
            logger.exception("Job %s failed: %s", args.run_job, e)
            sys.exit(1)
        sys.exit(0)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("Verbete worker starting (environment=%s)", settings.environment.value)

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _run_loop(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Verbete worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
