"""Verbete worker service.

In-process scheduler for the daily jobs:
- Expiration alerts for tokens nearing their deadline
- Expired-token sweep with author and admin notices
- Admin daily digest

Usage:
    # Run as module
    python -m verbete.worker

    # Trigger one job by hand
    verbete-worker --run-job expired_cleanup
"""

from verbete.worker.main import run
from verbete.worker.scheduler import (
    JobAlreadyRunningError,
    JobScheduler,
    ScheduledJob,
    UnknownJobError,
)

__all__ = [
    "JobAlreadyRunningError",
    "JobScheduler",
    "ScheduledJob",
    "UnknownJobError",
    "run",
]
