"""Nightly expired-token sweep.

Covers:
- Moving overdue DRAFT / CHANGES_REQUESTED submissions to EXPIRED
- Telling each affected author, and admins when the sweep is large
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from verbete.services.alerts import ExpirationAlertEngine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.worker.context import JobContext

logger = logging.getLogger(__name__)


async def expired_cleanup_handler(
    session: AsyncSession,
    context: JobContext,
) -> dict[str, Any] | None:
    """Expire overdue submissions and notify."""
    engine = ExpirationAlertEngine(session, context.settings, context.notifier)
    summary = await engine.process_expired_submissions()
    if summary.expired_count == 0:
        logger.debug("Expired cleanup found nothing to do")

    return {
        "expired_count": summary.expired_count,
        "notified": summary.notified,
        "failed": summary.failed,
        "admins_notified": summary.admins_notified,
    }
