"""Expiration alert job.

Warns authors whose access token runs out in one of the configured
threshold day counts (5, 3 and 1 by default).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from verbete.services.alerts import ExpirationAlertEngine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.worker.context import JobContext

logger = logging.getLogger(__name__)


async def expiry_check_handler(
    session: AsyncSession,
    context: JobContext,
) -> dict[str, Any] | None:
    """Run one threshold-alert pass.

    Args:
        session: Database session for the pass.
        context: Settings and notifier.

    Returns:
        Counters of the pass.
    """
    engine = ExpirationAlertEngine(session, context.settings, context.notifier)
    summary = await engine.process_expiration_alerts()

    return {
        "alerts_sent": summary.alerts_sent,
        "skipped": summary.skipped,
        "failed": summary.failed,
        "thresholds": summary.thresholds,
    }
