"""Admin daily digest job."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from verbete.services.alerts import ExpirationAlertEngine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.worker.context import JobContext


async def daily_digest_handler(
    session: AsyncSession,
    context: JobContext,
) -> dict[str, Any] | None:
    """Send the daily summary to opted-in admins."""
    engine = ExpirationAlertEngine(session, context.settings, context.notifier)
    summary = await engine.send_daily_summary()

    return {
        "sent": summary.sent,
        "total_admins": summary.total_admins,
        "stats": summary.stats,
        "skipped_reason": summary.skipped_reason,
    }
