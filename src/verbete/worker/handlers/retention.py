"""Weekly communication log housekeeping.

Deletes log rows past the retention period. Token regeneration and
reactivation rows are kept for good.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from verbete.services.communications import CommunicationService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.worker.context import JobContext


async def communication_cleanup_handler(
    session: AsyncSession,
    context: JobContext,
) -> dict[str, Any] | None:
    """Purge communication log rows older than the retention period."""
    months = context.settings.alerts.communication_retention_months
    purged = await CommunicationService(session, context.settings).cleanup_old_communications(months)

    return {"communications_purged": purged, "retention_months": months}
