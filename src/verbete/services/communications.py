"""Communication log and admin-triggered author messages.

Every outbound notice the core sends on its own initiative (alerts,
expiry notices, digests) or on an admin's request (resend, regenerate,
reactivate, reminder) leaves one row in ``communications``. The log is
append-only; the only deletion is the retention purge, which keeps
token regeneration and reactivation rows forever.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, delete, func, select

from verbete.core.config import Settings
from verbete.core.errors import TokenExpiredError, storage_errors
from verbete.db.models.base import (
    AlertUrgency,
    CommunicationDirection,
    CommunicationStatus,
    CommunicationType,
    utcnow,
)
from verbete.db.models.communications import CommunicationLog
from verbete.services.email import TEMPLATE_VERSION, EmailError, TokenNoticeKind
from verbete.services.tokens import TokenLifecycleService, is_expired

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.db.models.submissions import Submission
    from verbete.services.email import EmailNotifier

logger = logging.getLogger(__name__)

# Audit trail of credential changes, never purged
RETAINED_TYPES = (CommunicationType.TOKEN_REGENERATED, CommunicationType.REACTIVATED)

DAYS_PER_MONTH = 30


@dataclass(frozen=True, slots=True)
class CommunicationOutcome:
    """Result of an admin-triggered message.

    Attributes:
        success: Whether the notifier accepted the message.
        communication_id: Log row written for the attempt.
        error: Delivery error text when it failed.
        token: New token, for regenerate and reactivate.
        expires_at: Deadline after the operation.
    """

    success: bool
    communication_id: UUID
    error: str | None = None
    token: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CommunicationStats:
    """Log counters over a trailing window."""

    period_days: int
    total: int
    by_type: list[dict[str, Any]] = field(default_factory=list)


class CommunicationService:
    """Reads and appends the communication log; sends admin-requested notices."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        *,
        notifier: EmailNotifier | None = None,
    ) -> None:
        """Initialize the communication service.

        Args:
            session: SQLAlchemy async session for database operations.
            settings: Application settings (defaults apply when omitted).
            notifier: Required for the admin-triggered sends.
        """
        self._session = session
        self.settings = settings or Settings()
        self._notifier = notifier
        self.tokens = TokenLifecycleService(session, self.settings.tokens)

    # ------------------------------------------------------------------
    # Log
    # ------------------------------------------------------------------

    async def record(
        self,
        *,
        type: CommunicationType,  # noqa: A002 - mirrors the column name
        direction: CommunicationDirection,
        recipient_email: str,
        status: CommunicationStatus = CommunicationStatus.SENT,
        submission_id: UUID | None = None,
        admin_id: UUID | None = None,
        data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> CommunicationLog:
        """Append one row to the log."""
        row = CommunicationLog(
            submission_id=submission_id,
            type=type,
            direction=direction,
            recipient_email=recipient_email,
            admin_id=admin_id,
            status=status,
            data=dict(data or {}),
            created_at=now or utcnow(),
        )
        with storage_errors("record_communication"):
            self._session.add(row)
            await self._session.flush()

        logger.debug(
            "Communication recorded: type=%s, status=%s, submission_id=%s",
            type.value,
            status.value,
            submission_id,
        )
        return row

    async def has_recent_expiration_alert(
        self,
        submission_id: UUID,
        days_to_expiry: int,
        window_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Whether a successful alert for this threshold went out inside the window.

        Failed attempts do not count, so a later run retries them.
        """
        now = now or utcnow()
        window = self.settings.alerts.dedup_window_days if window_days is None else window_days
        since = now - timedelta(days=window)

        with storage_errors("has_recent_expiration_alert"):
            result = await self._session.execute(
                select(CommunicationLog.data).where(
                    CommunicationLog.submission_id == submission_id,
                    CommunicationLog.type == CommunicationType.EXPIRATION_ALERT,
                    CommunicationLog.status == CommunicationStatus.SENT,
                    CommunicationLog.created_at > since,
                )
            )
            rows = result.scalars().all()

        return any((data or {}).get("days_to_expiry") == days_to_expiry for data in rows)

    async def get_history(self, submission_id: UUID, limit: int = 50) -> list[CommunicationLog]:
        """Newest-first log rows for a submission."""
        with storage_errors("get_history"):
            result = await self._session.execute(
                select(CommunicationLog)
                .where(CommunicationLog.submission_id == submission_id)
                .order_by(CommunicationLog.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_stats(self, days: int = 30, *, now: datetime | None = None) -> CommunicationStats:
        """Count rows per (type, direction) with a sent/failed split."""
        since = (now or utcnow()) - timedelta(days=days)
        count = func.count(CommunicationLog.id)

        stmt = (
            select(
                CommunicationLog.type,
                CommunicationLog.direction,
                count,
                func.sum(case((CommunicationLog.status == CommunicationStatus.SENT, 1), else_=0)),
                func.sum(case((CommunicationLog.status == CommunicationStatus.FAILED, 1), else_=0)),
            )
            .where(CommunicationLog.created_at >= since)
            .group_by(CommunicationLog.type, CommunicationLog.direction)
            .order_by(count.desc())
        )

        with storage_errors("get_communication_stats"):
            rows = (await self._session.execute(stmt)).all()

        by_type = [
            {
                "type": type_.value,
                "direction": direction.value,
                "count": int(total),
                "successful": int(sent or 0),
                "failed": int(failed or 0),
            }
            for type_, direction, total, sent, failed in rows
        ]
        return CommunicationStats(
            period_days=days,
            total=sum(entry["count"] for entry in by_type),
            by_type=by_type,
        )

    async def cleanup_old_communications(
        self,
        months: int | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Delete rows older than ``months`` (30-day months), except retained types.

        Returns:
            Number of rows deleted.
        """
        if months is None:
            months = self.settings.alerts.communication_retention_months
        cutoff = (now or utcnow()) - timedelta(days=DAYS_PER_MONTH * months)

        with storage_errors("cleanup_old_communications"):
            result = await self._session.execute(
                delete(CommunicationLog).where(
                    CommunicationLog.created_at < cutoff,
                    CommunicationLog.type.not_in(RETAINED_TYPES),
                )
            )

        deleted = result.rowcount or 0
        logger.info("Old communications purged: deleted=%d, cutoff=%s", deleted, cutoff.isoformat())
        return deleted

    # ------------------------------------------------------------------
    # Admin-triggered messages
    # ------------------------------------------------------------------

    async def resend_token(
        self,
        submission_id: UUID,
        admin_id: UUID | None,
        custom_message: str | None = None,
        *,
        now: datetime | None = None,
    ) -> CommunicationOutcome:
        """Mail the author their current link again.

        Raises:
            SubmissionNotFoundError: Unknown submission.
            TokenExpiredError: The token is past its deadline; reactivate instead.
        """
        now = now or utcnow()
        with storage_errors("resend_token"):
            submission = await self.tokens.get_submission(submission_id)

        if submission.token is None or is_expired(submission, now):
            raise TokenExpiredError(
                "Token has expired; reactivate the submission instead of resending",
                can_recover=True,
            )

        return await self._send_token_notice(
            submission,
            kind=TokenNoticeKind.RESENT,
            type=CommunicationType.TOKEN_RESEND,
            admin_id=admin_id,
            custom_message=custom_message,
            data={"has_custom_message": custom_message is not None, "token_status": "active"},
            now=now,
        )

    async def regenerate_and_send_token(
        self,
        submission_id: UUID,
        admin_id: UUID | None,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> CommunicationOutcome:
        """Invalidate the current link, issue a new one and mail it."""
        now = now or utcnow()
        issue = await self.tokens.regenerate_token(submission_id, now=now)
        with storage_errors("regenerate_and_send_token"):
            submission = await self.tokens.get_submission(submission_id)

        return await self._send_token_notice(
            submission,
            kind=TokenNoticeKind.REGENERATED,
            type=CommunicationType.TOKEN_REGENERATED,
            admin_id=admin_id,
            custom_message=reason,
            data={"reason": reason, "token_prefix": issue.token[:8]},
            now=now,
        )

    async def reactivate_and_notify(
        self,
        submission_id: UUID,
        admin_id: UUID | None,
        new_expiry_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> CommunicationOutcome:
        """Reopen an expired submission and send the author the new link.

        Raises:
            InvalidStatusError: The submission is not EXPIRED.
        """
        now = now or utcnow()
        reactivation = await self.tokens.reactivate_expired(
            submission_id, new_expiry_days, now=now
        )
        with storage_errors("reactivate_and_notify"):
            submission = await self.tokens.get_submission(submission_id)

        return await self._send_token_notice(
            submission,
            kind=TokenNoticeKind.REACTIVATED,
            type=CommunicationType.REACTIVATED,
            admin_id=admin_id,
            data={
                "new_expiry_days": (
                    self.settings.tokens.default_expiry_days
                    if new_expiry_days is None
                    else new_expiry_days
                ),
                "token_prefix": reactivation.token[:8],
                "previous_status": "EXPIRED",
                "status": reactivation.status.value,
            },
            now=now,
        )

    async def send_custom_reminder(
        self,
        submission_id: UUID,
        admin_id: UUID | None,
        message: str,
        urgency: AlertUrgency = AlertUrgency.NORMAL,
        *,
        now: datetime | None = None,
    ) -> CommunicationOutcome:
        """Send an admin-written reminder along with the author's link."""
        with storage_errors("send_custom_reminder"):
            submission = await self.tokens.get_submission(submission_id)

        return await self._send_token_notice(
            submission,
            kind=TokenNoticeKind.REMINDER,
            type=CommunicationType.CUSTOM_REMINDER,
            admin_id=admin_id,
            custom_message=message,
            urgency=urgency,
            data={"urgency": urgency.value, "reminder_type": "manual"},
            now=now,
        )

    async def _send_token_notice(
        self,
        submission: Submission,
        *,
        kind: TokenNoticeKind,
        type: CommunicationType,  # noqa: A002
        admin_id: UUID | None,
        data: dict[str, Any],
        custom_message: str | None = None,
        urgency: AlertUrgency = AlertUrgency.NORMAL,
        now: datetime | None = None,
    ) -> CommunicationOutcome:
        """Send a token e-mail and log the attempt either way."""
        if self._notifier is None:
            msg = "CommunicationService needs a notifier to send messages"
            raise RuntimeError(msg)

        error = None
        try:
            await self._notifier.send_token_email(
                to=submission.author_email,
                author_name=submission.author_name,
                title=submission.title,
                token=submission.token,
                expires_at=submission.expires_at,
                kind=kind,
                custom_message=custom_message,
                urgency=urgency,
            )
        except EmailError as e:
            error = str(e)
            logger.warning(
                "Admin-triggered %s failed: submission_id=%s, error=%s",
                type.value,
                submission.id,
                error,
            )

        row = await self.record(
            type=type,
            direction=CommunicationDirection.ADMIN_TO_AUTHOR,
            recipient_email=submission.author_email,
            status=CommunicationStatus.FAILED if error else CommunicationStatus.SENT,
            submission_id=submission.id,
            admin_id=admin_id,
            data={**data, "template_version": TEMPLATE_VERSION, **({"error": error} if error else {})},
            now=now,
        )

        if error is None:
            logger.info(
                "Admin-triggered %s sent: submission_id=%s, admin_id=%s",
                type.value,
                submission.id,
                admin_id,
            )
        return CommunicationOutcome(
            success=error is None,
            communication_id=row.id,
            error=error,
            token=submission.token if kind is not TokenNoticeKind.RESENT else None,
            expires_at=submission.expires_at,
        )
