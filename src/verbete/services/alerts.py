"""Expiration alert engine.

Three scheduled passes:

- Threshold alerts: for each configured threshold d (default 5, 3, 1),
  warn authors whose token has exactly d whole days left, unless a
  successful alert for that threshold went out within the dedup window.
- Expired sweep: expire overdue editable submissions, tell each author,
  and send admins one aggregate notice when the sweep was large.
- Daily digest: activity counters mailed to opted-in admins.

Delivery failures are logged (and recorded in the communication log) and
the pass moves on to the next recipient.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, case, func, select

from verbete.core.config import Settings
from verbete.core.errors import storage_errors
from verbete.db.models.admins import AdminUser
from verbete.db.models.base import (
    EDITABLE_STATUSES,
    AlertUrgency,
    CommunicationDirection,
    CommunicationStatus,
    CommunicationType,
    SubmissionStatus,
    utcnow,
)
from verbete.db.models.submissions import Submission
from verbete.services.communications import CommunicationService
from verbete.services.email import TEMPLATE_VERSION, EmailError
from verbete.services.tokens import TokenLifecycleService, whole_days_until

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.services.email import EmailNotifier
    from verbete.services.tokens import ExpiredSubmission, ExpiringSubmission

logger = logging.getLogger(__name__)


def urgency_for(days_to_expiry: int) -> AlertUrgency:
    """1 day left is urgent, 2 is high, anything else normal."""
    if days_to_expiry <= 1:
        return AlertUrgency.URGENT
    if days_to_expiry == 2:
        return AlertUrgency.HIGH
    return AlertUrgency.NORMAL


@dataclass(slots=True)
class AlertRunSummary:
    """Counters for one threshold-alert pass."""

    thresholds: list[int]
    alerts_sent: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(slots=True)
class SweepSummary:
    """Counters for one expired-submission sweep."""

    expired_count: int = 0
    notified: int = 0
    failed: int = 0
    admins_notified: int = 0
    expired_ids: list[UUID] = field(default_factory=list)


@dataclass(slots=True)
class DigestSummary:
    """Outcome of the daily digest."""

    stats: dict[str, int]
    total_admins: int = 0
    sent: int = 0
    skipped_reason: str | None = None


@dataclass(frozen=True, slots=True)
class AdminRecipient:
    email: str
    name: str
    admin_id: UUID | None = None


class ExpirationAlertEngine:
    """Runs the expiry-related notification passes.

    Example:
        engine = ExpirationAlertEngine(session, settings, notifier)
        summary = await engine.process_expiration_alerts()
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        notifier: EmailNotifier | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            session: SQLAlchemy async session for database operations.
            settings: Application settings (defaults apply when omitted).
            notifier: Outbound e-mail; required for every pass.
        """
        self._session = session
        self.settings = settings or Settings()
        self._notifier = notifier
        self.tokens = TokenLifecycleService(session, self.settings.tokens)
        self.communications = CommunicationService(session, self.settings, notifier=notifier)

    @property
    def notifier(self) -> EmailNotifier:
        if self._notifier is None:
            msg = "ExpirationAlertEngine needs a notifier"
            raise RuntimeError(msg)
        return self._notifier

    async def _deliver(
        self,
        send: Callable[[EmailNotifier], Awaitable[Any]],
        notice: str,
        target: str,
    ) -> str | None:
        """Run one delivery and return the error text instead of raising.

        Any failure is contained to its recipient so the pass can go on.
        """
        notifier = self.notifier
        try:
            await send(notifier)
        except EmailError as e:
            logger.error("%s failed: %s, error=%s", notice, target, e)
            return str(e) or type(e).__name__
        except Exception as e:
            logger.exception("%s failed unexpectedly: %s", notice, target)
            return f"{type(e).__name__}: {e}"
        return None

    # ------------------------------------------------------------------
    # Threshold alerts
    # ------------------------------------------------------------------

    async def process_expiration_alerts(self, *, now: datetime | None = None) -> AlertRunSummary:
        """Send one alert per (submission, threshold), honouring the dedup window."""
        now = now or utcnow()
        thresholds = list(self.settings.alerts.thresholds)
        summary = AlertRunSummary(thresholds=thresholds)

        logger.info("Processing expiration alerts: thresholds=%s", thresholds)
        for days in thresholds:
            candidates = await self.tokens.find_expiring_submissions(days, now=now)
            for submission in candidates:
                if whole_days_until(submission.expires_at, now) != days:
                    continue
                if await self.communications.has_recent_expiration_alert(
                    submission.id, days, now=now
                ):
                    summary.skipped += 1
                    continue
                if await self._send_alert(submission, days, now):
                    summary.alerts_sent += 1
                else:
                    summary.failed += 1

        logger.info(
            "Expiration alerts complete: sent=%d, skipped=%d, failed=%d",
            summary.alerts_sent,
            summary.skipped,
            summary.failed,
        )
        return summary

    async def _send_alert(self, submission: ExpiringSubmission, days: int, now: datetime) -> bool:
        urgency = urgency_for(days)
        error = await self._deliver(
            lambda n: n.send_expiration_alert(
                to=submission.author_email,
                author_name=submission.author_name,
                title=submission.title,
                token=submission.token or "",
                expires_at=submission.expires_at,
                days_to_expiry=days,
                urgency=urgency,
            ),
            "Expiration alert",
            f"submission_id={submission.id}, days={days}",
        )

        data: dict[str, Any] = {
            "days_to_expiry": days,
            "urgency": urgency.value,
            "alert_type": "automatic",
            "template_version": TEMPLATE_VERSION,
        }
        if error:
            data["error"] = error
        await self.communications.record(
            type=CommunicationType.EXPIRATION_ALERT,
            direction=CommunicationDirection.SYSTEM_TO_AUTHOR,
            recipient_email=submission.author_email,
            status=CommunicationStatus.FAILED if error else CommunicationStatus.SENT,
            submission_id=submission.id,
            data=data,
            now=now,
        )
        return error is None

    # ------------------------------------------------------------------
    # Expired sweep
    # ------------------------------------------------------------------

    async def process_expired_submissions(self, *, now: datetime | None = None) -> SweepSummary:
        """Expire overdue submissions, notify their authors, and alert admins on mass expiry."""
        now = now or utcnow()
        expired = await self.tokens.cleanup_expired_tokens(now=now)
        summary = SweepSummary(
            expired_count=len(expired),
            expired_ids=[s.id for s in expired],
        )

        for submission in expired:
            if await self._send_expired_notice(submission, now):
                summary.notified += 1
            else:
                summary.failed += 1

        if len(expired) > self.settings.alerts.mass_expiration_threshold:
            summary.admins_notified = await self._notify_mass_expiration(expired, now)

        logger.info(
            "Expired sweep complete: expired=%d, notified=%d, failed=%d, admins_notified=%d",
            summary.expired_count,
            summary.notified,
            summary.failed,
            summary.admins_notified,
        )
        return summary

    async def _send_expired_notice(self, submission: ExpiredSubmission, now: datetime) -> bool:
        error = await self._deliver(
            lambda n: n.send_expired_notice(
                to=submission.author_email,
                author_name=submission.author_name,
                title=submission.title,
                expires_at=submission.expires_at,
            ),
            "Expired notice",
            f"submission_id={submission.id}",
        )

        await self.communications.record(
            type=CommunicationType.EXPIRED_NOTIFICATION,
            direction=CommunicationDirection.SYSTEM_TO_AUTHOR,
            recipient_email=submission.author_email,
            status=CommunicationStatus.FAILED if error else CommunicationStatus.SENT,
            submission_id=submission.id,
            data={
                "expired_at": now.isoformat(),
                "previous_status": submission.previous_status.value,
                "notification_type": "automatic",
                **({"error": error} if error else {}),
            },
            now=now,
        )
        return error is None

    async def _notify_mass_expiration(self, expired: list[ExpiredSubmission], now: datetime) -> int:
        sample = expired[: self.settings.alerts.mass_expiration_sample_size]
        notified = 0
        for admin in await self.active_admins():
            error = await self._deliver(
                lambda n, admin=admin: n.send_mass_expiration_notice(
                    to=admin.email,
                    submissions=sample,
                    total=len(expired),
                ),
                "Mass expiration notice",
                f"admin={admin.email}",
            )
            if error is None:
                notified += 1

            await self.communications.record(
                type=CommunicationType.MASS_EXPIRATION,
                direction=CommunicationDirection.OUTBOUND_TO_ADMIN,
                recipient_email=admin.email,
                status=CommunicationStatus.FAILED if error else CommunicationStatus.SENT,
                admin_id=admin.admin_id,
                data={
                    "total": len(expired),
                    "submission_ids": [str(s.id) for s in sample],
                    **({"error": error} if error else {}),
                },
                now=now,
            )
        return notified

    # ------------------------------------------------------------------
    # Daily digest
    # ------------------------------------------------------------------

    async def get_daily_stats(self, *, now: datetime | None = None) -> dict[str, int]:
        """Counters for the digest; "today" starts at local midnight."""
        now = now or utcnow()
        tz = self.settings.scheduler.tzinfo
        local_midnight = now.astimezone(tz).replace(hour=0, minute=0, second=0, microsecond=0)
        since = local_midnight.astimezone(now.tzinfo)
        horizon = now + timedelta(days=self.settings.alerts.digest_expiring_days)

        stmt = select(
            func.sum(case((Submission.created_at >= since, 1), else_=0)),
            func.sum(case((Submission.status == SubmissionStatus.UNDER_REVIEW, 1), else_=0)),
            func.sum(
                case(
                    (
                        and_(
                            Submission.status == SubmissionStatus.PUBLISHED,
                            Submission.updated_at >= since,
                        ),
                        1,
                    ),
                    else_=0,
                )
            ),
            func.sum(
                case(
                    (
                        and_(
                            Submission.status.in_(EDITABLE_STATUSES),
                            Submission.expires_at > now,
                            Submission.expires_at <= horizon,
                        ),
                        1,
                    ),
                    else_=0,
                )
            ),
        )
        with storage_errors("get_daily_stats"):
            row = (await self._session.execute(stmt)).one()

        new, pending, published, expiring = (int(value or 0) for value in row)
        return {
            "new_submissions": new,
            "pending_reviews": pending,
            "published_today": published,
            "expiring_soon": expiring,
        }

    async def send_daily_summary(self, *, now: datetime | None = None) -> DigestSummary:
        """Mail the digest to every active admin who has not opted out.

        Nothing is sent on a day with no new, pending or published
        submissions.
        """
        now = now or utcnow()
        stats = await self.get_daily_stats(now=now)
        summary = DigestSummary(stats=stats)

        if not (stats["new_submissions"] or stats["pending_reviews"] or stats["published_today"]):
            summary.skipped_reason = "no activity"
            logger.info("Daily summary skipped: no activity")
            return summary

        admins = await self.active_admins(digest_only=True)
        summary.total_admins = len(admins)
        if not admins:
            summary.skipped_reason = "no recipients"
            logger.info("Daily summary skipped: no admin wants it")
            return summary

        day = now.astimezone(self.settings.scheduler.tzinfo)
        for admin in admins:
            error = await self._deliver(
                lambda n, admin=admin: n.send_daily_summary(
                    to=admin.email,
                    admin_name=admin.name,
                    stats=stats,
                    day=day,
                ),
                "Daily summary",
                f"admin={admin.email}",
            )
            if error is None:
                summary.sent += 1

            await self.communications.record(
                type=CommunicationType.DAILY_SUMMARY,
                direction=CommunicationDirection.OUTBOUND_TO_ADMIN,
                recipient_email=admin.email,
                status=CommunicationStatus.FAILED if error else CommunicationStatus.SENT,
                admin_id=admin.admin_id,
                data={"stats": stats, **({"error": error} if error else {})},
                now=now,
            )

        logger.info(
            "Daily summary complete: sent=%d, total_admins=%d", summary.sent, summary.total_admins
        )
        return summary

    async def active_admins(self, *, digest_only: bool = False) -> list[AdminRecipient]:
        """Active admins, falling back to the configured addresses when none exist.

        Args:
            digest_only: Keep only admins whose ``daily_summary`` is NULL or true.
        """
        stmt = select(AdminUser).where(AdminUser.is_active.is_(True)).order_by(AdminUser.email)
        with storage_errors("active_admins"):
            admins = list((await self._session.execute(stmt)).scalars().all())

        if not admins:
            return [AdminRecipient(email=e, name="Admin") for e in self.settings.alerts.admin_emails]
        if digest_only:
            # NULL means never chose, which counts as opted in
            admins = [a for a in admins if a.daily_summary is not False]
        return [AdminRecipient(email=a.email, name=a.name, admin_id=a.id) for a in admins]
