"""Tests for the communication log and admin-triggered author messages.

Tests verify:
- Resend refuses expired tokens
- Regenerate and reactivate mail the new link and log the attempt
- Delivery failures are logged as FAILED instead of raising
- History, statistics, the alert dedup window and the retention purge
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from tests.factories import (
    NOW,
    create_admin,
    create_communication,
    create_submission,
)
from verbete.core.errors import InvalidStatusError, TokenExpiredError
from verbete.db.models import CommunicationLog
from verbete.db.models.base import (
    AlertUrgency,
    CommunicationDirection,
    CommunicationStatus,
    CommunicationType,
    SubmissionStatus,
)
from verbete.services.communications import CommunicationService
from verbete.services.email import EmailDeliveryError, TokenNoticeKind
from verbete.services.tokens import TokenLifecycleService, TokenValidationReason


@pytest.fixture
def service(session, settings, notifier) -> CommunicationService:
    return CommunicationService(session, settings, notifier=notifier)


class TestAdminMessages:
    """Tests for resend, regenerate, reactivate and reminders."""

    @pytest.mark.asyncio
    async def test_resend_refuses_expired_token(self, session, service, notifier):
        admin = await create_admin(session, "editor@verbete.test")
        submission = await create_submission(session, now=NOW, expires_in=timedelta(days=-1))

        with pytest.raises(TokenExpiredError) as exc_info:
            await service.resend_token(submission.id, admin.id, now=NOW)

        assert exc_info.value.can_recover
        notifier.send_token_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resend_logs_admin_message(self, session, service, notifier):
        admin = await create_admin(session, "editor@verbete.test")
        submission = await create_submission(session, now=NOW)

        outcome = await service.resend_token(submission.id, admin.id, "Segue o link.", now=NOW)

        assert outcome.success
        assert outcome.token is None
        kwargs = notifier.send_token_email.call_args.kwargs
        assert kwargs["kind"] is TokenNoticeKind.RESENT
        assert kwargs["token"] == submission.token
        assert kwargs["custom_message"] == "Segue o link."

        row = await session.get(CommunicationLog, outcome.communication_id)
        assert row.type == CommunicationType.TOKEN_RESEND
        assert row.direction == CommunicationDirection.ADMIN_TO_AUTHOR
        assert row.admin_id == admin.id
        assert row.data["has_custom_message"] is True

    @pytest.mark.asyncio
    async def test_failed_delivery_is_logged_not_raised(self, session, service, notifier):
        submission = await create_submission(session, now=NOW)
        notifier.send_token_email.side_effect = EmailDeliveryError("smtp down", attempts=3)

        outcome = await service.resend_token(submission.id, None, now=NOW)

        assert not outcome.success
        assert outcome.error == "smtp down"
        row = await session.get(CommunicationLog, outcome.communication_id)
        assert row.status == CommunicationStatus.FAILED
        assert row.data["error"] == "smtp down"

    @pytest.mark.asyncio
    async def test_regenerate_sends_new_token(self, session, settings, service, notifier):
        submission = await create_submission(session, now=NOW, expires_in=timedelta(days=2))
        old_token = submission.token

        outcome = await service.regenerate_and_send_token(
            submission.id, None, "Link compartilhado por engano", now=NOW
        )

        assert outcome.success
        assert outcome.token != old_token
        assert outcome.expires_at == NOW + timedelta(days=30)
        assert notifier.send_token_email.call_args.kwargs["token"] == outcome.token

        tokens = TokenLifecycleService(session, settings.tokens)
        stale = await tokens.validate_token(old_token, now=NOW)
        assert stale.reason is TokenValidationReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_reactivate_and_notify(self, session, service, notifier):
        submission = await create_submission(
            session,
            now=NOW - timedelta(days=40),
            status=SubmissionStatus.EXPIRED,
        )

        outcome = await service.reactivate_and_notify(submission.id, None, 10, now=NOW)

        assert outcome.success
        assert outcome.expires_at == NOW + timedelta(days=10)
        assert submission.status == SubmissionStatus.DRAFT
        assert notifier.send_token_email.call_args.kwargs["kind"] is TokenNoticeKind.REACTIVATED
        row = await session.get(CommunicationLog, outcome.communication_id)
        assert row.type == CommunicationType.REACTIVATED
        assert row.data["new_expiry_days"] == 10

    @pytest.mark.asyncio
    async def test_reactivate_live_submission(self, session, service, notifier):
        submission = await create_submission(session, now=NOW)

        with pytest.raises(InvalidStatusError):
            await service.reactivate_and_notify(submission.id, None, now=NOW)

        notifier.send_token_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_reminder(self, session, service, notifier):
        submission = await create_submission(session, now=NOW)

        outcome = await service.send_custom_reminder(
            submission.id, None, "Faltam poucos dias.", AlertUrgency.HIGH, now=NOW
        )

        assert outcome.success
        kwargs = notifier.send_token_email.call_args.kwargs
        assert kwargs["kind"] is TokenNoticeKind.REMINDER
        assert kwargs["urgency"] is AlertUrgency.HIGH
        assert kwargs["custom_message"] == "Faltam poucos dias."

    @pytest.mark.asyncio
    async def test_requires_notifier(self, session, settings):
        submission = await create_submission(session, now=NOW)
        service = CommunicationService(session, settings)

        with pytest.raises(RuntimeError):
            await service.resend_token(submission.id, None, now=NOW)


class TestLog:
    """Tests for history, statistics and retention."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, session, service):
        submission = await create_submission(session, now=NOW)
        older = await create_communication(
            session, created_at=NOW - timedelta(days=2), submission=submission
        )
        newer = await create_communication(
            session, created_at=NOW - timedelta(days=1), submission=submission
        )

        history = await service.get_history(submission.id)
        limited = await service.get_history(submission.id, limit=1)

        assert [row.id for row in history] == [newer.id, older.id]
        assert [row.id for row in limited] == [newer.id]

    @pytest.mark.asyncio
    async def test_stats_over_window(self, session, service):
        await create_communication(session, created_at=NOW - timedelta(days=1))
        await create_communication(
            session,
            created_at=NOW - timedelta(days=1),
            status=CommunicationStatus.FAILED,
        )
        await create_communication(
            session,
            created_at=NOW - timedelta(days=2),
            type=CommunicationType.TOKEN_RESEND,
        )
        await create_communication(session, created_at=NOW - timedelta(days=40))

        stats = await service.get_stats(30, now=NOW)

        assert stats.period_days == 30
        assert stats.total == 3
        assert stats.by_type[0] == {
            "type": "expiration_alert",
            "direction": "system_to_author",
            "count": 2,
            "successful": 1,
            "failed": 1,
        }

    @pytest.mark.asyncio
    async def test_cleanup_keeps_credential_audit_rows(self, session, service):
        """Old routine rows go; regeneration and reactivation rows stay."""
        old = NOW - timedelta(days=200)
        await create_communication(session, created_at=old)
        await create_communication(session, created_at=old, type=CommunicationType.DAILY_SUMMARY)
        await create_communication(
            session, created_at=old, type=CommunicationType.TOKEN_REGENERATED
        )
        await create_communication(session, created_at=old, type=CommunicationType.REACTIVATED)
        await create_communication(session, created_at=NOW - timedelta(days=10))

        deleted = await service.cleanup_old_communications(now=NOW)

        assert deleted == 2
        remaining = await session.execute(
            select(CommunicationLog.type, func.count()).group_by(CommunicationLog.type)
        )
        assert dict(remaining.all()) == {
            CommunicationType.EXPIRATION_ALERT: 1,
            CommunicationType.TOKEN_REGENERATED: 1,
            CommunicationType.REACTIVATED: 1,
        }

    @pytest.mark.asyncio
    async def test_zero_day_dedup_window_counts_nothing(self, session, service):
        """An explicit zero window is not replaced by the configured one."""
        submission = await create_submission(session, now=NOW, expires_in=timedelta(days=3))
        await create_communication(
            session,
            created_at=NOW - timedelta(hours=1),
            submission=submission,
            data={"days_to_expiry": 3},
        )

        assert await service.has_recent_expiration_alert(submission.id, 3, now=NOW)
        assert not await service.has_recent_expiration_alert(submission.id, 3, 0, now=NOW)
