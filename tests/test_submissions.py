"""Tests for the submission status state machine.

Tests verify:
- The transition table and terminal statuses
- Completeness scoring and significant-change detection
- Field validation on creation, partial updates and auto-save
- The editability gate on every author mutation
- Creation, update, auto-save, attachments and submit-for-review
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from tests.factories import COMPLETE_CONTENT, NOW, create_admin, create_submission
from verbete.core.errors import (
    AttachmentLimitError,
    AttachmentNotFoundError,
    IncompleteSubmissionError,
    InvalidStatusError,
    TokenExpiredError,
    ValidationError,
)
from verbete.db.models import SubmissionVersion
from verbete.db.models.base import EDITABLE_STATUSES, SubmissionStatus
from verbete.services.submissions import SubmissionService

S = SubmissionStatus


@pytest.fixture
def service(session, settings, notifier, dispatcher) -> SubmissionService:
    return SubmissionService(session, settings, notifier=notifier, dispatcher=dispatcher)


@pytest.fixture
def rules(settings) -> SubmissionService:
    """Service for the pure status and validation rules."""
    return SubmissionService(MagicMock(), settings)


async def version_count(session, submission_id) -> int:
    return await session.scalar(
        select(func.count(SubmissionVersion.id)).where(
            SubmissionVersion.submission_id == submission_id
        )
    )


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (S.DRAFT, S.UNDER_REVIEW),
            (S.DRAFT, S.EXPIRED),
            (S.CHANGES_REQUESTED, S.UNDER_REVIEW),
            (S.CHANGES_REQUESTED, S.EXPIRED),
            (S.UNDER_REVIEW, S.APPROVED),
            (S.UNDER_REVIEW, S.REJECTED),
            (S.UNDER_REVIEW, S.CHANGES_REQUESTED),
            (S.APPROVED, S.PUBLISHED),
            (S.EXPIRED, S.DRAFT),
            (S.EXPIRED, S.CHANGES_REQUESTED),
        ],
    )
    def test_allowed(self, rules, from_status, to_status):
        """Every edge of the lifecycle is accepted."""
        assert rules.is_valid_transition(from_status, to_status)

    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (S.DRAFT, S.APPROVED),
            (S.DRAFT, S.PUBLISHED),
            (S.UNDER_REVIEW, S.DRAFT),
            (S.UNDER_REVIEW, S.EXPIRED),
            (S.APPROVED, S.REJECTED),
            (S.PUBLISHED, S.DRAFT),
            (S.REJECTED, S.UNDER_REVIEW),
            (S.EXPIRED, S.UNDER_REVIEW),
        ],
    )
    def test_rejected(self, rules, from_status, to_status):
        """Edges outside the table are refused."""
        assert not rules.is_valid_transition(from_status, to_status)

    def test_terminal_statuses(self, rules):
        """Only PUBLISHED and REJECTED are terminal."""
        terminal = {status for status in S if rules.is_terminal_status(status)}

        assert terminal == {S.PUBLISHED, S.REJECTED}

    def test_editable_statuses(self, rules):
        """Authors may only edit DRAFT and CHANGES_REQUESTED."""
        editable = {status for status in S if rules.is_editable(status)}

        assert editable == {S.DRAFT, S.CHANGES_REQUESTED}


class TestCompleteness:
    """Tests for the completeness score."""

    def test_partial_submission(self, rules):
        """Only the title satisfies its minimum: 1 of 5 fields, 20%."""
        result = rules.validate_completeness(
            {
                "title": "Test Title",
                "summary": "short",
                "content": "short",
                "keywords": [],
                "category": None,
            }
        )

        assert not result.is_complete
        assert set(result.missing_fields) == {"summary", "content", "keywords", "category"}
        assert result.completeness_percentage == 20
        assert result.completed_fields == 1
        assert result.total_fields == 5

    def test_complete_submission(self, rules):
        """All five fields present gives 100%."""
        result = rules.validate_completeness(COMPLETE_CONTENT)

        assert result.is_complete
        assert result.missing_fields == []
        assert result.completeness_percentage == 100

    def test_whitespace_does_not_count(self, rules):
        """Lengths are measured after trimming."""
        data = dict(COMPLETE_CONTENT, title="   abc      ")

        result = rules.validate_completeness(data)

        assert result.missing_fields == ["title"]
        assert result.completeness_percentage == 80

    @pytest.mark.asyncio
    async def test_scores_stored_submission(self, session, rules):
        """Submissions are scored the same way as plain mappings."""
        submission = await create_submission(session, now=NOW, complete=True, keywords=[])

        result = rules.validate_completeness(submission)

        assert result.missing_fields == ["keywords"]


class TestSignificantChanges:
    """Tests for version-worthy change detection."""

    def test_title_change_is_significant(self, rules):
        current = dict(COMPLETE_CONTENT)

        assert rules.has_significant_changes(current, {"title": "Outro título"})

    def test_keywords_change_is_not_significant(self, rules):
        current = dict(COMPLETE_CONTENT)

        assert not rules.has_significant_changes(current, {"keywords": ["novo"]})

    def test_same_value_is_not_significant(self, rules):
        current = dict(COMPLETE_CONTENT)

        assert not rules.has_significant_changes(current, {"summary": current["summary"]})


class TestValidation:
    """Tests for field validation."""

    def test_collects_all_errors(self, rules):
        """Every problem is reported, not just the first."""
        with pytest.raises(ValidationError) as exc_info:
            rules.validate_submission_data(
                {"author_name": "A", "author_email": "invalid", "title": "abc"}
            )

        assert len(exc_info.value.validation_errors) == 3
        assert exc_info.value.details["validation_errors"] == exc_info.value.validation_errors

    def test_unknown_category(self, rules):
        with pytest.raises(ValidationError) as exc_info:
            rules.validate_submission_data({"category": "Astrologia"}, require_all=False)

        assert "Invalid category" in exc_info.value.validation_errors[0]

    def test_too_many_keywords(self, rules):
        with pytest.raises(ValidationError):
            rules.validate_submission_data(
                {"keywords": [f"k{i}" for i in range(11)]}, require_all=False
            )

    def test_partial_update_needs_no_author(self, rules):
        """Updates are checked without the creation-only requirements."""
        rules.validate_submission_data({"summary": "Novo resumo"}, require_all=False)

    def test_partial_update_keeps_title_minimum(self, rules):
        with pytest.raises(ValidationError) as exc_info:
            rules.validate_submission_data({"title": "ab"}, require_all=False)

        assert "at least" in exc_info.value.validation_errors[0]

    @pytest.mark.parametrize("field", ["title", "keywords"])
    def test_fields_cannot_be_cleared(self, rules, field):
        """A null title or keyword list is a validation error, not a storage error."""
        with pytest.raises(ValidationError):
            rules.validate_submission_data({field: None}, require_all=False)

    @pytest.mark.parametrize(
        "title",
        ["Um verbete\nBcc: outro@exemplo.org", "Um verbete\r\nqualquer", "Sobre\x00verbetes"],
    )
    def test_title_rejects_control_characters(self, rules, title):
        """Titles end up in e-mail subjects, so line breaks are refused."""
        with pytest.raises(ValidationError) as exc_info:
            rules.validate_submission_data(
                {"author_name": "Ana", "author_email": "ana@example.com", "title": title}
            )

        assert exc_info.value.validation_errors == [
            "Title must not contain line breaks or control characters"
        ]

    def test_draft_title_may_be_short(self, rules):
        rules.validate_submission_data({"title": "ab"}, require_all=False, draft=True)

        with pytest.raises(ValidationError):
            rules.validate_submission_data({"title": None}, require_all=False, draft=True)


class TestEditabilityGate:
    """Author mutations are refused outside DRAFT and CHANGES_REQUESTED."""

    @pytest.mark.asyncio
    async def test_update_under_review(self, session, service):
        submission = await create_submission(session, now=NOW, status=S.UNDER_REVIEW)

        with pytest.raises(InvalidStatusError) as exc_info:
            await service.update_submission(
                submission.id, {"title": "Outro título"}, submission.author_email, now=NOW
            )

        assert exc_info.value.current_status == S.UNDER_REVIEW
        assert set(exc_info.value.allowed_statuses) == set(EDITABLE_STATUSES)
        assert "under review" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_auto_save_under_review(self, session, service):
        submission = await create_submission(session, now=NOW, status=S.UNDER_REVIEW)

        with pytest.raises(InvalidStatusError) as exc_info:
            await service.auto_save(
                submission.id, {"content": "texto"}, submission.author_email, now=NOW
            )

        assert set(exc_info.value.allowed_statuses) == {S.DRAFT, S.CHANGES_REQUESTED}

    @pytest.mark.asyncio
    async def test_add_attachment_under_review(self, session, service):
        submission = await create_submission(session, now=NOW, status=S.UNDER_REVIEW)

        with pytest.raises(InvalidStatusError):
            await service.add_attachment(
                submission.id, {"filename": "a.pdf", "url": "https://files.test/a.pdf"}
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [S.APPROVED, S.PUBLISHED, S.REJECTED, S.EXPIRED])
    async def test_submit_from_non_editable(self, session, service, status):
        submission = await create_submission(session, now=NOW, status=status, complete=True)

        with pytest.raises(InvalidStatusError):
            await service.submit_for_review(submission.id, submission.author_email, now=NOW)

        assert submission.status == status


class TestCreateAndUpdate:
    """Tests for creation, updates and auto-save."""

    @pytest.mark.asyncio
    async def test_create_submission(self, session, service, notifier, dispatcher):
        """A new submission is a DRAFT with a token, a deadline and version 1."""
        submission = await service.create_submission(
            {
                "author_name": " Ana Souza ",
                "author_email": " Ana@Example.COM ",
                "title": "Sobre verbetes",
            },
            now=NOW,
        )
        await session.commit()
        await dispatcher.drain()

        assert submission.status == S.DRAFT
        assert submission.author_email == "ana@example.com"
        assert submission.author_name == "Ana Souza"
        assert len(submission.token) == 64
        assert submission.expires_at == NOW + timedelta(days=30)
        assert await version_count(session, submission.id) == 1
        notifier.send_token_email.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_data(self, service):
        with pytest.raises(ValidationError):
            await service.create_submission({"author_name": "Ana"}, now=NOW)

    @pytest.mark.asyncio
    async def test_significant_update_creates_version(self, session, service):
        submission = await service.create_submission(
            {"author_name": "Ana", "author_email": "ana@example.com", "title": "Sobre verbetes"},
            now=NOW,
        )

        updated = await service.update_submission(
            submission.id,
            {"title": "Sobre verbetes, revisto", "keywords": ["léxico"]},
            "ana@example.com",
            now=NOW + timedelta(hours=1),
        )

        assert updated.title == "Sobre verbetes, revisto"
        assert updated.keywords == ["léxico"]
        assert updated.updated_at == NOW + timedelta(hours=1)
        assert await version_count(session, submission.id) == 2

    @pytest.mark.asyncio
    async def test_minor_update_creates_no_version(self, session, service):
        submission = await service.create_submission(
            {"author_name": "Ana", "author_email": "ana@example.com", "title": "Sobre verbetes"},
            now=NOW,
        )

        await service.update_submission(
            submission.id, {"keywords": ["léxico"]}, "ana@example.com", now=NOW
        )

        assert await version_count(session, submission.id) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "updates",
        [{"title": "ab"}, {"title": None}, {"keywords": None}, {"title": "Sobre\nverbetes"}],
    )
    async def test_update_rejects_bad_title_and_keywords(self, session, service, updates):
        """Rejected updates leave the stored row untouched."""
        submission = await create_submission(session, now=NOW, title="Sobre verbetes")

        with pytest.raises(ValidationError):
            await service.update_submission(
                submission.id, updates, submission.author_email, now=NOW
            )

        assert submission.title == "Sobre verbetes"
        assert await version_count(session, submission.id) == 0

    @pytest.mark.asyncio
    async def test_rolled_back_creation_mails_nobody(self, session, service, notifier, dispatcher):
        await service.create_submission(
            {"author_name": "Ana", "author_email": "ana@example.com", "title": "Sobre verbetes"},
            now=NOW,
        )
        await session.rollback()
        await dispatcher.drain()

        notifier.send_token_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_save_accepts_short_title(self, session, service):
        submission = await create_submission(session, now=NOW)

        result = await service.auto_save(
            submission.id, {"title": "Ab"}, submission.author_email, now=NOW
        )

        assert result.fields_saved == ["title"]
        assert submission.title == "Ab"

    @pytest.mark.asyncio
    async def test_auto_save_never_versions(self, session, service):
        submission = await create_submission(session, now=NOW)

        result = await service.auto_save(
            submission.id,
            {"title": "Título provisório", "content": "rascunho"},
            submission.author_email,
            now=NOW,
        )

        assert sorted(result.fields_saved) == ["content", "title"]
        assert result.saved_at == NOW
        assert submission.content == "rascunho"
        assert await version_count(session, submission.id) == 0

    @pytest.mark.asyncio
    async def test_auto_save_checks_limits(self, session, service):
        submission = await create_submission(session, now=NOW)

        with pytest.raises(ValidationError):
            await service.auto_save(
                submission.id, {"summary": "x" * 501}, submission.author_email, now=NOW
            )


class TestAttachments:
    """Tests for attachment references."""

    @pytest.mark.asyncio
    async def test_limit_of_five(self, session, service):
        submission = await create_submission(session, now=NOW)
        for i in range(5):
            await service.add_attachment(
                submission.id, {"filename": f"{i}.pdf", "url": f"https://files.test/{i}.pdf"}
            )

        with pytest.raises(AttachmentLimitError) as exc_info:
            await service.add_attachment(
                submission.id, {"filename": "6.pdf", "url": "https://files.test/6.pdf"}
            )

        assert exc_info.value.max_attachments == 5

    @pytest.mark.asyncio
    async def test_requires_filename_and_url(self, session, service):
        submission = await create_submission(session, now=NOW)

        with pytest.raises(ValidationError) as exc_info:
            await service.add_attachment(submission.id, {"filename": "a.pdf"})

        assert exc_info.value.validation_errors == ["url is required"]

    @pytest.mark.asyncio
    async def test_remove(self, session, service):
        submission = await create_submission(session, now=NOW)
        attachment = await service.add_attachment(
            submission.id, {"filename": "a.pdf", "url": "https://files.test/a.pdf"}
        )

        await service.remove_attachment(submission.id, attachment.id)

        with pytest.raises(AttachmentNotFoundError):
            await service.remove_attachment(submission.id, attachment.id)


class TestSubmitForReview:
    """Tests for submit-for-review."""

    @pytest.mark.asyncio
    async def test_submit_complete_submission(self, session, service, notifier, dispatcher):
        """Complete submissions go to review, get a renewed token and notify admins."""
        await create_admin(session, "editor@verbete.test")
        submission = await create_submission(
            session, now=NOW, complete=True, expires_in=timedelta(days=2)
        )

        result = await service.submit_for_review(submission.id, submission.author_email, now=NOW)
        await session.commit()
        await dispatcher.drain()

        assert result.status == S.UNDER_REVIEW
        assert result.submitted_at == NOW
        assert result.expires_at == NOW + timedelta(days=30)
        assert result.version_number == 1
        assert submission.status == S.UNDER_REVIEW
        assert submission.submitted_at == NOW
        notifier.send_new_submission_notice.assert_awaited_once()
        assert notifier.send_new_submission_notice.call_args.kwargs["to"] == "editor@verbete.test"

    @pytest.mark.asyncio
    async def test_admin_notice_falls_back_to_configured_addresses(
        self, session, service, notifier, dispatcher
    ):
        submission = await create_submission(session, now=NOW, complete=True)

        await service.submit_for_review(submission.id, submission.author_email, now=NOW)
        await session.commit()
        await dispatcher.drain()

        recipients = [c.kwargs["to"] for c in notifier.send_new_submission_notice.call_args_list]
        assert recipients == ["editoria@verbete.test"]

    @pytest.mark.asyncio
    async def test_incomplete_submission_lists_missing_fields(self, session, service):
        submission = await create_submission(session, now=NOW)

        with pytest.raises(IncompleteSubmissionError) as exc_info:
            await service.submit_for_review(submission.id, submission.author_email, now=NOW)

        assert exc_info.value.missing_fields == ["summary", "content", "category", "keywords"]
        assert submission.status == S.DRAFT

    @pytest.mark.asyncio
    async def test_resubmit_after_changes_requested(self, session, service):
        submission = await create_submission(
            session, now=NOW, complete=True, status=S.CHANGES_REQUESTED
        )

        result = await service.submit_for_review(submission.id, submission.author_email, now=NOW)

        assert result.status == S.UNDER_REVIEW


class TestLookupAndStats:
    """Tests for the author view and per-submission stats."""

    @pytest.mark.asyncio
    async def test_get_by_token_with_versions(self, session, service):
        submission = await service.create_submission(
            {"author_name": "Ana", "author_email": "ana@example.com", "title": "Sobre verbetes"},
            now=NOW,
        )

        view = await service.get_submission_by_token(submission.token, True, now=NOW)

        assert view.submission is submission
        assert [v.version_number for v in view.versions] == [1]
        assert view.attachments == []
        assert view.token_info.days_to_expiry == 30

    @pytest.mark.asyncio
    async def test_get_by_token_without_versions(self, session, service):
        submission = await create_submission(session, now=NOW)

        view = await service.get_submission_by_token(submission.token, now=NOW)

        assert view.versions is None

    @pytest.mark.asyncio
    async def test_get_by_expired_token(self, session, service):
        submission = await create_submission(session, now=NOW, expires_in=timedelta(days=-1))

        with pytest.raises(TokenExpiredError) as exc_info:
            await service.get_submission_by_token(submission.token, now=NOW)

        assert exc_info.value.can_recover
        assert submission.status == S.EXPIRED

    @pytest.mark.asyncio
    async def test_submission_stats(self, session, service):
        submission = await create_submission(
            session,
            now=NOW - timedelta(days=4),
            complete=True,
            expires_in=timedelta(days=14),
        )
        await service.add_attachment(
            submission.id, {"filename": "a.pdf", "url": "https://files.test/a.pdf"}
        )

        stats = await service.get_submission_stats(submission.id, now=NOW)

        assert stats.attachment_count == 1
        assert stats.version_count == 0
        assert stats.days_since_creation == 4
        assert stats.days_to_expiry == 10
        assert stats.completeness.is_complete
        assert stats.content_stats["keyword_count"] == 2
