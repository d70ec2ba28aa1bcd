"""Submission status state machine.

This module implements:
- The transition table between submission statuses
- The editability gate for every author mutation
- Completeness scoring that gates submit-for-review
- Creation, update, auto-save, attachments and version snapshots

Only DRAFT and CHANGES_REQUESTED accept author edits. Moving to review
renews the token so the author can keep following the submission.

    DRAFT / CHANGES_REQUESTED -> UNDER_REVIEW -> APPROVED -> PUBLISHED
            |        ^                  |
            v        |                  +-> REJECTED
          EXPIRED ---+ (reactivation)   +-> CHANGES_REQUESTED
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import func, select

from verbete.core.config import Settings
from verbete.core.errors import (
    AttachmentLimitError,
    AttachmentNotFoundError,
    IncompleteSubmissionError,
    InvalidStatusError,
    ValidationError,
    storage_errors,
)
from verbete.db.models.admins import AdminUser
from verbete.db.models.base import EDITABLE_STATUSES, SubmissionStatus, utcnow
from verbete.db.models.submissions import (
    Attachment,
    Feedback,
    Submission,
    SubmissionVersion,
)
from verbete.services.email import TokenNoticeKind, hash_email
from verbete.services.tokens import (
    ONE_DAY,
    TokenInfo,
    TokenLifecycleService,
    days_until,
    ensure_valid,
    generate_token,
)

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.services.dispatch import NotificationDispatcher
    from verbete.services.email import EmailNotifier

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

AUTHOR_NAME_MIN = 2
TITLE_MIN = 5
TITLE_MAX = 200
SUMMARY_MAX = 500
CONTENT_MAX = 50_000
MAX_KEYWORDS = 10
KEYWORD_MAX = 50

# (field, minimum length, is a list)
REQUIRED_FIELDS: tuple[tuple[str, int, bool], ...] = (
    ("title", 5, False),
    ("summary", 50, False),
    ("content", 100, False),
    ("category", 1, False),
    ("keywords", 1, True),
)

SIGNIFICANT_FIELDS = ("title", "summary", "content", "category")

UPDATABLE_FIELDS = (
    "title",
    "summary",
    "content",
    "keywords",
    "category",
    "author_institution",
    "submission_metadata",
)

# Why a non-editable submission refuses changes, shown to the author
STATUS_REASONS: dict[SubmissionStatus, str] = {
    SubmissionStatus.UNDER_REVIEW: "it is under review",
    SubmissionStatus.APPROVED: "it has already been approved",
    SubmissionStatus.PUBLISHED: "it has already been published",
    SubmissionStatus.REJECTED: "it was rejected",
    SubmissionStatus.EXPIRED: "its access token has expired",
}


@dataclass(frozen=True, slots=True)
class CompletenessResult:
    """Outcome of the completeness check.

    Attributes:
        is_complete: True when no required field is missing.
        missing_fields: Required fields that fall short, in check order.
        completeness_percentage: completed/total as a whole percentage.
        completed_fields: Number of satisfied fields.
        total_fields: Number of required fields.
    """

    is_complete: bool
    missing_fields: list[str]
    completeness_percentage: int
    completed_fields: int
    total_fields: int


@dataclass(frozen=True, slots=True)
class SubmissionView:
    """Everything the author sees when opening their link."""

    submission: Submission
    attachments: list[Attachment]
    feedback: list[Feedback]
    versions: list[SubmissionVersion] | None
    token_info: TokenInfo | None


@dataclass(frozen=True, slots=True)
class AutoSaveResult:
    """Outcome of an auto-save."""

    submission_id: UUID
    saved_at: datetime
    fields_saved: list[str]


@dataclass(frozen=True, slots=True)
class ReviewSubmission:
    """Outcome of a successful submit-for-review."""

    submission_id: UUID
    status: SubmissionStatus
    submitted_at: datetime
    expires_at: datetime
    version_number: int


@dataclass(frozen=True, slots=True)
class SubmissionStats:
    """Content and activity counters for one submission."""

    submission_id: UUID
    status: SubmissionStatus
    version_count: int
    attachment_count: int
    feedback_count: int
    days_since_creation: int
    days_to_expiry: int
    content_stats: dict[str, Any]
    completeness: CompletenessResult


def _field_value(source: Submission | Mapping[str, Any], field: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(field)
    return getattr(source, field, None)


class SubmissionService:
    """Author-side operations on submissions, gated by status.

    Example:
        service = SubmissionService(session, settings, notifier=n, dispatcher=d)
        submission = await service.create_submission(data)
        await service.submit_for_review(submission.id, submission.author_email)
    """

    VALID_TRANSITIONS: ClassVar[dict[SubmissionStatus, set[SubmissionStatus]]] = {
        SubmissionStatus.DRAFT: {SubmissionStatus.UNDER_REVIEW, SubmissionStatus.EXPIRED},
        SubmissionStatus.CHANGES_REQUESTED: {
            SubmissionStatus.UNDER_REVIEW,
            SubmissionStatus.EXPIRED,
        },
        SubmissionStatus.UNDER_REVIEW: {
            SubmissionStatus.APPROVED,
            SubmissionStatus.REJECTED,
            SubmissionStatus.CHANGES_REQUESTED,
        },
        SubmissionStatus.APPROVED: {SubmissionStatus.PUBLISHED},
        SubmissionStatus.EXPIRED: {SubmissionStatus.DRAFT, SubmissionStatus.CHANGES_REQUESTED},
        # Terminal
        SubmissionStatus.PUBLISHED: set(),
        SubmissionStatus.REJECTED: set(),
    }

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        *,
        notifier: EmailNotifier | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        """Initialize the submission service.

        Args:
            session: SQLAlchemy async session for database operations.
            settings: Application settings (defaults apply when omitted).
            notifier: Mails authors and admins.
            dispatcher: Background runner for request-path mails.
        """
        self._session = session
        self.settings = settings or Settings()
        self._notifier = notifier
        self._dispatcher = dispatcher
        self.tokens = TokenLifecycleService(
            session,
            self.settings.tokens,
            notifier=notifier,
            dispatcher=dispatcher,
        )

    # ------------------------------------------------------------------
    # Status rules
    # ------------------------------------------------------------------

    def is_valid_transition(self, from_status: SubmissionStatus, to_status: SubmissionStatus) -> bool:
        """Check whether ``from_status -> to_status`` is in the transition table."""
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def is_terminal_status(self, status: SubmissionStatus) -> bool:
        """PUBLISHED and REJECTED have no way out."""
        return not self.VALID_TRANSITIONS.get(status)

    def is_editable(self, status: SubmissionStatus) -> bool:
        return status in EDITABLE_STATUSES

    def assert_editable(self, submission: Submission, operation: str = "edited") -> None:
        """Refuse mutations outside DRAFT and CHANGES_REQUESTED.

        Args:
            submission: Submission about to change.
            operation: Past participle used in the message ("edited", "submitted", ...).

        Raises:
            InvalidStatusError: Carrying the current status and the editable set.
        """
        if self.is_editable(submission.status):
            return
        reason = STATUS_REASONS.get(submission.status, f"its status is {submission.status.value}")
        raise InvalidStatusError(
            submission.status,
            EDITABLE_STATUSES,
            f"Submission cannot be {operation} because {reason}",
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_completeness(self, source: Submission | Mapping[str, Any]) -> CompletenessResult:
        """Score the five required fields.

        Text fields are measured after trimming; keywords must be a list
        with at least one entry.
        """
        missing: list[str] = []
        for field, minimum, is_list in REQUIRED_FIELDS:
            value = _field_value(source, field)
            if is_list:
                ok = isinstance(value, list | tuple) and len(value) >= minimum
            else:
                ok = bool(value) and len(str(value).strip()) >= minimum
            if not ok:
                missing.append(field)

        total = len(REQUIRED_FIELDS)
        completed = total - len(missing)
        return CompletenessResult(
            is_complete=not missing,
            missing_fields=missing,
            # round half up
            completeness_percentage=int(completed * 100 / total + 0.5),
            completed_fields=completed,
            total_fields=total,
        )

    def has_significant_changes(
        self,
        current: Submission | Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> bool:
        """True if title, summary, content or category changes (keys present in ``updates`` only)."""
        return any(
            field in updates and updates[field] != _field_value(current, field)
            for field in SIGNIFICANT_FIELDS
        )

    def validate_submission_data(
        self,
        data: Mapping[str, Any],
        require_all: bool = True,
        *,
        draft: bool = False,
    ) -> None:
        """Validate submitted fields, collecting every problem.

        A title, when present (always on creation), must be text of
        TITLE_MIN..TITLE_MAX characters without control characters. Title
        and keywords cannot be cleared.

        Args:
            data: Field values.
            require_all: Also require author name, e-mail and title (creation).
            draft: Work in progress (auto-save); skip the title minimum.

        Raises:
            ValidationError: Listing all errors found.
        """
        errors: list[str] = []

        if require_all:
            name = data.get("author_name") or ""
            if len(name.strip()) < AUTHOR_NAME_MIN:
                errors.append(f"Author name must have at least {AUTHOR_NAME_MIN} characters")
            email = data.get("author_email") or ""
            if not EMAIL_PATTERN.match(email.strip()):
                errors.append("Author e-mail is required and must be valid")

        if require_all or "title" in data:
            errors.extend(self._title_errors(data.get("title"), draft=draft))

        if data.get("summary") and len(data["summary"]) > SUMMARY_MAX:
            errors.append(f"Summary is too long (max {SUMMARY_MAX} characters)")
        if data.get("content") and len(data["content"]) > CONTENT_MAX:
            errors.append(f"Content is too long (max {CONTENT_MAX} characters)")

        if "keywords" in data:
            keywords = data["keywords"]
            if not isinstance(keywords, list | tuple):
                errors.append("Keywords must be a list")
            else:
                if len(keywords) > MAX_KEYWORDS:
                    errors.append(f"At most {MAX_KEYWORDS} keywords are allowed")
                if any(not isinstance(k, str) or len(k) > KEYWORD_MAX for k in keywords):
                    errors.append(f"Keywords must be text of at most {KEYWORD_MAX} characters")

        category = data.get("category")
        categories = self.settings.submissions.categories
        if category and category not in categories:
            errors.append(f"Invalid category. Allowed: {', '.join(categories)}")

        if errors:
            raise ValidationError(errors)

    def _title_errors(self, title: Any, *, draft: bool) -> list[str]:
        if not isinstance(title, str):
            return ["Title is required"]
        errors = []
        if not draft and len(title.strip()) < TITLE_MIN:
            errors.append(f"Title must have at least {TITLE_MIN} characters")
        if len(title) > TITLE_MAX:
            errors.append(f"Title is too long (max {TITLE_MAX} characters)")
        # The title ends up in e-mail subjects
        if CONTROL_CHARS.search(title):
            errors.append("Title must not contain line breaks or control characters")
        return errors

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_submission_by_token(
        self,
        token: str,
        include_versions: bool = False,
        *,
        now: datetime | None = None,
    ) -> SubmissionView:
        """Resolve a token to the author's view of their submission.

        Raises:
            TokenFormatError: Malformed token.
            TokenNotFoundError: Unknown token.
            TokenExpiredError: Expired token; the submission was moved to
                EXPIRED if it was still editable.
        """
        validation = await self.tokens.validate_token(token, now=now)
        submission = ensure_valid(validation)

        with storage_errors("get_submission_by_token"):
            attachments = await self._attachments(submission.id)
            feedback = list(
                (
                    await self._session.execute(
                        select(Feedback)
                        .where(Feedback.submission_id == submission.id)
                        .order_by(Feedback.created_at.desc())
                    )
                )
                .scalars()
                .all()
            )
            versions = None
            if include_versions:
                versions = list(
                    (
                        await self._session.execute(
                            select(SubmissionVersion)
                            .where(SubmissionVersion.submission_id == submission.id)
                            .order_by(SubmissionVersion.version_number.desc())
                        )
                    )
                    .scalars()
                    .all()
                )

        return SubmissionView(
            submission=submission,
            attachments=attachments,
            feedback=feedback,
            versions=versions,
            token_info=validation.token_info,
        )

    async def _attachments(self, submission_id: UUID) -> list[Attachment]:
        result = await self._session.execute(
            select(Attachment)
            .where(Attachment.submission_id == submission_id)
            .order_by(Attachment.created_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_submission(
        self,
        data: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> Submission:
        """Create a DRAFT submission with a fresh token and its first version.

        Committing is left to the caller. The token e-mail goes out once it
        commits; a rollback drops it.

        Raises:
            ValidationError: If the data is invalid.
        """
        self.validate_submission_data(data, require_all=True)
        now = now or utcnow()
        expiry_days = self.settings.tokens.default_expiry_days

        with storage_errors("create_submission"):
            submission = Submission(
                author_name=data["author_name"].strip(),
                author_email=data["author_email"].strip().lower(),
                author_institution=data.get("author_institution"),
                title=data["title"].strip(),
                summary=data.get("summary"),
                content=data.get("content"),
                keywords=list(data.get("keywords") or []),
                category=data.get("category"),
                submission_metadata=dict(data.get("submission_metadata") or {}),
                status=SubmissionStatus.DRAFT,
                token=generate_token(),
                expires_at=now + expiry_days * ONE_DAY,
                created_at=now,
                updated_at=now,
            )
            self._session.add(submission)
            await self._session.flush()
            await self.create_version_snapshot(
                submission.id,
                change_summary="Initial version",
                submission=submission,
            )

        logger.info(
            "Submission created: submission_id=%s, token_prefix=%s, expires_at=%s",
            submission.id,
            submission.token[:8],
            submission.expires_at.isoformat(),
        )
        self.tokens.notify_author(submission, TokenNoticeKind.CREATED)
        return submission

    async def update_submission(
        self,
        submission_id: UUID,
        updates: Mapping[str, Any],
        author_email: str,
        *,
        now: datetime | None = None,
    ) -> Submission:
        """Apply author edits, snapshotting a version when a significant field changes.

        Only fields that differ from the stored values are written.

        Raises:
            SubmissionNotFoundError: Unknown submission.
            InvalidStatusError: Not in an editable status.
            ValidationError: Invalid field values.
        """
        now = now or utcnow()

        with storage_errors("update_submission"):
            submission = await self.tokens.get_submission(submission_id)
            self.assert_editable(submission, "edited")
            self.validate_submission_data(updates, require_all=False)

            significant = self.has_significant_changes(submission, updates)
            changed = self._apply_updates(submission, updates)
            if not changed:
                return submission

            submission.updated_at = now
            await self._session.flush()
            if significant:
                await self.create_version_snapshot(
                    submission.id,
                    change_summary="Author update",
                    submission=submission,
                )

        logger.info(
            "Submission updated: submission_id=%s, fields=%s, significant=%s, author_hash=%s",
            submission_id,
            ",".join(changed),
            significant,
            hash_email(author_email)[:16],
        )
        return submission

    async def auto_save(
        self,
        submission_id: UUID,
        updates: Mapping[str, Any],
        author_email: str,
        *,
        now: datetime | None = None,
    ) -> AutoSaveResult:
        """Persist work in progress without creating a version.

        Field limits still apply; completeness and the title minimum do not.
        """
        now = now or utcnow()

        with storage_errors("auto_save"):
            submission = await self.tokens.get_submission(submission_id)
            self.assert_editable(submission, "auto-saved")
            self.validate_submission_data(updates, require_all=False, draft=True)

            changed = self._apply_updates(submission, updates)
            if changed:
                submission.updated_at = now
                await self._session.flush()

        logger.debug(
            "Auto-save: submission_id=%s, fields=%d, author_hash=%s",
            submission_id,
            len(changed),
            hash_email(author_email)[:16],
        )
        return AutoSaveResult(submission_id=submission.id, saved_at=now, fields_saved=changed)

    def _apply_updates(self, submission: Submission, updates: Mapping[str, Any]) -> list[str]:
        changed = []
        for field in UPDATABLE_FIELDS:
            if field not in updates:
                continue
            value = updates[field]
            if field == "keywords" and value is not None:
                value = list(value)
            if getattr(submission, field) == value:
                continue
            setattr(submission, field, value)
            changed.append(field)
        return changed

    async def add_attachment(
        self,
        submission_id: UUID,
        data: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> Attachment:
        """Register an already-stored file against the submission.

        Raises:
            InvalidStatusError: Not in an editable status.
            AttachmentLimitError: The submission already has the maximum.
            ValidationError: Missing filename or url.
        """
        limit = self.settings.submissions.max_attachments

        with storage_errors("add_attachment"):
            submission = await self.tokens.get_submission(submission_id)
            self.assert_editable(submission, "changed")

            count = await self._session.scalar(
                select(func.count(Attachment.id)).where(Attachment.submission_id == submission_id)
            )
            if (count or 0) >= limit:
                raise AttachmentLimitError(limit)

            errors = [f"{key} is required" for key in ("filename", "url") if not data.get(key)]
            if errors:
                raise ValidationError(errors)

            attachment = Attachment(
                submission_id=submission_id,
                filename=data["filename"],
                url=data["url"],
                file_type=data.get("file_type"),
                size=data.get("size"),
                attachment_metadata=dict(data.get("attachment_metadata") or {}),
                created_at=now or utcnow(),
            )
            self._session.add(attachment)
            await self._session.flush()

        logger.info(
            "Attachment added: submission_id=%s, attachment_id=%s, count=%d",
            submission_id,
            attachment.id,
            (count or 0) + 1,
        )
        return attachment

    async def remove_attachment(self, submission_id: UUID, attachment_id: UUID) -> None:
        """Delete an attachment reference (the stored file is not touched).

        Raises:
            InvalidStatusError: Not in an editable status.
            AttachmentNotFoundError: No such attachment on this submission.
        """
        with storage_errors("remove_attachment"):
            submission = await self.tokens.get_submission(submission_id)
            self.assert_editable(submission, "changed")

            result = await self._session.execute(
                select(Attachment).where(
                    Attachment.id == attachment_id,
                    Attachment.submission_id == submission_id,
                )
            )
            attachment = result.scalar_one_or_none()
            if attachment is None:
                raise AttachmentNotFoundError(attachment_id)

            await self._session.delete(attachment)
            await self._session.flush()

        logger.info("Attachment removed: submission_id=%s, attachment_id=%s", submission_id, attachment_id)

    async def submit_for_review(
        self,
        submission_id: UUID,
        author_email: str,
        *,
        now: datetime | None = None,
    ) -> ReviewSubmission:
        """Send a complete submission to the editors.

        Moves to UNDER_REVIEW, stamps ``submitted_at``, renews the token for
        the configured window and records a version. The admins are told in
        the background once the caller commits.

        Raises:
            InvalidStatusError: Not in an editable status.
            IncompleteSubmissionError: Listing every missing field.
        """
        now = now or utcnow()

        with storage_errors("submit_for_review"):
            submission = await self.tokens.get_submission(submission_id)
            self.assert_editable(submission, "submitted")
            if not self.is_valid_transition(submission.status, SubmissionStatus.UNDER_REVIEW):
                raise InvalidStatusError(submission.status, EDITABLE_STATUSES)

            completeness = self.validate_completeness(submission)
            if not completeness.is_complete:
                raise IncompleteSubmissionError(completeness.missing_fields)

            previous = submission.status
            submission.status = SubmissionStatus.UNDER_REVIEW
            submission.submitted_at = now
            submission.updated_at = now
            await self._session.flush()

            renewal = await self.tokens.renew_token(
                submission.id,
                self.settings.tokens.submit_renewal_days,
                now=now,
            )
            version = await self.create_version_snapshot(
                submission.id,
                change_summary="Submitted for review",
                submission=submission,
            )
            recipients = await self._admin_recipients()

        logger.info(
            "Submission sent for review: submission_id=%s, from=%s, version=%d, author_hash=%s",
            submission_id,
            previous.value,
            version.version_number,
            hash_email(author_email)[:16],
        )
        self._notify_admins(submission, recipients)

        return ReviewSubmission(
            submission_id=submission.id,
            status=submission.status,
            submitted_at=now,
            expires_at=renewal.expires_at,
            version_number=version.version_number,
        )

    async def _admin_recipients(self) -> list[str]:
        result = await self._session.execute(
            select(AdminUser.email).where(AdminUser.is_active.is_(True)).order_by(AdminUser.email)
        )
        emails = list(result.scalars().all())
        return emails or list(self.settings.alerts.admin_emails)

    def _notify_admins(self, submission: Submission, recipients: list[str]) -> None:
        if self._notifier is None or self._dispatcher is None:
            return
        for email in recipients:
            self._dispatcher.dispatch_after_commit(
                self._session,
                functools.partial(
                    self._notifier.send_new_submission_notice,
                    to=email,
                    title=submission.title,
                    author_name=submission.author_name,
                    category=submission.category,
                    submitted_at=submission.submitted_at,
                ),
                label=f"new_submission:{submission.id}",
            )

    async def create_version_snapshot(
        self,
        submission_id: UUID,
        *,
        change_summary: str | None = None,
        created_by: str = "author",
        submission: Submission | None = None,
    ) -> SubmissionVersion:
        """Append the next version of the submission's current content."""
        if submission is None:
            submission = await self.tokens.get_submission(submission_id)

        next_number = await self._session.scalar(
            select(func.coalesce(func.max(SubmissionVersion.version_number), 0) + 1).where(
                SubmissionVersion.submission_id == submission_id
            )
        )
        version = SubmissionVersion(
            submission_id=submission_id,
            version_number=int(next_number or 1),
            title=submission.title,
            summary=submission.summary,
            content=submission.content,
            version_metadata=dict(submission.submission_metadata or {}),
            change_summary=change_summary,
            created_by=created_by,
        )
        self._session.add(version)
        await self._session.flush()

        logger.debug(
            "Version snapshot: submission_id=%s, version=%d",
            submission_id,
            version.version_number,
        )
        return version

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_submission_stats(
        self,
        submission_id: UUID,
        *,
        now: datetime | None = None,
    ) -> SubmissionStats:
        """Counters, content sizes and completeness for one submission."""
        now = now or utcnow()

        with storage_errors("get_submission_stats"):
            submission = await self.tokens.get_submission(submission_id)
            counts = {}
            for name, model in (
                ("versions", SubmissionVersion),
                ("attachments", Attachment),
                ("feedback", Feedback),
            ):
                counts[name] = await self._session.scalar(
                    select(func.count(model.id)).where(model.submission_id == submission_id)
                )

        return SubmissionStats(
            submission_id=submission.id,
            status=submission.status,
            version_count=int(counts["versions"] or 0),
            attachment_count=int(counts["attachments"] or 0),
            feedback_count=int(counts["feedback"] or 0),
            days_since_creation=int(days_until(now, submission.created_at)),
            days_to_expiry=int(days_until(submission.expires_at, now)),
            content_stats={
                "title_length": len(submission.title or ""),
                "summary_length": len(submission.summary or ""),
                "content_length": len(submission.content or ""),
                "keyword_count": len(submission.keywords or []),
                "has_category": bool(submission.category),
                "has_institution": bool(submission.author_institution),
            },
            completeness=self.validate_completeness(submission),
        )
