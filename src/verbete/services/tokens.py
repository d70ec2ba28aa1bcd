"""Author access token lifecycle.

A token is the only credential an anonymous author holds: 64 lowercase hex
characters, stored on the submission it unlocks. Only the current value is
stored, so issuing a new one revokes the old immediately.

This module implements:
- Token generation and format checks
- Validation with lazy expiry (first access after the deadline moves an
  editable submission to EXPIRED)
- Renewal (window reset from now), regeneration and reactivation
- The batch sweep that expires every overdue editable submission
- Queries for submissions nearing expiry, and token statistics

Token format, lookup and expiry outcomes are returned as results; callers
branch on ``reason``. Storage failures raise OperationalError.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import math
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import and_, case, func, select

from verbete.core.config import TokenSettings
from verbete.core.errors import (
    InvalidStatusError,
    SubmissionNotFoundError,
    TokenExpiredError,
    TokenFormatError,
    TokenNotFoundError,
    storage_errors,
)
from verbete.db.models.base import (
    EDITABLE_STATUSES,
    FeedbackStatus,
    SubmissionStatus,
    utcnow,
)
from verbete.db.models.submissions import Feedback, Submission
from verbete.services.email import TokenNoticeKind, hash_email

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from verbete.services.dispatch import NotificationDispatcher
    from verbete.services.email import EmailNotifier

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("verbete.security")

TOKEN_LENGTH = 64
TOKEN_RANDOM_BYTES = 28
TOKEN_PATTERN = re.compile(r"[a-f0-9]{64}")

ONE_DAY = timedelta(days=1)


class TokenValidationReason(str, Enum):
    """Why a token failed validation."""

    INVALID_FORMAT = "TOKEN_INVALID_FORMAT"
    NOT_FOUND = "TOKEN_NOT_FOUND"
    EXPIRED = "TOKEN_EXPIRED"


class EmailValidationReason(str, Enum):
    """Outcome of the author e-mail check."""

    SUBMISSION_NOT_FOUND = "SUBMISSION_NOT_FOUND"
    EMAIL_VALID = "EMAIL_VALID"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"


@dataclass(frozen=True, slots=True)
class TokenInfo:
    """Remaining validity of a live token.

    Attributes:
        expires_at: Deadline of the token.
        days_to_expiry: Whole days left, rounded up.
        is_near_expiry: True when days_to_expiry is within the warning window.
        needs_renewal: Same as is_near_expiry; kept separate for clients.
    """

    expires_at: datetime
    days_to_expiry: int
    is_near_expiry: bool
    needs_renewal: bool


@dataclass(frozen=True, slots=True)
class SubmissionSummary:
    """The minimal view returned for an expired token."""

    id: UUID
    title: str
    author_email: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class TokenValidation:
    """Result of validating a token.

    Attributes:
        is_valid: Whether the token grants access.
        reason: Failure reason, None when valid.
        submission: The full submission, only when valid.
        expired_submission: Minimal summary, only when expired.
        token_info: Remaining validity, only when valid.
        can_recover: True when the author may ask for reactivation.
    """

    is_valid: bool
    reason: TokenValidationReason | None = None
    submission: Submission | None = None
    expired_submission: SubmissionSummary | None = None
    token_info: TokenInfo | None = None
    can_recover: bool = False


@dataclass(frozen=True, slots=True)
class EmailValidation:
    """Result of comparing a supplied e-mail with the author's."""

    is_valid: bool
    reason: EmailValidationReason


@dataclass(frozen=True, slots=True)
class TokenIssue:
    """A newly issued token."""

    submission_id: UUID
    token: str
    expires_at: datetime
    expiry_days: int


@dataclass(frozen=True, slots=True)
class TokenRenewal:
    """New deadline after a renewal."""

    submission_id: UUID
    expires_at: datetime
    additional_days: int


@dataclass(frozen=True, slots=True)
class Reactivation:
    """Outcome of reactivating an expired submission."""

    submission_id: UUID
    token: str
    expires_at: datetime
    status: SubmissionStatus


@dataclass(frozen=True, slots=True)
class ExpiredSubmission:
    """A submission moved to EXPIRED by the sweep."""

    id: UUID
    author_name: str
    author_email: str
    title: str
    token: str | None
    expires_at: datetime
    previous_status: SubmissionStatus


@dataclass(frozen=True, slots=True)
class ExpiringSubmission:
    """An editable submission whose token runs out soon."""

    id: UUID
    author_name: str
    author_email: str
    title: str
    token: str | None
    status: SubmissionStatus
    expires_at: datetime
    days_to_expiry: float


@dataclass(frozen=True, slots=True)
class TokenStats:
    """Per-status token counters."""

    total: int
    expired: int
    expiring_soon: int


def generate_token() -> str:
    """Create a new access token.

    SHA-256 over a hex nanosecond timestamp followed by 28 random bytes in
    hex. The random part dominates, so equal timestamps still give
    distinct tokens.
    """
    timestamp = format(time.time_ns(), "x")
    random_part = secrets.token_hex(TOKEN_RANDOM_BYTES)
    digest = hashlib.sha256(f"{timestamp}{random_part}".encode()).hexdigest()
    return digest[:TOKEN_LENGTH]


def is_valid_token_format(token: object) -> bool:
    """Check for exactly 64 lowercase hex characters."""
    return isinstance(token, str) and TOKEN_PATTERN.fullmatch(token) is not None


def is_expired(submission: Submission, now: datetime) -> bool:
    """Expiry predicate shared by lazy validation and the batch sweep."""
    return now > submission.expires_at


def deadline_applies(submission: Submission) -> bool:
    """Whether ``expires_at`` limits access.

    Submissions under review or past it stay readable through their token
    whatever the deadline; only editable (or already expired) ones lapse.
    """
    return submission.status in EDITABLE_STATUSES or submission.status == SubmissionStatus.EXPIRED


def days_until(expires_at: datetime, now: datetime) -> float:
    """Fractional days from ``now`` to ``expires_at``."""
    return (expires_at - now) / ONE_DAY


def whole_days_until(expires_at: datetime, now: datetime) -> int:
    """Days left, rounded up (a deadline 2.1 days away is 3 days away)."""
    return math.ceil(days_until(expires_at, now))


def ensure_valid(validation: TokenValidation) -> Submission:
    """Turn a failed validation into the matching domain error.

    Used at the author-facing boundary where a failure must stop the request.

    Raises:
        TokenFormatError: Malformed token.
        TokenNotFoundError: Unknown token.
        TokenExpiredError: Expired token (``can_recover`` set).
    """
    if validation.is_valid and validation.submission is not None:
        return validation.submission

    if validation.reason is TokenValidationReason.INVALID_FORMAT:
        raise TokenFormatError()
    if validation.reason is TokenValidationReason.EXPIRED:
        summary = validation.expired_submission
        details = {}
        if summary is not None:
            details = {"title": summary.title, "expires_at": summary.expires_at.isoformat()}
        raise TokenExpiredError(can_recover=validation.can_recover, details=details)
    raise TokenNotFoundError()


class TokenLifecycleService:
    """Issues, validates and expires author access tokens.

    Example:
        service = TokenLifecycleService(session, settings.tokens)
        result = await service.validate_token(token)
        if not result.is_valid:
            ...  # branch on result.reason
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: TokenSettings | None = None,
        *,
        notifier: EmailNotifier | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        """Initialize the token service.

        Args:
            session: SQLAlchemy async session for database operations.
            settings: Token lifetimes (defaults apply when omitted).
            notifier: Used to mail freshly issued tokens.
            dispatcher: Background runner for those mails.
        """
        self._session = session
        self.settings = settings or TokenSettings()
        self._notifier = notifier
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_submission(self, submission_id: UUID) -> Submission:
        """Get a submission by id.

        Raises:
            SubmissionNotFoundError: If it does not exist.
        """
        submission = await self._session.get(Submission, submission_id)
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        return submission

    async def find_by_token(self, token: str) -> Submission | None:
        """Look up the submission currently holding ``token``."""
        result = await self._session.execute(select(Submission).where(Submission.token == token))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def create_token(
        self,
        submission_id: UUID,
        expiry_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> TokenIssue:
        """Issue a token and mail it to the author once the session commits.

        Args:
            submission_id: Submission to issue the token for.
            expiry_days: Validity window (defaults to the configured one).
            now: Reference time.

        Returns:
            TokenIssue with the token and its deadline.
        """
        now = now or utcnow()
        days = self.settings.default_expiry_days if expiry_days is None else expiry_days

        with storage_errors("create_token"):
            submission = await self.get_submission(submission_id)
            submission.token = generate_token()
            submission.expires_at = now + timedelta(days=days)
            submission.updated_at = now
            await self._session.flush()

        logger.info(
            "Token issued: submission_id=%s, token_prefix=%s, expires_at=%s",
            submission.id,
            submission.token[:8],
            submission.expires_at.isoformat(),
        )
        self.notify_author(submission, TokenNoticeKind.CREATED)

        return TokenIssue(
            submission_id=submission.id,
            token=submission.token,
            expires_at=submission.expires_at,
            expiry_days=days,
        )

    def notify_author(self, submission: Submission, kind: TokenNoticeKind) -> None:
        """Mail the author their current link without waiting for delivery.

        The mail goes out once the session commits, and not at all if it
        rolls back.
        """
        if self._notifier is None or self._dispatcher is None or submission.token is None:
            logger.debug("Token notification skipped: submission_id=%s", submission.id)
            return

        self._dispatcher.dispatch_after_commit(
            self._session,
            functools.partial(
                self._notifier.send_token_email,
                to=submission.author_email,
                author_name=submission.author_name,
                title=submission.title,
                token=submission.token,
                expires_at=submission.expires_at,
                kind=kind,
            ),
            label=f"token_email:{kind.value}:{submission.id}",
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_token(self, token: str, *, now: datetime | None = None) -> TokenValidation:
        """Validate a token, expiring its submission lazily when overdue.

        Steps: format check, lookup, expiry check (moving an editable
        submission to EXPIRED the first time), then remaining-time info.
        Submissions outside the editable statuses ignore the deadline, so an
        expired result is always recoverable.

        Args:
            token: Token presented by the author.
            now: Reference time.

        Returns:
            TokenValidation; failures carry a reason rather than raising.
        """
        now = now or utcnow()

        if not is_valid_token_format(token):
            security_logger.warning(
                "Security event: invalid token format",
                extra={"event": "token_invalid_format", "token_length": len(str(token))},
            )
            return TokenValidation(is_valid=False, reason=TokenValidationReason.INVALID_FORMAT)

        with storage_errors("validate_token"):
            submission = await self.find_by_token(token)
            if submission is None:
                security_logger.warning(
                    "Security event: unknown token",
                    extra={"event": "token_not_found", "token_prefix": token[:8]},
                )
                return TokenValidation(is_valid=False, reason=TokenValidationReason.NOT_FOUND)

            if deadline_applies(submission) and is_expired(submission, now):
                await self._expire(submission, now)
                security_logger.info(
                    "Security event: expired token used",
                    extra={"event": "token_expired", "submission_id": str(submission.id)},
                )
                return TokenValidation(
                    is_valid=False,
                    reason=TokenValidationReason.EXPIRED,
                    expired_submission=SubmissionSummary(
                        id=submission.id,
                        title=submission.title,
                        author_email=submission.author_email,
                        expires_at=submission.expires_at,
                    ),
                    can_recover=True,
                )

        days_left = max(whole_days_until(submission.expires_at, now), 0)
        near_expiry = deadline_applies(submission) and days_left <= self.settings.warning_days
        return TokenValidation(
            is_valid=True,
            submission=submission,
            token_info=TokenInfo(
                expires_at=submission.expires_at,
                days_to_expiry=days_left,
                is_near_expiry=near_expiry,
                needs_renewal=near_expiry,
            ),
        )

    async def validate_author_email(self, submission_id: UUID, email: str) -> EmailValidation:
        """Check the second factor: the author's e-mail, case-insensitively.

        Mismatches are logged as security events since they suggest a
        shared or guessed token.
        """
        with storage_errors("validate_author_email"):
            submission = await self._session.get(Submission, submission_id)

        if submission is None:
            return EmailValidation(False, EmailValidationReason.SUBMISSION_NOT_FOUND)

        provided = (email or "").strip().lower()
        if provided != submission.author_email.strip().lower():
            security_logger.warning(
                "Security event: author e-mail mismatch",
                extra={
                    "event": "email_mismatch",
                    "submission_id": str(submission_id),
                    "provided_email_hash": hash_email(provided)[:16],
                },
            )
            return EmailValidation(False, EmailValidationReason.EMAIL_MISMATCH)

        return EmailValidation(True, EmailValidationReason.EMAIL_VALID)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def renew_token(
        self,
        submission_id: UUID,
        additional_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> TokenRenewal:
        """Reset the validity window to ``now + additional_days``.

        The new deadline counts from now, not from the previous deadline, so
        repeated renewals never stack.
        """
        now = now or utcnow()
        days = self.settings.default_expiry_days if additional_days is None else additional_days

        with storage_errors("renew_token"):
            submission = await self.get_submission(submission_id)
            submission.expires_at = now + timedelta(days=days)
            submission.updated_at = now
            await self._session.flush()

        logger.info(
            "Token renewed: submission_id=%s, days=%d, expires_at=%s",
            submission_id,
            days,
            submission.expires_at.isoformat(),
        )
        return TokenRenewal(
            submission_id=submission.id,
            expires_at=submission.expires_at,
            additional_days=days,
        )

    async def regenerate_token(
        self,
        submission_id: UUID,
        *,
        now: datetime | None = None,
    ) -> TokenIssue:
        """Replace the token and reset the window to the default length.

        The previous token stops resolving as soon as this is flushed.
        """
        now = now or utcnow()
        days = self.settings.default_expiry_days

        with storage_errors("regenerate_token"):
            submission = await self.get_submission(submission_id)
            old_prefix = (submission.token or "")[:8]
            submission.token = generate_token()
            submission.expires_at = now + timedelta(days=days)
            submission.updated_at = now
            await self._session.flush()

        logger.info(
            "Token regenerated: submission_id=%s, old_prefix=%s, new_prefix=%s",
            submission_id,
            old_prefix,
            submission.token[:8],
        )
        return TokenIssue(
            submission_id=submission.id,
            token=submission.token,
            expires_at=submission.expires_at,
            expiry_days=days,
        )

    async def mark_as_expired(self, submission_id: UUID, *, now: datetime | None = None) -> bool:
        """Move a submission to EXPIRED.

        Idempotent: returns False when it was already EXPIRED (or is in a
        status that cannot expire), True when this call made the change.
        """
        with storage_errors("mark_as_expired"):
            submission = await self.get_submission(submission_id)
            return await self._expire(submission, now or utcnow())

    async def _expire(self, submission: Submission, now: datetime) -> bool:
        """Check-then-set transition to EXPIRED."""
        if submission.status == SubmissionStatus.EXPIRED:
            return False
        if submission.status not in EDITABLE_STATUSES:
            logger.debug(
                "Not expiring submission outside editable statuses: submission_id=%s, status=%s",
                submission.id,
                submission.status.value,
            )
            return False

        previous = submission.status
        submission.status = SubmissionStatus.EXPIRED
        submission.updated_at = now
        await self._session.flush()

        logger.info(
            "Submission expired: submission_id=%s, previous_status=%s, deadline=%s",
            submission.id,
            previous.value,
            submission.expires_at.isoformat(),
        )
        return True

    async def reactivate_expired(
        self,
        submission_id: UUID,
        new_expiry_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> Reactivation:
        """Give an expired submission a new token and reopen it for editing.

        Restores CHANGES_REQUESTED when the latest reviewer feedback is still
        PENDING, DRAFT otherwise.

        Raises:
            InvalidStatusError: If the submission is not EXPIRED.
        """
        now = now or utcnow()
        days = self.settings.default_expiry_days if new_expiry_days is None else new_expiry_days

        with storage_errors("reactivate_expired"):
            submission = await self.get_submission(submission_id)
            if submission.status != SubmissionStatus.EXPIRED:
                raise InvalidStatusError(
                    submission.status,
                    (SubmissionStatus.EXPIRED,),
                    "Only expired submissions can be reactivated",
                )

            latest = await self._latest_feedback(submission.id)
            if latest is not None and latest.status == FeedbackStatus.PENDING:
                target = SubmissionStatus.CHANGES_REQUESTED
            else:
                target = SubmissionStatus.DRAFT

            submission.token = generate_token()
            submission.expires_at = now + timedelta(days=days)
            submission.status = target
            submission.updated_at = now
            await self._session.flush()

        logger.info(
            "Submission reactivated: submission_id=%s, status=%s, expires_at=%s",
            submission_id,
            target.value,
            submission.expires_at.isoformat(),
        )
        return Reactivation(
            submission_id=submission.id,
            token=submission.token,
            expires_at=submission.expires_at,
            status=target,
        )

    async def _latest_feedback(self, submission_id: UUID) -> Feedback | None:
        result = await self._session.execute(
            select(Feedback)
            .where(Feedback.submission_id == submission_id)
            .order_by(Feedback.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def cleanup_expired_tokens(self, *, now: datetime | None = None) -> list[ExpiredSubmission]:
        """Expire every overdue editable submission in one pass.

        Returns:
            The submissions this sweep moved to EXPIRED.
        """
        now = now or utcnow()
        expired: list[ExpiredSubmission] = []

        with storage_errors("cleanup_expired_tokens"):
            result = await self._session.execute(
                select(Submission)
                .where(
                    Submission.status.in_(EDITABLE_STATUSES),
                    Submission.expires_at < now,
                )
                .order_by(Submission.expires_at)
            )
            for submission in result.scalars().all():
                if not is_expired(submission, now):
                    continue
                previous = submission.status
                submission.status = SubmissionStatus.EXPIRED
                submission.updated_at = now
                expired.append(
                    ExpiredSubmission(
                        id=submission.id,
                        author_name=submission.author_name,
                        author_email=submission.author_email,
                        title=submission.title,
                        token=submission.token,
                        expires_at=submission.expires_at,
                        previous_status=previous,
                    )
                )
            await self._session.flush()

        logger.info("Expired token sweep complete: expired=%d", len(expired))
        return expired

    async def find_expiring_submissions(
        self,
        days_ahead: int,
        *,
        now: datetime | None = None,
    ) -> list[ExpiringSubmission]:
        """Editable submissions whose deadline is in ``(now, now + days_ahead]``.

        Returns:
            Matches ordered by deadline, with fractional days_to_expiry.
        """
        now = now or utcnow()
        horizon = now + timedelta(days=days_ahead)

        with storage_errors("find_expiring_submissions"):
            result = await self._session.execute(
                select(Submission)
                .where(
                    Submission.status.in_(EDITABLE_STATUSES),
                    Submission.expires_at > now,
                    Submission.expires_at <= horizon,
                )
                .order_by(Submission.expires_at)
            )
            submissions = list(result.scalars().all())

        return [
            ExpiringSubmission(
                id=s.id,
                author_name=s.author_name,
                author_email=s.author_email,
                title=s.title,
                token=s.token,
                status=s.status,
                expires_at=s.expires_at,
                days_to_expiry=days_until(s.expires_at, now),
            )
            for s in submissions
        ]

    async def get_token_stats(
        self, *, now: datetime | None = None
    ) -> dict[SubmissionStatus, TokenStats]:
        """Count tokens per status: total, past deadline, and due within the warning window."""
        now = now or utcnow()
        soon = now + timedelta(days=self.settings.warning_days)

        stmt = select(
            Submission.status,
            func.count(Submission.id),
            func.sum(case((Submission.expires_at < now, 1), else_=0)),
            func.sum(
                case(
                    (and_(Submission.expires_at > now, Submission.expires_at <= soon), 1),
                    else_=0,
                )
            ),
        ).group_by(Submission.status)

        with storage_errors("get_token_stats"):
            rows = (await self._session.execute(stmt)).all()

        return {
            status: TokenStats(
                total=int(total or 0),
                expired=int(expired or 0),
                expiring_soon=int(expiring or 0),
            )
            for status, total, expired, expiring in rows
        }
