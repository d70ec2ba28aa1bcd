"""Domain error taxonomy.

Services raise these for conditions the caller cannot branch around
(bad input, forbidden status, storage failure). Token format, lookup,
expiry and e-mail mismatch are first reported as result objects by
TokenLifecycleService; only the author-facing boundary turns them into
the matching exceptions below.

Every error carries a machine-readable ``error_code``, the HTTP status the
API renders it with, and a ``details`` dict of structured context.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from uuid import UUID

    from verbete.db.models.base import SubmissionStatus

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """Base class for all domain errors."""

    error_code = "submission_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(SubmissionError):
    """Malformed or out-of-range input."""

    error_code = "validation_error"

    def __init__(self, validation_errors: list[str]) -> None:
        self.validation_errors = list(validation_errors)
        super().__init__(
            "Invalid submission data",
            {"validation_errors": self.validation_errors},
        )


class TokenFormatError(SubmissionError):
    """Token is not 64 lowercase hex characters."""

    error_code = "token_invalid_format"
    status_code = 403

    def __init__(self) -> None:
        super().__init__("Invalid access token")


class TokenNotFoundError(SubmissionError):
    """No submission currently holds the token."""

    error_code = "token_not_found"
    status_code = 404

    def __init__(self) -> None:
        super().__init__("Access token not found")


class TokenExpiredError(SubmissionError):
    """The token's validity window has passed."""

    error_code = "token_expired"
    status_code = 410

    def __init__(
        self,
        message: str = "Access token has expired",
        *,
        can_recover: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.can_recover = can_recover
        super().__init__(message, {"can_recover": can_recover, **(details or {})})


class EmailMismatchError(SubmissionError):
    """Supplied e-mail does not match the submission's author."""

    error_code = "email_mismatch"
    status_code = 403

    def __init__(self) -> None:
        super().__init__("E-mail does not match the submission author")


class InvalidStatusError(SubmissionError):
    """Operation not permitted in the submission's current status."""

    error_code = "invalid_status"

    def __init__(
        self,
        current_status: SubmissionStatus,
        allowed_statuses: Iterable[SubmissionStatus],
        message: str | None = None,
    ) -> None:
        self.current_status = current_status
        self.allowed_statuses = tuple(allowed_statuses)
        super().__init__(
            message or f"Operation not allowed for status {current_status.value}",
            {
                "current_status": current_status.value,
                "allowed_statuses": [s.value for s in self.allowed_statuses],
            },
        )


class IncompleteSubmissionError(SubmissionError):
    """Submission lacks required content for review."""

    error_code = "incomplete_submission"

    def __init__(self, missing_fields: list[str]) -> None:
        self.missing_fields = list(missing_fields)
        super().__init__(
            "Submission is incomplete: " + ", ".join(self.missing_fields),
            {"missing_fields": self.missing_fields},
        )


class AttachmentLimitError(SubmissionError):
    """Attachment count would exceed the per-submission limit."""

    error_code = "attachment_limit"

    def __init__(self, max_attachments: int) -> None:
        self.max_attachments = max_attachments
        super().__init__(
            f"A submission can have at most {max_attachments} attachments",
            {"max_attachments": max_attachments},
        )


class SubmissionNotFoundError(SubmissionError):
    """No submission with the given id."""

    error_code = "submission_not_found"
    status_code = 404

    def __init__(self, submission_id: UUID) -> None:
        self.submission_id = submission_id
        super().__init__(f"Submission {submission_id} not found")


class AttachmentNotFoundError(SubmissionError):
    """No attachment with the given id on the submission."""

    error_code = "attachment_not_found"
    status_code = 404

    def __init__(self, attachment_id: UUID) -> None:
        self.attachment_id = attachment_id
        super().__init__(f"Attachment {attachment_id} not found")


class OperationalError(SubmissionError):
    """Storage or transport failure."""

    error_code = "operational_error"
    status_code = 500

    def __init__(self, message: str, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message, {"operation": operation} if operation else None)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as OperationalError.

    Domain errors raised inside the block pass through untouched.
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception("Storage failure during %s", operation)
        msg = f"Storage failure during {operation}"
        raise OperationalError(msg, operation) from e
