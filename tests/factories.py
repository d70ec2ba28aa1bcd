"""Test data factories for Verbete.

Factory functions that insert consistent, valid rows. Each one flushes so
the returned object has its id; committing is left to the test.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from verbete.db.models import AdminUser, CommunicationLog, Feedback, Submission
from verbete.db.models.base import (
    CommunicationDirection,
    CommunicationStatus,
    CommunicationType,
    FeedbackStatus,
    SubmissionStatus,
)
from verbete.services.tokens import generate_token

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

# Noon UTC, 09:00 in America/Sao_Paulo
NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)

AUTHOR_EMAIL = "ana@example.com"

COMPLETE_CONTENT = {
    "title": "Sobre a história dos verbetes",
    "summary": "Um resumo suficientemente longo para passar na verificação de completude.",
    "content": "Conteúdo " * 20,
    "keywords": ["história", "enciclopédia"],
    "category": "História",
}


async def create_submission(
    session: AsyncSession,
    *,
    now: datetime,
    status: SubmissionStatus = SubmissionStatus.DRAFT,
    expires_in: timedelta = timedelta(days=30),
    complete: bool = False,
    **overrides: Any,
) -> Submission:
    """Insert a submission whose token expires ``expires_in`` after ``now``.

    Args:
        session: Session to add the row to.
        now: Creation time.
        status: Initial status.
        expires_in: Offset of the deadline from ``now`` (negative for overdue).
        complete: Fill every field required for review.
        **overrides: Column values taking precedence over the defaults.
    """
    values: dict[str, Any] = {
        "author_name": "Ana Souza",
        "author_email": AUTHOR_EMAIL,
        "title": "Rascunho de verbete",
        "keywords": [],
        "token": generate_token(),
        "status": status,
        "expires_at": now + expires_in,
        "created_at": now,
        "updated_at": now,
    }
    if complete:
        values.update(COMPLETE_CONTENT)
    values.update(overrides)

    submission = Submission(**values)
    session.add(submission)
    await session.flush()
    return submission


async def create_admin(
    session: AsyncSession,
    email: str,
    *,
    name: str = "Admin",
    is_active: bool = True,
    daily_summary: bool | None = None,
) -> AdminUser:
    """Insert an admin account."""
    admin = AdminUser(name=name, email=email, is_active=is_active, daily_summary=daily_summary)
    session.add(admin)
    await session.flush()
    return admin


async def create_feedback(
    session: AsyncSession,
    submission: Submission,
    *,
    created_at: datetime,
    status: FeedbackStatus = FeedbackStatus.PENDING,
    content: str = "Por favor, revise a introdução.",
) -> Feedback:
    """Insert reviewer feedback on ``submission``."""
    feedback = Feedback(
        submission_id=submission.id,
        status=status,
        content=content,
        created_at=created_at,
    )
    session.add(feedback)
    await session.flush()
    return feedback


async def create_communication(
    session: AsyncSession,
    *,
    created_at: datetime,
    type: CommunicationType = CommunicationType.EXPIRATION_ALERT,  # noqa: A002
    status: CommunicationStatus = CommunicationStatus.SENT,
    submission: Submission | None = None,
    data: dict[str, Any] | None = None,
) -> CommunicationLog:
    """Insert a communication log row with a chosen timestamp."""
    row = CommunicationLog(
        submission_id=submission.id if submission else None,
        type=type,
        direction=CommunicationDirection.SYSTEM_TO_AUTHOR,
        recipient_email=AUTHOR_EMAIL,
        status=status,
        data=data or {},
        created_at=created_at,
    )
    session.add(row)
    await session.flush()
    return row
