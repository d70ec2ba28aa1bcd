"""Author API router.

Token-gated endpoints for anonymous authors. The token in the path is the
credential; mutations also require the author's e-mail in the body.

- GET    /author/submissions/{token}            Open the submission
- GET    /author/tokens/{token}/status          Token validity
- POST   /author/tokens/{token}/verify-email    Check the e-mail factor
- POST   /author/tokens/{token}/renew           Extend the token window
- PUT    /author/submissions/{token}            Update content
- PATCH  /author/submissions/{token}/autosave   Save work in progress
- POST   /author/submissions/{token}/submit     Send for review
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from verbete.api.schemas.author import (
    AttachmentResponse,
    AutoSaveResponse,
    EmailConfirmation,
    EmailVerificationResponse,
    FeedbackResponse,
    RenewalResponse,
    ReviewResponse,
    SubmissionDetailResponse,
    SubmissionResponse,
    SubmissionUpdateRequest,
    TokenInfoResponse,
    TokenStatusResponse,
    VersionResponse,
)
from verbete.core.errors import EmailMismatchError, TokenExpiredError
from verbete.db.models.submissions import Submission
from verbete.services.submissions import SubmissionService
from verbete.services.tokens import TokenValidationReason, ensure_valid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/author", tags=["author"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session.

    Uses the application's async session factory. Handlers commit.
    """
    from verbete.db import get_async_session

    async with get_async_session() as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_submission_service(request: Request, session: DbSession) -> SubmissionService:
    state = request.app.state
    return SubmissionService(
        session,
        state.settings,
        notifier=state.notifier,
        dispatcher=state.dispatcher,
    )


Service = Annotated[SubmissionService, Depends(get_submission_service)]


async def _resolve_token(service: SubmissionService, session: AsyncSession, token: str) -> Submission:
    """Validate the path token, keeping a lazy expiry even though the request fails."""
    validation = await service.tokens.validate_token(token)
    if validation.reason is TokenValidationReason.EXPIRED:
        await session.commit()
    return ensure_valid(validation)


async def _confirm_email(service: SubmissionService, submission: Submission, email: str) -> None:
    result = await service.tokens.validate_author_email(submission.id, email)
    if not result.is_valid:
        raise EmailMismatchError()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/submissions/{token}", response_model=SubmissionDetailResponse)
async def get_submission(
    token: str,
    service: Service,
    session: DbSession,
    include_versions: Annotated[bool, Query()] = False,
) -> SubmissionDetailResponse:
    """Open a submission by its access token.

    Expired tokens answer 410 with ``can_recover`` so the client can offer
    reactivation.
    """
    try:
        view = await service.get_submission_by_token(token, include_versions)
    except TokenExpiredError:
        await session.commit()
        raise
    await session.commit()

    return SubmissionDetailResponse(
        submission=SubmissionResponse.model_validate(view.submission),
        attachments=[AttachmentResponse.model_validate(a) for a in view.attachments],
        feedback=[FeedbackResponse.model_validate(f) for f in view.feedback],
        versions=(
            [VersionResponse.model_validate(v) for v in view.versions]
            if view.versions is not None
            else None
        ),
        token_info=(
            TokenInfoResponse.model_validate(view.token_info) if view.token_info else None
        ),
    )


@router.get("/tokens/{token}/status", response_model=TokenStatusResponse)
async def token_status(token: str, service: Service, session: DbSession) -> TokenStatusResponse:
    """Report whether a token is usable, without failing the request."""
    validation = await service.tokens.validate_token(token)
    await session.commit()

    expired = validation.expired_submission
    return TokenStatusResponse(
        is_valid=validation.is_valid,
        reason=validation.reason.value if validation.reason else None,
        can_recover=validation.can_recover,
        token_info=(
            TokenInfoResponse.model_validate(validation.token_info)
            if validation.token_info
            else None
        ),
        expired_submission=(
            {"id": expired.id, "title": expired.title, "expires_at": expired.expires_at}
            if expired
            else None
        ),
    )


# ---------------------------------------------------------------------------
# Token operations
# ---------------------------------------------------------------------------


@router.post("/tokens/{token}/verify-email", response_model=EmailVerificationResponse)
async def verify_email(
    token: str,
    body: EmailConfirmation,
    service: Service,
    session: DbSession,
) -> EmailVerificationResponse:
    """Check the e-mail second factor for a token."""
    submission = await _resolve_token(service, session, token)
    result = await service.tokens.validate_author_email(submission.id, body.email)
    if not result.is_valid:
        raise EmailMismatchError()
    return EmailVerificationResponse(valid=True, reason=result.reason.value)


@router.post("/tokens/{token}/renew", response_model=RenewalResponse)
async def renew_token(
    token: str,
    body: EmailConfirmation,
    service: Service,
    session: DbSession,
) -> RenewalResponse:
    """Reset the token window; requires the author's e-mail."""
    submission = await _resolve_token(service, session, token)
    await _confirm_email(service, submission, body.email)

    renewal = await service.tokens.renew_token(submission.id)
    await session.commit()

    return RenewalResponse(
        submission_id=renewal.submission_id,
        expires_at=renewal.expires_at,
        additional_days=renewal.additional_days,
    )


# ---------------------------------------------------------------------------
# Submission mutations
# ---------------------------------------------------------------------------


@router.put("/submissions/{token}", response_model=SubmissionResponse)
async def update_submission(
    token: str,
    body: SubmissionUpdateRequest,
    service: Service,
    session: DbSession,
) -> SubmissionResponse:
    """Update submission content."""
    submission = await _resolve_token(service, session, token)
    await _confirm_email(service, submission, body.email)

    updated = await service.update_submission(submission.id, body.updates(), body.email)
    await session.commit()
    return SubmissionResponse.model_validate(updated)


@router.patch("/submissions/{token}/autosave", response_model=AutoSaveResponse)
async def autosave_submission(
    token: str,
    body: SubmissionUpdateRequest,
    service: Service,
    session: DbSession,
) -> AutoSaveResponse:
    """Save work in progress without creating a version."""
    submission = await _resolve_token(service, session, token)
    await _confirm_email(service, submission, body.email)

    result = await service.auto_save(submission.id, body.updates(), body.email)
    await session.commit()
    return AutoSaveResponse.model_validate(result)


@router.post("/submissions/{token}/submit", response_model=ReviewResponse)
async def submit_for_review(
    token: str,
    body: EmailConfirmation,
    service: Service,
    session: DbSession,
) -> ReviewResponse:
    """Send a complete submission for review."""
    submission = await _resolve_token(service, session, token)
    await _confirm_email(service, submission, body.email)

    result = await service.submit_for_review(submission.id, body.email)
    await session.commit()
    logger.info("Submission %s sent for review via author API", result.submission_id)
    return ReviewResponse.model_validate(result)
