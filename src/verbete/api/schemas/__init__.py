"""Pydantic schemas for the Verbete API."""

from verbete.api.schemas.author import (
    AttachmentResponse,
    AutoSaveResponse,
    EmailConfirmation,
    EmailVerificationResponse,
    RenewalResponse,
    ReviewResponse,
    SubmissionDetailResponse,
    SubmissionResponse,
    SubmissionUpdateRequest,
    TokenStatusResponse,
)

__all__ = [
    "AttachmentResponse",
    "AutoSaveResponse",
    "EmailConfirmation",
    "EmailVerificationResponse",
    "RenewalResponse",
    "ReviewResponse",
    "SubmissionDetailResponse",
    "SubmissionResponse",
    "SubmissionUpdateRequest",
    "TokenStatusResponse",
]
