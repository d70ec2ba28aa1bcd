"""Pydantic schemas for the author API.

Authors hold no account; every request carries the access token in the
path and, for mutations, the author's e-mail in the body as a second
factor. Responses never echo the token itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EmailConfirmation(BaseModel):
    """Body of requests that only need the author's e-mail."""

    email: str = Field(..., min_length=3, max_length=255, description="Author e-mail")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class SubmissionUpdateRequest(EmailConfirmation):
    """Partial update of a submission; omitted fields are left alone."""

    title: str | None = Field(None, max_length=200)
    summary: str | None = Field(None, max_length=500)
    content: str | None = None
    keywords: list[str] | None = None
    category: str | None = None
    author_institution: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] | None = Field(None, description="Free-form submission metadata")

    def updates(self) -> dict[str, Any]:
        """Fields the client actually sent, keyed by model attribute."""
        data = self.model_dump(exclude_unset=True, exclude={"email"})
        if "metadata" in data:
            data["submission_metadata"] = data.pop("metadata")
        return data


class TokenInfoResponse(BaseModel):
    """Remaining validity of the token."""

    model_config = ConfigDict(from_attributes=True)

    expires_at: datetime
    days_to_expiry: int
    is_near_expiry: bool
    needs_renewal: bool


class ExpiredSubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    expires_at: datetime


class TokenStatusResponse(BaseModel):
    """Result of validating a token."""

    is_valid: bool
    reason: str | None = None
    can_recover: bool = False
    token_info: TokenInfoResponse | None = None
    expired_submission: ExpiredSubmissionResponse | None = None


class AttachmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    filename: str
    url: str
    file_type: str | None = None
    size: int | None = None
    created_at: datetime


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    content: str
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class VersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version_number: int
    title: str
    summary: str | None = None
    change_summary: str | None = None
    created_by: str
    created_at: datetime


class SubmissionResponse(BaseModel):
    """The author's view of a submission."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: str
    author_name: str
    author_email: str
    author_institution: str | None = None
    title: str
    summary: str | None = None
    content: str | None = None
    keywords: list[str] = Field(default_factory=list)
    category: str | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class SubmissionDetailResponse(BaseModel):
    """Submission plus everything attached to it."""

    submission: SubmissionResponse
    attachments: list[AttachmentResponse] = Field(default_factory=list)
    feedback: list[FeedbackResponse] = Field(default_factory=list)
    versions: list[VersionResponse] | None = None
    token_info: TokenInfoResponse | None = None


class EmailVerificationResponse(BaseModel):
    valid: bool
    reason: str


class RenewalResponse(BaseModel):
    """New deadline after a renewal."""

    submission_id: UUID
    expires_at: datetime
    additional_days: int


class AutoSaveResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    submission_id: UUID
    saved_at: datetime
    fields_saved: list[str]


class ReviewResponse(BaseModel):
    """Outcome of submit-for-review."""

    model_config = ConfigDict(from_attributes=True)

    submission_id: UUID
    status: str
    submitted_at: datetime
    expires_at: datetime
    version_number: int

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)
