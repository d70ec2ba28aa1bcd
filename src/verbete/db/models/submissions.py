"""Submission models: submissions, versions, attachments and feedback."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING, Any

from sqlalchemy import BigInteger, Enum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from verbete.db.models.base import (
    Base,
    FeedbackStatus,
    JSONDocument,
    MediumString,
    OptionalTimestampTZ,
    SubmissionStatus,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
    enum_values,
    utcnow,
)

if TYPE_CHECKING:
    from verbete.db.models.admins import AdminUser


class Submission(Base):
    """An anonymous author's article submission.

    Access is granted through ``token``; only the current value is stored,
    so issuing a new one revokes the previous immediately.
    """

    __tablename__ = "submissions"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(
            SubmissionStatus,
            name="submission_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=SubmissionStatus.DRAFT,
    )

    author_name: Mapped[MediumString]
    author_email: Mapped[MediumString]
    author_institution: Mapped[str | None] = mapped_column(String(255), nullable=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    summary: Mapped[str | None] = mapped_column(String(500), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    keywords: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # 'metadata' is reserved by SQLAlchemy
    submission_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )

    submitted_at: Mapped[OptionalTimestampTZ]

    versions: Mapped[list[SubmissionVersion]] = relationship(
        "SubmissionVersion",
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="SubmissionVersion.version_number",
    )
    attachments: Mapped[list[Attachment]] = relationship(
        "Attachment",
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="Attachment.created_at",
    )
    feedback: Mapped[list[Feedback]] = relationship(
        "Feedback",
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="Feedback.created_at",
    )

    __table_args__ = (
        Index("ix_submissions_status", "status"),
        Index("ix_submissions_expires_at", "expires_at"),
        Index("ix_submissions_created_at", "created_at"),
    )


class SubmissionVersion(Base):
    """Append-only content snapshot of a submission."""

    __tablename__ = "submission_versions"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    summary: Mapped[str | None] = mapped_column(String(500), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    version_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    change_summary: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False, default="author")

    submission: Mapped[Submission] = relationship("Submission", back_populates="versions")

    __table_args__ = (
        Index(
            "uq_submission_versions_submission_version",
            "submission_id",
            "version_number",
            unique=True,
        ),
    )


class Attachment(Base):
    """File reference attached to a submission; the file lives in external storage."""

    __tablename__ = "submission_attachments"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    filename: Mapped[MediumString]
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    attachment_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )

    submission: Mapped[Submission] = relationship("Submission", back_populates="attachments")

    __table_args__ = (Index("ix_submission_attachments_submission_id", "submission_id"),)


class Feedback(Base):
    """Reviewer feedback on a submission (written by the admin side)."""

    __tablename__ = "feedback"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    admin_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("admins.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[FeedbackStatus] = mapped_column(
        Enum(
            FeedbackStatus,
            name="feedback_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=FeedbackStatus.PENDING,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    submission: Mapped[Submission] = relationship("Submission", back_populates="feedback")
    admin: Mapped[AdminUser | None] = relationship("AdminUser")

    __table_args__ = (
        Index("ix_feedback_submission_id_created_at", "submission_id", "created_at"),
    )
