"""Append-only communication log.

One row per outbound notification attempt. The log doubles as the
deduplication oracle for expiration alerts.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import Enum, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from verbete.db.models.base import (
    Base,
    CommunicationDirection,
    CommunicationStatus,
    CommunicationType,
    JSONDocument,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class CommunicationLog(Base):
    """Record of a message sent (or attempted) to an author or admin."""

    __tablename__ = "communications"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    # NULL for aggregate admin notices that span many submissions
    submission_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=True,
    )
    type: Mapped[CommunicationType] = mapped_column(
        Enum(
            CommunicationType,
            name="communication_type",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
    )
    direction: Mapped[CommunicationDirection] = mapped_column(
        Enum(
            CommunicationDirection,
            name="communication_direction",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
    )
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    admin_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("admins.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[CommunicationStatus] = mapped_column(
        Enum(
            CommunicationStatus,
            name="communication_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
    )
    data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_communications_submission_id_type", "submission_id", "type"),
        Index("ix_communications_created_at", "created_at"),
    )
