"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column types (UTC timestamps, UUIDs, JSON)
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, MetaData, String, TypeDecorator, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp on every dialect.

    PostgreSQL stores ``timestamptz`` natively. SQLite has no timezone
    support, so values are normalized to naive UTC on the way in and get
    UTC attached on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# JSON document column, JSONB on PostgreSQL
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), nullable=False, default=utcnow),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all Verbete models."""

    metadata = metadata


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values rather than member names."""
    return [member.value for member in enum_cls]


# =============================================================================
# Common Enums
# =============================================================================


class SubmissionStatus(enum.Enum):
    """Submission lifecycle statuses.

    States:
        DRAFT: Created, author may edit
        UNDER_REVIEW: Sent for review, editing frozen
        CHANGES_REQUESTED: Reviewer asked for changes, author may edit
        APPROVED: Accepted by a reviewer, awaiting publication
        PUBLISHED: Public (terminal)
        REJECTED: Refused (terminal)
        EXPIRED: Author access lapsed before review
    """

    DRAFT = "DRAFT"
    UNDER_REVIEW = "UNDER_REVIEW"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


# Statuses in which the author may edit and the token window matters
EDITABLE_STATUSES = (SubmissionStatus.DRAFT, SubmissionStatus.CHANGES_REQUESTED)


class FeedbackStatus(enum.Enum):
    """Reviewer feedback statuses."""

    PENDING = "PENDING"
    ADDRESSED = "ADDRESSED"
    RESOLVED = "RESOLVED"


class CommunicationType(enum.Enum):
    """Kinds of outbound messages recorded in the communication log."""

    EXPIRATION_ALERT = "expiration_alert"
    EXPIRED_NOTIFICATION = "expired_notification"
    TOKEN_RESEND = "token_resend"
    TOKEN_REGENERATED = "token_regenerated"
    REACTIVATED = "reactivated"
    SUBMISSION_TOKEN = "submission_token"
    CUSTOM_REMINDER = "custom_reminder"
    NEW_SUBMISSION = "new_submission"
    MASS_EXPIRATION = "mass_expiration"
    DAILY_SUMMARY = "daily_summary"


class CommunicationDirection(enum.Enum):
    """Who originated a message and who received it."""

    ADMIN_TO_AUTHOR = "admin_to_author"
    SYSTEM_TO_AUTHOR = "system_to_author"
    OUTBOUND_TO_ADMIN = "outbound_to_admin"


class CommunicationStatus(enum.Enum):
    """Outcome of a delivery attempt."""

    SENT = "sent"
    FAILED = "failed"


class AlertUrgency(str, enum.Enum):
    """Urgency attached to expiration alerts."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
