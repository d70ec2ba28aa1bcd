"""Administrator accounts, as far as notifications need them.

Login and session handling live outside this service; only the fields
used to pick recipients are mapped here.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from verbete.db.models.base import Base, MediumString, TimestampTZ, UUIDPrimaryKey


class AdminUser(Base):
    """Editorial administrator."""

    __tablename__ = "admins"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    name: Mapped[MediumString]
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # NULL means the admin never chose; treated as opted in
    daily_summary: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    __table_args__ = (Index("ix_admins_is_active", "is_active"),)
