"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- admins
- submissions, submission_versions, submission_attachments, feedback
- communications
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_pk(name: str = "id") -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: initial schema."""
    submission_status = postgresql.ENUM(
        "DRAFT",
        "UNDER_REVIEW",
        "CHANGES_REQUESTED",
        "APPROVED",
        "PUBLISHED",
        "REJECTED",
        "EXPIRED",
        name="submission_status",
        create_type=False,
    )
    submission_status.create(op.get_bind(), checkfirst=True)

    feedback_status = postgresql.ENUM(
        "PENDING", "ADDRESSED", "RESOLVED", name="feedback_status", create_type=False
    )
    feedback_status.create(op.get_bind(), checkfirst=True)

    communication_type = postgresql.ENUM(
        "expiration_alert",
        "expired_notification",
        "token_resend",
        "token_regenerated",
        "reactivated",
        "submission_token",
        "custom_reminder",
        "new_submission",
        "mass_expiration",
        "daily_summary",
        name="communication_type",
        create_type=False,
    )
    communication_type.create(op.get_bind(), checkfirst=True)

    communication_direction = postgresql.ENUM(
        "admin_to_author",
        "system_to_author",
        "outbound_to_admin",
        name="communication_direction",
        create_type=False,
    )
    communication_direction.create(op.get_bind(), checkfirst=True)

    communication_status = postgresql.ENUM(
        "sent", "failed", name="communication_status", create_type=False
    )
    communication_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "admins",
        _uuid_pk(),
        _created_at(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("daily_summary", sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_admins")),
        sa.UniqueConstraint("email", name=op.f("uq_admins_email")),
    )
    op.create_index("ix_admins_is_active", "admins", ["is_active"], unique=False)

    op.create_table(
        "submissions",
        _uuid_pk(),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("token", sa.String(64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", submission_status, nullable=False),
        sa.Column("author_name", sa.String(255), nullable=False),
        sa.Column("author_email", sa.String(255), nullable=False),
        sa.Column("author_institution", sa.String(255), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("summary", sa.String(500), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column(
            "keywords",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column(
            "submission_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_submissions")),
        sa.UniqueConstraint("token", name=op.f("uq_submissions_token")),
    )
    op.create_index("ix_submissions_status", "submissions", ["status"], unique=False)
    op.create_index("ix_submissions_expires_at", "submissions", ["expires_at"], unique=False)
    op.create_index("ix_submissions_created_at", "submissions", ["created_at"], unique=False)

    op.create_table(
        "submission_versions",
        _uuid_pk(),
        _created_at(),
        sa.Column("submission_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("summary", sa.String(500), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("version_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("change_summary", sa.String(500), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=False),
        sa.ForeignKeyConstraint(
            ["submission_id"],
            ["submissions.id"],
            name=op.f("fk_submission_versions_submission_id_submissions"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_submission_versions")),
    )
    op.create_index(
        "uq_submission_versions_submission_version",
        "submission_versions",
        ["submission_id", "version_number"],
        unique=True,
    )

    op.create_table(
        "submission_attachments",
        _uuid_pk(),
        _created_at(),
        sa.Column("submission_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("url", sa.String(1000), nullable=False),
        sa.Column("file_type", sa.String(100), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=True),
        sa.Column(
            "attachment_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.ForeignKeyConstraint(
            ["submission_id"],
            ["submissions.id"],
            name=op.f("fk_submission_attachments_submission_id_submissions"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_submission_attachments")),
    )
    op.create_index(
        "ix_submission_attachments_submission_id",
        "submission_attachments",
        ["submission_id"],
        unique=False,
    )

    op.create_table(
        "feedback",
        _uuid_pk(),
        _created_at(),
        sa.Column("submission_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("admin_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", feedback_status, nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(
            ["submission_id"],
            ["submissions.id"],
            name=op.f("fk_feedback_submission_id_submissions"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["admin_id"],
            ["admins.id"],
            name=op.f("fk_feedback_admin_id_admins"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_feedback")),
    )
    op.create_index(
        "ix_feedback_submission_id_created_at",
        "feedback",
        ["submission_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "communications",
        _uuid_pk(),
        _created_at(),
        sa.Column("submission_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("type", communication_type, nullable=False),
        sa.Column("direction", communication_direction, nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("admin_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", communication_status, nullable=False),
        sa.Column(
            "data",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["submission_id"],
            ["submissions.id"],
            name=op.f("fk_communications_submission_id_submissions"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["admin_id"],
            ["admins.id"],
            name=op.f("fk_communications_admin_id_admins"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_communications")),
    )
    op.create_index(
        "ix_communications_submission_id_type",
        "communications",
        ["submission_id", "type"],
        unique=False,
    )
    op.create_index(
        "ix_communications_created_at", "communications", ["created_at"], unique=False
    )


def downgrade() -> None:
    """Revert migration: initial schema."""
    op.drop_table("communications")
    op.drop_table("feedback")
    op.drop_table("submission_attachments")
    op.drop_table("submission_versions")
    op.drop_table("submissions")
    op.drop_table("admins")

    bind = op.get_bind()
    for enum_name in (
        "communication_status",
        "communication_direction",
        "communication_type",
        "feedback_status",
        "submission_status",
    ):
        postgresql.ENUM(name=enum_name).drop(bind, checkfirst=True)
