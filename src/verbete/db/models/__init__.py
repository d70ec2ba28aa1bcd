"""SQLAlchemy ORM models for Verbete.

This package contains all database models organized by domain:
- base: Common metadata, column types and enums
- submissions: Submissions, versions, attachments and reviewer feedback
- admins: Administrator accounts (notification recipients)
- communications: Append-only communication log
"""

from verbete.db.models.admins import AdminUser
from verbete.db.models.base import Base, metadata
from verbete.db.models.communications import CommunicationLog
from verbete.db.models.submissions import Attachment, Feedback, Submission, SubmissionVersion

__all__ = [
    "AdminUser",
    "Attachment",
    "Base",
    "CommunicationLog",
    "Feedback",
    "Submission",
    "SubmissionVersion",
    "metadata",
]
