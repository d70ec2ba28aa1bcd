"""Verbete domain services.

- tokens: Access token lifecycle (issue, validate, renew, expire)
- submissions: Submission status machine and author edits
- alerts: Scheduled expiration alerts, expired sweep and daily digest
- communications: Communication log and admin-triggered messages
- email: SMTP notifier with Jinja2 templates
- dispatch: Background dispatch of request-path notifications
"""

from verbete.services.alerts import ExpirationAlertEngine
from verbete.services.communications import CommunicationService
from verbete.services.dispatch import NotificationDispatcher
from verbete.services.email import EmailNotifier
from verbete.services.submissions import SubmissionService
from verbete.services.tokens import TokenLifecycleService

__all__ = [
    "CommunicationService",
    "EmailNotifier",
    "ExpirationAlertEngine",
    "NotificationDispatcher",
    "SubmissionService",
    "TokenLifecycleService",
]
