"""E-mail notifier for authors and admins.

Messages are rendered from Jinja2 templates (HTML and plain-text variants)
and delivered over SMTP. Delivery is retried with exponential backoff; once
the attempts are exhausted ``send`` raises EmailDeliveryError so callers
can record the failure.

smtplib is blocking, so each attempt runs in a worker thread.

Usage:
    notifier = EmailNotifier.from_settings(settings)
    result = await notifier.send_expiration_alert(
        to="author@example.com",
        author_name="Ana",
        title="Sobre verbetes",
        token=token,
        expires_at=submission.expires_at,
        days_to_expiry=3,
        urgency=AlertUrgency.NORMAL,
    )
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import secrets
import smtplib
import ssl
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, PackageLoader, select_autoescape

from verbete.db.models.base import AlertUrgency

if TYPE_CHECKING:
    from collections.abc import Sequence

    from verbete.core.config import Settings, SMTPSettings

logger = logging.getLogger(__name__)

# Template version, stored with logged communications
TEMPLATE_VERSION = "2026.10.0"

# Path the front end serves the author editor under
ACCESS_PATH = "/submissao/editar"

LINE_BREAKS = re.compile(r"[\r\n]")

URGENCY_PREFIX = {
    AlertUrgency.URGENT: "[URGENTE] ",
    AlertUrgency.HIGH: "[IMPORTANTE] ",
    AlertUrgency.NORMAL: "",
}


class NotificationStatus(str, Enum):
    """Status of a notification attempt."""

    SENT = "sent"
    FAILED = "failed"


class TokenNoticeKind(str, Enum):
    """Why an author is receiving their access link."""

    CREATED = "created"
    RESENT = "resent"
    REGENERATED = "regenerated"
    REACTIVATED = "reactivated"
    REMINDER = "reminder"


@dataclass(frozen=True, slots=True)
class NotificationResult:
    """Result of a successful delivery.

    Attributes:
        success: Always True; failures raise instead.
        message_id: SMTP Message-ID header.
        status: Delivery status.
        recipient_hash: SHA-256 of the normalized recipient address.
        attempts: Number of attempts it took.
        sent_at: When the server accepted the message.
    """

    success: bool
    message_id: str
    status: NotificationStatus
    recipient_hash: str
    attempts: int
    sent_at: datetime


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    """A message ready for delivery."""

    subject: str
    text_body: str
    html_body: str | None


class EmailError(Exception):
    """Base exception for email operations."""


class EmailConfigurationError(EmailError):
    """Raised when email configuration is invalid."""


class EmailDeliveryError(EmailError):
    """Raised when email delivery fails.

    ``retryable`` is False when the message itself cannot be built, so
    another attempt would fail the same way.
    """

    def __init__(self, message: str, attempts: int = 1, *, retryable: bool = True) -> None:
        self.attempts = attempts
        self.retryable = retryable
        super().__init__(message)


def hash_email(email: str) -> str:
    """Hash an address for logs so events can be correlated without PII.

    Args:
        email: Email address to hash.

    Returns:
        SHA-256 hex digest of the lowercased, stripped address.
    """
    return hashlib.sha256(email.lower().strip().encode()).hexdigest()


class EmailNotifier:
    """Renders and delivers author and admin e-mail.

    Attributes:
        smtp_settings: SMTP configuration for delivery.
        base_url: Public site URL used for access links.
        app_name: Product name shown in subjects.
    """

    def __init__(
        self,
        smtp_settings: SMTPSettings,
        base_url: str = "http://localhost:3000",
        app_name: str = "Verbete",
        *,
        display_timezone: tzinfo = UTC,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> None:
        """Initialize the notifier.

        Args:
            smtp_settings: SMTP configuration settings.
            base_url: Base URL for author access links.
            app_name: Name used in subject lines.
            display_timezone: Timezone dates are shown in.
            max_attempts: Overrides smtp_settings.max_attempts.
            base_delay: Overrides smtp_settings.retry_base_delay (seconds).
        """
        self.smtp_settings = smtp_settings
        self.base_url = base_url.rstrip("/")
        self.app_name = app_name
        self.display_timezone = display_timezone
        self.max_attempts = smtp_settings.max_attempts if max_attempts is None else max_attempts
        self.base_delay = smtp_settings.retry_base_delay if base_delay is None else base_delay

        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise EmailConfigurationError(msg)

        self._env = Environment(
            loader=PackageLoader("verbete", "templates/email"),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self._env.filters["localdate"] = self._format_date

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailNotifier:
        """Build a notifier from the application settings."""
        return cls(
            settings.smtp,
            base_url=settings.frontend_url,
            app_name=settings.app_name,
            display_timezone=settings.scheduler.tzinfo,
        )

    def access_url(self, token: str) -> str:
        """Author editor link for a token."""
        return f"{self.base_url}{ACCESS_PATH}/{token}"

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send(
        self,
        to: str,
        subject: str,
        text_body: str,
        html_body: str | None = None,
    ) -> NotificationResult:
        """Deliver a message, retrying with exponential backoff.

        The wait before attempt n+1 is ``base_delay * 2 ** (n - 1)``.

        Args:
            to: Recipient address.
            subject: Subject line.
            text_body: Plain-text body.
            html_body: Optional HTML alternative.

        Returns:
            NotificationResult for the accepted message.

        Raises:
            EmailDeliveryError: After the final attempt fails, or at once when
                the message cannot be built.
        """
        recipient_hash = hash_email(to)
        last_error: EmailDeliveryError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                message_id = await asyncio.to_thread(
                    self._send_email, to, subject, text_body, html_body
                )
            except EmailDeliveryError as e:
                last_error = e
                if not e.retryable or attempt >= self.max_attempts:
                    break
                delay = self.base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Email attempt %d/%d failed, retrying in %.1fs: recipient_hash=%s, error=%s",
                    attempt,
                    self.max_attempts,
                    delay,
                    recipient_hash[:16],
                    e,
                )
                await asyncio.sleep(delay)
                continue

            logger.info(
                "Email sent",
                extra={
                    "recipient_hash": recipient_hash[:16],
                    "message_id": message_id,
                    "attempts": attempt,
                },
            )
            return NotificationResult(
                success=True,
                message_id=message_id,
                status=NotificationStatus.SENT,
                recipient_hash=recipient_hash,
                attempts=attempt,
                sent_at=datetime.now(UTC),
            )

        logger.error(
            "Email delivery failed after %d attempts: recipient_hash=%s, error=%s",
            attempt,
            recipient_hash[:16],
            last_error,
        )
        msg = f"Delivery failed after {attempt} attempts: {last_error}"
        raise EmailDeliveryError(
            msg,
            attempts=attempt,
            retryable=last_error.retryable if last_error else True,
        ) from last_error

    async def send_message(self, to: str, message: RenderedMessage) -> NotificationResult:
        """Deliver a rendered message."""
        return await self.send(to, message.subject, message.text_body, message.html_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: str | None,
    ) -> str:
        """Send one message over SMTP.

        Returns:
            SMTP message ID.

        Raises:
            EmailDeliveryError: If the message cannot be built (not retryable),
                or the server cannot be reached or refuses it.
        """
        settings = self.smtp_settings
        domain = settings.from_address.split("@")[-1]
        message_id = f"<{secrets.token_hex(16)}@{domain}>"

        try:
            if any(LINE_BREAKS.search(value) for value in (subject, to_email)):
                msg_text = "header value contains a line break"
                raise ValueError(msg_text)
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{settings.from_name} <{settings.from_address}>"
            msg["To"] = to_email
            msg["Message-ID"] = message_id

            msg.attach(MIMEText(text_body, "plain", "utf-8"))
            if html_body is not None:
                msg.attach(MIMEText(html_body, "html", "utf-8"))
            payload = msg.as_string()
        except (MessageError, ValueError) as e:
            msg_text = f"Invalid message: {e}"
            raise EmailDeliveryError(msg_text, retryable=False) from e

        try:
            if settings.use_ssl:
                server: smtplib.SMTP = smtplib.SMTP_SSL(
                    settings.host,
                    settings.port,
                    timeout=settings.timeout,
                    context=ssl.create_default_context(),
                )
            else:
                server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)

            with server:
                if settings.use_tls and not settings.use_ssl:
                    server.starttls(context=ssl.create_default_context())
                if settings.username and settings.password:
                    server.login(settings.username, settings.password.get_secret_value())
                server.sendmail(settings.from_address, [to_email], payload)

        except smtplib.SMTPException as e:
            msg_text = f"SMTP error: {e}"
            raise EmailDeliveryError(msg_text) from e
        except OSError as e:
            msg_text = f"Connection error: {e}"
            raise EmailDeliveryError(msg_text) from e

        return message_id

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, template: str, subject: str, **context: Any) -> RenderedMessage:
        """Render ``<template>.txt`` and ``<template>.html`` with shared context."""
        context.setdefault("app_name", self.app_name)
        context.setdefault("template_version", TEMPLATE_VERSION)
        text_body = self._env.get_template(f"{template}.txt").render(**context)
        html_body = self._env.get_template(f"{template}.html").render(**context)
        return RenderedMessage(subject=subject, text_body=text_body, html_body=html_body)

    def _format_date(self, value: datetime | None) -> str:
        if value is None:
            return ""
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(self.display_timezone).strftime("%d/%m/%Y %H:%M")

    def _subject(self, text: str, *, admin: bool = False) -> str:
        tag = f"{self.app_name} Admin" if admin else self.app_name
        return f"[{tag}] {text}"

    # ------------------------------------------------------------------
    # Author notices
    # ------------------------------------------------------------------

    async def send_token_email(
        self,
        *,
        to: str,
        author_name: str,
        title: str,
        token: str,
        expires_at: datetime,
        kind: TokenNoticeKind = TokenNoticeKind.CREATED,
        custom_message: str | None = None,
        urgency: AlertUrgency = AlertUrgency.NORMAL,
    ) -> NotificationResult:
        """Send the author their access link.

        The same template serves first issuance, resends, regenerations,
        reactivations and admin reminders; ``kind`` selects the headline.
        """
        subjects = {
            TokenNoticeKind.CREATED: f"Sua submissão foi criada - {title}",
            TokenNoticeKind.RESENT: f"Seu link de acesso - {title}",
            TokenNoticeKind.REGENERATED: f"Novo link de acesso - {title}",
            TokenNoticeKind.REACTIVATED: f"Sua submissão foi reativada - {title}",
            TokenNoticeKind.REMINDER: f"Lembrete sobre sua submissão - {title}",
        }
        message = self.render(
            "token_access",
            URGENCY_PREFIX[urgency] + self._subject(subjects[kind]),
            kind=kind.value,
            author_name=author_name,
            title=title,
            access_url=self.access_url(token),
            expires_at=expires_at,
            custom_message=custom_message,
        )
        return await self.send_message(to, message)

    async def send_expiration_alert(
        self,
        *,
        to: str,
        author_name: str,
        title: str,
        token: str,
        expires_at: datetime,
        days_to_expiry: int,
        urgency: AlertUrgency,
    ) -> NotificationResult:
        """Warn an author that their access link expires soon."""
        message = self.render(
            "expiration_alert",
            URGENCY_PREFIX[urgency]
            + self._subject(f"Seu token expira em {days_to_expiry} dia(s) - {title}"),
            author_name=author_name,
            title=title,
            access_url=self.access_url(token),
            expires_at=expires_at,
            days_to_expiry=days_to_expiry,
            urgency=urgency.value,
        )
        return await self.send_message(to, message)

    async def send_expired_notice(
        self,
        *,
        to: str,
        author_name: str,
        title: str,
        expires_at: datetime | None = None,
    ) -> NotificationResult:
        """Tell an author that access lapsed and how to recover it."""
        message = self.render(
            "expired_notice",
            self._subject(f"Token expirado - {title}"),
            author_name=author_name,
            title=title,
            expires_at=expires_at,
        )
        return await self.send_message(to, message)

    # ------------------------------------------------------------------
    # Admin notices
    # ------------------------------------------------------------------

    async def send_new_submission_notice(
        self,
        *,
        to: str,
        title: str,
        author_name: str,
        category: str | None,
        submitted_at: datetime | None,
    ) -> NotificationResult:
        """Tell an admin that a submission is waiting for review."""
        message = self.render(
            "new_submission",
            self._subject(f"Nova submissão para revisão: {title}", admin=True),
            title=title,
            author_name=author_name,
            category=category,
            submitted_at=submitted_at,
        )
        return await self.send_message(to, message)

    async def send_mass_expiration_notice(
        self,
        *,
        to: str,
        submissions: Sequence[Any],
        total: int,
    ) -> NotificationResult:
        """Summarize a large expiry sweep in a single admin message.

        Args:
            to: Admin address.
            submissions: Sample of expired submissions (title, author_name, author_email).
            total: Number of submissions expired in the sweep.
        """
        message = self.render(
            "mass_expiration",
            self._subject(f"{total} submissões expiraram", admin=True),
            submissions=submissions,
            total=total,
            remaining=max(total - len(submissions), 0),
        )
        return await self.send_message(to, message)

    async def send_daily_summary(
        self,
        *,
        to: str,
        admin_name: str,
        stats: dict[str, int],
        day: datetime,
    ) -> NotificationResult:
        """Send the admin daily digest."""
        message = self.render(
            "daily_summary",
            self._subject(f"Resumo diário - {day.strftime('%d/%m/%Y')}", admin=True),
            admin_name=admin_name,
            stats=stats,
            day=day,
        )
        return await self.send_message(to, message)
