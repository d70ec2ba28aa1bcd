"""Shared dependencies handed to every job handler."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from verbete.core.config import Settings
    from verbete.services.email import EmailNotifier


@dataclass(frozen=True, slots=True)
class JobContext:
    """Process-wide collaborators for scheduled jobs.

    Attributes:
        settings: Application settings.
        notifier: Outbound e-mail.
    """

    settings: Settings
    notifier: EmailNotifier


# Handlers get a fresh session per run; the caller commits on success
JobHandler = Callable[[AsyncSession, JobContext], Coroutine[Any, Any, dict[str, Any] | None]]
