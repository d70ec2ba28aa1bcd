"""Fire-and-forget dispatch of request-path notifications.

Sending an author their link or telling admins about a new submission must
not hold up (or fail) the request that triggered it. Such work is spawned
as a tracked asyncio task; failures are logged and go no further.

Notifications about rows written in the current unit of work are held
until that unit commits (``dispatch_after_commit``) and dropped on
rollback, so nobody is mailed a link to a row that was never stored.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import Session

    NotificationFactory = Callable[[], Coroutine[Any, Any, Any]]

logger = logging.getLogger(__name__)

# Session.info keys
PENDING_KEY = "verbete.pending_notifications"
HOOKED_KEY = "verbete.notification_hooks"


class NotificationDispatcher:
    """Runs notification coroutines in the background.

    Tasks are kept referenced until they finish so the event loop cannot
    garbage-collect them mid-flight. ``drain`` waits for everything still
    outstanding (used at shutdown and in tests).
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        """Number of tasks still running."""
        return len(self._tasks)

    def dispatch(self, coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task[Any]:
        """Schedule ``coro`` without awaiting it.

        Args:
            coro: Notification coroutine.
            label: Short description used as the task name and in logs.

        Returns:
            The spawned task.
        """
        task = asyncio.create_task(coro, name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Dispatched background notification: %s", label)
        return task

    def dispatch_after_commit(
        self,
        session: AsyncSession,
        send: NotificationFactory,
        *,
        label: str,
    ) -> None:
        """Dispatch ``send()`` once ``session`` commits; forget it on rollback.

        Args:
            session: Session whose pending changes the notification refers to.
            send: Builds the notification coroutine; only called on commit.
            label: Short description used as the task name and in logs.
        """
        sync_session = session.sync_session
        if not sync_session.info.get(HOOKED_KEY):
            event.listen(sync_session, "after_commit", _release_pending)
            event.listen(sync_session, "after_rollback", _discard_pending)
            sync_session.info[HOOKED_KEY] = True
        sync_session.info.setdefault(PENDING_KEY, []).append((self, send, label))
        logger.debug("Notification waiting for commit: %s", label)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background notification cancelled: %s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.error(
                "Background notification failed: %s: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks; errors were already logged by the callback."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("Cancelled %d unfinished notifications", len(not_done))


def _release_pending(sync_session: Session) -> None:
    for dispatcher, send, label in sync_session.info.pop(PENDING_KEY, []):
        dispatcher.dispatch(send(), label=label)


def _discard_pending(sync_session: Session) -> None:
    dropped = sync_session.info.pop(PENDING_KEY, [])
    if dropped:
        logger.info(
            "Rollback dropped %d notifications: %s",
            len(dropped),
            ",".join(label for _, _, label in dropped),
        )
