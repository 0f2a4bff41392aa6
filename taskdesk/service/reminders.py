"""Background scheduler that emails reminders for todos coming due.

Each tick claims the open todos due within the lookahead window, marking them
reminded in the same store call, then mails the assignee (or the owner when
nobody active is assigned). A todo whose email could not be delivered is
unmarked so the next tick tries again; a todo with no active recipient keeps
its mark.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from taskdesk.logging import get_logger
from taskdesk.service import mail_templates
from taskdesk.service.email import EmailService
from taskdesk.storage.models import Todo, User, utcnow

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_LOOKAHEAD_MINUTES = 10


class ReminderScheduler:
    def __init__(
        self,
        store,
        email: EmailService,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        lookahead_minutes: int = DEFAULT_LOOKAHEAD_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.email = email
        self.interval_seconds = interval_seconds
        self.lookahead = timedelta(minutes=lookahead_minutes)
        self.clock = clock
        self._running = False
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("reminder_scheduler_already_started")
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reminder_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._stopping = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reminder_scheduler_stopped")

    async def _run_loop(self) -> None:
        while not self._stopping:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error(
                    "reminder_scheduler_tick_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> int:
        """Run one reminder pass and return how many reminders were delivered.

        Returns 0 without touching the store when a previous pass is still in
        flight.
        """
        if self._running:
            logger.info("reminder_tick_skipped", reason="previous_run_active")
            return 0
        self._running = True
        try:
            now = self.clock()
            due = self.store.claim_due_todos(now, now + self.lookahead)
            if not due:
                return 0
            logger.info("reminders_claimed", count=len(due))
            sent = 0
            for todo in due:
                recipient = self._recipient(todo)
                if recipient is None:
                    # the claim stands, otherwise the todo is picked up again every tick
                    logger.warning("reminder_recipient_missing", todo_id=todo.id)
                    continue
                if await self.email.dispatch(
                    mail_templates.task_reminder(recipient, todo), recipient.email
                ):
                    sent += 1
                else:
                    self.store.set_todo_reminded(todo.id, False)
            return sent
        finally:
            self._running = False

    def _recipient(self, todo: Todo) -> Optional[User]:
        """The active assignee, else the active owner."""
        for user_id in (todo.assignee_id, todo.user_id):
            if not user_id:
                continue
            user = self.store.get_user(user_id)
            if user is not None and user.is_active:
                return user
        return None
