"""Fire-and-forget side effects (notifications, emails).

Delivery runs in background tasks after the financial transition has committed.
A failure is logged on its own channel and never reaches the caller.
"""

import asyncio
from typing import Any, Coroutine

from marketplace.core.logging import get_logger
from marketplace.services.mailer import EmailSender
from marketplace.services.notifications import Notifier
from marketplace.storage.base import MarketStore

log = get_logger(__name__)


class Dispatcher:
    def __init__(self, store: MarketStore, notifier: Notifier, email_sender: EmailSender) -> None:
        self.store = store
        self.notifier = notifier
        self.email_sender = email_sender
        self._tasks: set[asyncio.Task] = set()

    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self._spawn("notify", {"user_id": user_id, "event": event}, self.notifier.notify(user_id, event, payload))

    def email(self, user_id: str, template_id: str, data: dict[str, Any], *, transactional: bool = False) -> None:
        """Email a user. Transactional mail (OTP codes) ignores the user's notification preference."""
        self._spawn(
            "email",
            {"user_id": user_id, "template": template_id},
            self._email(user_id, template_id, data, transactional),
        )

    async def _email(self, user_id: str, template_id: str, data: dict[str, Any], transactional: bool) -> None:
        user = await self.store.get_user(user_id)
        if user is None or not user.email:
            log.warning("email_skipped", user_id=user_id, template=template_id, reason="no address")
            return
        if not transactional and not user.email_notifications:
            return
        await self.email_sender.send_email(user.email, template_id, {"userName": user.name, **data})

    def _spawn(self, channel: str, context: dict[str, Any], coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(self._guard(channel, context, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, channel: str, context: dict[str, Any], coro: Coroutine[Any, Any, None]) -> None:
        try:
            await coro
        except Exception as e:
            log.exception("side_effect_failed", channel=channel, reason=str(e)[:500], **context)

    async def drain(self) -> None:
        """Wait for in-flight side effects (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
