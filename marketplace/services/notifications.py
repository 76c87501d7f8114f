"""Notification delivery boundary. Real-time transport lives outside this service."""

from abc import ABC, abstractmethod
from typing import Any

from marketplace.core.logging import get_logger

log = get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        ...


class LogNotifier(Notifier):
    """Emits notifications as structured log events for a downstream shipper."""

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        log.info("notification", user_id=user_id, notification=event, payload=payload)
