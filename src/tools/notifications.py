"""
SMS notification delivery interface and an in-memory mock.

In production this would call an SMS gateway. Delivery is idempotent per
(call id, token or target, template): a repeated send for the same key is
accepted and dropped, so retries after a timeout never double-text a patient.
"""

import logging
import time
from typing import Optional, Protocol, TypedDict

from src.schemas.session_schema import NotificationType
from src.utils import mask_phone

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when the SMS gateway cannot accept a message."""


class NotificationSender(Protocol):
    async def send(
        self,
        target: str,
        template: NotificationType,
        token: Optional[str] = None,
        *,
        call_id: str,
        body: str,
    ) -> None:
        ...


class SentMessage(TypedDict):
    """A message accepted by the mock gateway."""

    call_id: str
    target: str
    template: str
    token: Optional[str]
    body: str
    sent_at: float


class InMemoryNotificationSender:
    """Records messages instead of sending them; supports failure injection."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self._keys: set[tuple[str, str, str]] = set()
        self.fail = False

    async def send(
        self,
        target: str,
        template: NotificationType,
        token: Optional[str] = None,
        *,
        call_id: str,
        body: str,
    ) -> None:
        if self.fail:
            raise NotificationError("SMS gateway unavailable")
        key = (call_id, token or target, template.value)
        if key in self._keys:
            logger.info("Duplicate %s send dropped for %s", template.value, mask_phone(target))
            return
        self._keys.add(key)
        self.sent.append({
            "call_id": call_id,
            "target": target,
            "template": template.value,
            "token": token,
            "body": body,
            "sent_at": time.time(),
        })
        logger.info("SMS %s sent to %s", template.value, mask_phone(target))

    def messages_for(self, call_id: str) -> list[SentMessage]:
        return [m for m in self.sent if m["call_id"] == call_id]

    def reset(self) -> None:
        """Clear sent messages. Used by test fixtures for isolation."""
        self.sent.clear()
        self._keys.clear()
        self.fail = False
