"""Send-once SMS dispatch keyed by (notification type, target) per call."""

import asyncio
import logging
import time
from typing import Callable, Optional

from src.config import settings
from src.schemas.session_schema import (
    FormSubmission,
    NotificationRecord,
    NotificationType,
    Session,
)
from src.tools.notifications import NotificationError, NotificationSender
from src.utils import mask_phone

logger = logging.getLogger(__name__)


def intake_form_token(call_id: str, patient_key: Optional[str] = None) -> str:
    """``form_{call_id}`` for a single booking, ``form_{call_id}_{patient}`` per group member."""
    if patient_key:
        return f"form_{call_id}_{patient_key}"
    return f"form_{call_id}"


class NotificationDispatcher:
    """Delivers notifications at most once per (type, target) on a call.

    The record is written to the session only after the gateway accepts the
    message, so a failed send may be retried on a later turn while a
    delivered one never repeats.
    """

    def __init__(
        self,
        sender: NotificationSender,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = None,
    ) -> None:
        self._sender = sender
        self._clock = clock
        self.timeout = timeout or settings.timeouts.notification_sec

    async def send_once(
        self,
        session: Session,
        notification_type: NotificationType,
        target_id: str,
        body: str,
        token: Optional[str] = None,
        to: Optional[str] = None,
    ) -> bool:
        """Send unless already delivered. Returns True only for a new delivery."""
        if session.has_sent(notification_type, target_id):
            logger.info("Skipping duplicate %s for %s", notification_type.value, target_id)
            return False
        destination = to or session.caller_id or session.collected_info.phone
        if not destination:
            logger.warning("No phone number to send %s to", notification_type.value)
            return False

        try:
            await asyncio.wait_for(
                self._sender.send(
                    destination, notification_type, token or target_id,
                    call_id=session.call_id, body=body,
                ),
                self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("SMS %s timed out for %s", notification_type.value, mask_phone(destination))
            return False
        except NotificationError as e:
            logger.warning("SMS %s failed for %s: %s",
                           notification_type.value, mask_phone(destination), e)
            return False

        session.notifications_sent.append(NotificationRecord(
            type=notification_type,
            target_id=target_id,
            sent_at=self._clock(),
            token=token,
        ))
        return True

    def issue_form(
        self,
        session: Session,
        token: str,
        participant_name: Optional[str],
        patient_id: Optional[str],
    ) -> FormSubmission:
        """Register a form token on the session, keeping any existing record."""
        existing = session.form_tokens.get(token)
        if existing is not None:
            return existing
        submission = FormSubmission(
            token=token,
            participant_name=participant_name,
            patient_id=patient_id,
            issued_at=self._clock(),
        )
        session.form_tokens[token] = submission
        return submission
