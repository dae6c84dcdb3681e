"""
Last checks on a reply before it is spoken.

``TerminalGuard`` enforces two invariants on outgoing text:

1. Once ``terminal_lock`` is set, no booking prompt ("would you like to
   book", "shall I book that in") may be spoken. A non-FAQ reply carrying
   one is replaced; an FAQ answer keeps its content and only loses the
   booking offer sentence.
2. A reply may only claim success ("you're all booked in") when the active
   booking holds a backend-confirmed appointment id.
"""

import logging
import re

from src.conversation.state_machine import BookingState
from src.prompts.prompt_templates import (
    ANYTHING_ELSE,
    BOOKING_FAILED_REPLY,
    NOT_YET_BOOKED_REPLY,
    build_already_booked,
)
from src.schemas.session_schema import Session

logger = logging.getLogger(__name__)

_BOOKING_PROMPT = re.compile(
    r"\b(?:would you like (?:me )?to book|would you like to (?:make|schedule)|"
    r"shall i (?:book|confirm|lock)|want me to book|book (?:that|those|you) in\?|"
    r"which one suits|when would you like to come in)",
    re.IGNORECASE,
)
_SUCCESS_CLAIM = re.compile(
    r"\b(?:you'?re (?:all )?booked|you are (?:all )?booked|(?:are|is) (?:both |all )?booked in|"
    r"i'?ve booked|successfully booked|appointment is confirmed|booking is confirmed|"
    r"you'?re all set for)",
    re.IGNORECASE,
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.?!])\s+")


def claims_success(text: str) -> bool:
    return bool(_SUCCESS_CLAIM.search(text))


def prompts_booking(text: str) -> bool:
    return bool(_BOOKING_PROMPT.search(text))


class TerminalGuard:
    """Rewrites replies that would break the terminal lock or claim a false success."""

    def apply(self, reply: str, session: Session, is_faq: bool = False) -> str:
        reply = self.verify_success(reply, session)
        return self.suppress_after_terminal(reply, session, is_faq=is_faq)

    def verify_success(self, reply: str, session: Session) -> str:
        """Replace a success claim that no confirmed appointment backs up."""
        if not claims_success(reply):
            return reply
        booking = session.booking
        if booking.appointment_created and booking.appointment_id:
            return reply
        logger.warning("Blocked unverified booking success claim")
        if booking.state == BookingState.FAILED:
            return BOOKING_FAILED_REPLY
        return NOT_YET_BOOKED_REPLY

    def suppress_after_terminal(self, reply: str, session: Session, is_faq: bool = False) -> str:
        if not session.terminal_lock or not prompts_booking(reply):
            return reply
        if is_faq:
            kept = [s for s in _SENTENCE_SPLIT.split(reply) if not prompts_booking(s)]
            logger.info("Dropped booking offer from FAQ answer after terminal lock")
            return " ".join(kept + [ANYTHING_ELSE]).strip()
        logger.info("Suppressed booking prompt after terminal lock")
        return build_already_booked(session.booking.selected_slot)
