"""
Handling of empty-speech turns.

The speech recogniser often reports an empty result just before (or just
after) the real utterance. A "still there?" prompt is therefore only spoken
when silence persists past the grace window:

* non-interactive stages (booking in progress, sending notification,
  terminal) never prompt
* the first empty turn is silent
* an empty turn within the grace window of the previous one is silent
* an empty turn after the window prompts, up to ``max_empty_prompts``;
  after that the call is closed politely
"""

import logging
from enum import Enum
from typing import Optional

from src.config import settings
from src.conversation.state_machine import NON_INTERACTIVE_STAGES
from src.schemas.session_schema import Session

logger = logging.getLogger(__name__)


class EmptyTurnAction(str, Enum):
    SILENT = "silent"
    PROMPT = "prompt"
    HANGUP = "hangup"


class StageGuard:
    """Decides what an empty turn produces, given the stage and recent silence."""

    def __init__(
        self,
        grace_ms: Optional[int] = None,
        max_empty_prompts: Optional[int] = None,
    ) -> None:
        conv = settings.conversation
        self.grace_ms = conv.empty_speech_grace_ms if grace_ms is None else grace_ms
        self.max_empty_prompts = max_empty_prompts or conv.max_empty_prompts

    def on_empty(self, session: Session, now: float) -> EmptyTurnAction:
        """Record an empty turn at ``now`` (seconds) and return what to do."""
        if session.stage in NON_INTERACTIVE_STAGES:
            logger.debug("Empty turn in %s: silent continuation", session.stage.value)
            return EmptyTurnAction.SILENT

        previous = session.last_empty_at
        session.empty_count += 1
        session.last_empty_at = now

        if previous is None:
            return EmptyTurnAction.SILENT
        if (now - previous) * 1000 < self.grace_ms:
            logger.debug("Empty turn within %dms grace window", self.grace_ms)
            return EmptyTurnAction.SILENT

        if session.empty_prompts >= self.max_empty_prompts:
            logger.info("Caller silent after %d prompts, closing call", session.empty_prompts)
            return EmptyTurnAction.HANGUP
        session.empty_prompts += 1
        return EmptyTurnAction.PROMPT

    @staticmethod
    def on_speech(session: Session) -> None:
        """Real speech resets the silence tracking."""
        session.empty_count = 0
        session.empty_prompts = 0
        session.last_empty_at = None
