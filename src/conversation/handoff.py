"""
Escalation triggers that force a transfer to reception.

Checked in priority order, first match wins:
    explicit request > profanity > backend error > out of scope >
    low confidence > no-match loop > repeated hello

An identity mismatch ("that's not me") is deliberately absent from the list:
it routes to disambiguation, not to a human.

Usage:
    detector = HandoffDetector()
    decision = detector.evaluate(HandoffSignals(utterance="...", no_match_count=2))
    if decision.should_handoff:
        reply = HANDOFF_REPLIES[decision.trigger.value]
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from src.config import settings
from src.schemas.intent_schema import Intent

logger = logging.getLogger(__name__)


def _compile_patterns(phrases: list[str]) -> re.Pattern[str]:
    """Compile a list of phrases into a single word-boundary regex."""
    escaped = [re.escape(p) for p in phrases]
    return re.compile(r"\b(?:" + "|".join(escaped) + r")\b", re.IGNORECASE)


class HandoffTrigger(str, Enum):
    EXPLICIT_REQUEST = "explicit_request"
    PROFANITY = "profanity"
    BACKEND_ERROR = "backend_error"
    OUT_OF_SCOPE = "out_of_scope"
    LOW_CONFIDENCE = "low_confidence"
    FRUSTRATION_LOOP = "frustration_loop"
    REPEATED_HELLO = "repeated_hello"


TRIGGER_CONFIDENCE: dict[HandoffTrigger, float] = {
    HandoffTrigger.EXPLICIT_REQUEST: 0.95,
    HandoffTrigger.PROFANITY: 0.85,
    HandoffTrigger.BACKEND_ERROR: 0.90,
    HandoffTrigger.OUT_OF_SCOPE: 0.80,
    HandoffTrigger.LOW_CONFIDENCE: 0.75,
    HandoffTrigger.FRUSTRATION_LOOP: 0.80,
    HandoffTrigger.REPEATED_HELLO: 0.70,
}

_EXPLICIT_RE = re.compile(
    r"\b(?:speak|talk|chat)\s+(?:to|with)\s+(?:a\s+|an\s+|the\s+)?(?:real\s+|actual\s+)?"
    r"(?:human|person|receptionist|staff|someone|somebody|agent|operator|manager)\b"
    r"|\b(?:real|actual)\s+person\b|\bhuman being\b|\bput me through\b|\btransfer me\b",
    re.IGNORECASE,
)
_PROFANITY_RE = re.compile(
    r"\b(?:f+u+c+k\w*|shit\w*|bullshit|damn|dammit|bugger|bastard|crap|piss(?:ed)? off)\b",
    re.IGNORECASE,
)
_CLARIFY_RE = _compile_patterns([
    "didn't catch", "didnt catch", "did not catch", "didn't understand",
    "could you repeat", "say that again",
])
# A bare "hello?" turn, not a greeting that opens a real request.
_HELLO_RE = re.compile(
    r"^\W*(?:hello|hi|hey|hullo)\b(?:\W+\w+){0,3}\W*$", re.IGNORECASE
)

REPEATED_HELLO_WINDOW = 5
REPEATED_HELLO_THRESHOLD = 2


@dataclass
class HandoffSignals:
    """Everything one evaluation looks at for the current turn."""
    utterance: str = ""
    intent: Optional[Intent] = None
    confidence: float = 1.0
    backend_error: bool = False
    out_of_scope: bool = False
    no_match_count: int = 0
    recent_user_texts: list[str] = field(default_factory=list)
    recent_assistant_texts: list[str] = field(default_factory=list)
    question_pending: bool = False


@dataclass
class HandoffDecision:
    should_handoff: bool
    trigger: Optional[HandoffTrigger] = None
    confidence: float = 1.0
    reason: str = ""


class HandoffDetector:
    """Decides whether the current turn must be transferred to a human."""

    def __init__(
        self,
        low_confidence_threshold: Optional[float] = None,
        no_match_threshold: Optional[int] = None,
    ) -> None:
        conv = settings.conversation
        if low_confidence_threshold is None:
            low_confidence_threshold = conv.low_confidence_threshold
        self.low_confidence_threshold = low_confidence_threshold
        self.no_match_threshold = no_match_threshold or conv.no_match_threshold
        self._checks: list[tuple[HandoffTrigger, Callable[[HandoffSignals], Optional[str]]]] = [
            (HandoffTrigger.EXPLICIT_REQUEST, self._check_explicit),
            (HandoffTrigger.PROFANITY, self._check_profanity),
            (HandoffTrigger.BACKEND_ERROR, self._check_backend_error),
            (HandoffTrigger.OUT_OF_SCOPE, self._check_out_of_scope),
            (HandoffTrigger.LOW_CONFIDENCE, self._check_low_confidence),
            (HandoffTrigger.FRUSTRATION_LOOP, self._check_frustration_loop),
            (HandoffTrigger.REPEATED_HELLO, self._check_repeated_hello),
        ]

    def evaluate(self, signals: HandoffSignals) -> HandoffDecision:
        """Run every check in priority order and return the first that fires."""
        for trigger, check in self._checks:
            reason = check(signals)
            if reason is None:
                continue
            logger.info("Handoff triggered: %s (%s)", trigger.value, reason)
            return HandoffDecision(
                should_handoff=True,
                trigger=trigger,
                confidence=TRIGGER_CONFIDENCE[trigger],
                reason=reason,
            )

        return HandoffDecision(
            should_handoff=False,
            confidence=max(0.0, 1.0 - signals.no_match_count * 0.1),
        )

    # --- Individual checks, each returning a reason or None ---

    def _check_explicit(self, s: HandoffSignals) -> Optional[str]:
        match = _EXPLICIT_RE.search(s.utterance)
        if match:
            return f"caller said '{match.group(0)}'"
        if s.intent == Intent.ASK_HUMAN:
            return "caller asked for a person"
        return None

    def _check_profanity(self, s: HandoffSignals) -> Optional[str]:
        return "profanity in utterance" if _PROFANITY_RE.search(s.utterance) else None

    def _check_backend_error(self, s: HandoffSignals) -> Optional[str]:
        return "scheduling backend unavailable" if s.backend_error else None

    def _check_out_of_scope(self, s: HandoffSignals) -> Optional[str]:
        if s.out_of_scope and not s.question_pending:
            return "request is outside what the receptionist handles"
        return None

    def _check_low_confidence(self, s: HandoffSignals) -> Optional[str]:
        if s.question_pending or s.intent is None:
            return None
        if s.confidence < self.low_confidence_threshold:
            return f"low confidence in understanding ({s.confidence:.0%})"
        return None

    def _check_frustration_loop(self, s: HandoffSignals) -> Optional[str]:
        if s.no_match_count >= self.no_match_threshold:
            return f"{s.no_match_count} unresolved turns in a row"
        last_two = s.recent_assistant_texts[-2:]
        if len(last_two) == 2 and all(_CLARIFY_RE.search(t) for t in last_two):
            return "asked the caller to repeat twice in a row"
        return None

    def _check_repeated_hello(self, s: HandoffSignals) -> Optional[str]:
        if not _HELLO_RE.search(s.utterance):
            return None
        window = s.recent_user_texts[-REPEATED_HELLO_WINDOW:]
        hellos = sum(1 for text in window if _HELLO_RE.search(text))
        if hellos >= REPEATED_HELLO_THRESHOLD:
            return f"caller said hello {hellos} times"
        return None
