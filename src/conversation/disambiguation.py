"""
Resolving one-of-many choices: which patient record, which offered slot.

Every clarifying question goes through ``clarify()``, which enforces the
ask-at-most-twice rule per question kind. When a kind is exhausted the
engine stops asking and hands back the safe fallback for that kind: a new
patient record for identity questions, a handoff for everything else.

Usage:
    engine = DisambiguationEngine()
    res = engine.resolve_slot("the second one", session.booking.slots)
    if res.status == ResolutionStatus.RESOLVED:
        session.booking.selected_slot_index = res.index
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from src.config import settings
from src.conversation.extractors import wants_someone_new
from src.schemas.booking_schema import Patient, Slot
from src.schemas.session_schema import QuestionKind, Session
from src.utils import normalize_text

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"
    NEW_PERSON = "new_person"
    UNRESOLVED = "unresolved"
    HANDOFF = "handoff"


@dataclass
class Resolution:
    status: ResolutionStatus
    index: Optional[int] = None
    question: Optional[str] = None


# Exhausted identity questions default to a new record; anything else escalates.
EXHAUSTED_FALLBACK: dict[QuestionKind, ResolutionStatus] = {
    QuestionKind.IDENTITY_CONFIRM: ResolutionStatus.NEW_PERSON,
    QuestionKind.PATIENT_CHOICE: ResolutionStatus.NEW_PERSON,
}

_ORDINALS: dict[str, int] = {
    "first": 0, "1st": 0, "second": 1, "2nd": 1, "third": 2, "3rd": 2,
    "fourth": 3, "4th": 3, "fifth": 4, "5th": 4,
}
_NUMBER_WORDS: dict[str, int] = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}
_LAST = re.compile(r"\b(?:last|final|latest|later one)\b")
_EARLIEST = re.compile(r"\b(?:earliest|earlier one)\b")
_CHOICE_NUMBER = re.compile(r"\b(?:number|option|press|pressed)\s+(\d{1,2}|[a-z]+)\b")
_SPOKEN_CLOCK = re.compile(
    r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?m\b\.?|p\.?m\b\.?|o'?clock\b)|\b(\d{1,2}):(\d{2})\b"
)
_PRACTITIONER_TITLES = frozenset({"dr", "doctor", "mr", "mrs", "ms"})


def _parse_number(token: str) -> Optional[int]:
    if token.isdigit():
        return int(token)
    return _NUMBER_WORDS.get(token)


def _choice_index(norm: str, count: int) -> Optional[int]:
    """0-based index from "the second one", "number 2", "option two" or a bare "2"."""
    for word in norm.split():
        if word in _ORDINALS and _ORDINALS[word] < count:
            return _ORDINALS[word]
    explicit = _CHOICE_NUMBER.search(norm)
    if explicit:
        number = _parse_number(explicit.group(1))
        if number is not None and 1 <= number <= count:
            return number - 1
    words = norm.split()
    if 1 <= len(words) <= 3:
        for word in words:
            number = _parse_number(word)
            if number is not None and 1 <= number <= count:
                return number - 1
    return None


class DisambiguationEngine:
    """Matches utterances against candidate lists and bounds clarification."""

    def __init__(self, max_asks: Optional[int] = None) -> None:
        self.max_asks = max_asks or settings.conversation.max_question_asks

    # --- Question budget ---

    def can_ask(self, session: Session, kind: QuestionKind) -> bool:
        return session.question_ask_counts.get(kind, 0) < self.max_asks

    def ask(self, session: Session, kind: QuestionKind) -> bool:
        """Record that ``kind`` is being asked. False when the budget is spent.

        The counter never moves past ``max_asks``.
        """
        if not self.can_ask(session, kind):
            logger.info("Question %s exhausted after %d asks", kind.value, self.max_asks)
            return False
        session.question_ask_counts[kind] = session.question_ask_counts.get(kind, 0) + 1
        session.awaiting_response_type = kind
        return True

    def clarify(self, session: Session, kind: QuestionKind, question: str) -> Resolution:
        """Ask ``question`` if budget remains, otherwise return the fallback for ``kind``."""
        if self.ask(session, kind):
            return Resolution(status=ResolutionStatus.AMBIGUOUS, question=question)
        return Resolution(status=EXHAUSTED_FALLBACK.get(kind, ResolutionStatus.HANDOFF))

    # --- Patients ---

    def resolve_patient(
        self,
        utterance: str,
        candidates: list[Patient],
        digits: Optional[str] = None,
    ) -> Resolution:
        """Pick one of several records sharing a phone number.

        Digits 1..n pick a record and n+1 means someone new, as read out by
        ``build_patient_choice``. "Someone new" phrasing never touches the
        candidate records.
        """
        count = len(candidates)
        if digits and digits.strip().isdigit():
            choice = int(digits.strip())
            if 1 <= choice <= count:
                return Resolution(status=ResolutionStatus.RESOLVED, index=choice - 1)
            if choice == count + 1:
                return Resolution(status=ResolutionStatus.NEW_PERSON)

        if wants_someone_new(utterance):
            return Resolution(status=ResolutionStatus.NEW_PERSON)

        norm = normalize_text(utterance)
        if not norm:
            return Resolution(status=ResolutionStatus.UNRESOLVED)

        full = [i for i, p in enumerate(candidates) if normalize_text(p.full_name) in norm]
        if len(full) == 1:
            return Resolution(status=ResolutionStatus.RESOLVED, index=full[0])

        words = set(norm.replace("'", " ").split())
        by_first = [i for i, p in enumerate(candidates) if p.first_name.lower() in words]
        if len(by_first) == 1:
            return Resolution(status=ResolutionStatus.RESOLVED, index=by_first[0])
        if len(by_first) > 1:
            return Resolution(status=ResolutionStatus.AMBIGUOUS)

        index = _choice_index(norm, count + 1)
        if index is not None:
            if index == count:
                return Resolution(status=ResolutionStatus.NEW_PERSON)
            return Resolution(status=ResolutionStatus.RESOLVED, index=index)
        return Resolution(status=ResolutionStatus.UNRESOLVED)

    # --- Slots ---

    def resolve_slot(
        self,
        utterance: str,
        slots: list[Slot],
        digits: Optional[str] = None,
    ) -> Resolution:
        """Pick an offered slot by position, spoken time or practitioner."""
        count = len(slots)
        if count == 0:
            return Resolution(status=ResolutionStatus.UNRESOLVED)
        if digits and digits.strip().isdigit():
            choice = int(digits.strip())
            if 1 <= choice <= count:
                return Resolution(status=ResolutionStatus.RESOLVED, index=choice - 1)

        norm = normalize_text(utterance)
        if not norm:
            return Resolution(status=ResolutionStatus.UNRESOLVED)

        if _LAST.search(norm):
            return Resolution(status=ResolutionStatus.RESOLVED, index=count - 1)
        if _EARLIEST.search(norm):
            return Resolution(status=ResolutionStatus.RESOLVED, index=0)

        by_time = self._match_clock_time(utterance.lower().replace("’", "'"), slots)
        if by_time is not None:
            return by_time

        index = _choice_index(norm, count)
        if index is not None:
            return Resolution(status=ResolutionStatus.RESOLVED, index=index)

        by_practitioner = self._match_practitioner(norm, slots)
        if by_practitioner is not None:
            return by_practitioner
        return Resolution(status=ResolutionStatus.UNRESOLVED)

    def _match_clock_time(self, norm: str, slots: list[Slot]) -> Optional[Resolution]:
        match = _SPOKEN_CLOCK.search(norm)
        if not match:
            return None
        if match.group(1):
            hour, minute = int(match.group(1)), int(match.group(2) or 0)
            suffix = match.group(3).replace(".", "")[:2]
        else:
            hour, minute, suffix = int(match.group(4)), int(match.group(5)), None
        if hour > 23 or minute > 59:
            return None

        def _hits(slot: Slot) -> bool:
            if slot.start.minute != minute:
                return False
            if suffix == "am":
                return slot.start.hour == hour % 12
            if suffix == "pm":
                return slot.start.hour == hour % 12 + 12
            return slot.start.hour % 12 == hour % 12

        hits = [i for i, slot in enumerate(slots) if _hits(slot)]
        if len(hits) == 1:
            return Resolution(status=ResolutionStatus.RESOLVED, index=hits[0])
        if len(hits) > 1:
            return Resolution(status=ResolutionStatus.AMBIGUOUS)
        return Resolution(status=ResolutionStatus.UNRESOLVED)

    def _match_practitioner(self, norm: str, slots: list[Slot]) -> Optional[Resolution]:
        words = set(norm.split())
        hits = []
        for i, slot in enumerate(slots):
            name_words = set(normalize_text(slot.practitioner_name).split()) - _PRACTITIONER_TITLES
            if name_words & words:
                hits.append(i)
        if len(hits) == 1:
            return Resolution(status=ResolutionStatus.RESOLVED, index=hits[0])
        if len(hits) > 1:
            return Resolution(status=ResolutionStatus.AMBIGUOUS)
        return None
