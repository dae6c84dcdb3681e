"""
Deterministic extractors for raw utterance text.

Every function here is pure and total: any string (including an empty one)
yields a value, nothing calls out to a provider, and nothing reads the
session. The orchestrator runs them on every turn so that details the caller
volunteers early ("tomorrow morning", "it's for my son") are never lost to a
question-by-question flow.

Usage:
    extract_time_preference("I'd like to book for tomorrow morning")
    # -> "tomorrow morning"
    classify_yes_no("yeah no")
    # -> YesNo.NO
    is_valid_person_name("my son")
    # -> False
"""

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from src.schemas.booking_schema import TimeRange
from src.schemas.intent_schema import Sentiment
from src.utils import normalize_phone, normalize_text

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# --- Time preference ---

_CLOCK_TIME = re.compile(
    r"\b(?:at|around|about)?\s*(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)(?![a-z])"
)
_TIME_OF_DAY = re.compile(r"\b(morning|afternoon|arvo|evening|tonight)\b")
_WEEKDAY = re.compile(r"\b(" + "|".join(WEEKDAYS) + r")\b")
_TODAY = re.compile(r"\b(today|tonight)\b|\bthis (?:morning|afternoon|arvo|evening)\b")
_TOMORROW = re.compile(r"\btomorrow\b")
_NEXT_WEEK = re.compile(r"\bnext week\b")
_THIS_WEEK = re.compile(r"\b(?:this|later this) week\b")
_CANONICAL_CLOCK = re.compile(r"(\d{1,2}):(\d{2})(am|pm)")

TIME_OF_DAY_HOURS: dict[str, tuple[int, int]] = {
    "morning": (8, 12),
    "afternoon": (12, 17),
    "evening": (17, 20),
}
DEFAULT_DAY_HOURS = (8, 18)


def _find_day(lower: str) -> Optional[str]:
    weekday = _WEEKDAY.search(lower)
    if weekday:
        return weekday.group(1)
    if _TOMORROW.search(lower):
        return "tomorrow"
    if _TODAY.search(lower):
        return "today"
    return None


def extract_time_preference(text: str) -> Optional[str]:
    """Return a canonical time preference string, or None.

    Priority: clock time with meridiem, named time of day, weekday,
    tomorrow, today, week references. Clock times and times of day carry a
    day prefix that defaults to "today".
    """
    if not text:
        return None
    lower = text.lower().replace("’", "'")
    day = _find_day(lower)

    clock = _CLOCK_TIME.search(lower)
    if clock:
        hour = int(clock.group(1))
        minute = clock.group(2) or "00"
        meridiem = "am" if clock.group(3).startswith("a") else "pm"
        if 1 <= hour <= 12 and int(minute) < 60:
            return f"{day or 'today'} {hour}:{minute}{meridiem}"

    tod = _TIME_OF_DAY.search(lower)
    if tod:
        period = {"arvo": "afternoon", "tonight": "evening"}.get(tod.group(1), tod.group(1))
        return f"{day or 'today'} {period}"

    if day:
        return day
    if _NEXT_WEEK.search(lower):
        return "next week"
    if _THIS_WEEK.search(lower):
        return "this week"
    return None


def time_specificity(preference: Optional[str]) -> int:
    """Score how precise a canonical preference is; higher is more specific."""
    if not preference:
        return 0
    if _CANONICAL_CLOCK.search(preference):
        return 100
    if any(period in preference for period in TIME_OF_DAY_HOURS):
        return 50
    if _WEEKDAY.search(preference):
        return 30
    if "tomorrow" in preference:
        return 20
    if "today" in preference:
        return 15
    if "week" in preference:
        return 10
    return 0


def parse_time_preference(preference: str, now: datetime) -> TimeRange:
    """Turn a canonical preference into a search window in ``now``'s timezone.

    A weekday always means its next occurrence, never today. The window
    start is clamped to ``now``.
    """
    pref = preference.lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if pref == "next week":
        monday = midnight + timedelta(days=7 - now.weekday())
        return TimeRange(
            start=monday.replace(hour=DEFAULT_DAY_HOURS[0]),
            end=(monday + timedelta(days=5)).replace(hour=DEFAULT_DAY_HOURS[1]),
            label=preference,
        )
    if pref == "this week":
        sunday = midnight + timedelta(days=6 - now.weekday())
        return TimeRange(
            start=now,
            end=sunday.replace(hour=DEFAULT_DAY_HOURS[1]),
            label=preference,
        )

    day = midnight
    weekday = _WEEKDAY.search(pref)
    if pref.startswith("tomorrow"):
        day = midnight + timedelta(days=1)
    elif weekday:
        ahead = (WEEKDAYS.index(weekday.group(1)) - now.weekday()) % 7 or 7
        day = midnight + timedelta(days=ahead)

    clock = _CANONICAL_CLOCK.search(pref)
    if clock:
        hour = int(clock.group(1)) % 12 + (12 if clock.group(3) == "pm" else 0)
        target = day.replace(hour=hour, minute=int(clock.group(2)))
        start, end = target - timedelta(hours=1), target + timedelta(hours=2)
    else:
        start_hour, end_hour = DEFAULT_DAY_HOURS
        for period, hours in TIME_OF_DAY_HOURS.items():
            if period in pref:
                start_hour, end_hour = hours
                break
        start, end = day.replace(hour=start_hour), day.replace(hour=end_hour)

    start = max(start, now)
    if start > end:
        start = end
    return TimeRange(start=start, end=end, label=preference)


def extract_day(text: str) -> Optional[str]:
    """Return the day mentioned (weekday, today, tomorrow, this_week, next_week)."""
    lower = text.lower()
    day = _find_day(lower)
    if day:
        return day
    if _NEXT_WEEK.search(lower):
        return "next_week"
    if _THIS_WEEK.search(lower):
        return "this_week"
    return None


def extract_time_of_day(text: str) -> Optional[str]:
    """Return morning/afternoon/evening, a clock time, or None."""
    lower = text.lower()
    clock = _CLOCK_TIME.search(lower)
    if clock:
        meridiem = "am" if clock.group(3).startswith("a") else "pm"
        return f"{int(clock.group(1))}:{clock.group(2) or '00'}{meridiem}"
    if re.search(r"\b(morning|early)\b", lower):
        return "morning"
    if re.search(r"\b(afternoon|arvo)\b", lower):
        return "afternoon"
    if re.search(r"\b(evening|tonight|after work)\b", lower):
        return "evening"
    return None


# --- Yes / No ---


class YesNo(str, Enum):
    YES = "yes"
    NO = "no"
    UNCLEAR = "unclear"


_RELATION_WORDS = (
    "son|daughter|child|kid|kids|baby|wife|husband|partner|mum|mom|mother|dad|"
    "father|brother|sister|friend|grandma|grandmother|grandpa|grandfather|"
    "grandson|granddaughter|boyfriend|girlfriend|nephew|niece|aunt|uncle|cousin"
)

_NO_PHRASES = [
    re.compile(p) for p in (
        r"\babsolutely no(?:t)?\b",
        r"\bdefinitely not\b",
        r"\bnot me\b",
        r"\bthat'?s not me\b",
        r"\bi'?m not\b",
        r"\bi am not\b",
        r"\bdon'?t think so\b",
        r"\bdifferent person\b",
        r"\bsome(?:one|body) else\b",
        r"\b(?:booking|calling) for (?:someone|somebody|my)\b",
        r"\bon behalf of\b",
        rf"\bfor my (?:{_RELATION_WORDS})\b",
        r"\bfor (?:him|her|them)\b",
    )
]
_NO_TOKENS = frozenset({"no", "nope", "nah", "negative", "wrong", "incorrect", "not"})
_UNSURE = re.compile(r"\b(?:not sure|i don'?t know|dunno|maybe|unsure)\b")
_YES_PATTERNS = [
    re.compile(p) for p in (
        r"\b(?:yes|yeah|yep|yup|yea|correct|sure|absolutely|affirmative|ok|okay|"
        r"definitely|certainly|perfect|please do|go ahead|sounds good|that works)\b",
        r"\bthat'?s (?:me|right|correct|it|fine)\b",
        r"\bit'?s me\b",
        r"^(?:i am|i'm)\b",
        r"\bspeaking\b",
    )
]


def classify_yes_no(text: str) -> YesNo:
    """Classify a reply to a yes/no question.

    Negative phrases are checked first, then negative tokens, then
    affirmatives, so a negative always beats a coincidental affirmative
    ("yeah no" is NO).
    """
    norm = normalize_text(text)
    if not norm:
        return YesNo.UNCLEAR
    if any(p.search(norm) for p in _NO_PHRASES):
        return YesNo.NO
    if _UNSURE.search(norm):
        return YesNo.UNCLEAR
    tokens = set(norm.replace("'", " ").split())
    if tokens & _NO_TOKENS:
        return YesNo.NO
    if any(p.search(norm) for p in _YES_PATTERNS):
        return YesNo.YES
    return YesNo.UNCLEAR


# --- Person names ---

_PRONOUNS = frozenset({
    "me", "myself", "i", "you", "yourself", "we", "us", "ourselves", "my", "mine",
    "him", "himself", "her", "herself", "them", "themselves", "it", "someone",
    "somebody", "anyone", "anybody", "they", "he", "she",
})
_RELATIONS = frozenset(_RELATION_WORDS.split("|")) | {"family", "children", "boy", "girl", "toddler"}
_PLACEHOLDERS = frozenset({
    "primary", "secondary", "caller", "patient", "patient1", "patient2",
    "unknown", "placeholder", "none", "null", "n/a", "tbd",
})
_NON_NAME_WORDS = frozenset({
    "for", "and", "the", "a", "an", "to", "at", "on", "in", "with", "as", "too",
    "today", "tomorrow", "both", "appointment", "appointments", "please", "yes",
    "no", "yeah", "nope", "okay", "ok", "hello", "hi", "hey", "booking", "book",
    "thanks", "thank", "morning", "afternoon", "evening", "new", "same", "time",
    "also", "another", "person", "everyone", "two", "all", "just", "not", "looking",
    "wanting", "calling", "trying", "hoping", "wondering", "interested", "here",
    "fine", "good", "well", "sorry", "um", "uh", "er", "so", "actually", "still",
    "sure", "that", "this", "what", "who", "week", "next", "after", "before",
    *WEEKDAYS,
})
_POSSESSIVE_PREFIXES = ("my ", "your ", "his ", "her ", "the ", "for ", "our ", "their ", "a ")
_ARTIFACT_WORDS = frozenset({
    "message", "text", "sms", "link", "email", "please", "thanks", "thank",
    "okay", "ok", "appointment", "booking", "book",
})


def is_valid_person_name(name: Optional[str]) -> bool:
    """Accept real-looking names; reject pronouns, relations and placeholders.

    >>> is_valid_person_name("Michael Brown")
    True
    >>> is_valid_person_name("my son")
    False
    """
    if not name:
        return False
    norm = normalize_text(name)
    if len(norm) < 2:
        return False
    if re.search(r"\d", norm) or not re.search(r"[a-z]", norm):
        return False
    if norm in _PRONOUNS or norm in _RELATIONS or norm in _PLACEHOLDERS:
        return False
    if norm in _NON_NAME_WORDS:
        return False
    if norm.startswith(_POSSESSIVE_PREFIXES):
        return False
    first = norm.split()[0]
    if " " in norm and (first in _NON_NAME_WORDS or first in _PRONOUNS):
        return False
    return True


def _title(word: str) -> str:
    return "-".join(
        "'".join(piece[:1].upper() + piece[1:].lower() for piece in part.split("'"))
        for part in word.split("-")
    )


def sanitize_name(raw: Optional[str]) -> Optional[str]:
    """Strip trailing transcription artifacts and title-case a captured name.

    Returns None when what is left is not a valid person name.
    """
    if not raw:
        return None
    words = re.sub(r"[^A-Za-z' \-]", " ", raw).split()
    while words and words[-1].lower() in _ARTIFACT_WORDS:
        words.pop()
    if not words:
        return None
    name = " ".join(_title(w) for w in words[:3])
    return name if is_valid_person_name(name) else None


_SPELLED = re.compile(r"\b((?:[a-z][\s.\-]+){1,}[a-z])\b")
_EXPLICIT_NAME = re.compile(
    r"\b(?:my name is|my name's|name is|name's|call me)\s+"
    r"([a-z][a-z'\-]*(?:\s+[a-z][a-z'\-]*){0,2})"
)
_INTRO_NAME = re.compile(
    r"\b(?:i'm|i am|this is|it's|it is)\s+([a-z][a-z'\-]*(?:\s+[a-z][a-z'\-]*){0,2})"
)
_NAME_STOP_WORDS = frozenset({
    "and", "but", "i", "i'm", "please", "thanks", "calling", "from", "here",
    "speaking", "so", "just", "um", "uh", "who", "looking", "wanting",
})


def _cut_at_stop_word(captured: str) -> str:
    kept: list[str] = []
    for word in captured.split():
        if word in _NAME_STOP_WORDS or word in _NON_NAME_WORDS:
            break
        kept.append(word)
    return " ".join(kept)


def extract_spelled_name(text: str) -> Optional[str]:
    """Join a letter-by-letter spelling ("S M I T H") into a name."""
    lower = text.lower()
    for match in _SPELLED.finditer(lower):
        letters = re.sub(r"[^a-z]", "", match.group(1))
        if len(letters) >= 2:
            return _title(letters)
    return None


def extract_name(text: str, permissive: bool = False) -> Optional[str]:
    """Pull a person's name out of an utterance.

    Only explicit "my name is" phrasing is trusted by default. With
    ``permissive`` (the caller was just asked for a name) looser intros and a
    bare short answer are accepted too, and a spelled-out name wins.
    """
    if not text:
        return None
    lower = text.lower().replace("’", "'")

    explicit = _EXPLICIT_NAME.search(lower)
    if explicit:
        name = sanitize_name(_cut_at_stop_word(explicit.group(1)))
        if name:
            return name
    if not permissive:
        return None

    spelled = extract_spelled_name(lower)
    if spelled and is_valid_person_name(spelled):
        return spelled
    intro = _INTRO_NAME.search(lower)
    if intro:
        name = sanitize_name(_cut_at_stop_word(intro.group(1)))
        if name:
            return name
    words = normalize_text(lower).replace("'", " ").split()
    if 1 <= len(words) <= 3:
        return sanitize_name(" ".join(words))
    return None


_TWO_FULL_NAMES = re.compile(
    r"\b([a-z][a-z'\-]+\s+[a-z][a-z'\-]+)\s+and\s+([a-z][a-z'\-]+\s+[a-z][a-z'\-]+)\b"
)
_TWO_NAMES = re.compile(
    r"\b([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+)?)\s+and\s+([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+)?)\b"
)
_TWO_FIRST_NAMES = re.compile(r"\b([a-z][a-z'\-]+)\s+and\s+([a-z][a-z'\-]+)\b")
_NAMES_PREAMBLE = re.compile(
    r"^(?:(?:our|the|their) names are|names are|it's|it is|that's|that is|"
    r"they are|they're|we are|we're|um|uh)\s+"
)


def extract_two_names(text: str) -> list[tuple[str, str]]:
    """Extract "Michael Brown and Scott Brown" style pairs.

    Returns ``[(caller_name, "self"), (other_name, "family")]`` only when both
    captured names are valid, otherwise an empty list.
    """
    norm = _NAMES_PREAMBLE.sub("", normalize_text(text))
    for pattern in (_TWO_FULL_NAMES, _TWO_NAMES, _TWO_FIRST_NAMES):
        match = pattern.search(norm)
        if not match:
            continue
        first, second = sanitize_name(match.group(1)), sanitize_name(match.group(2))
        if first and second:
            return [(first, "self"), (second, "family")]
    return []


_NAMED_PERSON = re.compile(
    r"\b(?:named|called|name is|name's)\s+([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+)?)"
)
_RELATION_THEN_NAME = re.compile(
    rf"\bmy (?:{_RELATION_WORDS})(?:'s name is| is)?\s+([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+)?)"
)


def extract_named_person(text: str) -> Optional[str]:
    """Name of a third person ("for my son Jack", "she's called Mia")."""
    lower = text.lower().replace("’", "'")
    for pattern in (_RELATION_THEN_NAME, _NAMED_PERSON):
        match = pattern.search(lower)
        if match:
            name = sanitize_name(_cut_at_stop_word(match.group(1)))
            if name:
                return name
    return None


# --- Email / phone ---

_EMAIL = re.compile(r"[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,}")
_SPOKEN_DIGITS: dict[str, str] = {
    "zero": "0", "oh": "0", "o": "0", "one": "1", "two": "2", "three": "3",
    "four": "4", "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}
_REPEATERS = {"double": 2, "triple": 3}


def extract_email(text: str) -> Optional[str]:
    """Recover an email address from spoken or spelled form."""
    lower = text.lower()
    spoken = re.sub(r"\s+at\s+", "@", lower)
    spoken = re.sub(r"\s+dot\s+", ".", spoken)
    spoken = re.sub(r"\s+(?:underscore)\s+", "_", spoken)
    spoken = re.sub(r"\s+(?:dash|hyphen)\s+", "-", spoken)
    spoken = re.sub(r"\b([a-z0-9])\s+(?=[a-z0-9]\b)", r"\1", spoken)
    match = _EMAIL.search(spoken)
    return match.group(0).rstrip(".") if match else None


def extract_phone(text: str) -> Optional[str]:
    """Recover a phone number from digits or spoken digits ("oh four one two")."""
    lower = text.lower()
    digits: list[str] = []
    repeat = 1
    for token in re.findall(r"\+|\d+|[a-z]+", lower):
        if token.isdigit():
            digits.append(token * repeat if len(token) == 1 else token)
            repeat = 1
        elif token in _REPEATERS:
            repeat = _REPEATERS[token]
        elif token in _SPOKEN_DIGITS:
            digits.append(_SPOKEN_DIGITS[token] * repeat)
            repeat = 1
        elif token == "+" and not digits:
            digits.append("+")
    candidate = normalize_phone("".join(digits))
    if 8 <= len(candidate.lstrip("+")) <= 15:
        return candidate
    return None


# --- Booking request shape ---


class BookingRequestKind(str, Enum):
    NONE = "none"
    SUBSTITUTE = "substitute"
    SECONDARY = "secondary"
    GROUP = "group"


_GROUP_PATTERNS = [
    re.compile(p) for p in (
        rf"\b(?:myself|me) and my (?:{_RELATION_WORDS})\b",
        rf"\bmy (?:{_RELATION_WORDS}) and (?:me|myself|i)\b",
        r"\bboth of us\b",
        r"\btwo of us\b",
        r"\bus both\b",
        r"\bfor (?:both|two|the two)\b",
        r"\bappointments? for (?:both|two|us)\b",
        r"\btwo appointments\b",
        r"\bbook (?:for )?(?:me|myself) and\b",
        r"\bfor (?:me|myself|us) and\b",
        rf"\b(?:me|myself) as well as my (?:{_RELATION_WORDS})\b",
    )
]
_SECONDARY_PATTERNS = [
    re.compile(p) for p in (
        r"\balso book\b",
        r"\bbook (?:one )?(?:for )?my \w+ (?:too|as well)\b",
        r"\banother appointment\b",
        r"\bone more appointment\b",
        r"\bsecond appointment\b",
        r"\bsame time (?:for|as) my\b",
    )
]
_SUBSTITUTE_PATTERNS = [
    re.compile(p) for p in (
        r"\bbook (?:it |one |an appointment )?for my\b",
        rf"\bfor my (?:{_RELATION_WORDS})\b",
        r"\bsome(?:one|body) else\b",
        r"\bfamily member\b",
        r"\banother person\b",
        r"\bon behalf of\b",
        r"\bit'?s for my\b",
    )
]
_RELATION = re.compile(rf"\bmy ({_RELATION_WORDS})\b")
_RELATION_ALIASES = {"kid": "child", "kids": "child", "mom": "mum", "baby": "child"}


def detect_booking_request(text: str, has_confirmed_booking: bool = False) -> BookingRequestKind:
    """Classify how many people an utterance asks to book, and in what order.

    Group phrasing wins. "Also book"/"another appointment" is a secondary
    booking after a confirmed one and a group request before it. Plain
    "for my son"/"someone else" is a substitute before any booking exists
    and a secondary booking afterwards.
    """
    norm = normalize_text(text)
    if not norm:
        return BookingRequestKind.NONE
    if any(p.search(norm) for p in _GROUP_PATTERNS):
        return BookingRequestKind.GROUP
    if any(p.search(norm) for p in _SECONDARY_PATTERNS):
        return BookingRequestKind.SECONDARY if has_confirmed_booking else BookingRequestKind.GROUP
    if any(p.search(norm) for p in _SUBSTITUTE_PATTERNS):
        return BookingRequestKind.SECONDARY if has_confirmed_booking else BookingRequestKind.SUBSTITUTE
    return BookingRequestKind.NONE


def extract_relation(text: str) -> Optional[str]:
    """First "my <relation>" mentioned, normalized ("kid" -> "child")."""
    match = _RELATION.search(normalize_text(text))
    if not match:
        return None
    return _RELATION_ALIASES.get(match.group(1), match.group(1))


def wants_same_time(text: str) -> bool:
    return bool(re.search(r"\bsame (?:time|slot)\b", normalize_text(text)))


# --- Goodbye / corrections / someone new ---

_GOODBYE_ALWAYS = [
    "goodbye", "good bye", "bye", "see ya", "see you", "thanks bye", "thank you bye",
    "that's all", "thats all", "that is all", "that's everything", "thats everything",
    "i'm done", "im done", "we're done", "were done", "we are done", "all done",
]
_GOODBYE_CLOSING = [
    "no", "nope", "nah", "that's it", "thats it", "that is it", "i'm good", "im good",
    "nothing else", "all set", "all good", "no thanks", "no thank you", "no more",
    "nothing more", "i'm fine", "im fine",
]


def _contains_phrase(norm: str, phrase: str) -> bool:
    return re.search(rf"(?<![a-z']){re.escape(phrase)}(?![a-z'])", norm) is not None


def is_goodbye(text: str, closing_question_pending: bool = False) -> bool:
    """Decide whether the caller is ending the call.

    "Bye"/"that's all" end the call anywhere. Short answers like "no" or
    "that's it" only count when the last question was "anything else?".
    """
    norm = normalize_text(text)
    if not norm:
        return False
    if any(_contains_phrase(norm, p) for p in _GOODBYE_ALWAYS):
        return True
    if not closing_question_pending:
        return False
    if len(norm.split()) > 6:
        return False
    return any(norm.startswith(p) and _contains_phrase(norm, p) for p in _GOODBYE_CLOSING)


_CORRECTION_PATTERNS = [
    re.compile(p) for p in (
        r"\bno,? (?:it'?s|its|it is) (?:actually )?for\b",
        r"\bactually (?:it'?s |its |it is )?for\b",
        r"\bnot for me\b",
        r"\bwrong person\b",
        r"\bdifferent person\b",
        r"\b(?:it'?s|its) actually\b",
        r"\bi meant\b",
        r"\bsorry,? (?:it'?s|its) for\b",
        rf"\b(?:it'?s|its|it is) for my (?:{_RELATION_WORDS})\b",
    )
]
_SOMEONE_NEW = re.compile(
    r"\b(?:someone new|somebody new|new patient|new person|different person|someone else|"
    r"somebody else|not me|none of (?:them|those)|neither|not on (?:the|your) list|"
    r"never been)\b"
)


def is_correction(text: str) -> bool:
    """Detect "no, it's actually for X" style re-targeting."""
    lower = text.lower().replace("’", "'")
    return any(p.search(lower) for p in _CORRECTION_PATTERNS)


def wants_someone_new(text: str) -> bool:
    return bool(_SOMEONE_NEW.search(text.lower().replace("’", "'")))


# --- Sentiment ---

_URGENT = re.compile(r"\b(?:urgent|urgently|asap|as soon as possible|really bad|severe|agony|can't walk)\b")
_POSITIVE = re.compile(r"\b(?:thanks|thank you|great|perfect|lovely|awesome|wonderful|brilliant)\b")
_NEGATIVE = re.compile(r"\b(?:frustrated|annoyed|angry|ridiculous|terrible|useless|hopeless|fed up)\b")


def detect_sentiment(text: str) -> Sentiment:
    lower = text.lower().replace("’", "'")
    if _URGENT.search(lower):
        return Sentiment.URGENT
    if _NEGATIVE.search(lower):
        return Sentiment.NEGATIVE
    if _POSITIVE.search(lower):
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL
