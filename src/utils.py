"""Shared utilities used across the receptionist orchestrator."""

import re
from datetime import datetime

_PUNCTUATION = re.compile(r"[.,!?;:\"]")
_WHITESPACE = re.compile(r"\s+")


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("0412 345 678")
        '0412345678'
        >>> normalize_phone("+61 (412) 345-678")
        '+61412345678'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def normalize_text(value: str) -> str:
    """Lowercase, drop sentence punctuation and collapse whitespace.

    Apostrophes are kept so "that's" and "thats" stay distinguishable
    for pattern lists that carry both spellings.

    Examples:
        >>> normalize_text("  Yes,   that's RIGHT! ")
        "yes that's right"
    """
    value = value.replace("’", "'").lower()
    value = _PUNCTUATION.sub(" ", value)
    return _WHITESPACE.sub(" ", value).strip()


def mask_phone(value: str) -> str:
    """Hide all but the last three digits of a phone number for logging."""
    digits = normalize_phone(value)
    if len(digits) <= 3:
        return digits
    return "*" * (len(digits) - 3) + digits[-3:]


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def speak_time(moment: datetime) -> str:
    """Clock time as a receptionist would say it: "9am", "2:30pm"."""
    hour = moment.hour % 12 or 12
    meridiem = "am" if moment.hour < 12 else "pm"
    if moment.minute == 0:
        return f"{hour}{meridiem}"
    return f"{hour}:{moment.minute:02d}{meridiem}"


def speak_day(moment: datetime, now: datetime) -> str:
    """Relative day for speech: "today", "tomorrow", "on Tuesday", "on Tuesday the 21st"."""
    delta = (moment.date() - now.date()).days
    if delta == 0:
        return "today"
    if delta == 1:
        return "tomorrow"
    if 1 < delta < 7:
        return f"on {moment.strftime('%A')}"
    return f"on {moment.strftime('%A')} the {_ordinal(moment.day)}"
