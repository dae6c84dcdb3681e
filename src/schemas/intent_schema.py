"""Closed intent taxonomy and classification result models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Intent(str, Enum):
    """Every intent the classifier may return. Adding one requires a router handler."""
    BOOKING_STANDARD = "booking_standard"
    BOOKING_NEW_PATIENT = "booking_new_patient"
    CHANGE_APPOINTMENT = "change_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    FAQ_PRICES = "faq_prices"
    FAQ_HOURS = "faq_hours"
    FAQ_LOCATION = "faq_location"
    FAQ_FIRST_VISIT = "faq_first_visit"
    FAQ_SERVICES = "faq_services"
    FAQ_INSURANCE = "faq_insurance"
    ASK_HUMAN = "ask_human"
    GREETING = "greeting"
    CONFIRMATION = "confirmation"
    NEGATION = "negation"
    CLARIFICATION = "clarification"
    IRRELEVANT = "irrelevant"
    EMERGENCY = "emergency"
    UNKNOWN = "unknown"

    @property
    def is_booking(self) -> bool:
        return self in BOOKING_INTENTS

    @property
    def is_faq(self) -> bool:
        return self in FAQ_INTENTS


BOOKING_INTENTS: frozenset[Intent] = frozenset({
    Intent.BOOKING_STANDARD,
    Intent.BOOKING_NEW_PATIENT,
})

FAQ_INTENTS: frozenset[Intent] = frozenset({
    Intent.FAQ_PRICES,
    Intent.FAQ_HOURS,
    Intent.FAQ_LOCATION,
    Intent.FAQ_FIRST_VISIT,
    Intent.FAQ_SERVICES,
    Intent.FAQ_INSURANCE,
})


class IntentSource(str, Enum):
    """Which path produced a classification."""
    LLM = "llm"
    KEYWORDS = "keywords"
    SAFETY = "safety"


class Sentiment(str, Enum):
    URGENT = "urgent"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class Entities(BaseModel):
    """Structured values pulled from one utterance."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    preferred_day: Optional[str] = None
    preferred_time: Optional[str] = None
    time_preference: Optional[str] = None
    existing_patient: Optional[bool] = None
    sentiment: Sentiment = Sentiment.NEUTRAL


class IntentResult(BaseModel):
    """Outcome of classifying one utterance."""
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    entities: Entities = Field(default_factory=Entities)
    source: IntentSource = IntentSource.KEYWORDS
