"""
Intent classification over a closed taxonomy.

The LLM gets the first attempt. Its answer is accepted only when it parses
into a known intent with confidence above the configured threshold; any
outage, timeout, malformed JSON or low-confidence answer falls through to an
ordered keyword ruleset that always returns a result.

Usage:
    classifier = IntentClassifier(llm=OpenAIProvider())
    result = await classifier.classify("Can I book for tomorrow morning?")
    result.intent            # Intent.BOOKING_STANDARD
    result.entities.time_preference  # "tomorrow morning"
"""

import asyncio
import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from src.config import settings
from src.conversation.extractors import (
    detect_sentiment,
    extract_day,
    extract_email,
    extract_name,
    extract_phone,
    extract_spelled_name,
    extract_time_of_day,
    extract_time_preference,
    is_valid_person_name,
    time_specificity,
)
from src.prompts.system_prompts import INTENT_CLASSIFIER_PROMPT
from src.schemas.intent_schema import (
    Entities,
    Intent,
    IntentResult,
    IntentSource,
    Sentiment,
)
from src.tools.llm import LLMProvider, ProviderUnavailableError

logger = logging.getLogger(__name__)

HISTORY_TURNS_FOR_CONTEXT = 4


def _rx(*patterns: str) -> re.Pattern[str]:
    return re.compile("|".join(patterns))


# Ordered keyword rules: first match wins.
_KEYWORD_RULES: list[tuple[Intent, float, re.Pattern[str]]] = [
    (Intent.EMERGENCY, 0.95, _rx(
        r"\bemergency\b", r"\bchest pain", r"\bcan'?t breathe\b", r"\bheart attack\b",
        r"\bambulance\b", r"\bdying\b", r"\b000\b", r"\b911\b",
    )),
    (Intent.ASK_HUMAN, 0.85, _rx(
        r"\bspeak to\b", r"\btalk to\b", r"\breal person\b", r"\boperator\b",
        r"\bhuman\b", r"\breceptionist\b",
    )),
    (Intent.FAQ_PRICES, 0.8, _rx(
        r"\bhow much\b", r"\bcosts?\b", r"\bprices?\b", r"\bfees?\b", r"\bcharge\b",
    )),
    (Intent.FAQ_HOURS, 0.8, _rx(
        r"\bopening hours\b", r"\bhours\b", r"\bwhat time do you (?:open|close)\b",
        r"\bare you open\b", r"\bwhen are you\b", r"\bwhen do you (?:open|close)\b",
    )),
    (Intent.FAQ_LOCATION, 0.8, _rx(
        r"\bwhere are you\b", r"\baddress\b", r"\bdirections?\b", r"\bparking\b",
        r"\blocated\b", r"\bhow do i get there\b",
    )),
    (Intent.FAQ_FIRST_VISIT, 0.8, _rx(
        r"\bwhat to expect\b", r"\bwhat happens (?:at|in|on|during)\b",
        r"\bwhat (?:should|do) i bring\b", r"\bfirst (?:visit|appointment) (?:like|involve)\b",
    )),
    (Intent.FAQ_INSURANCE, 0.8, _rx(
        r"\binsurance\b", r"\bmedicare\b", r"\bhealth fund\b", r"\bhicaps\b",
        r"\brebate\b", r"\bprivate health\b", r"\bclaim\b",
    )),
    (Intent.FAQ_SERVICES, 0.8, _rx(
        r"\bwhat services\b", r"\bdo you (?:offer|treat)\b", r"\bwhat do you offer\b",
    )),
    (Intent.CANCEL_APPOINTMENT, 0.85, _rx(r"\bcancel\w*\b")),
    (Intent.CHANGE_APPOINTMENT, 0.8, _rx(
        r"\breschedul\w*\b", r"\bchange my (?:appointment|booking)\b",
        r"\bmove my (?:appointment|booking)\b", r"\bpostpone\b",
    )),
    (Intent.BOOKING_STANDARD, 0.75, _rx(
        r"\bbook\w*\b", r"\bappointment\b", r"\bschedule\b", r"\bcome in\b",
        r"\bsee (?:a|the) (?:physio|doctor|practitioner)\b", r"\bget in\b",
    )),
    (Intent.CONFIRMATION, 0.9, _rx(
        r"^(?:yes|yeah|yep|yup|sure|okay|ok|that works|sounds good|perfect|correct)\b",
    )),
    (Intent.NEGATION, 0.9, _rx(r"^(?:no|nope|nah|not|different|other|neither)\b")),
    (Intent.GREETING, 0.9, _rx(
        r"^(?:hi|hello|hey|good morning|good afternoon|g'?day)\b",
    )),
    (Intent.CLARIFICATION, 0.7, _rx(
        r"\brepeat\b", r"\bdidn'?t catch\b", r"\bpardon\b", r"\bsay that again\b",
        r"^what\?", r"\bsorry\?",
    )),
]
_NEW_PATIENT = re.compile(r"\bnew patient\b|\bfirst (?:time|visit|appointment)\b|\bnever been\b")
_EXISTING_PATIENT = re.compile(
    r"\b(?:been (?:there|in|here) before|existing patient|follow.?up|usual physio)\b"
)
_JSON_OBJECT = re.compile(r"\{.*\}", re.S)

DEFAULT_CONFIDENCE = 0.6


def extract_entities(utterance: str) -> Entities:
    """Deterministic entity extraction shared by both classification paths."""
    lower = utterance.lower()
    existing: Optional[bool] = None
    if _NEW_PATIENT.search(lower):
        existing = False
    elif _EXISTING_PATIENT.search(lower):
        existing = True
    return Entities(
        name=extract_name(utterance) or _spelled_name(utterance),
        email=extract_email(utterance),
        phone=extract_phone(utterance),
        preferred_day=extract_day(utterance),
        preferred_time=extract_time_of_day(utterance),
        time_preference=extract_time_preference(utterance),
        existing_patient=existing,
        sentiment=detect_sentiment(utterance),
    )


def _spelled_name(utterance: str) -> Optional[str]:
    spelled = extract_spelled_name(utterance)
    return spelled if spelled and is_valid_person_name(spelled) else None


def classify_with_keywords(utterance: str) -> IntentResult:
    """Ordered keyword ruleset. Deterministic and total."""
    text = utterance.lower().replace("’", "'").strip()
    entities = extract_entities(utterance)

    for intent, confidence, pattern in _KEYWORD_RULES:
        if not pattern.search(text):
            continue
        if intent == Intent.BOOKING_STANDARD and _NEW_PATIENT.search(text):
            intent = Intent.BOOKING_NEW_PATIENT
        if intent == Intent.EMERGENCY:
            entities.sentiment = Sentiment.URGENT
        return IntentResult(
            intent=intent, confidence=confidence, entities=entities, source=IntentSource.KEYWORDS
        )

    return IntentResult(
        intent=Intent.UNKNOWN,
        confidence=DEFAULT_CONFIDENCE,
        entities=entities,
        source=IntentSource.KEYWORDS,
    )


def parse_llm_response(text: str) -> Optional[IntentResult]:
    """Parse the first JSON object in a completion, or None if unusable."""
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        data, _ = json.JSONDecoder().raw_decode(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    try:
        intent = Intent(str(data.get("intent", "")).strip().lower())
        confidence = float(data.get("confidence"))
    except (ValueError, TypeError):
        return None
    if not 0.0 <= confidence <= 1.0:
        return None

    raw_entities: Any = data.get("entities") or {}
    try:
        entities = Entities.model_validate(
            {k: v for k, v in raw_entities.items() if v is not None}
            if isinstance(raw_entities, dict) else {}
        )
    except ValidationError:
        entities = Entities()
    return IntentResult(
        intent=intent, confidence=confidence, entities=entities, source=IntentSource.LLM
    )


def _merge_entities(primary: Entities, fallback: Entities) -> Entities:
    """Fill gaps in the LLM entities and keep the more specific time preference."""
    merged = primary.model_copy()
    for name in Entities.model_fields:
        if getattr(merged, name) is None and getattr(fallback, name) is not None:
            setattr(merged, name, getattr(fallback, name))
    if time_specificity(fallback.time_preference) > time_specificity(primary.time_preference):
        merged.time_preference = fallback.time_preference
    if merged.name and not is_valid_person_name(merged.name):
        merged.name = fallback.name
    return merged


class IntentClassifier:
    """LLM-first intent classifier with a deterministic keyword fallback."""

    def __init__(
        self,
        llm: Optional[LLMProvider] = None,
        confidence_threshold: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._llm = llm
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else settings.conversation.classifier_confidence_threshold
        )
        self.timeout = timeout or settings.timeouts.llm_sec

    async def classify(
        self, utterance: str, history: Optional[list[dict[str, str]]] = None
    ) -> IntentResult:
        """Classify one utterance. Never raises."""
        if self._llm is not None:
            result = await self._classify_with_llm(utterance, history or [])
            if result is not None:
                return result
        return classify_with_keywords(utterance)

    async def _classify_with_llm(
        self, utterance: str, history: list[dict[str, str]]
    ) -> Optional[IntentResult]:
        messages = [{"role": "system", "content": INTENT_CLASSIFIER_PROMPT}]
        messages.extend(history[-HISTORY_TURNS_FOR_CONTEXT:])
        messages.append({"role": "user", "content": utterance})

        try:
            response = await asyncio.wait_for(
                self._llm.complete(  # type: ignore[union-attr]
                    messages,
                    temperature=settings.model.classifier_temperature,
                    max_tokens=settings.model.classifier_max_tokens,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Intent LLM timed out after %.1fs, using keyword fallback", self.timeout)
            return None
        except ProviderUnavailableError as e:
            logger.warning("Intent LLM unavailable (%s), using keyword fallback", e)
            return None
        except Exception as e:
            logger.warning("Intent LLM call failed (%s: %s), using keyword fallback",
                           type(e).__name__, e)
            return None

        parsed = parse_llm_response(response.text)
        if parsed is None:
            logger.warning("Unparsable intent completion, using keyword fallback")
            return None
        if parsed.confidence <= self.confidence_threshold:
            logger.debug(
                "LLM confidence %.2f at or below threshold for %s, using keyword fallback",
                parsed.confidence, parsed.intent.value,
            )
            return None

        parsed.entities = _merge_entities(parsed.entities, extract_entities(utterance))
        return parsed
