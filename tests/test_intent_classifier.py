"""Tests for LLM-first intent classification and its keyword fallback."""

import asyncio
import json

import pytest

from src.conversation.intent_classifier import (
    DEFAULT_CONFIDENCE,
    IntentClassifier,
    classify_with_keywords,
    parse_llm_response,
)
from src.schemas.intent_schema import Intent, IntentSource, Sentiment
from src.tools.llm import LLMResponse, ScriptedLLMProvider


def llm_json(intent: str, confidence: float, **entities) -> str:
    return json.dumps({"intent": intent, "confidence": confidence, "entities": entities})


class SlowProvider:
    async def complete(self, messages, temperature, max_tokens):
        await asyncio.sleep(1)
        return LLMResponse(text=llm_json("faq_hours", 0.99))


class TestKeywordClassification:
    @pytest.mark.parametrize("text,intent", [
        ("I'd like to book an appointment", Intent.BOOKING_STANDARD),
        ("I'm a new patient, can I book in?", Intent.BOOKING_NEW_PATIENT),
        ("How much is a first appointment?", Intent.FAQ_PRICES),
        ("What are your opening hours?", Intent.FAQ_HOURS),
        ("Is there parking nearby?", Intent.FAQ_LOCATION),
        ("Do you take private health insurance?", Intent.FAQ_INSURANCE),
        ("I need to cancel my appointment", Intent.CANCEL_APPOINTMENT),
        ("Can I reschedule?", Intent.CHANGE_APPOINTMENT),
        ("yes please", Intent.CONFIRMATION),
        ("no thanks", Intent.NEGATION),
        ("hello there", Intent.GREETING),
        ("sorry can you repeat that", Intent.CLARIFICATION),
    ])
    def test_ordered_rules(self, text, intent):
        result = classify_with_keywords(text)
        assert result.intent == intent
        assert result.source == IntentSource.KEYWORDS

    def test_unknown_fallback(self):
        result = classify_with_keywords("the weather is nice")
        assert result.intent == Intent.UNKNOWN
        assert result.confidence == DEFAULT_CONFIDENCE

    def test_entities_extracted(self):
        result = classify_with_keywords("Can I book for tomorrow morning? My name is Sam Taylor")
        assert result.entities.time_preference == "tomorrow morning"
        assert result.entities.name == "Sam Taylor"
        assert result.entities.preferred_day == "tomorrow"

    def test_new_patient_flag(self):
        result = classify_with_keywords("first time, I'd like an appointment")
        assert result.entities.existing_patient is False

    def test_emergency_is_urgent(self):
        result = classify_with_keywords("it's an emergency")
        assert result.intent == Intent.EMERGENCY
        assert result.entities.sentiment == Sentiment.URGENT


class TestParseLLMResponse:
    def test_json_inside_prose(self):
        parsed = parse_llm_response('Sure! {"intent": "faq_hours", "confidence": 0.92} hope that helps')
        assert parsed is not None
        assert parsed.intent == Intent.FAQ_HOURS
        assert parsed.source == IntentSource.LLM

    @pytest.mark.parametrize("text", [
        "no json here",
        '{"intent": "book_a_thing", "confidence": 0.9}',
        '{"intent": "faq_hours", "confidence": 1.5}',
        '{"intent": "faq_hours"}',
        '{"intent": "faq_hours", "confidence": 0.9',
    ])
    def test_unusable_completions(self, text):
        assert parse_llm_response(text) is None

    def test_bad_entities_are_dropped(self):
        parsed = parse_llm_response('{"intent": "greeting", "confidence": 0.9, "entities": "oops"}')
        assert parsed is not None
        assert parsed.entities.name is None


class TestIntentClassifier:
    @pytest.mark.asyncio
    async def test_confident_llm_answer_wins(self):
        llm = ScriptedLLMProvider(replies=[llm_json("faq_location", 0.9)])
        result = await IntentClassifier(llm=llm).classify("where do I park")
        assert result.intent == Intent.FAQ_LOCATION
        assert result.source == IntentSource.LLM
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_falls_back(self):
        llm = ScriptedLLMProvider(replies=[llm_json("faq_location", 0.4)])
        result = await IntentClassifier(llm=llm).classify("I'd like to book")
        assert result.intent == Intent.BOOKING_STANDARD
        assert result.source == IntentSource.KEYWORDS

    @pytest.mark.asyncio
    async def test_outage_falls_back(self):
        result = await IntentClassifier(llm=ScriptedLLMProvider()).classify("what are your hours")
        assert result.intent == Intent.FAQ_HOURS
        assert result.source == IntentSource.KEYWORDS

    @pytest.mark.asyncio
    async def test_unexpected_exception_falls_back(self):
        llm = ScriptedLLMProvider(replies=[RuntimeError("boom")])
        result = await IntentClassifier(llm=llm).classify("hello")
        assert result.intent == Intent.GREETING

    @pytest.mark.asyncio
    async def test_malformed_json_falls_back(self):
        llm = ScriptedLLMProvider(replies=["I think they want to book"])
        result = await IntentClassifier(llm=llm).classify("book me in")
        assert result.source == IntentSource.KEYWORDS

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        classifier = IntentClassifier(llm=SlowProvider(), timeout=0.01)
        result = await classifier.classify("I'd like an appointment")
        assert result.intent == Intent.BOOKING_STANDARD
        assert result.source == IntentSource.KEYWORDS

    @pytest.mark.asyncio
    async def test_more_specific_time_preference_kept(self):
        llm = ScriptedLLMProvider(replies=[
            llm_json("booking_standard", 0.9, time_preference="tomorrow", name="my son"),
        ])
        result = await IntentClassifier(llm=llm).classify("can I come tomorrow at 3pm")
        assert result.entities.time_preference == "tomorrow 3:00pm"
        assert result.entities.name is None

    @pytest.mark.asyncio
    async def test_no_llm_uses_keywords(self):
        result = await IntentClassifier().classify("")
        assert result.intent == Intent.UNKNOWN

    @pytest.mark.asyncio
    async def test_history_is_sent_to_the_llm(self):
        llm = ScriptedLLMProvider(replies=[llm_json("confirmation", 0.95)])
        history = [{"role": "assistant", "content": "Shall I book that?"}]
        await IntentClassifier(llm=llm).classify("yes", history)
        assert llm.calls[0][1] == history[0]
        assert llm.calls[0][-1] == {"role": "user", "content": "yes"}
