"""Tests for the pre-LLM safety gate and post-LLM reply guards."""

import pytest

from src.conversation.guardrails import (
    ClinicalClaimGuardrail,
    PersonaGuardrail,
    ReplyGuardPipeline,
    SafetyCategory,
    SafetyGate,
    strip_formatting,
)
from src.prompts.prompt_templates import EMERGENCY_REPLY
from src.schemas.intent_schema import Intent


class TestSafetyGate:
    def setup_method(self):
        self.gate = SafetyGate()

    def test_emergency_forces_transfer(self):
        result = self.gate.inspect("I've got chest pain and I can't breathe properly")
        assert result.overridden is True
        assert result.category == SafetyCategory.EMERGENCY
        assert result.forced_intent == Intent.EMERGENCY
        assert result.forced_reply == EMERGENCY_REPLY
        assert result.transfer is True

    def test_explicit_human_request(self):
        result = self.gate.inspect("Can I speak to a real person please")
        assert result.category == SafetyCategory.EXPLICIT_HUMAN
        assert result.forced_intent == Intent.ASK_HUMAN
        assert result.transfer is True

    def test_profanity_transfers(self):
        result = self.gate.inspect("this is bullshit")
        assert result.category == SafetyCategory.PROFANITY
        assert result.transfer is True

    def test_medical_advice_refused_without_transfer(self):
        result = self.gate.inspect("Should I take ibuprofen for my knee?")
        assert result.category == SafetyCategory.MEDICAL_ADVICE
        assert result.transfer is False
        assert result.forced_reply

    def test_off_limits_topic(self):
        result = self.gate.inspect("what do you think about politics")
        assert result.category == SafetyCategory.OFF_LIMITS
        assert result.forced_intent == Intent.IRRELEVANT

    def test_emergency_wins_over_profanity(self):
        result = self.gate.inspect("damn I can't breathe")
        assert result.category == SafetyCategory.EMERGENCY

    @pytest.mark.parametrize("text", ["", "   ", "I'd like to book for tomorrow", "how much is it"])
    def test_ordinary_utterances_pass(self, text):
        assert self.gate.inspect(text).overridden is False


class TestClinicalClaimGuardrail:
    def setup_method(self):
        self.guard = ClinicalClaimGuardrail()

    def test_diagnosis_blocked(self):
        result = self.guard.check_response("It sounds like you have a sprain.")
        assert result.passed is False
        assert result.violation_type == "clinical_claim"
        assert result.severity == "block"

    def test_medication_blocked(self):
        assert self.guard.check_response("Try some Panadol before you come in").passed is False

    def test_booking_reply_passes(self):
        assert self.guard.check_response("I can book you in tomorrow at 9am.").passed is True


class TestPersonaGuardrail:
    def setup_method(self):
        self.guard = PersonaGuardrail()

    def test_ai_disclosure_blocked(self):
        result = self.guard.check_persona("As an AI, I can't see the calendar")
        assert result.passed is False
        assert result.violation_type == "persona_break"

    def test_markdown_flagged(self):
        result = self.guard.check_formatting("**Hours**: 7am to 7pm")
        assert result.passed is False
        assert result.severity == "warning"

    def test_plain_text_passes(self):
        assert self.guard.check_formatting("We're open 7am to 7pm.").passed is True


class TestReplyGuardPipeline:
    def setup_method(self):
        self.pipeline = ReplyGuardPipeline()

    def test_blocked_reply_is_discarded(self):
        review = self.pipeline.review("Sounds like you have a fracture, take paracetamol.")
        assert review.text is None
        assert any(v.violation_type == "clinical_claim" for v in review.violations)

    def test_formatting_is_stripped(self):
        review = self.pipeline.review("**Sure**, we open at 7am")
        assert review.text == "Sure, we open at 7am"
        assert review.violations

    def test_clean_reply_untouched(self):
        review = self.pipeline.review("We open at 7am on weekdays.")
        assert review.text == "We open at 7am on weekdays."
        assert review.violations == []

    def test_strip_formatting_removes_bullets(self):
        assert strip_formatting("- one\n- two") == "one two"
