"""Tests for handoff trigger detection."""

import pytest

from src.conversation.handoff import HandoffDetector, HandoffSignals, HandoffTrigger
from src.prompts.prompt_templates import CLARIFY_REPLY, HANDOFF_REPLIES
from src.schemas.intent_schema import Intent


@pytest.fixture
def detector():
    return HandoffDetector(low_confidence_threshold=0.5, no_match_threshold=2)


class TestTriggers:
    def test_nothing_fires_on_a_normal_turn(self, detector):
        decision = detector.evaluate(HandoffSignals(
            utterance="can I book for tomorrow", intent=Intent.BOOKING_STANDARD, confidence=0.9,
        ))
        assert not decision.should_handoff
        assert decision.trigger is None

    @pytest.mark.parametrize("utterance", [
        "can I speak to a real person",
        "just put me through please",
        "I want to talk to the receptionist",
    ])
    def test_explicit_request(self, detector, utterance):
        decision = detector.evaluate(HandoffSignals(utterance=utterance))
        assert decision.trigger == HandoffTrigger.EXPLICIT_REQUEST

    def test_ask_human_intent_counts_as_explicit(self, detector):
        decision = detector.evaluate(HandoffSignals(utterance="reception", intent=Intent.ASK_HUMAN))
        assert decision.trigger == HandoffTrigger.EXPLICIT_REQUEST

    def test_profanity(self, detector):
        decision = detector.evaluate(HandoffSignals(utterance="this is bullshit"))
        assert decision.trigger == HandoffTrigger.PROFANITY

    def test_backend_error(self, detector):
        decision = detector.evaluate(HandoffSignals(backend_error=True))
        assert decision.trigger == HandoffTrigger.BACKEND_ERROR

    def test_out_of_scope(self, detector):
        decision = detector.evaluate(HandoffSignals(out_of_scope=True))
        assert decision.trigger == HandoffTrigger.OUT_OF_SCOPE

    def test_out_of_scope_waits_for_pending_answer(self, detector):
        decision = detector.evaluate(HandoffSignals(out_of_scope=True, question_pending=True))
        assert not decision.should_handoff

    def test_low_confidence(self, detector):
        decision = detector.evaluate(HandoffSignals(
            utterance="mm", intent=Intent.UNKNOWN, confidence=0.3,
        ))
        assert decision.trigger == HandoffTrigger.LOW_CONFIDENCE

    def test_low_confidence_ignored_while_answering(self, detector):
        decision = detector.evaluate(HandoffSignals(
            utterance="mm", intent=Intent.UNKNOWN, confidence=0.3, question_pending=True,
        ))
        assert not decision.should_handoff

    def test_no_match_loop(self, detector):
        decision = detector.evaluate(HandoffSignals(no_match_count=2))
        assert decision.trigger == HandoffTrigger.FRUSTRATION_LOOP

    def test_two_clarifications_in_a_row(self, detector):
        decision = detector.evaluate(HandoffSignals(
            recent_assistant_texts=[CLARIFY_REPLY, CLARIFY_REPLY],
        ))
        assert decision.trigger == HandoffTrigger.FRUSTRATION_LOOP

    def test_repeated_hello(self, detector):
        decision = detector.evaluate(HandoffSignals(
            utterance="hello?", recent_user_texts=["hello?", "hello are you there"],
        ))
        assert decision.trigger == HandoffTrigger.REPEATED_HELLO

    def test_greeting_with_a_request_is_not_a_hello_loop(self, detector):
        decision = detector.evaluate(HandoffSignals(
            utterance="hi, I'd like to book an appointment for tomorrow please",
            recent_user_texts=["hello?", "hi, I'd like to book an appointment for tomorrow please"],
        ))
        assert not decision.should_handoff


class TestPriority:
    def test_explicit_beats_profanity(self, detector):
        decision = detector.evaluate(HandoffSignals(utterance="damn it, put me through"))
        assert decision.trigger == HandoffTrigger.EXPLICIT_REQUEST

    def test_backend_error_beats_no_match_loop(self, detector):
        decision = detector.evaluate(HandoffSignals(backend_error=True, no_match_count=3))
        assert decision.trigger == HandoffTrigger.BACKEND_ERROR

    def test_identity_mismatch_is_not_a_trigger(self, detector):
        decision = detector.evaluate(HandoffSignals(
            utterance="no, that's not me", intent=Intent.NEGATION, confidence=0.9,
        ))
        assert not decision.should_handoff

    def test_every_trigger_has_a_reply(self):
        assert set(HANDOFF_REPLIES) == {t.value for t in HandoffTrigger}
