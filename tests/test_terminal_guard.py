"""Tests for the terminal lock and success-claim checks on outgoing replies."""

import pytest

from src.conversation.state_machine import BookingState
from src.conversation.terminal_guard import TerminalGuard, claims_success, prompts_booking
from src.prompts.prompt_templates import (
    ANYTHING_ELSE,
    BOOKING_FAILED_REPLY,
    NOT_YET_BOOKED_REPLY,
)
from tests.conftest import make_ready_session


@pytest.fixture
def guard():
    return TerminalGuard()


def booked_session():
    session = make_ready_session()
    booking = session.booking
    booking.appointment_created = True
    booking.primary_target.appointment_id = "APT-1"
    booking.state = BookingState.CONFIRMED
    session.terminal_lock = True
    return session


class TestPatterns:
    @pytest.mark.parametrize("text", [
        "Would you like to book in?",
        "Shall I book that in?",
        "Which one suits you best?",
        "When would you like to come in?",
    ])
    def test_booking_prompts(self, text):
        assert prompts_booking(text)

    @pytest.mark.parametrize("text", [
        "You're all booked in.",
        "Great, I've booked that for you.",
        "Your appointment is confirmed.",
    ])
    def test_success_claims(self, text):
        assert claims_success(text)

    def test_plain_answer_is_neither(self):
        text = "We're open 8am to 6pm on weekdays."
        assert not prompts_booking(text)
        assert not claims_success(text)


class TestSuccessClaims:
    def test_unbacked_claim_replaced(self, guard):
        session = make_ready_session()
        assert guard.verify_success("You're all booked in!", session) == NOT_YET_BOOKED_REPLY

    def test_claim_after_failure_becomes_failure_reply(self, guard):
        session = make_ready_session()
        session.booking.state = BookingState.FAILED
        assert guard.verify_success("You're booked in.", session) == BOOKING_FAILED_REPLY

    def test_created_without_id_is_not_success(self, guard):
        session = make_ready_session()
        session.booking.appointment_created = True
        assert guard.verify_success("You're all booked in.", session) == NOT_YET_BOOKED_REPLY

    def test_backed_claim_kept(self, guard):
        session = booked_session()
        reply = "You're all booked in. Sam Taylor at 8am tomorrow."
        assert guard.verify_success(reply, session) == reply


class TestTerminalLock:
    def test_no_change_before_lock(self, guard):
        session = make_ready_session()
        assert guard.apply("Shall I book that in?", session) == "Shall I book that in?"

    def test_booking_prompt_replaced_after_lock(self, guard):
        reply = guard.apply("Would you like to book another time?", booked_session())
        assert reply.startswith("You're already booked in for 8am tomorrow")

    def test_faq_keeps_answer_and_drops_offer(self, guard):
        reply = guard.apply(
            "We offer physiotherapy and massage. Would you like to book in?",
            booked_session(),
            is_faq=True,
        )
        assert reply == f"We offer physiotherapy and massage. {ANYTHING_ELSE}"
