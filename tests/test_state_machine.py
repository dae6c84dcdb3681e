"""Tests for the booking state machine."""

import pytest

from src.conversation.state_machine import (
    BookingState,
    BookingStateMachine,
    BookingTrigger,
    InvalidTransitionError,
    LockPreconditions,
)


def ready_to_lock(**overrides) -> LockPreconditions:
    values = dict(
        identity_confirmed=True,
        slot_selected=True,
        caller_confirmed=True,
        now=1000.0,
        lock_until=None,
    )
    values.update(overrides)
    return LockPreconditions(**values)


@pytest.fixture
def machine():
    return BookingStateMachine()


@pytest.fixture
def ready_machine():
    m = BookingStateMachine()
    m.transition(BookingTrigger.DETAILS_COMPLETE)
    return m


class TestInitialState:
    def test_starts_collecting(self, machine):
        assert machine.current_state == BookingState.COLLECTING

    def test_initial_history_has_one_entry(self, machine):
        assert len(machine.get_history()) == 1

    def test_initial_trace(self, machine):
        assert machine.get_state_trace() == ["collecting"]

    def test_not_terminal_at_start(self, machine):
        assert not machine.is_terminal()


class TestCollection:
    def test_details_complete_goes_ready(self, machine):
        assert machine.transition(BookingTrigger.DETAILS_COMPLETE) == BookingState.READY

    def test_changed_details_return_to_collecting(self, ready_machine):
        assert ready_machine.transition(BookingTrigger.DETAILS_CHANGED) == BookingState.COLLECTING

    def test_self_loop_not_added_to_trace(self, machine):
        machine.transition(BookingTrigger.DETAILS_CHANGED)
        assert machine.get_state_trace() == ["collecting"]
        assert len(machine.get_history()) == 2

    def test_cannot_lock_from_collecting(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.transition(BookingTrigger.LOCK_ACQUIRED, ready_to_lock())


class TestLockGate:
    def test_lock_with_all_preconditions(self, ready_machine):
        state = ready_machine.transition(BookingTrigger.LOCK_ACQUIRED, ready_to_lock())
        assert state == BookingState.LOCKED

    def test_lock_without_preconditions_rejected(self, ready_machine):
        with pytest.raises(InvalidTransitionError):
            ready_machine.transition(BookingTrigger.LOCK_ACQUIRED)

    @pytest.mark.parametrize("missing", ["identity_confirmed", "slot_selected", "caller_confirmed"])
    def test_each_precondition_required(self, ready_machine, missing):
        pre = ready_to_lock(**{missing: False})
        assert not ready_machine.can_transition(BookingTrigger.LOCK_ACQUIRED, pre)
        with pytest.raises(InvalidTransitionError):
            ready_machine.transition(BookingTrigger.LOCK_ACQUIRED, pre)
        assert ready_machine.current_state == BookingState.READY

    def test_live_lock_blocks(self, ready_machine):
        pre = ready_to_lock(now=1000.0, lock_until=1005.0)
        assert not pre.lock_expired
        assert not ready_machine.can_transition(BookingTrigger.LOCK_ACQUIRED, pre)

    def test_expired_lock_allows(self, ready_machine):
        pre = ready_to_lock(now=1010.0, lock_until=1005.0)
        assert pre.lock_expired
        assert ready_machine.can_transition(BookingTrigger.LOCK_ACQUIRED, pre)

    def test_error_lists_valid_triggers(self, machine):
        with pytest.raises(InvalidTransitionError, match="details_complete"):
            machine.transition(BookingTrigger.CREATE_SUCCEEDED)


class TestExecution:
    def test_happy_path_trace(self, ready_machine):
        ready_machine.transition(BookingTrigger.LOCK_ACQUIRED, ready_to_lock())
        ready_machine.transition(BookingTrigger.CREATE_STARTED)
        ready_machine.transition(BookingTrigger.CREATE_SUCCEEDED)

        assert ready_machine.is_terminal()
        assert ready_machine.get_state_trace() == [
            "collecting", "ready", "locked", "executing", "confirmed",
        ]

    def test_confirmed_accepts_nothing(self, ready_machine):
        ready_machine.transition(BookingTrigger.LOCK_ACQUIRED, ready_to_lock())
        ready_machine.transition(BookingTrigger.CREATE_STARTED)
        ready_machine.transition(BookingTrigger.CREATE_SUCCEEDED)
        assert ready_machine.get_valid_triggers() == []
        with pytest.raises(InvalidTransitionError):
            ready_machine.transition(BookingTrigger.DETAILS_CHANGED)

    def test_failure_then_retry(self, ready_machine):
        ready_machine.transition(BookingTrigger.LOCK_ACQUIRED, ready_to_lock())
        ready_machine.transition(BookingTrigger.CREATE_STARTED)
        assert ready_machine.transition(BookingTrigger.CREATE_FAILED) == BookingState.FAILED
        assert ready_machine.transition(BookingTrigger.RETRY_REQUESTED) == BookingState.READY

    def test_failed_booking_can_change_details(self, ready_machine):
        ready_machine.transition(BookingTrigger.LOCK_ACQUIRED, ready_to_lock())
        ready_machine.transition(BookingTrigger.CREATE_FAILED)
        assert ready_machine.transition(BookingTrigger.DETAILS_CHANGED) == BookingState.COLLECTING


class TestRestore:
    def test_restored_machine_keeps_trace(self):
        m = BookingStateMachine(BookingState.FAILED, ["collecting", "ready", "locked", "failed"])
        m.transition(BookingTrigger.RETRY_REQUESTED)
        assert m.get_state_trace() == ["collecting", "ready", "locked", "failed", "ready"]

    def test_restored_history_starts_fresh(self):
        m = BookingStateMachine(BookingState.READY, ["collecting", "ready"])
        assert len(m.get_history()) == 1
        assert m.current_state == BookingState.READY
