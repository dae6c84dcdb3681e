"""
Call stages and the finite state machine guarding booking execution.

A call moves through coarse ``CallStage`` values that decide which question
is pending and whether silence may be re-prompted. Each booking attempt
inside the call runs its own ``BookingStateMachine``:

    COLLECTING -> READY -> LOCKED -> EXECUTING -> CONFIRMED | FAILED

Every transition must be listed in the table. ``READY -> LOCKED`` is guarded
by the lock preconditions (confirmed identity, a selected slot, an explicit
yes from the caller and an expired or unset booking lock), so no caller of
the machine can reach the external create call without them.

The machine is rebuilt from the persisted state at the start of every turn.

Usage:
    sm = BookingStateMachine(BookingState.READY)
    sm.transition(BookingTrigger.LOCK_ACQUIRED, LockPreconditions(...))
    assert sm.current_state == BookingState.LOCKED
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CallStage(str, Enum):
    """Coarse position of the call in the booking conversation."""
    GREETING = "greeting"
    COLLECT_IDENTITY = "collect_identity"
    COLLECT_TIME = "collect_time"
    OFFER_SLOTS = "offer_slots"
    CONFIRM = "confirm"
    BOOKING_IN_PROGRESS = "booking_in_progress"
    SENDING_NOTIFICATION = "sending_notification"
    FAQ = "faq"
    TERMINAL = "terminal"
    ERROR_RECOVERY = "error_recovery"
    ENDED = "ended"


# Silence in these stages is never re-prompted.
NON_INTERACTIVE_STAGES: frozenset[CallStage] = frozenset({
    CallStage.BOOKING_IN_PROGRESS,
    CallStage.SENDING_NOTIFICATION,
    CallStage.TERMINAL,
})


class BookingState(str, Enum):
    """Lifecycle of a single booking attempt."""
    COLLECTING = "collecting"
    READY = "ready"
    LOCKED = "locked"
    EXECUTING = "executing"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class BookingTrigger(str, Enum):
    """Events that move a booking attempt between states."""
    DETAILS_COMPLETE = "details_complete"
    DETAILS_CHANGED = "details_changed"
    LOCK_ACQUIRED = "lock_acquired"
    CREATE_STARTED = "create_started"
    CREATE_SUCCEEDED = "create_succeeded"
    CREATE_FAILED = "create_failed"
    RETRY_REQUESTED = "retry_requested"


@dataclass(frozen=True)
class LockPreconditions:
    """Snapshot of everything the READY -> LOCKED guard inspects."""
    identity_confirmed: bool
    slot_selected: bool
    caller_confirmed: bool
    now: float
    lock_until: Optional[float] = None

    @property
    def lock_expired(self) -> bool:
        return self.lock_until is None or self.now >= self.lock_until


def _can_lock(pre: Optional[LockPreconditions]) -> bool:
    if pre is None:
        return False
    return (
        pre.identity_confirmed
        and pre.slot_selected
        and pre.caller_confirmed
        and pre.lock_expired
    )


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: BookingState
    to_state: BookingState
    trigger: BookingTrigger
    guard: Optional[Callable[[Optional[LockPreconditions]], bool]] = None


@dataclass
class StateEntry:
    """Recorded history entry for a state visit."""
    state: BookingState
    entered_at: datetime
    trigger: Optional[BookingTrigger] = None


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current state."""


class BookingStateMachine:
    """
    Deterministic state machine controlling one booking attempt.

    If orchestration code tries to move a booking without a matching
    transition (or with a failing guard), the move is rejected with an
    error naming the triggers that are allowed.
    """

    TRANSITIONS: list[Transition] = [
        # --- Collection ---
        Transition(BookingState.COLLECTING, BookingState.READY,
                   BookingTrigger.DETAILS_COMPLETE),
        Transition(BookingState.COLLECTING, BookingState.COLLECTING,
                   BookingTrigger.DETAILS_CHANGED),
        Transition(BookingState.READY, BookingState.COLLECTING,
                   BookingTrigger.DETAILS_CHANGED),
        Transition(BookingState.READY, BookingState.READY,
                   BookingTrigger.DETAILS_COMPLETE),

        # --- Lock gate ---
        Transition(BookingState.READY, BookingState.LOCKED,
                   BookingTrigger.LOCK_ACQUIRED, guard=_can_lock),

        # --- Execution ---
        Transition(BookingState.LOCKED, BookingState.EXECUTING,
                   BookingTrigger.CREATE_STARTED),
        Transition(BookingState.LOCKED, BookingState.FAILED,
                   BookingTrigger.CREATE_FAILED),
        Transition(BookingState.EXECUTING, BookingState.CONFIRMED,
                   BookingTrigger.CREATE_SUCCEEDED),
        Transition(BookingState.EXECUTING, BookingState.FAILED,
                   BookingTrigger.CREATE_FAILED),

        # --- Recovery ---
        Transition(BookingState.FAILED, BookingState.READY,
                   BookingTrigger.RETRY_REQUESTED),
        Transition(BookingState.FAILED, BookingState.COLLECTING,
                   BookingTrigger.DETAILS_CHANGED),
    ]

    def __init__(
        self,
        state: BookingState = BookingState.COLLECTING,
        trace: Optional[list[str]] = None,
    ) -> None:
        self._current_state = state
        self._history: list[StateEntry] = [
            StateEntry(state=state, entered_at=datetime.now(timezone.utc))
        ]
        self._trace: list[str] = list(trace) if trace else [state.value]

    @property
    def current_state(self) -> BookingState:
        return self._current_state

    def transition(
        self,
        trigger: BookingTrigger,
        preconditions: Optional[LockPreconditions] = None,
    ) -> BookingState:
        """
        Execute a state transition.

        Args:
            trigger: The event triggering the transition.
            preconditions: Snapshot consulted by guarded transitions.

        Returns:
            The new booking state.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                if t.guard is not None and not t.guard(preconditions):
                    continue

                old_state = self._current_state
                self._current_state = t.to_state
                self._history.append(StateEntry(
                    state=self._current_state,
                    entered_at=datetime.now(timezone.utc),
                    trigger=trigger,
                ))
                if old_state != self._current_state:
                    self._trace.append(self._current_state.value)

                logger.debug(
                    "Booking transition: %s -> %s (trigger: %s)",
                    old_state.value, self._current_state.value, trigger.value,
                )
                return self._current_state

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def can_transition(
        self,
        trigger: BookingTrigger,
        preconditions: Optional[LockPreconditions] = None,
    ) -> bool:
        """Check whether ``trigger`` would be accepted without applying it."""
        return any(
            t.from_state == self._current_state
            and t.trigger == trigger
            and (t.guard is None or t.guard(preconditions))
            for t in self.TRANSITIONS
        )

    def get_valid_triggers(self) -> list[BookingTrigger]:
        """Return all triggers valid from the current state."""
        return [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]

    def get_history(self) -> list[StateEntry]:
        """Return the state transition history recorded by this instance."""
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of distinct state names visited, across turns."""
        return list(self._trace)

    def is_terminal(self) -> bool:
        """Check if the booking attempt has been confirmed."""
        return self._current_state == BookingState.CONFIRMED
