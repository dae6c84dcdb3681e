"""
Per-call session model persisted as a JSON blob keyed by call id.

Booking-specific state lives in ``BookingContext`` objects. A call normally
holds one; a follow-up booking for another person appends a new context
instead of rewriting the confirmed one, and a group booking is a single
context carrying several targets.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from src.conversation.state_machine import BookingState, CallStage
from src.schemas.booking_schema import Patient, Slot
from src.schemas.intent_schema import Intent


class QuestionKind(str, Enum):
    """Clarifying questions tracked against the ask-at-most-twice rule."""
    IDENTITY_CONFIRM = "identity_confirm"
    PATIENT_CHOICE = "patient_choice"
    NAME = "name"
    GROUP_NAMES = "group_names"
    TIME = "time"
    SLOT_CHOICE = "slot_choice"
    BOOKING_CONFIRM = "booking_confirm"
    ANYTHING_ELSE = "anything_else"


# Questions about one booking; their ask counts start over with each new booking.
BOOKING_QUESTION_KINDS: frozenset[QuestionKind] = frozenset({
    QuestionKind.NAME,
    QuestionKind.GROUP_NAMES,
    QuestionKind.TIME,
    QuestionKind.SLOT_CHOICE,
    QuestionKind.BOOKING_CONFIRM,
})


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnRecord(BaseModel):
    """One line of conversation history."""
    role: TurnRole
    text: str
    timestamp: float
    intent: Optional[Intent] = None


class CollectedInfo(BaseModel):
    """Details gathered for the person currently being booked."""
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_day: Optional[str] = None
    preferred_time: Optional[str] = None
    time_preference: Optional[str] = None
    complaint: Optional[str] = None
    is_new_patient: Optional[bool] = None


class BookingMode(str, Enum):
    SINGLE = "single"
    SECONDARY = "secondary"
    GROUP = "group"


class BookingTarget(BaseModel):
    """One person to be booked.

    ``patient_id`` is only ever written by an explicit confirmation step;
    a looked-up candidate stays in ``Session.tentative_patient_id``.
    """
    name: Optional[str] = None
    relation: str = "self"
    patient_id: Optional[str] = None
    identity_confirmed: bool = False
    is_new_patient: Optional[bool] = None
    slot_index: Optional[int] = None
    appointment_id: Optional[str] = None


class BookingContext(BaseModel):
    """One booking attempt and the ordered list of people it covers."""
    mode: BookingMode = BookingMode.SINGLE
    targets: list[BookingTarget] = Field(default_factory=lambda: [BookingTarget()])
    collected_info: CollectedInfo = Field(default_factory=CollectedInfo)
    slots: list[Slot] = Field(default_factory=list)
    selected_slot_index: Optional[int] = None
    caller_confirmed: bool = False
    state: BookingState = BookingState.COLLECTING
    state_trace: list[str] = Field(default_factory=lambda: [BookingState.COLLECTING.value])
    booking_lock_until: Optional[float] = None
    lock_owner: Optional[str] = None
    appointment_created: bool = False
    completed: int = 0
    failure_reason: Optional[str] = None

    @property
    def primary_target(self) -> BookingTarget:
        return self.targets[0]

    @property
    def selected_patient_id(self) -> Optional[str]:
        return self.primary_target.patient_id

    @property
    def appointment_id(self) -> Optional[str]:
        return self.primary_target.appointment_id

    @property
    def selected_slot(self) -> Optional[Slot]:
        if self.selected_slot_index is None:
            return None
        if 0 <= self.selected_slot_index < len(self.slots):
            return self.slots[self.selected_slot_index]
        return None

    @property
    def is_group(self) -> bool:
        return self.mode == BookingMode.GROUP

    def reset_time(self) -> None:
        """Forget the time preference and any slots offered for it."""
        self.collected_info.time_preference = None
        self.collected_info.preferred_day = None
        self.collected_info.preferred_time = None
        self.slots = []
        self.selected_slot_index = None
        self.caller_confirmed = False
        for target in self.targets:
            target.slot_index = None


class NotificationType(str, Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    INTAKE_FORM = "intake_form"
    BOOKING_PENDING = "booking_pending"


class NotificationRecord(BaseModel):
    """A delivered notification; (type, target_id) is unique per call."""
    type: NotificationType
    target_id: str
    sent_at: float
    token: Optional[str] = None


class FormSubmission(BaseModel):
    """An intake form link issued to one participant, and its submission."""
    token: str
    participant_name: Optional[str] = None
    patient_id: Optional[str] = None
    issued_at: float
    submitted_at: Optional[float] = None
    data: dict[str, str] = Field(default_factory=dict)

    @property
    def submitted(self) -> bool:
        return self.submitted_at is not None


class Session(BaseModel):
    """All mutable state for one call."""
    call_id: str
    tenant_id: Optional[str] = None
    caller_id: Optional[str] = None
    stage: CallStage = CallStage.GREETING
    turn_history: list[TurnRecord] = Field(default_factory=list)
    awaiting_response_type: Optional[QuestionKind] = None
    error_count: int = 0
    no_match_count: int = 0
    empty_count: int = 0
    empty_prompts: int = 0
    last_empty_at: Optional[float] = None
    question_ask_counts: dict[QuestionKind, int] = Field(default_factory=dict)
    primary_intent: Optional[Intent] = None
    intent_locked: bool = False
    candidate_patients: list[Patient] = Field(default_factory=list)
    candidates_loaded: bool = False
    candidates_declined: bool = False
    tentative_patient_id: Optional[str] = None
    bookings: list[BookingContext] = Field(default_factory=lambda: [BookingContext()])
    active_booking: int = 0
    terminal_lock: bool = False
    notifications_sent: list[NotificationRecord] = Field(default_factory=list)
    form_tokens: dict[str, FormSubmission] = Field(default_factory=dict)
    backend_error: bool = False
    handoff_reason: Optional[str] = None
    ended: bool = False
    ended_reason: Optional[str] = None
    call_summary: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    revision: int = 0

    # --- Active booking shortcuts ---

    @property
    def booking(self) -> BookingContext:
        return self.bookings[self.active_booking]

    @property
    def collected_info(self) -> CollectedInfo:
        return self.booking.collected_info

    @property
    def selected_patient_id(self) -> Optional[str]:
        return self.booking.selected_patient_id

    @property
    def appointment_created(self) -> bool:
        return self.booking.appointment_created

    @property
    def has_confirmed_booking(self) -> bool:
        return any(b.appointment_created for b in self.bookings)

    @property
    def group_booking_in_progress(self) -> bool:
        return self.booking.is_group and not self.booking.appointment_created

    def start_booking(self, context: BookingContext) -> BookingContext:
        """Append a new booking context and make it the active one."""
        for kind in BOOKING_QUESTION_KINDS:
            self.question_ask_counts.pop(kind, None)
        self.bookings.append(context)
        self.active_booking = len(self.bookings) - 1
        return context

    # --- History ---

    def append_turn(
        self,
        role: TurnRole,
        text: str,
        timestamp: float,
        window: int,
        intent: Optional[Intent] = None,
    ) -> None:
        """Append to history, keeping only the retained window."""
        self.turn_history.append(
            TurnRecord(role=role, text=text, timestamp=timestamp, intent=intent)
        )
        if len(self.turn_history) > window:
            del self.turn_history[: len(self.turn_history) - window]

    def recent_texts(self, role: TurnRole, limit: int) -> list[str]:
        turns = [t.text for t in self.turn_history if t.role == role]
        return turns[-limit:]

    # --- Notifications & candidates ---

    def has_sent(self, notification_type: NotificationType, target_id: str) -> bool:
        return any(
            n.type == notification_type and n.target_id == target_id
            for n in self.notifications_sent
        )

    def find_candidate(self, patient_id: Optional[str]) -> Optional[Patient]:
        for patient in self.candidate_patients:
            if patient.id == patient_id:
                return patient
        return None
