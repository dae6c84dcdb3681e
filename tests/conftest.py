"""Shared test fixtures and helpers."""

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

from src.config import settings
from src.conversation.notifications import NotificationDispatcher
from src.conversation.orchestrator import TurnOrchestrator
from src.conversation.session_store import InMemoryKeyValueBackend, SessionStore
from src.schemas.booking_schema import Patient, Slot
from src.schemas.session_schema import BookingContext, BookingMode, BookingTarget, Session
from src.schemas.turn_schema import TurnInput, TurnOutput
from src.tools.notifications import InMemoryNotificationSender
from src.tools.scheduling import MockSchedulingBackend

CLINIC_TZ = ZoneInfo(settings.clinic.timezone)
# Monday morning: "tomorrow" is a Tuesday with a full day of slots.
MONDAY_9AM = datetime(2026, 10, 19, 9, 0, tzinfo=CLINIC_TZ)

KNOWN_CALLER = "+61412345678"
UNKNOWN_CALLER = "+61400111222"


class FakeClock:
    """Controllable stand-in for ``time.time``."""

    def __init__(self, start: float = MONDAY_9AM.timestamp()) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, CLINIC_TZ)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def kv_backend():
    return InMemoryKeyValueBackend()


@pytest.fixture
def store(kv_backend, fake_clock):
    return SessionStore(kv_backend, clock=fake_clock)


@pytest.fixture
def sms():
    return InMemoryNotificationSender()


@pytest.fixture
def scheduling(fake_clock):
    return MockSchedulingBackend(patients=[make_patient()], clock=fake_clock.datetime)


@pytest.fixture
def dispatcher(sms, fake_clock):
    return NotificationDispatcher(sms, clock=fake_clock)


@pytest.fixture
def orchestrator(store, scheduling, sms, fake_clock):
    return TurnOrchestrator(store=store, scheduling=scheduling, sender=sms, clock=fake_clock)


def make_patient(
    patient_id: str = "PT-1001",
    first_name: str = "Jane",
    last_name: str = "Citizen",
    phone: str = KNOWN_CALLER,
) -> Patient:
    """Helper to create a Patient on file for the known caller by default."""
    return Patient(id=patient_id, first_name=first_name, last_name=last_name, phone=phone)


def make_slot(
    hour: int = 8,
    minute: int = 0,
    days_ahead: int = 1,
    practitioner_id: str = "pr_chen",
    practitioner_name: str = "Dr Emily Chen",
) -> Slot:
    """Helper to create a slot relative to MONDAY_9AM ("tomorrow" by default)."""
    start = (MONDAY_9AM + timedelta(days=days_ahead)).replace(hour=hour, minute=minute)
    meridiem = "am" if hour < 12 else "pm"
    clock = f"{hour % 12 or 12}" + (f":{minute:02d}" if minute else "")
    return Slot(
        start=start,
        practitioner_id=practitioner_id,
        practitioner_name=practitioner_name,
        speakable=f"{clock}{meridiem} tomorrow with {practitioner_name}",
    )


def make_session(
    call_id: str = "CA-TEST",
    caller_id: Optional[str] = UNKNOWN_CALLER,
    **kwargs,
) -> Session:
    """Helper to create a Session with sensible defaults."""
    return Session(call_id=call_id, caller_id=caller_id, **kwargs)


def make_ready_session(
    call_id: str = "CA-READY",
    names: tuple[str, ...] = ("Sam Taylor",),
    patient_id: Optional[str] = None,
    caller_confirmed: bool = True,
) -> Session:
    """A session whose active booking has everything needed to execute.

    One name gives a single booking on the first of three slots; several
    names give a group booking with one slot per person.
    """
    slots = [make_slot(8, 0), make_slot(8, 30), make_slot(9, 0)]
    group = len(names) > 1
    targets = [
        BookingTarget(
            name=name,
            relation="self" if i == 0 else "family",
            patient_id=patient_id if i == 0 else None,
            identity_confirmed=True,
            slot_index=i,
        )
        for i, name in enumerate(names)
    ]
    booking = BookingContext(
        mode=BookingMode.GROUP if group else BookingMode.SINGLE,
        targets=targets,
        slots=slots,
        selected_slot_index=0,
        caller_confirmed=caller_confirmed,
    )
    booking.collected_info.time_preference = "tomorrow morning"
    booking.collected_info.name = names[0]
    return make_session(call_id=call_id, bookings=[booking], intent_locked=True)


async def say(
    orchestrator: TurnOrchestrator,
    call_id: str,
    text: str = "",
    digits: Optional[str] = None,
    caller_id: Optional[str] = None,
) -> TurnOutput:
    """Send one utterance (or keypad digits) through the orchestrator."""
    return await orchestrator.handle_turn(
        TurnInput(call_id=call_id, utterance_text=text, digits=digits, caller_id=caller_id)
    )
