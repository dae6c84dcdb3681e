"""
Clinic scheduling backend interface and a deterministic in-memory mock.

In production this would wrap the practice-management system's HTTP API
(patient lookup by phone, availability search, appointment creation). The
mock keeps a 30-minute grid per practitioner, honours opening hours, and
lets tests inject lookup/search/create failures or an id-less create result.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol
from zoneinfo import ZoneInfo

from src.config import settings
from src.schemas.booking_schema import (
    AppointmentRequest,
    AppointmentResult,
    Patient,
    Slot,
    TimeRange,
)
from src.utils import normalize_phone, speak_day, speak_time

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """Raised when the scheduling backend is unreachable or rejects a request."""


class SchedulingBackend(Protocol):
    async def find_candidates(self, phone: str) -> list[Patient]:
        ...

    async def search_slots(self, time_range: TimeRange) -> list[Slot]:
        ...

    async def create_appointment(self, request: AppointmentRequest) -> AppointmentResult:
        ...


# Calendar generation parameters
SLOT_MINUTES = 30
WEEKDAY_HOURS = (8, 18)
SATURDAY_HOURS = (8, 13)

PRACTITIONERS: dict[str, str] = {
    "pr_chen": "Dr Emily Chen",
    "pr_walsh": "Dr Liam Walsh",
}
STANDARD_APPOINTMENT_TYPE = "apt_standard"
NEW_PATIENT_APPOINTMENT_TYPE = "apt_initial"


def _opening_hours(day: datetime) -> Optional[tuple[int, int]]:
    if day.weekday() == 6:  # Sunday closed
        return None
    if day.weekday() == 5:
        return SATURDAY_HOURS
    return WEEKDAY_HOURS


class MockSchedulingBackend:
    """In-memory scheduling backend with failure injection for tests and demos."""

    def __init__(
        self,
        patients: Optional[list[Patient]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._tz = ZoneInfo(settings.clinic.timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._patients: dict[str, list[Patient]] = {}
        self._appointments: dict[str, AppointmentRequest] = {}
        self._taken: set[tuple[str, datetime]] = set()
        self.create_calls: list[AppointmentRequest] = []
        self.fail_lookup = False
        self.fail_search = False
        self.fail_create = False
        self.omit_id = False
        for patient in patients or []:
            self.add_patient(patient)

    def add_patient(self, patient: Patient) -> None:
        key = normalize_phone(patient.phone or "")
        self._patients.setdefault(key, []).append(patient)

    def block_slot(self, practitioner_id: str, start: datetime) -> None:
        """Mark a grid slot as taken without an appointment record."""
        self._taken.add((practitioner_id, start))

    async def find_candidates(self, phone: str) -> list[Patient]:
        if self.fail_lookup:
            raise SchedulingError("patient lookup unavailable")
        matches = list(self._patients.get(normalize_phone(phone), []))
        logger.debug("Patient lookup returned %d record(s)", len(matches))
        return matches

    async def search_slots(self, time_range: TimeRange) -> list[Slot]:
        if self.fail_search:
            raise SchedulingError("availability search unavailable")
        now = self._clock()
        slots: list[Slot] = []
        day = time_range.start.replace(hour=0, minute=0, second=0, microsecond=0)
        while day < time_range.end:
            hours = _opening_hours(day)
            if hours:
                cursor = day.replace(hour=hours[0])
                closing = day.replace(hour=hours[1])
                while cursor < closing:
                    if time_range.start <= cursor < time_range.end and cursor > now:
                        slots.extend(self._free_slots_at(cursor, now))
                    cursor += timedelta(minutes=SLOT_MINUTES)
            day += timedelta(days=1)
        logger.debug("Slot search %s returned %d slot(s)", time_range.label, len(slots))
        return slots

    def _free_slots_at(self, start: datetime, now: datetime) -> list[Slot]:
        free = []
        for practitioner_id, practitioner_name in PRACTITIONERS.items():
            if (practitioner_id, start) in self._taken:
                continue
            free.append(Slot(
                start=start,
                practitioner_id=practitioner_id,
                practitioner_name=practitioner_name,
                appointment_type_id=STANDARD_APPOINTMENT_TYPE,
                duration_minutes=SLOT_MINUTES,
                speakable=f"{speak_time(start)} {speak_day(start, now)} with {practitioner_name}",
            ))
            # One practitioner per time keeps offers distinct by time.
            break
        return free

    async def create_appointment(self, request: AppointmentRequest) -> AppointmentResult:
        self.create_calls.append(request)
        if self.fail_create:
            raise SchedulingError("appointment creation failed")
        key = (request.slot.practitioner_id, request.slot.start)
        if key in self._taken:
            raise SchedulingError("slot no longer available")
        if self.omit_id:
            return AppointmentResult(message="accepted")

        patient_id = request.patient_id or f"PT-{uuid.uuid4().hex[:6].upper()}"
        appointment_id = f"APT-{uuid.uuid4().hex[:8].upper()}"
        self._taken.add(key)
        self._appointments[appointment_id] = request
        if request.patient_id is None and request.phone:
            first, _, last = request.patient_name.partition(" ")
            self.add_patient(Patient(id=patient_id, first_name=first, last_name=last, phone=request.phone))
        logger.info(
            "Appointment %s created for %s at %s",
            appointment_id, request.patient_name, request.slot.start.isoformat(),
        )
        return AppointmentResult(
            id=appointment_id,
            patient_id=patient_id,
            message="confirmed",
            created_at=self._clock(),
        )

    def reset(self) -> None:
        """Clear appointments, blocked slots and failure flags. Used by test fixtures."""
        self._appointments.clear()
        self._taken.clear()
        self.create_calls.clear()
        self.fail_lookup = self.fail_search = self.fail_create = self.omit_id = False
