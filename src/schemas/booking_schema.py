"""Patient, slot and appointment data models exchanged with the scheduling backend."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Patient(BaseModel):
    """Patient record as returned by a phone-number lookup."""
    id: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    upcoming_appointment: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Slot(BaseModel):
    """A bookable time offered to the caller."""
    start: datetime
    practitioner_id: str
    practitioner_name: str = ""
    appointment_type_id: Optional[str] = None
    duration_minutes: int = 30
    speakable: str = ""


class TimeRange(BaseModel):
    """Search window derived from a spoken time preference."""
    start: datetime
    end: datetime
    label: str = ""


class AppointmentRequest(BaseModel):
    """Everything the backend needs to create one appointment."""
    call_id: str
    patient_name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    patient_id: Optional[str] = None
    is_new_patient: bool = False
    relation: str = "self"
    slot: Slot
    notes: Optional[str] = None


class AppointmentResult(BaseModel):
    """Backend response to a create call.

    A result without ``id`` is a failure regardless of anything else in it.
    """
    id: Optional[str] = None
    patient_id: Optional[str] = None
    message: str = ""
    created_at: Optional[datetime] = None

    @property
    def confirmed(self) -> bool:
        return bool(self.id and self.id.strip())


class SlotSearchResult(BaseModel):
    """Slots found for one search window."""
    range: TimeRange
    slots: list[Slot] = Field(default_factory=list)
