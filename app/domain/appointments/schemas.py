"""
Appointments Domain Schemas

In-memory scheduling objects the engine works on. Persistence maps them to the
tables in ``app.domain.appointments.models``.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import List, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.config import settings
from app.domain.appointments.models import AppointmentStatus, AppointmentType, PaymentStatus


class TimeSlotCandidate(BaseModel):
    """A proposed, not yet committed interval for one therapist"""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    therapist_id: uuid.UUID

    @model_validator(mode="after")
    def validate_time_order(self) -> "TimeSlotCandidate":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class StatusChangeRecord(BaseModel):
    """One entry of an appointment's status history. Immutable."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    appointment_id: uuid.UUID
    from_status: AppointmentStatus
    to_status: AppointmentStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=datetime.now)


class Appointment(BaseModel):
    """Patient-therapist appointment, the unit of truth for scheduling"""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    patient_id: uuid.UUID
    therapist_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    type: AppointmentType = AppointmentType.SESSION
    series_id: Optional[uuid.UUID] = None
    value: Optional[Decimal] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    status_history: List[StatusChangeRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_time_order(self) -> "Appointment":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    @property
    def initial_status(self) -> AppointmentStatus:
        if self.status_history:
            return self.status_history[0].from_status
        return self.status

    def to_candidate(self) -> TimeSlotCandidate:
        return TimeSlotCandidate(
            start=self.start_time, end=self.end_time, therapist_id=self.therapist_id
        )

    def move_to(self, start: datetime, end: datetime) -> None:
        """Replace the interval in one step so the time-order invariant always holds"""
        if end <= start:
            raise ValueError("end_time must be after start_time")
        self.start_time = start
        self.end_time = end
        self.updated_at = datetime.now()


class RecurrenceRule(BaseModel):
    """Weekly recurrence: selected weekdays (0=Monday) until an exclusive end date"""

    frequency: Literal["weekly"] = "weekly"
    days: List[int] = Field(..., min_length=1)
    until: date
    interval: int = Field(1, ge=1, le=52, description="Repeat every N weeks")
    max_occurrences: int = Field(default_factory=lambda: settings.MAX_RECURRENCE_OCCURRENCES, ge=1, le=1000)

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: List[int]) -> List[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("Weekdays must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(v))
