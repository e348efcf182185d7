"""
Appointments API Schemas

Pydantic models for appointment-related API requests and responses.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal
import uuid
from app.domain.appointments.models import AppointmentStatus, AppointmentType, PaymentStatus
from app.domain.appointments.schemas import RecurrenceRule


class IntervalMixin(BaseModel):
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def validate_time_order(self):
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


# ==================== Appointment Schemas ====================

class AppointmentCreate(IntervalMixin):
    """Schema for booking an appointment"""
    patient_id: uuid.UUID
    therapist_id: uuid.UUID
    type: AppointmentType = AppointmentType.SESSION
    value: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=2000)


class AppointmentSeriesCreate(AppointmentCreate):
    """Schema for booking a weekly series"""
    recurrence: RecurrenceRule


class StatusChangeResponse(BaseModel):
    """Schema for one status history entry"""
    id: uuid.UUID
    from_status: AppointmentStatus
    to_status: AppointmentStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AppointmentResponse(BaseModel):
    """Schema for appointment response"""
    id: uuid.UUID
    patient_id: uuid.UUID
    therapist_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    type: AppointmentType
    series_id: Optional[uuid.UUID] = None
    value: Optional[Decimal] = None
    payment_status: PaymentStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AppointmentListResponse(BaseModel):
    """Schema for appointment list"""
    items: List[AppointmentResponse]
    total: int


class SeriesFailureResponse(BaseModel):
    start: datetime
    end: datetime
    error_code: Optional[str] = None
    message: str
    conflicting_ids: List[str] = []


class SeriesBookingResponse(BaseModel):
    """Booked and skipped occurrences of a series"""
    series_id: uuid.UUID
    description: str
    booked: List[AppointmentResponse]
    failed: List[SeriesFailureResponse]


# ==================== Status Schemas ====================

class StatusChangeRequest(BaseModel):
    """Schema for changing appointment status"""
    status: AppointmentStatus
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)
    changed_by: Optional[str] = Field(None, max_length=100)
    new_start_time: Optional[datetime] = None
    new_end_time: Optional[datetime] = None


class AppointmentReschedule(IntervalMixin):
    """Schema for rescheduling appointment"""
    reason: str = Field(..., max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)
    changed_by: Optional[str] = Field(None, max_length=100)


class AllowedTransitionsResponse(BaseModel):
    status: AppointmentStatus
    allowed: List[AppointmentStatus]
    terminal: bool


# ==================== Availability Schemas ====================

class ConflictCheckRequest(IntervalMixin):
    therapist_id: uuid.UUID
    exclude_id: Optional[uuid.UUID] = None


class ConflictCheckResponse(BaseModel):
    has_conflict: bool
    conflicting_ids: List[uuid.UUID]


class AvailableSlot(BaseModel):
    """Schema for a candidate time slot"""
    start: datetime
    end: datetime
    available: bool
    conflicting_ids: List[uuid.UUID] = []


class AvailableSlotsResponse(BaseModel):
    """Schema for available slots response"""
    therapist_id: uuid.UUID
    date: date
    duration_minutes: int
    slots: List[AvailableSlot]
