"""
Appointments API Routes

API endpoints for booking, conflict checks, availability and status changes.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from datetime import date
import uuid

from app.api.deps import get_appointment_service
from app.domain.appointments.recurrence import describe
from app.domain.appointments.schemas import TimeSlotCandidate
from app.domain.appointments.service import AppointmentService
from app.domain.appointments.status import is_terminal
from app.api.v1.appointments.schemas import (
    AppointmentCreate, AppointmentSeriesCreate, AppointmentResponse, AppointmentListResponse,
    SeriesBookingResponse, StatusChangeRequest, StatusChangeResponse, AppointmentReschedule,
    AllowedTransitionsResponse, ConflictCheckRequest, ConflictCheckResponse,
    AvailableSlotsResponse
)

router = APIRouter()


# ==================== Booking Endpoints ====================

@router.get("", response_model=AppointmentListResponse)
async def list_appointments(
    therapist_id: Optional[uuid.UUID] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    service: AppointmentService = Depends(get_appointment_service)
):
    """List appointments, optionally for one therapist and date range"""
    date_range = (date_from or date.min, date_to or date.max) if (date_from or date_to) else None
    appointments = await service.refresh(therapist_id=therapist_id, date_range=date_range)
    return AppointmentListResponse(
        items=[AppointmentResponse.model_validate(a) for a in appointments],
        total=len(appointments)
    )


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    data: AppointmentCreate,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Book a single appointment"""
    await service.refresh(
        therapist_id=data.therapist_id,
        date_range=(data.start_time.date(), data.end_time.date())
    )
    return await service.book(
        patient_id=data.patient_id,
        therapist_id=data.therapist_id,
        start_time=data.start_time,
        end_time=data.end_time,
        appointment_type=data.type,
        value=data.value,
        notes=data.notes
    )


@router.post("/series", response_model=SeriesBookingResponse, status_code=status.HTTP_201_CREATED)
async def book_series(
    data: AppointmentSeriesCreate,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Book a weekly series; occurrences that conflict are reported and skipped"""
    await service.refresh(
        therapist_id=data.therapist_id,
        date_range=(data.start_time.date(), data.recurrence.until)
    )
    result = await service.book_series(
        patient_id=data.patient_id,
        therapist_id=data.therapist_id,
        start_time=data.start_time,
        end_time=data.end_time,
        rule=data.recurrence,
        appointment_type=data.type,
        value=data.value,
        notes=data.notes
    )
    return SeriesBookingResponse(
        series_id=result.series_id,
        description=describe(data.recurrence),
        booked=[AppointmentResponse.model_validate(a) for a in result.booked],
        failed=[f.model_dump() for f in result.failed]
    )


# ==================== Availability Endpoints ====================

@router.post("/conflicts", response_model=ConflictCheckResponse)
async def check_conflicts(
    data: ConflictCheckRequest,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Report every appointment a proposed interval would overlap"""
    await service.refresh(
        therapist_id=data.therapist_id,
        date_range=(data.start_time.date(), data.end_time.date())
    )
    candidate = TimeSlotCandidate(start=data.start_time, end=data.end_time, therapist_id=data.therapist_id)
    conflicts = service.check_conflicts(candidate, exclude_id=data.exclude_id)
    return ConflictCheckResponse(
        has_conflict=bool(conflicts),
        conflicting_ids=[a.id for a in conflicts]
    )


@router.get("/availability/{therapist_id}", response_model=AvailableSlotsResponse)
async def get_available_slots(
    therapist_id: uuid.UUID,
    target_date: date,
    duration_minutes: int = Query(60, ge=15, le=480),
    service: AppointmentService = Depends(get_appointment_service)
):
    """List the day's slots for a therapist, flagged available or taken"""
    await service.refresh(therapist_id=therapist_id, date_range=(target_date, target_date))
    return AvailableSlotsResponse(
        therapist_id=therapist_id,
        date=target_date,
        duration_minutes=duration_minutes,
        slots=service.get_available_slots(therapist_id, target_date, duration_minutes)
    )


# ==================== Single Appointment Endpoints ====================

@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: uuid.UUID,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Get appointment by ID"""
    return await service.load_for_appointment(appointment_id)


@router.get("/{appointment_id}/history", response_model=List[StatusChangeResponse])
async def get_status_history(
    appointment_id: uuid.UUID,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Status changes of an appointment, oldest first"""
    await service.load_for_appointment(appointment_id)
    return service.status_history(appointment_id)


@router.get("/{appointment_id}/transitions", response_model=AllowedTransitionsResponse)
async def get_allowed_transitions(
    appointment_id: uuid.UUID,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Statuses the appointment can move to next"""
    appointment = await service.load_for_appointment(appointment_id)
    return AllowedTransitionsResponse(
        status=appointment.status,
        allowed=service.allowed_transitions(appointment_id),
        terminal=is_terminal(appointment.status)
    )


@router.post("/{appointment_id}/status", response_model=StatusChangeResponse)
async def change_appointment_status(
    appointment_id: uuid.UUID,
    data: StatusChangeRequest,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Change appointment status"""
    await service.load_for_appointment(appointment_id)
    return await service.change_status(
        appointment_id,
        data.status,
        reason=data.reason,
        notes=data.notes,
        changed_by=data.changed_by,
        new_start=data.new_start_time,
        new_end=data.new_end_time
    )


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    data: AppointmentReschedule,
    service: AppointmentService = Depends(get_appointment_service)
):
    """Move an appointment to a new interval and put it back on the schedule"""
    await service.load_for_appointment(appointment_id)
    return await service.reschedule(
        appointment_id,
        new_start=data.start_time,
        new_end=data.end_time,
        reason=data.reason,
        notes=data.notes,
        changed_by=data.changed_by
    )
