"""
Conflict detection

Finds appointments of the same therapist whose interval overlaps a candidate.
Cancelled appointments never block a booking; completed and no-show ones still
do, since that time was occupied.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
import uuid

from app.core.exceptions import (
    MinimumDurationViolationError, OutOfBusinessHoursError, SchedulingConflictError
)
from app.domain.appointments.models import AppointmentStatus
from app.domain.appointments.schemas import Appointment, TimeSlotCandidate
from app.domain.appointments.timeslots import overlaps, business_window, is_within_business_hours

NON_BLOCKING_STATUSES = frozenset({AppointmentStatus.CANCELLED})


def blocks_time(appointment: Appointment) -> bool:
    return appointment.status not in NON_BLOCKING_STATUSES


def find_conflicts(
    candidate: TimeSlotCandidate,
    existing: Iterable[Appointment],
    exclude_id: Optional[uuid.UUID] = None
) -> List[Appointment]:
    """All active appointments of the candidate's therapist that overlap it.

    ``exclude_id`` removes the appointment being moved from the comparison set.
    No ordering is guaranteed.
    """
    return [
        appointment
        for appointment in existing
        if appointment.therapist_id == candidate.therapist_id
        and appointment.id != exclude_id
        and blocks_time(appointment)
        and overlaps(candidate.start, candidate.end, appointment.start_time, appointment.end_time)
    ]


def has_conflict(
    candidate: TimeSlotCandidate,
    existing: Iterable[Appointment],
    exclude_id: Optional[uuid.UUID] = None
) -> bool:
    return bool(find_conflicts(candidate, existing, exclude_id))


def available_slots(
    therapist_id: uuid.UUID,
    day: date,
    duration_minutes: int,
    existing: Iterable[Appointment],
    open_hour: int = 7,
    close_hour: int = 19,
    step_minutes: int = 15
) -> List[Dict[str, Any]]:
    """Every step-aligned slot of ``duration_minutes`` inside opening hours.

    Each slot is flagged available or not; unavailable slots list the ids of
    the appointments they collide with.
    """
    if duration_minutes <= 0 or step_minutes <= 0:
        raise ValueError("duration_minutes and step_minutes must be positive")

    existing = [a for a in existing if a.therapist_id == therapist_id]
    opening, closing = business_window(day, open_hour, close_hour)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)

    slots = []
    current: datetime = opening
    while current + duration <= closing:
        candidate = TimeSlotCandidate(start=current, end=current + duration, therapist_id=therapist_id)
        conflicts = find_conflicts(candidate, existing)
        slots.append({
            "start": candidate.start,
            "end": candidate.end,
            "available": not conflicts,
            "conflicting_ids": [a.id for a in conflicts],
        })
        current += step

    return slots


def ensure_bookable(
    candidate: TimeSlotCandidate,
    existing: Iterable[Appointment],
    exclude_id: Optional[uuid.UUID] = None,
    open_hour: int = 7,
    close_hour: int = 19,
    min_duration_minutes: int = 15
) -> None:
    """Raise the first rule the candidate breaks.

    Checks run cheapest first: minimum length, opening hours, then the
    conflict scan against ``existing``.
    """
    if candidate.duration_minutes < min_duration_minutes:
        raise MinimumDurationViolationError(candidate.duration_minutes, min_duration_minutes)
    if not is_within_business_hours(candidate.start, candidate.end, open_hour, close_hour):
        raise OutOfBusinessHoursError(candidate.start, candidate.end, open_hour, close_hour)
    conflicts = find_conflicts(candidate, existing, exclude_id)
    if conflicts:
        raise SchedulingConflictError([a.id for a in conflicts])
