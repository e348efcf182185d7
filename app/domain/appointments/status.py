"""
Appointment status state machine

Defines the legal transitions between appointment statuses, which targets need
a reason, and validates/executes a transition while keeping the append-only
status history consistent.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional
import logging

from pydantic import BaseModel, ConfigDict

from app.core.config import settings
from app.core.exceptions import InvalidTransitionError, ReasonRequiredError, ValidationError
from app.domain.appointments.conflicts import ensure_bookable
from app.domain.appointments.models import AppointmentStatus
from app.domain.appointments.schemas import Appointment, StatusChangeRecord, TimeSlotCandidate

logger = logging.getLogger(__name__)

S = AppointmentStatus

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CONFIRMED, S.CANCELLED, S.RESCHEDULED}),
    S.CONFIRMED: frozenset({S.COMPLETED, S.NO_SHOW, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset({S.SCHEDULED}),
    S.NO_SHOW: frozenset({S.RESCHEDULED, S.CANCELLED}),
    S.RESCHEDULED: frozenset({S.SCHEDULED}),
}

REASON_REQUIRED: FrozenSet[AppointmentStatus] = frozenset({S.CANCELLED, S.NO_SHOW, S.RESCHEDULED})

STATUS_DISPLAY: Dict[AppointmentStatus, Dict[str, str]] = {
    S.SCHEDULED: {"label": "Scheduled", "description": "Appointment booked"},
    S.CONFIRMED: {"label": "Confirmed", "description": "Patient confirmed attendance"},
    S.COMPLETED: {"label": "Completed", "description": "Appointment took place"},
    S.CANCELLED: {"label": "Cancelled", "description": "Appointment cancelled"},
    S.NO_SHOW: {"label": "No-show", "description": "Patient did not attend"},
    S.RESCHEDULED: {"label": "Rescheduled", "description": "Moved to a new date or time"},
}


def _check_exhaustive() -> None:
    for name, table in (("ALLOWED_TRANSITIONS", ALLOWED_TRANSITIONS), ("STATUS_DISPLAY", STATUS_DISPLAY)):
        missing = set(AppointmentStatus) - set(table)
        if missing:
            raise RuntimeError(f"{name} has no entry for: {sorted(s.value for s in missing)}")


_check_exhaustive()


def allowed_transitions(status: AppointmentStatus) -> FrozenSet[AppointmentStatus]:
    return ALLOWED_TRANSITIONS[AppointmentStatus(status)]


def is_terminal(status: AppointmentStatus) -> bool:
    return not allowed_transitions(status)


def requires_reason(status: AppointmentStatus) -> bool:
    return AppointmentStatus(status) in REASON_REQUIRED


class TransitionPlan(BaseModel):
    """A validated transition that has not been applied yet"""
    model_config = ConfigDict(frozen=True)

    record: StatusChangeRecord
    new_start: Optional[datetime] = None
    new_end: Optional[datetime] = None


class StatusMachine:
    """Validates and applies appointment status transitions"""

    def __init__(
        self,
        open_hour: Optional[int] = None,
        close_hour: Optional[int] = None,
        min_duration_minutes: Optional[int] = None
    ):
        self.open_hour = settings.BUSINESS_OPEN_HOUR if open_hour is None else open_hour
        self.close_hour = settings.BUSINESS_CLOSE_HOUR if close_hour is None else close_hour
        self.min_duration_minutes = (
            settings.MIN_APPOINTMENT_MINUTES if min_duration_minutes is None else min_duration_minutes
        )

    def plan_transition(
        self,
        appointment: Appointment,
        to_status: AppointmentStatus,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
        new_start: Optional[datetime] = None,
        new_end: Optional[datetime] = None,
        existing: Iterable[Appointment] = ()
    ) -> TransitionPlan:
        """Run every check for a transition without touching the appointment"""
        to_status = AppointmentStatus(to_status)
        from_status = appointment.status
        allowed = allowed_transitions(from_status)

        if to_status not in allowed:
            raise InvalidTransitionError(from_status.value, to_status.value, (s.value for s in allowed))

        reason = reason.strip() if reason else None
        if to_status in REASON_REQUIRED and not reason:
            raise ReasonRequiredError(to_status.value)

        if to_status == S.RESCHEDULED:
            if new_start is None or new_end is None:
                raise ValidationError(
                    message="Rescheduling requires a new start and end time",
                    error_code="RESCHEDULE_INTERVAL_REQUIRED"
                )
            if new_end <= new_start:
                raise ValidationError(
                    message="New end time must be after new start time",
                    details={"start": new_start.isoformat(), "end": new_end.isoformat()}
                )
            candidate = TimeSlotCandidate(start=new_start, end=new_end, therapist_id=appointment.therapist_id)
            ensure_bookable(
                candidate,
                existing,
                exclude_id=appointment.id,
                open_hour=self.open_hour,
                close_hour=self.close_hour,
                min_duration_minutes=self.min_duration_minutes
            )
        else:
            new_start = new_end = None
            if to_status == S.SCHEDULED:
                # Back on the schedule: the slot may have been taken meanwhile
                ensure_bookable(
                    appointment.to_candidate(),
                    existing,
                    exclude_id=appointment.id,
                    open_hour=self.open_hour,
                    close_hour=self.close_hour,
                    min_duration_minutes=self.min_duration_minutes
                )

        record = StatusChangeRecord(
            appointment_id=appointment.id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            notes=notes or None,
            changed_by=changed_by,
        )
        return TransitionPlan(record=record, new_start=new_start, new_end=new_end)

    def commit(self, appointment: Appointment, plan: TransitionPlan) -> StatusChangeRecord:
        """Apply a plan produced for this appointment in its current status"""
        record = plan.record
        if record.appointment_id != appointment.id:
            raise ValidationError(message="Transition plan belongs to another appointment")
        if record.from_status != appointment.status:
            # Status moved on since the plan was made
            raise InvalidTransitionError(
                appointment.status.value,
                record.to_status.value,
                (s.value for s in allowed_transitions(appointment.status))
            )

        if plan.new_start is not None and plan.new_end is not None:
            appointment.move_to(plan.new_start, plan.new_end)
        appointment.status_history.append(record)
        appointment.status = record.to_status
        appointment.updated_at = record.changed_at

        logger.info(
            f"Appointment {appointment.id} status {record.from_status.value} -> {record.to_status.value}"
        )
        return record

    def apply_transition(
        self,
        appointment: Appointment,
        to_status: AppointmentStatus,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
        new_start: Optional[datetime] = None,
        new_end: Optional[datetime] = None,
        existing: Iterable[Appointment] = ()
    ) -> StatusChangeRecord:
        """Validate and apply a transition in memory, returning the new history record"""
        plan = self.plan_transition(
            appointment, to_status, reason, notes, changed_by, new_start, new_end, existing
        )
        return self.commit(appointment, plan)
