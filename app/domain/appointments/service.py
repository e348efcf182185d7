"""
Appointments Service Layer

Business logic for booking appointments and series, changing statuses and
rescheduling. Every change is validated locally, persisted, and only then
applied to the in-memory collection.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple
import logging
import uuid

from pydantic import BaseModel, Field

from app.core.config import settings
from app.core.exceptions import (
    BaseCustomException, ConflictError, NotFoundError, SchedulingConflictError,
    ValidationError, handle_persistence_error
)
from app.domain.appointments.conflicts import available_slots, ensure_bookable, find_conflicts
from app.domain.appointments.interactions import CalendarController, CommitTracker
from app.domain.appointments.models import AppointmentStatus, AppointmentType
from app.domain.appointments.recurrence import expand
from app.domain.appointments.schemas import (
    Appointment, RecurrenceRule, StatusChangeRecord, TimeSlotCandidate
)
from app.domain.appointments.status import StatusMachine, TransitionPlan, allowed_transitions

logger = logging.getLogger(__name__)


class SeriesOccurrenceFailure(BaseModel):
    """One occurrence of a series that could not be booked"""
    start: datetime
    end: datetime
    error_code: Optional[str] = None
    message: str
    conflicting_ids: List[str] = Field(default_factory=list)


class SeriesBookingResult(BaseModel):
    series_id: uuid.UUID
    booked: List[Appointment] = Field(default_factory=list)
    failed: List[SeriesOccurrenceFailure] = Field(default_factory=list)


class AppointmentService:
    """Service layer for appointment scheduling"""

    def __init__(
        self,
        repository,
        appointments: Optional[List[Appointment]] = None,
        notifier=None,
        tracker: Optional[CommitTracker] = None,
        status_machine: Optional[StatusMachine] = None
    ):
        self.repository = repository
        self.appointments: List[Appointment] = appointments if appointments is not None else []
        self.notifier = notifier
        self.tracker = tracker or CommitTracker()
        self.status_machine = status_machine or StatusMachine()

    # ---- collection ----

    async def refresh(
        self,
        therapist_id: Optional[uuid.UUID] = None,
        date_range: Optional[Tuple[date, date]] = None
    ) -> List[Appointment]:
        """Reload the in-memory collection from persistence, in place"""
        loaded = await self.repository.load_appointments(therapist_id=therapist_id, date_range=date_range)
        self.appointments[:] = loaded
        return self.appointments

    async def load_for_appointment(self, appointment_id: uuid.UUID) -> Appointment:
        """Load an appointment together with its therapist's schedule"""
        stored = await self.repository.get_appointment(appointment_id)
        if stored is None:
            raise NotFoundError(
                message="Appointment not found",
                details={"appointment_id": str(appointment_id)}
            )
        await self.refresh(therapist_id=stored.therapist_id)
        return self.get_appointment(appointment_id)

    def get_appointment(self, appointment_id: uuid.UUID) -> Appointment:
        for appointment in self.appointments:
            if appointment.id == appointment_id:
                return appointment
        raise NotFoundError(
            message="Appointment not found",
            details={"appointment_id": str(appointment_id)}
        )

    def calendar_controller(self, mapping=None) -> CalendarController:
        """Gesture controller sharing this service's collection and commit guard"""
        return CalendarController(self.repository, self.appointments, mapping=mapping, tracker=self.tracker)

    # ---- queries ----

    def check_conflicts(
        self,
        candidate: TimeSlotCandidate,
        exclude_id: Optional[uuid.UUID] = None
    ) -> List[Appointment]:
        return find_conflicts(candidate, self.appointments, exclude_id)

    def get_available_slots(
        self,
        therapist_id: uuid.UUID,
        target_date: date,
        duration_minutes: int
    ) -> List[Dict[str, Any]]:
        return available_slots(
            therapist_id,
            target_date,
            duration_minutes,
            self.appointments,
            open_hour=settings.BUSINESS_OPEN_HOUR,
            close_hour=settings.BUSINESS_CLOSE_HOUR,
            step_minutes=settings.SNAP_INTERVAL_MINUTES
        )

    def allowed_transitions(self, appointment_id: uuid.UUID) -> List[AppointmentStatus]:
        appointment = self.get_appointment(appointment_id)
        return sorted(allowed_transitions(appointment.status), key=lambda s: s.value)

    def status_history(self, appointment_id: uuid.UUID) -> List[StatusChangeRecord]:
        return list(self.get_appointment(appointment_id).status_history)

    # ---- booking ----

    def _ensure_bookable(self, candidate: TimeSlotCandidate, exclude_id: Optional[uuid.UUID] = None) -> None:
        ensure_bookable(
            candidate,
            self.appointments,
            exclude_id=exclude_id,
            open_hour=settings.BUSINESS_OPEN_HOUR,
            close_hour=settings.BUSINESS_CLOSE_HOUR,
            min_duration_minutes=settings.MIN_APPOINTMENT_MINUTES
        )

    async def _save(self, appointment: Appointment, operation: str) -> None:
        try:
            await self.repository.save_appointment(appointment)
        except BaseCustomException:
            raise
        except Exception as e:
            raise handle_persistence_error(e, operation) from e

    async def book(
        self,
        patient_id: uuid.UUID,
        therapist_id: uuid.UUID,
        start_time: datetime,
        end_time: datetime,
        appointment_type: AppointmentType = AppointmentType.SESSION,
        value: Optional[Decimal] = None,
        notes: Optional[str] = None,
        series_id: Optional[uuid.UUID] = None
    ) -> Appointment:
        """Book a single appointment in the scheduled state"""
        if end_time <= start_time:
            raise ValidationError(
                message="End time must be after start time",
                details={"start": start_time.isoformat(), "end": end_time.isoformat()}
            )
        appointment = Appointment(
            patient_id=patient_id,
            therapist_id=therapist_id,
            start_time=start_time,
            end_time=end_time,
            type=appointment_type,
            value=value,
            notes=notes,
            series_id=series_id,
        )
        self._ensure_bookable(appointment.to_candidate())
        await self._save(appointment, "book appointment")
        self.appointments.append(appointment)
        logger.info(f"Booked appointment {appointment.id} for therapist {therapist_id} at {start_time.isoformat()}")
        return appointment

    async def book_series(
        self,
        patient_id: uuid.UUID,
        therapist_id: uuid.UUID,
        start_time: datetime,
        end_time: datetime,
        rule: RecurrenceRule,
        appointment_type: AppointmentType = AppointmentType.SESSION,
        value: Optional[Decimal] = None,
        notes: Optional[str] = None
    ) -> SeriesBookingResult:
        """Book the anchor and every occurrence of the rule that is free.

        Occurrences that fail are reported, not fatal: the rest of the series
        is still booked. A failing anchor aborts the whole series.
        """
        series_id = uuid.uuid4()
        anchor = await self.book(
            patient_id, therapist_id, start_time, end_time,
            appointment_type=appointment_type, value=value, notes=notes, series_id=series_id
        )
        result = SeriesBookingResult(series_id=series_id, booked=[anchor])

        for candidate in expand(rule, anchor):
            try:
                appointment = await self.book(
                    patient_id, therapist_id, candidate.start, candidate.end,
                    appointment_type=appointment_type, value=value, notes=notes, series_id=series_id
                )
            except SchedulingConflictError as e:
                result.failed.append(SeriesOccurrenceFailure(
                    start=candidate.start, end=candidate.end,
                    error_code=e.error_code, message=e.message,
                    conflicting_ids=e.conflicting_ids
                ))
            except BaseCustomException as e:
                result.failed.append(SeriesOccurrenceFailure(
                    start=candidate.start, end=candidate.end,
                    error_code=e.error_code, message=e.message
                ))
            else:
                result.booked.append(appointment)

        logger.info(
            f"Series {series_id}: booked {len(result.booked)}, skipped {len(result.failed)} occurrence(s)"
        )
        return result

    # ---- status changes ----

    @staticmethod
    def _propose(appointment: Appointment, plan: TransitionPlan) -> Appointment:
        """Copy of the appointment as it will be once the plan is applied"""
        record = plan.record
        return appointment.model_copy(update={
            "status": record.to_status,
            "start_time": plan.new_start or appointment.start_time,
            "end_time": plan.new_end or appointment.end_time,
            "updated_at": record.changed_at,
            "status_history": [*appointment.status_history, record],
        })

    async def _persist_plans(
        self,
        appointment: Appointment,
        plans: List[TransitionPlan],
        proposed: Appointment
    ) -> None:
        """Persist every record of ``plans`` in one write, then apply them locally"""
        token = self.tracker.start(appointment.id)
        try:
            await self.repository.save_with_history(proposed, [plan.record for plan in plans])
        except BaseCustomException:
            raise
        except Exception as e:
            raise handle_persistence_error(e, "change appointment status") from e
        finally:
            current = self.tracker.finish(appointment.id, token)

        if not current:
            raise ConflictError(
                message="This change was superseded by a newer edit",
                details={"appointment_id": str(appointment.id)},
                error_code="STALE_COMMIT"
            )
        for plan in plans:
            self.status_machine.commit(appointment, plan)

    async def change_status(
        self,
        appointment_id: uuid.UUID,
        to_status: AppointmentStatus,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
        new_start: Optional[datetime] = None,
        new_end: Optional[datetime] = None
    ) -> StatusChangeRecord:
        """Validate, persist, then apply a status transition"""
        appointment = self.get_appointment(appointment_id)
        self.tracker.ensure_idle(appointment.id)

        plan = self.status_machine.plan_transition(
            appointment, to_status, reason, notes, changed_by, new_start, new_end,
            existing=self.appointments
        )
        await self._persist_plans(appointment, [plan], self._propose(appointment, plan))
        await self._notify(appointment, plan.record)
        return plan.record

    async def reschedule(
        self,
        appointment_id: uuid.UUID,
        new_start: datetime,
        new_end: datetime,
        reason: str,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None
    ) -> Appointment:
        """Move the appointment and put it back on the schedule.

        Both status records (to ``rescheduled``, then back to ``scheduled``)
        are saved in one write: either the whole move happens or none of it.
        """
        appointment = self.get_appointment(appointment_id)
        self.tracker.ensure_idle(appointment.id)

        moving = self.status_machine.plan_transition(
            appointment, AppointmentStatus.RESCHEDULED, reason, notes, changed_by,
            new_start=new_start, new_end=new_end, existing=self.appointments
        )
        moved = self._propose(appointment, moving)
        back = self.status_machine.plan_transition(
            moved, AppointmentStatus.SCHEDULED,
            notes="Back on schedule after reschedule", changed_by=changed_by,
            existing=self.appointments
        )
        await self._persist_plans(appointment, [moving, back], self._propose(moved, back))
        # One message for the move; the return to scheduled is bookkeeping
        await self._notify(appointment, moving.record)
        return appointment

    async def _notify(self, appointment: Appointment, record: StatusChangeRecord) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_status_change(appointment, record)
        except Exception as e:
            # Delivery problems never undo a committed transition
            logger.warning(f"Status notification for appointment {appointment.id} failed: {e}")
