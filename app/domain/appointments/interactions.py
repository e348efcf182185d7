"""
Calendar gestures

Drag and resize sessions for the appointment calendar. A gesture produces live
previews from pointer positions using cheap arithmetic only; opening hours and
the conflict scan run once, when the gesture ends. Invalid drops revert
silently and never mutate the appointment.

The controller owns at most one session. Commits go through the persistence
collaborator first and are applied locally only once the save succeeded.
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Union
import enum
import logging
import uuid

from pydantic import BaseModel, ConfigDict

from app.core.config import settings
from app.core.exceptions import (
    BaseCustomException, CommitInProgressError, MinimumDurationViolationError,
    OutOfBusinessHoursError, SchedulingConflictError, ValidationError,
    handle_persistence_error
)
from app.domain.appointments.conflicts import ensure_bookable
from app.domain.appointments.schemas import Appointment, TimeSlotCandidate
from app.domain.appointments.timeslots import restamp, snap_to_interval

logger = logging.getLogger(__name__)

# Rejections that make a dropped card snap back without an error dialog
SILENT_REJECTIONS = (OutOfBusinessHoursError, SchedulingConflictError, MinimumDurationViolationError)


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    RESIZING = "resizing"
    COMMITTING = "committing"
    CANCELLED = "cancelled"


class ResizeEdge(str, enum.Enum):
    TOP = "top"
    BOTTOM = "bottom"


class TimeGridMapping:
    """Default pixel-to-time mapping for a vertical day column.

    Pixel 0 is ``day_start_hour`` and every hour is ``hour_height_px`` tall.
    Any object with the same two methods can replace it.
    """

    def __init__(self, day_start_hour: Optional[int] = None, hour_height_px: Optional[float] = None):
        self.day_start_hour = settings.BUSINESS_OPEN_HOUR if day_start_hour is None else day_start_hour
        self.hour_height_px = settings.CALENDAR_HOUR_HEIGHT_PX if hour_height_px is None else hour_height_px
        if self.hour_height_px <= 0:
            raise ValueError("hour_height_px must be positive")

    def position_to_time(self, pixel_y: float, day: date) -> datetime:
        origin = datetime.combine(day, time.min) + timedelta(hours=self.day_start_hour)
        return origin + timedelta(hours=pixel_y / self.hour_height_px)

    def time_to_position(self, value: datetime) -> float:
        origin = datetime.combine(value.date(), time.min) + timedelta(hours=self.day_start_hour)
        return (value - origin).total_seconds() / 3600 * self.hour_height_px


class GestureResult(BaseModel):
    """Outcome of ending a gesture"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    appointment_id: uuid.UUID
    committed: bool
    start: datetime
    end: datetime
    error: Optional[BaseCustomException] = None
    stale: bool = False


class CommitTracker:
    """Per-appointment in-flight flag with abandon-on-new-edit support.

    ``start`` hands out a generation token. A save is applied only if its token
    is still current when it resolves; ``abandon`` bumps the generation so a
    stale save's result gets discarded.
    """

    def __init__(self):
        self._generations: Dict[uuid.UUID, int] = {}
        self._in_flight: Dict[uuid.UUID, int] = {}

    def is_pending(self, appointment_id: uuid.UUID) -> bool:
        return appointment_id in self._in_flight

    def ensure_idle(self, appointment_id: uuid.UUID) -> None:
        if self.is_pending(appointment_id):
            raise CommitInProgressError(appointment_id)

    def start(self, appointment_id: uuid.UUID) -> int:
        self.ensure_idle(appointment_id)
        token = self._generations.get(appointment_id, 0) + 1
        self._generations[appointment_id] = token
        self._in_flight[appointment_id] = token
        return token

    def finish(self, appointment_id: uuid.UUID, token: int) -> bool:
        """Release the flag; True when the result may still be applied"""
        current = self._generations.get(appointment_id) == token
        if self._in_flight.get(appointment_id) == token:
            del self._in_flight[appointment_id]
        return current

    def abandon(self, appointment_id: uuid.UUID) -> None:
        if self._in_flight.pop(appointment_id, None) is not None:
            logger.info(f"Abandoned pending save for appointment {appointment_id}")
        self._generations[appointment_id] = self._generations.get(appointment_id, 0) + 1


class GestureSession:
    """State shared by drag and resize sessions"""

    phase = SessionPhase.IDLE

    def __init__(self, appointment: Appointment, pointer_y: float):
        self.appointment = appointment
        self.original_start = appointment.start_time
        self.original_end = appointment.end_time
        self.start_y = pointer_y
        self.preview: Optional[TimeSlotCandidate] = None

    @property
    def active(self) -> bool:
        return self.phase in (SessionPhase.DRAGGING, SessionPhase.RESIZING)


class DragSession(GestureSession):
    phase = SessionPhase.DRAGGING

    def __init__(self, appointment: Appointment, pointer_y: float, grab_offset: float):
        super().__init__(appointment, pointer_y)
        # Distance between the pointer and the card's top edge
        self.grab_offset = grab_offset


class ResizeSession(GestureSession):
    phase = SessionPhase.RESIZING

    def __init__(self, appointment: Appointment, pointer_y: float, edge: ResizeEdge):
        super().__init__(appointment, pointer_y)
        self.edge = ResizeEdge(edge)


class CalendarController:
    """Runs drag/resize gestures for one calendar view.

    ``appointments`` is the live collection used for conflict scans (a list
    kept up to date by the caller, or a callable returning one). It is read
    again right before every commit.
    """

    def __init__(
        self,
        repository,
        appointments: Union[Iterable[Appointment], Callable[[], Iterable[Appointment]]],
        mapping: Any = None,
        tracker: Optional[CommitTracker] = None,
        open_hour: Optional[int] = None,
        close_hour: Optional[int] = None,
        snap_minutes: Optional[int] = None,
        min_duration_minutes: Optional[int] = None,
        pixels_per_minute: Optional[float] = None
    ):
        self.repository = repository
        self._appointments = appointments
        self.mapping = mapping or TimeGridMapping()
        self.tracker = tracker or CommitTracker()
        self.open_hour = settings.BUSINESS_OPEN_HOUR if open_hour is None else open_hour
        self.close_hour = settings.BUSINESS_CLOSE_HOUR if close_hour is None else close_hour
        self.snap_minutes = settings.SNAP_INTERVAL_MINUTES if snap_minutes is None else snap_minutes
        self.min_duration = timedelta(minutes=(
            settings.MIN_APPOINTMENT_MINUTES if min_duration_minutes is None else min_duration_minutes
        ))
        self.pixels_per_minute = (
            settings.RESIZE_PIXELS_PER_MINUTE if pixels_per_minute is None else pixels_per_minute
        )
        self.session: Optional[GestureSession] = None

    def current_appointments(self) -> Iterable[Appointment]:
        if callable(self._appointments):
            return self._appointments()
        return self._appointments

    # ---- session lifecycle ----

    def begin_drag(self, appointment: Appointment, pointer_y: float, supersede: bool = False) -> DragSession:
        self._prepare_begin(appointment, supersede)
        grab_offset = pointer_y - self.mapping.time_to_position(appointment.start_time)
        self.session = DragSession(appointment, pointer_y, grab_offset)
        return self.session

    def begin_resize(
        self,
        appointment: Appointment,
        edge: ResizeEdge,
        pointer_y: float,
        supersede: bool = False
    ) -> ResizeSession:
        self._prepare_begin(appointment, supersede)
        self.session = ResizeSession(appointment, pointer_y, edge)
        return self.session

    def _prepare_begin(self, appointment: Appointment, supersede: bool) -> None:
        """Cancel the current gesture and check no save is pending.

        With ``supersede`` a pending save of the same appointment is abandoned
        instead: its result is discarded when it resolves and the new gesture
        starts from the interval the appointment has locally.
        """
        if self.session is not None:
            self.cancel()
        if supersede and self.tracker.is_pending(appointment.id):
            self.tracker.abandon(appointment.id)
        self.tracker.ensure_idle(appointment.id)

    def cancel(self) -> None:
        """Drop the active gesture; the appointment keeps its stored interval"""
        if self.session is not None:
            self.session.phase = SessionPhase.CANCELLED
            self.session.preview = None
        self.session = None

    def _require_session(self, kind: type) -> GestureSession:
        if not isinstance(self.session, kind) or not self.session.active:
            raise ValidationError(
                message=f"No active {kind.__name__} gesture",
                error_code="NO_ACTIVE_GESTURE"
            )
        return self.session

    # ---- previews ----

    def update(self, pointer_y: float) -> TimeSlotCandidate:
        """Live preview for the active gesture. Pure arithmetic, no validation."""
        session = self._require_session(GestureSession)
        if isinstance(session, DragSession):
            candidate = self._drag_candidate(session, pointer_y)
        else:
            candidate = self._resize_candidate(session, pointer_y)
        session.preview = candidate
        return candidate

    def _drag_candidate(self, session: DragSession, pointer_y: float) -> TimeSlotCandidate:
        raw_start = self.mapping.position_to_time(pointer_y - session.grab_offset, session.original_start.date())
        start = snap_to_interval(raw_start, self.snap_minutes)
        return TimeSlotCandidate(
            start=start,
            end=start + (session.original_end - session.original_start),
            therapist_id=session.appointment.therapist_id
        )

    def _resize_candidate(self, session: ResizeSession, pointer_y: float) -> TimeSlotCandidate:
        delta = timedelta(minutes=(pointer_y - session.start_y) / self.pixels_per_minute)
        start, end = session.original_start, session.original_end

        if session.edge == ResizeEdge.TOP:
            start = start + delta
        else:
            end = end + delta
        start, end = self._enforce_min_duration(start, end, session.edge)

        start = snap_to_interval(start, self.snap_minutes)
        end = snap_to_interval(end, self.snap_minutes)
        start, end = self._enforce_min_duration(start, end, session.edge)

        return TimeSlotCandidate(start=start, end=end, therapist_id=session.appointment.therapist_id)

    def _enforce_min_duration(self, start: datetime, end: datetime, edge: ResizeEdge):
        # The edge under the pointer wins; the other one is pushed away
        if end - start < self.min_duration:
            if edge == ResizeEdge.TOP:
                end = start + self.min_duration
            else:
                start = end - self.min_duration
        return start, end

    # ---- drop ----

    async def end_drag(self, pointer_y: float, target_date: Optional[date] = None) -> GestureResult:
        session = self._require_session(DragSession)
        candidate = self._drag_candidate(session, pointer_y)
        if target_date is not None:
            start = restamp(candidate.start, target_date)
            candidate = TimeSlotCandidate(
                start=start,
                end=start + (candidate.end - candidate.start),
                therapist_id=candidate.therapist_id
            )
        return await self._finish(session, candidate)

    async def end_resize(self, pointer_y: Optional[float] = None) -> GestureResult:
        session = self._require_session(ResizeSession)
        if pointer_y is not None:
            candidate = self._resize_candidate(session, pointer_y)
        else:
            candidate = session.preview or session.appointment.to_candidate()
        return await self._finish(session, candidate)

    async def _finish(self, session: GestureSession, candidate: TimeSlotCandidate) -> GestureResult:
        appointment = session.appointment
        session.phase = SessionPhase.COMMITTING
        self.session = None

        if candidate.start == session.original_start and candidate.end == session.original_end:
            return self._result(appointment, committed=False)

        try:
            ensure_bookable(
                candidate,
                self.current_appointments(),
                exclude_id=appointment.id,
                open_hour=self.open_hour,
                close_hour=self.close_hour,
                min_duration_minutes=int(self.min_duration.total_seconds() // 60)
            )
        except SILENT_REJECTIONS as e:
            logger.info(f"Drop of appointment {appointment.id} reverted: {e.message}")
            return self._result(appointment, committed=False, error=e)

        token = self.tracker.start(appointment.id)
        proposed = appointment.model_copy(update={
            "start_time": candidate.start,
            "end_time": candidate.end,
            "updated_at": datetime.now(),
        })
        try:
            await self.repository.save_appointment(proposed)
        except BaseCustomException:
            raise
        except Exception as e:
            raise handle_persistence_error(e, "save appointment interval") from e
        finally:
            current = self.tracker.finish(appointment.id, token)

        if not current:
            logger.info(f"Discarded stale save for appointment {appointment.id}")
            return self._result(appointment, committed=False, stale=True)

        appointment.move_to(candidate.start, candidate.end)
        logger.info(
            f"Appointment {appointment.id} moved to {candidate.start.isoformat()} - {candidate.end.isoformat()}"
        )
        return self._result(appointment, committed=True)

    @staticmethod
    def _result(appointment: Appointment, committed: bool, **kwargs) -> GestureResult:
        return GestureResult(
            appointment_id=appointment.id,
            committed=committed,
            start=appointment.start_time,
            end=appointment.end_time,
            **kwargs
        )
