import asyncio
import pytest
import uuid
from datetime import timedelta

from app.core.exceptions import (
    CommitInProgressError, ConflictError, InvalidTransitionError, NotFoundError,
    PersistenceFailureError, ReasonRequiredError, SchedulingConflictError, ValidationError
)
from app.domain.appointments.interactions import CommitTracker
from app.domain.appointments.models import AppointmentStatus
from app.domain.appointments.schemas import RecurrenceRule
from app.domain.appointments.service import AppointmentService
from conftest import at, DAY, THERAPIST_ID, PATIENT_ID, RecordingNotifier

S = AppointmentStatus


async def book(service: AppointmentService, start: str = "09:00", end: str = "10:00"):
    return await service.book(PATIENT_ID, THERAPIST_ID, at(start), at(end))


@pytest.mark.scheduling
class TestBooking:
    """Single and series booking."""

    async def test_book_persists_then_tracks(self, service, repository) -> None:
        appointment = await book(service)

        assert appointment.status == S.SCHEDULED
        assert appointment.id in repository.saved
        assert service.appointments == [appointment]

    async def test_book_conflict(self, service, repository) -> None:
        first = await book(service, "09:00", "10:00")
        with pytest.raises(SchedulingConflictError) as exc_info:
            await book(service, "09:30", "10:30")

        assert exc_info.value.conflicting_ids == [str(first.id)]
        assert len(repository.saved) == 1
        assert len(service.appointments) == 1

    async def test_book_adjacent(self, service) -> None:
        await book(service, "09:00", "10:00")
        await book(service, "10:00", "11:00")
        assert len(service.appointments) == 2

    async def test_book_inverted_interval(self, service) -> None:
        with pytest.raises(ValidationError):
            await book(service, "10:00", "09:00")

    async def test_book_persistence_failure(self, service, repository) -> None:
        repository.fail_with = RuntimeError("database is locked")
        with pytest.raises(PersistenceFailureError):
            await book(service)
        assert service.appointments == []

    async def test_series_reports_conflicting_occurrences(self, service, make_appointment) -> None:
        blocker = make_appointment("09:30", "10:30", day=DAY + timedelta(days=3))
        service.appointments.append(blocker)
        rule = RecurrenceRule(days=[1, 3], until=DAY + timedelta(days=14))

        result = await service.book_series(PATIENT_ID, THERAPIST_ID, at("09:00"), at("10:00"), rule)

        assert len(result.booked) == 4
        assert all(a.series_id == result.series_id for a in result.booked)
        assert len(result.failed) == 1
        assert result.failed[0].start == at("09:00", DAY + timedelta(days=3))
        assert result.failed[0].conflicting_ids == [str(blocker.id)]

    async def test_series_anchor_conflict_aborts(self, service, make_appointment, repository) -> None:
        service.appointments.append(make_appointment("09:00", "10:00"))
        rule = RecurrenceRule(days=[1], until=DAY + timedelta(days=14))

        with pytest.raises(SchedulingConflictError):
            await service.book_series(PATIENT_ID, THERAPIST_ID, at("09:00"), at("10:00"), rule)
        assert repository.saved == {}


@pytest.mark.scheduling
class TestStatusChanges:
    """Status transitions through the service."""

    async def test_change_status_persists_history(self, service, repository) -> None:
        appointment = await book(service)
        record = await service.change_status(appointment.id, S.CONFIRMED, changed_by="reception")

        assert appointment.status == S.CONFIRMED
        assert appointment.status_history == [record]
        assert repository.saved[appointment.id].status == S.CONFIRMED
        assert repository.status_changes[appointment.id] == [record]

    async def test_invalid_transition_leaves_no_trace(self, service, repository) -> None:
        appointment = await book(service)
        saves = repository.save_calls

        with pytest.raises(InvalidTransitionError):
            await service.change_status(appointment.id, S.COMPLETED)
        with pytest.raises(ReasonRequiredError):
            await service.change_status(appointment.id, S.CANCELLED, reason=" ")

        assert appointment.status == S.SCHEDULED
        assert repository.save_calls == saves
        assert appointment.id not in repository.status_changes

    async def test_persistence_failure_leaves_appointment_untouched(self, service, repository) -> None:
        appointment = await book(service)
        repository.fail_with = RuntimeError("connection reset")

        with pytest.raises(PersistenceFailureError):
            await service.change_status(appointment.id, S.CONFIRMED)

        assert appointment.status == S.SCHEDULED
        assert appointment.status_history == []
        assert not service.tracker.is_pending(appointment.id)

    async def test_notifier_failure_does_not_undo(self, repository) -> None:
        notifier = RecordingNotifier(fail=True)
        service = AppointmentService(repository, notifier=notifier)
        appointment = await book(service)

        await service.change_status(appointment.id, S.CANCELLED, reason="patient sick")

        assert appointment.status == S.CANCELLED
        assert notifier.calls == [(appointment.id, S.CANCELLED)]

    async def test_cancelled_slot_can_be_rebooked(self, service) -> None:
        appointment = await book(service)
        await service.change_status(appointment.id, S.CANCELLED, reason="patient sick")
        other = await book(service)
        assert other.id != appointment.id

    async def test_reschedule(self, service, repository) -> None:
        appointment = await book(service)
        moved = await service.reschedule(appointment.id, at("14:00"), at("15:00"), reason="doctor away")

        assert moved is appointment
        assert (moved.start_time, moved.end_time) == (at("14:00"), at("15:00"))
        assert moved.status == S.SCHEDULED
        assert [(r.from_status, r.to_status) for r in moved.status_history] == [
            (S.SCHEDULED, S.RESCHEDULED), (S.RESCHEDULED, S.SCHEDULED)
        ]
        assert moved.status_history[0].reason == "doctor away"
        assert len(repository.status_changes[appointment.id]) == 2
        assert repository.saved[appointment.id].start_time == at("14:00")

    async def test_reschedule_into_conflict(self, service) -> None:
        appointment = await book(service, "09:00", "10:00")
        await book(service, "14:00", "15:00")

        with pytest.raises(SchedulingConflictError):
            await service.reschedule(appointment.id, at("14:30"), at("15:30"), reason="later")
        assert appointment.start_time == at("09:00")
        assert appointment.status == S.SCHEDULED

    async def test_change_while_saving_rejected(self, service, repository) -> None:
        appointment = await book(service)
        repository.gate = asyncio.Event()
        pending = asyncio.create_task(service.change_status(appointment.id, S.CONFIRMED))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        with pytest.raises(CommitInProgressError):
            await service.change_status(appointment.id, S.CANCELLED, reason="duplicate")

        repository.gate.set()
        await pending
        assert appointment.status == S.CONFIRMED

    async def test_abandoned_change_raises_stale(self, service, repository) -> None:
        appointment = await book(service)
        repository.gate = asyncio.Event()
        pending = asyncio.create_task(service.change_status(appointment.id, S.CONFIRMED))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        service.tracker.abandon(appointment.id)
        repository.gate.set()

        with pytest.raises(ConflictError) as exc_info:
            await pending
        assert exc_info.value.error_code == "STALE_COMMIT"
        assert appointment.status == S.SCHEDULED


@pytest.mark.scheduling
class TestQueries:

    async def test_allowed_transitions_sorted(self, service) -> None:
        appointment = await book(service)
        assert service.allowed_transitions(appointment.id) == [S.CANCELLED, S.CONFIRMED, S.RESCHEDULED]

    async def test_unknown_appointment(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.get_appointment(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await service.load_for_appointment(uuid.uuid4())

    async def test_refresh_keeps_shared_list(self, service, repository) -> None:
        appointment = await book(service)
        controller = service.calendar_controller()
        shared = service.appointments

        await service.refresh(therapist_id=THERAPIST_ID)

        assert service.appointments is shared
        assert [a.id for a in controller.current_appointments()] == [appointment.id]
        assert controller.tracker is service.tracker

    async def test_available_slots_uses_collection(self, service) -> None:
        await book(service, "09:00", "10:00")
        slots = service.get_available_slots(THERAPIST_ID, DAY, 60)
        taken = [s["start"] for s in slots if not s["available"]]
        assert at("09:00") in taken
        assert at("10:00") not in taken


@pytest.mark.scheduling
class TestConsistency:
    """Rebooked slots, competing services and all-or-nothing reschedules."""

    async def test_reinstating_over_rebooked_slot_conflicts(self, service, repository) -> None:
        cancelled = await book(service, "09:00", "10:00")
        await service.change_status(cancelled.id, S.CANCELLED, reason="patient sick")
        replacement = await book(service, "09:00", "10:00")

        with pytest.raises(SchedulingConflictError) as exc_info:
            await service.change_status(cancelled.id, S.SCHEDULED)

        assert exc_info.value.conflicting_ids == [str(replacement.id)]
        assert cancelled.status == S.CANCELLED
        assert repository.saved[cancelled.id].status == S.CANCELLED

    async def test_reinstating_free_slot(self, service) -> None:
        appointment = await book(service)
        await service.change_status(appointment.id, S.CANCELLED, reason="patient sick")
        await service.change_status(appointment.id, S.SCHEDULED)
        assert appointment.status == S.SCHEDULED

    async def test_stale_service_cannot_split_row_from_history(self, repository) -> None:
        first = AppointmentService(repository)
        appointment = await book(first)
        second = AppointmentService(repository)
        await second.refresh(therapist_id=THERAPIST_ID)

        await first.change_status(appointment.id, S.CONFIRMED)
        with pytest.raises(ConflictError) as exc_info:
            await second.change_status(appointment.id, S.CANCELLED, reason="duplicate booking")

        assert exc_info.value.error_code == "HISTORY_OUT_OF_ORDER"
        assert repository.saved[appointment.id].status == S.CONFIRMED
        assert [r.to_status for r in repository.status_changes[appointment.id]] == [S.CONFIRMED]
        assert second.get_appointment(appointment.id).status == S.SCHEDULED
        assert not second.tracker.is_pending(appointment.id)

    async def test_services_sharing_tracker_see_pending_save(self, repository) -> None:
        tracker = CommitTracker()
        first = AppointmentService(repository, tracker=tracker)
        appointment = await book(first)
        second = AppointmentService(repository, tracker=tracker)
        await second.refresh(therapist_id=THERAPIST_ID)

        repository.gate = asyncio.Event()
        pending = asyncio.create_task(first.change_status(appointment.id, S.CONFIRMED))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        with pytest.raises(CommitInProgressError):
            await second.change_status(appointment.id, S.CANCELLED, reason="duplicate booking")

        repository.gate.set()
        await pending
        assert repository.saved[appointment.id].status == S.CONFIRMED

    async def test_failed_reschedule_changes_nothing(self, service, repository) -> None:
        appointment = await book(service)
        repository.fail_with = RuntimeError("connection reset")

        with pytest.raises(PersistenceFailureError):
            await service.reschedule(appointment.id, at("14:00"), at("15:00"), reason="doctor away")

        assert appointment.status == S.SCHEDULED
        assert (appointment.start_time, appointment.end_time) == (at("09:00"), at("10:00"))
        assert appointment.status_history == []
        assert repository.saved[appointment.id].start_time == at("09:00")
        assert appointment.id not in repository.status_changes

    async def test_reschedule_is_one_write_and_one_message(self, repository, notifier) -> None:
        service = AppointmentService(repository, notifier=notifier)
        appointment = await book(service)
        saves = repository.save_calls

        await service.reschedule(appointment.id, at("14:00"), at("15:00"), reason="doctor away")

        assert repository.save_calls == saves + 1
        assert notifier.calls == [(appointment.id, S.RESCHEDULED)]
