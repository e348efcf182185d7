from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.database import get_db
from app.infrastructure.notifications import StatusNotifier
from app.domain.appointments.interactions import CommitTracker
from app.domain.appointments.repository import AppointmentRepository
from app.domain.appointments.service import AppointmentService

# One in-flight guard for the whole process, so concurrent requests on the
# same appointment see each other's pending saves
commit_tracker = CommitTracker()


def get_appointment_repository(db: AsyncSession = Depends(get_db)) -> AppointmentRepository:
    return AppointmentRepository(db)


def get_notifier() -> StatusNotifier:
    return StatusNotifier()


def get_commit_tracker() -> CommitTracker:
    return commit_tracker


def get_appointment_service(
    repository=Depends(get_appointment_repository),
    notifier: StatusNotifier = Depends(get_notifier),
    tracker: CommitTracker = Depends(get_commit_tracker),
) -> AppointmentService:
    """Request-scoped service; routes load the collection they need"""
    return AppointmentService(repository, notifier=notifier, tracker=tracker)
