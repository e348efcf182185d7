import pytest
import uuid
from datetime import date, datetime, time
from typing import AsyncGenerator, Callable, Dict, List, Optional

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import app
from app.api.deps import get_appointment_repository, get_notifier
from app.core.exceptions import ConflictError
from app.domain.appointments.interactions import CalendarController, CommitTracker, TimeGridMapping
from app.domain.appointments.models import AppointmentStatus
from app.domain.appointments.schemas import Appointment, StatusChangeRecord
from app.domain.appointments.service import AppointmentService
from app.infrastructure.database import Base


# A Monday
DAY = date(2025, 3, 3)

THERAPIST_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_THERAPIST_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
PATIENT_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


def at(hhmm: str, day: date = DAY) -> datetime:
    hour, minute = (int(part) for part in hhmm.split(":"))
    return datetime.combine(day, time(hour, minute))


class InMemoryAppointmentRepository:
    """Persistence double with the same async interface as AppointmentRepository.

    ``fail_with`` makes the next save raise; ``gate`` (an asyncio.Event) holds
    saves until it is set.
    """

    def __init__(self):
        self.saved: Dict[uuid.UUID, Appointment] = {}
        self.status_changes: Dict[uuid.UUID, List[StatusChangeRecord]] = {}
        self.save_calls = 0
        self.fail_with: Optional[Exception] = None
        self.gate = None

    async def load_appointments(self, therapist_id=None, date_range=None) -> List[Appointment]:
        items = [a.model_copy(deep=True) for a in self.saved.values()]
        if therapist_id:
            items = [a for a in items if a.therapist_id == therapist_id]
        if date_range:
            first, last = date_range
            items = [a for a in items if first <= a.start_time.date() <= last]
        return sorted(items, key=lambda a: a.start_time)

    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        stored = self.saved.get(appointment_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_appointment(self, appointment: Appointment) -> Appointment:
        self.save_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        self.saved[appointment.id] = appointment.model_copy(deep=True)
        return appointment

    async def save_with_history(self, appointment: Appointment, records: List[StatusChangeRecord]) -> Appointment:
        self.save_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        self._check_continues(appointment.id, records)
        self.saved[appointment.id] = appointment.model_copy(deep=True)
        self.status_changes.setdefault(appointment.id, []).extend(records)
        return appointment

    async def append_status_change(self, appointment_id: uuid.UUID, record: StatusChangeRecord) -> None:
        self._check_continues(appointment_id, [record])
        self.status_changes.setdefault(appointment_id, []).append(record)

    def _check_continues(self, appointment_id: uuid.UUID, records: List[StatusChangeRecord]) -> None:
        history = self.status_changes.get(appointment_id)
        stored = self.saved.get(appointment_id)
        if history:
            current = history[-1].to_status
        else:
            current = stored.status if stored else None
        for record in records:
            if current is not None and current != record.from_status:
                raise ConflictError(
                    message="Status change does not follow the stored history",
                    error_code="HISTORY_OUT_OF_ORDER"
                )
            current = record.to_status


@pytest.fixture(scope="function")
def repository() -> InMemoryAppointmentRepository:
    return InMemoryAppointmentRepository()


@pytest.fixture(scope="function")
def make_appointment() -> Callable[..., Appointment]:
    """Factory for appointments on DAY, times given as 'HH:MM'."""

    def factory(
        start: str = "09:00",
        end: str = "10:00",
        therapist_id: uuid.UUID = THERAPIST_ID,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        day: date = DAY,
        **kwargs
    ) -> Appointment:
        return Appointment(
            patient_id=PATIENT_ID,
            therapist_id=therapist_id,
            start_time=at(start, day),
            end_time=at(end, day),
            status=status,
            **kwargs
        )

    return factory


@pytest.fixture(scope="function")
def service(repository: InMemoryAppointmentRepository) -> AppointmentService:
    return AppointmentService(repository)


@pytest.fixture(scope="function")
def controller(repository: InMemoryAppointmentRepository) -> CalendarController:
    """Controller over an empty collection; tests append to ``controller.current_appointments()``."""
    return CalendarController(
        repository,
        [],
        mapping=TimeGridMapping(day_start_hour=7, hour_height_px=64),
        tracker=CommitTracker(),
        open_hour=7,
        close_hour=19,
        snap_minutes=15,
        min_duration_minutes=15,
        pixels_per_minute=2.0
    )


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory SQLite database for each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()

    await engine.dispose()


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def notify_status_change(self, appointment, record, recipient=None):
        self.calls.append((appointment.id, record.to_status))
        if self.fail:
            raise RuntimeError("notification gateway down")
        return {"status": "sent"}


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
async def client(
    repository: InMemoryAppointmentRepository,
    notifier: RecordingNotifier
) -> AsyncGenerator[AsyncClient, None]:
    """API client backed by the in-memory repository."""
    app.dependency_overrides[get_appointment_repository] = lambda: repository
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# Test markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "scheduling: mark test as scheduling rules related"
    )
    config.addinivalue_line(
        "markers", "gestures: mark test as calendar drag/resize related"
    )
