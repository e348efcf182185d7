"""
Appointments Repository Layer

Async persistence for appointments and their status history.
"""

from datetime import date, datetime, time
from typing import List, Optional, Sequence, Tuple, Union
import uuid

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import ConflictError, handle_persistence_error
from app.domain.appointments.models import AppointmentModel, StatusChangeModel
from app.domain.appointments.schemas import Appointment, StatusChangeRecord

DateOrDateTime = Union[date, datetime]


def _as_datetime(value: DateOrDateTime, end_of_range: bool = False) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max if end_of_range else time.min)


class AppointmentRepository:
    """Repository for appointment data access operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _to_domain(row: AppointmentModel) -> Appointment:
        return Appointment(
            id=row.id,
            patient_id=row.patient_id,
            therapist_id=row.therapist_id,
            start_time=row.start_time,
            end_time=row.end_time,
            status=row.status,
            type=row.type,
            series_id=row.series_id,
            value=row.value,
            payment_status=row.payment_status,
            notes=row.notes,
            created_at=row.created_at,
            updated_at=row.updated_at,
            status_history=[StatusChangeRecord.model_validate(change) for change in row.status_changes],
        )

    async def load_appointments(
        self,
        therapist_id: Optional[uuid.UUID] = None,
        date_range: Optional[Tuple[DateOrDateTime, DateOrDateTime]] = None
    ) -> List[Appointment]:
        """Appointments, optionally for one therapist and overlapping a date range"""
        query = select(AppointmentModel).options(selectinload(AppointmentModel.status_changes))
        if therapist_id:
            query = query.where(AppointmentModel.therapist_id == therapist_id)
        if date_range:
            range_start = _as_datetime(date_range[0])
            range_end = _as_datetime(date_range[1], end_of_range=True)
            query = query.where(
                AppointmentModel.start_time < range_end,
                AppointmentModel.end_time > range_start
            )
        query = query.order_by(AppointmentModel.start_time).execution_options(populate_existing=True)

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise handle_persistence_error(e, "load appointments") from e
        return [self._to_domain(row) for row in result.scalars().all()]

    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        """Get appointment by ID"""
        query = (
            select(AppointmentModel)
            .options(selectinload(AppointmentModel.status_changes))
            .where(AppointmentModel.id == appointment_id)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise handle_persistence_error(e, "get appointment") from e
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def save_appointment(self, appointment: Appointment) -> Appointment:
        """Insert or update the appointment's own fields. History is appended separately."""
        data = appointment.model_dump(exclude={"status_history"})
        try:
            await self._write_row(data)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise handle_persistence_error(e, "save appointment") from e
        return appointment

    async def save_with_history(
        self,
        appointment: Appointment,
        records: Sequence[StatusChangeRecord]
    ) -> Appointment:
        """Write the appointment row and its new status records in one commit.

        Nothing is written when the records do not continue the stored
        history, so the row status and its history never disagree.
        """
        data = appointment.model_dump(exclude={"status_history"})
        try:
            row = await self.db.get(AppointmentModel, appointment.id, populate_existing=True)
            await self._add_changes(appointment.id, records, row)
            await self._write_row(data, row)
            await self.db.commit()
        except ConflictError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise handle_persistence_error(e, "save appointment with history") from e
        return appointment

    async def append_status_change(self, appointment_id: uuid.UUID, record: StatusChangeRecord) -> None:
        """Append a record, refusing one that does not continue the stored history"""
        try:
            await self._add_changes(appointment_id, [record])
            await self.db.commit()
        except ConflictError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise handle_persistence_error(e, "append status change") from e

    async def _write_row(self, data: dict, row: Optional[AppointmentModel] = None) -> None:
        if row is None:
            row = await self.db.get(AppointmentModel, data["id"])
        if row is None:
            self.db.add(AppointmentModel(**data))
        else:
            for key, value in data.items():
                setattr(row, key, value)

    async def _add_changes(
        self,
        appointment_id: uuid.UUID,
        records: Sequence[StatusChangeRecord],
        row: Optional[AppointmentModel] = None
    ) -> None:
        result = await self.db.execute(
            select(StatusChangeModel)
            .where(StatusChangeModel.appointment_id == appointment_id)
            .order_by(StatusChangeModel.sequence.desc())
            .limit(1)
        )
        last = result.scalar_one_or_none()
        if last is not None:
            current = last.to_status
        elif row is not None:
            current = row.status
        else:
            current = None
        sequence = 0 if last is None else last.sequence + 1

        for record in records:
            if current is not None and current != record.from_status:
                raise ConflictError(
                    message="Status change does not follow the stored history",
                    details={
                        "appointment_id": str(appointment_id),
                        "stored_status": current.value,
                        "from_status": record.from_status.value,
                    },
                    error_code="HISTORY_OUT_OF_ORDER"
                )
            self.db.add(StatusChangeModel(
                id=record.id,
                appointment_id=appointment_id,
                sequence=sequence,
                from_status=record.from_status,
                to_status=record.to_status,
                reason=record.reason,
                notes=record.notes,
                changed_by=record.changed_by,
                changed_at=record.changed_at,
            ))
            current = record.to_status
            sequence += 1

    async def count(self, therapist_id: Optional[uuid.UUID] = None) -> int:
        query = select(func.count()).select_from(AppointmentModel)
        if therapist_id:
            query = query.where(AppointmentModel.therapist_id == therapist_id)
        result = await self.db.execute(query)
        return result.scalar_one()
