"""
Appointments Domain Models

Implements the database models for:
- Appointment scheduling
- Append-only appointment status history
"""

from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Integer, Numeric,
    Text, Enum, CheckConstraint, Uuid, Index
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.infrastructure.database import Base
import uuid
import enum


class AppointmentStatus(str, enum.Enum):
    """Appointment status enumeration"""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class AppointmentType(str, enum.Enum):
    """Type of appointment"""
    EVALUATION = "evaluation"
    SESSION = "session"
    RETURN = "return"
    GROUP = "group"


class PaymentStatus(str, enum.Enum):
    """Payment status of an appointment"""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class AppointmentModel(Base):
    """Appointment table for patient-therapist bookings"""
    __tablename__ = "appointments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Owned by the patient and therapist services
    patient_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    therapist_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    # Scheduling
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)

    # Type and status
    type = Column(Enum(AppointmentType), nullable=False, default=AppointmentType.SESSION)
    status = Column(Enum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED)

    # Recurrence
    series_id = Column(Uuid(as_uuid=True), index=True)

    # Financial
    value = Column(Numeric(10, 2))
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING)

    notes = Column(Text)

    # Audit
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    status_changes = relationship(
        "StatusChangeModel",
        back_populates="appointment",
        order_by="StatusChangeModel.sequence",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint('end_time > start_time', name='check_appointment_time_order'),
        Index('ix_appointments_therapist_start', 'therapist_id', 'start_time'),
    )


class StatusChangeModel(Base):
    """Append-only history of appointment status changes"""
    __tablename__ = "appointment_status_changes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    appointment_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # Position in the appointment's history, starting at 0
    sequence = Column(Integer, nullable=False)

    from_status = Column(Enum(AppointmentStatus), nullable=False)
    to_status = Column(Enum(AppointmentStatus), nullable=False)
    reason = Column(Text)
    notes = Column(Text)
    changed_by = Column(String(100))
    changed_at = Column(DateTime, nullable=False, default=func.now())

    appointment = relationship("AppointmentModel", back_populates="status_changes")
