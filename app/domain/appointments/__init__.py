# Appointments domain module
from app.domain.appointments.models import (
    AppointmentStatus,
    AppointmentType,
    PaymentStatus,
)
from app.domain.appointments.schemas import (
    Appointment,
    RecurrenceRule,
    StatusChangeRecord,
    TimeSlotCandidate,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AppointmentType",
    "PaymentStatus",
    "RecurrenceRule",
    "StatusChangeRecord",
    "TimeSlotCandidate",
]
