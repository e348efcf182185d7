from typing import Dict, Any, Optional

from loguru import logger

from app.domain.appointments.models import AppointmentStatus
from app.domain.appointments.schemas import Appointment, StatusChangeRecord


STATUS_MESSAGES = {
    AppointmentStatus.SCHEDULED: "Your appointment on {start:%d/%m/%Y} at {start:%H:%M} is booked.",
    AppointmentStatus.CONFIRMED: "Your appointment on {start:%d/%m/%Y} at {start:%H:%M} is confirmed.",
    AppointmentStatus.COMPLETED: "Thank you for attending your appointment on {start:%d/%m/%Y}.",
    AppointmentStatus.CANCELLED: "Your appointment on {start:%d/%m/%Y} at {start:%H:%M} was cancelled.",
    AppointmentStatus.NO_SHOW: "We missed you at your appointment on {start:%d/%m/%Y} at {start:%H:%M}.",
    AppointmentStatus.RESCHEDULED: "Your appointment was moved to {start:%d/%m/%Y} at {start:%H:%M}.",
}


async def send_notification(recipient: str, subject: str, body: str, channel: str = "email") -> Dict[str, Any]:
    """Lightweight notification sender used by the scheduling service.

    Placeholder adapter; swap in a real provider (SMTP, SMS gateway) here.
    """
    logger.info(f"Sending {channel} notification to {recipient}: {subject}")
    return {"status": "sent", "recipient": recipient, "channel": channel}


class StatusNotifier:
    """Patient-facing messages after a status change. Best-effort only."""

    def __init__(self, channel: str = "email", sender=None):
        self.channel = channel
        self.sender = sender or send_notification

    def build_message(self, appointment: Appointment, record: StatusChangeRecord) -> str:
        body = STATUS_MESSAGES[record.to_status].format(start=appointment.start_time)
        if record.reason and record.to_status in (AppointmentStatus.CANCELLED, AppointmentStatus.RESCHEDULED):
            body = f"{body} Reason: {record.reason}"
        return body

    async def notify_status_change(
        self,
        appointment: Appointment,
        record: StatusChangeRecord,
        recipient: Optional[str] = None
    ) -> Dict[str, Any]:
        recipient = recipient or f"patient:{appointment.patient_id}"
        subject = f"Appointment {record.to_status.value.replace('_', ' ')}"
        try:
            result = await self.sender(recipient, subject, self.build_message(appointment, record), self.channel)
        except Exception as e:
            logger.warning(f"Notification for appointment {appointment.id} failed: {e}")
            return {"status": "error", "error": str(e)}
        if result.get("status") != "sent":
            logger.warning(f"Notification for appointment {appointment.id} not delivered: {result}")
        return result
