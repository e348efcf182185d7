"""
Recurrence expansion

Turns a weekly recurrence rule plus an anchor appointment into the concrete
candidate intervals of the series. Expansion does not persist or conflict-check
anything; booking each occurrence is the caller's job.
"""

from datetime import datetime, timedelta
from typing import List
import logging

from app.core.exceptions import ValidationError
from app.domain.appointments.schemas import Appointment, RecurrenceRule, TimeSlotCandidate

logger = logging.getLogger(__name__)

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def expand(rule: RecurrenceRule, anchor: Appointment) -> List[TimeSlotCandidate]:
    """Candidates after the anchor's date and before ``rule.until``.

    Every candidate keeps the anchor's time of day and duration. The anchor's
    own date is not emitted: that occurrence is the anchor appointment.
    """
    anchor_date = anchor.start_time.date()
    if rule.until <= anchor_date:
        raise ValidationError(
            message="Recurrence end date must be after the first appointment",
            details={"anchor_date": anchor_date.isoformat(), "until": rule.until.isoformat()},
            error_code="INVALID_RECURRENCE"
        )

    duration = anchor.end_time - anchor.start_time
    time_of_day = anchor.start_time.time()
    anchor_week = anchor_date - timedelta(days=anchor_date.weekday())
    weekdays = set(rule.days)

    candidates = []
    day = anchor_date + timedelta(days=1)
    while day < rule.until and len(candidates) < rule.max_occurrences:
        week_index = (day - anchor_week).days // 7
        if week_index % rule.interval == 0 and day.weekday() in weekdays:
            start = datetime.combine(day, time_of_day)
            candidates.append(
                TimeSlotCandidate(start=start, end=start + duration, therapist_id=anchor.therapist_id)
            )
        day += timedelta(days=1)

    if day < rule.until:
        logger.warning(f"Recurrence expansion stopped at {rule.max_occurrences} occurrences")

    return candidates


def describe(rule: RecurrenceRule) -> str:
    days = ", ".join(DAY_NAMES[d] for d in rule.days)
    if rule.interval == 1:
        text = f"Weekly on {days}"
    else:
        text = f"Every {rule.interval} weeks on {days}"
    return f"{text}, until {rule.until.isoformat()}"
