"""
Time slot utilities

Pure interval math shared by the conflict detector, the status machine and the
calendar gestures. Intervals are half-open: ``[start, end)``.
"""

from datetime import datetime, date, time, timedelta
import math


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """True when [a_start, a_end) and [b_start, b_end) intersect.

    Touching intervals (one ends exactly when the other starts) do not overlap.
    """
    return a_start < b_end and b_start < a_end


def snap_to_interval(value: datetime, granularity_minutes: int = 15) -> datetime:
    """Round to the nearest multiple of ``granularity_minutes`` past the hour.

    Seconds and microseconds are dropped before rounding, and ties round up, so
    with the default grid 09:07 -> 09:00 and 09:08 -> 09:15. Rounding may carry
    into the next hour or day (23:53 -> 00:00 next day).
    """
    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")
    hour_start = value.replace(minute=0, second=0, microsecond=0)
    snapped = math.floor(value.minute / granularity_minutes + 0.5) * granularity_minutes
    return hour_start + timedelta(minutes=snapped)


def business_window(day: date, open_hour: int = 7, close_hour: int = 19):
    """Opening and closing datetimes for ``day``. close_hour may be 24."""
    midnight = datetime.combine(day, time.min)
    return midnight + timedelta(hours=open_hour), midnight + timedelta(hours=close_hour)


def is_within_business_hours(
    start: datetime,
    end: datetime,
    open_hour: int = 7,
    close_hour: int = 19
) -> bool:
    """Whether [start, end) lies inside the opening hours of start's day.

    Never adjusts the interval: callers reject out-of-range proposals instead
    of silently shortening them.
    """
    opening, closing = business_window(start.date(), open_hour, close_hour)
    return opening <= start and end <= closing and start < end


# Name used by the calendar front end
clamp_to_business_hours = is_within_business_hours


def duration_minutes(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def restamp(value: datetime, target_date: date) -> datetime:
    """Same time of day on ``target_date``"""
    return datetime.combine(target_date, value.time())
