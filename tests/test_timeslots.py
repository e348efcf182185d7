import pytest
from datetime import date, datetime, timedelta

from app.domain.appointments.timeslots import (
    overlaps, snap_to_interval, business_window, is_within_business_hours, restamp
)
from conftest import at, DAY


@pytest.mark.unit
class TestOverlaps:
    """Half-open interval overlap."""

    @pytest.mark.parametrize("a,b,expected", [
        (("09:00", "10:00"), ("09:30", "10:30"), True),
        (("09:00", "10:00"), ("10:00", "11:00"), False),
        (("09:00", "10:00"), ("08:00", "09:00"), False),
        (("09:00", "12:00"), ("10:00", "11:00"), True),
        (("09:00", "09:15"), ("09:14", "09:30"), True),
    ])
    def test_overlap_cases(self, a, b, expected) -> None:
        assert overlaps(at(a[0]), at(a[1]), at(b[0]), at(b[1])) is expected

    @pytest.mark.parametrize("a,b", [
        (("09:00", "10:00"), ("09:30", "10:30")),
        (("09:00", "10:00"), ("10:00", "11:00")),
        (("07:00", "19:00"), ("12:00", "12:15")),
    ])
    def test_overlap_is_symmetric(self, a, b) -> None:
        assert overlaps(at(a[0]), at(a[1]), at(b[0]), at(b[1])) == overlaps(at(b[0]), at(b[1]), at(a[0]), at(a[1]))

    def test_non_empty_interval_overlaps_itself(self) -> None:
        assert overlaps(at("09:00"), at("09:15"), at("09:00"), at("09:15"))


@pytest.mark.unit
class TestSnapToInterval:
    """Rounding to the snap grid."""

    @pytest.mark.parametrize("raw,expected", [
        ("09:07", "09:00"),
        ("09:08", "09:15"),
        ("09:22", "09:15"),
        ("09:23", "09:30"),
        ("09:53", "10:00"),
        ("09:45", "09:45"),
    ])
    def test_rounds_to_nearest_quarter(self, raw: str, expected: str) -> None:
        assert snap_to_interval(at(raw)) == at(expected)

    def test_drops_seconds(self) -> None:
        assert snap_to_interval(datetime(2025, 3, 3, 9, 14, 59)) == at("09:15")

    def test_carries_into_next_day(self) -> None:
        assert snap_to_interval(datetime(2025, 3, 3, 23, 53)) == datetime(2025, 3, 4, 0, 0)

    @pytest.mark.parametrize("minute", range(0, 60, 7))
    def test_idempotent(self, minute: int) -> None:
        value = datetime(2025, 3, 3, 10, minute)
        once = snap_to_interval(value)
        assert snap_to_interval(once) == once
        assert once.minute % 15 == 0

    def test_custom_granularity(self) -> None:
        assert snap_to_interval(at("09:14"), 30) == at("09:00")
        assert snap_to_interval(at("09:16"), 30) == at("09:30")

    def test_rejects_non_positive_granularity(self) -> None:
        with pytest.raises(ValueError):
            snap_to_interval(at("09:00"), 0)


@pytest.mark.unit
class TestBusinessHours:
    """Opening hours checks."""

    def test_business_window(self) -> None:
        opening, closing = business_window(DAY, 7, 19)
        assert opening == at("07:00")
        assert closing == at("19:00")

    def test_close_hour_24_is_midnight(self) -> None:
        _, closing = business_window(DAY, 0, 24)
        assert closing == datetime.combine(DAY + timedelta(days=1), datetime.min.time())

    @pytest.mark.parametrize("start,end,expected", [
        ("07:00", "08:00", True),
        ("18:00", "19:00", True),
        ("06:45", "07:45", False),
        ("18:30", "19:30", False),
        ("19:30", "20:30", False),
    ])
    def test_within_business_hours(self, start: str, end: str, expected: bool) -> None:
        assert is_within_business_hours(at(start), at(end), 7, 19) is expected

    def test_never_adjusts_interval(self) -> None:
        start, end = at("18:30"), at("19:30")
        assert not is_within_business_hours(start, end)
        assert (start, end) == (at("18:30"), at("19:30"))

    def test_restamp_keeps_time_of_day(self) -> None:
        assert restamp(at("10:15"), date(2025, 3, 5)) == datetime(2025, 3, 5, 10, 15)
