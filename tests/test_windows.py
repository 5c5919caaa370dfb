"""Unit tests for window period math."""

from datetime import datetime

from affgate.engine.windows import ordered, period_bounds, period_end, retry_after_seconds
from affgate.models.enums import Granularity


def test_minute_bounds():
    """Minute window runs from the start of the minute to the next boundary."""
    start, end = period_bounds(Granularity.MINUTE, datetime(2026, 10, 19, 12, 0, 30, 500))
    assert start == datetime(2026, 10, 19, 12, 0)
    assert end == datetime(2026, 10, 19, 12, 1)


def test_hour_and_day_bounds():
    now = datetime(2026, 10, 19, 23, 59, 59)
    assert period_end(Granularity.HOUR, now) == datetime(2026, 10, 20, 0, 0)
    assert period_bounds(Granularity.DAY, now) == (
        datetime(2026, 10, 19),
        datetime(2026, 10, 20),
    )


def test_month_rolls_over_year():
    """December windows reset on January 1st of the next year."""
    assert period_bounds(Granularity.MONTH, datetime(2026, 12, 31, 8, 0)) == (
        datetime(2026, 12, 1),
        datetime(2027, 1, 1),
    )
    assert period_end(Granularity.MONTH, datetime(2026, 2, 14)) == datetime(2026, 3, 1)


def test_retry_after_rounds_up():
    now = datetime(2026, 10, 19, 12, 0, 30, 250000)
    assert retry_after_seconds(datetime(2026, 10, 19, 12, 1), now) == 30
    assert retry_after_seconds(now, now) == 1


def test_ordered_is_finest_first():
    assert ordered(["month", Granularity.MINUTE, "day"]) == [
        Granularity.MINUTE,
        Granularity.DAY,
        Granularity.MONTH,
    ]
