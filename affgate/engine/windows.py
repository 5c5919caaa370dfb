"""Calendar period math for rate-limit windows."""

import math
from datetime import datetime, timedelta

from affgate.models.enums import Granularity

# Ascending window size; the limiter walks granularities in this order.
GRANULARITY_ORDER: tuple[Granularity, ...] = (
    Granularity.MINUTE,
    Granularity.HOUR,
    Granularity.DAY,
    Granularity.MONTH,
)


def period_start(granularity: Granularity, now: datetime) -> datetime:
    """Start of the calendar period containing ``now``."""
    if granularity == Granularity.MINUTE:
        return now.replace(second=0, microsecond=0)
    if granularity == Granularity.HOUR:
        return now.replace(minute=0, second=0, microsecond=0)
    if granularity == Granularity.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == Granularity.MONTH:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unknown granularity: {granularity}")


def period_end(granularity: Granularity, now: datetime) -> datetime:
    """Exclusive end (next boundary) of the period containing ``now``."""
    start = period_start(granularity, now)
    if granularity == Granularity.MINUTE:
        return start + timedelta(minutes=1)
    if granularity == Granularity.HOUR:
        return start + timedelta(hours=1)
    if granularity == Granularity.DAY:
        return start + timedelta(days=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def period_bounds(granularity: Granularity, now: datetime) -> tuple[datetime, datetime]:
    return period_start(granularity, now), period_end(granularity, now)


def retry_after_seconds(reset_at: datetime, now: datetime) -> int:
    """Whole seconds until ``reset_at``, never less than 1."""
    return max(1, math.ceil((reset_at - now).total_seconds()))


def ordered(granularities) -> list[Granularity]:
    """Sort granularities finest first, dropping duplicates."""
    wanted = {Granularity(g) for g in granularities}
    return [g for g in GRANULARITY_ORDER if g in wanted]
