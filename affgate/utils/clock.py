"""Time helpers.

All persisted timestamps are naive UTC so they compare the same way on
Postgres and sqlite.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
