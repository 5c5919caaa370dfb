"""Atomic rate-limit window operations.

Each function issues single statements whose effect is atomic per row on both
Postgres (row lock, predicate re-check under READ COMMITTED) and sqlite
(database write lock). Callers own the transaction.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, delete, func, literal, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from affgate.models import RateLimitEvent, RateLimitWindow
from affgate.models.enums import (
    Granularity,
    IdentifierType,
    RateLimitEventType,
    WindowStatus,
)


@dataclass(frozen=True)
class WindowKey:
    identifier: str
    identifier_type: IdentifierType
    endpoint: str
    time_window: Granularity


@dataclass(frozen=True)
class WindowState:
    """Post-update snapshot of a window row."""

    id: int
    request_count: int
    limit_amount: int
    window_start: datetime
    reset_at: datetime
    blocked_count: int
    violation_level: int
    first_request_at: datetime | None
    created_at: datetime


_KEY_COLUMNS = ["identifier", "identifier_type", "endpoint", "time_window"]

_STATE_COLUMNS = (
    RateLimitWindow.id,
    RateLimitWindow.request_count,
    RateLimitWindow.limit_amount,
    RateLimitWindow.window_start,
    RateLimitWindow.reset_at,
    RateLimitWindow.blocked_count,
    RateLimitWindow.violation_level,
    RateLimitWindow.first_request_at,
    RateLimitWindow.created_at,
)


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Unsupported dialect for window upsert: {dialect}")


def _key_clause(key: WindowKey):
    return (
        (RateLimitWindow.identifier == key.identifier)
        & (RateLimitWindow.identifier_type == key.identifier_type)
        & (RateLimitWindow.endpoint == key.endpoint)
        & (RateLimitWindow.time_window == key.time_window)
    )


async def ensure_window(
    db: AsyncSession,
    key: WindowKey,
    limit: int,
    window_start: datetime,
    reset_at: datetime,
    now: datetime,
) -> None:
    """Create the window row if missing; concurrent creators collapse to one row."""
    insert = _insert_for(db)
    stmt = (
        insert(RateLimitWindow)
        .values(
            identifier=key.identifier,
            identifier_type=key.identifier_type,
            endpoint=key.endpoint,
            time_window=key.time_window,
            window_start=window_start,
            reset_at=reset_at,
            request_count=0,
            limit_amount=limit,
            blocked_count=0,
            status=WindowStatus.ACTIVE,
            violation_level=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=_KEY_COLUMNS)
    )
    await db.execute(stmt)


async def increment_window(
    db: AsyncSession,
    key: WindowKey,
    limit: int,
    window_start: datetime,
    reset_at: datetime,
    now: datetime,
) -> WindowState | None:
    """Roll the window over if expired and count one request, in one UPDATE.

    ``window_start``/``reset_at`` are the bounds of the period containing
    ``now``; they are only applied when the stored window has expired, so every
    racer computes the same canonical new window. Returns None when the row
    does not exist.
    """
    expired = RateLimitWindow.reset_at <= now
    stmt = (
        update(RateLimitWindow)
        .where(_key_clause(key))
        .values(
            request_count=case((expired, 1), else_=RateLimitWindow.request_count + 1),
            window_start=case((expired, window_start), else_=RateLimitWindow.window_start),
            reset_at=case((expired, reset_at), else_=RateLimitWindow.reset_at),
            status=case(
                (expired, literal(WindowStatus.ACTIVE.value)),
                else_=RateLimitWindow.status,
            ),
            first_request_at=case(
                (expired, now),
                else_=func.coalesce(RateLimitWindow.first_request_at, now),
            ),
            limit_amount=limit,
            last_request_at=now,
            updated_at=now,
        )
        .returning(*_STATE_COLUMNS)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).one_or_none()
    return None if row is None else WindowState(*row)


async def count_request(
    db: AsyncSession,
    key: WindowKey,
    limit: int,
    window_start: datetime,
    reset_at: datetime,
    now: datetime,
) -> WindowState:
    """ensure_window + increment_window.

    A purge can delete an expired row between the two statements; the row is
    then created again and counted once more.
    """
    for _ in range(2):
        await ensure_window(db, key, limit, window_start, reset_at, now)
        state = await increment_window(db, key, limit, window_start, reset_at, now)
        if state is not None:
            return state
    raise NoResultFound(f"Rate limit window vanished: {key}")


async def mark_exceeded(db: AsyncSession, window_id: int, now: datetime) -> WindowState:
    """Record a breach: exceeded status, blocked_count and violation_level up by one."""
    stmt = (
        update(RateLimitWindow)
        .where(RateLimitWindow.id == window_id)
        .values(
            status=WindowStatus.EXCEEDED,
            blocked_count=RateLimitWindow.blocked_count + 1,
            violation_level=RateLimitWindow.violation_level + 1,
            last_blocked_at=now,
            updated_at=now,
        )
        .returning(*_STATE_COLUMNS)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).one()
    return WindowState(*row)


async def block_window(db: AsyncSession, key: WindowKey, now: datetime, until: datetime) -> None:
    """Put ``key`` in blocked status until ``until``; an existing block is extended."""
    await ensure_window(db, key, 0, now, until, now)
    await db.execute(
        update(RateLimitWindow)
        .where(_key_clause(key))
        .values(
            status=WindowStatus.BLOCKED,
            window_start=now,
            reset_at=until,
            blocked_count=RateLimitWindow.blocked_count + 1,
            last_blocked_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def blocked_until(db: AsyncSession, key: WindowKey, now: datetime) -> datetime | None:
    result = await db.execute(
        select(RateLimitWindow.reset_at).where(
            _key_clause(key),
            RateLimitWindow.status == WindowStatus.BLOCKED,
            RateLimitWindow.reset_at > now,
        )
    )
    return result.scalar_one_or_none()


async def reset_window(db: AsyncSession, key: WindowKey, now: datetime) -> bool:
    """Operator reset: zero the count and clear exceeded status."""
    result = await db.execute(
        update(RateLimitWindow)
        .where(_key_clause(key))
        .values(request_count=0, status=WindowStatus.ACTIVE, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def record_event(
    db: AsyncSession,
    event_type: RateLimitEventType,
    identifier: str,
    endpoint: str,
    now: datetime,
    rate_limit_id: int | None = None,
    details: dict | None = None,
) -> None:
    db.add(
        RateLimitEvent(
            rate_limit_id=rate_limit_id,
            event_type=event_type,
            identifier=identifier,
            endpoint=endpoint,
            details=details or {},
            created_at=now,
        )
    )
    await db.flush()


async def count_events_since(
    db: AsyncSession,
    identifier: str,
    event_type: RateLimitEventType,
    since: datetime,
    after: datetime | None = None,
) -> int:
    """Events at or after ``since``, and strictly after ``after`` when given."""
    conditions = [
        RateLimitEvent.identifier == identifier,
        RateLimitEvent.event_type == event_type,
        RateLimitEvent.created_at >= since,
    ]
    if after is not None:
        conditions.append(RateLimitEvent.created_at > after)
    result = await db.execute(select(func.count()).select_from(RateLimitEvent).where(*conditions))
    return int(result.scalar_one())


async def latest_event_at(
    db: AsyncSession, identifier: str, event_type: RateLimitEventType
) -> datetime | None:
    result = await db.execute(
        select(func.max(RateLimitEvent.created_at)).where(
            RateLimitEvent.identifier == identifier,
            RateLimitEvent.event_type == event_type,
        )
    )
    return result.scalar_one()


async def list_windows(db: AsyncSession, identifier: str) -> list[RateLimitWindow]:
    result = await db.execute(
        select(RateLimitWindow)
        .where(RateLimitWindow.identifier == identifier)
        .order_by(RateLimitWindow.endpoint, RateLimitWindow.id)
    )
    return list(result.scalars().all())


async def delete_expired_windows(db: AsyncSession, before: datetime) -> int:
    """Drop windows that reset before ``before``, violated or not."""
    result = await db.execute(
        delete(RateLimitWindow)
        .where(RateLimitWindow.reset_at < before)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def delete_events_before(db: AsyncSession, before: datetime) -> int:
    result = await db.execute(
        delete(RateLimitEvent)
        .where(RateLimitEvent.created_at < before)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
