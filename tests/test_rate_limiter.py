"""Rate limiter tests against a real (sqlite) database."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from affgate.engine.rate_limiter import Allowed, Denied, RateLimiter, RateLimiterConfig
from affgate.models import RateLimitEvent, RateLimitWindow
from affgate.models.enums import Granularity, IdentifierType, RateLimitEventType, WindowStatus
from affgate.storage import counters

IDENT = "https://shop.example.com"
ENDPOINT = "/v1/codes/validate"


@pytest.fixture
def limiter(session_maker, clock):
    return RateLimiter(session_maker, RateLimiterConfig(escalation_threshold=3), clock)


async def _hit(limiter, limits):
    return await limiter.check_and_increment(IDENT, IdentifierType.DOMAIN, ENDPOINT, limits)


async def _window(session_maker, granularity=Granularity.MINUTE) -> RateLimitWindow:
    async with session_maker() as db:
        result = await db.execute(
            select(RateLimitWindow).where(RateLimitWindow.time_window == granularity)
        )
        return result.scalar_one()


async def _count(session_maker, model, *where) -> int:
    async with session_maker() as db:
        result = await db.execute(select(func.count()).select_from(model).where(*where))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_minute_cap_scenario(limiter, session_maker):
    """Cap 2: allowed, allowed, then denied until the next minute boundary."""
    limits = {Granularity.MINUTE: 2}
    first = await _hit(limiter, limits)
    second = await _hit(limiter, limits)
    third = await _hit(limiter, limits)

    assert isinstance(first, Allowed)
    assert first.tightest.remaining == 1
    assert isinstance(second, Allowed)
    assert isinstance(third, Denied)
    assert third.granularity == Granularity.MINUTE
    assert third.limit == 2
    assert third.retry_after == 30  # clock sits at 12:00:30
    assert third.escalate is False

    window = await _window(session_maker)
    assert window.request_count == 3
    assert window.blocked_count == 1
    assert window.violation_level == 1
    assert window.status == WindowStatus.EXCEEDED
    assert await _count(
        session_maker, RateLimitEvent, RateLimitEvent.event_type == RateLimitEventType.VIOLATION
    ) == 1


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(limiter, session_maker):
    n = 20
    decisions = await asyncio.gather(*[_hit(limiter, {Granularity.MINUTE: 100}) for _ in range(n)])
    assert all(isinstance(d, Allowed) for d in decisions)
    assert (await _window(session_maker)).request_count == n
    assert await _count(session_maker, RateLimitWindow) == 1


@pytest.mark.asyncio
async def test_concurrent_rollover_converges(limiter, session_maker, clock):
    """Racers on an expired window produce one window holding every request."""
    limits = {Granularity.MINUTE: 100}
    await _hit(limiter, limits)
    clock.advance(timedelta(minutes=2))

    m = 10
    await asyncio.gather(*[_hit(limiter, limits) for _ in range(m)])

    window = await _window(session_maker)
    assert window.request_count == m
    assert window.window_start == clock.now.replace(second=0, microsecond=0)
    assert await _count(session_maker, RateLimitWindow) == 1
    assert await _count(
        session_maker, RateLimitEvent, RateLimitEvent.event_type == RateLimitEventType.RESET
    ) == 1


@pytest.mark.asyncio
async def test_expired_window_resets_exceeded_status(limiter, session_maker, clock):
    limits = {Granularity.MINUTE: 1}
    await _hit(limiter, limits)
    assert isinstance(await _hit(limiter, limits), Denied)

    clock.advance(timedelta(minutes=1))
    assert isinstance(await _hit(limiter, limits), Allowed)

    window = await _window(session_maker)
    assert window.status == WindowStatus.ACTIVE
    assert window.request_count == 1
    assert window.violation_level == 1  # never decreases


@pytest.mark.asyncio
async def test_finest_breach_short_circuits(limiter, session_maker):
    limits = {Granularity.DAY: 10, Granularity.MINUTE: 1, Granularity.HOUR: None}
    await _hit(limiter, limits)
    denied = await _hit(limiter, limits)
    assert isinstance(denied, Denied)
    assert denied.granularity == Granularity.MINUTE
    # the day window is not counted for the denied request
    assert (await _window(session_maker, Granularity.DAY)).request_count == 1
    assert await _count(
        session_maker, RateLimitWindow, RateLimitWindow.time_window == Granularity.HOUR
    ) == 0


@pytest.mark.asyncio
async def test_zero_limit_denies_everything(limiter):
    decision = await _hit(limiter, {Granularity.MINUTE: 0})
    assert isinstance(decision, Denied)


@pytest.mark.asyncio
async def test_third_violation_escalates(limiter, session_maker):
    limits = {Granularity.MINUTE: 1}
    await _hit(limiter, limits)
    results = [await _hit(limiter, limits) for _ in range(3)]
    assert [r.escalate for r in results] == [False, False, True]
    assert await _count(
        session_maker, RateLimitEvent, RateLimitEvent.event_type == RateLimitEventType.ESCALATION
    ) == 1


@pytest.mark.asyncio
async def test_violations_outside_period_do_not_escalate(limiter, clock):
    limits = {Granularity.MINUTE: 1}
    await _hit(limiter, limits)
    await _hit(limiter, limits)
    await _hit(limiter, limits)

    clock.advance(timedelta(hours=25))
    await _hit(limiter, limits)
    result = await _hit(limiter, limits)
    assert isinstance(result, Denied)
    assert result.escalate is False


@pytest.mark.asyncio
async def test_reset_window_and_get_windows(limiter):
    limits = {Granularity.MINUTE: 1}
    await _hit(limiter, limits)
    assert isinstance(await _hit(limiter, limits), Denied)

    assert await limiter.reset_window(IDENT, IdentifierType.DOMAIN, ENDPOINT, Granularity.MINUTE)
    assert isinstance(await _hit(limiter, limits), Allowed)

    windows = await limiter.get_windows(IDENT)
    assert [w.time_window for w in windows] == [Granularity.MINUTE]
    assert not await limiter.reset_window(IDENT, IdentifierType.DOMAIN, "/other", Granularity.MINUTE)


@pytest.mark.asyncio
async def test_escalation_count_restarts_after_escalation(limiter, clock):
    limits = {Granularity.MINUTE: 1}
    await _hit(limiter, limits)
    assert [(await _hit(limiter, limits)).escalate for _ in range(3)] == [False, False, True]

    clock.advance(timedelta(minutes=5))
    assert isinstance(await _hit(limiter, limits), Allowed)
    assert [(await _hit(limiter, limits)).escalate for _ in range(3)] == [False, False, True]


@pytest.mark.asyncio
async def test_manual_reset_is_not_reported_as_rollover(limiter, session_maker, clock):
    limits = {Granularity.MINUTE: 1}
    await _hit(limiter, limits)
    clock.advance(timedelta(minutes=1))
    assert isinstance(await _hit(limiter, limits), Allowed)  # rollover
    clock.advance(timedelta(seconds=5))
    assert isinstance(await _hit(limiter, limits), Denied)

    assert await limiter.reset_window(IDENT, IdentifierType.DOMAIN, ENDPOINT, Granularity.MINUTE)
    clock.advance(timedelta(seconds=5))
    assert isinstance(await _hit(limiter, limits), Allowed)

    async with session_maker() as db:
        resets = (
            await db.execute(
                select(RateLimitEvent).where(RateLimitEvent.event_type == RateLimitEventType.RESET)
            )
        ).scalars().all()
    assert sorted(bool(e.details.get("manual")) for e in resets) == [False, True]
    window = await _window(session_maker)
    assert window.first_request_at == window.window_start + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_window_purged_between_create_and_increment(limiter, session_maker, monkeypatch):
    """A row deleted before the UPDATE is recreated instead of failing the request."""
    real_ensure = counters.ensure_window
    calls = []

    async def purged_once(db, *args):
        calls.append(args)
        if len(calls) == 1:
            return
        await real_ensure(db, *args)

    monkeypatch.setattr(counters, "ensure_window", purged_once)
    decision = await _hit(limiter, {Granularity.MINUTE: 5})

    assert isinstance(decision, Allowed)
    assert len(calls) == 2
    assert (await _window(session_maker)).request_count == 1


@pytest.mark.asyncio
async def test_failures_place_temporary_block(limiter, clock):
    thresholds = {Granularity.MINUTE: 2, Granularity.HOUR: 10}
    ip = "203.0.113.9"
    assert await limiter.record_failure(ip, IdentifierType.IP, thresholds, timedelta(minutes=30)) is None
    assert await limiter.blocked_until(ip, IdentifierType.IP) is None

    until = await limiter.record_failure(ip, IdentifierType.IP, thresholds, timedelta(minutes=30))
    assert until == clock.now + timedelta(minutes=30)
    assert await limiter.blocked_until(ip, IdentifierType.IP) == until
    assert await limiter.blocked_until("203.0.113.10", IdentifierType.IP) is None

    clock.advance(timedelta(minutes=30))
    assert await limiter.blocked_until(ip, IdentifierType.IP) is None
