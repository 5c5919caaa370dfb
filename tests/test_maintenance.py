"""Housekeeping tests."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from affgate.engine.maintenance import MaintenanceConfig, MaintenanceRunner
from affgate.engine.rate_limiter import RateLimiter
from affgate.engine.usage import DatabaseUsageSink, UsageRecord
from affgate.engine.verification import VerificationConfig, VerificationEngine
from affgate.models import RateLimitEvent, RateLimitWindow, UsageEvent
from affgate.models.enums import Granularity, IdentifierType, VerificationMethod


async def _count(session_maker, model) -> int:
    async with session_maker() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_run_once_purges_expired_data(session_maker, credentials, clock):
    limiter = RateLimiter(session_maker, clock=clock)
    await limiter.check_and_increment("https://a.example.com", IdentifierType.DOMAIN, "/x", {Granularity.MINUTE: 5})
    await limiter.check_and_increment("https://b.example.com", IdentifierType.DOMAIN, "/x", {Granularity.MINUTE: 0})
    await DatabaseUsageSink(session_maker).record(
        UsageRecord(1, "/x", clock.now, "allowed", 1.5)
    )

    tenant, _ = await credentials.create_tenant("https://c.example.com")
    engine = VerificationEngine(credentials, {}, config=VerificationConfig())
    await engine.begin_verification(tenant.id, VerificationMethod.FILE)

    clock.advance(timedelta(days=31))
    runner = MaintenanceRunner(session_maker, engine, MaintenanceConfig(), clock)
    report = await runner.run_once()

    assert report.windows_deleted == 2
    assert report.rate_limit_events_deleted == 1
    assert report.usage_events_deleted == 1
    assert report.tokens_purged == 1
    assert report.verifications_attempted == 0
    assert await _count(session_maker, RateLimitWindow) == 0
    assert await _count(session_maker, RateLimitEvent) == 0
    assert await _count(session_maker, UsageEvent) == 0


@pytest.mark.asyncio
async def test_recent_windows_are_kept(session_maker, clock):
    limiter = RateLimiter(session_maker, clock=clock)
    await limiter.check_and_increment("https://a.example.com", IdentifierType.DOMAIN, "/x", {Granularity.DAY: 5})
    clock.advance(timedelta(hours=30))
    runner = MaintenanceRunner(session_maker, config=MaintenanceConfig(), clock=clock)
    # day window reset at midnight, only ~18h before "now"
    assert await runner.purge_expired_windows() == 0
    clock.advance(timedelta(hours=12))
    assert await runner.purge_expired_windows() == 1


@pytest.mark.asyncio
async def test_violated_windows_age_out(session_maker, clock):
    limiter = RateLimiter(session_maker, clock=clock)
    limits = {Granularity.MINUTE: 1}
    await limiter.check_and_increment("https://a.example.com", IdentifierType.DOMAIN, "/x", limits)
    denied = await limiter.check_and_increment("https://a.example.com", IdentifierType.DOMAIN, "/x", limits)
    assert denied.granularity == Granularity.MINUTE

    runner = MaintenanceRunner(session_maker, config=MaintenanceConfig(), clock=clock)
    clock.advance(timedelta(hours=23))
    assert await runner.purge_expired_windows() == 0
    clock.advance(timedelta(hours=2))
    assert await runner.purge_expired_windows() == 1
    # escalation history lives in the event log, not the window
    assert await _count(session_maker, RateLimitEvent) == 1


@pytest.mark.asyncio
async def test_loop_lifecycle(session_maker):
    disabled = MaintenanceRunner(session_maker, config=MaintenanceConfig(interval_seconds=0))
    disabled.start()
    assert disabled._task is None

    runner = MaintenanceRunner(session_maker, config=MaintenanceConfig(interval_seconds=3600))
    runner.start()
    assert runner._task is not None
    await runner.stop()
    assert runner._task is None
