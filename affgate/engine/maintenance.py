"""Periodic housekeeping: expired windows, old events, stale verification tokens."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affgate.config import Settings
from affgate.engine.verification import VerificationEngine
from affgate.storage import counters
from affgate.storage import repositories as repo
from affgate.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceConfig:
    window_grace: timedelta = timedelta(hours=24)
    event_retention: timedelta = timedelta(days=30)
    interval_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings: Settings) -> "MaintenanceConfig":
        return cls(
            window_grace=timedelta(hours=settings.window_retention_hours),
            event_retention=timedelta(days=settings.event_retention_days),
            interval_seconds=settings.maintenance_interval_seconds,
        )


@dataclass(frozen=True)
class MaintenanceReport:
    windows_deleted: int = 0
    rate_limit_events_deleted: int = 0
    usage_events_deleted: int = 0
    tokens_purged: int = 0
    verifications_attempted: int = 0


class MaintenanceRunner:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        verification: VerificationEngine | None = None,
        config: MaintenanceConfig | None = None,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self._verification = verification
        self.config = config or MaintenanceConfig()
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def purge_expired_windows(self, grace: timedelta | None = None) -> int:
        before = self._clock() - (grace if grace is not None else self.config.window_grace)
        async with self._session_maker() as db, db.begin():
            return await counters.delete_expired_windows(db, before)

    async def purge_old_events(self, retention: timedelta | None = None) -> tuple[int, int]:
        """Delete rate-limit and usage events older than the audit window."""
        before = self._clock() - (retention if retention is not None else self.config.event_retention)
        async with self._session_maker() as db, db.begin():
            rate_limit_events = await counters.delete_events_before(db, before)
            usage_events = await repo.delete_usage_before(db, before)
        return rate_limit_events, usage_events

    async def run_once(self) -> MaintenanceReport:
        windows = await self.purge_expired_windows()
        rate_limit_events, usage_events = await self.purge_old_events()
        tokens = attempted = 0
        if self._verification is not None:
            tokens = await self._verification.purge_stale_tokens()
            attempted = await self._verification.run_pending()
        report = MaintenanceReport(windows, rate_limit_events, usage_events, tokens, attempted)
        logger.info("Maintenance run complete: %s", report)
        return report

    def start(self) -> None:
        if self.config.interval_seconds <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="maintenance")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Maintenance run failed")
