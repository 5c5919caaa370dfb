"""Usage event sinks."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affgate.storage import repositories as repo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    tenant_id: int
    endpoint: str
    timestamp: datetime
    outcome: str
    latency_ms: float
    metadata: dict = field(default_factory=dict)


class UsageEventSink(Protocol):
    async def record(self, event: UsageRecord) -> None: ...


class LoggingUsageSink:
    """Writes usage records to the application log."""

    async def record(self, event: UsageRecord) -> None:
        logger.info(
            "usage tenant=%s endpoint=%s outcome=%s latency_ms=%.2f",
            event.tenant_id, event.endpoint, event.outcome, event.latency_ms,
        )


class DatabaseUsageSink:
    """Appends usage records to the usage_events table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def record(self, event: UsageRecord) -> None:
        async with self._session_maker() as db, db.begin():
            await repo.add_usage_event(
                db,
                tenant_id=event.tenant_id,
                endpoint=event.endpoint,
                timestamp=event.timestamp,
                outcome=event.outcome,
                latency_ms=event.latency_ms,
                metadata_json=event.metadata,
            )
