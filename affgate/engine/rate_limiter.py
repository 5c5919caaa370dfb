"""Multi-window rate limiter with violation escalation."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affgate.config import Settings
from affgate.engine.windows import ordered, period_bounds, retry_after_seconds
from affgate.models import RateLimitWindow
from affgate.models.enums import Granularity, IdentifierType, RateLimitEventType
from affgate.storage import counters
from affgate.storage.counters import WindowKey, WindowState
from affgate.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

FAILURE_ENDPOINT = "auth_failed"
BLOCK_ENDPOINT = "temporarily_blocked"


@dataclass(frozen=True)
class RateLimiterConfig:
    escalation_threshold: int = 3
    escalation_period: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiterConfig":
        return cls(
            escalation_threshold=settings.escalation_threshold,
            escalation_period=timedelta(hours=settings.escalation_period_hours),
        )


@dataclass(frozen=True)
class WindowSnapshot:
    granularity: Granularity
    limit: int
    count: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class Allowed:
    windows: list[WindowSnapshot] = field(default_factory=list)

    @property
    def tightest(self) -> WindowSnapshot | None:
        """Window with the fewest remaining requests."""
        if not self.windows:
            return None
        return min(self.windows, key=lambda w: (w.remaining, w.reset_at))


@dataclass(frozen=True)
class Denied:
    granularity: Granularity
    limit: int
    retry_after: int
    escalate: bool = False


Decision = Allowed | Denied


class RateLimiter:
    """Counts attempted requests per window and decides allow/deny.

    Every call runs in its own transaction that is committed whether the
    request is allowed or denied.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: RateLimiterConfig | None = None,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.config = config or RateLimiterConfig()
        self._clock = clock

    async def check_and_increment(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        endpoint: str,
        limits: Mapping[Granularity, int | None],
    ) -> Decision:
        """Increment each configured window (finest first) and report the first breach.

        A granularity missing from ``limits`` or mapped to None is unlimited.
        """
        configured = {Granularity(g): lim for g, lim in limits.items() if lim is not None}
        now = self._clock()
        snapshots: list[WindowSnapshot] = []

        async with self._session_maker() as db, db.begin():
            for granularity in ordered(configured):
                limit = max(0, int(configured[granularity]))
                key = WindowKey(identifier, identifier_type, endpoint, granularity)
                start, reset_at = period_bounds(granularity, now)

                state = await counters.count_request(db, key, limit, start, reset_at, now)
                if _rolled_over(state, now):
                    await counters.record_event(
                        db, RateLimitEventType.RESET, identifier, endpoint, now,
                        rate_limit_id=state.id,
                        details={"granularity": granularity.value},
                    )

                if state.request_count > state.limit_amount:
                    return await self._deny(db, key, state, now)

                snapshots.append(
                    WindowSnapshot(granularity, state.limit_amount, state.request_count, state.reset_at)
                )

        return Allowed(snapshots)

    async def _deny(
        self, db: AsyncSession, key: WindowKey, state: WindowState, now: datetime
    ) -> Denied:
        state = await counters.mark_exceeded(db, state.id, now)
        await counters.record_event(
            db, RateLimitEventType.VIOLATION, key.identifier, key.endpoint, now,
            rate_limit_id=state.id,
            details={
                "granularity": key.time_window.value,
                "limit": state.limit_amount,
                "count": state.request_count,
                "violation_level": state.violation_level,
            },
        )

        # an escalation starts a fresh count, so a reinstated tenant gets the full threshold again
        last_escalation = await counters.latest_event_at(
            db, key.identifier, RateLimitEventType.ESCALATION
        )
        violations = await counters.count_events_since(
            db, key.identifier, RateLimitEventType.VIOLATION,
            now - self.config.escalation_period, after=last_escalation,
        )
        escalate = violations >= self.config.escalation_threshold
        if escalate:
            await counters.record_event(
                db, RateLimitEventType.ESCALATION, key.identifier, key.endpoint, now,
                rate_limit_id=state.id,
                details={"violations": violations, "threshold": self.config.escalation_threshold},
            )
            logger.warning(
                "Escalation for %s:%s after %d violations", key.identifier_type.value,
                key.identifier, violations,
            )
        else:
            logger.info(
                "Rate limit exceeded for %s on %s (%s limit %d)",
                key.identifier, key.endpoint, key.time_window.value, state.limit_amount,
            )

        return Denied(
            granularity=key.time_window,
            limit=state.limit_amount,
            retry_after=retry_after_seconds(state.reset_at, now),
            escalate=escalate,
        )

    async def get_windows(self, identifier: str) -> list[RateLimitWindow]:
        async with self._session_maker() as db:
            return await counters.list_windows(db, identifier)

    async def reset_window(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        endpoint: str,
        granularity: Granularity,
    ) -> bool:
        now = self._clock()
        key = WindowKey(identifier, identifier_type, endpoint, granularity)
        async with self._session_maker() as db, db.begin():
            reset = await counters.reset_window(db, key, now)
            if reset:
                await counters.record_event(
                    db, RateLimitEventType.RESET, identifier, endpoint, now,
                    details={"granularity": granularity.value, "manual": True},
                )
        return reset

    async def record_failure(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        thresholds: Mapping[Granularity, int | None],
        block_for: timedelta,
    ) -> datetime | None:
        """Count one failed attempt per window; block once any threshold is reached.

        Returns the block expiry when this failure placed (or extended) a block.
        """
        configured = {Granularity(g): lim for g, lim in thresholds.items() if lim}
        now = self._clock()
        async with self._session_maker() as db, db.begin():
            reached = False
            for granularity in ordered(configured):
                key = WindowKey(identifier, identifier_type, FAILURE_ENDPOINT, granularity)
                start, reset_at = period_bounds(granularity, now)
                state = await counters.count_request(
                    db, key, configured[granularity], start, reset_at, now
                )
                reached = reached or state.request_count >= state.limit_amount
            if not reached:
                return None

            until = now + block_for
            await counters.block_window(db, _block_key(identifier, identifier_type), now, until)
            await counters.record_event(
                db, RateLimitEventType.BLOCK, identifier, BLOCK_ENDPOINT, now,
                details={"until": until.isoformat(), "identifier_type": identifier_type.value},
            )
        logger.warning(
            "Temporarily blocked %s %s until %s", identifier_type.value, identifier, until
        )
        return until

    async def blocked_until(self, identifier: str, identifier_type: IdentifierType) -> datetime | None:
        async with self._session_maker() as db:
            return await counters.blocked_until(db, _block_key(identifier, identifier_type), self._clock())


def _block_key(identifier: str, identifier_type: IdentifierType) -> WindowKey:
    # block rows carry their own expiry in reset_at; the granularity is nominal
    return WindowKey(identifier, identifier_type, BLOCK_ENDPOINT, Granularity.MINUTE)


def _rolled_over(state: WindowState, now: datetime) -> bool:
    """First request of a new period on a row created in an earlier period."""
    return (
        state.request_count == 1
        and state.first_request_at == now
        and state.created_at < state.window_start
    )
