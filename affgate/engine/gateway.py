"""Authorization gateway: credentials, policy and rate limits for one request."""

import asyncio
import ipaddress
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from affgate.config import Settings
from affgate.engine.credentials import CredentialStore
from affgate.engine.policy import check_policy
from affgate.engine.rate_limiter import Allowed, Denied, RateLimiter, WindowSnapshot
from affgate.engine.usage import UsageEventSink, UsageRecord
from affgate.engine.webhooks import Notifier
from affgate.engine.windows import retry_after_seconds
from affgate.errors import (
    AuthenticationError,
    EscalatedSuspension,
    GatewayError,
    PolicyViolation,
    RateLimitExceeded,
    TemporarilyBlocked,
)
from affgate.models import Tenant
from affgate.models.enums import Granularity, IdentifierType, TenantStatus
from affgate.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

SUSPENDED_EVENT = "security.suspended"
RATE_LIMITER_ACTOR = "rate_limiter"


@dataclass(frozen=True)
class GatewayConfig:
    unverified_endpoints: tuple[str, ...] = ("/v1/verification/*",)
    # failed authentications per client IP before a temporary block; None disables
    auth_failures_per_minute: int | None = 10
    auth_failures_per_hour: int | None = 60
    auth_block: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            unverified_endpoints=tuple(settings.unverified_endpoints),
            auth_failures_per_minute=settings.auth_failures_per_minute or None,
            auth_failures_per_hour=settings.auth_failures_per_hour or None,
            auth_block=timedelta(minutes=settings.auth_block_minutes),
        )

    @property
    def auth_failure_thresholds(self) -> dict[Granularity, int | None]:
        return {
            Granularity.MINUTE: self.auth_failures_per_minute,
            Granularity.HOUR: self.auth_failures_per_hour,
        }


@dataclass(frozen=True)
class AuthorizationRequest:
    api_key: str
    api_secret: str | None
    endpoint: str
    client_ip: str | None = None
    scheme: str | None = "https"


@dataclass(frozen=True)
class AuthorizationGrant:
    tenant_id: int
    domain_url: str
    windows: list[WindowSnapshot] = field(default_factory=list)

    @property
    def tightest(self) -> WindowSnapshot | None:
        return Allowed(self.windows).tightest


@dataclass(frozen=True)
class AuthorizationOutcome:
    """Boundary result: allowed, unauthorized, forbidden or too_many_requests."""

    outcome: str
    reason: str | None = None
    status_code: int = 200
    retry_after: int | None = None
    grant: AuthorizationGrant | None = None
    body: dict = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.outcome == "allowed"


def tenant_limits(tenant: Tenant) -> dict[Granularity, int | None]:
    return {
        Granularity.MINUTE: tenant.rate_limit_per_minute,
        Granularity.HOUR: tenant.rate_limit_per_hour,
        Granularity.DAY: tenant.max_daily_requests,
        Granularity.MONTH: tenant.max_monthly_requests,
    }


class AuthorizationGateway:
    def __init__(
        self,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        notifier: Notifier | None = None,
        usage_sink: UsageEventSink | None = None,
        config: GatewayConfig | None = None,
        clock: Clock = utcnow,
    ):
        self._credentials = credentials
        self._rate_limiter = rate_limiter
        self._notifier = notifier
        self._usage_sink = usage_sink
        self.config = config or GatewayConfig()
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationGrant:
        """Admit one request or raise a GatewayError subclass.

        Credential and policy failures never touch the tenant's rate-limit
        counters; failed authentications are counted against the client IP.
        """
        started = time.perf_counter()
        client_ip = _normalized_ip(request.client_ip)
        if client_ip is not None:
            await self._check_ip_block(client_ip)
        try:
            tenant = await self._authenticate(request)
        except AuthenticationError:
            if client_ip is not None:
                await self._record_auth_failure(client_ip)
            raise
        check_policy(
            tenant,
            request.endpoint,
            request.client_ip,
            request.scheme,
            self.config.unverified_endpoints,
        )

        decision = await self._rate_limiter.check_and_increment(
            tenant.domain_url, IdentifierType.DOMAIN, request.endpoint, tenant_limits(tenant)
        )
        if isinstance(decision, Denied):
            await self._handle_denial(tenant, request, decision)

        grant = AuthorizationGrant(tenant.id, tenant.domain_url, decision.windows)
        self._emit_usage(tenant, request, (time.perf_counter() - started) * 1000)
        return grant

    async def evaluate(self, request: AuthorizationRequest) -> AuthorizationOutcome:
        try:
            grant = await self.authorize(request)
        except EscalatedSuspension as exc:
            return AuthorizationOutcome(exc.code, exc.reason, exc.status_code, body=exc.to_dict())
        except GatewayError as exc:
            return AuthorizationOutcome(
                exc.code, exc.reason, exc.status_code, exc.retry_after, body=exc.to_dict()
            )
        return AuthorizationOutcome(
            "allowed",
            status_code=200,
            grant=grant,
            body={"outcome": "allowed", "tenant_id": grant.tenant_id},
        )

    async def drain(self) -> None:
        """Wait for outstanding usage emissions."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _check_ip_block(self, client_ip: str) -> None:
        until = await self._rate_limiter.blocked_until(client_ip, IdentifierType.IP)
        if until is not None:
            raise TemporarilyBlocked(retry_after_seconds(until, self._clock()))

    async def _record_auth_failure(self, client_ip: str) -> None:
        thresholds = self.config.auth_failure_thresholds
        if not any(thresholds.values()):
            return
        await self._rate_limiter.record_failure(
            client_ip, IdentifierType.IP, thresholds, self.config.auth_block
        )

    async def _authenticate(self, request: AuthorizationRequest) -> Tenant:
        tenant = await self._credentials.find_by_api_key(request.api_key)
        if tenant is None:
            raise AuthenticationError("invalid_api_key")
        if not self._credentials.verify_secret(tenant, request.api_secret):
            raise AuthenticationError("invalid_secret")
        if tenant.status == TenantStatus.SUSPENDED:
            raise PolicyViolation("suspended")
        if tenant.status != TenantStatus.ACTIVE:
            raise PolicyViolation("not_active")
        return tenant

    async def _handle_denial(
        self, tenant: Tenant, request: AuthorizationRequest, decision: Denied
    ) -> None:
        granularity = decision.granularity.value
        if not decision.escalate:
            raise RateLimitExceeded(granularity, decision.limit, decision.retry_after)

        reason = f"Repeated rate limit violations on {request.endpoint} ({granularity})"
        transitioned = await self._credentials.update_status(
            tenant.id, TenantStatus.SUSPENDED, reason, RATE_LIMITER_ACTOR
        )
        if transitioned and self._notifier is not None:
            self._notifier.enqueue(
                tenant.id,
                SUSPENDED_EVENT,
                {
                    "reason": reason,
                    "endpoint": request.endpoint,
                    "granularity": granularity,
                    "limit": decision.limit,
                    "suspended_by": RATE_LIMITER_ACTOR,
                },
            )
        raise EscalatedSuspension(granularity, decision.limit, decision.retry_after)

    def _emit_usage(self, tenant: Tenant, request: AuthorizationRequest, latency_ms: float) -> None:
        if self._usage_sink is None:
            return
        record = UsageRecord(
            tenant_id=tenant.id,
            endpoint=request.endpoint,
            timestamp=self._clock(),
            outcome="allowed",
            latency_ms=latency_ms,
            metadata={"client_ip": request.client_ip, "scheme": request.scheme},
        )
        task = asyncio.create_task(self._record_usage(record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_usage(self, record: UsageRecord) -> None:
        try:
            await self._usage_sink.record(record)
        except Exception:
            logger.exception("Usage sink failed for tenant %s", record.tenant_id)


def _normalized_ip(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None
