"""Service wiring shared by the app, scripts and tests."""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affgate.config import Settings
from affgate.engine.credentials import CredentialStore
from affgate.engine.gateway import AuthorizationGateway, GatewayConfig
from affgate.engine.maintenance import MaintenanceConfig, MaintenanceRunner
from affgate.engine.rate_limiter import RateLimiter, RateLimiterConfig
from affgate.engine.usage import DatabaseUsageSink, LoggingUsageSink, UsageEventSink
from affgate.engine.verification import (
    HttpProofProbes,
    ProofProbe,
    VerificationConfig,
    VerificationEngine,
)
from affgate.engine.webhooks import WebhookConfig, WebhookDispatcher
from affgate.models.enums import VerificationMethod
from affgate.utils.clock import Clock, utcnow


@dataclass
class Services:
    credentials: CredentialStore
    rate_limiter: RateLimiter
    webhooks: WebhookDispatcher
    verification: VerificationEngine
    gateway: AuthorizationGateway
    maintenance: MaintenanceRunner
    http_client: httpx.AsyncClient

    async def start(self, background: bool = True) -> None:
        await self.webhooks.start()
        if background:
            self.maintenance.start()

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.gateway.drain()
        await self.webhooks.stop()
        await self.http_client.aclose()


def build_usage_sink(
    settings: Settings, session_maker: async_sessionmaker[AsyncSession]
) -> UsageEventSink:
    if settings.usage_sink == "log":
        return LoggingUsageSink()
    return DatabaseUsageSink(session_maker)


def build_services(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    client: httpx.AsyncClient | None = None,
    probes: dict[VerificationMethod, ProofProbe] | None = None,
    clock: Clock = utcnow,
) -> Services:
    """Wire every component from settings. ``client`` carries all outbound HTTP."""
    client = client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    credentials = CredentialStore(session_maker, settings.api_key_hash_salt, clock)
    rate_limiter = RateLimiter(session_maker, RateLimiterConfig.from_settings(settings), clock)
    webhooks = WebhookDispatcher(credentials, WebhookConfig.from_settings(settings), client, clock)

    verification_config = VerificationConfig.from_settings(settings)
    if probes is None:
        probes = HttpProofProbes(client, verification_config).as_mapping()
    verification = VerificationEngine(credentials, probes, webhooks, verification_config)

    gateway = AuthorizationGateway(
        credentials,
        rate_limiter,
        notifier=webhooks,
        usage_sink=build_usage_sink(settings, session_maker),
        config=GatewayConfig.from_settings(settings),
        clock=clock,
    )
    maintenance = MaintenanceRunner(
        session_maker, verification, MaintenanceConfig.from_settings(settings), clock
    )
    return Services(
        credentials=credentials,
        rate_limiter=rate_limiter,
        webhooks=webhooks,
        verification=verification,
        gateway=gateway,
        maintenance=maintenance,
        http_client=client,
    )
