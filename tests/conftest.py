"""Shared fixtures: a throwaway sqlite database and wired services."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("API_KEY_HASH_SALT", "test-salt")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from affgate.config import Settings
from affgate.database import Base
from affgate.engine.credentials import CredentialStore
from affgate.models.enums import TenantStatus
from affgate.services import build_services

NOW = datetime(2026, 10, 19, 12, 0, 30)


class FakeClock:
    """Settable clock; tests move time with ``advance``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple[int, str, dict]] = []

    def enqueue(self, tenant_id: int, event_type: str, payload: dict) -> None:
        self.events.append((tenant_id, event_type, payload))

    def of_type(self, event_type: str) -> list[tuple[int, str, dict]]:
        return [e for e in self.events if e[1] == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        api_key_hash_salt="test-salt",
        admin_token="test-admin-token",
        maintenance_interval_seconds=0,
        webhook_workers=1,
    )


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """File-backed sqlite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'affgate.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def credentials(session_maker, clock):
    return CredentialStore(session_maker, "test-salt", clock)


@pytest.fixture
def webhook_calls():
    return []


@pytest_asyncio.fixture
async def http_client(webhook_calls):
    """Outbound HTTP that records every request and answers 200."""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_calls.append(request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest_asyncio.fixture
async def services(settings, session_maker, http_client, clock):
    svc = build_services(settings, session_maker, client=http_client, clock=clock)
    await svc.webhooks.start()
    yield svc
    await svc.gateway.drain()
    await svc.webhooks.stop()


async def make_active_tenant(credentials: CredentialStore, domain: str = "https://shop.example.com", **policy):
    """Create a tenant, mark its domain verified (which activates it) and return (tenant, secret)."""
    tenant, secret = await credentials.create_tenant(domain, **policy)
    await credentials.record_verification_attempt(tenant.id, success=True)
    tenant = await credentials.require(tenant.id)
    assert tenant.status == TenantStatus.ACTIVE
    return tenant, secret
