"""Signed webhook delivery with failure tracking and auto-disable."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from affgate.config import Settings
from affgate.engine.credentials import CredentialStore
from affgate.errors import WebhookDeliveryFailure
from affgate.models import Tenant
from affgate.utils.canonical import canonical_json, sign_body
from affgate.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

SECURITY_EVENT_PREFIX = "security."
TEST_EVENT = "webhook.test"
SIGNATURE_HEADER = "X-Signature"
EVENT_TYPE_HEADER = "X-Event-Type"


class Notifier(Protocol):
    """What the gateway and verification engine need from a dispatcher."""

    def enqueue(self, tenant_id: int, event_type: str, payload: dict) -> None: ...


@dataclass(frozen=True)
class WebhookConfig:
    timeout: float = 15.0
    max_failures: int = 5
    queue_size: int = 1000
    workers: int = 2
    user_agent: str = "affgate-webhooks/0.1.0"

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookConfig":
        return cls(
            timeout=settings.webhook_timeout_seconds,
            max_failures=settings.webhook_max_failures,
            queue_size=settings.webhook_queue_size,
            workers=settings.webhook_workers,
            user_agent=settings.webhook_user_agent,
        )


@dataclass(frozen=True)
class WebhookJob:
    tenant_id: int
    event_type: str
    payload: dict


def wants_event(tenant: Tenant, event_type: str) -> bool:
    """Security events always go out; others only when subscribed (empty = all)."""
    if event_type.startswith(SECURITY_EVENT_PREFIX) or event_type == TEST_EVENT:
        return True
    events = tenant.webhook_events or []
    return not events or event_type in events


class WebhookDispatcher:
    """Queue-backed webhook sender.

    ``enqueue`` never blocks the caller; worker tasks started by ``start`` do
    the HTTP work with their own timeout.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        config: WebhookConfig | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ):
        self._credentials = credentials
        self.config = config or WebhookConfig()
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._queue: asyncio.Queue[WebhookJob] = asyncio.Queue(maxsize=self.config.queue_size)
        self._workers: list[asyncio.Task] = []

    async def start(self) -> None:
        if self._workers:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        for i in range(max(1, self.config.workers)):
            self._workers.append(asyncio.create_task(self._worker(), name=f"webhook-worker-{i}"))
        logger.info("Webhook dispatcher started with %d workers", len(self._workers))

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    def enqueue(self, tenant_id: int, event_type: str, payload: dict) -> None:
        try:
            self._queue.put_nowait(WebhookJob(tenant_id, event_type, payload))
        except asyncio.QueueFull:
            logger.warning(
                "Webhook queue full, dropping %s for tenant %s", event_type, tenant_id
            )

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.deliver(job.tenant_id, job.event_type, job.payload)
            except Exception:
                logger.exception(
                    "Webhook job %s for tenant %s crashed", job.event_type, job.tenant_id
                )
            finally:
                self._queue.task_done()

    def build_request(self, tenant: Tenant, event_type: str, payload: dict) -> tuple[bytes, dict]:
        body = canonical_json(
            {
                "event": event_type,
                "domain": tenant.domain_url,
                "tenant_id": tenant.id,
                "timestamp": self._clock().isoformat(timespec="seconds") + "Z",
                "data": payload,
            }
        ).encode()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            EVENT_TYPE_HEADER: event_type,
            SIGNATURE_HEADER: sign_body(tenant.webhook_secret or "", body),
        }
        return body, headers

    async def deliver(self, tenant_id: int, event_type: str, payload: dict) -> bool:
        """Send one event now. Returns True on a 2xx response.

        Failures are recorded against the tenant and never raised.
        """
        tenant = await self._credentials.get(tenant_id)
        if tenant is None:
            logger.warning("Dropping %s: tenant %s no longer exists", event_type, tenant_id)
            return False
        if not tenant.webhook_url:
            logger.debug("Dropping %s: no webhook configured for tenant %s", event_type, tenant_id)
            return False
        if not wants_event(tenant, event_type):
            return False

        body, headers = self.build_request(tenant, event_type, payload)
        try:
            await self._send(tenant.webhook_url, body, headers)
        except WebhookDeliveryFailure as exc:
            failures, disabled = await self._credentials.record_webhook_failure(
                tenant.id, str(exc), self.config.max_failures
            )
            logger.warning(
                "Webhook %s to tenant %s failed (%d consecutive): %s",
                event_type, tenant.id, failures, exc,
            )
            return False

        await self._credentials.record_webhook_success(tenant.id)
        logger.info("Webhook %s delivered to tenant %s", event_type, tenant.id)
        return True

    async def _send(self, url: str, body: bytes, headers: dict) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        try:
            response = await self._client.post(
                url, content=body, headers=headers, timeout=self.config.timeout
            )
        except httpx.HTTPError as exc:
            raise WebhookDeliveryFailure(f"{type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise WebhookDeliveryFailure(f"HTTP {response.status_code}")

    async def send_test(self, tenant_id: int) -> bool:
        return await self.deliver(
            tenant_id, TEST_EVENT, {"message": "Test webhook from affgate"}
        )
