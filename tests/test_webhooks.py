"""Webhook dispatcher tests with a mocked transport."""

import hashlib
import hmac
import json

import httpx
import pytest

from affgate.engine.webhooks import WebhookConfig, WebhookDispatcher

DOMAIN = "https://shop.example.com"
HOOK = "https://hooks.example.com/in"


def _dispatcher(credentials, clock, handler, **config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(credentials, WebhookConfig(**config), client, clock), client


@pytest.mark.asyncio
async def test_delivery_is_signed(credentials, clock):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(204)

    tenant, _ = await credentials.create_tenant(DOMAIN)
    secret = await credentials.configure_webhook(tenant.id, HOOK, "whsec_test")
    dispatcher, client = _dispatcher(credentials, clock, handler)
    async with client:
        assert await dispatcher.deliver(tenant.id, "security.suspended", {"reason": "abuse"})

    request = requests[0]
    body = request.content
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    assert request.headers["X-Signature"] == f"sha256={expected}"
    assert request.headers["X-Event-Type"] == "security.suspended"
    payload = json.loads(body)
    assert payload["event"] == "security.suspended"
    assert payload["domain"] == DOMAIN
    assert payload["data"] == {"reason": "abuse"}
    refreshed = await credentials.require(tenant.id)
    assert refreshed.webhook_last_sent == clock.now
    assert refreshed.webhook_failures == 0


@pytest.mark.asyncio
async def test_unsubscribed_business_event_is_skipped(credentials, clock):
    requests = []
    tenant, _ = await credentials.create_tenant(DOMAIN)
    await credentials.configure_webhook(tenant.id, HOOK, events=["verification.verified"])
    dispatcher, client = _dispatcher(
        credentials, clock, lambda r: requests.append(r) or httpx.Response(200)
    )
    async with client:
        assert not await dispatcher.deliver(tenant.id, "verification.failed", {})
        assert await dispatcher.deliver(tenant.id, "security.suspended", {})
    assert [r.headers["X-Event-Type"] for r in requests] == ["security.suspended"]


@pytest.mark.asyncio
async def test_circuit_breaker_disables_after_five_failures(credentials, clock):
    """Five failures disable the webhook; the sixth event is never sent."""
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(500)

    tenant, _ = await credentials.create_tenant(DOMAIN)
    await credentials.configure_webhook(tenant.id, HOOK)
    dispatcher, client = _dispatcher(credentials, clock, handler, max_failures=5)
    async with client:
        results = [await dispatcher.deliver(tenant.id, "security.suspended", {}) for _ in range(6)]

    assert results == [False] * 6
    assert len(requests) == 5
    disabled = await credentials.require(tenant.id)
    assert disabled.webhook_url is None
    assert disabled.webhook_failures == 5
    assert "Webhook disabled" in disabled.notes


@pytest.mark.asyncio
async def test_transport_error_counts_as_failure(credentials, clock):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    tenant, _ = await credentials.create_tenant(DOMAIN)
    await credentials.configure_webhook(tenant.id, HOOK)
    dispatcher, client = _dispatcher(credentials, clock, handler)
    async with client:
        assert not await dispatcher.deliver(tenant.id, "webhook.test", {})
    refreshed = await credentials.require(tenant.id)
    assert refreshed.webhook_failures == 1
    assert "ConnectError" in refreshed.last_error_message


@pytest.mark.asyncio
async def test_queue_workers_deliver(credentials, clock):
    requests = []
    tenant, _ = await credentials.create_tenant(DOMAIN)
    await credentials.configure_webhook(tenant.id, HOOK)
    dispatcher, client = _dispatcher(
        credentials, clock, lambda r: requests.append(r) or httpx.Response(200), workers=2
    )
    async with client:
        await dispatcher.start()
        dispatcher.enqueue(tenant.id, "security.suspended", {"n": 1})
        dispatcher.enqueue(tenant.id, "webhook.test", {"n": 2})
        await dispatcher.join()
        await dispatcher.stop()
    assert sorted(r.headers["X-Event-Type"] for r in requests) == [
        "security.suspended",
        "webhook.test",
    ]


@pytest.mark.asyncio
async def test_send_test_without_webhook(credentials, clock):
    tenant, _ = await credentials.create_tenant(DOMAIN)
    dispatcher, client = _dispatcher(credentials, clock, lambda r: httpx.Response(200))
    async with client:
        assert not await dispatcher.send_test(tenant.id)
