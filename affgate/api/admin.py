"""Admin endpoints - tenants, credentials, webhooks, verification, windows."""

from fastapi import APIRouter, HTTPException, Query, status

from affgate.auth.middleware import AdminDep, ServicesDep
from affgate.errors import VerificationFailure
from affgate.models.enums import IdentifierType, TenantStatus
from affgate.schemas.admin import (
    BeginVerificationRequest,
    CreateTenantRequest,
    CreateTenantResponse,
    CredentialsResponse,
    ResetWindowRequest,
    StatusChangeRequest,
    TenantOut,
    WebhookConfigRequest,
    WindowOut,
)

router = APIRouter()


@router.post("/tenants", status_code=status.HTTP_201_CREATED, response_model=CreateTenantResponse)
async def create_tenant(body: CreateTenantRequest, admin: AdminDep, services: ServicesDep):
    """Register a tenant in pending state. The API secret is returned only here."""
    fields = body.model_dump()
    tenant, api_secret = await services.credentials.create_tenant(**fields)
    return CreateTenantResponse(tenant=TenantOut.model_validate(tenant), api_secret=api_secret)


@router.get("/tenants", response_model=list[TenantOut])
async def list_tenants(
    admin: AdminDep,
    services: ServicesDep,
    status_filter: TenantStatus | None = Query(None, alias="status"),
    limit: int = 100,
    offset: int = 0,
):
    tenants = await services.credentials.list_tenants(status_filter, limit=limit, offset=offset)
    return [TenantOut.model_validate(t) for t in tenants]


@router.get("/tenants/{tenant_id}", response_model=TenantOut)
async def get_tenant(tenant_id: int, admin: AdminDep, services: ServicesDep):
    return TenantOut.model_validate(await services.credentials.require(tenant_id))


@router.post("/tenants/{tenant_id}/status", response_model=TenantOut)
async def change_status(
    tenant_id: int, body: StatusChangeRequest, admin: AdminDep, services: ServicesDep
):
    """Move a tenant between pending/active/suspended/inactive."""
    changed = await services.credentials.update_status(
        tenant_id, body.status, body.reason, body.actor
    )
    if changed and body.status == TenantStatus.SUSPENDED:
        services.webhooks.enqueue(
            tenant_id,
            "security.suspended",
            {"reason": body.reason, "suspended_by": body.actor},
        )
    return TenantOut.model_validate(await services.credentials.require(tenant_id))


@router.post("/tenants/{tenant_id}/credentials", response_model=CredentialsResponse)
async def regenerate_credentials(tenant_id: int, admin: AdminDep, services: ServicesDep):
    """Issue a new key/secret pair; the old pair stops working immediately."""
    api_key, api_secret = await services.credentials.regenerate_credentials(tenant_id)
    services.webhooks.enqueue(tenant_id, "security.credentials_regenerated", {"api_key": api_key})
    return CredentialsResponse(api_key=api_key, api_secret=api_secret)


@router.put("/tenants/{tenant_id}/webhook")
async def configure_webhook(
    tenant_id: int, body: WebhookConfigRequest, admin: AdminDep, services: ServicesDep
):
    secret = await services.credentials.configure_webhook(
        tenant_id, body.url, body.secret, body.events
    )
    return {"tenant_id": tenant_id, "webhook_url": body.url, "webhook_secret": secret}


@router.post("/tenants/{tenant_id}/webhook/test")
async def test_webhook(tenant_id: int, admin: AdminDep, services: ServicesDep):
    """Deliver a webhook.test event synchronously and report the result."""
    await services.credentials.require(tenant_id)
    delivered = await services.webhooks.send_test(tenant_id)
    return {"tenant_id": tenant_id, "delivered": delivered}


@router.post("/tenants/{tenant_id}/verification")
async def begin_verification(
    tenant_id: int, body: BeginVerificationRequest, admin: AdminDep, services: ServicesDep
):
    """Issue a new verification token; the tenant publishes it via ``method``."""
    token = await services.verification.begin_verification(tenant_id, body.method)
    return {"tenant_id": tenant_id, "method": body.method, "verification_token": token}


@router.post("/tenants/{tenant_id}/verification/attempt")
async def attempt_verification(tenant_id: int, admin: AdminDep, services: ServicesDep):
    try:
        outcome = await services.verification.attempt_verification(tenant_id)
    except VerificationFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.reason,
        )
    return {
        "tenant_id": tenant_id,
        "verification_status": outcome.status,
        "attempts": outcome.attempts,
        "probed": outcome.probed,
        "error": outcome.error,
    }


@router.get("/tenants/{tenant_id}/windows", response_model=list[WindowOut])
async def list_windows(tenant_id: int, admin: AdminDep, services: ServicesDep):
    tenant = await services.credentials.require(tenant_id)
    windows = await services.rate_limiter.get_windows(tenant.domain_url)
    return [WindowOut.model_validate(w) for w in windows]


@router.post("/tenants/{tenant_id}/windows/reset")
async def reset_window(
    tenant_id: int, body: ResetWindowRequest, admin: AdminDep, services: ServicesDep
):
    tenant = await services.credentials.require(tenant_id)
    reset = await services.rate_limiter.reset_window(
        tenant.domain_url, IdentifierType.DOMAIN, body.endpoint, body.time_window
    )
    if not reset:
        raise HTTPException(status_code=404, detail="Window not found")
    return {"tenant_id": tenant_id, "endpoint": body.endpoint, "time_window": body.time_window}


@router.post("/maintenance/run")
async def run_maintenance(admin: AdminDep, services: ServicesDep):
    report = await services.maintenance.run_once()
    return {
        "windows_deleted": report.windows_deleted,
        "rate_limit_events_deleted": report.rate_limit_events_deleted,
        "usage_events_deleted": report.usage_events_deleted,
        "tokens_purged": report.tokens_purged,
        "verifications_attempted": report.verifications_attempted,
    }
