"""Admin API schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from affgate.models.enums import (
    Granularity,
    IdentifierType,
    SecurityLevel,
    TenantStatus,
    VerificationMethod,
    VerificationStatus,
    WindowStatus,
)


class CreateTenantRequest(BaseModel):
    """POST /v1/admin/tenants request."""

    domain_url: str = Field(..., min_length=1)
    domain_name: str | None = None
    verification_method: VerificationMethod = VerificationMethod.API
    security_level: SecurityLevel = SecurityLevel.MEDIUM
    require_https: bool = True
    rate_limit_per_minute: int | None = Field(100, ge=0)
    rate_limit_per_hour: int | None = Field(1000, ge=0)
    max_daily_requests: int | None = Field(10000, ge=0)
    max_monthly_requests: int | None = Field(None, ge=0)
    allowed_endpoints: list[str] = Field(default_factory=list)
    blocked_endpoints: list[str] = Field(default_factory=list)
    allowed_ips: list[str] = Field(default_factory=list)
    blocked_ips: list[str] = Field(default_factory=list)
    notes: str | None = None


class TenantOut(BaseModel):
    """Tenant as shown to operators. The secret is never included."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    domain_url: str
    domain_name: str | None
    api_key: str
    status: TenantStatus
    verification_status: VerificationStatus
    verification_method: VerificationMethod
    verification_attempts: int
    last_verification_attempt: datetime | None
    last_successful_verification: datetime | None
    security_level: SecurityLevel
    require_https: bool
    rate_limit_per_minute: int | None
    rate_limit_per_hour: int | None
    max_daily_requests: int | None
    max_monthly_requests: int | None
    allowed_endpoints: list[str]
    blocked_endpoints: list[str]
    allowed_ips: list[str]
    blocked_ips: list[str]
    webhook_url: str | None
    webhook_events: list[str]
    webhook_failures: int
    webhook_last_sent: datetime | None
    suspended_at: datetime | None
    suspended_reason: str | None
    suspended_by: str | None
    last_error_at: datetime | None
    last_error_message: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class CreateTenantResponse(BaseModel):
    """Creation response; ``api_secret`` is shown this once."""

    tenant: TenantOut
    api_secret: str


class StatusChangeRequest(BaseModel):
    status: TenantStatus
    reason: str | None = None
    actor: str = "admin"


class CredentialsResponse(BaseModel):
    api_key: str
    api_secret: str


class WebhookConfigRequest(BaseModel):
    """PUT /v1/admin/tenants/{id}/webhook. ``url=None`` clears the webhook."""

    url: str | None = None
    secret: str | None = None
    events: list[str] = Field(default_factory=list)


class BeginVerificationRequest(BaseModel):
    method: VerificationMethod


class WindowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    identifier: str
    identifier_type: IdentifierType
    endpoint: str
    time_window: Granularity
    window_start: datetime
    reset_at: datetime
    request_count: int
    limit_amount: int
    blocked_count: int
    status: WindowStatus
    violation_level: int
    last_blocked_at: datetime | None


class ResetWindowRequest(BaseModel):
    endpoint: str
    time_window: Granularity
