"""Gateway request/response schemas."""

from pydantic import BaseModel, Field


class AuthorizeRequest(BaseModel):
    """POST /v1/authorize request."""

    api_key: str
    api_secret: str | None = None
    endpoint: str = Field(..., min_length=1)
    client_ip: str | None = None
    scheme: str | None = None


class AuthorizeResponse(BaseModel):
    """Outcome body for every /v1/authorize status code."""

    outcome: str
    reason: str | None = None
    tenant_id: int | None = None
    granularity: str | None = None
    limit: int | None = None
    retry_after_seconds: int | None = None


class VerificationCallbackRequest(BaseModel):
    """POST /v1/verification/callback request."""

    domain_url: str
    token: str
