"""Authorization endpoints."""

from calendar import timegm

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from affgate.auth.middleware import ServicesDep
from affgate.engine.gateway import AuthorizationRequest
from affgate.schemas.gateway import (
    AuthorizeRequest,
    AuthorizeResponse,
    VerificationCallbackRequest,
)

router = APIRouter()


@router.post("/authorize", response_model=AuthorizeResponse)
async def authorize(body: AuthorizeRequest, services: ServicesDep):
    """
    Decide whether a tenant request may proceed.
    Always answers with the outcome body; the status code mirrors the outcome.
    """
    outcome = await services.gateway.evaluate(
        AuthorizationRequest(
            api_key=body.api_key,
            api_secret=body.api_secret,
            endpoint=body.endpoint,
            client_ip=body.client_ip,
            scheme=body.scheme,
        )
    )
    headers: dict[str, str] = {}
    if outcome.retry_after is not None:
        headers["Retry-After"] = str(outcome.retry_after)
    if outcome.grant is not None and outcome.grant.tightest is not None:
        window = outcome.grant.tightest
        headers["X-RateLimit-Limit"] = str(window.limit)
        headers["X-RateLimit-Remaining"] = str(window.remaining)
        headers["X-RateLimit-Reset"] = str(timegm(window.reset_at.utctimetuple()))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body, headers=headers)


@router.post("/verification/callback")
async def verification_callback(body: VerificationCallbackRequest, services: ServicesDep):
    """Inbound proof for the api verification method."""
    verified = await services.verification.confirm_callback(body.domain_url, body.token)
    return {"verified": verified}
