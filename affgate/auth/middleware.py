"""Admin token authentication and service dependencies."""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from affgate.config import settings
from affgate.services import Services

ADMIN_TOKEN_HEADER = APIKeyHeader(name="X-Admin-Token", auto_error=False)


def get_services(request: Request) -> Services:
    """Services built by the app lifespan."""
    return request.app.state.services


async def require_admin(admin_token: str | None = Depends(ADMIN_TOKEN_HEADER)) -> str:
    """Check the X-Admin-Token header against the configured operator token."""
    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Token header",
        )
    if not hmac.compare_digest(admin_token.encode(), settings.admin_token.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )
    return "admin"


# Type aliases for dependency injection
ServicesDep = Annotated[Services, Depends(get_services)]
AdminDep = Annotated[str, Depends(require_admin)]
