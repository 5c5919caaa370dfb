"""affgate FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from affgate.api.admin import router as admin_router
from affgate.api.gateway import router as gateway_router
from affgate.api.health import router as health_router
from affgate.config import settings
from affgate.database import async_session_maker
from affgate.errors import DuplicateTenant, GatewayError, TenantNotFound
from affgate.services import Services, build_services

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Services | None = None, background: bool = True) -> FastAPI:
    """Build the app. Tests pass their own ``services``; otherwise the lifespan wires them."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or build_services(settings, async_session_maker)
        app.state.services = svc
        await svc.start(background=background)
        logger.info("affgate started")
        try:
            yield
        finally:
            await svc.close()
            logger.info("affgate stopped")

    app = FastAPI(
        title="affgate - Domain Authorization Gateway",
        description="Authenticates tenant domains, enforces policy and rate limits, "
        "and notifies tenants of security events",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, tags=["Health"])
    app.include_router(gateway_router, prefix="/v1", tags=["Gateway"])
    app.include_router(admin_router, prefix="/v1/admin", tags=["Admin"])

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        headers = {}
        retry_after = getattr(exc, "retry_after", None)
        if exc.status_code == 429 and retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(TenantNotFound)
    async def not_found_handler(request: Request, exc: TenantNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DuplicateTenant)
    async def duplicate_handler(request: Request, exc: DuplicateTenant):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"service": "affgate", "version": "0.1.0", "docs": "/docs"}

    return app


app = create_app()
