"""
Requisition Workflow API Server

Entry point for the FastAPI application.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from reqflow_server.api.v1 import router as api_v1_router
from reqflow_server.api.v1.auth import router as auth_router
from reqflow_server.core.config import get_settings
from reqflow_server.core.database import build_store
from reqflow_server.core.logging import configure_logging
from reqflow_server.core.middleware import CSRFMiddleware, SecurityHeadersMiddleware, install_error_handlers
from reqflow_server.core.redis import close_redis, get_redis
from reqflow_server.stores.base import Store

log = structlog.get_logger()


def create_app(store: Optional[Store] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``store`` overrides the configured backend (tests pass an in-memory store).
    """
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("reqflow.starting", store_backend=settings.store_backend)
        yield
        log.info("reqflow.shutting_down")
        await close_redis()

    app = FastAPI(
        title="Requisition Workflow",
        description="Tenant-scoped authorization and approval workflow for purchase requisitions.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.store = store if store is not None else build_store(settings)

    # Middleware (last added is outermost)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CSRFMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    )
    install_error_handlers(app)

    app.include_router(auth_router, prefix="/auth", tags=["Authentication"])
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the store answers and redis responds to PING."""
        checks = {"store": await app.state.store.ping(), "redis": False}
        try:
            redis = await get_redis()
            checks["redis"] = bool(await redis.ping())
        except (RedisError, OSError) as exc:
            log.warning("reqflow.redis_unready", error=str(exc))
        ready = all(checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "unavailable", "checks": checks},
        )

    return app


app = create_app()
