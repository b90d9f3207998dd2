"""FastAPI application entry point."""

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException

from caretaker.api import drift, integrations, maintenance, tenants
from caretaker.api.errors import (
    APIError,
    RequestIDMiddleware,
    api_error_handler,
    generic_exception_handler,
    http_exception_handler,
    maintenance_error_handler,
    validation_exception_handler,
)
from caretaker.api.rate_limit import limiter, rate_limit_exceeded_handler
from caretaker.config import settings
from caretaker.db import get_session, init_db
from caretaker.db.database import dispose_engine
from caretaker.services.errors import MaintenanceError

# Track application start time for uptime calculation
_app_start_time = time.time()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    if settings.environment == "production" and settings.auth_disabled:
        logger.warning(
            "SECURITY WARNING: Authentication is disabled in production! "
            "Set AUTH_DISABLED=false for production deployments."
        )
    if not settings.bootstrap_api_key:
        logger.info("BOOTSTRAP_API_KEY is not set; tenants cannot be created over the API")

    await init_db()
    yield
    # Clean up database connections on shutdown
    await dispose_engine()


app = FastAPI(
    title="Caretaker",
    description="Schema drift detection and maintenance proposals for integrations",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
# Only add rate limiting middleware if enabled
if settings.rate_limit_enabled:
    app.add_middleware(SlowAPIMiddleware)

# Request ID middleware
app.add_middleware(RequestIDMiddleware)

# CORS middleware
allow_methods = ["*"]
if settings.environment == "production":
    allow_methods = settings.cors_allow_methods

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=allow_methods,
    allow_headers=["*"],
)

# Exception handlers (type: ignore needed for Starlette handler signatures)
app.add_exception_handler(MaintenanceError, maintenance_error_handler)  # type: ignore[arg-type]
app.add_exception_handler(APIError, api_error_handler)  # type: ignore[arg-type]
app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(
    RequestValidationError, validation_exception_handler  # type: ignore[arg-type]
)
app.add_exception_handler(ValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, generic_exception_handler)

# API v1 router
api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(tenants.router, tags=["tenants"])
api_v1.include_router(integrations.router, prefix="/integrations", tags=["integrations"])
api_v1.include_router(drift.router, prefix="/integrations", tags=["drift"])
api_v1.include_router(maintenance.router, prefix="/integrations", tags=["maintenance"])
api_v1.include_router(integrations.tools_router, prefix="/tools", tags=["tools"])

app.include_router(api_v1)


@app.get("/health")
async def health(
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Health check endpoint with a database probe."""
    uptime_seconds = time.time() - _app_start_time
    checks: dict[str, dict[str, Any]] = {}

    db_status = "healthy"
    db_latency_ms: float | None = None
    try:
        start = time.time()
        await session.execute(text("SELECT 1"))
        db_latency_ms = round((time.time() - start) * 1000, 2)
    except Exception as e:
        db_status = "unhealthy"
        logger.error("Health check database failed: %s", e)

    checks["database"] = {
        "status": db_status,
        "latency_ms": db_latency_ms,
    }

    overall_status = (
        "healthy" if all(c["status"] == "healthy" for c in checks.values()) else "degraded"
    )
    return {
        "status": overall_status,
        "version": "0.1.0",
        "uptime_seconds": round(uptime_seconds, 1),
        "checks": checks,
    }


@app.get("/health/ready")
async def health_ready(
    session: AsyncSession = Depends(get_session),
) -> dict[str, str | bool]:
    """Readiness probe - verifies database connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "ready", "database": True}
    except Exception as e:
        # Log details server-side only; connection errors can carry credentials
        logger.error("Readiness check failed: %s", e)
        return {"status": "not_ready", "database": False}


@app.get("/health/live")
async def health_live() -> dict[str, str]:
    """Liveness probe - basic check that app is running."""
    return {"status": "alive"}
