"""
api/main.py -- FastAPI application entry point for AppPortal.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the stores and services onto app.state and starts the
catalog sync scheduler; shutdown tears them down in reverse order.

app.state after startup:
  user_store     auth.store.UserStore
  portal         portal.store.PortalStore
  settings_gate  portal.settings.SettingsGate
  lifecycle      portal.lifecycle.RequestLifecycle
  sync           portal.sync.CatalogSyncService
  permissions    auth.permissions.PermissionChecker
  sync_task      asyncio.Task running _sync_schedule_loop
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin_requests import router as admin_requests_router
from api.routes.v1.apps import router as apps_router
from api.routes.v1.assignments import router as assignments_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.catalog_sync import router as catalog_sync_router
from api.routes.v1.requests import router as requests_router
from api.routes.v1.settings import router as settings_router
from auth.dependencies import get_current_user
from auth.models import User
from auth.permissions import PermissionChecker
from auth.store import UserStore
from core.config import get_settings
from core.exceptions import PortalError
from portal.lifecycle import RequestLifecycle
from portal.settings import SettingsGate
from portal.store import PortalStore
from portal.sync import CatalogSyncService

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("appportal.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background sync scheduler
# ---------------------------------------------------------------------------


async def _sync_schedule_loop(app: FastAPI, poll_seconds: int) -> None:
    """Wake every poll_seconds and start a scheduled sync when one is due.

    run_if_due() touches the database, so it runs in a worker thread to keep
    the event loop free. A failing check is logged and the loop keeps going;
    CancelledError from shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(poll_seconds)
        try:
            sync_id = await asyncio.to_thread(app.state.sync.run_if_due)
        except Exception:
            logger.exception("Scheduled catalog sync check failed")
            continue
        if sync_id:
            logger.info("Scheduled catalog sync %s started", sync_id)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup; release them on shutdown.

    Startup order matters:
      1. Stores first -- everything else reads or writes through them.
      2. Settings gate second -- seeds missing system_settings rows so the
         sync service sees defaults on its first read.
      3. Services, then the scheduler task, which calls into app.state.sync.
    """
    logger.info("AppPortal API starting up")
    if settings.auth_database_url:
        app.state.user_store = UserStore(settings.auth_database_url)
    else:
        app.state.user_store = UserStore()
    app.state.portal = PortalStore(settings.database_url) if settings.database_url else PortalStore()
    logger.info("Stores initialized")

    app.state.settings_gate = SettingsGate(app.state.portal, stale_after_hours=settings.sync_stale_after_hours)
    app.state.settings_gate.seed_defaults()
    app.state.lifecycle = RequestLifecycle(app.state.portal)
    app.state.sync = CatalogSyncService(
        app.state.portal,
        app.state.settings_gate,
        max_workers=settings.sync_workers,
    )
    app.state.permissions = PermissionChecker()
    if not app.state.user_store.has_users():
        logger.warning("No user accounts exist; run `appportal create-admin <username>` to create one")

    app.state.sync_task = None
    if settings.sync_schedule_enabled:
        app.state.sync_task = asyncio.create_task(_sync_schedule_loop(app, settings.sync_poll_seconds))

    yield

    if app.state.sync_task is not None:
        app.state.sync_task.cancel()
    app.state.sync.shutdown()
    app.state.portal.close()
    app.state.user_store.close()
    logger.info("AppPortal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AppPortal API",
    description="Internal application portal: app requests, approvals, provisioning, and catalog sync.",
    version=_VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(requests_router, prefix="/api/v1", tags=["Requests"])
app.include_router(admin_requests_router, prefix="/api/v1", tags=["Admin Requests"])
app.include_router(catalog_sync_router, prefix="/api/v1", tags=["Catalog Sync"])
app.include_router(apps_router, prefix="/api/v1", tags=["Apps"])
app.include_router(assignments_router, prefix="/api/v1", tags=["Assignments"])
app.include_router(settings_router, prefix="/api/v1", tags=["Settings"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AppPortal API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="AppPortal API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    """Map domain errors to their HTTP status with code, message, and context."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    slowapi stores the wait on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and per-component status."""
    try:
        database = "ok" if request.app.state.portal.ping() else "error"
    except Exception:
        logger.exception("Health check: database ping failed")
        database = "error"
    return HealthResponse(version=_VERSION, components={"app": "ok", "database": database})
