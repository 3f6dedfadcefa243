"""
api/main.py -- FastAPI application entry point for Tokenly.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the stores and services onto app.state, starts the expired
token purge task, and tears both down on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.applications import router as applications_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.clients import router as clients_router
from api.routes.v1.dashboard import router as dashboard_router
from auth.delivery import build_email_sender
from auth.identity import IdentityService
from auth.oauth import GoogleIdTokenVerifier
from auth.service import LoginService
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.config import get_settings
from core.errors import TokenlyError
from tenants.registry import ApplicationRegistry
from tenants.store import TenantStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokenly.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired token records every TOKEN_PURGE_INTERVAL_SECONDS.

    Expired records are already unusable; purging only bounds table growth.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(settings.token_purge_interval_seconds)
        try:
            await asyncio.to_thread(app.state.sessions.purge_expired)
        except Exception:
            logger.exception("Expired token purge failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire stores and services onto app.state for the server lifetime.

    Route handlers and dependencies read everything from request.app.state,
    so tests can swap this lifespan for one that wires in-memory stores.
    """
    logger.info("Tokenly API starting up")
    app.state.tenant_store = TenantStore()
    app.state.identity_store = IdentityStore()
    app.state.registry = ApplicationRegistry(app.state.tenant_store)
    app.state.sessions = SessionManager(app.state.identity_store)
    app.state.mailer = build_email_sender(settings)
    app.state.identity = IdentityService(
        app.state.identity_store, app.state.registry, app.state.sessions, app.state.mailer
    )
    app.state.login_service = LoginService(
        app.state.identity_store,
        app.state.identity,
        app.state.sessions,
        app.state.mailer,
        GoogleIdTokenVerifier(),
    )
    logger.info("Stores initialized (%s)", settings.database_url.split("://", 1)[0])
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.tenant_store.close()
    app.state.identity_store.close()
    logger.info("Tokenly API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tokenly API",
    description="Multi-tenant authentication: per-application auth configuration, credentials and tokens.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
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
#
# dashboard before admin: /admin/dashboard/stats must not match /admin/{app_id}/...
# ---------------------------------------------------------------------------

app.include_router(clients_router, prefix="/api/v1", tags=["Clients"])
app.include_router(applications_router, prefix="/api/v1", tags=["Applications"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(message=message, error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(TokenlyError)
async def tokenly_error_handler(request: Request, exc: TokenlyError) -> JSONResponse:
    """Map a domain failure to its status code and machine-readable code."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router state.
# No rate limit and no authentication.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
