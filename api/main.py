"""
api/main.py -- FastAPI application entry point for TenantGate.

Exposes the identity engine (iam/) over HTTP: OAuth and passwordless login,
token refresh, API keys, invitations, users, tenants and the scope registry.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, state store, services, reaper task) and
shutdown (cancel reaper, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

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
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.invitations import router as invitations_router
from api.routes.v1.passwordless import router as passwordless_router
from api.routes.v1.scopes import router as scopes_router
from api.routes.v1.tenants import router as tenants_router
from api.routes.v1.users import router as users_router
from core.config import Settings, get_settings
from iam.apikeys import ApiKeyService
from iam.dependencies import get_auth_context
from iam.errors import IAMError, InternalError
from iam.invitations import InvitationService
from iam.models import AuthContext, OAuthProvider
from iam.oauth import OAuthFlow
from iam.otp import LoggingNotificationSender, NotificationSender, OTPService
from iam.passwordless import PasswordlessFlow
from iam.providers import IdentityProvider, build_providers
from iam.reaper import cleanup_loop
from iam.sessions import SessionManager
from iam.state import StateStore, create_state_store
from iam.store import IAMStore
from iam.tenants import TenantService
from iam.users import UserService

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantgate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    state: Any,
    store: IAMStore,
    state_store: StateStore,
    settings: Settings,
    *,
    providers: dict[OAuthProvider, IdentityProvider] | None = None,
    notifier: NotificationSender | None = None,
) -> None:
    """Build every service over `store` and attach it to `state` (app.state).

    Route handlers read services from request.app.state. Tests call this with
    their own store, fake providers and a capturing notifier.
    """
    tenants = TenantService(store, settings)
    users = UserService(store, tenants)
    invitations = InvitationService(store, tenants, settings)
    sessions = SessionManager(store, settings)
    otp = OTPService(store, notifier or LoggingNotificationSender(debug=settings.debug), settings)
    if providers is None:
        providers = build_providers(settings)

    state.store = store
    state.state_store = state_store
    state.tenants = tenants
    state.users = users
    state.invitations = invitations
    state.sessions = sessions
    state.otp = otp
    state.api_keys = ApiKeyService(store, tenants, settings)
    state.oauth_flow = OAuthFlow(store, state_store, providers, tenants, users, invitations, sessions)
    state.passwordless = PasswordlessFlow(store, otp, tenants, users, invitations, sessions)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- creates tables; every service depends on it.
      2. State store and services -- pure wiring, no I/O except Redis connect.
      3. Reaper task last -- references app.state.store and state_store.
    """
    # Startup
    logger.info("TenantGate API starting up")
    store = IAMStore(db_url=_settings.database_url)
    state_store = create_state_store(_settings)
    wire_services(app.state, store, state_store, _settings)
    logger.info(
        "Identity engine initialized (providers=%s)",
        ", ".join(p.value for p in app.state.oauth_flow.enabled_providers()) or "none",
    )
    app.state.reaper_task = asyncio.create_task(
        cleanup_loop(store, _settings.cleanup_interval_seconds, state_store)
    )

    yield

    # Shutdown
    app.state.reaper_task.cancel()
    app.state.store.close()
    logger.info("TenantGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TenantGate API",
    description="Multi-tenant authentication and scope-based authorization.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
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

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
app.include_router(passwordless_router, prefix="/api/v1", tags=["Passwordless"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])
app.include_router(invitations_router, prefix="/api/v1", tags=["Invitations"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(tenants_router, prefix="/api/v1", tags=["Tenants"])
app.include_router(scopes_router, prefix="/api/v1", tags=["Scopes"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(ctx: AuthContext = Depends(get_auth_context)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="TenantGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(ctx: AuthContext = Depends(get_auth_context)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="TenantGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(mode="json"),
    )


@app.exception_handler(IAMError)
async def iam_error_handler(request: Request, exc: IAMError) -> JSONResponse:
    """Map an engine error to its status and the standard envelope.

    InternalError causes are logged always and shown only in DEBUG mode.
    A 429 carrying retry_after also gets a Retry-After header.
    """
    detail: Any = exc.details or None
    if isinstance(exc, InternalError):
        logger.error(
            "Internal error on %s %s: %s (%r)",
            request.method,
            request.url.path,
            exc.code,
            exc.cause,
        )
        if _settings.debug and exc.cause is not None:
            detail = {**exc.details, "cause": str(exc.cause)}
    response = _error_response(exc.status_code, exc.code, exc.message, detail)
    if exc.status_code == 429 and "retry_after" in exc.details:
        response.headers["Retry-After"] = str(exc.details["retry_after"])
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied -- load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
