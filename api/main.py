"""
api/main.py -- FastAPI application entry point for Gatehouse.

Exposes the authentication and session-lifecycle flows over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- the single browser origin from APP_ORIGIN, with credentials
  3. SlowAPIMiddleware     -- enforces per-route IP limits from api.limiter

Lifespan builds the engine, the three stores, the notifier and AuthService
from one Settings instance, and starts the housekeeping task that purges
expired sessions and verification codes.

Error boundary: auth.errors types raised anywhere below the routes are
rendered here into the shared ErrorResponse envelope. Anything else is an
unexpected failure and is normalized to internal_error.
"""

from __future__ import annotations

import asyncio
import contextlib
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
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.sessions import router as sessions_router
from auth.errors import (
    AuthenticationError,
    AuthServiceError,
    InternalError,
    RateLimitExceededError,
    SessionError,
)
from auth.notify import LogNotifier, Notifier, ResendNotifier
from auth.service import AuthService
from auth.store import AccountStore, SessionStore, VerificationCodeStore, create_auth_engine
from auth.tokens import REFRESH_PATH, clear_auth_cookies
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired sessions and verification codes every 6 hours.

    Expired rows are already ignored by every lookup; this only keeps the
    tables small. The store calls are blocking, so they run in a worker thread.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        sessions = await asyncio.to_thread(app.state.session_store.purge_expired)
        codes = await asyncio.to_thread(app.state.code_store.purge_expired)
        logger.info("Purged %d expired session(s) and %d expired code(s)", sessions, codes)


def _build_notifier(settings: Settings) -> Notifier:
    if settings.resend_api_key:
        return ResendNotifier(settings.resend_api_key, settings.mailer_sender)
    logger.warning("RESEND_API_KEY not set -- e-mails are logged, not sent")
    return LogNotifier()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create stores and services on startup; dispose of them on shutdown."""
    logger.info("Gatehouse API starting up")
    settings = get_settings()
    engine = create_auth_engine(settings.database_url)
    app.state.engine = engine
    app.state.settings = settings
    app.state.account_store = AccountStore(engine)
    app.state.session_store = SessionStore(engine, settings)
    app.state.code_store = VerificationCodeStore(engine)
    app.state.auth_service = AuthService(
        settings,
        app.state.account_store,
        app.state.session_store,
        app.state.code_store,
        _build_notifier(settings),
    )
    logger.info("Auth initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Wait for the purge loop to stop before the engine goes away.
    app.state.purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.purge_task
    engine.dispose()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Authentication, sessions, MFA and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.app_origin_stripped],
    # Cookies are the primary token transport, so credentials must be allowed.
    allow_credentials=True,
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
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthServiceError)
async def auth_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Render a typed auth failure.

    Every AuthenticationError leaves as the same "unauthorized" code so a
    client cannot tell an unknown e-mail from a wrong password or a forged
    token; the specific code is only logged. Session failures and any failure
    on the refresh endpoint clear both auth cookies so the browser stops
    replaying dead tokens.
    """
    if isinstance(exc, AuthenticationError):
        logger.info("Authentication failed on %s: %s", request.url.path, exc.code)
        response = _error_response(exc.status_code, AuthenticationError.code, exc.message)
    elif isinstance(exc, InternalError):
        logger.error("Internal failure on %s %s: %s", request.method, request.url.path, exc.code)
        response = _error_response(exc.status_code, exc.code, exc.message)
    else:
        response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)

    if isinstance(exc, RateLimitExceededError):
        response.headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, SessionError) or request.url.path == REFRESH_PATH:
        clear_auth_cookies(response)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a per-IP route limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with per-field detail when a request body fails validation."""
    fields = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
    return _error_response(422, "validation_error", "Request validation failed.", fields)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for HTTP exceptions, including Starlette's own 404s and 405s."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never sent to the client.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    response = _error_response(500, InternalError.code, InternalError.message)
    if request.url.path == REFRESH_PATH:
        clear_auth_cookies(response)
    return response


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check database probe failed")
        database = "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
