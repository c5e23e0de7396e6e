"""
api/main.py -- FastAPI application entry point for SessionGuard.

Exposes the credential core over HTTP. The app is a thin adapter: it wires a
SessionService into app.state at startup, validates request shapes, and maps
core failures to status codes. All credential logic lives in auth/.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, service, purge task) and shutdown (cancel
purge task, close the store) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AccountLockedError,
    AuthError,
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidPasswordError,
    InvalidTokenError,
    StoreUnavailableError,
)
from auth.service import SessionService
from auth.store import CredentialStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionguard.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

PURGE_INTERVAL_SECONDS = 6 * 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens every 6 hours.

    Expired tokens are already rejected on lookup; this only keeps the table
    from growing without bound. The store call is blocking, so it runs in the
    thread pool. A failed purge is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            await run_in_threadpool(app.state.session_service.purge_expired_refresh_tokens)
        except StoreUnavailableError:
            logger.warning("Refresh token purge skipped: store unavailable")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("SessionGuard API starting up")
    store = CredentialStore(_settings.database_url, timeout_seconds=_settings.database_timeout_seconds)
    app.state.settings = _settings
    app.state.session_service = SessionService.from_settings(store, _settings)
    logger.info("Credential store initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.purge_task
    store.close()
    logger.info("SessionGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGuard API",
    description="Account registration, password login, access/refresh tokens and login lockout.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # Browsers only send the refresh cookie cross-origin with credentials on.
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Ordered most specific first; isinstance() matching keeps subclasses working.
_AUTH_ERROR_STATUS: tuple[tuple[type[AuthError], int], ...] = (
    (DuplicateAccountError, 409),
    (InvalidCredentialsError, 401),
    (AccountLockedError, 423),
    (InvalidOrExpiredTokenError, 401),
    (InvalidTokenError, 401),
    (InvalidPasswordError, 422),
    (StoreUnavailableError, 503),
)


def _status_for(exc: AuthError) -> int:
    for error_type, status in _AUTH_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


def _error_response(status_code: int, detail: ErrorDetail, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
        headers=headers,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate credential-core failures into HTTP responses.

    Lockout responses carry the remaining minutes in the body and as a
    Retry-After header (seconds). Every other failure stays generic.
    """
    retry_after_minutes = exc.remaining_minutes if isinstance(exc, AccountLockedError) else None
    headers = {"Cache-Control": "no-store"}
    if retry_after_minutes is not None:
        headers["Retry-After"] = str(retry_after_minutes * 60)
    elif isinstance(exc, (InvalidTokenError, InvalidOrExpiredTokenError)):
        headers["WWW-Authenticate"] = "Bearer"
    detail = ErrorDetail(code=exc.code, message=exc.message, retry_after_minutes=retry_after_minutes)
    return _error_response(_status_for(exc), detail, headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    detail = ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail))
    return _error_response(429, detail, {"Retry-After": str(retry_after)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 listing the failing fields.

    Only field locations and messages are echoed back, never the submitted
    values, which may include a password.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    detail = ErrorDetail(code="validation_error", message="Request validation failed.", detail=problems)
    return _error_response(422, detail)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Routes and dependencies raise with a ready-made {"code", "message"} dict.
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    detail = ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
    return _error_response(exc.status_code, detail, exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Not rate limited; load balancer probes hit it continuously.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and store reachability."""
    database_ok = request.app.state.session_service.store.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
