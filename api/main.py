"""
api/main.py -- FastAPI application entry point for TeamGuard.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, services, sweep task) and shutdown (cancel
sweep task, dispose engines) symmetrically. init_state() does the wiring and
is shared with the test suite, which passes in-memory stores and recording
collaborators instead of the defaults.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.teams import router as teams_router
from auth.guard import AccountGuard
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from cache.store import CacheStore
from core.collaborators import AuditSink, EmailSender
from core.config import get_settings
from core.errors import AppError, InternalError
from teams.service import TeamService
from teams.store import TeamStore

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("teamguard.api")

_SWEEP_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def init_state(
    app: FastAPI,
    user_store: UserStore,
    team_store: TeamStore,
    cache: CacheStore,
    email: Optional[EmailSender] = None,
    audit: Optional[AuditSink] = None,
) -> None:
    """Build the services over the given stores and attach everything to app.state.

    Constructor injection all the way down: nothing below this point reaches
    for a global store or connection.
    """
    settings = get_settings()
    token_service = TokenService(user_store, cache, settings)
    guard = AccountGuard(user_store, settings)
    app.state.user_store = user_store
    app.state.team_store = team_store
    app.state.cache = cache
    app.state.token_service = token_service
    app.state.auth_service = AuthService(
        user_store, token_service, guard, cache, email=email, audit=audit, settings=settings
    )
    app.state.team_service = TeamService(team_store, user_store, audit=audit)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Delete expired sessions, reset tokens and cache entries every hour.

    The sweep is idempotent, so several workers running it at once is
    harmless. Store calls are synchronous and run in a worker thread to keep
    the event loop free. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_SWEEP_INTERVAL_SECONDS)
        try:
            sessions, tokens = await asyncio.to_thread(app.state.user_store.purge_expired)
            entries = await asyncio.to_thread(app.state.cache.purge_expired)
        except SQLAlchemyError:
            logger.exception("Expiry sweep failed; retrying next interval")
            continue
        logger.info("Expiry sweep: %d sessions, %d reset tokens, %d cache entries", sessions, tokens, entries)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Stores come first (they create their schema), then services,
    then the sweep task, which references the stores.
    """
    logger.info("TeamGuard API starting up")
    user_store = UserStore()
    team_store = TeamStore()
    cache = CacheStore()
    init_state(app, user_store, team_store, cache)
    logger.info("Stores and services initialized")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.cache.close()
    app.state.team_store.close()
    app.state.user_store.close()
    logger.info("TeamGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TeamGuard API",
    description="Multi-tenant identity and team authorization: login, token rotation, lockout, team roles.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
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
app.include_router(teams_router, prefix="/api/v1", tags=["Teams"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render a typed service error with its own status and code, unchanged."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = _error(exc.status_code, exc.code, exc.message, exc.detail)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures are not retried in the request path; they surface as INTERNAL_ERROR."""
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    error = InternalError("A storage error occurred.")
    return _error(error.status_code, error.code, error.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "RATE_LIMITED", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or path params fail validation."""
    return _error(422, "VALIDATION_ERROR", "Request validation failed.", str(exc.errors()))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "INTERNAL_ERROR", "An unexpected error occurred.")
