"""
api/main.py -- FastAPI application entry point for Gatehouse.

Run with:      uvicorn asgi:app --reload

Middleware (Starlette runs the last one registered outermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers; exposes X-Session-ID to browsers
  3. SlowAPIMiddleware     -- enforces per-route IP limits from api.limiter

Lifespan builds every shared resource once (SQL engine, Redis client, the
stores, AuthService) and tears them down symmetrically. Nothing below this
module opens its own connections.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import SESSION_HEADER
from auth.groups import GroupStore
from auth.service import AuthService
from auth.store import UserStore, create_db_engine, init_db
from cache.client import create_redis
from cache.limiter import RateLimiter
from core.config import get_settings
from core.errors import (
    AuthError,
    FieldRequired,
    GroupNotFound,
    InvalidToken,
    LimitExceeded,
    PermissionNotFound,
    SessionExpired,
    SessionNotFound,
    TokenExpired,
    TokenNotFound,
    Unauthorized,
    UserExists,
    UserNotFound,
)
from sessions.store import RedisSessionStore, SqlSessionStore

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Sweep expired durable session rows every SESSION_PURGE_INTERVAL_SECONDS.

    Cached sessions expire on their own (Redis TTL); only the SQL rows need a
    sweep. The delete runs in a worker thread so the event loop is never
    blocked on the database. A failed sweep is logged and retried on the next
    tick. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.auth.sessions.delete_expired)
        except SQLAlchemyError:
            logger.exception("Durable session sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine + schema -- every store depends on the tables.
      2. Redis client -- shared by the rate limiter and the session cache.
      3. Stores and AuthService -- composed from 1 and 2.
      4. Purge task last -- references app.state.auth.
    """
    logger.info("Gatehouse API starting up")
    engine = create_db_engine()
    init_db(engine)
    redis_client = create_redis()

    sessions = RedisSessionStore(redis_client, durable=SqlSessionStore(engine))
    app.state.engine = engine
    app.state.redis = redis_client
    app.state.auth = AuthService(
        users=UserStore(engine),
        groups=GroupStore(engine),
        sessions=sessions,
        limiter=RateLimiter(redis_client),
    )
    logger.info("Stores initialized (session durability=%s)", sessions.durability)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.session_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    sessions.close()
    redis_client.close()
    engine.dispose()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Authentication, sessions, group permissions and attempt limiting.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", SESSION_HEADER],
    expose_headers=[SESSION_HEADER, "Retry-After"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler; latency is reported on every response. Session ids are never
# logged.
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

# Most specific class first; the first isinstance() match wins.
_AUTH_ERROR_STATUS: list[tuple[type[AuthError], int]] = [
    (Unauthorized, 401),
    (SessionNotFound, 401),
    (SessionExpired, 401),
    (UserExists, 409),
    (UserNotFound, 404),
    (GroupNotFound, 404),
    (PermissionNotFound, 404),
    (InvalidToken, 400),
    (TokenExpired, 400),
    (TokenNotFound, 400),
    (FieldRequired, 400),
]


def _status_for(exc: AuthError) -> int:
    for cls, status in _AUTH_ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


@app.exception_handler(LimitExceeded)
async def limit_exceeded_handler(request: Request, exc: LimitExceeded) -> JSONResponse:
    """Return 429 when a per-account attempt limit is used up.

    Retry-After is the rest of the fixed window, rounded up to whole seconds.
    """
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code,
                message="Too many attempts. Try again later.",
                detail=f"retry after {exc.retry_after}s",
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map domain errors to status codes.

    Unauthorized always carries the same message whether the email or the
    password was wrong.
    """
    detail = exc.field if isinstance(exc, FieldRequired) else None
    return JSONResponse(
        status_code=_status_for(exc),
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=str(exc), detail=detail)
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a SlowAPI per-IP limit is exceeded."""
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
    field rather than stringifying it. Headers set on the exception (the
    session id on a 401) are passed through.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a reachability check of SQL and Redis."""
    components = {"app": "ok", "database": "ok", "cache": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        components["database"] = "error"
    try:
        request.app.state.redis.ping()
    except redis.RedisError:
        logger.warning("Health check: cache unreachable", exc_info=True)
        components["cache"] = "error"

    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
