"""
api/main.py -- FastAPI application entry point for Presensi.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- one access line per request
  5. request_guard         -- session check + access table for every path

Lifespan builds the credential store, the login throttle and the gateway, and
closes the stores on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.dependencies import session_token
from auth.exceptions import AuthError, RateLimited
from auth.gateway import AuthGateway, classify_path, evaluate_request
from auth.models import DecisionAction
from auth.store import UserStore
from auth.throttle import LoginThrottle, ThrottlePolicy, build_throttle_store
from auth.tokens import get_session_codec
from core.config import get_settings

_VERSION = "0.3.0"

# Loading settings here is the startup check: without JWT_SECRET the import fails.
_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("presensi.api")


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


def build_gateway(user_store: UserStore, throttle: LoginThrottle) -> AuthGateway:
    return AuthGateway(
        user_store,
        throttle,
        get_session_codec(),
        min_secret_length=_settings.min_token_length,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("Presensi API starting up")
    app.state.user_store = UserStore(_settings.database_url)
    throttle_store = build_throttle_store(_settings)
    app.state.throttle = LoginThrottle(
        throttle_store,
        ThrottlePolicy.from_settings(_settings),
        key_secret=_settings.jwt_secret,
    )
    app.state.gateway = build_gateway(app.state.user_store, app.state.throttle)
    logger.info(
        "Auth initialized (throttle_backend=%s, users_present=%s)",
        _settings.throttle_backend,
        app.state.user_store.has_users(),
    )

    yield

    throttle_store.close()
    app.state.user_store.close()
    logger.info("Presensi API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Presensi API",
    description="Attendance tracking back end: member and admin authentication.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the LAST registered middleware is the
# outermost. The @app.middleware("http") functions below are registered
# first, which places them innermost, closest to the routes.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def request_guard(request: Request, call_next):
    """Apply the access table to every request before it reaches a route.

    Verified claims are stored on request.state.session so dependencies do
    not verify the signature a second time. An invalid or expired cookie is
    indistinguishable from no cookie.
    """
    gateway: AuthGateway = request.app.state.gateway
    path = request.url.path
    claims = gateway.verify_session(session_token(request))
    request.state.session = claims
    decision = evaluate_request(claims, classify_path(path), path)

    if decision.action is DecisionAction.redirect:
        return RedirectResponse(decision.location, status_code=302)
    if decision.action is DecisionAction.reject:
        if decision.status == 403:
            detail = ErrorDetail(code="forbidden", message="Forbidden")
        else:
            detail = ErrorDetail(code="unauthorized", message="Unauthorized")
        return JSONResponse(status_code=decision.status, content=ErrorResponse(error=detail).model_dump())
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        ms,
    )
    return response


app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render gateway errors. Only RateLimited carries state (retry_after)."""
    retry_after = exc.retry_after if isinstance(exc, RateLimited) else None
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, retry_after=retry_after)
        ).model_dump(),
    )
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the coarse per-IP slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
                retry_after=retry_after,
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
        ).model_dump(),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures outside the gateway: deny, log, say nothing specific."""
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(code="service_unavailable", message="Service temporarily unavailable.")
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=_VERSION)
