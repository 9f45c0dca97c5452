"""
api/main.py -- FastAPI application entry point for TripAuth.

Exposes the authentication lifecycle engine (signup, OTP verification,
password and passkey login, passkey management) over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- one access-log line per request

Lifespan builds the store, mailer, ceremony verifier, managers and the
AuthService onto app.state, starts the sweep task, and tears both down
symmetrically on shutdown. Tests replace the lifespan and inject fakes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.passkeys import router as passkeys_router
from auth.ceremony import WebAuthnCeremony
from auth.errors import AuthError
from auth.mailer import SmtpMailer
from auth.service import build_service, sweep_once
from auth.store import AuthStore
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tripauth.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Sweep expired OTPs and stale challenges every interval seconds.

    Expiry is enforced at validation time, so a skipped or failed sweep only
    delays garbage collection; a failing pass is logged and the loop carries
    on. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            otps, challenges = await asyncio.to_thread(sweep_once, app.state.auth_service, interval)
        except Exception:
            logger.exception("Sweep failed")
            continue
        if otps or challenges:
            logger.info("Swept %d OTP(s) and %d challenge(s)", otps, challenges)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the store first, then the service that wraps it,
    then the sweep task that references app.state.auth_service.
    """
    logger.info("TripAuth API starting up")
    if _settings.database_url:
        app.state.store = AuthStore(db_url=_settings.database_url)
    else:
        app.state.store = AuthStore()
    app.state.mailer = SmtpMailer(_settings)
    app.state.ceremony = WebAuthnCeremony()
    app.state.auth_service = build_service(app.state.store, app.state.mailer, app.state.ceremony, _settings)
    logger.info("Auth initialized (rp_id=%s)", _settings.webauthn_rp_id)
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, _settings.challenge_sweep_seconds))

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    app.state.store.close()
    logger.info("TripAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TripAuth API",
    description="Account, OTP and passkey authentication for the booking app.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS.
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
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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
app.include_router(passkeys_router, prefix="/api/v1", tags=["Passkeys"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a typed AuthError onto its status code and stable error code."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(exclude_none=True),
    )
    response.headers["Cache-Control"] = "no-store"
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health() -> HealthResponse:
    """Return API liveness, version, and whether the database answers."""
    try:
        db_ok = app.state.store.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        db_ok = False
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=API_VERSION,
        database="ok" if db_ok else "unavailable",
    )
