"""
api/main.py -- FastAPI application entry point for Enisi.

Exposes the authentication and session-trust core over HTTP. The payroll
CRUD surface (workers, sectors, hours, payments, reports) consumes the same
contract: auth.dependencies.require_user / require_admin for gating and
app.state.audit.record() for the trail.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- credentialed CORS for the configured frontend origins
  2. SessionMiddleware  -- signed cookie holding authlib's OAuth state only
  3. security_headers   -- X-Frame-Options, nosniff, Referrer-Policy, HSTS,
                           Cache-Control: no-store on every response
  4. log_requests       -- method, path, status, latency, client IP

Lifespan handles startup (stores, bootstrap admin, session purge task) and
shutdown (cancel purge task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from api.routes.webauthn import router as webauthn_router
from audit.store import AuditRecorder
from auth.dependencies import client_ip
from auth.errors import AuthError, TooManyAttempts
from auth.oauth import build_oauth
from auth.passkeys import CeremonyManager
from auth.passwords import hash_password
from auth.ratelimit import LoginRateLimiter
from auth.relying_party import build_relying_party
from auth.sessions import SessionIssuer, SessionStore
from auth.store import IdentityStore
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("enisi.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, cfg: Settings) -> None:
    """Build every store and service from cfg and attach them to app.state.

    Route handlers only ever reach services through app.state, so tests can
    call this with a Settings pointing at an in-memory database.
    """
    app.state.settings = cfg
    app.state.identities = IdentityStore(cfg.database_url)
    app.state.sessions = SessionStore(
        cfg.database_url,
        cfg.secret_key,
        ttl_seconds=cfg.session_ttl_seconds,
        remember_seconds=cfg.remember_me_seconds,
    )
    app.state.issuer = SessionIssuer(app.state.sessions, secure_cookies=cfg.secure_cookies)
    app.state.audit = AuditRecorder(cfg.database_url, max_rows=cfg.audit_max_rows)
    app.state.rate_limiter = LoginRateLimiter(
        attempts=cfg.login_rate_limit_attempts,
        window_seconds=cfg.login_rate_limit_window_seconds,
        storage_uri=cfg.rate_limit_storage_uri,
    )
    app.state.ceremonies = CeremonyManager(
        app.state.identities,
        app.state.sessions,
        build_relying_party(cfg),
        rp_name=cfg.rp_name,
    )
    app.state.oauth = build_oauth(cfg)

    seeded = app.state.identities.ensure_bootstrap_admin(
        cfg.bootstrap_admin_username, hash_password(cfg.bootstrap_admin_password)
    )
    if seeded is not None:
        logger.warning(
            "Seeded bootstrap administrator %r -- change its password after first login",
            cfg.bootstrap_admin_username,
        )


def close_state(app: FastAPI) -> None:
    app.state.identities.close()
    app.state.sessions.close()
    app.state.audit.close()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired sessions every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        app.state.sessions.purge_expired()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task starts last because it references
    app.state.sessions.
    """
    logger.info("Enisi API starting up")
    init_state(app, settings)
    logger.info("Auth initialized (google=%s)", settings.google_enabled)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    close_state(app)
    logger.info("Enisi API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Enisi API",
    description="Authentication and session-trust core of the Enisi payroll admin.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url=None,
    openapi_url="/api/openapi.json" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for
# the authorization code flow). It never holds identity data.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="enisi_oauth_state",
    max_age=600,
    https_only=settings.secure_cookies,
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    if settings.secure_cookies:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. Every request passes through this coroutine before
# reaching any route handler; wall-clock time around call_next is the latency.
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
        client_ip(request),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(webauthn_router, prefix="/api", tags=["WebAuthn"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto the envelope.

    NotApproved adds top-level pending/rejected flags, which the frontend
    polls on. TooManyAttempts adds Retry-After.
    """
    content = ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump()
    content.update(exc.payload())
    response = JSONResponse(status_code=exc.status_code, content=content)
    if isinstance(exc, TooManyAttempts):
        response.headers["Retry-After"] = str(exc.retry_after)
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

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
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

    The traceback goes to the log. The response carries the exception text
    only when DEBUG_ERRORS is set.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
                detail=str(exc) if settings.debug_errors else None,
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, database reachability and version."""
    db_ok = request.app.state.identities.ping()
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        database="ok" if db_ok else "error",
        version=VERSION,
    )
