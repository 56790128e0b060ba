"""
api/main.py -- FastAPI application entry point for Gatehouse.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests        -- method, path, status, latency, client per request
  2. rate_limit_headers  -- response post-processing (X-RateLimit-*)
  3. CORSMiddleware      -- adds CORS headers for allowed browser origins

Admission stages 1-2 (rate limit, guard) run in AdmissionRoute ahead of body
parsing, see api/admission.py. Stage 6, the error boundary, is the exception
handlers at the bottom of this file: every failure leaves as the same
ErrorEnvelope.

Lifespan builds every shared service once (credential store, session store,
token service, rate limiter, admission pipeline), parks them on app.state,
and tears them down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.admission import AdmissionRoute, RoutePolicy, admit, apply_rate_limit_headers, build_pipeline
from api.models import ErrorEnvelope, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.guards import IdentityResolver
from auth.sessions import InMemorySessionStore, build_session_store
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import get_settings
from core.errors import AdmissionError, RateLimitExceeded, Unauthorized, ValidationFailed
from ratelimit.limiter import RateLimiter, build_storage

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

# ---------------------------------------------------------------------------
# Background session purge
# ---------------------------------------------------------------------------


async def _purge_loop(sessions: InMemorySessionStore, interval: int) -> None:
    """Sweep expired in-memory sessions every `interval` seconds.

    Lookups already expire lazily; the sweep only bounds memory for sessions
    that are never presented again. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        removed = sessions.purge_expired()
        if removed:
            logger.info("Purged %d expired sessions", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the shared services on startup; release them on shutdown.

    Order matters: the pipeline needs the limiter and the resolver, the
    resolver needs the session store and token service.
    """
    settings = get_settings()
    logger.info("Gatehouse API starting up")

    app.state.settings = settings
    app.state.credentials = CredentialStore(settings.auth_db_url)
    app.state.sessions = build_session_store(settings.session_store_url, settings.session_ttl_seconds)
    app.state.tokens = TokenService(settings.secret_key, default_ttl=settings.token_expire_seconds)
    app.state.limiter = RateLimiter(build_storage(settings.rate_limit_storage_uri))
    app.state.pipeline = build_pipeline(
        settings,
        app.state.limiter,
        IdentityResolver(app.state.sessions, app.state.tokens),
    )
    logger.info(
        "Admission initialized (default=%s, auth=%s, storage=%s)",
        settings.default_rate_limit,
        settings.auth_rate_limit,
        settings.rate_limit_storage_uri.split("://", 1)[0],
    )

    app.state.purge_task = None
    if isinstance(app.state.sessions, InMemorySessionStore):
        app.state.purge_task = asyncio.create_task(
            _purge_loop(app.state.sessions, settings.session_purge_interval_seconds)
        )

    yield

    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    await app.state.sessions.close()
    app.state.credentials.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Request admission: sessions, bearer tokens, guards, and shared rate limits.",
    version=VERSION,
    lifespan=lifespan,
)
# Routes declared directly on the app (health) admit before body parsing too.
app.router.route_class = AdmissionRoute

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    max_age=3600,
)


# ---------------------------------------------------------------------------
# Response post-processing
#
# The admission pipeline leaves its Decision on request.state. Headers are
# added to every response that went through the limiter, rejections included.
# An exception here is not swallowed: it reaches the generic handler as a 500.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def rate_limit_headers(request: Request, call_next):
    response = await call_next(request)
    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        apply_rate_limit_headers(response, decision, time.time())
    return response


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
app.include_router(users_router, prefix="/api/v1", tags=["User"])


# ---------------------------------------------------------------------------
# Error-standardization boundary
#
# All handlers return the same ErrorEnvelope so clients can parse errors
# uniformly: {statusCode, timestamp, path, message}.
# ---------------------------------------------------------------------------


def _envelope(request: Request, status_code: int, message) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorEnvelope.build(status_code, request.url.path, message).model_dump(by_alias=True),
    )


@app.exception_handler(AdmissionError)
async def admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
    """Map every taxonomy error to its status and public message.

    Unauthorized subclasses (TokenExpired, InvalidSignature, SessionExpired...)
    are logged by class name; the client sees only "Unauthorized".
    """
    if isinstance(exc, Unauthorized):
        logger.info("%s %s rejected: %s", request.method, request.url.path, type(exc).__name__)
    response = _envelope(request, exc.status_code, exc.message)
    if isinstance(exc, RateLimitExceeded):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one message per failing field."""
    messages = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        messages.append(f"{field}: {error.get('msg', 'invalid')}")
    return await admission_error_handler(request, ValidationFailed(messages))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handler-raised HTTPExceptions and routing errors (404, 405)."""
    response = _envelope(request, exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(request, 500, "Internal server error")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- health checks from load balancers and monitoring systems
# must not be throttled.
# ---------------------------------------------------------------------------

HEALTH = RoutePolicy(skip_rate_limit=True)


@app.get("/api/v1/health", tags=["Health"], dependencies=[Depends(admit(HEALTH))])
async def health(request: Request) -> HealthResponse:
    """Return API liveness plus the reachability of each backing store."""
    components = {"app": "ok"}
    try:
        request.app.state.credentials.count()
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: credential store unreachable")
        components["database"] = "error"
    try:
        components["rate_limit_store"] = "ok" if await request.app.state.limiter.ping() else "error"
    except Exception:
        logger.exception("Health check: rate limit store unreachable")
        components["rate_limit_store"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
