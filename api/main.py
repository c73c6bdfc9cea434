"""
api/main.py -- FastAPI application entry point for tokengate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the configured frontend
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every component once from the Settings instance and hangs
it on app.state (store, cache, codec, mailer, providers, flows). Shutdown
closes them in reverse order.
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
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError
from auth.external import ExternalAuthFlow
from auth.local import LocalAuthFlow
from auth.mailer import EmailDispatcher
from auth.models import ProviderName
from auth.oauth import OAuthProvider, build_providers
from auth.sessions import SessionOrchestrator
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.two_factor import TwoFactorFlow
from cache.store import MemorySessionCache, SessionCache, build_session_cache
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired in-process cache entries every 10 minutes.

    Only started for MemorySessionCache; Redis expires keys on its own.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(10 * 60)
        removed = app.state.cache.purge_expired()
        if removed:
            logger.info("Purged %d expired session cache entries", removed)


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def wire_components(
    app: FastAPI,
    settings: Settings,
    store: UserStore,
    cache: SessionCache,
    mailer: EmailDispatcher,
    providers: dict[ProviderName, OAuthProvider],
) -> None:
    """Build the flows on top of the given collaborators and attach them to app.state.

    Tests call this with in-memory stores, a recording mailer and stub
    providers; the real lifespan calls it with the configured ones.
    """
    codec = TokenCodec(settings)
    sessions = SessionOrchestrator(codec, cache, store)
    two_factor = TwoFactorFlow(settings, cache, store, mailer, sessions)

    app.state.settings = settings
    app.state.user_store = store
    app.state.cache = cache
    app.state.codec = codec
    app.state.mailer = mailer
    app.state.providers = providers
    app.state.sessions = sessions
    app.state.two_factor = two_factor
    app.state.local_auth = LocalAuthFlow(settings, codec, store, mailer, sessions, two_factor)
    app.state.external_auth = ExternalAuthFlow(settings, codec, cache, store, providers, sessions, two_factor)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.

    Startup order matters:
      1. Settings first -- every other component is built from it.
      2. Store and cache next -- the flows hold references to both.
      3. Purge task last -- references app.state.cache.
    """
    settings = get_settings()
    logger.info("tokengate API starting up (debug=%s)", settings.debug)

    store = UserStore(settings.database_url)
    cache = build_session_cache(settings)
    mailer = EmailDispatcher(settings)
    if not mailer.is_configured:
        logger.warning("EMAIL_HOST not set -- emails will be logged, not sent")
    providers = build_providers(settings)
    wire_components(app, settings, store, cache, mailer, providers)

    app.state.purge_task = None
    if isinstance(cache, MemorySessionCache):
        app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    await cache.close()
    store.close()
    logger.info("tokengate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="tokengate API",
    description="Local, OAuth2 and two-factor authentication with rotating JWT sessions.",
    version=API_VERSION,
    lifespan=lifespan,
    # Interactive docs only in development.
    docs_url="/docs" if _settings.debug else None,
    redoc_url="/redoc" if _settings.debug else None,
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
    allow_origins=_settings.cors_origins,
    # The refresh cookie must ride along on cross-origin calls from the frontend.
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a domain error from the auth core with its own status and code."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s", exc.code, request.method, request.url.path)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
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
    field rather than stringifying it.
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

    The raw exception is logged only, never written to the response body.
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
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return API liveness plus credential store and session cache checks."""
    components = {"app": "ok", "database": "ok", "cache": "ok"}
    try:
        await run_in_threadpool(request.app.state.user_store.ping)
    except Exception:
        logger.exception("Health check: database check failed")
        components["database"] = "error"
    try:
        await request.app.state.cache.ping()
    except Exception:
        logger.exception("Health check: cache check failed")
        components["cache"] = "error"

    healthy = all(v == "ok" for v in components.values())
    body = HealthResponse(status="healthy" if healthy else "degraded", version=API_VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
