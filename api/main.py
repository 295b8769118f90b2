"""
api/main.py -- FastAPI application entry point for AccessBridge.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan checks the signing key, opens the store, wires the services onto
app.state, and starts the retention prune and metrics snapshot loops; shutdown
cancels the loops and disposes the engine.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from auth.audit import AuditRecorder
from auth.dependencies import get_current_user
from auth.guard import ProtectedAccountGuard
from auth.metrics import SecurityMetricsService
from auth.models import Credential
from auth.retention import RetentionPruner
from auth.sessions import SessionManager
from auth.store import Database, MetricsStore, SessionStore, UserStore
from core.config import Settings, get_settings
from core.errors import AccessBridgeError

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accessbridge.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(app: FastAPI, db: Database, settings: Settings) -> None:
    """Build the stores and session services over db and hang them on app.state.

    Shared by the lifespan and the test suite so both wire identically.
    """
    app.state.db = db
    app.state.user_store = UserStore(db)
    app.state.session_store = SessionStore(db)
    app.state.audit = AuditRecorder(app.state.session_store)
    app.state.sessions = SessionManager.from_settings(
        app.state.user_store, app.state.session_store, app.state.audit, settings
    )
    app.state.guard = ProtectedAccountGuard(app.state.user_store)
    app.state.pruner = RetentionPruner(app.state.session_store, app.state.audit)
    app.state.metrics = SecurityMetricsService(
        app.state.session_store,
        MetricsStore(db),
        default_window_hours=settings.security_metrics_window_hours,
        default_top_n=settings.security_metrics_top_n,
    )


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


def run_prune_once(pruner: RetentionPruner, settings: Settings) -> list[dict] | None:
    """Run every retention sweep once. A failed run is logged and retried next interval."""
    try:
        summaries = pruner.run_all(settings.refresh_revoked_retention_days, settings.session_audit_retention_days)
    except (AccessBridgeError, SQLAlchemyError):
        logger.exception("Scheduled prune run failed; retrying next interval")
        return None
    for summary in summaries:
        logger.info("prune: %s", json.dumps(summary, sort_keys=True))
    return summaries


def run_snapshot_once(metrics: SecurityMetricsService, settings: Settings) -> dict | None:
    """Store one metrics snapshot, then drop snapshots past their retention window."""
    try:
        snapshot = metrics.create_snapshot()
        summary = metrics.prune_snapshots(settings.security_metrics_snapshot_retention_days).to_dict()
    except (AccessBridgeError, SQLAlchemyError):
        logger.exception("Scheduled metrics snapshot failed; retrying next interval")
        return None
    logger.info("prune: %s", json.dumps(summary, sort_keys=True))
    return {"snapshot_id": snapshot.id, "prune": summary}


async def _run_periodically(interval_seconds: float, job: Callable[[], object], name: str) -> None:
    """Call job in a worker thread every interval_seconds until cancelled.

    An unexpected exception from one run is logged and the loop carries on.
    CancelledError from task.cancel() during shutdown is not an Exception
    subclass, so it propagates out and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(job)
        except Exception:
            logger.exception("%s run failed unexpectedly; retrying next interval", name)


async def _prune_loop(app: FastAPI, settings: Settings) -> None:
    """Run the retention sweeps every PRUNE_INTERVAL_MINUTES."""
    await _run_periodically(
        settings.prune_interval_minutes * 60,
        lambda: run_prune_once(app.state.pruner, settings),
        "Scheduled prune",
    )


async def _snapshot_loop(app: FastAPI, settings: Settings) -> None:
    """Store a metrics snapshot every SECURITY_METRICS_SNAPSHOT_INTERVAL_MINUTES."""
    await _run_periodically(
        settings.security_metrics_snapshot_interval_minutes * 60,
        lambda: run_snapshot_once(app.state.metrics, settings),
        "Metrics snapshot",
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and services on startup; release them on shutdown.

    Startup order matters: the signing key is checked first, the store must
    exist before the services, and the services before the background tasks
    reference app.state.
    """
    settings = get_settings()
    logger.info("AccessBridge API starting up")
    settings.signing_key()
    attach_services(app, Database(settings.database_url, settings.store_timeout_seconds), settings)
    logger.info(
        "Sessions initialized (access_ttl=%ds refresh_ttl=%ds max_active=%d)",
        settings.access_token_ttl_seconds,
        settings.refresh_token_ttl_seconds,
        settings.max_active_refresh_sessions,
    )
    app.state.prune_task = None
    app.state.snapshot_task = None
    if settings.prune_interval_minutes > 0:
        app.state.prune_task = asyncio.create_task(_prune_loop(app, settings))
    else:
        logger.info("In-process pruning disabled (PRUNE_INTERVAL_MINUTES=0)")
    if settings.security_metrics_snapshot_interval_minutes > 0:
        app.state.snapshot_task = asyncio.create_task(_snapshot_loop(app, settings))
    else:
        logger.info("In-process metrics snapshots disabled (SECURITY_METRICS_SNAPSHOT_INTERVAL_MINUTES=0)")

    yield

    for task in (app.state.prune_task, app.state.snapshot_task):
        if task is not None:
            task.cancel()
    app.state.db.close()
    logger.info("AccessBridge API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AccessBridge API",
    description="Refresh-session authority and signed gateway client for the Artemis access platform.",
    version=VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
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
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


@app.get("/docs", include_in_schema=False)
async def docs(user: Credential = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AccessBridge API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: Credential = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="AccessBridge API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AccessBridgeError)
async def domain_error_handler(request: Request, exc: AccessBridgeError) -> JSONResponse:
    """Render a domain error with its own status and code.

    Auth failures carry no-store so an intermediary never caches them.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)
        ).model_dump(),
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
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and the count of audit writes that failed."""
    audit = getattr(request.app.state, "audit", None)
    return HealthResponse(version=VERSION, audit_write_failures=audit.failed_writes if audit else 0)
