"""
TimeSync Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn timesync.main:app).
When:  Once at server startup; the returned app handles all subsequent requests.

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware Chain:                                  │
    │  ┌──────────────┐ ┌──────────┐ ┌─────────────────┐  │
    │  │  Rate Limit  │→│ Req ID   │→│  Logging        │  │
    │  └──────────────┘ └──────────┘ └─────────────────┘  │
    │                                                     │
    │  Routes:                                            │
    │  ┌──────────────┐ ┌──────────────┐ ┌─────────────┐  │
    │  │ POST/GET     │ │ GET /api/    │ │ GET /health │  │
    │  │ /sync        │ │ records/...  │ │ GET /       │  │
    │  └──────────────┘ └──────────────┘ └─────────────┘  │
    │                                                     │
    │  Exception Handlers:                                │
    │  ┌───────────────────────────────────────────────┐  │
    │  │ Validation→400 │ Stale/Watermark→409 │ DB→500 │  │
    │  │ Contention→503 │ NotFound→404 │ Limit→429     │  │
    │  └───────────────────────────────────────────────┘  │
    └─────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration
    3. Create tables (DB_AUTO_CREATE only)
    4. Initialize the journal position from the journal

    Shutdown:
    1. Dispose database engine (close all connections)
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from timesync import __version__
from timesync.config import settings
from timesync.database import async_session_factory, create_schema, dispose_engine
from timesync.exceptions import (
    ConcurrentConflictError,
    InvalidWatermarkError,
    NotFoundError,
    RateLimitExceededError,
    StaleClientError,
    StorageError,
    TimeSyncError,
    ValidationError,
)
from timesync.middleware.logging import RequestLoggingMiddleware
from timesync.middleware.rate_limit import RateLimitMiddleware
from timesync.middleware.request_id import RequestIDMiddleware, request_id_var
from timesync.routes import health, records, sync
from timesync.services.change_journal import initialize_position

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR = "An internal error occurred. Please try again later."


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Request ids are put into messages by the callers ("[%s] ...").
    """
    log_format = (
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),  # Docker captures stdout
        ],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifecycle: startup and shutdown procedures.

    Startup sequence:
        1. Setup logging
        2. Validate critical configuration
        3. Create tables when DB_AUTO_CREATE is set
        4. Bring the persisted journal position in line with the journal

    Shutdown sequence:
        1. Dispose database engine (close all pooled connections)
    """
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("TimeSync Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")
        # Keep serving: /health still reports and operators can see the error

    if settings.db_auto_create:
        await create_schema()
        logger.info("Database schema created (DB_AUTO_CREATE)")

    try:
        await initialize_position(async_session_factory)
    except SQLAlchemyError as e:
        logger.error("Could not initialize the change journal: %s", str(e))

    logger.info("Conflict strategy: %s", settings.conflict_strategy)
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("API docs: http://%s:%d/docs", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield  # Application runs here

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("TimeSync Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: dict = None,
    headers: dict = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details,
            "request_id": request_id_var.get(""),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register global exception handlers for consistent error responses.

    Handler hierarchy:
        ValidationError          → 400 Bad Request (malformed sync request)
        RequestValidationError   → 400 Bad Request (body/query failed schema)
        NotFoundError            → 404 Not Found
        InvalidWatermarkError    → 409 Conflict (resync from 0)
        StaleClientError         → 409 Conflict (resync from 0)
        RateLimitExceededError   → 429 Too Many Requests
        ConcurrentConflictError  → 503 Service Unavailable (retry later)
        StorageError             → 500 Internal Server Error
        SQLAlchemyError          → 500 Internal Server Error
        TimeSyncError (base)     → 500 Internal Server Error
        Exception (fallback)     → 500 Internal Server Error

    Security: storage failures never expose SQL or driver messages in the
    response. Details are logged server-side.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        """Client sent an invalid change set; nothing was applied."""
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        problems = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body",
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning("[%s] Malformed request: %s", request_id_var.get(""), problems)
        return _error_response(
            400, "validation_error", "The request is malformed", {"problems": problems}
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message, exc.context)

    @app.exception_handler(InvalidWatermarkError)
    async def handle_invalid_watermark(request: Request, exc: InvalidWatermarkError):
        logger.warning("[%s] Invalid watermark: %s", request_id_var.get(""), exc.message)
        return _error_response(409, "invalid_watermark", exc.message, exc.context)

    @app.exception_handler(StaleClientError)
    async def handle_stale_client(request: Request, exc: StaleClientError):
        logger.warning("[%s] Stale client: %s", request_id_var.get(""), exc.message)
        return _error_response(409, "stale_client", exc.message, exc.context)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        """Client exceeded rate limit: tell them when they can retry."""
        return _error_response(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ConcurrentConflictError)
    async def handle_concurrent_conflict(request: Request, exc: ConcurrentConflictError):
        """Contention outlasted the retry budget; the client retries the whole sync."""
        logger.warning("[%s] Concurrent conflict: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "concurrent_conflict",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        """Storage failure: generic message to the user, context logged server-side."""
        logger.error(
            "[%s] Storage error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context
        )
        return _error_response(500, "server_error", GENERIC_SERVER_ERROR)

    @app.exception_handler(SQLAlchemyError)
    async def handle_sqlalchemy_error(request: Request, exc: SQLAlchemyError):
        logger.error("[%s] Database error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(500, "server_error", GENERIC_SERVER_ERROR)

    @app.exception_handler(TimeSyncError)
    async def handle_timesync_error(request: Request, exc: TimeSyncError):
        logger.error(
            "[%s] Unhandled application error: %s | Context: %s",
            request_id_var.get(""), exc.message, exc.context,
        )
        return _error_response(500, "server_error", GENERIC_SERVER_ERROR)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """
        Catch-all for truly unexpected errors.

        Returns a generic 500 error with a request ID for support tickets.
        The stack trace is logged server-side only.
        """
        logger.error(
            "[%s] Unexpected error: %s",
            request_id_var.get(""),
            str(exc),
            exc_info=True,
        )
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns: Fully configured FastAPI instance ready to receive requests.
    """
    app = FastAPI(
        title="TimeSync API",
        description=(
            "Multi-device synchronization server for a time-tracking application. "
            "Clients push local changes and pull every record changed since their "
            "last sync; conflicting edits are resolved last-writer-wins."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Middleware executes in REVERSE order of addition:
    # RateLimit → RequestID → Logging → GZip → CORS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
        ],
    )

    # Deltas after a first sync can be large
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.add_middleware(RequestLoggingMiddleware)

    app.add_middleware(RequestIDMiddleware)

    app.add_middleware(RateLimitMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(sync.router)
    app.include_router(records.router)
    app.include_router(health.router)

    return app


# ── Application Instance ─────────────────────────────────────────────────
# uvicorn expects `timesync.main:app` to be importable
app = create_app()
