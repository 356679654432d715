"""
Exposure Backend — FastAPI Application Factory
================================================

What:  Builds the gallery API: middleware, routers, error mapping and the
       startup/shutdown sequence.
How:   create_app() returns a fresh FastAPI instance; tests build their own
       and override dependencies on it.
Who:   uvicorn app.main:app

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware Chain:                                       │
    │  Rate Limit → Request ID → Logging → Session → CORS      │
    │                                                          │
    │  Routes:                                                 │
    │  GET /health │ /api/places... │ /api/files... │ /api/admin│
    │                                                          │
    │  Exception Handlers:                                     │
    │  Validation→400 │ Auth→401 │ NotFound→404 │ Conflict→409 │
    │  RateLimit→429  │ Storage→500 │ TransientLock→503        │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Configure logging
    2. Validate configuration (logged, not fatal)
    3. Restore or purge deletions a crashed process left in .trash/
    4. Mirror ADMIN_USERS into the admin_users table
    5. Sweep orphan files, then schedule the periodic sweep
    6. Re-queue thumbnails left unfinished by the previous process

    Shutdown:
    1. Cancel the periodic sweep
    2. Wait for queued thumbnail jobs
    3. Dispose database engine
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from app import __version__
from app.config import settings
from app.database import async_session_factory, dispose_engine
from app.exceptions import (
    AuthenticationError,
    ConflictError,
    GalleryError,
    NotFoundError,
    RateLimitExceededError,
    StorageError,
    TransientLockError,
    ValidationError,
)
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.request_id import RequestIDMiddleware, request_id_var
from app.routes import admin, health, places
from app.services.auth_service import auth_service
from app.services.storage_maintenance import storage_maintenance
from app.services.thumbnail_service import thumbnail_queue

logger = logging.getLogger(__name__)

SESSION_COOKIE = "exposure_session"


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════


def setup_logging() -> None:
    """
    Configure the root logger once at startup.

    Format: 2024-06-03T12:00:00 [INFO] app.services.photo_service: Uploaded 3 photos...
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party loggers that are chatty at INFO
    for name in ("uvicorn.access", "sqlalchemy.engine", "PIL", "multipart", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════


async def bootstrap_store() -> None:
    """
    Startup database tasks; failures are logged, not fatal.

    Interrupted deletions are settled first so the orphan sweep and the
    thumbnail recovery see the files where the rows expect them.
    """
    try:
        async with async_session_factory() as db:
            await storage_maintenance.recover_staged_deletions(db)
            credentials = settings.admin_credentials
            if credentials:
                await auth_service.sync_admin_users(db, credentials)
            if settings.orphan_cleanup_enabled:
                await storage_maintenance.cleanup_orphans(
                    db, dry_run=settings.orphan_cleanup_dry_run
                )
            await thumbnail_queue.retry_failed(db, include_stale=True)
    except (SQLAlchemyError, OSError) as e:
        logger.error("Startup database tasks failed: %s", str(e), exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("Exposure Backend %s starting up...", __version__)

    # The server still starts so /health can report the problem
    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    await bootstrap_store()

    cleanup_task = None
    if settings.orphan_cleanup_enabled:
        cleanup_task = asyncio.create_task(
            storage_maintenance.run_periodically(
                async_session_factory,
                settings.orphan_cleanup_interval_hours,
                dry_run=settings.orphan_cleanup_dry_run,
            )
        )

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("Exposure Backend shutting down...")
    if cleanup_task is not None:
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
    await thumbnail_queue.drain()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════


def _error_body(error: str, message: str, details: Optional[dict] = None) -> dict:
    body = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map GalleryError subclasses to status codes.

        ValidationError         → 400
        AuthenticationError     → 401
        NotFoundError           → 404
        ConflictError           → 409
        RateLimitExceededError  → 429 (Retry-After)
        StorageError            → 500 (generic message)
        TransientLockError      → 503 (Retry-After)
        GalleryError / Exception → 500

    Responses never contain stack traces, SQL or filesystem paths; 5xx
    context is logged server-side only.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=400,
            content=_error_body("validation_error", exc.message, exc.context),
        )

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        return JSONResponse(
            status_code=401,
            content=_error_body("authentication_error", exc.message),
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=404,
            content=_error_body("not_found", exc.message),
        )

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        logger.warning("[%s] Conflict: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=409,
            content=_error_body("conflict", exc.message),
        )

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return JSONResponse(
            status_code=429,
            content=_error_body("rate_limit_exceeded", exc.message, exc.context),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error(
            "[%s] %s: %s | Context: %s",
            request_id_var.get(""),
            type(exc).__name__,
            exc.message,
            exc.context,
        )
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "server_error", "A storage operation failed. Please try again later."
            ),
        )

    @app.exception_handler(TransientLockError)
    async def handle_transient_lock(request: Request, exc: TransientLockError):
        logger.warning("[%s] Place lock timeout: %s", request_id_var.get(""), exc.context)
        return JSONResponse(
            status_code=503,
            content=_error_body("service_unavailable", exc.message),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(GalleryError)
    async def handle_gallery_error(request: Request, exc: GalleryError):
        logger.error(
            "[%s] Unhandled %s: %s | Context: %s",
            request_id_var.get(""),
            type(exc).__name__,
            exc.message,
            exc.context,
        )
        return JSONResponse(
            status_code=500,
            content=_error_body("server_error", "An internal error occurred."),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(
            "[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "internal_server_error",
                "An unexpected error occurred. Please try again or contact support.",
            ),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════


def create_app() -> FastAPI:
    app = FastAPI(
        title="Exposure API",
        description=(
            "Photo gallery backend: public place and photo listings, "
            "admin management of places and photos, TOTP-protected login."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware executes in reverse order of addition:
    # RateLimit → RequestID → Logging → Session → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=SESSION_COOKIE,
        max_age=settings.session_max_age,
        same_site="lax",
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(places.router)
    app.include_router(admin.router)

    return app


app = create_app()
