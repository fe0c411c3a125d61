"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
wires the import runtime and registers all API routers.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import ImportRuntime, get_runtime
from .api.routers import jobs, uploads
from .core.config import settings
from .core.logging_config import configure_logging
from .db.models import ensure_record_tables
from .db.session import get_engine
from .domain.imports.jobs import utcnow

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


async def reap_expired(runtime: ImportRuntime, interval_seconds: float) -> None:
    """Purge jobs and upload sessions whose retention window has passed."""
    while True:
        await asyncio.sleep(interval_seconds)
        purged_jobs, purged_uploads = runtime.purge_expired()
        if purged_jobs or purged_uploads:
            logger.info("Purged %d expired jobs and %d upload sessions", len(purged_jobs), len(purged_uploads))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        try:
            ensure_record_tables(get_engine())
            logger.info("Record tables ready")
        except Exception:
            logger.exception("Failed to initialize database tables; the application cannot start")
            raise  # Re-raise to prevent app from starting with broken database

    runtime = get_runtime()
    reaper = asyncio.create_task(reap_expired(runtime, settings.job_reaper_interval_seconds))

    yield  # Application runs here

    reaper.cancel()
    with suppress(asyncio.CancelledError):
        await reaper
    await runtime.launcher.shutdown()


# Initialize FastAPI application
app = FastAPI(
    title="Bulk Import API",
    version="1.0.0",
    description="Asynchronous CSV/XLS/XLSX imports with progress tracking and single-record retry",
    lifespan=lifespan
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads.router)
app.include_router(jobs.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Bulk Import API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Liveness check for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "service": "bulk-import-api"
    }
