"""
Kórima - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    requests,
    responses,
    points,
    profiles,
    notifications,
    metadata,
    admin,
)
from services.cleanup import run_cleanup_sweep_service
from services.crossref import CrossRefClient
from services.errors import Unknown, ValidationFailed
from services.notifications import NotificationHub
from services.open_access import OpenAccessClient
from services.profile_cache import ProfileCache
from services.storage import LocalBlobStorage

logger = logging.getLogger(__name__)


async def _periodic_cleanup_sweep(storage: LocalBlobStorage) -> None:
    interval_minutes = max(int(settings.CLEANUP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_cleanup_sweep_service(storage)
            files = result.get("files", {})
            deleted = int(files.get("deleted", 0) or 0)
            expired = int(result.get("expired_requests", 0) or 0)
            if deleted or expired or files.get("errors"):
                print(
                    f"🧹 Retention sweep: files_deleted={deleted} "
                    f"errors={len(files.get('errors') or [])} expired_requests={expired}"
                )
        except Exception as exc:
            print(f"⚠️ Retention sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Kórima API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    cleanup_task = None
    if int(settings.CLEANUP_INTERVAL_MINUTES) > 0:
        cleanup_task = asyncio.create_task(_periodic_cleanup_sweep(app.state.storage))
        print(f"📅 Retention sweep loop enabled (every {int(settings.CLEANUP_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Kórima API",
    description="Academic document requests answered by peers for points",
    version="0.1.0",
    lifespan=lifespan,
)

# Shared in-process collaborators; tests swap these on app.state.
app.state.profile_cache = ProfileCache()
app.state.notification_hub = NotificationHub()
app.state.storage = LocalBlobStorage(settings.STORAGE_DIR, settings.STORAGE_BUCKET)
app.state.crossref = CrossRefClient()
app.state.open_access = OpenAccessClient()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    logger.info("request validation failed on %s %s: %s", request.method, request.url.path, errors)
    failure = ValidationFailed("Request validation failed.", errors=errors)
    return JSONResponse(status_code=failure.status_code, content={"detail": failure.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    error = Unknown()
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(requests.router, prefix="/requests", tags=["Requests"])
app.include_router(responses.router, prefix="/responses", tags=["Responses"])
app.include_router(points.router, prefix="/points", tags=["Points"])
app.include_router(profiles.router, prefix="/profiles", tags=["Profiles"])
app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
app.include_router(metadata.router, prefix="/metadata", tags=["Metadata"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Kórima API",
        "version": "0.1.0",
        "status": "running"
    }
