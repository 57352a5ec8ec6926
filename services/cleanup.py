"""Retention sweep for expired response files and overdue requests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.response import Response
from services.lifecycle import expire_overdue_requests
from services.storage import LocalBlobStorage, storage_path_from_reference
from services.timestamps import utcnow

logger = logging.getLogger(__name__)


def default_storage() -> LocalBlobStorage:
    return LocalBlobStorage(settings.STORAGE_DIR, settings.STORAGE_BUCKET)


async def purge_expired_response_files(
    db: AsyncSession,
    storage: LocalBlobStorage,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Delete blobs of expired responses and clear their file reference.

    The response row itself is kept. Safe to re-run: purged rows no longer
    match and a blob that is already gone counts as deleted.
    """
    current = now or utcnow()
    result = await db.execute(
        select(Response).where(
            Response.file_path.is_not(None),
            Response.expires_at < current,
        )
    )
    expired = result.scalars().all()

    deleted = 0
    errors = []
    for response in expired:
        path = storage_path_from_reference(response.file_path, storage.bucket)
        if path is None:
            errors.append(f"Invalid file reference for response {response.id}")
            continue
        try:
            storage.delete(path)
        except (OSError, ValueError) as exc:
            logger.warning("cleanup could not delete blob response=%s: %s", response.id, exc)
            errors.append(f"Failed to delete file for response {response.id}: {exc}")
            continue
        response.file_path = None
        response.file_name = None
        deleted += 1

    await db.commit()
    logger.info("cleanup complete scanned=%s deleted=%s errors=%s", len(expired), deleted, len(errors))
    return {"scanned": len(expired), "deleted": deleted, "errors": errors}


async def run_cleanup_sweep(
    db: AsyncSession,
    storage: LocalBlobStorage,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or utcnow()
    files = await purge_expired_response_files(db, storage, current)
    expired_requests = await expire_overdue_requests(db, current)
    return {"files": files, "expired_requests": expired_requests, "ran_at": current.isoformat()}


async def run_cleanup_sweep_service(storage: Optional[LocalBlobStorage] = None) -> Dict[str, Any]:
    """Run the sweep with its own session."""
    async with async_session_maker() as db:
        return await run_cleanup_sweep(db, storage or default_storage())


def run_cleanup_sweep_job() -> Dict[str, Any]:
    """RQ worker entrypoint for the retention sweep."""
    return asyncio.run(run_cleanup_sweep_service())
