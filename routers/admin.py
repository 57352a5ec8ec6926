"""
Administration router: platform overview, analytics and exports, roles,
request removal and the retention sweep trigger.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin, require_staff
from routers.dependencies import get_storage
from services.analytics import build_analytics_snapshot
from services.analytics_export import export_filename, render_analytics_csv, render_analytics_html
from services.cleanup import run_cleanup_sweep
from services.cleanup_queue import enqueue_cleanup_sweep
from services.moderation import delete_request, get_admin_overview, list_users, set_user_role
from services.storage import LocalBlobStorage
from services.timestamps import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


class RoleChangeRequest(BaseModel):
    role: Literal["user", "moderator", "admin"]


@router.get("/overview")
async def overview(
    _auth: AuthContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    return await get_admin_overview(db)


@router.get("/analytics")
async def analytics(
    _auth: AuthContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    return await build_analytics_snapshot(db)


@router.get("/analytics/export")
async def export_analytics(
    format: Literal["csv", "html"] = "csv",
    _auth: AuthContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Download the analytics snapshot as CSV, or as printable HTML for print-to-PDF."""
    now = utcnow()
    snapshot = await build_analytics_snapshot(db, now)
    filename = export_filename(format, now)
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if format == "html":
        return HTMLResponse(render_analytics_html(snapshot, now), headers=headers)
    return Response(
        content=render_analytics_csv(snapshot, now),
        media_type="text/csv; charset=utf-8",
        headers=headers,
    )


@router.get("/users")
async def users(
    q: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    _auth: AuthContext = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await list_users(db, q=q, limit=limit)}


@router.post("/users/{user_id}/role")
async def change_role(
    user_id: str,
    request: RoleChangeRequest,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await set_user_role(auth.user_id, user_id, request.role, db)


@router.delete("/requests/{request_id}")
async def remove_request(
    request_id: str,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_storage),
):
    """Delete a request and everything attached to it. Points are not refunded."""
    return await delete_request(auth.user_id, request_id, db, storage)


@router.post("/cleanup")
async def trigger_cleanup(
    background: bool = False,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_storage),
):
    """Run the retention sweep now, or hand it to the cleanup worker."""
    if not background:
        result = await run_cleanup_sweep(db, storage)
        logger.info("cleanup triggered inline by=%s", auth.user_id)
        return {"mode": "inline", **result}

    try:
        job = enqueue_cleanup_sweep()
    except (RedisError, OSError) as exc:
        raise HTTPException(
            status_code=503,
            detail="Cleanup queue unavailable. Check Redis/worker availability and retry.",
        ) from exc
    logger.info("cleanup queued job=%s by=%s", job.id, auth.user_id)
    return {"mode": "queued", "job_id": job.id}
