"""Role checks and administrative overrides."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.comment import Comment
from models.document_request import DocumentRequest
from models.engagement import Like, SavedRequest
from models.notification import Notification
from models.response import Response
from models.user import User
from services.errors import NotFound, PermissionDenied, ValidationFailed
from services.lifecycle import STATUS_COMPLETED
from services.profiles import serialize_user
from services.storage import LocalBlobStorage, storage_path_from_reference
from services.timestamps import start_of_utc_day, utcnow

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_MODERATOR = "moderator"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_MODERATOR, ROLE_ADMIN)
STAFF_ROLES = {ROLE_MODERATOR, ROLE_ADMIN}


async def get_role(user_id: str, db: AsyncSession) -> str:
    role = (await db.execute(select(User.role).where(User.id == user_id))).scalar_one_or_none()
    if role is None:
        raise NotFound("User not found.")
    return role


async def require_role(user_id: str, db: AsyncSession, allowed: set) -> str:
    role = await get_role(user_id, db)
    if role not in allowed:
        raise PermissionDenied("Insufficient role for this action.")
    return role


async def _count(db: AsyncSession, column, *criteria) -> int:
    result = await db.execute(select(func.count(column)).where(*criteria))
    return int(result.scalar() or 0)


async def get_admin_overview(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    today = start_of_utc_day(now or utcnow())
    return {
        "total_users": await _count(db, User.id),
        "total_requests": await _count(db, DocumentRequest.id),
        "resolved_requests": await _count(db, DocumentRequest.id, DocumentRequest.status == STATUS_COMPLETED),
        "total_responses": await _count(db, Response.id),
        "total_comments": await _count(db, Comment.id),
        "total_likes": await _count(db, Like.id),
        "users_today": await _count(db, User.id, User.created_at >= today),
        "requests_today": await _count(db, DocumentRequest.id, DocumentRequest.created_at >= today),
    }


async def list_users(db: AsyncSession, *, q: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    query = select(User)
    if q and q.strip():
        pattern = f"%{q.strip()}%"
        query = query.where(User.full_name.ilike(pattern) | User.email.ilike(pattern))
    query = query.order_by(User.created_at.desc()).limit(max(1, min(int(limit), 200)))
    result = await db.execute(query)
    return [serialize_user(user, include_private=True) for user in result.scalars().all()]


async def set_user_role(actor_id: str, target_id: str, role: str, db: AsyncSession) -> Dict[str, Any]:
    await require_role(actor_id, db, {ROLE_ADMIN})
    if role not in ROLES:
        raise ValidationFailed("Unknown role.", allowed=list(ROLES))
    if actor_id == target_id and role != ROLE_ADMIN:
        raise ValidationFailed("Admins cannot remove their own admin role.")

    target = (await db.execute(select(User).where(User.id == target_id))).scalar_one_or_none()
    if not target:
        raise NotFound("User not found.")
    previous = target.role
    target.role = role
    await db.commit()
    logger.info("role changed target=%s from=%s to=%s by=%s", target_id, previous, role, actor_id)
    return {"user_id": target_id, "role": role, "previous_role": previous}


async def delete_request(
    actor_id: str,
    request_id: str,
    db: AsyncSession,
    storage: LocalBlobStorage,
) -> Dict[str, Any]:
    """Remove a request and everything attached to it. Points are not refunded."""
    await require_role(actor_id, db, {ROLE_ADMIN})
    request = (
        await db.execute(select(DocumentRequest).where(DocumentRequest.id == request_id))
    ).scalar_one_or_none()
    if not request:
        raise NotFound("Request not found.")

    responses = (
        await db.execute(select(Response).where(Response.request_id == request_id))
    ).scalars().all()
    blob_paths = [
        path
        for path in (storage_path_from_reference(item.file_path, storage.bucket) for item in responses)
        if path
    ]

    try:
        await db.execute(delete(Notification).where(Notification.reference_id == request_id))
        await db.execute(delete(Like).where(Like.request_id == request_id))
        await db.execute(delete(SavedRequest).where(SavedRequest.request_id == request_id))
        await db.execute(delete(Comment).where(Comment.request_id == request_id))
        await db.execute(delete(Response).where(Response.request_id == request_id))
        await db.execute(delete(DocumentRequest).where(DocumentRequest.id == request_id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    blobs_deleted = 0
    for path in blob_paths:
        try:
            if storage.delete(path):
                blobs_deleted += 1
        except (OSError, ValueError) as exc:
            logger.warning("could not delete blob %s after request delete: %s", path, exc)

    logger.info("request deleted id=%s by=%s responses=%s", request_id, actor_id, len(responses))
    return {"request_id": request_id, "responses_deleted": len(responses), "blobs_deleted": blobs_deleted}
