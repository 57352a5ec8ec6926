"""Comments, likes and saved requests."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.comment import Comment
from models.document_request import DocumentRequest
from models.engagement import Like, SavedRequest
from services.errors import NotFound, ValidationFailed
from services.notifications import NotificationHub, create_notification
from services.profile_cache import ProfileCache
from services.timestamps import isoformat, utcnow

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000


async def _get_request(request_id: str, db: AsyncSession) -> DocumentRequest:
    request = (
        await db.execute(select(DocumentRequest).where(DocumentRequest.id == request_id))
    ).scalar_one_or_none()
    if not request:
        raise NotFound("Request not found.")
    return request


async def add_comment(
    author_id: str,
    request_id: str,
    body: str,
    db: AsyncSession,
    *,
    hub: Optional[NotificationHub] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    text = str(body or "").strip()
    if not text:
        raise ValidationFailed("Comment cannot be empty.")
    if len(text) > MAX_COMMENT_LENGTH:
        raise ValidationFailed(f"Comment must be at most {MAX_COMMENT_LENGTH} characters.")

    current = now or utcnow()
    request = await _get_request(request_id, db)
    comment = Comment(
        id=str(uuid.uuid4()),
        request_id=request.id,
        author_id=author_id,
        body=text,
        created_at=current,
    )
    db.add(comment)
    notification = None
    if request.owner_id != author_id:
        notification = create_notification(
            db,
            user_id=request.owner_id,
            type="comment",
            title="New comment on your request",
            message=text[:140],
            reference_id=request.id,
            actor_id=author_id,
            now=current,
        )
    await db.commit()

    if hub is not None and notification is not None:
        await hub.publish_many([notification])
    return {
        "id": comment.id,
        "request_id": comment.request_id,
        "author_id": comment.author_id,
        "body": comment.body,
        "created_at": isoformat(comment.created_at),
    }


async def list_comments(request_id: str, db: AsyncSession, profile_cache: ProfileCache) -> List[Dict[str, Any]]:
    await _get_request(request_id, db)
    result = await db.execute(
        select(Comment).where(Comment.request_id == request_id).order_by(Comment.created_at.asc())
    )
    comments = result.scalars().all()
    profiles = await profile_cache.get_many([item.author_id for item in comments], db)
    return [
        {
            "id": item.id,
            "request_id": item.request_id,
            "author_id": item.author_id,
            "author": profiles[item.author_id].to_dict() if item.author_id in profiles else None,
            "body": item.body,
            "created_at": isoformat(item.created_at),
        }
        for item in comments
    ]


async def _membership_count(model, request_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(func.count(model.id)).where(model.request_id == request_id))
    return int(result.scalar() or 0)


async def _toggle_membership(model, user_id: str, request_id: str, db: AsyncSession) -> bool:
    """Flip the (user, request) row. Returns True when it now exists."""
    removed = await db.execute(
        delete(model)
        .where(model.user_id == user_id, model.request_id == request_id)
        .execution_options(synchronize_session=False)
    )
    if removed.rowcount:
        return False
    db.add(model(id=str(uuid.uuid4()), user_id=user_id, request_id=request_id))
    try:
        await db.flush()
    except IntegrityError:
        # A concurrent toggle inserted the same pair first.
        await db.rollback()
        return True
    return True


async def toggle_like(
    user_id: str,
    request_id: str,
    db: AsyncSession,
    *,
    hub: Optional[NotificationHub] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    request = await _get_request(request_id, db)
    owner_id = request.owner_id
    title = request.title
    liked = await _toggle_membership(Like, user_id, request_id, db)
    notification = None
    if liked and owner_id != user_id:
        notification = create_notification(
            db,
            user_id=owner_id,
            type="like",
            title="Someone liked your request",
            message=title,
            reference_id=request_id,
            actor_id=user_id,
            now=now,
        )
    await db.commit()
    if hub is not None and notification is not None:
        await hub.publish_many([notification])
    return {"liked": liked, "like_count": await _membership_count(Like, request_id, db)}


async def toggle_save(user_id: str, request_id: str, db: AsyncSession) -> Dict[str, Any]:
    await _get_request(request_id, db)
    saved = await _toggle_membership(SavedRequest, user_id, request_id, db)
    await db.commit()
    return {"saved": saved, "save_count": await _membership_count(SavedRequest, request_id, db)}
