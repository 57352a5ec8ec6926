"""Profile reads, edits, activity history and the contributor leaderboard."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.comment import Comment
from models.document_request import DocumentRequest
from models.engagement import Like
from models.response import Response
from models.user import User
from services.errors import NotFound, ValidationFailed
from services.points import level_for_points, level_progress
from services.profile_cache import ProfileCache, ProfileSummary
from services.timestamps import as_utc, isoformat

logger = logging.getLogger(__name__)

EDITABLE_FIELD_LIMITS = {
    "full_name": 120,
    "avatar_url": 2000,
    "country": 80,
    "institution": 200,
    "specialty": 120,
    "bio": 1000,
    "website": 500,
}


def serialize_user(user: User, *, include_private: bool = False) -> Dict[str, Any]:
    payload = {
        "id": user.id,
        "full_name": user.full_name,
        "avatar_url": user.avatar_url,
        "country": user.country,
        "institution": user.institution,
        "specialty": user.specialty,
        "bio": user.bio,
        "website": user.website,
        "points": int(user.points or 0),
        "level": level_for_points(user.points),
        "role": user.role,
        "created_at": isoformat(user.created_at),
    }
    if include_private:
        payload["email"] = user.email
        payload["last_checkin_at"] = isoformat(user.last_checkin_at)
        payload["progress"] = level_progress(user.points)
    return payload


async def _get_user(user_id: str, db: AsyncSession) -> User:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise NotFound("User not found.")
    return user


async def get_profile(user_id: str, db: AsyncSession, *, include_private: bool = False) -> Dict[str, Any]:
    user = await _get_user(user_id, db)
    payload = serialize_user(user, include_private=include_private)

    request_count = (
        await db.execute(select(func.count(DocumentRequest.id)).where(DocumentRequest.owner_id == user_id))
    ).scalar() or 0
    response_count, best_answers = (
        await db.execute(
            select(
                func.count(Response.id),
                func.coalesce(func.sum(case((Response.rating == "best_answer", 1), else_=0)), 0),
            ).where(Response.contributor_id == user_id)
        )
    ).one()
    payload["stats"] = {
        "requests": int(request_count),
        "responses": int(response_count or 0),
        "best_answers": int(best_answers or 0),
    }
    return payload


def _clean_website(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        raise ValidationFailed("Website must be an http(s) URL.")
    return value


async def update_profile(
    user_id: str,
    changes: Dict[str, Optional[str]],
    db: AsyncSession,
    profile_cache: ProfileCache,
) -> Dict[str, Any]:
    user = await _get_user(user_id, db)
    for field, value in changes.items():
        if field not in EDITABLE_FIELD_LIMITS:
            raise ValidationFailed(f"Field '{field}' cannot be edited.")
        cleaned = str(value).strip() if value is not None else ""
        if len(cleaned) > EDITABLE_FIELD_LIMITS[field]:
            raise ValidationFailed(f"{field} must be at most {EDITABLE_FIELD_LIMITS[field]} characters.")
        if cleaned and field in {"website", "avatar_url"}:
            cleaned = _clean_website(cleaned)
        setattr(user, field, cleaned or None)

    await db.commit()
    await db.refresh(user)
    profile_cache.prime(ProfileSummary.from_user(user))
    logger.info("profile updated user=%s fields=%s", user_id, sorted(changes))
    return serialize_user(user, include_private=True)


async def get_leaderboard(db: AsyncSession, limit: int = 10) -> List[Dict[str, Any]]:
    best_answers = func.coalesce(func.sum(case((Response.rating == "best_answer", 1), else_=0)), 0)
    result = await db.execute(
        select(User, best_answers.label("best_answers"))
        .outerjoin(Response, Response.contributor_id == User.id)
        .group_by(User.id)
        .order_by(best_answers.desc(), User.points.desc(), User.created_at.asc())
        .limit(max(1, min(int(limit), 50)))
    )
    return [
        {
            "id": user.id,
            "full_name": user.full_name,
            "avatar_url": user.avatar_url,
            "institution": user.institution,
            "points": int(user.points or 0),
            "level": level_for_points(user.points),
            "best_answers": int(count or 0),
        }
        for user, count in result.all()
    ]


ACTIVITY_PER_KIND = 20
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


async def get_activity(user_id: str, db: AsyncSession, limit: int = ACTIVITY_PER_KIND) -> List[Dict[str, Any]]:
    """The caller's latest requests, comments, likes and responses, newest first."""
    per_kind = max(1, min(int(limit), 50))
    entries = []

    requests = await db.execute(
        select(
            DocumentRequest.id,
            DocumentRequest.id.label("request_id"),
            DocumentRequest.title,
            DocumentRequest.created_at,
        )
        .where(DocumentRequest.owner_id == user_id)
        .order_by(DocumentRequest.created_at.desc())
        .limit(per_kind)
    )
    entries.extend(("request", row) for row in requests.all())

    for kind, model, actor_column in (
        ("comment", Comment, Comment.author_id),
        ("like", Like, Like.user_id),
        ("response", Response, Response.contributor_id),
    ):
        rows = await db.execute(
            select(model.id, model.request_id, DocumentRequest.title, model.created_at)
            .join(DocumentRequest, DocumentRequest.id == model.request_id)
            .where(actor_column == user_id)
            .order_by(model.created_at.desc())
            .limit(per_kind)
        )
        entries.extend((kind, row) for row in rows.all())

    entries.sort(key=lambda entry: as_utc(entry[1][3]) or _OLDEST, reverse=True)
    return [
        {
            "id": f"{kind}-{item_id}",
            "type": kind,
            "request_id": request_id,
            "request_title": title,
            "created_at": isoformat(created_at),
        }
        for kind, (item_id, request_id, title, created_at) in entries
    ]
