"""Read-side queries for request listings and details."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.comment import Comment
from models.document_request import DocumentRequest
from models.engagement import Like, SavedRequest
from models.response import Response
from services.errors import NotFound, ValidationFailed
from services.lifecycle import (
    CATEGORIES,
    REQUEST_STATUSES,
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    serialize_request,
)
from services.profile_cache import ProfileCache
from services.timestamps import isoformat, start_of_utc_day, utcnow

MAX_PAGE_SIZE = 100

SORT_RECENT = "recent"
SORT_POPULAR = "popular"
SORT_ORDERS = (SORT_RECENT, SORT_POPULAR)

TRENDING_PERIODS = ("day", "week", "month")
TRENDING_POOL_SIZE = 50


def _status_clause(status: str, now: datetime):
    if status == STATUS_ACTIVE:
        return and_(DocumentRequest.status == STATUS_ACTIVE, DocumentRequest.expires_at > now)
    if status == STATUS_EXPIRED:
        return or_(
            DocumentRequest.status == STATUS_EXPIRED,
            and_(DocumentRequest.status == STATUS_ACTIVE, DocumentRequest.expires_at <= now),
        )
    return DocumentRequest.status == status


async def _grouped_counts(model, request_ids: List[str], db: AsyncSession) -> Dict[str, int]:
    if not request_ids:
        return {}
    result = await db.execute(
        select(model.request_id, func.count(model.id))
        .where(model.request_id.in_(request_ids))
        .group_by(model.request_id)
    )
    return {request_id: int(count) for request_id, count in result.all()}


async def _decorate(
    requests: Iterable[DocumentRequest],
    db: AsyncSession,
    profile_cache: ProfileCache,
    now: datetime,
) -> List[Dict[str, Any]]:
    rows = list(requests)
    ids = [row.id for row in rows]
    likes = await _grouped_counts(Like, ids, db)
    comments = await _grouped_counts(Comment, ids, db)
    responses = await _grouped_counts(Response, ids, db)
    owners = await profile_cache.get_many([row.owner_id for row in rows], db)

    items = []
    for row in rows:
        item = serialize_request(row, now)
        owner = owners.get(row.owner_id)
        item.update(
            {
                "owner": owner.to_dict() if owner else None,
                "like_count": likes.get(row.id, 0),
                "comment_count": comments.get(row.id, 0),
                "response_count": responses.get(row.id, 0),
            }
        )
        items.append(item)
    return items


async def list_requests(
    db: AsyncSession,
    profile_cache: ProfileCache,
    *,
    category: Optional[str] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
    urgent: Optional[bool] = None,
    owner_id: Optional[str] = None,
    sort: str = SORT_RECENT,
    page: int = 1,
    limit: int = 20,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or utcnow()
    if category and category not in CATEGORIES:
        raise ValidationFailed("Unknown category.", allowed=list(CATEGORIES))
    if status and status not in REQUEST_STATUSES:
        raise ValidationFailed("Unknown status.", allowed=list(REQUEST_STATUSES))
    if sort not in SORT_ORDERS:
        raise ValidationFailed("Unknown sort order.", allowed=list(SORT_ORDERS))

    page = max(int(page), 1)
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))

    filters = []
    if category:
        filters.append(DocumentRequest.category == category)
    if status:
        filters.append(_status_clause(status, current))
    if q and q.strip():
        pattern = f"%{q.strip()}%"
        filters.append(or_(DocumentRequest.title.ilike(pattern), DocumentRequest.description.ilike(pattern)))
    if urgent is not None:
        filters.append(DocumentRequest.is_urgent.is_(bool(urgent)))
    if owner_id:
        filters.append(DocumentRequest.owner_id == owner_id)

    total = (
        await db.execute(select(func.count(DocumentRequest.id)).where(*filters))
    ).scalar() or 0

    query = select(DocumentRequest).where(*filters)
    if sort == SORT_POPULAR:
        like_counts = (
            select(Like.request_id, func.count(Like.id).label("like_count"))
            .group_by(Like.request_id)
            .subquery()
        )
        query = query.outerjoin(like_counts, like_counts.c.request_id == DocumentRequest.id).order_by(
            func.coalesce(like_counts.c.like_count, 0).desc(),
            DocumentRequest.created_at.desc(),
        )
    else:
        query = query.order_by(DocumentRequest.is_urgent.desc(), DocumentRequest.created_at.desc())

    result = await db.execute(query.offset((page - 1) * limit).limit(limit))
    items = await _decorate(result.scalars().all(), db, profile_cache, current)
    return {"items": items, "total": int(total), "page": page, "limit": limit, "sort": sort}


def _trending_since(period: str, now: datetime) -> datetime:
    if period == "day":
        return start_of_utc_day(now)
    if period == "week":
        return now - timedelta(days=7)
    return now - timedelta(days=30)


async def list_trending_requests(
    db: AsyncSession,
    profile_cache: ProfileCache,
    *,
    period: str = "week",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Most engaged requests created in the period.

    The 50 newest requests since the period start are ranked by likes plus
    comments plus responses; ties keep the newest first.
    """
    current = now or utcnow()
    if period not in TRENDING_PERIODS:
        raise ValidationFailed("Unknown trending period.", allowed=list(TRENDING_PERIODS))

    result = await db.execute(
        select(DocumentRequest)
        .where(DocumentRequest.created_at >= _trending_since(period, current))
        .order_by(DocumentRequest.created_at.desc())
        .limit(TRENDING_POOL_SIZE)
    )
    items = await _decorate(result.scalars().all(), db, profile_cache, current)
    for item in items:
        item["engagement"] = item["like_count"] + item["comment_count"] + item["response_count"]
    items.sort(key=lambda item: item["engagement"], reverse=True)
    return items


async def get_request_detail(
    request_id: str,
    viewer_id: Optional[str],
    db: AsyncSession,
    profile_cache: ProfileCache,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or utcnow()
    request = (
        await db.execute(select(DocumentRequest).where(DocumentRequest.id == request_id))
    ).scalar_one_or_none()
    if not request:
        raise NotFound("Request not found.")

    [item] = await _decorate([request], db, profile_cache, current)
    liked = saved = False
    if viewer_id:
        liked = (
            await db.execute(
                select(Like.id).where(Like.request_id == request_id, Like.user_id == viewer_id)
            )
        ).scalar_one_or_none() is not None
        saved = (
            await db.execute(
                select(SavedRequest.id).where(
                    SavedRequest.request_id == request_id,
                    SavedRequest.user_id == viewer_id,
                )
            )
        ).scalar_one_or_none() is not None
    item["liked_by_me"] = liked
    item["saved_by_me"] = saved
    item["is_owner"] = viewer_id == request.owner_id
    return item


async def list_saved_requests(
    user_id: str,
    db: AsyncSession,
    profile_cache: ProfileCache,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    current = now or utcnow()
    result = await db.execute(
        select(DocumentRequest, SavedRequest.created_at)
        .join(SavedRequest, SavedRequest.request_id == DocumentRequest.id)
        .where(SavedRequest.user_id == user_id)
        .order_by(SavedRequest.created_at.desc())
    )
    rows = result.all()
    items = await _decorate([row[0] for row in rows], db, profile_cache, current)
    for item, row in zip(items, rows):
        item["saved_at"] = isoformat(row[1])
    return items
