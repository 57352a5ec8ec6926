"""Request lifecycle: creation, best-answer selection and rejection.

Status transitions are compare-and-swap updates on ``document_requests.status``
so two concurrent decisions on the same request cannot both succeed. Every
operation runs in a single transaction and rolls back on any error.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
import uuid

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.document_request import DocumentRequest
from models.response import Response
from models.user import User
from services.crossref import normalize_doi
from services.errors import (
    AlreadyDecided,
    NotFound,
    NotOwner,
    QuotaExceeded,
    RequestNotActive,
    ResponseNotFound,
    ValidationFailed,
)
from services.notifications import NotificationHub, create_notification
from services.points import ENTRY_BEST_ANSWER_CREDIT, credit_points, debit_points
from services.timestamps import as_utc, isoformat, start_of_utc_day, utcnow

logger = logging.getLogger(__name__)

CATEGORIES = (
    "Medicina",
    "Ingeniería",
    "Derecho",
    "Economía",
    "Psicología",
    "Biología",
    "Química",
    "Física",
    "Matemáticas",
    "Ciencias Sociales",
    "Humanidades",
    "Tecnología",
    "Otro",
)

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_CLOSED_INCORRECT = "closed_incorrect"
STATUS_EXPIRED = "expired"
REQUEST_STATUSES = (STATUS_ACTIVE, STATUS_COMPLETED, STATUS_CLOSED_INCORRECT, STATUS_EXPIRED)
DECIDED_STATUSES = {STATUS_COMPLETED, STATUS_CLOSED_INCORRECT}

RATING_BEST_ANSWER = "best_answer"
RATING_INCORRECT = "incorrect"

MAX_TITLE_LENGTH = 300
MAX_DESCRIPTION_LENGTH = 4000


def compute_status(request: DocumentRequest, now: Optional[datetime] = None) -> str:
    """Effective status of a request at ``now``. A stored terminal status wins."""
    if request.status and request.status != STATUS_ACTIVE:
        return request.status
    current = now or utcnow()
    expires_at = as_utc(request.expires_at)
    if expires_at is not None and expires_at <= current:
        return STATUS_EXPIRED
    return STATUS_ACTIVE


def validate_request_fields(
    *,
    title: str,
    category: str,
    points: int,
    description: Optional[str] = None,
    doi: Optional[str] = None,
) -> Dict[str, Any]:
    clean_title = str(title or "").strip()
    if not clean_title:
        raise ValidationFailed("A title is required.")
    if len(clean_title) > MAX_TITLE_LENGTH:
        raise ValidationFailed(f"Title must be at most {MAX_TITLE_LENGTH} characters.")

    clean_category = str(category or "").strip()
    if clean_category not in CATEGORIES:
        raise ValidationFailed("Unknown category.", allowed=list(CATEGORIES))

    minimum = int(settings.REQUEST_POINTS_MIN)
    maximum = int(settings.REQUEST_POINTS_MAX)
    step = int(settings.REQUEST_POINTS_STEP)
    if isinstance(points, bool) or not isinstance(points, int):
        raise ValidationFailed("Points must be an integer.")
    if points < minimum or points > maximum or points % step != 0:
        raise ValidationFailed(
            f"Points must be between {minimum} and {maximum} in steps of {step}.",
        )

    clean_description = str(description or "").strip() or None
    if clean_description and len(clean_description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationFailed(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters.")

    return {
        "title": clean_title,
        "category": clean_category,
        "points": points,
        "description": clean_description,
        "doi": normalize_doi(doi, required=False),
    }


def serialize_request(request: DocumentRequest, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": request.id,
        "owner_id": request.owner_id,
        "title": request.title,
        "description": request.description,
        "category": request.category,
        "doi": request.doi,
        "is_urgent": bool(request.is_urgent),
        "points_offered": request.points_offered,
        "status": compute_status(request, now),
        "created_at": isoformat(request.created_at),
        "expires_at": isoformat(request.expires_at),
        "resolved_at": isoformat(request.resolved_at),
    }


async def count_requests_created_today(owner_id: str, db: AsyncSession, now: Optional[datetime] = None) -> int:
    day_start = start_of_utc_day(now or utcnow())
    result = await db.execute(
        select(func.count(DocumentRequest.id)).where(
            DocumentRequest.owner_id == owner_id,
            DocumentRequest.created_at >= day_start,
        )
    )
    return int(result.scalar() or 0)


async def create_request(
    owner_id: str,
    db: AsyncSession,
    *,
    title: str,
    category: str,
    points: int,
    is_urgent: bool = False,
    description: Optional[str] = None,
    doi: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    fields = validate_request_fields(
        title=title,
        category=category,
        points=points,
        description=description,
        doi=doi,
    )
    current = now or utcnow()

    try:
        # Lock the owner row so the quota count and the debit see the same state.
        owner = (
            await db.execute(select(User).where(User.id == owner_id).with_for_update())
        ).scalar_one_or_none()
        if not owner:
            raise NotFound("User not found.")

        created_today = await count_requests_created_today(owner_id, db, current)
        limit = int(settings.DAILY_REQUEST_LIMIT)
        if created_today >= limit:
            raise QuotaExceeded(
                f"Daily limit of {limit} requests reached.",
                limit=limit,
                created_today=created_today,
            )

        request_id = str(uuid.uuid4())
        balance_after = await debit_points(
            db,
            user_id=owner_id,
            amount=fields["points"],
            reason=f"Request: {fields['title'][:80]}",
            reference_id=request_id,
            now=current,
        )
        request = DocumentRequest(
            id=request_id,
            owner_id=owner_id,
            title=fields["title"],
            description=fields["description"],
            category=fields["category"],
            doi=fields["doi"],
            is_urgent=bool(is_urgent),
            points_offered=fields["points"],
            status=STATUS_ACTIVE,
            created_at=current,
            expires_at=current + timedelta(days=settings.REQUEST_VALIDITY_DAYS),
        )
        db.add(request)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "request created id=%s owner=%s points=%s balance_after=%s",
        request.id,
        owner_id,
        request.points_offered,
        balance_after,
    )
    payload = serialize_request(request, current)
    payload["balance_after"] = balance_after
    return payload


async def _load_decision_context(
    request_id: str,
    response_id: str,
    db: AsyncSession,
) -> Tuple[Optional[DocumentRequest], Optional[Response]]:
    request = (
        await db.execute(select(DocumentRequest).where(DocumentRequest.id == request_id))
    ).scalar_one_or_none()
    if not request:
        return None, None
    response = (
        await db.execute(
            select(Response).where(
                Response.id == response_id,
                Response.request_id == request_id,
            )
        )
    ).scalar_one_or_none()
    return request, response


def _check_decision_preconditions(
    owner_id: str,
    request: Optional[DocumentRequest],
    response: Optional[Response],
    now: datetime,
) -> Tuple[DocumentRequest, Response]:
    if request is None:
        raise NotFound("Request not found.")
    if request.owner_id != owner_id:
        raise NotOwner()
    if request.status in DECIDED_STATUSES:
        raise AlreadyDecided()
    if compute_status(request, now) != STATUS_ACTIVE:
        raise RequestNotActive()
    if response is None:
        raise ResponseNotFound()
    if response.rating is not None:
        raise AlreadyDecided()
    return request, response


async def _claim_decision(request_id: str, new_status: str, db: AsyncSession, now: datetime) -> None:
    result = await db.execute(
        update(DocumentRequest)
        .where(
            DocumentRequest.id == request_id,
            DocumentRequest.status == STATUS_ACTIVE,
            DocumentRequest.expires_at > now,
        )
        .values(status=new_status, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyDecided()


async def _rate_response(response_id: str, rating: str, points_earned: int, db: AsyncSession, now: datetime) -> None:
    result = await db.execute(
        update(Response)
        .where(Response.id == response_id, Response.rating.is_(None))
        .values(rating=rating, rated_at=now, points_earned=points_earned)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyDecided()


async def _shorten_retention(request_id: str, db: AsyncSession, now: datetime) -> None:
    cap = now + timedelta(hours=settings.RATED_RESPONSE_RETENTION_HOURS)
    await db.execute(
        update(Response)
        .where(Response.request_id == request_id, Response.expires_at > cap)
        .values(expires_at=cap)
        .execution_options(synchronize_session=False)
    )


async def _decide(
    owner_id: str,
    request_id: str,
    response_id: str,
    db: AsyncSession,
    *,
    new_status: str,
    rating: str,
    hub: Optional[NotificationHub],
    now: Optional[datetime],
) -> Dict[str, Any]:
    current = now or utcnow()
    try:
        loaded_request, loaded_response = await _load_decision_context(request_id, response_id, db)
        request, response = _check_decision_preconditions(owner_id, loaded_request, loaded_response, current)
        points = int(request.points_offered) if rating == RATING_BEST_ANSWER else 0

        await _claim_decision(request.id, new_status, db, current)
        await _rate_response(response.id, rating, points, db, current)

        contributor_balance = None
        if rating == RATING_BEST_ANSWER:
            contributor_balance = await credit_points(
                db,
                user_id=response.contributor_id,
                amount=points,
                entry_type=ENTRY_BEST_ANSWER_CREDIT,
                reason=f"Best answer: {request.title[:80]}",
                reference_type="response",
                reference_id=response.id,
                now=current,
            )
            notification = create_notification(
                db,
                user_id=response.contributor_id,
                type="points",
                title="Your answer was selected as the best answer",
                message=f"You earned {points} points for \"{request.title}\".",
                reference_id=request.id,
                actor_id=owner_id,
                now=current,
            )
        else:
            notification = create_notification(
                db,
                user_id=response.contributor_id,
                type="response",
                title="Your answer was marked as incorrect",
                message=f"The owner of \"{request.title}\" closed the request.",
                reference_id=request.id,
                actor_id=owner_id,
                now=current,
            )

        await _shorten_retention(request.id, db, current)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(request)
    logger.info(
        "request decided id=%s status=%s response=%s contributor=%s points=%s",
        request.id,
        new_status,
        response.id,
        response.contributor_id,
        points,
    )
    if hub is not None:
        await hub.publish_many([notification])

    return {
        "request_id": request.id,
        "response_id": response.id,
        "status": new_status,
        "rating": rating,
        "points_awarded": points,
        "contributor_id": response.contributor_id,
        "contributor_balance": contributor_balance,
        "resolved_at": isoformat(current),
    }


async def select_best_answer(
    owner_id: str,
    request_id: str,
    response_id: str,
    db: AsyncSession,
    *,
    hub: Optional[NotificationHub] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Rate a response as best answer, credit its contributor and complete the request."""
    return await _decide(
        owner_id,
        request_id,
        response_id,
        db,
        new_status=STATUS_COMPLETED,
        rating=RATING_BEST_ANSWER,
        hub=hub,
        now=now,
    )


async def mark_incorrect(
    owner_id: str,
    request_id: str,
    response_id: str,
    db: AsyncSession,
    *,
    hub: Optional[NotificationHub] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Reject a response and close the request. The offered points are forfeited."""
    return await _decide(
        owner_id,
        request_id,
        response_id,
        db,
        new_status=STATUS_CLOSED_INCORRECT,
        rating=RATING_INCORRECT,
        hub=hub,
        now=now,
    )


async def expire_overdue_requests(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Persist the ``expired`` status for active requests past their deadline."""
    current = now or utcnow()
    result = await db.execute(
        update(DocumentRequest)
        .where(
            DocumentRequest.status == STATUS_ACTIVE,
            DocumentRequest.expires_at <= current,
        )
        .values(status=STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)
