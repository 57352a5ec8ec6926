"""
Document request endpoints: browsing, creation, responses, decisions and engagement.
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.dependencies import get_notification_hub, get_profile_cache, get_storage
from routers.rate_limit import rate_limit
from services.browsing import (
    get_request_detail,
    list_requests,
    list_saved_requests,
    list_trending_requests,
)
from services.engagement import add_comment, list_comments, toggle_like, toggle_save
from services.errors import InvalidPayload
from services.lifecycle import count_requests_created_today, create_request, mark_incorrect, select_best_answer
from services.notifications import NotificationHub
from services.profile_cache import ProfileCache
from services.storage import LocalBlobStorage
from services.submissions import list_responses, submit_response

router = APIRouter()

UPLOAD_CHUNK_BYTES = 1024 * 1024


class CreateRequestBody(BaseModel):
    title: str = ""
    category: str = ""
    points: int
    is_urgent: bool = False
    description: Optional[str] = None
    doi: Optional[str] = None


class DecisionBody(BaseModel):
    response_id: str


class CommentBody(BaseModel):
    body: str = Field(min_length=1, max_length=2000)


@router.get("")
async def browse_requests(
    category: Optional[str] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
    urgent: Optional[bool] = None,
    owner_id: Optional[str] = None,
    sort: str = "recent",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    """List requests with computed status, counts and owner profiles."""
    return await list_requests(
        db,
        profile_cache,
        category=category,
        status=status,
        q=q,
        urgent=urgent,
        owner_id=owner_id,
        sort=sort,
        page=page,
        limit=limit,
    )


@router.post(
    "",
    status_code=201,
    dependencies=[Depends(rate_limit("request_create", limit=20, window_seconds=60))],
)
async def create_document_request(
    body: CreateRequestBody,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Create a request, debiting the offered points atomically."""
    return await create_request(
        auth.user_id,
        db,
        title=body.title,
        category=body.category,
        points=body.points,
        is_urgent=body.is_urgent,
        description=body.description,
        doi=body.doi,
    )


@router.get("/mine")
async def my_requests(
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    return await list_requests(
        db,
        profile_cache,
        status=status,
        owner_id=auth.user_id,
        page=page,
        limit=limit,
    )


@router.get("/saved")
async def my_saved_requests(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    return {"items": await list_saved_requests(auth.user_id, db, profile_cache)}


@router.get("/quota")
async def my_daily_quota(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """How many requests the caller can still create today (UTC)."""
    created_today = await count_requests_created_today(auth.user_id, db)
    limit = int(settings.DAILY_REQUEST_LIMIT)
    return {
        "limit": limit,
        "created_today": created_today,
        "remaining": max(limit - created_today, 0),
    }


@router.get("/trending")
async def trending_requests(
    period: str = "week",
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    """Requests from the last day, week or month ranked by engagement."""
    return {"period": period, "items": await list_trending_requests(db, profile_cache, period=period)}


@router.get("/{request_id}")
async def request_detail(
    request_id: str,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    return await get_request_detail(request_id, auth.user_id if auth else None, db, profile_cache)


@router.get("/{request_id}/responses")
async def request_responses(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    """Response metadata. Payloads are resolved through /responses/{id}/payload."""
    return {"items": await list_responses(request_id, db, profile_cache)}


@router.post(
    "/{request_id}/responses",
    status_code=201,
    dependencies=[Depends(rate_limit("response_submit", limit=20, window_seconds=60))],
)
async def submit_request_response(
    request_id: str,
    link_url: Optional[str] = Form(default=None),
    message: Optional[str] = Form(default=None),
    file: Optional[UploadFile] = File(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_storage),
    hub: NotificationHub = Depends(get_notification_hub),
):
    """Submit exactly one PDF upload or one http(s) link."""
    file_bytes = None
    file_name = None
    content_type = None
    if file is not None:
        max_bytes = int(settings.MAX_RESPONSE_FILE_BYTES)
        chunks = []
        total_size = 0
        try:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_bytes:
                    raise InvalidPayload(
                        f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
                        max_bytes=max_bytes,
                    )
                chunks.append(chunk)
        finally:
            await file.close()
        file_bytes = b"".join(chunks)
        file_name = file.filename
        content_type = file.content_type

    return await submit_response(
        auth.user_id,
        request_id,
        db,
        storage,
        link_url=link_url,
        file_name=file_name,
        file_bytes=file_bytes,
        content_type=content_type,
        message=message,
        hub=hub,
    )


@router.post("/{request_id}/best-answer")
async def choose_best_answer(
    request_id: str,
    body: DecisionBody,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    hub: NotificationHub = Depends(get_notification_hub),
):
    return await select_best_answer(auth.user_id, request_id, body.response_id, db, hub=hub)


@router.post("/{request_id}/mark-incorrect")
async def reject_response(
    request_id: str,
    body: DecisionBody,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    hub: NotificationHub = Depends(get_notification_hub),
):
    return await mark_incorrect(auth.user_id, request_id, body.response_id, db, hub=hub)


@router.get("/{request_id}/comments")
async def request_comments(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    return {"items": await list_comments(request_id, db, profile_cache)}


@router.post(
    "/{request_id}/comments",
    status_code=201,
    dependencies=[Depends(rate_limit("comment", limit=30, window_seconds=60))],
)
async def comment_on_request(
    request_id: str,
    body: CommentBody,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    hub: NotificationHub = Depends(get_notification_hub),
):
    return await add_comment(auth.user_id, request_id, body.body, db, hub=hub)


@router.post("/{request_id}/like")
async def like_request(
    request_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    hub: NotificationHub = Depends(get_notification_hub),
):
    return await toggle_like(auth.user_id, request_id, db, hub=hub)


@router.post("/{request_id}/save")
async def save_request(
    request_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await toggle_save(auth.user_id, request_id, db)
