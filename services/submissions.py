"""Response submission and time-limited payload access."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.document_request import DocumentRequest
from models.response import Response
from services.errors import InvalidPayload, NotFound, PayloadExpired, PermissionDenied, RequestNotActive
from services.lifecycle import STATUS_ACTIVE, compute_status
from services.notifications import NotificationHub, create_notification
from services.profile_cache import ProfileCache
from services.storage import (
    LocalBlobStorage,
    create_signed_file_token,
    decode_signed_file_token,
    storage_path_from_reference,
)
from services.timestamps import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)

KIND_FILE = "file"
KIND_LINK = "link"
PDF_MAGIC = b"%PDF"
PDF_CONTENT_TYPE = "application/pdf"
MAX_LINK_LENGTH = 2000
MAX_MESSAGE_LENGTH = 2000


def validate_link(url: Optional[str]) -> str:
    value = str(url or "").strip()
    if not value or len(value) > MAX_LINK_LENGTH:
        raise InvalidPayload("The link must be a valid http(s) URL.")
    parsed = urlparse(value)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        raise InvalidPayload("The link must be a valid http(s) URL.")
    return value


def validate_pdf(file_name: Optional[str], content_type: Optional[str], data: Optional[bytes]) -> None:
    if not data:
        raise InvalidPayload("The uploaded file is empty.")
    max_bytes = int(settings.MAX_RESPONSE_FILE_BYTES)
    if len(data) > max_bytes:
        raise InvalidPayload(
            f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
            max_bytes=max_bytes,
        )
    name_is_pdf = str(file_name or "").lower().endswith(".pdf")
    type_is_pdf = str(content_type or "").split(";", 1)[0].strip().lower() == PDF_CONTENT_TYPE
    if not (name_is_pdf or type_is_pdf):
        raise InvalidPayload("Only PDF files are accepted.")
    if not data.startswith(PDF_MAGIC):
        raise InvalidPayload("The uploaded file is not a valid PDF.")


async def submit_response(
    contributor_id: str,
    request_id: str,
    db: AsyncSession,
    storage: LocalBlobStorage,
    *,
    link_url: Optional[str] = None,
    file_name: Optional[str] = None,
    file_bytes: Optional[bytes] = None,
    content_type: Optional[str] = None,
    message: Optional[str] = None,
    hub: Optional[NotificationHub] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = now or utcnow()
    request = (
        await db.execute(select(DocumentRequest).where(DocumentRequest.id == request_id))
    ).scalar_one_or_none()
    if not request:
        raise NotFound("Request not found.")
    if compute_status(request, current) != STATUS_ACTIVE:
        raise RequestNotActive()
    if request.owner_id == contributor_id:
        raise PermissionDenied("You cannot answer your own request.")

    has_link = bool(str(link_url or "").strip())
    has_file = file_bytes is not None
    if has_link == has_file:
        raise InvalidPayload()

    clean_message = str(message or "").strip() or None
    if clean_message and len(clean_message) > MAX_MESSAGE_LENGTH:
        raise InvalidPayload(f"Message must be at most {MAX_MESSAGE_LENGTH} characters.")

    stored_path: Optional[str] = None
    if has_file:
        validate_pdf(file_name, content_type, file_bytes)
        stored_path = storage.save(contributor_id, file_name or "documento.pdf", file_bytes)
        kind = KIND_FILE
        clean_link = None
    else:
        clean_link = validate_link(link_url)
        kind = KIND_LINK

    response = Response(
        id=str(uuid.uuid4()),
        request_id=request.id,
        contributor_id=contributor_id,
        kind=kind,
        file_path=stored_path,
        file_name=file_name if has_file else None,
        file_size=len(file_bytes) if has_file else None,
        link_url=clean_link,
        message=clean_message,
        points_earned=0,
        created_at=current,
        expires_at=current + timedelta(days=settings.RESPONSE_VALIDITY_DAYS),
    )
    try:
        db.add(response)
        notification = create_notification(
            db,
            user_id=request.owner_id,
            type="response",
            title="New response to your request",
            message=f"Someone shared a {'document' if kind == KIND_FILE else 'link'} for \"{request.title}\".",
            reference_id=request.id,
            actor_id=contributor_id,
            now=current,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        if stored_path:
            storage.delete(stored_path)
        raise

    logger.info("response submitted id=%s request=%s kind=%s", response.id, request.id, kind)
    if hub is not None:
        await hub.publish_many([notification])
    return serialize_response(response, current)


def serialize_response(
    response: Response,
    now: Optional[datetime] = None,
    contributor: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    current = now or utcnow()
    expires_at = as_utc(response.expires_at)
    has_payload = bool(response.file_path or response.link_url)
    return {
        "id": response.id,
        "request_id": response.request_id,
        "contributor_id": response.contributor_id,
        "contributor": contributor,
        "kind": response.kind,
        "file_name": response.file_name,
        "file_size": response.file_size,
        "message": response.message,
        "rating": response.rating,
        "points_earned": response.points_earned or 0,
        "created_at": isoformat(response.created_at),
        "expires_at": isoformat(expires_at),
        "rated_at": isoformat(response.rated_at),
        "payload_available": has_payload and expires_at is not None and current < expires_at,
    }


async def list_responses(
    request_id: str,
    db: AsyncSession,
    profile_cache: ProfileCache,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    request = (
        await db.execute(select(DocumentRequest.id).where(DocumentRequest.id == request_id))
    ).scalar_one_or_none()
    if not request:
        raise NotFound("Request not found.")
    result = await db.execute(
        select(Response).where(Response.request_id == request_id).order_by(Response.created_at.asc())
    )
    responses = result.scalars().all()
    profiles = await profile_cache.get_many([item.contributor_id for item in responses], db)
    return [
        serialize_response(
            item,
            now,
            profiles[item.contributor_id].to_dict() if item.contributor_id in profiles else None,
        )
        for item in responses
    ]


async def _load_visible_response(
    viewer_id: str,
    response_id: str,
    db: AsyncSession,
) -> Tuple[Response, DocumentRequest]:
    row = (
        await db.execute(
            select(Response, DocumentRequest)
            .join(DocumentRequest, DocumentRequest.id == Response.request_id)
            .where(Response.id == response_id)
        )
    ).one_or_none()
    if row is None:
        raise NotFound("Response not found.")
    response, request = row
    # Only the two parties to the exchange can see that a payload exists.
    if viewer_id not in {request.owner_id, response.contributor_id}:
        raise NotFound("Response not found.")
    return response, request


async def resolve_response_payload(
    viewer_id: str,
    response_id: str,
    db: AsyncSession,
    storage: LocalBlobStorage,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return a time-limited way to reach the response payload.

    Resolvable strictly before ``expires_at``; at or after it the payload is
    gone for everyone.
    """
    current = now or utcnow()
    response, _request = await _load_visible_response(viewer_id, response_id, db)
    expires_at = as_utc(response.expires_at)
    if expires_at is None or expires_at <= current:
        raise PayloadExpired()

    if response.kind == KIND_LINK:
        if not response.link_url:
            raise PayloadExpired()
        return {
            "kind": KIND_LINK,
            "url": response.link_url,
            "expires_at": expires_at.isoformat(),
        }

    if not response.file_path:
        raise PayloadExpired()
    path = storage_path_from_reference(response.file_path, storage.bucket)
    if path is None:
        # Absolute URL outside our bucket.
        return {
            "kind": KIND_LINK,
            "url": response.file_path,
            "expires_at": expires_at.isoformat(),
        }
    if not storage.exists(path):
        raise PayloadExpired()

    # expires_at > current here, so at least one second remains.
    remaining = max(1, math.ceil((expires_at - current).total_seconds()))
    ttl = min(int(settings.SIGNED_URL_TTL_SECONDS), remaining)
    signed = create_signed_file_token(response.id, path, ttl)
    return {
        "kind": KIND_FILE,
        "url": f"/responses/{response.id}/file?token={signed['token']}",
        "file_name": response.file_name,
        "url_expires_at": signed["expires_at"],
        "expires_at": expires_at.isoformat(),
    }


async def open_signed_file(
    token: str,
    db: AsyncSession,
    storage: LocalBlobStorage,
    now: Optional[datetime] = None,
    *,
    expected_response_id: Optional[str] = None,
) -> Tuple[Path, str]:
    """Resolve a signed file token to a local path and download name."""
    try:
        claims = decode_signed_file_token(token)
    except ValueError as exc:
        raise PermissionDenied(str(exc)) from exc
    if expected_response_id is not None and claims.get("sub") != expected_response_id:
        raise PermissionDenied("File token does not match this response.")

    current = now or utcnow()
    response = (
        await db.execute(select(Response).where(Response.id == claims["sub"]))
    ).scalar_one_or_none()
    if not response:
        raise NotFound("Response not found.")
    expires_at = as_utc(response.expires_at)
    if expires_at is None or expires_at <= current or not response.file_path:
        raise PayloadExpired()
    path = storage_path_from_reference(response.file_path, storage.bucket)
    if path != claims["path"] or not storage.exists(path):
        raise PayloadExpired()
    return storage.resolve(path), response.file_name or Path(path).name
