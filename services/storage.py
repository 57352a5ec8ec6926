"""Local blob storage for contributed PDFs and signed download tokens."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse
import uuid

from jose import JWTError, jwt

from config import settings
from services.errors import PayloadExpired

logger = logging.getLogger(__name__)

FILE_TOKEN_PURPOSE = "response_file"


def sanitize_filename(filename: str) -> str:
    base = os.path.basename(filename or "documento.pdf")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "documento.pdf"


class LocalBlobStorage:
    """Stores blobs under ``<root>/<bucket>/<owner_id>/<uuid>_<name>``."""

    def __init__(self, root: str, bucket: str):
        self.root = Path(root)
        self.bucket = bucket

    @property
    def bucket_dir(self) -> Path:
        return self.root / self.bucket

    def save(self, owner_id: str, filename: str, data: bytes) -> str:
        relative = f"{owner_id}/{uuid.uuid4()}_{sanitize_filename(filename)}"
        destination = self.resolve(relative)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        return relative

    def resolve(self, path: str) -> Path:
        candidate = (self.bucket_dir / path).resolve()
        if not candidate.is_relative_to(self.bucket_dir.resolve()):
            raise ValueError(f"Storage path escapes bucket: {path}")
        return candidate

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except ValueError:
            return False

    def delete(self, path: str) -> bool:
        """Remove a blob. Returns False when it was already gone."""
        target = self.resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True


def storage_path_from_reference(reference: Optional[str], bucket: str) -> Optional[str]:
    """Return the bucket-relative path for a stored file reference.

    Older rows hold the full public URL of the object; the path is whatever
    follows ``/<bucket>/``. Other absolute URLs are not storage objects.
    """
    value = str(reference or "").strip()
    if not value:
        return None
    if not value.lower().startswith(("http://", "https://")):
        return value.lstrip("/")

    marker = f"/{bucket}/"
    parsed_path = unquote(urlparse(value).path)
    if marker not in parsed_path:
        return None
    return parsed_path.split(marker, 1)[1] or None


def create_signed_file_token(response_id: str, path: str, ttl_seconds: int) -> Dict[str, Any]:
    if ttl_seconds <= 0:
        raise PayloadExpired()
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=ttl_seconds)
    claims = {
        "sub": response_id,
        "path": path,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "purpose": FILE_TOKEN_PURPOSE,
    }
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"token": token, "expires_at": expires_at.isoformat()}


def decode_signed_file_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired file token.") from exc
    if payload.get("purpose") != FILE_TOKEN_PURPOSE:
        raise ValueError("Invalid file token purpose.")
    if not payload.get("sub") or not payload.get("path"):
        raise ValueError("File token missing claims.")
    return payload
