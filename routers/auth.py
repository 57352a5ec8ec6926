"""
Authentication router: identity-provider session sync and current user profile.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.profiles import get_profile
from services.session_token import create_session_token, verify_provider_access_token

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncSessionRequest(BaseModel):
    access_token: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class SyncSessionResponse(BaseModel):
    user_id: str
    email: str
    is_new_user: bool
    points: int
    role: str
    session_token: str
    session_expires_at: int


def _metadata_value(claims: Dict[str, Any], *keys: str) -> Optional[str]:
    metadata = claims.get("user_metadata") or {}
    for key in keys:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


@router.get("/me")
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the current user's profile, points and level progress."""
    return await get_profile(auth.user_id, db, include_private=True)


@router.post(
    "/sync",
    response_model=SyncSessionResponse,
    dependencies=[Depends(rate_limit("auth_sync", limit=30, window_seconds=60))],
)
async def sync_session(
    request: SyncSessionRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Exchange an identity-provider access token for a backend session token,
    creating the profile on first sign-in.
    """
    try:
        claims = verify_provider_access_token(request.access_token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user_id = str(claims["sub"])
    email = str(claims["email"]).lower()

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    is_new_user = user is None
    if is_new_user:
        if (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none():
            raise HTTPException(status_code=409, detail="Email already linked to another account.")
        user = User(
            id=user_id,
            email=email,
            full_name=request.full_name or _metadata_value(claims, "full_name", "name"),
            avatar_url=request.avatar_url or _metadata_value(claims, "avatar_url", "picture"),
            points=max(int(settings.STARTING_POINTS), 0),
            role="user",
        )
        db.add(user)
    else:
        user.email = email
        if request.full_name and not user.full_name:
            user.full_name = request.full_name
        if request.avatar_url and not user.avatar_url:
            user.avatar_url = request.avatar_url

    await db.commit()
    await db.refresh(user)
    if is_new_user:
        logger.info("user registered id=%s", user.id)
    session = create_session_token(user.id, user.email)

    return SyncSessionResponse(
        user_id=user.id,
        email=user.email,
        is_new_user=is_new_user,
        points=int(user.points or 0),
        role=user.role,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
