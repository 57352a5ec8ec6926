"""
Public profiles, the contributor leaderboard, activity history and self-service profile edits.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.dependencies import get_profile_cache
from services.profile_cache import ProfileCache
from services.profiles import get_activity, get_leaderboard, get_profile, update_profile

router = APIRouter()


class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    country: Optional[str] = None
    institution: Optional[str] = None
    specialty: Optional[str] = None
    bio: Optional[str] = None
    website: Optional[str] = None


@router.get("/leaderboard")
async def leaderboard(
    limit: int = Query(default=10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await get_leaderboard(db, limit=limit)}


@router.patch("/me")
async def update_my_profile(
    request: ProfileUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    profile_cache: ProfileCache = Depends(get_profile_cache),
):
    """Only fields present in the body are changed; an empty string clears a field."""
    changes = request.model_dump(exclude_unset=True)
    return await update_profile(auth.user_id, changes, db, profile_cache)


@router.get("/me/activity")
async def my_activity(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Latest requests, comments, likes and responses of the caller."""
    return {"items": await get_activity(auth.user_id, db)}


@router.get("/{user_id}")
async def public_profile(
    user_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await get_profile(user_id, db)
