"""
Points endpoints: balance summary and the daily check-in bonus.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.points import claim_daily_checkin, get_points_summary

router = APIRouter()


@router.get("/summary")
async def points_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_points_summary(auth.user_id, db)


@router.post(
    "/checkin",
    dependencies=[Depends(rate_limit("checkin", limit=10, window_seconds=60))],
)
async def daily_checkin(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Claim the daily bonus. 409 with ``next_eligible_at`` while on cooldown."""
    return await claim_daily_checkin(auth.user_id, db)
