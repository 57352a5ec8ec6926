"""Points ledger, levels and the daily check-in."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.points_ledger import PointsLedger
from models.user import User
from services.errors import AlreadyCheckedInToday, InsufficientPoints, NotFound
from services.timestamps import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)

ENTRY_CHECKIN = "checkin"
ENTRY_REQUEST_DEBIT = "request_debit"
ENTRY_BEST_ANSWER_CREDIT = "best_answer_credit"
LEDGER_ENTRY_TYPES = {ENTRY_CHECKIN, ENTRY_REQUEST_DEBIT, ENTRY_BEST_ANSWER_CREDIT}

LEVEL_THRESHOLDS = (
    ("novato", 0),
    ("colaborador", 500),
    ("experto", 1000),
    ("maestro", 1500),
    ("leyenda", 2000),
)
LEVEL_NAMES = tuple(name for name, _ in LEVEL_THRESHOLDS)


def level_for_points(points: Optional[int]) -> str:
    current = LEVEL_THRESHOLDS[0][0]
    for name, minimum in LEVEL_THRESHOLDS:
        if int(points or 0) >= minimum:
            current = name
    return current


def level_progress(points: Optional[int]) -> Dict[str, Any]:
    """Progress toward the next level, as shown next to the level badge."""
    value = max(int(points or 0), 0)
    level = level_for_points(value)
    index = LEVEL_NAMES.index(level)
    floor = LEVEL_THRESHOLDS[index][1]
    if index == len(LEVEL_THRESHOLDS) - 1:
        return {
            "level": level,
            "next_level": None,
            "points_remaining": 0,
            "progress_percent": 100.0,
        }
    next_level, next_floor = LEVEL_THRESHOLDS[index + 1]
    span = next_floor - floor
    return {
        "level": level,
        "next_level": next_level,
        "points_remaining": next_floor - value,
        "progress_percent": round((value - floor) / span * 100, 1),
    }


def checkin_status(last_checkin_at: Optional[datetime], now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utcnow()
    last = as_utc(last_checkin_at)
    if last is None:
        return {"state": "eligible", "next_eligible_at": None}
    next_eligible = last + timedelta(hours=settings.CHECKIN_COOLDOWN_HOURS)
    if current >= next_eligible:
        return {"state": "eligible", "next_eligible_at": None}
    return {"state": "on_cooldown", "next_eligible_at": next_eligible.isoformat()}


def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: str,
    delta_points: int,
    balance_after: int,
    created_at: datetime,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> PointsLedger:
    if entry_type not in LEDGER_ENTRY_TYPES:
        raise ValueError(f"Unsupported ledger entry type: {entry_type}")
    entry = PointsLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        entry_type=entry_type,
        delta_points=int(delta_points),
        balance_after=int(balance_after),
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        created_at=created_at,
    )
    db.add(entry)
    return entry


async def debit_points(
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    reason: str,
    reference_id: str,
    now: datetime,
) -> int:
    """Conditionally debit inside the caller's transaction. Does not commit."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.points >= amount)
        .values(points=User.points - amount)
        .returning(User.points)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        available = (await db.execute(select(User.points).where(User.id == user_id))).scalar_one_or_none()
        raise InsufficientPoints(
            f"Not enough points. Required: {amount}, available: {int(available or 0)}.",
            required=amount,
            available=int(available or 0),
        )
    _insert_entry(
        user_id,
        db,
        entry_type=ENTRY_REQUEST_DEBIT,
        delta_points=-amount,
        balance_after=balance_after,
        created_at=now,
        reason=reason,
        reference_type="request",
        reference_id=reference_id,
    )
    return int(balance_after)


async def credit_points(
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    entry_type: str,
    reason: str,
    reference_type: Optional[str],
    reference_id: Optional[str],
    now: datetime,
) -> int:
    """Credit inside the caller's transaction. Does not commit."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(points=User.points + amount)
        .returning(User.points)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        raise NotFound("User not found.")
    _insert_entry(
        user_id,
        db,
        entry_type=entry_type,
        delta_points=amount,
        balance_after=balance_after,
        created_at=now,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return int(balance_after)


async def claim_daily_checkin(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utcnow()
    cutoff = current - timedelta(hours=settings.CHECKIN_COOLDOWN_HOURS)
    reward = max(int(settings.CHECKIN_POINTS), 0)

    # The cooldown predicate and the credit are one statement, so two tabs
    # racing for the same window cannot both win.
    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            or_(User.last_checkin_at.is_(None), User.last_checkin_at <= cutoff),
        )
        .values(points=User.points + reward, last_checkin_at=current)
        .returning(User.points)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        await db.rollback()
        last_checkin = (
            await db.execute(select(User.last_checkin_at).where(User.id == user_id))
        ).one_or_none()
        if last_checkin is None:
            raise NotFound("User not found.")
        status = checkin_status(last_checkin[0], current)
        raise AlreadyCheckedInToday(next_eligible_at=status["next_eligible_at"])

    _insert_entry(
        user_id,
        db,
        entry_type=ENTRY_CHECKIN,
        delta_points=reward,
        balance_after=balance_after,
        created_at=current,
        reason="Daily check-in",
    )
    await db.commit()
    logger.info("checkin user=%s reward=%s balance=%s", user_id, reward, balance_after)
    return {
        "points_awarded": reward,
        "balance": int(balance_after),
        "level": level_for_points(balance_after),
        "next_eligible_at": (current + timedelta(hours=settings.CHECKIN_COOLDOWN_HOURS)).isoformat(),
    }


async def get_points_summary(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user:
        raise NotFound("User not found.")

    result = await db.execute(
        select(PointsLedger)
        .where(PointsLedger.user_id == user_id)
        .order_by(PointsLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": int(user.points or 0),
        "progress": level_progress(user.points),
        "checkin": checkin_status(user.last_checkin_at, now),
        "checkin_points": int(settings.CHECKIN_POINTS),
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_points": entry.delta_points,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "reference_id": entry.reference_id,
                "created_at": isoformat(entry.created_at),
            }
            for entry in entries
        ],
    }
