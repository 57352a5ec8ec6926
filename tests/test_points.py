from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from models.points_ledger import PointsLedger
from models.user import User
from services.errors import AlreadyCheckedInToday
from services.points import (
    checkin_status,
    claim_daily_checkin,
    get_points_summary,
    level_for_points,
    level_progress,
)


OWNER_ID = "owner-user"
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "points,expected",
    [
        (0, "novato"),
        (499, "novato"),
        (500, "colaborador"),
        (999, "colaborador"),
        (1000, "experto"),
        (1500, "maestro"),
        (2000, "leyenda"),
        (25000, "leyenda"),
        (None, "novato"),
    ],
)
def test_level_for_points_thresholds(points, expected):
    assert level_for_points(points) == expected


def test_level_progress_reports_distance_to_next_level():
    assert level_progress(750) == {
        "level": "colaborador",
        "next_level": "experto",
        "points_remaining": 250,
        "progress_percent": 50.0,
    }
    top = level_progress(2400)
    assert top["next_level"] is None
    assert top["progress_percent"] == 100.0


def test_checkin_status_uses_rolling_window():
    assert checkin_status(None, NOW)["state"] == "eligible"
    cooling = checkin_status(NOW - timedelta(hours=23), NOW)
    assert cooling["state"] == "on_cooldown"
    assert cooling["next_eligible_at"] == (NOW + timedelta(hours=1)).isoformat()
    assert checkin_status(NOW - timedelta(hours=24), NOW)["state"] == "eligible"


@pytest.mark.asyncio
async def test_checkin_once_per_rolling_day(session_maker):
    async with session_maker() as db:
        result = await claim_daily_checkin(OWNER_ID, db, now=NOW)
    assert result["points_awarded"] == 10
    assert result["balance"] == 110
    assert result["next_eligible_at"] == (NOW + timedelta(hours=24)).isoformat()

    # Crossing midnight UTC does not reset the window.
    with pytest.raises(AlreadyCheckedInToday) as exc_info:
        async with session_maker() as db:
            await claim_daily_checkin(OWNER_ID, db, now=NOW + timedelta(hours=20))
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["next_eligible_at"] == (NOW + timedelta(hours=24)).isoformat()

    async with session_maker() as db:
        balance = (await db.execute(select(User.points).where(User.id == OWNER_ID))).scalar_one()
    assert balance == 110

    async with session_maker() as db:
        result = await claim_daily_checkin(OWNER_ID, db, now=NOW + timedelta(hours=24))
    assert result["balance"] == 120

    async with session_maker() as db:
        entries = (
            await db.execute(select(PointsLedger).where(PointsLedger.entry_type == "checkin"))
        ).scalars().all()
    assert [entry.balance_after for entry in sorted(entries, key=lambda item: item.balance_after)] == [110, 120]


@pytest.mark.asyncio
async def test_points_summary_includes_progress_and_recent_entries(session_maker):
    async with session_maker() as db:
        await db.execute(update(User).where(User.id == OWNER_ID).values(points=490))
        await db.commit()
    async with session_maker() as db:
        await claim_daily_checkin(OWNER_ID, db, now=NOW)

    async with session_maker() as db:
        summary = await get_points_summary(OWNER_ID, db, now=NOW + timedelta(hours=1))

    assert summary["balance"] == 500
    assert summary["progress"]["level"] == "colaborador"
    assert summary["checkin"]["state"] == "on_cooldown"
    assert summary["checkin_points"] == 10
    assert summary["recent_entries"][0]["entry_type"] == "checkin"
    assert summary["recent_entries"][0]["delta_points"] == 10


@pytest.mark.asyncio
async def test_checkin_over_http(api_client, auth_headers):
    first = await api_client.post("/points/checkin", headers=auth_headers(OWNER_ID))
    assert first.status_code == 200
    assert first.json()["balance"] == 110

    second = await api_client.post("/points/checkin", headers=auth_headers(OWNER_ID))
    assert second.status_code == 409
    detail = second.json()["detail"]
    assert detail["code"] == "already_checked_in_today"
    assert detail["next_eligible_at"]

    summary = await api_client.get("/points/summary", headers=auth_headers(OWNER_ID))
    assert summary.status_code == 200
    assert summary.json()["balance"] == 110
