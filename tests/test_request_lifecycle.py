from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select, update

from models.document_request import DocumentRequest
from models.points_ledger import PointsLedger
from models.response import Response
from models.user import User
from services.errors import (
    AlreadyDecided,
    InsufficientPoints,
    NotOwner,
    QuotaExceeded,
    RequestNotActive,
    ResponseNotFound,
    ValidationFailed,
)
from services.lifecycle import (
    _load_decision_context,
    compute_status,
    create_request,
    mark_incorrect,
    select_best_answer,
)
from services.submissions import submit_response


OWNER_ID = "owner-user"
CONTRIBUTOR_ID = "contributor-user"
OTHER_ID = "other-user"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


async def _balance(session_maker, user_id):
    async with session_maker() as db:
        return (await db.execute(select(User.points).where(User.id == user_id))).scalar_one()


async def _open_request(session_maker, points=20, owner_id=OWNER_ID, now=NOW):
    async with session_maker() as db:
        return await create_request(owner_id, db, title="X", category="Medicina", points=points, now=now)


async def _link_response(session_maker, storage, request_id, contributor_id=CONTRIBUTOR_ID, now=None):
    async with session_maker() as db:
        return await submit_response(
            contributor_id,
            request_id,
            db,
            storage,
            link_url="https://repository.example.org/paper",
            now=now or NOW + timedelta(hours=1),
        )


@pytest.mark.asyncio
async def test_create_request_debits_points_and_opens_for_five_days(session_maker):
    created = await _open_request(session_maker)

    assert created["status"] == "active"
    assert created["points_offered"] == 20
    assert created["balance_after"] == 80
    assert created["expires_at"] == (NOW + timedelta(days=5)).isoformat()
    assert await _balance(session_maker, OWNER_ID) == 80

    async with session_maker() as db:
        entries = (
            await db.execute(select(PointsLedger).where(PointsLedger.user_id == OWNER_ID))
        ).scalars().all()
    assert [(entry.entry_type, entry.delta_points, entry.balance_after) for entry in entries] == [
        ("request_debit", -20, 80)
    ]
    assert entries[0].reference_id == created["id"]


@pytest.mark.asyncio
async def test_create_request_with_insufficient_points_changes_nothing(session_maker):
    async with session_maker() as db:
        await db.execute(update(User).where(User.id == OTHER_ID).values(points=5))
        await db.commit()

    with pytest.raises(InsufficientPoints) as exc_info:
        await _open_request(session_maker, owner_id=OTHER_ID)

    assert exc_info.value.detail["code"] == "insufficient_points"
    assert exc_info.value.detail["required"] == 20
    assert exc_info.value.detail["available"] == 5
    assert await _balance(session_maker, OTHER_ID) == 5
    async with session_maker() as db:
        count = len((await db.execute(select(DocumentRequest.id))).scalars().all())
        ledger = (await db.execute(select(PointsLedger.id))).scalars().all()
    assert count == 0
    assert ledger == []


@pytest.mark.asyncio
@pytest.mark.parametrize("points", [5, 12, 55, 0])
async def test_create_request_rejects_points_outside_the_offer_grid(session_maker, points):
    with pytest.raises(ValidationFailed):
        await _open_request(session_maker, points=points)
    assert await _balance(session_maker, OWNER_ID) == 100


@pytest.mark.asyncio
async def test_create_request_rejects_unknown_category_and_bad_doi(session_maker):
    async with session_maker() as db:
        with pytest.raises(ValidationFailed):
            await create_request(OWNER_ID, db, title="X", category="Astrología", points=10, now=NOW)
        with pytest.raises(ValidationFailed) as exc_info:
            await create_request(OWNER_ID, db, title="X", category="Física", points=10, doi="11.1/abc", now=NOW)
    assert exc_info.value.detail["code"] == "invalid_doi"
    assert await _balance(session_maker, OWNER_ID) == 100


@pytest.mark.asyncio
async def test_daily_quota_is_enforced_before_any_debit(session_maker):
    for index in range(5):
        await _open_request(session_maker, points=10, now=NOW + timedelta(minutes=index))

    with pytest.raises(QuotaExceeded) as exc_info:
        await _open_request(session_maker, points=10, now=NOW + timedelta(hours=1))

    assert exc_info.value.status_code == 429
    assert exc_info.value.detail["created_today"] == 5
    assert await _balance(session_maker, OWNER_ID) == 50

    # A new UTC day resets the quota.
    tomorrow = datetime(2026, 3, 3, 0, 5, tzinfo=timezone.utc)
    created = await _open_request(session_maker, points=10, now=tomorrow)
    assert created["balance_after"] == 40


@pytest.mark.asyncio
async def test_link_response_keeps_request_active(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _link_response(session_maker, storage, created["id"])

    assert response["kind"] == "link"
    assert response["rating"] is None
    async with session_maker() as db:
        request = (
            await db.execute(select(DocumentRequest).where(DocumentRequest.id == created["id"]))
        ).scalar_one()
    assert compute_status(request, NOW + timedelta(hours=1)) == "active"


@pytest.mark.asyncio
async def test_best_answer_credits_contributor_and_completes_request(session_maker, storage):
    created = await _open_request(session_maker)
    first = await _link_response(session_maker, storage, created["id"])
    second = await _link_response(session_maker, storage, created["id"], contributor_id=OTHER_ID)

    async with session_maker() as db:
        result = await select_best_answer(OWNER_ID, created["id"], first["id"], db, now=NOW + timedelta(hours=2))

    assert result["status"] == "completed"
    assert result["rating"] == "best_answer"
    assert result["points_awarded"] == 20
    assert result["contributor_balance"] == 20
    assert await _balance(session_maker, CONTRIBUTOR_ID) == 20

    with pytest.raises(AlreadyDecided):
        async with session_maker() as db:
            await select_best_answer(OWNER_ID, created["id"], second["id"], db, now=NOW + timedelta(hours=3))

    assert await _balance(session_maker, CONTRIBUTOR_ID) == 20
    assert await _balance(session_maker, OTHER_ID) == 100
    assert await _balance(session_maker, OWNER_ID) == 80

    async with session_maker() as db:
        ratings = (
            await db.execute(select(Response.rating).where(Response.request_id == created["id"]))
        ).scalars().all()
        credit_entries = (
            await db.execute(
                select(PointsLedger).where(PointsLedger.entry_type == "best_answer_credit")
            )
        ).scalars().all()
    assert sorted(rating or "" for rating in ratings) == ["", "best_answer"]
    assert len(credit_entries) == 1
    assert credit_entries[0].reference_id == first["id"]


@pytest.mark.asyncio
async def test_lost_race_on_best_answer_credits_only_once(session_maker, storage):
    created = await _open_request(session_maker)
    first = await _link_response(session_maker, storage, created["id"])
    second = await _link_response(session_maker, storage, created["id"], contributor_id=OTHER_ID)

    # Snapshot taken before either decision lands, as a concurrent caller would see it.
    async with session_maker() as db:
        stale_context = await _load_decision_context(created["id"], second["id"], db)

    async with session_maker() as db:
        await select_best_answer(OWNER_ID, created["id"], first["id"], db, now=NOW + timedelta(hours=2))

    async def _stale_loader(request_id, response_id, db):
        return stale_context

    with patch("services.lifecycle._load_decision_context", side_effect=_stale_loader):
        with pytest.raises(AlreadyDecided):
            async with session_maker() as db:
                await select_best_answer(OWNER_ID, created["id"], second["id"], db, now=NOW + timedelta(hours=2))

    assert await _balance(session_maker, CONTRIBUTOR_ID) == 20
    assert await _balance(session_maker, OTHER_ID) == 100
    async with session_maker() as db:
        best = (
            await db.execute(
                select(Response.id).where(
                    Response.request_id == created["id"],
                    Response.rating == "best_answer",
                )
            )
        ).scalars().all()
    assert best == [first["id"]]


@pytest.mark.asyncio
async def test_mark_incorrect_closes_request_without_credit(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _link_response(session_maker, storage, created["id"])

    async with session_maker() as db:
        result = await mark_incorrect(OWNER_ID, created["id"], response["id"], db, now=NOW + timedelta(hours=2))

    assert result["status"] == "closed_incorrect"
    assert result["points_awarded"] == 0
    assert await _balance(session_maker, CONTRIBUTOR_ID) == 0
    assert await _balance(session_maker, OWNER_ID) == 80

    with pytest.raises(AlreadyDecided):
        async with session_maker() as db:
            await select_best_answer(OWNER_ID, created["id"], response["id"], db, now=NOW + timedelta(hours=3))


@pytest.mark.asyncio
async def test_decision_guards(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _link_response(session_maker, storage, created["id"])

    async with session_maker() as db:
        with pytest.raises(NotOwner):
            await select_best_answer(OTHER_ID, created["id"], response["id"], db, now=NOW + timedelta(hours=2))
        with pytest.raises(ResponseNotFound):
            await select_best_answer(OWNER_ID, created["id"], "missing-response", db, now=NOW + timedelta(hours=2))
        with pytest.raises(RequestNotActive):
            await select_best_answer(OWNER_ID, created["id"], response["id"], db, now=NOW + timedelta(days=6))

    assert await _balance(session_maker, CONTRIBUTOR_ID) == 0


@pytest.mark.asyncio
async def test_decision_caps_response_retention(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _link_response(session_maker, storage, created["id"])
    decided_at = NOW + timedelta(hours=2)

    async with session_maker() as db:
        await select_best_answer(OWNER_ID, created["id"], response["id"], db, now=decided_at)

    async with session_maker() as db:
        stored = (await db.execute(select(Response).where(Response.id == response["id"]))).scalar_one()
    expires_at = stored.expires_at.replace(tzinfo=timezone.utc) if stored.expires_at.tzinfo is None else stored.expires_at
    assert expires_at == decided_at + timedelta(hours=24)


def test_compute_status_prefers_stored_terminal_status():
    request = DocumentRequest(status="completed", expires_at=NOW - timedelta(days=1))
    assert compute_status(request, NOW) == "completed"

    request = DocumentRequest(status="active", expires_at=NOW)
    assert compute_status(request, NOW) == "expired"
    assert compute_status(request, NOW - timedelta(seconds=1)) == "active"


@pytest.mark.asyncio
async def test_request_lifecycle_over_http(api_client, auth_headers, session_maker):
    create_resp = await api_client.post(
        "/requests",
        json={"title": "Harrison's Principles, ch. 12", "category": "Medicina", "points": 20, "is_urgent": True},
        headers=auth_headers(OWNER_ID),
    )
    assert create_resp.status_code == 201
    request_id = create_resp.json()["id"]
    assert create_resp.json()["balance_after"] == 80

    answer_resp = await api_client.post(
        f"/requests/{request_id}/responses",
        data={"link_url": "https://repository.example.org/harrison.pdf", "message": "Chapter 12"},
        headers=auth_headers(CONTRIBUTOR_ID),
    )
    assert answer_resp.status_code == 201
    response_id = answer_resp.json()["id"]

    forbidden = await api_client.post(
        f"/requests/{request_id}/best-answer",
        json={"response_id": response_id},
        headers=auth_headers(OTHER_ID),
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["code"] == "not_owner"

    best = await api_client.post(
        f"/requests/{request_id}/best-answer",
        json={"response_id": response_id},
        headers=auth_headers(OWNER_ID),
    )
    assert best.status_code == 200
    assert best.json()["contributor_balance"] == 20

    again = await api_client.post(
        f"/requests/{request_id}/best-answer",
        json={"response_id": response_id},
        headers=auth_headers(OWNER_ID),
    )
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "already_decided"

    detail = await api_client.get(f"/requests/{request_id}", headers=auth_headers(OWNER_ID))
    assert detail.status_code == 200
    assert detail.json()["status"] == "completed"
    assert detail.json()["is_owner"] is True
    assert detail.json()["response_count"] == 1

    quota = await api_client.get("/requests/quota", headers=auth_headers(OWNER_ID))
    assert quota.json() == {"limit": 5, "created_today": 1, "remaining": 4}


@pytest.mark.asyncio
async def test_create_request_over_http_reports_insufficient_points(api_client, auth_headers):
    response = await api_client.post(
        "/requests",
        json={"title": "Any", "category": "Física", "points": 20},
        headers=auth_headers(CONTRIBUTOR_ID),
    )
    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "insufficient_points"

    unauthenticated = await api_client.post("/requests", json={"title": "Any", "category": "Física", "points": 20})
    assert unauthenticated.status_code == 401


@pytest.mark.asyncio
async def test_create_request_over_http_reports_field_errors_as_validation_failed(
    api_client, auth_headers, session_maker
):
    blank_title = await api_client.post(
        "/requests",
        json={"title": "   ", "category": "Física", "points": 10},
        headers=auth_headers(OWNER_ID),
    )
    assert blank_title.status_code == 422
    assert blank_title.json()["detail"]["code"] == "validation_failed"
    assert blank_title.json()["detail"]["message"] == "A title is required."

    missing_category = await api_client.post(
        "/requests",
        json={"title": "Quantum optics", "points": 10},
        headers=auth_headers(OWNER_ID),
    )
    assert missing_category.status_code == 422
    assert missing_category.json()["detail"]["code"] == "validation_failed"
    assert "Física" in missing_category.json()["detail"]["allowed"]

    bad_points = await api_client.post(
        "/requests",
        json={"title": "Quantum optics", "category": "Física", "points": "many"},
        headers=auth_headers(OWNER_ID),
    )
    assert bad_points.status_code == 422
    detail = bad_points.json()["detail"]
    assert detail["code"] == "validation_failed"
    assert detail["errors"][0]["field"] == "body.points"

    assert await _balance(session_maker, OWNER_ID) == 100
