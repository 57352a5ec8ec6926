from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from models.comment import Comment
from models.document_request import DocumentRequest
from models.notification import Notification
from models.response import Response
from models.user import User
from services.analytics import build_analytics_snapshot, journal_hint_from_title, publisher_for_doi
from services.analytics_export import (
    CSV_BOM,
    export_filename,
    format_hours,
    render_analytics_csv,
    render_analytics_html,
)
from services.engagement import add_comment
from services.lifecycle import create_request, select_best_answer
from services.submissions import submit_response


OWNER_ID = "owner-user"
CONTRIBUTOR_ID = "contributor-user"
OTHER_ID = "other-user"
ADMIN_ID = "admin-user"
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


async def _seed_activity(session_maker, storage):
    async with session_maker() as db:
        await db.execute(
            update(User).where(User.id == OWNER_ID).values(country="México", institution="UNAM")
        )
        await db.commit()
    async with session_maker() as db:
        resolved = await create_request(
            OWNER_ID,
            db,
            title="Graphene electronics",
            category="Física",
            points=20,
            is_urgent=True,
            doi="10.1038/nphys1170",
            now=NOW,
        )
    async with session_maker() as db:
        pending = await create_request(
            OWNER_ID, db, title="A Lancet review of sepsis", category="Medicina", points=10, now=NOW
        )
    async with session_maker() as db:
        answer = await submit_response(
            CONTRIBUTOR_ID,
            resolved["id"],
            db,
            storage,
            link_url="https://arxiv.org/abs/0709.1163",
            now=NOW + timedelta(hours=3),
        )
    async with session_maker() as db:
        await select_best_answer(OWNER_ID, resolved["id"], answer["id"], db, now=NOW + timedelta(hours=4))
    async with session_maker() as db:
        await add_comment(OTHER_ID, pending["id"], "Following this one.", db, now=NOW + timedelta(hours=1))
    return resolved, pending


def test_publisher_and_journal_hints():
    assert publisher_for_doi("10.1016/j.cell.2020.01.001") == "Elsevier"
    assert publisher_for_doi("10.9999/abc") == "Editorial (9999)"
    assert publisher_for_doi("no doi here") is None
    assert journal_hint_from_title("Notes on the New England journal") == "NEJM"
    assert journal_hint_from_title("Plain title") is None


def test_format_hours_and_filename():
    assert format_hours(0.5) == "30 min"
    assert format_hours(5) == "5.0 hrs"
    assert format_hours(48) == "2.0 días"
    assert export_filename("csv", NOW) == "reporte-analitico-2026-03-02.csv"


@pytest.mark.asyncio
async def test_analytics_snapshot(session_maker, storage):
    await _seed_activity(session_maker, storage)

    async with session_maker() as db:
        snapshot = await build_analytics_snapshot(db, now=NOW + timedelta(days=1))

    assert {item["name"]: item["value"] for item in snapshot["category_counts"]} == {"Física": 1, "Medicina": 1}
    assert snapshot["country_counts"] == [{"name": "México", "value": 2}]
    assert {item["name"] for item in snapshot["journal_counts"]} == {"Nature", "The Lancet"}
    assert snapshot["resolution_rate"] == 50.0
    assert snapshot["total_resolved"] == 1
    assert snapshot["total_pending"] == 1
    assert snapshot["avg_response_time_hours"] == 3.0
    assert snapshot["best_answer_rate"] == 100.0
    assert snapshot["avg_comments_per_request"] == 0.5
    assert snapshot["urgent_analysis"] == {
        "urgent_count": 1,
        "normal_count": 1,
        "urgent_resolution_rate": 100.0,
        "normal_resolution_rate": 0.0,
    }
    assert snapshot["doi_analysis"] == {"with_doi": 1, "without_doi": 1}
    assert len(snapshot["hourly_distribution"]) == 24
    assert snapshot["hourly_distribution"][10]["count"] == 2
    assert snapshot["daily_distribution"][0] == {"day": "Lunes", "count": 2}
    assert len(snapshot["heatmap"]) == 7 * 24
    assert [item["month"] for item in snapshot["monthly_trend"]][-1] == "2026-03"
    march_flow = snapshot["points_flow"][-1]
    assert march_flow == {"month": "2026-03", "earned": 20, "spent": 30}
    assert snapshot["top_active_users"][0]["name"] == "Ana Owner"
    assert snapshot["institution_distribution"] == [{"name": "UNAM", "value": 1}]


@pytest.mark.asyncio
async def test_exports_escape_values(session_maker, storage):
    await _seed_activity(session_maker, storage)
    async with session_maker() as db:
        await db.execute(update(User).where(User.id == OWNER_ID).values(full_name="<script>alert(1)</script>"))
        await db.commit()
    async with session_maker() as db:
        snapshot = await build_analytics_snapshot(db, now=NOW)

    csv_text = render_analytics_csv(snapshot, NOW)
    assert csv_text.startswith(CSV_BOM)
    assert "=== TEMÁTICAS MÁS DEMANDADAS ===" in csv_text
    assert "Física,1" in csv_text

    html_text = render_analytics_html(snapshot, NOW)
    assert "<script>alert(1)</script>" not in html_text
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html_text


@pytest.mark.asyncio
async def test_staff_endpoints_require_roles(api_client, auth_headers, session_maker):
    denied = await api_client.get("/admin/overview", headers=auth_headers(OWNER_ID))
    assert denied.status_code == 403

    overview = await api_client.get("/admin/overview", headers=auth_headers(ADMIN_ID))
    assert overview.status_code == 200
    assert overview.json()["total_users"] == 4

    promote = await api_client.post(
        f"/admin/users/{OTHER_ID}/role", json={"role": "moderator"}, headers=auth_headers(ADMIN_ID)
    )
    assert promote.json() == {"user_id": OTHER_ID, "role": "moderator", "previous_role": "user"}

    moderator_view = await api_client.get("/admin/analytics", headers=auth_headers(OTHER_ID))
    assert moderator_view.status_code == 200
    moderator_promote = await api_client.post(
        f"/admin/users/{OWNER_ID}/role", json={"role": "admin"}, headers=auth_headers(OTHER_ID)
    )
    assert moderator_promote.status_code == 403

    self_demote = await api_client.post(
        f"/admin/users/{ADMIN_ID}/role", json={"role": "user"}, headers=auth_headers(ADMIN_ID)
    )
    assert self_demote.status_code == 422

    unknown_role = await api_client.post(
        f"/admin/users/{OWNER_ID}/role", json={"role": "superuser"}, headers=auth_headers(ADMIN_ID)
    )
    assert unknown_role.status_code == 422

    users = await api_client.get("/admin/users", params={"q": "olga"}, headers=auth_headers(ADMIN_ID))
    assert [item["id"] for item in users.json()["items"]] == [OTHER_ID]


@pytest.mark.asyncio
async def test_analytics_export_downloads(api_client, auth_headers):
    csv_resp = await api_client.get("/admin/analytics/export", headers=auth_headers(ADMIN_ID))
    assert csv_resp.status_code == 200
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert 'filename="reporte-analitico-' in csv_resp.headers["content-disposition"]
    assert csv_resp.headers["content-disposition"].endswith('.csv"')

    html_resp = await api_client.get("/admin/analytics/export?format=html", headers=auth_headers(ADMIN_ID))
    assert html_resp.status_code == 200
    assert html_resp.headers["content-type"].startswith("text/html")
    assert "<html" in html_resp.text


@pytest.mark.asyncio
async def test_admin_delete_request_removes_everything_without_refund(api_client, auth_headers, session_maker, storage):
    create_resp = await api_client.post(
        "/requests",
        json={"title": "Spam request", "category": "Otro", "points": 10},
        headers=auth_headers(OWNER_ID),
    )
    request_id = create_resp.json()["id"]
    await api_client.post(
        f"/requests/{request_id}/responses",
        files={"file": ("spam.pdf", b"%PDF-1.4\n%%EOF\n", "application/pdf")},
        headers=auth_headers(CONTRIBUTOR_ID),
    )
    await api_client.post(f"/requests/{request_id}/comments", json={"body": "?"}, headers=auth_headers(OTHER_ID))
    await api_client.post(f"/requests/{request_id}/like", headers=auth_headers(OTHER_ID))

    denied = await api_client.delete(f"/admin/requests/{request_id}", headers=auth_headers(OWNER_ID))
    assert denied.status_code == 403

    deleted = await api_client.delete(f"/admin/requests/{request_id}", headers=auth_headers(ADMIN_ID))
    assert deleted.status_code == 200
    assert deleted.json() == {"request_id": request_id, "responses_deleted": 1, "blobs_deleted": 1}

    async with session_maker() as db:
        assert (await db.execute(select(DocumentRequest).where(DocumentRequest.id == request_id))).first() is None
        assert (await db.execute(select(Response).where(Response.request_id == request_id))).first() is None
        assert (await db.execute(select(Comment).where(Comment.request_id == request_id))).first() is None
        assert (await db.execute(select(Notification).where(Notification.reference_id == request_id))).first() is None
        balance = (await db.execute(select(User.points).where(User.id == OWNER_ID))).scalar_one()
    assert balance == 90
    assert not any(storage.bucket_dir.rglob("*.pdf"))
