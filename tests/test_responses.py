from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from models.response import Response
from services.errors import (
    InvalidPayload,
    NotFound,
    PayloadExpired,
    PermissionDenied,
    RequestNotActive,
)
from services.lifecycle import create_request
from services.storage import storage_path_from_reference
from services.submissions import open_signed_file, resolve_response_payload, submit_response


OWNER_ID = "owner-user"
CONTRIBUTOR_ID = "contributor-user"
OTHER_ID = "other-user"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


async def _open_request(session_maker, now=NOW):
    async with session_maker() as db:
        return await create_request(OWNER_ID, db, title="Cell Biology", category="Biología", points=10, now=now)


async def _pdf_response(session_maker, storage, request_id, now=NOW):
    async with session_maker() as db:
        return await submit_response(
            CONTRIBUTOR_ID,
            request_id,
            db,
            storage,
            file_name="cell-biology.pdf",
            file_bytes=PDF_BYTES,
            content_type="application/pdf",
            message="Full text",
            now=now,
        )


@pytest.mark.asyncio
async def test_pdf_response_is_stored_under_contributor_prefix(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _pdf_response(session_maker, storage, created["id"])

    assert response["kind"] == "file"
    assert response["file_size"] == len(PDF_BYTES)
    assert response["payload_available"] is True
    assert response["expires_at"] == (NOW + timedelta(days=7)).isoformat()

    async with session_maker() as db:
        stored = (await db.execute(select(Response).where(Response.id == response["id"]))).scalar_one()
    assert stored.file_path.startswith(f"{CONTRIBUTOR_ID}/")
    assert stored.file_path.endswith("_cell-biology.pdf")
    assert storage.resolve(stored.file_path).read_bytes() == PDF_BYTES


@pytest.mark.asyncio
async def test_submission_payload_rules(session_maker, storage):
    created = await _open_request(session_maker)

    async with session_maker() as db:
        with pytest.raises(InvalidPayload):
            await submit_response(CONTRIBUTOR_ID, created["id"], db, storage, now=NOW)
        with pytest.raises(InvalidPayload):
            await submit_response(
                CONTRIBUTOR_ID,
                created["id"],
                db,
                storage,
                link_url="https://example.org/a",
                file_name="a.pdf",
                file_bytes=PDF_BYTES,
                now=NOW,
            )
        with pytest.raises(InvalidPayload):
            await submit_response(CONTRIBUTOR_ID, created["id"], db, storage, link_url="ftp://example.org/a", now=NOW)
        with pytest.raises(InvalidPayload):
            await submit_response(
                CONTRIBUTOR_ID,
                created["id"],
                db,
                storage,
                file_name="notes.docx",
                file_bytes=b"PK\x03\x04",
                content_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
                now=NOW,
            )
        with pytest.raises(PermissionDenied):
            await submit_response(OWNER_ID, created["id"], db, storage, link_url="https://example.org/a", now=NOW)
        with pytest.raises(RequestNotActive):
            await submit_response(
                CONTRIBUTOR_ID,
                created["id"],
                db,
                storage,
                link_url="https://example.org/a",
                now=NOW + timedelta(days=5),
            )

    assert not storage.bucket_dir.exists() or not any(storage.bucket_dir.rglob("*.pdf"))


@pytest.mark.asyncio
async def test_payload_resolvable_strictly_before_expiry(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _pdf_response(session_maker, storage, created["id"])
    expires_at = NOW + timedelta(days=7)

    async with session_maker() as db:
        payload = await resolve_response_payload(
            OWNER_ID, response["id"], db, storage, now=expires_at - timedelta(seconds=1)
        )
    assert payload["kind"] == "file"
    assert payload["url"].startswith(f"/responses/{response['id']}/file?token=")

    # The signed URL never outlives the response itself.
    url_expires_at = datetime.fromisoformat(payload["url_expires_at"])
    assert url_expires_at <= datetime.now(timezone.utc) + timedelta(seconds=2)

    async with session_maker() as db:
        last_moment = await resolve_response_payload(
            OWNER_ID, response["id"], db, storage, now=expires_at - timedelta(milliseconds=500)
        )
    assert last_moment["kind"] == "file"
    assert "token=" in last_moment["url"]

    async with session_maker() as db:
        with pytest.raises(PayloadExpired):
            await resolve_response_payload(OWNER_ID, response["id"], db, storage, now=expires_at)
        with pytest.raises(PayloadExpired):
            await resolve_response_payload(
                CONTRIBUTOR_ID, response["id"], db, storage, now=expires_at + timedelta(seconds=1)
            )


@pytest.mark.asyncio
async def test_payload_hidden_from_third_parties(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _pdf_response(session_maker, storage, created["id"])

    async with session_maker() as db:
        with pytest.raises(NotFound):
            await resolve_response_payload(OTHER_ID, response["id"], db, storage, now=NOW + timedelta(hours=1))
        contributor_view = await resolve_response_payload(
            CONTRIBUTOR_ID, response["id"], db, storage, now=NOW + timedelta(hours=1)
        )
    assert contributor_view["file_name"] == "cell-biology.pdf"


@pytest.mark.asyncio
async def test_legacy_public_url_resolves_to_bucket_path(session_maker, storage):
    created = await _open_request(session_maker)
    response = await _pdf_response(session_maker, storage, created["id"])

    async with session_maker() as db:
        stored = (await db.execute(select(Response).where(Response.id == response["id"]))).scalar_one()
        relative = stored.file_path
        legacy_url = f"https://project.supabase.co/storage/v1/object/public/{storage.bucket}/{relative}"
        await db.execute(update(Response).where(Response.id == response["id"]).values(file_path=legacy_url))
        await db.commit()

    assert storage_path_from_reference(legacy_url, storage.bucket) == relative
    assert storage_path_from_reference("https://elsewhere.org/paper.pdf", storage.bucket) is None

    async with session_maker() as db:
        payload = await resolve_response_payload(OWNER_ID, response["id"], db, storage, now=NOW + timedelta(hours=1))
    assert payload["kind"] == "file"


@pytest.mark.asyncio
async def test_signed_file_token_is_bound_to_response(session_maker, storage):
    current = datetime.now(timezone.utc)
    created = await _open_request(session_maker, now=current)
    response = await _pdf_response(session_maker, storage, created["id"], now=current)

    async with session_maker() as db:
        payload = await resolve_response_payload(OWNER_ID, response["id"], db, storage)
    token = payload["url"].split("token=", 1)[1]

    async with session_maker() as db:
        path, file_name = await open_signed_file(token, db, storage, expected_response_id=response["id"])
        assert path.read_bytes() == PDF_BYTES
        assert file_name == "cell-biology.pdf"
        with pytest.raises(PermissionDenied):
            await open_signed_file(token, db, storage, expected_response_id="another-response")
        with pytest.raises(PermissionDenied):
            await open_signed_file("not-a-token", db, storage)


@pytest.mark.asyncio
async def test_upload_and_download_over_http(api_client, auth_headers):
    create_resp = await api_client.post(
        "/requests",
        json={"title": "Thermodynamics notes", "category": "Física", "points": 10},
        headers=auth_headers(OWNER_ID),
    )
    request_id = create_resp.json()["id"]

    upload = await api_client.post(
        f"/requests/{request_id}/responses",
        files={"file": ("thermo.pdf", PDF_BYTES, "application/pdf")},
        data={"message": "Scanned copy"},
        headers=auth_headers(CONTRIBUTOR_ID),
    )
    assert upload.status_code == 201
    response_id = upload.json()["id"]

    listing = await api_client.get(f"/requests/{request_id}/responses")
    assert listing.status_code == 200
    [item] = listing.json()["items"]
    assert item["contributor"]["full_name"] == "Carlos Contrib"
    assert "file_path" not in item

    outsider = await api_client.get(f"/responses/{response_id}/payload", headers=auth_headers(OTHER_ID))
    assert outsider.status_code == 404

    payload = await api_client.get(f"/responses/{response_id}/payload", headers=auth_headers(OWNER_ID))
    assert payload.status_code == 200
    download = await api_client.get(payload.json()["url"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert download.content == PDF_BYTES

    both = await api_client.post(
        f"/requests/{request_id}/responses",
        files={"file": ("thermo.pdf", PDF_BYTES, "application/pdf")},
        data={"link_url": "https://example.org/thermo"},
        headers=auth_headers(CONTRIBUTOR_ID),
    )
    assert both.status_code == 422
    assert both.json()["detail"]["code"] == "invalid_payload"
