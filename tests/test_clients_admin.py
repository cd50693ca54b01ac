from datetime import timedelta
from uuid import uuid4

import pytest
from httpx import AsyncClient, ASGITransport

from voicecoach.main import app
from voicecoach.config import get_settings
from voicecoach.utils import utcnow

ADMIN_HEADERS = {"X-Admin-Key": "admin-secret"}


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(get_settings(), "admin_api_key", "admin-secret")


@pytest.mark.asyncio
async def test_client_upsert_generates_id_and_defaults(fake_db):
    fake_db.on("INSERT INTO client", lambda *args: {"id": args[0]})

    async with _client() as client:
        resp = await client.post("/clients", json={"gender": "female"})

    assert resp.status_code == 201
    client_id = resp.json()["id"]
    args = fake_db.queries("INSERT INTO client")[0][2]
    assert args == (client_id, None, 2, "tr")


@pytest.mark.asyncio
async def test_client_upsert_keeps_given_id(fake_db):
    fake_db.on("INSERT INTO client", lambda *args: {"id": args[0]})

    async with _client() as client:
        resp = await client.post(
            "/clients",
            json={"clientId": "rc-user-1", "username": "alice", "gender": 1, "language": "EN"}
        )

    assert resp.json() == {"id": "rc-user-1"}
    assert fake_db.queries("INSERT INTO client")[0][2] == ("rc-user-1", "alice", 1, "en")
    assert "ON CONFLICT (id) DO UPDATE" in fake_db.queries("INSERT INTO client")[0][1]


@pytest.mark.asyncio
async def test_client_upsert_rejects_unknown_gender(fake_db):
    async with _client() as client:
        resp = await client.post("/clients", json={"gender": "robot"})

    assert resp.status_code == 400
    assert fake_db.calls == []


@pytest.mark.asyncio
async def test_therapist_catalog_and_voice_preview(fake_db):
    therapist_id = str(uuid4())
    fake_db.on("FROM therapist", [{
        "id": therapist_id,
        "name": "Ayşe",
        "gender": 2,
        "voice_id": "voice-1",
        "description": "CBT",
        "audio_preview_url": None,
        "total": 1,
    }])
    fake_db.on("audio_preview_url FROM therapist WHERE id", {"id": therapist_id, "audio_preview_url": None})

    async with _client() as client:
        listing = await client.get("/therapists", params={"q": "ay", "gender": 2})
        preview = await client.get(f"/therapists/{therapist_id}/voice-preview")

    assert listing.json()["items"][0]["genderLabel"] == "female"
    assert listing.json()["paging"]["total"] == 1
    assert preview.status_code == 404
    assert preview.json()["error"] == "voice_preview_not_found"


@pytest.mark.asyncio
async def test_voice_preview_returns_audio_url(fake_db):
    therapist_id = str(uuid4())
    fake_db.on(
        "audio_preview_url FROM therapist WHERE id",
        {"id": therapist_id, "audio_preview_url": "https://cdn.example.com/preview.mp3"}
    )

    async with _client() as client:
        resp = await client.get(f"/therapists/{therapist_id}/voice-preview")

    assert resp.status_code == 200
    assert resp.json() == {"therapistId": therapist_id, "audioUrl": "https://cdn.example.com/preview.mp3"}


@pytest.mark.asyncio
async def test_admin_routes_require_key(fake_db, admin_key):
    async with _client() as client:
        reset = await client.post("/clients/client-1/reset")
        mock = await client.post("/admin/clients/client-1/mock-trial-expired", headers={"X-Admin-Key": "wrong"})

    assert reset.status_code == 403
    assert mock.status_code == 403
    assert fake_db.calls == []


@pytest.mark.asyncio
async def test_admin_routes_forbidden_when_key_unset(fake_db):
    async with _client() as client:
        resp = await client.post("/clients/client-1/reset", headers={"X-Admin-Key": ""})

    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_reset_soft_deletes_sessions_only(fake_db, admin_key):
    fake_db.on("FROM client WHERE id", {"id": "client-1", "username": "alice"})
    fake_db.on("UPDATE session SET deleted = TRUE", 3)

    async with _client() as client:
        resp = await client.post("/clients/client-1/reset", headers=ADMIN_HEADERS)

    assert resp.status_code == 200
    assert resp.json() == {
        "clientId": "client-1",
        "username": "alice",
        "mainSessionsDeleted": 0,
        "sessionsDeleted": 3,
    }
    assert fake_db.queries("main_session") == []
    assert fake_db.commits == 1


@pytest.mark.asyncio
async def test_mock_trial_expired_rewinds_main_session(fake_db, admin_key):
    main_session_id = str(uuid4())
    fake_db.on("SELECT 1 FROM client", 1)
    fake_db.on("DELETE FROM client_payment", 2)
    fake_db.on(
        "UPDATE main_session",
        lambda client_id, days: {"id": main_session_id, "created": utcnow() - timedelta(days=days)}
    )

    async with _client() as client:
        resp = await client.post(
            "/admin/clients/client-1/mock-trial-expired",
            params={"days": 9},
            headers=ADMIN_HEADERS
        )

    assert resp.status_code == 200
    data = resp.json()
    assert data["shiftedDays"] == 9
    assert data["deletedPayments"] == 2
    assert data["mainSessionId"] == main_session_id
    assert data["trial"] == {"active": False}


@pytest.mark.asyncio
async def test_mock_trial_expired_creates_missing_main_session(fake_db, admin_key):
    fake_db.on("SELECT 1 FROM client", 1)
    fake_db.on("DELETE FROM client_payment", 0)
    fake_db.on("INSERT INTO main_session", lambda client_id, days: {"id": str(uuid4()), "created": utcnow() - timedelta(days=days)})

    async with _client() as client:
        resp = await client.post("/admin/clients/client-1/mock-trial-expired", headers=ADMIN_HEADERS)

    assert resp.status_code == 200
    assert resp.json()["shiftedDays"] == 8
    assert len(fake_db.queries("INSERT INTO main_session")) == 1


@pytest.mark.asyncio
async def test_mock_trial_expired_validates_days(fake_db, admin_key):
    async with _client() as client:
        resp = await client.post(
            "/admin/clients/client-1/mock-trial-expired",
            params={"days": 0},
            headers=ADMIN_HEADERS
        )

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_health():
    async with _client() as client:
        resp = await client.get("/health")

    assert resp.json()["status"] == "healthy"
