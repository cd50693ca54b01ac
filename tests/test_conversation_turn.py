import base64
from uuid import uuid4

import pytest
from httpx import AsyncClient, ASGITransport

from voicecoach.main import app
from voicecoach.config import get_settings
from voicecoach.conversation import assemble_prompt, bound_history
from voicecoach.llm_client import get_llm_client
from voicecoach.speech_client import get_speech_client
from voicecoach.utils import fallback_pool, utcnow

SESSION_ID = str(uuid4())
AUDIO_UPLOAD = {"audio": ("clip.ogg", b"OggS-fake-clip", "audio/ogg")}


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _seed(fake_db, history=(), past=()):
    fake_db.on("JOIN client c", {
        "id": SESSION_ID,
        "client_id": "client-1",
        "main_session_id": str(uuid4()),
        "number": 3,
        "language": "tr",
        "username": "alice",
        "gender": 2,
        "client_language": "tr",
        "therapist_name": "Ayşe",
        "voice_id": "voice-1",
    })
    fake_db.on("INSERT INTO message", lambda *args: {"id": str(uuid4()), "created": utcnow()})
    fake_db.on("FROM message WHERE session_id", list(history))
    fake_db.on("summary IS NOT NULL", list(past))


def test_bound_history_limits_count_and_chars():
    messages = [{"is_client": i % 2 == 0, "content": f"m{i}"} for i in range(40)]
    bounded = bound_history(messages, max_messages=30, max_chars=8000)
    assert len(bounded) == 30
    assert bounded[0]["content"] == "m10"
    assert bounded[-1] == {"role": "assistant", "content": "m39"}

    long_messages = [
        {"is_client": True, "content": "x" * 5000},
        {"is_client": False, "content": "y" * 2000},
        {"is_client": True, "content": "z" * 2000},
    ]
    bounded = bound_history(long_messages, max_messages=30, max_chars=8000)
    assert [m["content"][0] for m in bounded] == ["y", "z"]


def test_bound_history_keeps_oversized_latest_message():
    bounded = bound_history([{"is_client": True, "content": "x" * 9000}], max_messages=30, max_chars=8000)
    assert len(bounded) == 1


def test_assemble_prompt_order():
    prompt = assemble_prompt("SYS", "DEV", "PAST_SESSIONS: none.", [{"role": "user", "content": "hi"}])
    assert [m["content"] for m in prompt] == ["SYS", "DEV", "PAST_SESSIONS: none.", "hi"]
    assert [m["role"] for m in prompt[:3]] == ["system", "system", "system"]


@pytest.mark.asyncio
async def test_turn_persists_user_then_assistant_and_returns_envelope(fake_db, fake_audio, monkeypatch):
    _seed(
        fake_db,
        history=[{"created": utcnow(), "language": "tr", "is_client": True, "content": "merhaba"}],
        past=[{"number": 1, "created": utcnow(), "summary": "===PUBLIC_BEGIN===\n- Sınav kaygısı\n===PUBLIC_END==="}]
    )
    prompts = []

    async def _complete(messages, **kwargs):
        prompts.append((messages, kwargs))
        return "Bunu duymak güzel."

    monkeypatch.setattr(get_llm_client(), "complete", _complete)

    async with _client() as client:
        resp = await client.post(f"/sessions/{SESSION_ID}/messages/audio", files=AUDIO_UPLOAD)

    assert resp.status_code == 201
    data = resp.json()
    assert data["transcript"] == "merhaba"
    assert data["aiText"] == "Bunu duymak güzel."
    assert data["userMessageId"]
    assert base64.b64decode(data["audioBase64"]) == fake_audio
    assert data["audioMime"] == "audio/mpeg"
    assert "fallback" not in data

    inserts = fake_db.queries("INSERT INTO message")
    assert [call[2][2] for call in inserts] == [True, False]
    assert inserts[0][2][3] == "merhaba"
    assert fake_db.commits == 1

    messages, kwargs = prompts[0]
    assert kwargs == {"temperature": 0.2, "top_p": 0.8}
    assert "Sınav kaygısı" in messages[2]["content"]
    assert messages[2]["content"].startswith("PAST_SESSIONS_SUMMARIES:")
    assert "name=alice" in messages[1]["content"]
    assert messages[-1] == {"role": "user", "content": "merhaba"}


@pytest.mark.asyncio
async def test_stream_mode_returns_raw_audio(fake_db, fake_audio):
    _seed(fake_db)

    async with _client() as client:
        resp = await client.post(
            f"/sessions/{SESSION_ID}/messages/audio",
            params={"stream": 1},
            files=AUDIO_UPLOAD
        )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert "reply.mp3" in resp.headers["content-disposition"]
    assert resp.content == fake_audio


@pytest.mark.asyncio
async def test_silent_audio_takes_fallback_path(fake_db, monkeypatch):
    _seed(fake_db)
    llm_calls = []

    async def _no_transcript(*_args, **_kwargs):
        return None

    async def _complete(*args, **kwargs):
        llm_calls.append(args)
        return "unused"

    monkeypatch.setattr(get_speech_client(), "transcribe", _no_transcript)
    monkeypatch.setattr(get_llm_client(), "complete", _complete)

    async with _client() as client:
        resp = await client.post(
            f"/sessions/{SESSION_ID}/messages/audio",
            data={"language": "en"},
            files=AUDIO_UPLOAD
        )

    assert resp.status_code == 201
    data = resp.json()
    assert data["fallback"] is True
    assert data["transcript"] == ""
    assert data["userMessageId"] is None
    assert data["aiText"] in fallback_pool("en")
    assert llm_calls == []

    inserts = fake_db.queries("INSERT INTO message")
    assert len(inserts) == 1
    assert inserts[0][2][1:3] == ("en", False)


@pytest.mark.asyncio
async def test_fallback_tolerates_tts_failure(fake_db, monkeypatch):
    _seed(fake_db)

    async def _none(*_args, **_kwargs):
        return None

    monkeypatch.setattr(get_speech_client(), "transcribe", _none)
    monkeypatch.setattr(get_speech_client(), "synthesize", _none)

    async with _client() as client:
        resp = await client.post(f"/sessions/{SESSION_ID}/messages/audio", files=AUDIO_UPLOAD)

    assert resp.status_code == 201
    assert resp.json()["audioBase64"] is None


@pytest.mark.asyncio
async def test_llm_failure_persists_nothing(fake_db, monkeypatch):
    _seed(fake_db)
    tts_calls = []

    async def _fail(*_args, **_kwargs):
        return None

    async def _synthesize(*args, **_kwargs):
        tts_calls.append(args)
        return b"audio"

    monkeypatch.setattr(get_llm_client(), "complete", _fail)
    monkeypatch.setattr(get_speech_client(), "synthesize", _synthesize)

    async with _client() as client:
        resp = await client.post(f"/sessions/{SESSION_ID}/messages/audio", files=AUDIO_UPLOAD)

    assert resp.status_code == 502
    assert resp.json()["error"] == "llm_failed"
    assert fake_db.rollbacks == 1
    assert fake_db.commits == 0
    assert tts_calls == []


@pytest.mark.asyncio
async def test_main_path_tts_failure_is_fatal_by_default(fake_db, monkeypatch):
    _seed(fake_db)

    async def _none(*_args, **_kwargs):
        return None

    monkeypatch.setattr(get_speech_client(), "synthesize", _none)

    async with _client() as client:
        resp = await client.post(f"/sessions/{SESSION_ID}/messages/audio", files=AUDIO_UPLOAD)

    assert resp.status_code == 502
    assert resp.json()["error"] == "tts_failed"
    assert fake_db.commits == 1


@pytest.mark.asyncio
async def test_main_path_tts_failure_can_degrade_to_text(fake_db, monkeypatch):
    _seed(fake_db)

    async def _none(*_args, **_kwargs):
        return None

    monkeypatch.setattr(get_speech_client(), "synthesize", _none)
    monkeypatch.setattr(get_settings(), "tts_failure_fatal", False)

    async with _client() as client:
        resp = await client.post(
            f"/sessions/{SESSION_ID}/messages/audio",
            params={"stream": 1},
            files=AUDIO_UPLOAD
        )

    assert resp.status_code == 201
    assert resp.json()["aiText"] == "stub reply"
    assert resp.json()["audioBase64"] is None


@pytest.mark.asyncio
async def test_turn_validation(fake_db):
    async with _client() as client:
        missing_audio = await client.post(f"/sessions/{SESSION_ID}/messages/audio")
        unknown_session = await client.post(f"/sessions/{uuid4()}/messages/audio", files=AUDIO_UPLOAD)

    assert missing_audio.status_code == 400
    assert missing_audio.json()["error"] == "audio_missing"
    assert unknown_session.status_code == 404
    assert unknown_session.json()["error"] == "session_not_found"
