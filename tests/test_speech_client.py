import httpx
import pytest

from voicecoach.speech_client import SpeechClient


class _FakeResponse:
    def __init__(self, status_code=200, body=None, content=b""):
        self.status_code = status_code
        self._body = body or {}
        self.content = content
        self.text = "error"

    @property
    def is_success(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._body


class _FakeAsyncClient:
    def __init__(self, response, captures):
        self._response = response
        self._captures = captures

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, **kwargs):
        self._captures.append({"url": url, **kwargs})
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


def _patch_http(monkeypatch, response):
    captures = []
    monkeypatch.setattr(
        "voicecoach.speech_client.httpx.AsyncClient",
        lambda *args, **kwargs: _FakeAsyncClient(response, captures)
    )
    return captures


@pytest.mark.asyncio
async def test_transcribe_sends_single_speaker_request(monkeypatch):
    captures = _patch_http(monkeypatch, _FakeResponse(body={"text": "  merhaba  "}))

    text = await SpeechClient().transcribe(b"clip", filename="a.ogg", content_type="audio/ogg", language="tr")

    assert text == "merhaba"
    sent = captures[0]
    assert sent["url"].endswith("/speech-to-text")
    assert sent["data"]["model_id"] == "scribe_v1"
    assert sent["data"]["diarize"] == "false"
    assert sent["data"]["num_speakers"] == "1"
    assert sent["data"]["language_code"] == "tr"
    assert sent["files"]["file"] == ("a.ogg", b"clip", "audio/ogg")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(body={"text": "   "}),
        _FakeResponse(status_code=422),
        httpx.ReadTimeout("timed out"),
    ],
)
async def test_transcribe_failures_return_none(monkeypatch, response):
    _patch_http(monkeypatch, response)
    assert await SpeechClient().transcribe(b"clip") is None


@pytest.mark.asyncio
async def test_synthesize_uses_voice_and_output_format(monkeypatch):
    captures = _patch_http(monkeypatch, _FakeResponse(content=b"ID3audio"))

    audio = await SpeechClient().synthesize("Merhaba", "voice/1")

    assert audio == b"ID3audio"
    sent = captures[0]
    assert sent["url"].endswith("/text-to-speech/voice%2F1")
    assert sent["json"]["model_id"] == "eleven_flash_v2_5"
    assert sent["json"]["output_format"] == "mp3_22050_32"
    assert sent["json"]["voice_settings"] == {"stability": 0.5, "similarity_boost": 0.75}


@pytest.mark.asyncio
async def test_synthesize_error_returns_none(monkeypatch):
    _patch_http(monkeypatch, _FakeResponse(status_code=500))
    assert await SpeechClient().synthesize("Merhaba", "voice-1") is None


@pytest.mark.asyncio
async def test_non_200_success_statuses_are_accepted(monkeypatch):
    _patch_http(monkeypatch, _FakeResponse(status_code=201, body={"text": "selam"}, content=b"ID3audio"))

    assert await SpeechClient().transcribe(b"clip") == "selam"
    assert await SpeechClient().synthesize("Merhaba", "voice-1") == b"ID3audio"
