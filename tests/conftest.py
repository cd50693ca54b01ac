from contextlib import asynccontextmanager
from typing import Any, Callable, List, Tuple

import pytest

from voicecoach import main
from voicecoach.llm_client import get_llm_client
from voicecoach.speech_client import get_speech_client


FAKE_AUDIO = b"ID3-fake-mp3"


class FakeStore:
    """
    Query-fragment keyed stand-in for the database.

    Handlers registered later win over earlier ones; a handler is either a
    value or a callable receiving the query arguments (it may raise).
    """

    def __init__(self):
        self.handlers: List[Tuple[str, Any]] = []
        self.calls: List[Tuple[str, str, tuple]] = []
        self.commits = 0
        self.rollbacks = 0

    def on(self, fragment: str, result: Any) -> None:
        self.handlers.append((fragment, result))

    def dispatch(self, kind: str, query: str, args: tuple) -> Any:
        normalized = " ".join(query.split())
        self.calls.append((kind, normalized, args))
        for fragment, result in reversed(self.handlers):
            if fragment in normalized:
                return result(*args) if callable(result) else result
        return [] if kind == "fetch" else None

    def queries(self, fragment: str) -> List[Tuple[str, str, tuple]]:
        return [call for call in self.calls if fragment in call[1]]

    def method(self, kind: str) -> Callable:
        async def _call(query: str, *args):
            return self.dispatch(kind, query, args)
        return _call

    @asynccontextmanager
    async def transaction(self):
        conn = FakeConnection(self)
        try:
            yield conn
        except BaseException:
            self.rollbacks += 1
            raise
        else:
            self.commits += 1


class _Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    def __init__(self, store: FakeStore):
        self.store = store

    async def fetchrow(self, query, *args):
        return self.store.dispatch("fetchrow", query, args)

    async def fetch(self, query, *args):
        return self.store.dispatch("fetch", query, args)

    async def fetchval(self, query, *args):
        return self.store.dispatch("fetchval", query, args)

    async def execute(self, query, *args):
        return self.store.dispatch("execute", query, args)

    def transaction(self):
        return _Savepoint()


@pytest.fixture
def fake_db(monkeypatch):
    store = FakeStore()
    monkeypatch.setattr(main.db, "fetch", store.method("fetch"))
    monkeypatch.setattr(main.db, "fetchone", store.method("fetchone"))
    monkeypatch.setattr(main.db, "fetchval", store.method("fetchval"))
    monkeypatch.setattr(main.db, "execute", store.method("execute"))
    monkeypatch.setattr(main.db, "transaction", store.transaction)
    return store


@pytest.fixture(autouse=True)
def _stub_external_calls(monkeypatch):
    llm_client = get_llm_client()
    speech_client = get_speech_client()

    async def _stub_call_llm(*_args, **_kwargs):
        return "stub reply"

    async def _stub_transcribe(*_args, **_kwargs):
        return "merhaba"

    async def _stub_synthesize(*_args, **_kwargs):
        return FAKE_AUDIO

    monkeypatch.setattr(llm_client, "_call_llm", _stub_call_llm, raising=True)
    monkeypatch.setattr(speech_client, "transcribe", _stub_transcribe, raising=True)
    monkeypatch.setattr(speech_client, "synthesize", _stub_synthesize, raising=True)


@pytest.fixture
def fake_audio():
    return FAKE_AUDIO
