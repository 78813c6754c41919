"""Shared fakes and fixtures."""

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from callbridge.errors import CallControlError, SynthesisFailed
from callbridge.providers.base import LLMProvider, LLMResponse
from callbridge.voice.conversation import TurnEngine
from callbridge.voice.dispatcher import WebhookDispatcher
from callbridge.voice.store import CallResultStore
from callbridge.voice.types import WebhookEvent


# ── Fakes ───────────────────────────────────────────────────────────


class FakeCallControl:
    """Records Telnyx actions; actions named in `fail` raise CallControlError."""

    def __init__(self):
        self.calls: list[tuple[Any, ...]] = []
        self.fail: set[str] = set()

    def _record(self, action: str, *args: Any) -> None:
        self.calls.append((action, *args))
        if action in self.fail:
            raise CallControlError(action, 500, "boom")

    def actions(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def transcription_start(self, call_control_id: str, language: str = "en", tracks: str = "inbound"):
        self._record("transcription_start", call_control_id, language)

    async def upload_media(self, media_name: str, audio: bytes, content_type: str = "audio/mpeg"):
        self._record("upload_media", media_name, audio, content_type)

    async def playback_start(self, call_control_id: str, media_name: str):
        self._record("playback_start", call_control_id, media_name)

    async def speak(self, call_control_id: str, text: str, voice: str = "female", language: str = "en-US"):
        self._record("speak", call_control_id, text)

    async def hangup(self, call_control_id: str):
        self._record("hangup", call_control_id)


class FakeSynthesis:
    """Records spoken text. Set `error` to make speak raise, or gate a call with an Event."""

    def __init__(self):
        self.spoken: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.gates: dict[str, asyncio.Event] = {}

    async def speak(self, call_control_id: str, text: str) -> None:
        gate = self.gates.get(call_control_id)
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        self.spoken.append((call_control_id, text))

    def fail(self) -> None:
        self.error = SynthesisFailed("tts", 500, "boom")

    def texts(self, call_control_id: str) -> list[str]:
        return [text for cid, text in self.spoken if cid == call_control_id]


class FakeLLM(LLMProvider):
    """Returns queued replies, then numbered ones."""

    def __init__(self, replies: list[str] | None = None):
        super().__init__()
        self.replies = list(replies or [])
        self.requests: list[list[dict[str, Any]]] = []
        self.error = False

    async def chat(self, messages, model=None, max_tokens=150, temperature=0.7) -> LLMResponse:
        self.requests.append([dict(m) for m in messages])
        if self.error:
            return LLMResponse(content="Error calling LLM: boom", finish_reason="error")
        if self.replies:
            return LLMResponse(content=self.replies.pop(0))
        return LLMResponse(content=f"reply {len(self.requests)}")

    def get_default_model(self) -> str:
        return "fake/model"


# ── Fixtures ────────────────────────────────────────────────────────


SILENCE = 0.2
GRACE = 0.05
RESPONSE_WINDOW = 0.05


@pytest.fixture
def call_control() -> FakeCallControl:
    return FakeCallControl()


@pytest.fixture
def synthesis() -> FakeSynthesis:
    return FakeSynthesis()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def store() -> CallResultStore:
    return CallResultStore(retention_seconds=300.0)


@pytest.fixture
def engine(llm, synthesis, call_control) -> TurnEngine:
    return TurnEngine(
        llm,
        synthesis,
        call_control,
        model="fake/model",
        silence_seconds=SILENCE,
        hangup_grace_seconds=GRACE,
    )


@pytest_asyncio.fixture
async def dispatcher(store, engine, synthesis, call_control):
    dispatcher = WebhookDispatcher(
        store,
        engine,
        synthesis,
        call_control,
        response_window_seconds=RESPONSE_WINDOW,
    )
    yield dispatcher
    await dispatcher.stop()
    store.close()


@pytest.fixture
def envelope():
    """Build a Telnyx webhook envelope."""

    def build(event_type: str, call_control_id: str = "call-1", **payload: Any) -> dict[str, Any]:
        return {
            "data": {
                "event_type": event_type,
                "payload": {"call_control_id": call_control_id, **payload},
            }
        }

    return build


@pytest.fixture
def deliver(dispatcher, envelope):
    """Submit a Telnyx event to the dispatcher and wait until it is handled."""

    async def send(event_type: str, call_control_id: str = "call-1", **payload: Any) -> None:
        event = WebhookEvent.from_envelope(envelope(event_type, call_control_id, **payload))
        assert event is not None
        dispatcher.submit(event)
        await dispatcher.flush()

    return send
