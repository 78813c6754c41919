"""Tests for the voice webhook HTTP endpoints."""

import httpx
import pytest
import pytest_asyncio

from callbridge.voice.webhook import MAX_WEBHOOK_BODY_BYTES, create_voice_app

API_KEY = "s3cret"


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def client(dispatcher, store, engine):
    async with _client(create_voice_app(dispatcher, store, engine)) as client:
        yield client


@pytest_asyncio.fixture
async def secured(dispatcher, store, engine):
    async with _client(create_voice_app(dispatcher, store, engine, api_key=API_KEY)) as client:
        yield client


def _conversation(**overrides):
    body = {
        "callControlId": "call-1",
        "systemPrompt": "You confirm appointments.",
        "initialMessage": "Hi there!",
    }
    body.update(overrides)
    return body


# ── Webhook ─────────────────────────────────────────────────────────


class TestWebhook:
    @pytest.mark.asyncio
    async def test_event_is_dispatched(self, client, dispatcher, store, envelope):
        response = await client.post("/webhook", json=envelope("call.machine.detection.ended", result="machine"))
        assert response.status_code == 200

        await dispatcher.flush()
        assert store.snapshot("call-1")["answered_by"] == "machine"

    @pytest.mark.asyncio
    async def test_invalid_json_acknowledged(self, client, store):
        response = await client.post("/webhook", content=b"{not json")
        assert response.status_code == 200
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, client, dispatcher, envelope):
        response = await client.post("/webhook", json=envelope("call.bridged"))
        assert response.status_code == 200
        assert dispatcher.active_calls == 0

    @pytest.mark.asyncio
    async def test_missing_call_id_acknowledged(self, client, dispatcher):
        response = await client.post(
            "/webhook", json={"data": {"event_type": "call.answered", "payload": {}}}
        )
        assert response.status_code == 200
        assert dispatcher.active_calls == 0

    @pytest.mark.asyncio
    async def test_oversized_body_acknowledged(self, client, dispatcher):
        response = await client.post("/webhook", content=b"x" * (MAX_WEBHOOK_BODY_BYTES + 1))
        assert response.status_code == 200
        assert dispatcher.active_calls == 0


# ── Call results ────────────────────────────────────────────────────


class TestCallResult:
    @pytest.mark.asyncio
    async def test_not_found(self, client):
        response = await client.get("/call-result/call-9")
        assert response.status_code == 200
        assert response.json() == {"found": False}

    @pytest.mark.asyncio
    async def test_completed_call(self, client, dispatcher, envelope):
        await client.post("/webhook", json=envelope("call.machine.detection.ended", result="human"))
        await client.post("/webhook", json=envelope("call.hangup", hangup_cause="normal_clearing"))
        await dispatcher.flush()

        data = (await client.get("/call-result/call-1")).json()
        assert data["found"] is True
        assert data["status"] == "completed"
        assert data["answered_by"] == "human"
        assert data["hangup_cause"] == "normal_clearing"


# ── Conversation registration ───────────────────────────────────────


class TestStartConversation:
    @pytest.mark.asyncio
    async def test_registers_with_default_turns(self, client, engine):
        response = await client.post("/start-conversation", json=_conversation())
        assert response.status_code == 200
        assert response.json() == {"success": True, "call_control_id": "call-1", "max_turns": 10}
        state = engine.get("call-1")
        assert state.system_prompt == "You confirm appointments."
        assert state.initial_message == "Hi there!"

    @pytest.mark.asyncio
    async def test_explicit_max_turns(self, client, engine):
        response = await client.post("/start-conversation", json=_conversation(maxTurns=3))
        assert response.json()["max_turns"] == 3
        assert engine.get("call-1").max_turns == 3

    @pytest.mark.asyncio
    async def test_missing_fields(self, client, engine):
        response = await client.post(
            "/start-conversation",
            json={"callControlId": "call-1", "systemPrompt": "  "},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields: systemPrompt, initialMessage"
        assert "call-1" not in engine

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_turns", [0, -2, "many", 2.5, True])
    async def test_bad_max_turns(self, client, max_turns):
        response = await client.post("/start-conversation", json=_conversation(maxTurns=max_turns))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_non_object_body(self, client):
        response = await client.post("/start-conversation", json=["call-1"])
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_live_conversation_conflict(self, client, engine, envelope, dispatcher):
        await client.post("/start-conversation", json=_conversation())
        await client.post("/webhook", json=envelope("call.answered"))
        await dispatcher.flush()

        response = await client.post("/start-conversation", json=_conversation())
        assert response.status_code == 409


# ── Health and auth ─────────────────────────────────────────────────


class TestHealthAndAuth:
    @pytest.mark.asyncio
    async def test_health(self, client, engine):
        engine.register("call-1", "prompt", "hello")
        data = (await client.get("/health")).json()
        assert data == {"status": "ok", "service": "callbridge", "active_calls": 0, "conversations": 1}

    @pytest.mark.asyncio
    async def test_missing_key(self, secured):
        response = await secured.get("/call-result/call-1")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing API key"}

    @pytest.mark.asyncio
    async def test_wrong_key(self, secured):
        response = await secured.post(
            "/start-conversation",
            json=_conversation(),
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid API key"}

    @pytest.mark.asyncio
    async def test_bearer_and_bare_key_accepted(self, secured):
        for header in (f"Bearer {API_KEY}", API_KEY):
            response = await secured.get("/call-result/call-1", headers={"Authorization": header})
            assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_webhook_and_health_stay_open(self, secured, envelope):
        assert (await secured.post("/webhook", json=envelope("call.answered"))).status_code == 200
        assert (await secured.get("/health")).status_code == 200
