"""Tests for the protocol proxy and its synthetic tools."""

import asyncio
import json
from typing import Any

import httpx
import pytest

from callbridge.config.schema import Config, TelnyxConfig
from callbridge.errors import DownstreamUnavailable, NotFound
from callbridge.mcp.client import ResultClient
from callbridge.mcp.proxy import INTERNAL_ERROR, PROXY_ID_BASE, ProtocolProxy, create_proxy
from callbridge.mcp.tools import (
    CallAndConverseTool,
    CallAndSpeakTool,
    CheckCallResultTool,
    SyntheticToolRegistry,
)
from callbridge.voice.types import decode_client_state

FROM = "+15550000000"


def _dial_ok(call_control_id: str = "v3:abc") -> dict[str, Any]:
    body = {"data": {"call_control_id": call_control_id, "call_leg_id": "leg-1"}}
    return {"content": [{"type": "text", "text": json.dumps(body)}]}


def _text(message: dict[str, Any]) -> Any:
    """Decode the JSON body of a tool result response."""
    return json.loads(message["result"]["content"][0]["text"])


class Harness:
    """Wires a proxy to in-memory client and subordinate sides.

    The fake subordinate answers dial_calls with `dial_result`.
    """

    def __init__(self, proxy: ProtocolProxy):
        self.proxy = proxy
        self.to_client: list[dict[str, Any]] = []
        self.to_child: list[dict[str, Any]] = []
        self.dial_result: dict[str, Any] | None = _dial_ok()
        proxy.attach_client(self._client)
        proxy.attach_child(self._child)

    async def _client(self, message: dict[str, Any]) -> None:
        self.to_client.append(message)

    async def _child(self, message: dict[str, Any]) -> None:
        self.to_child.append(message)
        params = message.get("params") or {}
        if message.get("method") == "tools/call" and params.get("name") == "dial_calls":
            if self.dial_result is not None:
                await self.proxy.handle_child_line(json.dumps({
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "result": self.dial_result,
                }))

    async def send(self, message: dict[str, Any]) -> None:
        await self.proxy.handle_client_line(json.dumps(message))
        await self.settle()

    async def reply(self, message: dict[str, Any]) -> None:
        await self.proxy.handle_child_line(json.dumps(message))

    async def settle(self) -> None:
        tasks = list(self.proxy._tasks)
        if tasks:
            await asyncio.gather(*tasks)

    def dials(self) -> list[dict[str, Any]]:
        return [
            m["params"]["arguments"]
            for m in self.to_child
            if m.get("method") == "tools/call" and m["params"]["name"] == "dial_calls"
        ]


class FakeResults:
    """Stands in for the webhook service's internal endpoints."""

    def __init__(self):
        self.registered: list[tuple[str, str, str, int]] = []
        self.results: dict[str, dict[str, Any]] = {}
        self.register_error: Exception | None = None

    async def start_conversation(self, call_control_id, system_prompt, initial_message, max_turns):
        if self.register_error is not None:
            raise self.register_error
        self.registered.append((call_control_id, system_prompt, initial_message, max_turns))
        return {"success": True}

    async def get_result(self, call_control_id):
        if call_control_id not in self.results:
            raise NotFound(call_control_id)
        return self.results[call_control_id]


@pytest.fixture
def results() -> FakeResults:
    return FakeResults()


@pytest.fixture
def harness(results) -> Harness:
    registry = SyntheticToolRegistry()
    proxy = ProtocolProxy(registry, hidden_tools=["dial_calls"], request_timeout=1.0)
    registry.register(CallAndSpeakTool(proxy, default_from=FROM))
    registry.register(CallAndConverseTool(proxy, results, default_from=FROM))
    registry.register(CheckCallResultTool(results))
    return Harness(proxy)


def _call(request_id: Any, name: str, **arguments: Any) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }


# ── Id rewriting ────────────────────────────────────────────────────


class TestForwarding:
    @pytest.mark.asyncio
    async def test_ids_rewritten_and_restored(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        await harness.send({"jsonrpc": "2.0", "id": "abc", "method": "ping"})

        first, second = harness.to_child
        assert first["id"] >= PROXY_ID_BASE
        assert second["id"] >= PROXY_ID_BASE
        assert first["id"] != second["id"]
        assert harness.proxy.pending_count == 2

        # Responses come back out of order
        await harness.reply({"jsonrpc": "2.0", "id": second["id"], "result": {"n": 2}})
        await harness.reply({"jsonrpc": "2.0", "id": first["id"], "result": {"n": 1}})

        assert harness.to_client == [
            {"jsonrpc": "2.0", "id": "abc", "result": {"n": 2}},
            {"jsonrpc": "2.0", "id": 1, "result": {"n": 1}},
        ]
        assert harness.proxy.pending_count == 0

    @pytest.mark.asyncio
    async def test_same_client_id_twice(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": 7, "method": "ping"})
        await harness.send({"jsonrpc": "2.0", "id": 7, "method": "ping"})
        ids = [m["id"] for m in harness.to_child]
        assert len(set(ids)) == 2

        for request_id in ids:
            await harness.reply({"jsonrpc": "2.0", "id": request_id, "result": {}})
        assert [m["id"] for m in harness.to_client] == [7, 7]

    @pytest.mark.asyncio
    async def test_notifications_pass_through(self, harness):
        note = {"jsonrpc": "2.0", "method": "notifications/initialized"}
        await harness.send(note)
        assert harness.to_child == [note]

    @pytest.mark.asyncio
    async def test_unknown_response_id_passes_through(self, harness):
        stray = {"jsonrpc": "2.0", "id": 42, "result": {}}
        await harness.reply(stray)
        assert harness.to_client == [stray]

    @pytest.mark.asyncio
    async def test_child_notification_passes_through(self, harness):
        note = {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"p": 1}}
        await harness.reply(note)
        assert harness.to_client == [note]

    @pytest.mark.asyncio
    async def test_malformed_lines_dropped(self, harness):
        await harness.proxy.handle_client_line("{not json")
        await harness.proxy.handle_client_line("[1, 2]")
        await harness.proxy.handle_child_line("garbage")
        assert harness.to_child == []
        assert harness.to_client == []

    @pytest.mark.asyncio
    async def test_no_subordinate_answers_with_error(self, harness):
        harness.proxy.attach_child(None)
        await harness.send({"jsonrpc": "2.0", "id": 3, "method": "ping"})

        (response,) = harness.to_client
        assert response["id"] == 3
        assert response["error"]["code"] == INTERNAL_ERROR
        assert harness.proxy.pending_count == 0

    @pytest.mark.asyncio
    async def test_fail_pending(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": "x", "method": "ping"})
        await harness.proxy.fail_pending("Subordinate tool provider exited")

        assert harness.to_client == [{
            "jsonrpc": "2.0",
            "id": "x",
            "error": {"code": INTERNAL_ERROR, "message": "Subordinate tool provider exited"},
        }]
        assert harness.proxy.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_child_times_out(self, harness):
        harness.proxy.request_timeout = 0.05
        with pytest.raises(DownstreamUnavailable):
            await harness.proxy.request_child("ping", {})
        assert harness.proxy.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_dropped(self, harness):
        harness.proxy.request_timeout = 0.05
        with pytest.raises(DownstreamUnavailable):
            await harness.proxy.request_child("ping", {})

        (abandoned,) = harness.to_child
        await harness.reply({"jsonrpc": "2.0", "id": abandoned["id"], "result": {}})
        assert harness.to_client == []

    @pytest.mark.asyncio
    async def test_duplicate_response_dropped(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": 9, "method": "ping"})
        forwarded = harness.to_child[0]

        await harness.reply({"jsonrpc": "2.0", "id": forwarded["id"], "result": {"n": 1}})
        await harness.reply({"jsonrpc": "2.0", "id": forwarded["id"], "result": {"n": 2}})
        assert harness.to_client == [{"jsonrpc": "2.0", "id": 9, "result": {"n": 1}}]


# ── tools/list ──────────────────────────────────────────────────────


class TestToolsList:
    @pytest.mark.asyncio
    async def test_merged_list(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        forwarded = harness.to_child[0]

        await harness.reply({
            "jsonrpc": "2.0",
            "id": forwarded["id"],
            "result": {
                "tools": [
                    {"name": "dial_calls", "description": "Dial"},
                    {"name": "list_call_control_applications", "description": "List apps"},
                    {"name": "call_and_speak", "description": "Shadowed"},
                    {"name": "list_call_control_applications", "description": "Again"},
                ],
                "nextCursor": "c2",
            },
        })

        (response,) = harness.to_client
        assert response["id"] == 1
        names = [tool["name"] for tool in response["result"]["tools"]]
        assert names == [
            "call_and_speak",
            "call_and_converse",
            "check_call_result",
            "list_call_control_applications",
        ]
        assert response["result"]["nextCursor"] == "c2"
        speak = response["result"]["tools"][0]
        assert speak["inputSchema"]["required"] == ["connection_id", "to", "message"]

    @pytest.mark.asyncio
    async def test_synthetic_tools_only_on_first_page(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}})
        await harness.reply({
            "jsonrpc": "2.0",
            "id": harness.to_child[-1]["id"],
            "result": {"tools": [{"name": "t0"}], "nextCursor": "c2"},
        })

        await harness.send({"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {"cursor": "c2"}})
        await harness.reply({
            "jsonrpc": "2.0",
            "id": harness.to_child[-1]["id"],
            "result": {"tools": [{"name": "dial_calls"}, {"name": "check_call_result"}, {"name": "t1"}]},
        })

        first, second = harness.to_client
        assert [t["name"] for t in second["result"]["tools"]] == ["t1"]

        names = [t["name"] for page in (first, second) for t in page["result"]["tools"]]
        assert names == ["call_and_speak", "call_and_converse", "check_call_result", "t0", "t1"]

    @pytest.mark.asyncio
    async def test_error_passes_through(self, harness):
        await harness.send({"jsonrpc": "2.0", "id": 5, "method": "tools/list"})
        forwarded = harness.to_child[0]
        await harness.reply({
            "jsonrpc": "2.0",
            "id": forwarded["id"],
            "error": {"code": -32601, "message": "nope"},
        })
        assert harness.to_client == [
            {"jsonrpc": "2.0", "id": 5, "error": {"code": -32601, "message": "nope"}}
        ]


# ── Synthetic tools ─────────────────────────────────────────────────


class TestCallAndSpeak:
    @pytest.mark.asyncio
    async def test_dials_with_message_and_amd(self, harness):
        await harness.send(_call(1, "call_and_speak", connection_id="app", to="+15551234567", message="Hi!"))

        (dial,) = harness.dials()
        assert dial["connection_id"] == "app"
        assert dial["to"] == "+15551234567"
        assert dial["from"] == FROM
        assert dial["answering_machine_detection"] == "detect_beep"
        assert decode_client_state(dial["client_state"], "") == "Hi!"

        (response,) = harness.to_client
        assert response["id"] == 1
        body = _text(response)
        assert body["success"] is True
        assert body["call_control_id"] == "v3:abc"
        assert "check_call_result" in body["tip"]
        assert harness.proxy.pending_count == 0

    @pytest.mark.asyncio
    async def test_explicit_from_wins(self, harness):
        await harness.send(_call(1, "call_and_speak", connection_id="app", to="+1555", message="Hi", **{"from": "+1999"}))
        assert harness.dials()[0]["from"] == "+1999"

    @pytest.mark.asyncio
    async def test_missing_arguments(self, harness):
        await harness.send(_call(2, "call_and_speak", connection_id="app", message=" "))

        (response,) = harness.to_client
        assert response["result"]["isError"] is True
        text = response["result"]["content"][0]["text"]
        assert "to" in text and "message" in text
        assert harness.to_child == []

    @pytest.mark.asyncio
    async def test_dial_error_result(self, harness):
        harness.dial_result = {"content": [{"type": "text", "text": "Invalid number"}], "isError": True}
        await harness.send(_call(3, "call_and_speak", connection_id="app", to="+1", message="Hi"))

        (response,) = harness.to_client
        assert response["result"]["isError"] is True
        assert "Invalid number" in response["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_dial_without_call_id(self, harness):
        harness.dial_result = {"content": [{"type": "text", "text": "queued"}]}
        await harness.send(_call(3, "call_and_speak", connection_id="app", to="+1", message="Hi"))

        body = _text(harness.to_client[0])
        assert body["success"] is True
        assert body["call_control_id"] is None
        assert body["tip"] is None

    @pytest.mark.asyncio
    async def test_hidden_tool_rejected(self, harness):
        await harness.send(_call(4, "dial_calls", connection_id="app", to="+1", **{"from": FROM}))

        (response,) = harness.to_client
        assert response["result"]["isError"] is True
        assert harness.to_child == []


class TestCallAndConverse:
    @pytest.mark.asyncio
    async def test_dials_and_registers(self, harness, results):
        await harness.send(_call(
            1, "call_and_converse",
            connection_id="app", to="+1555", system_prompt="Be nice", initial_message="Hello!",
        ))

        (dial,) = harness.dials()
        assert "client_state" not in dial
        assert results.registered == [("v3:abc", "Be nice", "Hello!", 10)]

        body = _text(harness.to_client[0])
        assert body["call_control_id"] == "v3:abc"
        assert body["max_turns"] == 10

    @pytest.mark.asyncio
    async def test_bad_max_turns_not_dialed(self, harness, results):
        await harness.send(_call(
            1, "call_and_converse",
            connection_id="app", to="+1555", system_prompt="p", initial_message="m", max_turns=0,
        ))
        assert harness.to_client[0]["result"]["isError"] is True
        assert harness.dials() == []

    @pytest.mark.asyncio
    async def test_registration_failure(self, harness, results):
        results.register_error = DownstreamUnavailable("connection refused")
        await harness.send(_call(
            1, "call_and_converse",
            connection_id="app", to="+1555", system_prompt="p", initial_message="m",
        ))

        result = harness.to_client[0]["result"]
        assert result["isError"] is True
        assert "v3:abc" in result["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_missing_call_id(self, harness, results):
        harness.dial_result = {"content": [{"type": "text", "text": "{}"}]}
        await harness.send(_call(
            1, "call_and_converse",
            connection_id="app", to="+1555", system_prompt="p", initial_message="m",
        ))
        assert harness.to_client[0]["result"]["isError"] is True
        assert results.registered == []


class TestCheckCallResult:
    @pytest.mark.asyncio
    async def test_not_found(self, harness):
        await harness.send(_call(1, "check_call_result", call_control_id="v3:zzz"))
        body = _text(harness.to_client[0])
        assert body["found"] is False
        assert "Try again" in body["message"]
        assert "isError" not in harness.to_client[0]["result"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answered_by, interpretation", [
        ("human", "A human answered the call."),
        ("machine", "The call went to voicemail."),
        ("not_sure", "Could not determine if human or voicemail."),
    ])
    async def test_interpretation(self, harness, results, answered_by, interpretation):
        results.results["v3:abc"] = {"found": True, "status": "completed", "answered_by": answered_by}
        await harness.send(_call(1, "check_call_result", call_control_id="v3:abc"))

        body = _text(harness.to_client[0])
        assert body["answered_by"] == answered_by
        assert body["interpretation"] == interpretation


# ── Result client ───────────────────────────────────────────────────


class TestResultClient:
    @pytest.mark.asyncio
    async def test_start_conversation_body(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "max_turns": 4})

        client = ResultClient("http://svc:3003/", api_key="k", transport=httpx.MockTransport(handler))
        await client.start_conversation("v3:abc", "prompt", "hello", 4)
        await client.aclose()

        (request,) = seen
        assert request.url == "http://svc:3003/start-conversation"
        assert request.headers["Authorization"] == "Bearer k"
        assert json.loads(request.content) == {
            "callControlId": "v3:abc",
            "systemPrompt": "prompt",
            "initialMessage": "hello",
            "maxTurns": 4,
        }

    @pytest.mark.asyncio
    async def test_get_result_not_found(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"found": False}))
        client = ResultClient(transport=transport)
        with pytest.raises(NotFound):
            await client.get_result("v3:abc")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(409, json={"error": "Conversation already active"})
        )
        client = ResultClient(transport=transport)
        with pytest.raises(DownstreamUnavailable, match="already active"):
            await client.start_conversation("v3:abc", "p", "m", 2)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = ResultClient(transport=httpx.MockTransport(handler))
        with pytest.raises(DownstreamUnavailable):
            await client.get_result("v3:abc")
        await client.aclose()


# ── Factory ─────────────────────────────────────────────────────────


class TestCreateProxy:
    @pytest.mark.asyncio
    async def test_registers_call_tools(self):
        config = Config(telnyx=TelnyxConfig(default_from_number=FROM))
        client = ResultClient()
        proxy = create_proxy(config, client)
        await client.aclose()

        assert proxy.tools.tool_names == ["call_and_speak", "call_and_converse", "check_call_result"]
        assert proxy.hidden_tools == {"dial_calls"}
        speak = proxy.tools.get("call_and_speak")
        assert "from" not in speak.parameters["required"]
