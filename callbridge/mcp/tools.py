"""Synthetic tools served by the protocol proxy.

These tools do not exist on the subordinate tool provider. They are
handled locally and call back into the subordinate (dial_calls) and the
webhook service's internal endpoints.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Protocol

from loguru import logger

from callbridge.errors import CallBridgeError, DownstreamUnavailable, InvalidArgument, NotFound
from callbridge.voice.types import encode_client_state
from .client import ResultClient

DIAL_TOOL = "dial_calls"
AMD_MODE = "detect_beep"  # Wait for the voicemail beep so the message lands on the recording


class Subordinate(Protocol):
    """What the tools need from the proxy."""

    async def call_child_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        ...


def tool_result(payload: Any) -> dict[str, Any]:
    """Successful tool result with a JSON text body."""
    return {"content": [{"type": "text", "text": json.dumps(payload, indent=2)}]}


def error_result(message: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": f"Error: {message}"}], "isError": True}


def result_text(result: dict[str, Any]) -> str:
    """First text block of a tool result, or an empty string."""
    content = result.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text")
        if isinstance(text, str):
            return text
    return ""


def extract_call_control_id(result: dict[str, Any]) -> str | None:
    """Pull data.call_control_id out of a dial_calls result, if present."""
    try:
        parsed = json.loads(result_text(result))
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    data = parsed.get("data")
    if not isinstance(data, dict):
        return None
    call_control_id = data.get("call_control_id")
    return str(call_control_id) if call_control_id else None


class Tool(ABC):
    """Base class for synthetic tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the tool arguments."""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Run the tool and return a JSON-serializable payload.

        Raises:
            CallBridgeError: turned into an error result by the registry
        """
        pass

    def to_schema(self) -> dict[str, Any]:
        """Tool descriptor as listed by tools/list."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.parameters,
        }


class SyntheticToolRegistry:
    """
    Registry for synthetic tools.

    Validates arguments and converts tool errors into error results, so a
    failing tool never becomes a protocol-level error.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    def validate_tool_call(self, name: str, params: Any) -> None:
        """Check required arguments are present and non-blank.

        Raises:
            InvalidArgument: unknown tool, non-object arguments or missing fields
        """
        tool = self._tools.get(name)
        if not tool:
            raise InvalidArgument(f"Tool '{name}' not found")
        if not isinstance(params, dict):
            raise InvalidArgument(f"Invalid arguments for tool '{name}'")

        missing: list[str] = []
        for key in tool.parameters.get("required", []):
            value = params.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(key)

        if missing:
            raise InvalidArgument(f"Missing required parameter(s) for '{name}': {', '.join(missing)}")

    async def execute(self, name: str, params: Any) -> dict[str, Any]:
        """Run a tool and return its MCP result."""
        try:
            self.validate_tool_call(name, params)
            payload = await self._tools[name].execute(**params)
        except CallBridgeError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return error_result(str(e))
        except Exception as e:
            logger.exception(f"Tool {name} crashed: {e}")
            return error_result(f"{name} failed: {e}")
        return tool_result(payload)


# ── Call tools ──────────────────────────────────────────────────────


_CONNECTION_ID = {
    "type": "string",
    "description": "The ID of the Call Control App to use for the call",
}
_TO = {
    "type": "string",
    "description": "The destination phone number in E.164 format (e.g., +15551234567)",
}
_FROM = {
    "type": "string",
    "description": "The Telnyx phone number to call from in E.164 format",
}


class _DialTool(Tool):
    """Shared dialing for the call tools."""

    def __init__(self, subordinate: Subordinate, default_from: str = ""):
        self.subordinate = subordinate
        self.default_from = default_from

    def _required(self, *fields: str) -> list[str]:
        required = ["connection_id", "to"]
        if not self.default_from:
            required.append("from")
        return required + list(fields)

    def _from_number(self, kwargs: dict[str, Any]) -> str:
        from_number = kwargs.get("from") or self.default_from
        if not from_number:
            raise InvalidArgument("Missing required parameter: from")
        return from_number

    async def _dial(self, arguments: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
        result = await self.subordinate.call_child_tool(DIAL_TOOL, arguments)
        if result.get("isError"):
            raise DownstreamUnavailable(result_text(result) or f"{DIAL_TOOL} failed")

        call_control_id = extract_call_control_id(result)
        if call_control_id:
            logger.info(f"Dialed {arguments['to']}: {call_control_id}")
        else:
            logger.warning(f"Dialed {arguments['to']} but no call_control_id in the response")
        return call_control_id, result


class CallAndSpeakTool(_DialTool):
    """Dial a number and speak a message once it is answered."""

    @property
    def name(self) -> str:
        return "call_and_speak"

    @property
    def description(self) -> str:
        return """Make an outbound phone call and automatically speak a message when answered.

Uses Answering Machine Detection (AMD) to tell a human from voicemail. The
message is spoken either way; use check_call_result afterwards to see who
answered and what they said.

Example: to call someone and say "Hello, this is your reminder!", use:
- connection_id: your Call Control App ID
- to: "+15551234567"
- from: "+15559876543" (your Telnyx number)
- message: "Hello, this is your reminder!\""""

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "connection_id": _CONNECTION_ID,
                "to": _TO,
                "from": _FROM,
                "message": {
                    "type": "string",
                    "description": "The message to speak when the call is answered",
                },
            },
            "required": self._required("message"),
        }

    async def execute(self, connection_id: str, to: str, message: str, **kwargs: Any) -> dict[str, Any]:
        call_control_id, dial_response = await self._dial({
            "connection_id": connection_id,
            "to": to,
            "from": self._from_number(kwargs),
            "client_state": encode_client_state(message),
            "answering_machine_detection": AMD_MODE,
        })

        return {
            "success": True,
            "message": f'Call initiated to {to}. The message "{message}" will be spoken when the call is answered.',
            "call_control_id": call_control_id,
            "tip": (
                "Use check_call_result with this call_control_id after ~30 seconds to see "
                "if a human answered or it went to voicemail."
                if call_control_id else None
            ),
            "dial_response": dial_response,
        }


class CallAndConverseTool(_DialTool):
    """Dial a number and hold an LLM-driven conversation."""

    def __init__(
        self,
        subordinate: Subordinate,
        results: ResultClient,
        default_from: str = "",
        default_max_turns: int = 10,
    ):
        super().__init__(subordinate, default_from)
        self.results = results
        self.default_max_turns = default_max_turns

    @property
    def name(self) -> str:
        return "call_and_converse"

    @property
    def description(self) -> str:
        return f"""Make an outbound phone call and hold a multi-turn spoken conversation.

The initial message is spoken when the call is answered. After that, each
time the callee stops talking an AI reply is generated from the system
prompt and the conversation so far, and spoken back. After max_turns
callee turns (default {self.default_max_turns}) a short goodbye is spoken
and the call is hung up.

Use check_call_result afterwards to read the full conversation."""

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "connection_id": _CONNECTION_ID,
                "to": _TO,
                "from": _FROM,
                "system_prompt": {
                    "type": "string",
                    "description": "Instructions for the AI voice: who it is, what the call is about",
                },
                "initial_message": {
                    "type": "string",
                    "description": "First thing said when the call is answered",
                },
                "max_turns": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "How many times the callee may speak before the call wraps up",
                },
            },
            "required": self._required("system_prompt", "initial_message"),
        }

    def _max_turns(self, value: Any) -> int:
        if value is None:
            return self.default_max_turns
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidArgument("max_turns must be a positive integer")
        return value

    async def execute(
        self,
        connection_id: str,
        to: str,
        system_prompt: str,
        initial_message: str,
        max_turns: Any = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        turns = self._max_turns(max_turns)
        call_control_id, dial_response = await self._dial({
            "connection_id": connection_id,
            "to": to,
            "from": self._from_number(kwargs),
        })

        if not call_control_id:
            raise DownstreamUnavailable(
                "Call was dialed but no call_control_id was returned; the conversation could not be set up"
            )

        try:
            await self.results.start_conversation(call_control_id, system_prompt, initial_message, turns)
        except DownstreamUnavailable as e:
            # The call is already ringing and will play nothing on answer
            raise DownstreamUnavailable(
                f"Call {call_control_id} was dialed but the conversation could not be registered: {e}"
            ) from e

        return {
            "success": True,
            "message": f"Call initiated to {to}. The conversation starts when the call is answered.",
            "call_control_id": call_control_id,
            "max_turns": turns,
            "tip": "Use check_call_result with this call_control_id once the call has ended to read the conversation.",
            "dial_response": dial_response,
        }


class CheckCallResultTool(Tool):
    """Look up what happened on a call."""

    def __init__(self, results: ResultClient):
        self.results = results

    @property
    def name(self) -> str:
        return "check_call_result"

    @property
    def description(self) -> str:
        return """Check whether a call was answered by a human or went to voicemail.

Use this after call_and_speak or call_and_converse. Wait at least 30
seconds after placing the call before checking.

Returns:
- answered_by: 'human', 'machine' (voicemail), or 'not_sure'/'unknown'
- status: 'in_progress' while the call is active, 'completed' once it ended
- hangup_cause: why the call ended (when completed)
- transcription: what the callee said, with the voicemail verdict
- conversation: the full exchange (call_and_converse only)"""

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "call_control_id": {
                    "type": "string",
                    "description": "The call_control_id returned when the call was placed",
                },
            },
            "required": ["call_control_id"],
        }

    async def execute(self, call_control_id: str, **kwargs: Any) -> dict[str, Any]:
        try:
            result = await self.results.get_result(call_control_id)
        except NotFound:
            return {
                "found": False,
                "message": (
                    "Call not found. It may still be ringing, or the call_control_id is "
                    "incorrect. Try again in a few seconds."
                ),
            }

        answered_by = result.get("answered_by")
        if answered_by == "human":
            interpretation = "A human answered the call."
        elif answered_by == "machine":
            interpretation = "The call went to voicemail."
        else:
            interpretation = "Could not determine if human or voicemail."

        return {**result, "interpretation": interpretation}
