"""Protocol proxy - JSON-RPC relay in front of the subordinate tool provider.

Sits between an MCP client (our stdin/stdout) and the subordinate process
(its stdin/stdout):

- Forwarded requests get a fresh id from a range the client never uses,
  restored on the way back
- tools/list is merged: synthetic tools first, then the subordinate's
  tools minus the hidden ones
- Synthetic tool calls are handled locally, each in its own task
"""

import asyncio
import itertools
import json
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from callbridge.config import Config
from callbridge.errors import DownstreamUnavailable
from .client import ResultClient
from .tools import (
    CallAndConverseTool,
    CallAndSpeakTool,
    CheckCallResultTool,
    SyntheticToolRegistry,
    error_result,
)

PROXY_ID_BASE = 1_000_000  # Proxy-issued ids start here
STREAM_LIMIT = 16 * 1024 * 1024  # Max bytes per line on either stream
INTERNAL_ERROR = -32603

MessageSink = Callable[[dict[str, Any]], Awaitable[None]]
ResponseCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class PendingRequest:
    """A request the proxy sent to the subordinate and still awaits."""
    original_id: Any
    callback: ResponseCallback | None = None


class ProtocolProxy:
    """Relays messages between the client and the subordinate process."""

    def __init__(
        self,
        tools: SyntheticToolRegistry,
        hidden_tools: list[str] | tuple[str, ...] = (),
        client_sink: MessageSink | None = None,
        request_timeout: float = 30.0,
    ):
        self.tools = tools
        self.hidden_tools = set(hidden_tools)
        self.request_timeout = request_timeout
        self._client_sink = client_sink
        self._child_sink: MessageSink | None = None
        self._pending: dict[int, PendingRequest] = {}
        self._ids = itertools.count(PROXY_ID_BASE)
        self._tasks: set[asyncio.Task] = set()

    def attach_client(self, sink: MessageSink) -> None:
        self._client_sink = sink

    def attach_child(self, sink: MessageSink) -> None:
        self._child_sink = sink

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Sending ─────────────────────────────────────────────────────

    async def send_to_client(self, message: dict[str, Any]) -> None:
        if self._client_sink is None:
            logger.warning("No client attached, dropping message")
            return
        await self._client_sink(message)

    async def send_to_child(self, message: dict[str, Any]) -> None:
        if self._child_sink is None:
            raise DownstreamUnavailable("Subordinate tool provider is not running")
        await self._child_sink(message)

    def _issue(self, original_id: Any, callback: ResponseCallback | None = None) -> int:
        request_id = next(self._ids)
        self._pending[request_id] = PendingRequest(original_id=original_id, callback=callback)
        return request_id

    async def _forward(self, message: dict[str, Any], callback: ResponseCallback | None = None) -> None:
        request_id = self._issue(message["id"], callback)
        try:
            await self.send_to_child({**message, "id": request_id})
        except DownstreamUnavailable as e:
            self._pending.pop(request_id, None)
            await self.send_to_client(_error_response(message["id"], str(e)))

    # ── Client side ─────────────────────────────────────────────────

    async def handle_client_line(self, line: str) -> None:
        """Handle one line read from the client."""
        message = _parse(line, "client")
        if message is None:
            return

        method = message.get("method")
        if method is None or "id" not in message:
            # Notifications and responses to subordinate-initiated requests
            await self._send_to_child_or_log(message)
            return

        if method == "tools/list":
            original_id = message["id"]
            params = message.get("params")
            # Synthetic tools go on the first page only
            first_page = not (isinstance(params, dict) and params.get("cursor"))

            async def merge(response: dict[str, Any]) -> None:
                await self._reply_tools_list(original_id, response, first_page)

            await self._forward(message, merge)
            return

        if method == "tools/call":
            params = message.get("params")
            name = params.get("name") if isinstance(params, dict) else None
            if not isinstance(name, str):
                name = None
            if self.tools.has(name):
                self._spawn(self._run_synthetic(message["id"], name, params.get("arguments")))
                return
            if name in self.hidden_tools:
                logger.warning(f"Client called hidden tool {name}, rejected")
                await self.send_to_client({
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "result": error_result(f"Tool '{name}' is not available"),
                })
                return

        await self._forward(message)

    async def _send_to_child_or_log(self, message: dict[str, Any]) -> None:
        try:
            await self.send_to_child(message)
        except DownstreamUnavailable as e:
            logger.warning(f"Dropped client message: {e}")

    def merge_tools(self, child_tools: list[Any], include_synthetic: bool = True) -> list[dict[str, Any]]:
        """Synthetic tools first, then visible subordinate tools, no duplicate names.

        Later pages of a paginated listing pass include_synthetic=False; names
        that clash with synthetic tools are still dropped there.
        """
        synthetic = self.tools.definitions()
        merged = synthetic if include_synthetic else []
        seen = {tool["name"] for tool in synthetic}
        for tool in child_tools:
            if not isinstance(tool, dict):
                continue
            name = tool.get("name")
            if not isinstance(name, str) or name in self.hidden_tools or name in seen:
                continue
            seen.add(name)
            merged.append(tool)
        return merged

    async def _reply_tools_list(
        self,
        original_id: Any,
        response: dict[str, Any],
        first_page: bool = True,
    ) -> None:
        result = response.get("result")
        if isinstance(result, dict) and isinstance(result.get("tools"), list):
            await self.send_to_client({
                "jsonrpc": "2.0",
                "id": original_id,
                "result": {**result, "tools": self.merge_tools(result["tools"], first_page)},
            })
        else:
            await self.send_to_client({**response, "id": original_id})

    async def _run_synthetic(self, request_id: Any, name: str, arguments: Any) -> None:
        logger.info(f"Synthetic tool call: {name}")
        result = await self.tools.execute(name, arguments if arguments is not None else {})
        await self.send_to_client({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Subordinate side ────────────────────────────────────────────

    async def handle_child_line(self, line: str) -> None:
        """Handle one line read from the subordinate."""
        message = _parse(line, "subordinate")
        if message is None:
            return

        request_id = message.get("id")
        pending = None
        if "method" not in message and isinstance(request_id, int):
            pending = self._pending.pop(request_id, None)
            if pending is None and request_id >= PROXY_ID_BASE:
                # Ours, but already answered, timed out or failed
                logger.warning(f"Late response to proxy request {request_id} dropped")
                return

        if pending is None:
            await self.send_to_client(message)
        elif pending.callback is not None:
            await pending.callback(message)
        else:
            await self.send_to_client({**message, "id": pending.original_id})

    async def request_child(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Send our own request to the subordinate and wait for its response.

        Raises:
            DownstreamUnavailable: not running, write failed, or no response in time
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        async def resolve(response: dict[str, Any]) -> None:
            if not future.done():
                future.set_result(response)

        request_id = self._issue(None, resolve)
        try:
            await self.send_to_child({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            })
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise DownstreamUnavailable(f"No response to {method} after {self.request_timeout:.0f}s")
        finally:
            self._pending.pop(request_id, None)

    async def call_child_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a subordinate tool and return its result object."""
        response = await self.request_child("tools/call", {"name": name, "arguments": arguments})
        error = response.get("error")
        if error is not None:
            detail = error.get("message") if isinstance(error, dict) else error
            raise DownstreamUnavailable(f"{name} failed: {detail}")

        result = response.get("result")
        if not isinstance(result, dict):
            raise DownstreamUnavailable(f"{name} returned no result")
        return result

    async def fail_pending(self, reason: str) -> None:
        """Answer every outstanding request with an error (subordinate gone)."""
        pending, self._pending = self._pending, {}
        for request_id, request in pending.items():
            if request.callback is not None:
                await request.callback(_error_response(request_id, reason))
            else:
                await self.send_to_client(_error_response(request.original_id, reason))
        if pending:
            logger.warning(f"Failed {len(pending)} pending request(s): {reason}")

    # ── Process ─────────────────────────────────────────────────────

    async def run(self, argv: list[str]) -> int:
        """Spawn the subordinate and relay until either side closes.

        Returns:
            The subordinate's exit code
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise DownstreamUnavailable(f"Command '{argv[0]}' not found")

        logger.info(f"Subordinate started (pid {process.pid}): {' '.join(argv)}")
        self.attach_child(_ChildSink(process.stdin))
        if self._client_sink is None:
            self.attach_client(_stdout_sink)

        stdin_reader = await _open_stdin()
        client_pump = asyncio.create_task(_pump(stdin_reader, self.handle_client_line, "client"))
        child_pump = asyncio.create_task(_pump(process.stdout, self.handle_child_line, "subordinate"))

        try:
            await asyncio.wait({client_pump, child_pump}, return_when=asyncio.FIRST_COMPLETED)
            if client_pump.done():
                logger.info("Client closed stdin, stopping subordinate")
                if process.returncode is None:
                    process.terminate()
        finally:
            tasks = [client_pump, child_pump, *self._tasks]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._child_sink = None
            await self.fail_pending("Subordinate tool provider exited")

        code = await process.wait()
        logger.info(f"Subordinate exited with code {code}")
        return code


class _ChildSink:
    """Writes messages to the subordinate's stdin, one line each."""

    def __init__(self, stream: asyncio.StreamWriter):
        self.stream = stream
        self._lock = asyncio.Lock()

    async def __call__(self, message: dict[str, Any]) -> None:
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._lock:
            try:
                self.stream.write(data)
                await self.stream.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise DownstreamUnavailable(f"Subordinate stdin closed: {e}") from e


async def _stdout_sink(message: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(message, ensure_ascii=False) + "\n")
    sys.stdout.flush()


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _pump(reader: asyncio.StreamReader, handler: Callable[[str], Awaitable[None]], side: str) -> None:
    while True:
        try:
            raw = await reader.readline()
        except ValueError as e:
            logger.error(f"Oversized line from {side} skipped: {e}")
            continue
        if not raw:
            logger.debug(f"{side} stream closed")
            return

        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            await handler(line)
        except Exception as e:
            logger.exception(f"Error handling {side} message: {e}")


def _parse(line: str, side: str) -> dict[str, Any] | None:
    try:
        message = json.loads(line)
    except ValueError as e:
        logger.error(f"Malformed JSON from {side} skipped: {e}")
        return None
    if not isinstance(message, dict):
        logger.error(f"Non-object message from {side} skipped: {line[:200]}")
        return None
    return message


def _error_response(request_id: Any, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": INTERNAL_ERROR, "message": message},
    }


def create_proxy(config: Config, results: ResultClient) -> ProtocolProxy:
    """Build a proxy with the call tools registered."""
    registry = SyntheticToolRegistry()
    proxy = ProtocolProxy(
        tools=registry,
        hidden_tools=config.proxy.hidden_tools,
        request_timeout=config.proxy.request_timeout_seconds,
    )
    default_from = config.telnyx.default_from_number
    registry.register(CallAndSpeakTool(proxy, default_from=default_from))
    registry.register(CallAndConverseTool(
        proxy,
        results,
        default_from=default_from,
        default_max_turns=config.voice.default_max_turns,
    ))
    registry.register(CheckCallResultTool(results))
    return proxy
