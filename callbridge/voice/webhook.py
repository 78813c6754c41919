"""Voice webhook server for Telnyx call events.

Handles:
- POST /webhook: call-control events, always acknowledged with 200
- GET /call-result/{id}: result query used by check_call_result
- POST /start-conversation: conversation registration used by call_and_converse
- GET /health
"""

import hmac
import json

from loguru import logger
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .conversation import TurnEngine
from .dispatcher import WebhookDispatcher
from .store import CallResultStore
from .types import WebhookEvent

MAX_WEBHOOK_BODY_BYTES = 1024 * 1024


def _extract_api_key(request: Request) -> str | None:
    header = request.headers.get("Authorization", "").strip()
    if not header:
        return None
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return header


def _parse_max_turns(value) -> int | None:
    """None when absent; raises ValueError when present but not a positive integer."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ValueError("maxTurns must be a positive integer")
    return value


def create_voice_app(
    dispatcher: WebhookDispatcher,
    store: CallResultStore,
    engine: TurnEngine,
    api_key: str = "",
) -> Starlette:
    """Create the voice webhook Starlette application."""

    rejected_count = 0

    def _check_auth(request: Request) -> Response | None:
        nonlocal rejected_count

        if not api_key:
            return None

        provided = _extract_api_key(request)
        if provided is None:
            return JSONResponse({"error": "Missing API key"}, status_code=401)
        if not hmac.compare_digest(provided.encode("utf-8"), api_key.encode("utf-8")):
            rejected_count += 1
            logger.warning(
                f"Rejected request with bad API key: count={rejected_count} path={request.url.path} "
                f"client={request.client.host if request.client else 'unknown'}"
            )
            return JSONResponse({"error": "Invalid API key"}, status_code=403)
        return None

    async def handle_webhook(request: Request) -> Response:
        body = await request.body()
        if len(body) > MAX_WEBHOOK_BODY_BYTES:
            logger.warning(f"Webhook body too large ({len(body)} bytes), ignored")
            return Response(status_code=200)

        try:
            envelope = json.loads(body) if body else None
        except (ValueError, UnicodeDecodeError):
            logger.warning("Webhook body is not valid JSON, ignored")
            return Response(status_code=200)

        event = WebhookEvent.from_envelope(envelope)
        if event is None:
            data = envelope.get("data") if isinstance(envelope, dict) else None
            event_type = data.get("event_type") if isinstance(data, dict) else None
            logger.debug(f"Webhook ignored: {event_type or 'unrecognized envelope'}")
            return Response(status_code=200)

        logger.debug(f"Webhook {event.event_type.value} for {event.call_control_id}")
        dispatcher.submit(event)
        return Response(status_code=200)

    async def handle_call_result(request: Request) -> Response:
        error = _check_auth(request)
        if error:
            return error

        call_control_id = request.path_params["call_control_id"]
        return JSONResponse(store.snapshot(call_control_id))

    async def handle_start_conversation(request: Request) -> Response:
        error = _check_auth(request)
        if error:
            return error

        try:
            body = await request.json()
        except (ValueError, UnicodeDecodeError):
            return JSONResponse({"error": "Body must be JSON"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        call_control_id = body.get("callControlId")
        system_prompt = body.get("systemPrompt")
        initial_message = body.get("initialMessage")

        missing = [
            name
            for name, value in (
                ("callControlId", call_control_id),
                ("systemPrompt", system_prompt),
                ("initialMessage", initial_message),
            )
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            return JSONResponse(
                {"error": f"Missing required fields: {', '.join(missing)}"},
                status_code=400,
            )

        try:
            max_turns = _parse_max_turns(body.get("maxTurns"))
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            state = engine.register(call_control_id, system_prompt, initial_message, max_turns)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=409)

        return JSONResponse({
            "success": True,
            "call_control_id": state.call_control_id,
            "max_turns": state.max_turns,
        })

    async def health_check(request: Request) -> Response:
        return JSONResponse({
            "status": "ok",
            "service": "callbridge",
            "active_calls": dispatcher.active_calls,
            "conversations": len(engine),
        })

    routes = [
        Route("/webhook", handle_webhook, methods=["POST"]),
        Route("/call-result/{call_control_id}", handle_call_result, methods=["GET"]),
        Route("/start-conversation", handle_start_conversation, methods=["POST"]),
        Route("/health", health_check, methods=["GET"]),
    ]

    return Starlette(routes=routes)
