"""HTTP client for the webhook service's internal endpoints."""

from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from callbridge.errors import DownstreamUnavailable, NotFound


class ResultClient:
    """Queries call results and registers conversations."""

    def __init__(
        self,
        server_url: str = "http://localhost:3003",
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.server_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, action: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise DownstreamUnavailable(f"Failed to {action}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 300:
            detail = data.get("error") or response.text[:200]
            raise DownstreamUnavailable(f"Failed to {action}: {response.status_code} - {detail}")
        return data

    async def get_result(self, call_control_id: str) -> dict[str, Any]:
        """Fetch the recorded result for a call.

        Raises:
            NotFound: nothing has been observed for the call yet
            DownstreamUnavailable: the webhook service could not be reached
        """
        data = await self._send(
            "check call result",
            "GET",
            f"/call-result/{quote(call_control_id, safe='')}",
        )
        if not data.get("found"):
            raise NotFound(call_control_id)
        return data

    async def start_conversation(
        self,
        call_control_id: str,
        system_prompt: str,
        initial_message: str,
        max_turns: int,
    ) -> dict[str, Any]:
        """Register a conversation for a freshly dialed call."""
        data = await self._send(
            "register conversation",
            "POST",
            "/start-conversation",
            json={
                "callControlId": call_control_id,
                "systemPrompt": system_prompt,
                "initialMessage": initial_message,
                "maxTurns": max_turns,
            },
        )
        logger.info(f"Conversation registered for {call_control_id} (max_turns={max_turns})")
        return data
