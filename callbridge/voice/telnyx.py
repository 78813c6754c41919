"""Telnyx Call Control REST client.

Only the primitives the webhook service needs: transcription, media
upload, playback, native speak and hangup. Dialing goes through the
subordinate tool provider, not through this client.
"""

from typing import Any

import httpx
from loguru import logger

from callbridge.errors import CallControlError


class TelnyxClient:
    """Thin async wrapper around the Telnyx v2 API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.telnyx.com/v2",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        action: str,
        path: str,
        json: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=json, **kwargs)
        except httpx.HTTPError as e:
            raise CallControlError(action, None, str(e)) from e

        if response.status_code >= 300:
            raise CallControlError(action, response.status_code, response.text[:300])

        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _call_action(self, call_control_id: str, action: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(action, f"/calls/{call_control_id}/actions/{action}", json=body)

    async def transcription_start(
        self,
        call_control_id: str,
        language: str = "en",
        tracks: str = "inbound",
    ) -> None:
        """Start real-time transcription; only the callee's audio by default."""
        await self._call_action(
            call_control_id,
            "transcription_start",
            {"language": language, "transcription_tracks": tracks},
        )
        logger.debug(f"Transcription started for {call_control_id}")

    async def upload_media(self, media_name: str, audio: bytes, content_type: str = "audio/mpeg") -> None:
        """Upload audio to Telnyx media storage as a multipart form."""
        await self._request(
            "media_upload",
            "/media",
            data={"media_name": media_name},
            files={"media": (media_name, audio, content_type)},
        )
        logger.debug(f"Uploaded {len(audio)} bytes as {media_name}")

    async def playback_start(self, call_control_id: str, media_name: str) -> None:
        await self._call_action(call_control_id, "playback_start", {"media_name": media_name})

    async def speak(
        self,
        call_control_id: str,
        text: str,
        voice: str = "female",
        language: str = "en-US",
    ) -> None:
        """Speak text with Telnyx's built-in TTS."""
        await self._call_action(
            call_control_id,
            "speak",
            {"payload": text, "voice": voice, "language": language},
        )

    async def hangup(self, call_control_id: str) -> None:
        await self._call_action(call_control_id, "hangup", {})
        logger.info(f"Call hung up: {call_control_id}")
