"""Speak text on a live call: TTS -> media upload -> playback."""

import itertools
import time

from loguru import logger

from callbridge.errors import CallControlError, SynthesisFailed
from .telnyx import TelnyxClient
from .tts import TTSProvider


class SynthesisPipeline:
    """Turns text into audio played on a call.

    With a TTS provider the text is synthesized externally, uploaded to
    Telnyx media storage and played back. Without one, Telnyx's native
    speak action is used instead. Either way playback completion arrives
    later as a webhook event.
    """

    def __init__(
        self,
        call_control: TelnyxClient,
        tts: TTSProvider | None = None,
        native_voice: str = "female",
        native_language: str = "en-US",
    ):
        self.call_control = call_control
        self.tts = tts
        self.native_voice = native_voice
        self.native_language = native_language
        self._sequence = itertools.count(1)

    @property
    def uses_native_speech(self) -> bool:
        return self.tts is None

    async def speak(self, call_control_id: str, text: str) -> None:
        """Start speaking `text` on the call.

        Raises:
            SynthesisFailed: with the failing stage (tts, upload, playback, speak)
        """
        if self.tts is None:
            await self._speak_native(call_control_id, text)
            return

        try:
            audio = await self.tts.synthesize(text)
        except SynthesisFailed:
            raise
        except Exception as e:
            raise SynthesisFailed("tts", None, str(e)) from e
        logger.info(f"Generated {len(audio)} bytes of audio for {call_control_id}")

        media_name = self._media_name(call_control_id)
        try:
            await self.call_control.upload_media(media_name, audio, self.tts.media_type)
        except CallControlError as e:
            raise SynthesisFailed("upload", e.status_code, e.detail) from e

        try:
            await self.call_control.playback_start(call_control_id, media_name)
        except CallControlError as e:
            raise SynthesisFailed("playback", e.status_code, e.detail) from e

        logger.info(f"Playback started on {call_control_id}: {media_name}")

    async def _speak_native(self, call_control_id: str, text: str) -> None:
        try:
            await self.call_control.speak(
                call_control_id,
                text,
                voice=self.native_voice,
                language=self.native_language,
            )
        except CallControlError as e:
            raise SynthesisFailed("speak", e.status_code, e.detail) from e
        logger.info(f"Native speak sent on {call_control_id}")

    def _media_name(self, call_control_id: str) -> str:
        # Telnyx media names must be unique per account
        prefix = "".join(ch for ch in call_control_id if ch.isalnum())[:12]
        extension = self.tts.file_extension if self.tts else "mp3"
        return f"callbridge-{prefix}-{int(time.time() * 1000)}-{next(self._sequence)}.{extension}"
