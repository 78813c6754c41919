"""Text-to-Speech providers for voice calls."""

from abc import ABC, abstractmethod

import httpx

from callbridge.errors import SynthesisFailed


class TTSProvider(ABC):
    """Abstract base class for TTS providers."""

    @property
    @abstractmethod
    def media_type(self) -> str:
        """MIME type of the synthesized audio."""
        pass

    @property
    def file_extension(self) -> str:
        return "mp3"

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Convert text to speech.

        Args:
            text: Text to synthesize

        Returns:
            Encoded audio bytes ready to upload as a media file

        Raises:
            SynthesisFailed: stage "tts" on any provider error
        """
        pass


class ElevenLabsTTS(TTSProvider):
    """ElevenLabs TTS provider producing MP3 for Telnyx playback."""

    def __init__(
        self,
        api_key: str,
        voice_id: str = "EXAVITQu4vr4xnSDxMaL",  # Sarah
        model_id: str = "eleven_turbo_v2_5",
        output_format: str = "mp3_44100_128",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.output_format = output_format
        self.base_url = "https://api.elevenlabs.io"
        self._transport = transport

    @property
    def media_type(self) -> str:
        return "audio/mpeg"

    async def synthesize(self, text: str) -> bytes:
        """Synthesize text to speech using ElevenLabs API."""
        url = f"{self.base_url}/v1/text-to-speech/{self.voice_id}"

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={
                        "xi-api-key": self.api_key,
                        "Content-Type": "application/json",
                    },
                    params={"output_format": self.output_format},
                    json={
                        "text": text,
                        "model_id": self.model_id,
                        "voice_settings": {
                            "stability": 0.5,
                            "similarity_boost": 0.75,
                        },
                    },
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            raise SynthesisFailed("tts", None, f"ElevenLabs request failed: {e}") from e

        if response.status_code != 200:
            raise SynthesisFailed("tts", response.status_code, f"ElevenLabs: {response.text[:200]}")
        if not response.content:
            raise SynthesisFailed("tts", response.status_code, "ElevenLabs returned no audio")

        return response.content


class OpenAITTS(TTSProvider):
    """OpenAI TTS provider."""

    def __init__(
        self,
        api_key: str,
        voice: str = "nova",
        model: str = "tts-1",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.voice = voice
        self.model = model
        self.base_url = "https://api.openai.com/v1"
        self._transport = transport

    @property
    def media_type(self) -> str:
        return "audio/mpeg"

    async def synthesize(self, text: str) -> bytes:
        """Synthesize text using OpenAI TTS API."""
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/audio/speech",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "input": text,
                        "voice": self.voice,
                        "response_format": "mp3",
                    },
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            raise SynthesisFailed("tts", None, f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            raise SynthesisFailed("tts", response.status_code, f"OpenAI: {response.text[:200]}")

        return response.content


def create_tts_provider(
    provider: str,
    api_key: str,
    voice: str | None = None,
    model: str | None = None,
) -> TTSProvider:
    """Factory function to create TTS provider.

    Args:
        provider: Provider name (elevenlabs, openai)
        api_key: API key for the provider
        voice: Voice ID or name (provider-specific)
        model: Model ID (provider-specific)

    Returns:
        TTS provider instance
    """
    providers = {
        "elevenlabs": lambda: ElevenLabsTTS(
            api_key,
            voice_id=voice or "EXAVITQu4vr4xnSDxMaL",
            model_id=model or "eleven_turbo_v2_5",
        ),
        "openai": lambda: OpenAITTS(
            api_key,
            voice=voice or "nova",
            model=model or "tts-1",
        ),
    }

    if provider not in providers:
        raise ValueError(f"Unknown TTS provider: {provider}. Choose from: {list(providers.keys())}")

    return providers[provider]()
