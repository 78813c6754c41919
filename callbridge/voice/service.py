"""Voice service - wires the webhook components together and runs the server.

This is the main entry point for the webhook side. It builds the Telnyx
client, the synthesis pipeline, the turn engine, the result store and the
dispatcher from config, and serves the Starlette app with uvicorn.
"""

import asyncio

import uvicorn
from loguru import logger

from callbridge.config import Config
from callbridge.providers.litellm_provider import LiteLLMProvider
from .conversation import TurnEngine
from .dispatcher import WebhookDispatcher
from .store import CallResultStore
from .synthesis import SynthesisPipeline
from .telnyx import TelnyxClient
from .tts import create_tts_provider
from .webhook import create_voice_app


class VoiceService:
    """Webhook service for outbound calls.

    Provides:
    - Telnyx webhook handling (AMD, transcription, playback, hangup)
    - Multi-turn conversations driven by silence detection
    - The internal result and registration endpoints used by the proxy
    """

    def __init__(self, config: Config):
        self.config = config
        voice_cfg = config.voice

        if not config.telnyx.api_key:
            raise ValueError("No Telnyx API key configured (telnyx.apiKey)")

        self.call_control = TelnyxClient(
            api_key=config.telnyx.api_key,
            base_url=config.telnyx.base_url,
            timeout=config.telnyx.timeout_seconds,
        )

        # External TTS when a key is configured, Telnyx native speak otherwise
        tts = None
        if config.tts_enabled:
            tts = create_tts_provider(
                provider=config.tts.provider,
                api_key=config.tts.api_key,
                voice=config.tts.voice or None,
                model=config.tts.model or None,
            )
        self.synthesis = SynthesisPipeline(
            call_control=self.call_control,
            tts=tts,
            native_voice=config.tts.native_voice,
            native_language=config.tts.native_language,
        )

        self.provider = LiteLLMProvider(
            api_key=config.llm.api_key or None,
            api_base=config.llm.api_base,
            default_model=config.llm.model,
        )

        self.engine = TurnEngine(
            provider=self.provider,
            synthesis=self.synthesis,
            call_control=self.call_control,
            model=config.llm.model,
            silence_seconds=voice_cfg.silence_seconds,
            hangup_grace_seconds=voice_cfg.hangup_grace_seconds,
            max_tokens=config.llm.max_tokens,
            temperature=config.llm.temperature,
            default_max_turns=voice_cfg.default_max_turns,
            transcription_language=voice_cfg.transcription_language,
        )
        self.store = CallResultStore(retention_seconds=voice_cfg.retention_seconds)
        self.dispatcher = WebhookDispatcher(
            store=self.store,
            engine=self.engine,
            synthesis=self.synthesis,
            call_control=self.call_control,
            response_window_seconds=voice_cfg.response_window_seconds,
            always_transcribe=voice_cfg.always_transcribe,
            transcription_language=voice_cfg.transcription_language,
            default_message=voice_cfg.default_message,
        )
        self.app = create_voice_app(
            dispatcher=self.dispatcher,
            store=self.store,
            engine=self.engine,
            api_key=voice_cfg.api_key,
        )

        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    @property
    def server_task(self) -> asyncio.Task | None:
        return self._server_task

    async def start(self, host: str | None = None, port: int | None = None):
        """Start the webhook server in a background task.

        Args:
            host: Host to bind to (defaults to voice.host)
            port: Port to bind to (defaults to voice.port)
        """
        host = host or self.config.voice.host
        port = port or self.config.voice.port

        config = uvicorn.Config(
            app=self.app,
            host=host,
            port=port,
            log_level="warning",
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

        speech = "Telnyx native speak" if self.synthesis.uses_native_speech else self.config.tts.provider
        logger.info(f"Voice service started on {host}:{port} (speech: {speech})")

    async def stop(self):
        """Stop the voice service."""
        if self._server:
            self._server.should_exit = True

        if self._server_task:
            try:
                await asyncio.wait_for(self._server_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._server_task.cancel()

        await self.dispatcher.stop()
        self.store.close()
        await self.call_control.aclose()
        logger.info("Voice service stopped")
