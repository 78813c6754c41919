"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TelnyxConfig(BaseModel):
    """Telnyx call-control configuration."""
    api_key: str = ""
    base_url: str = "https://api.telnyx.com/v2"
    default_from_number: str = ""  # Used when a tool call omits "from"
    public_key: str = ""  # Webhook signing key (not verified yet)
    timeout_seconds: float = 30.0


class TTSConfig(BaseModel):
    """Speech synthesis configuration.

    Leaving api_key empty makes the service fall back to Telnyx's
    built-in speak action.
    """
    provider: str = "elevenlabs"  # elevenlabs or openai
    api_key: str = ""
    voice: str = ""  # Provider default when empty (ElevenLabs: Sarah)
    model: str = ""
    native_voice: str = "female"
    native_language: str = "en-US"


class LLMConfig(BaseModel):
    """Language model used for conversation turns."""
    api_key: str = ""
    api_base: str | None = None
    model: str = "openai/gpt-4o-mini"
    max_tokens: int = 150
    temperature: float = 0.7


class VoiceConfig(BaseModel):
    """Webhook service and call orchestration settings."""
    host: str = "0.0.0.0"
    port: int = 3003
    api_key: str = ""  # Guards /call-result and /start-conversation when set
    always_transcribe: bool = False  # Transcribe single-turn calls for voicemail detection
    transcription_language: str = "en"
    response_window_seconds: float = 8.0
    silence_seconds: float = 2.5
    hangup_grace_seconds: float = 1.5
    retention_seconds: float = 300.0  # 5 minutes
    default_message: str = "Hello, this is a call from your AI assistant."
    default_max_turns: int = 10


class ProxyConfig(BaseModel):
    """Protocol proxy configuration."""
    server_url: str = "http://localhost:3003"
    command: list[str] = Field(default_factory=lambda: ["npx", "-y", "telnyx-mcp"])
    tools: list[str] = Field(default_factory=lambda: [
        "dial_calls",
        "list_call_control_applications",
        "hangup_calls_actions",
    ])
    hidden_tools: list[str] = Field(default_factory=lambda: ["dial_calls"])
    request_timeout_seconds: float = 30.0


class Config(BaseSettings):
    """Root configuration for callbridge."""
    telnyx: TelnyxConfig = Field(default_factory=TelnyxConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)

    model_config = SettingsConfigDict(
        env_prefix="CALLBRIDGE_",
        env_nested_delimiter="__",
    )

    @property
    def tts_enabled(self) -> bool:
        """Whether an external TTS provider is configured."""
        return bool(self.tts.api_key.strip())

    def get_subordinate_argv(self) -> list[str]:
        """Command line for the subordinate tool provider, with its tool allow-list."""
        argv = list(self.proxy.command)
        for tool in self.proxy.tools:
            argv.extend(["--tool", tool])
        return argv
