"""Tests for configuration schema validation."""

from callbridge.config.schema import (
    Config,
    LLMConfig,
    ProxyConfig,
    TelnyxConfig,
    TTSConfig,
    VoiceConfig,
)


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.voice.port == 3003
        assert config.llm.model == "openai/gpt-4o-mini"
        assert config.proxy.server_url == "http://localhost:3003"
        assert config.tts_enabled is False

    def test_tts_enabled_with_key(self):
        config = Config()
        config.tts.api_key = "xi-key"
        assert config.tts_enabled is True

    def test_tts_blank_key_is_disabled(self):
        config = Config()
        config.tts.api_key = "   "
        assert config.tts_enabled is False

    def test_subordinate_argv_adds_tool_flags(self):
        config = Config()
        assert config.get_subordinate_argv() == [
            "npx", "-y", "telnyx-mcp",
            "--tool", "dial_calls",
            "--tool", "list_call_control_applications",
            "--tool", "hangup_calls_actions",
        ]

    def test_subordinate_argv_does_not_mutate_command(self):
        config = Config()
        config.get_subordinate_argv()
        assert config.proxy.command == ["npx", "-y", "telnyx-mcp"]

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CALLBRIDGE_VOICE__PORT", "4555")
        monkeypatch.setenv("CALLBRIDGE_TELNYX__API_KEY", "KEY-env")
        config = Config()
        assert config.voice.port == 4555
        assert config.telnyx.api_key == "KEY-env"


class TestVoiceConfig:
    def test_timing_defaults(self):
        voice = VoiceConfig()
        assert voice.response_window_seconds == 8.0
        assert voice.silence_seconds == 2.5
        assert voice.hangup_grace_seconds == 1.5
        assert voice.retention_seconds == 300.0
        assert voice.default_max_turns == 10

    def test_transcription_off_by_default(self):
        voice = VoiceConfig()
        assert voice.always_transcribe is False
        assert voice.transcription_language == "en"


class TestProxyConfig:
    def test_dial_calls_is_hidden(self):
        proxy = ProxyConfig()
        assert "dial_calls" in proxy.tools
        assert proxy.hidden_tools == ["dial_calls"]

    def test_lists_are_not_shared(self):
        a = ProxyConfig()
        b = ProxyConfig()
        a.tools.append("extra")
        assert "extra" not in b.tools


class TestProviderSections:
    def test_telnyx_defaults(self):
        telnyx = TelnyxConfig()
        assert telnyx.api_key == ""
        assert telnyx.base_url == "https://api.telnyx.com/v2"

    def test_tts_defaults(self):
        tts = TTSConfig()
        assert tts.provider == "elevenlabs"
        assert tts.voice == ""
        assert tts.native_voice == "female"

    def test_llm_defaults(self):
        llm = LLMConfig()
        assert llm.api_base is None
        assert llm.max_tokens == 150
