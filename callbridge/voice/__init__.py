"""Webhook-driven call orchestration for callbridge.

Receives Telnyx call events, tracks per-call results, speaks messages and
runs multi-turn conversations.
"""

from .types import AnsweredBy, CallSession, CallStatus, ConversationState, EventType, WebhookEvent
from .classifier import classify_transcript, is_voicemail
from .store import CallResultStore
from .synthesis import SynthesisPipeline
from .conversation import TurnEngine
from .dispatcher import WebhookDispatcher
from .telnyx import TelnyxClient
from .tts import TTSProvider, create_tts_provider
from .webhook import create_voice_app
from .service import VoiceService

__all__ = [
    # Types
    "AnsweredBy",
    "CallSession",
    "CallStatus",
    "ConversationState",
    "EventType",
    "WebhookEvent",
    # Core
    "CallResultStore",
    "TurnEngine",
    "WebhookDispatcher",
    "VoiceService",
    "classify_transcript",
    "is_voicemail",
    # Speech
    "SynthesisPipeline",
    "TTSProvider",
    "create_tts_provider",
    # Telnyx
    "TelnyxClient",
    "create_voice_app",
]
