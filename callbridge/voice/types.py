"""Voice system types and data structures."""

import asyncio
import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CallStatus(str, Enum):
    """Call lifecycle states. Only ever move forward."""
    RINGING = "ringing"          # Dialed, nothing observed yet
    IN_PROGRESS = "in_progress"  # Answered or AMD verdict received
    COMPLETED = "completed"      # Hangup received

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [CallStatus.RINGING, CallStatus.IN_PROGRESS, CallStatus.COMPLETED]


class AnsweredBy(str, Enum):
    """Who picked up, as reported by AMD or the transcript."""
    HUMAN = "human"
    MACHINE = "machine"
    NOT_SURE = "not_sure"
    UNKNOWN = "unknown"
    UNSET = "unset"

    @classmethod
    def parse(cls, value: Any) -> "AnsweredBy":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class EventType(str, Enum):
    """Webhook events the dispatcher reacts to."""
    MACHINE_DETECTION = "machine-detection-result"
    TRANSCRIPTION = "transcription-fragment"
    ANSWERED = "call-answered"
    PLAYBACK_FINISHED = "playback-finished"
    CALL_ENDED = "call-ended"
    # Internal: a conversation's silence deadline elapsed
    SILENCE_ELAPSED = "silence-elapsed"


# Telnyx event_type -> EventType
TELNYX_EVENTS: dict[str, EventType] = {
    "call.machine.detection.ended": EventType.MACHINE_DETECTION,
    "call.machine.premium.detection.ended": EventType.MACHINE_DETECTION,
    "call.transcription": EventType.TRANSCRIPTION,
    "call.answered": EventType.ANSWERED,
    "call.playback.ended": EventType.PLAYBACK_FINISHED,
    "call.speak.ended": EventType.PLAYBACK_FINISHED,
    "call.hangup": EventType.CALL_ENDED,
}


@dataclass
class WebhookEvent:
    """A single event for one call, normalized from the Telnyx envelope."""
    event_type: EventType
    call_control_id: str
    client_state: str | None = None
    result: str | None = None
    transcript: str = ""
    is_final: bool = True
    hangup_cause: str | None = None
    generation: int = 0  # Only used by SILENCE_ELAPSED

    @classmethod
    def from_envelope(cls, body: Any) -> "WebhookEvent | None":
        """Build an event from `{data: {event_type, payload: {...}}}`.

        Returns None for envelopes that carry nothing we act on.
        """
        if not isinstance(body, dict):
            return None
        data = body.get("data")
        if not isinstance(data, dict):
            return None

        event_type = TELNYX_EVENTS.get(data.get("event_type", ""))
        payload = data.get("payload") or {}
        if event_type is None or not isinstance(payload, dict):
            return None

        call_control_id = payload.get("call_control_id")
        if not call_control_id:
            return None

        transcription = payload.get("transcription_data") or {}
        if not isinstance(transcription, dict):
            transcription = {}

        return cls(
            event_type=event_type,
            call_control_id=str(call_control_id),
            client_state=payload.get("client_state"),
            result=payload.get("result"),
            transcript=str(transcription.get("transcript") or ""),
            is_final=transcription.get("is_final", True) is not False,
            hangup_cause=payload.get("hangup_cause"),
        )


@dataclass
class CallSession:
    """Everything observed about one call, kept until the retention window expires."""
    call_control_id: str
    status: CallStatus = CallStatus.RINGING
    answered_by: AnsweredBy = AnsweredBy.UNSET
    hangup_cause: str | None = None
    transcript_buffer: str = ""
    final_transcript: dict[str, str] | None = None
    conversation: list[dict[str, str]] | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    def advance(self, status: CallStatus) -> bool:
        """Move to `status` if it is ahead of the current one."""
        if status.rank <= self.status.rank:
            return False
        self.status = status
        return True

    def append_transcript(self, text: str) -> None:
        text = text.strip()
        if text:
            self.transcript_buffer = f"{self.transcript_buffer} {text}".strip()

    def to_result(self) -> dict[str, Any]:
        """Query view for /call-result."""
        if self.status == CallStatus.RINGING:
            return {"found": False}

        result: dict[str, Any] = {
            "found": True,
            "call_control_id": self.call_control_id,
            "status": self.status.value,
            "answered_by": self.answered_by.value,
        }
        if self.hangup_cause:
            result["hangup_cause"] = self.hangup_cause
        if self.final_transcript:
            result["transcription"] = dict(self.final_transcript)
        if self.conversation is not None:
            result["conversation"] = [dict(turn) for turn in self.conversation]
        if self.completed_at:
            result["completed_at"] = _iso(self.completed_at)
        return result


class ConversationPhase(str, Enum):
    """Turn engine states."""
    AWAITING_ANSWER = "awaiting_answer"
    SPEAKING_INITIAL = "speaking_initial"
    LISTENING = "listening"
    SPEAKING_REPLY = "speaking_reply"
    SPEAKING_GOODBYE = "speaking_goodbye"
    ENDED = "ended"


@dataclass
class Turn:
    """One utterance in a conversation."""
    role: str  # "user" or "assistant"
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "text": self.text}


@dataclass
class ConversationState:
    """State for a multi-turn call, owned by the turn engine."""
    call_control_id: str
    system_prompt: str
    initial_message: str
    max_turns: int
    turns: list[Turn] = field(default_factory=list)
    turn_count: int = 0
    pending_fragment: str = ""
    silence_deadline: asyncio.TimerHandle | None = None
    silence_generation: int = 0
    is_speaking: bool = False
    terminal: bool = False
    phase: ConversationPhase = ConversationPhase.AWAITING_ANSWER
    created_at: float = field(default_factory=time.time)

    def add_turn(self, role: str, text: str) -> None:
        self.turns.append(Turn(role=role, text=text))

    def cancel_deadline(self) -> None:
        if self.silence_deadline is not None:
            self.silence_deadline.cancel()
            self.silence_deadline = None

    def to_messages(self) -> list[dict[str, str]]:
        """Chat history in LLM format, system prompt first."""
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend({"role": t.role, "content": t.text} for t in self.turns)
        return messages


def encode_client_state(message: str) -> str:
    """Encode the message to speak as an opaque Telnyx client_state token."""
    return base64.b64encode(json.dumps({"message": message}).encode("utf-8")).decode("ascii")


def decode_client_state(token: str | None, default: str) -> str:
    """Decode a client_state token back to its message, or `default`."""
    if not token:
        return default
    try:
        data = json.loads(base64.b64decode(token, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return default
    if isinstance(data, dict) and isinstance(data.get("message"), str) and data["message"].strip():
        return data["message"]
    return default


def _iso(timestamp: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(timestamp))
