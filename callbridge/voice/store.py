"""In-memory, TTL-bounded store of per-call results."""

import asyncio
import time
from typing import Any

from loguru import logger

from .classifier import classify_transcript
from .types import AnsweredBy, CallSession, CallStatus, Turn


class CallResultStore:
    """Per-call sessions keyed by call_control_id.

    All methods are synchronous and run on the event loop, so each one is
    atomic with respect to webhook handling. Completed sessions are dropped
    after `retention_seconds`.
    """

    def __init__(self, retention_seconds: float = 300.0):
        self.retention_seconds = retention_seconds
        self._sessions: dict[str, CallSession] = {}
        self._expiry: dict[str, asyncio.TimerHandle] = {}

    def get_or_create(self, call_control_id: str) -> CallSession:
        session = self._sessions.get(call_control_id)
        if session is None:
            session = CallSession(call_control_id=call_control_id)
            self._sessions[call_control_id] = session
            logger.debug(f"Session created: {call_control_id}")
        return session

    def get(self, call_control_id: str) -> CallSession | None:
        return self._sessions.get(call_control_id)

    def snapshot(self, call_control_id: str) -> dict[str, Any]:
        """Read-only view used by the result query endpoint."""
        session = self._sessions.get(call_control_id)
        if session is None:
            return {"found": False}
        return session.to_result()

    def mark_in_progress(self, session: CallSession, answered_by: AnsweredBy | None = None) -> None:
        """Record an answer or provisional AMD verdict."""
        session.advance(CallStatus.IN_PROGRESS)
        if answered_by is not None and session.status != CallStatus.COMPLETED:
            session.answered_by = answered_by

    def complete(
        self,
        session: CallSession,
        hangup_cause: str | None = None,
        conversation: list[Turn] | None = None,
    ) -> None:
        """Finalize a session and schedule its deletion."""
        if not session.advance(CallStatus.COMPLETED):
            logger.warning(f"Duplicate hangup ignored for {session.call_control_id}")
            return

        session.hangup_cause = hangup_cause
        session.completed_at = time.time()

        text = session.transcript_buffer.strip()
        if text:
            # Transcript content is more reliable than acoustic AMD
            verdict = classify_transcript(text)
            session.final_transcript = {"text": text, "detected_as": verdict.value}
            session.answered_by = verdict
            logger.info(f"Transcript analysis for {session.call_control_id}: {verdict.value.upper()}")

        if conversation is not None:
            session.conversation = [turn.to_dict() for turn in conversation]

        logger.info(
            f"Call completed: {session.call_control_id} "
            f"answered_by={session.answered_by.value} cause={hangup_cause}"
        )
        self._schedule_expiry(session)

    def _schedule_expiry(self, session: CallSession) -> None:
        loop = asyncio.get_running_loop()
        previous = self._expiry.pop(session.call_control_id, None)
        if previous:
            previous.cancel()
        self._expiry[session.call_control_id] = loop.call_later(
            self.retention_seconds, self._expire, session
        )

    def _expire(self, session: CallSession) -> None:
        self._expiry.pop(session.call_control_id, None)
        if self._sessions.get(session.call_control_id) is session:
            del self._sessions[session.call_control_id]
            logger.debug(f"Session expired: {session.call_control_id}")

    def close(self) -> None:
        """Cancel pending expiries (shutdown)."""
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_control_id: str) -> bool:
        return call_control_id in self._sessions
