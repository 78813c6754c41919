"""Turn engine - multi-turn phone conversations driven by silence detection.

Flow per call:
    awaiting_answer -> speaking_initial -> listening
        -> (speaking_reply <-> listening)* -> speaking_goodbye -> ended

Transcript fragments re-arm a silence deadline. When it elapses the
buffered fragment becomes a user turn and the LLM produces the next reply.
All methods are called from the dispatcher's per-call worker, so state for
one call is never touched concurrently.
"""

import asyncio
from typing import Callable

from loguru import logger

from callbridge.errors import CallControlError, SynthesisFailed
from callbridge.providers.base import LLMProvider, LLMResponse
from .synthesis import SynthesisPipeline
from .telnyx import TelnyxClient
from .types import ConversationPhase, ConversationState

# Configuration
SILENCE_SECONDS = 2.5  # Quiet time after the last fragment that ends a user turn
HANGUP_GRACE_SECONDS = 1.5  # Pause after the goodbye finishes before hanging up
DEFAULT_MAX_TURNS = 10

CLOSING_INSTRUCTION = (
    "The call is ending now. Reply with one short, friendly sentence that "
    "closes the conversation and says goodbye. Do not ask any questions."
)
FALLBACK_CLOSING_LINE = "Thank you for your time. Goodbye!"

WakeupCallback = Callable[[str, int], None]  # (call_control_id, generation)
HangupCallback = Callable[[str, float], None]  # (call_control_id, delay_seconds)


class TurnEngine:
    """Drives every active conversation.

    Handles:
    - Conversation registration
    - Silence deadline arming (debounced, stale timers ignored)
    - LLM replies and the closing line
    - Playback gating and the final hangup
    """

    def __init__(
        self,
        provider: LLMProvider,
        synthesis: SynthesisPipeline,
        call_control: TelnyxClient,
        *,
        model: str | None = None,
        silence_seconds: float = SILENCE_SECONDS,
        hangup_grace_seconds: float = HANGUP_GRACE_SECONDS,
        max_tokens: int = 150,
        temperature: float = 0.7,
        default_max_turns: int = DEFAULT_MAX_TURNS,
        transcription_language: str = "en",
    ):
        self.provider = provider
        self.synthesis = synthesis
        self.call_control = call_control
        self.model = model
        self.silence_seconds = silence_seconds
        self.hangup_grace_seconds = hangup_grace_seconds
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.default_max_turns = default_max_turns
        self.transcription_language = transcription_language

        self._conversations: dict[str, ConversationState] = {}
        self._wakeup: WakeupCallback | None = None
        self._hangup: HangupCallback | None = None

    def bind(self, wakeup: WakeupCallback, hangup: HangupCallback) -> None:
        """Connect the engine to the dispatcher's queue and hangup scheduler."""
        self._wakeup = wakeup
        self._hangup = hangup

    # ── Registry ────────────────────────────────────────────────────

    def register(
        self,
        call_control_id: str,
        system_prompt: str,
        initial_message: str,
        max_turns: int | None = None,
    ) -> ConversationState:
        """Create the conversation for a freshly dialed call.

        Raises:
            ValueError: a conversation for this call is already live, or
                max_turns is not positive
        """
        existing = self._conversations.get(call_control_id)
        if existing and existing.phase != ConversationPhase.AWAITING_ANSWER:
            raise ValueError(f"Conversation already active for call {call_control_id}")

        turns = self.default_max_turns if max_turns is None else max_turns
        if turns < 1:
            raise ValueError("max_turns must be at least 1")

        state = ConversationState(
            call_control_id=call_control_id,
            system_prompt=system_prompt,
            initial_message=initial_message,
            max_turns=turns,
        )
        self._conversations[call_control_id] = state
        logger.info(f"Conversation registered: {call_control_id} (max_turns={turns})")
        return state

    def get(self, call_control_id: str) -> ConversationState | None:
        return self._conversations.get(call_control_id)

    def discard(self, call_control_id: str) -> ConversationState | None:
        """Remove a conversation once its call has ended."""
        state = self._conversations.pop(call_control_id, None)
        if state:
            state.cancel_deadline()
            state.is_speaking = False
            state.phase = ConversationPhase.ENDED
        return state

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, call_control_id: str) -> bool:
        return call_control_id in self._conversations

    # ── Events ──────────────────────────────────────────────────────

    async def begin(self, call_control_id: str) -> bool:
        """Call answered: start listening and speak the initial message."""
        state = self._conversations.get(call_control_id)
        if not state or state.phase != ConversationPhase.AWAITING_ANSWER:
            return False

        try:
            await self.call_control.transcription_start(
                call_control_id, language=self.transcription_language
            )
        except CallControlError as e:
            logger.error(f"Could not start transcription for {call_control_id}: {e}")

        state.add_turn("assistant", state.initial_message)
        state.phase = ConversationPhase.SPEAKING_INITIAL
        await self._say(state, state.initial_message)
        return True

    def on_fragment(self, call_control_id: str, text: str) -> bool:
        """Buffer a transcript fragment and re-arm the silence deadline.

        Returns True if the fragment was taken for the next user turn.
        """
        state = self._conversations.get(call_control_id)
        if state is None or state.is_speaking or state.terminal:
            return False
        if state.phase in (ConversationPhase.AWAITING_ANSWER, ConversationPhase.ENDED):
            return False

        text = text.strip()
        if not text:
            return False

        state.pending_fragment = f"{state.pending_fragment} {text}".strip()
        self._arm_deadline(state)
        return True

    def _arm_deadline(self, state: ConversationState) -> None:
        state.cancel_deadline()
        state.silence_generation += 1
        loop = asyncio.get_running_loop()
        state.silence_deadline = loop.call_later(
            self.silence_seconds,
            self._deadline_elapsed,
            state.call_control_id,
            state.silence_generation,
        )

    def _deadline_elapsed(self, call_control_id: str, generation: int) -> None:
        if self._wakeup is None:
            logger.warning(f"Silence deadline for {call_control_id} fired with no dispatcher bound")
            return
        self._wakeup(call_control_id, generation)

    async def on_silence(self, call_control_id: str, generation: int) -> None:
        """The silence deadline elapsed: turn the buffered fragment into a user turn."""
        state = self._conversations.get(call_control_id)
        if state is None:
            return
        if generation != state.silence_generation:
            logger.debug(f"Stale silence deadline ignored for {call_control_id}")
            return

        state.silence_deadline = None
        if state.is_speaking or state.terminal:
            return

        fragment = state.pending_fragment.strip()
        state.pending_fragment = ""
        if not fragment:
            logger.debug(f"Silence on {call_control_id} with nothing said, dropping")
            return

        state.add_turn("user", fragment)
        state.turn_count += 1
        logger.info(f"User turn {state.turn_count}/{state.max_turns} on {call_control_id}: {fragment[:80]}")

        if state.turn_count >= state.max_turns:
            await self._say_goodbye(state)
        else:
            await self._reply(state)

    def finish_playback(self, call_control_id: str) -> bool:
        """Playback ended: resume listening, or hang up if we just said goodbye."""
        state = self._conversations.get(call_control_id)
        if state is None:
            return False

        state.is_speaking = False
        if state.terminal:
            self._finish(state)
        elif state.phase != ConversationPhase.ENDED:
            state.phase = ConversationPhase.LISTENING
        return True

    # ── Turns ───────────────────────────────────────────────────────

    async def _reply(self, state: ConversationState) -> None:
        state.phase = ConversationPhase.SPEAKING_REPLY
        state.is_speaking = True

        response = await self._complete(state, state.to_messages())
        if response is None:
            self._abort_turn(state)
            return

        text = (response.content or "").strip()
        state.add_turn("assistant", text)
        if not await self._say(state, text):
            # Never heard by the callee
            state.turns.pop()

    async def _say_goodbye(self, state: ConversationState) -> None:
        state.phase = ConversationPhase.SPEAKING_GOODBYE
        state.is_speaking = True
        state.terminal = True

        messages = state.to_messages()
        messages.append({"role": "system", "content": CLOSING_INSTRUCTION})
        response = await self._complete(state, messages)
        text = (response.content or "").strip() if response else FALLBACK_CLOSING_LINE

        state.add_turn("assistant", text)
        if not await self._say(state, text):
            # No playback-finished will ever arrive for this line
            self._finish(state)

    async def _complete(
        self,
        state: ConversationState,
        messages: list[dict[str, str]],
    ) -> LLMResponse | None:
        try:
            response = await self.provider.chat(
                messages=messages,
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"LLM error on {state.call_control_id}: {e}")
            return None

        if response.failed:
            logger.error(f"LLM turn failed on {state.call_control_id}: {response.content}")
            return None
        return response

    async def _say(self, state: ConversationState, text: str) -> bool:
        state.is_speaking = True
        try:
            await self.synthesis.speak(state.call_control_id, text)
        except SynthesisFailed as e:
            logger.error(f"Dropped turn on {state.call_control_id}: {e}")
            self._abort_turn(state)
            return False
        return True

    def _abort_turn(self, state: ConversationState) -> None:
        state.is_speaking = False
        if not state.terminal and state.phase != ConversationPhase.ENDED:
            state.phase = ConversationPhase.LISTENING

    def _finish(self, state: ConversationState) -> None:
        state.is_speaking = False
        state.cancel_deadline()
        state.phase = ConversationPhase.ENDED
        if self._hangup is None:
            logger.warning(f"Conversation {state.call_control_id} finished with no hangup scheduler bound")
            return
        self._hangup(state.call_control_id, self.hangup_grace_seconds)
