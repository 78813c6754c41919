"""Webhook dispatcher - routes call events to the store and turn engine.

Every call gets its own queue and worker task. Events for one call are
handled strictly in arrival order while different calls proceed in
parallel, so a slow TTS or LLM request only delays its own call.
"""

import asyncio

from loguru import logger

from callbridge.errors import CallControlError, SynthesisFailed
from .conversation import TurnEngine
from .store import CallResultStore
from .synthesis import SynthesisPipeline
from .telnyx import TelnyxClient
from .types import AnsweredBy, CallStatus, EventType, WebhookEvent, decode_client_state

# Configuration
RESPONSE_WINDOW_SECONDS = 8.0  # Single-turn: time the callee gets to reply before hangup
WORKER_IDLE_SECONDS = 600.0  # Retire a call's worker after this long without events
DEFAULT_MESSAGE = "Hello, this is a call from your AI assistant."


class WebhookDispatcher:
    """Per-call serialized event handling."""

    def __init__(
        self,
        store: CallResultStore,
        engine: TurnEngine,
        synthesis: SynthesisPipeline,
        call_control: TelnyxClient,
        *,
        response_window_seconds: float = RESPONSE_WINDOW_SECONDS,
        always_transcribe: bool = False,
        transcription_language: str = "en",
        default_message: str = DEFAULT_MESSAGE,
        worker_idle_seconds: float = WORKER_IDLE_SECONDS,
    ):
        self.store = store
        self.engine = engine
        self.synthesis = synthesis
        self.call_control = call_control
        self.response_window_seconds = response_window_seconds
        self.always_transcribe = always_transcribe
        self.transcription_language = transcription_language
        self.default_message = default_message
        self.worker_idle_seconds = worker_idle_seconds

        self._queues: dict[str, asyncio.Queue[WebhookEvent]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._hangups: dict[str, asyncio.Task] = {}

        self.engine.bind(wakeup=self._on_silence_deadline, hangup=self.schedule_hangup)

    # ── Mailboxes ───────────────────────────────────────────────────

    def submit(self, event: WebhookEvent) -> None:
        """Queue an event for its call. Never blocks."""
        call_control_id = event.call_control_id
        queue = self._queues.get(call_control_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[call_control_id] = queue
            self._workers[call_control_id] = asyncio.create_task(
                self._drain(call_control_id, queue)
            )
        queue.put_nowait(event)

    def _on_silence_deadline(self, call_control_id: str, generation: int) -> None:
        self.submit(WebhookEvent(
            event_type=EventType.SILENCE_ELAPSED,
            call_control_id=call_control_id,
            generation=generation,
        ))

    async def _drain(self, call_control_id: str, queue: asyncio.Queue[WebhookEvent]) -> None:
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.worker_idle_seconds)
                except asyncio.TimeoutError:
                    if not queue.empty():
                        # An event landed as the wait timed out
                        continue
                    logger.debug(f"Worker idle, retiring: {call_control_id}")
                    break

                try:
                    await self.handle(event)
                except Exception as e:
                    logger.exception(f"Error handling {event.event_type.value} for {call_control_id}: {e}")
                finally:
                    queue.task_done()

                if queue.empty() and self._is_completed(call_control_id):
                    break
        finally:
            # No await between the last empty check and here, so no event can be lost
            if self._queues.get(call_control_id) is queue:
                del self._queues[call_control_id]
                self._workers.pop(call_control_id, None)

    def _is_completed(self, call_control_id: str) -> bool:
        session = self.store.get(call_control_id)
        return session is not None and session.status == CallStatus.COMPLETED

    async def flush(self) -> None:
        """Wait until every queued event has been handled."""
        queues = list(self._queues.values())
        await asyncio.gather(*(queue.join() for queue in queues))

    # ── Event handling ──────────────────────────────────────────────

    async def handle(self, event: WebhookEvent) -> None:
        """Apply one event. Runs on the call's worker."""
        handlers = {
            EventType.MACHINE_DETECTION: self._handle_machine_detection,
            EventType.TRANSCRIPTION: self._handle_transcription,
            EventType.ANSWERED: self._handle_answered,
            EventType.PLAYBACK_FINISHED: self._handle_playback_finished,
            EventType.CALL_ENDED: self._handle_call_ended,
            EventType.SILENCE_ELAPSED: self._handle_silence,
        }
        await handlers[event.event_type](event)

    async def _handle_machine_detection(self, event: WebhookEvent) -> None:
        verdict = AnsweredBy.parse(event.result)
        logger.info(f"AMD result for {event.call_control_id}: {verdict.value}")
        session = self.store.get_or_create(event.call_control_id)
        self.store.mark_in_progress(session, verdict)

    async def _handle_transcription(self, event: WebhookEvent) -> None:
        if not event.is_final or not event.transcript.strip():
            return
        logger.info(f"Transcription on {event.call_control_id}: \"{event.transcript}\"")
        session = self.store.get_or_create(event.call_control_id)
        session.append_transcript(event.transcript)
        self.engine.on_fragment(event.call_control_id, event.transcript)

    async def _handle_answered(self, event: WebhookEvent) -> None:
        call_control_id = event.call_control_id
        session = self.store.get_or_create(call_control_id)
        self.store.mark_in_progress(session)

        if call_control_id in self.engine:
            logger.info(f"Call answered, starting conversation: {call_control_id}")
            await self.engine.begin(call_control_id)
            return

        # Single-turn: speak the message carried in client_state
        if self.always_transcribe:
            await self._start_transcription(call_control_id)

        message = decode_client_state(event.client_state, self.default_message)
        logger.info(f"Speaking message on {call_control_id}: \"{message[:80]}\"")
        try:
            await self.synthesis.speak(call_control_id, message)
        except SynthesisFailed as e:
            logger.error(f"Could not speak on {call_control_id}: {e}")
            # No playback-finished will arrive; don't leave the line open
            self.schedule_hangup(call_control_id, self.response_window_seconds)

    async def _handle_playback_finished(self, event: WebhookEvent) -> None:
        call_control_id = event.call_control_id
        if self._is_completed(call_control_id):
            return
        if self.engine.finish_playback(call_control_id):
            return

        logger.info(
            f"Audio finished on {call_control_id}, hanging up in {self.response_window_seconds:.0f}s"
        )
        self.schedule_hangup(call_control_id, self.response_window_seconds)

    async def _handle_call_ended(self, event: WebhookEvent) -> None:
        call_control_id = event.call_control_id
        self._cancel_hangup(call_control_id)

        state = self.engine.discard(call_control_id)
        session = self.store.get_or_create(call_control_id)
        self.store.complete(
            session,
            hangup_cause=event.hangup_cause,
            conversation=state.turns if state else None,
        )

    async def _handle_silence(self, event: WebhookEvent) -> None:
        await self.engine.on_silence(event.call_control_id, event.generation)

    async def _start_transcription(self, call_control_id: str) -> None:
        try:
            await self.call_control.transcription_start(
                call_control_id, language=self.transcription_language
            )
        except CallControlError as e:
            logger.error(f"Transcription start failed for {call_control_id}: {e}")

    # ── Hangups ─────────────────────────────────────────────────────

    def schedule_hangup(self, call_control_id: str, delay: float) -> None:
        """Hang up after `delay` seconds unless the call ends first."""
        self._cancel_hangup(call_control_id)
        self._hangups[call_control_id] = asyncio.create_task(
            self._hangup_later(call_control_id, delay)
        )

    def _cancel_hangup(self, call_control_id: str) -> None:
        task = self._hangups.pop(call_control_id, None)
        if task and task is not asyncio.current_task():
            task.cancel()

    async def _hangup_later(self, call_control_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.call_control.hangup(call_control_id)
        except CallControlError as e:
            logger.error(f"Hangup failed for {call_control_id}: {e}")
        finally:
            if self._hangups.get(call_control_id) is asyncio.current_task():
                del self._hangups[call_control_id]

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def active_calls(self) -> int:
        return len(self._queues)

    async def stop(self) -> None:
        """Cancel workers and pending hangups."""
        tasks = [*self._workers.values(), *self._hangups.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._queues.clear()
        self._workers.clear()
        self._hangups.clear()
        logger.info("Webhook dispatcher stopped")
