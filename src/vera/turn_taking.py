#!/usr/bin/env python3
"""
VERA turn-taking state machine.

One object owns every turn-taking field: the primary state, the paused flag,
the open recording span and the id of the turn currently with the backend.
Other components reach it only by posting events (see events.py) or through
enable()/disable()/request_pause(). Events are applied one at a time on the
event loop by run().

    Idle -> Listening -> Processing -> Speaking -> Listening ...

The capture device is opened on the first enable and held until the process
exits; disable() abandons the span but keeps the device for fast re-enable.
"""
import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from .conversation import ConversationLog, TurnState
from .error_handler import (
    DeviceError, ErrorSeverity, NetworkError, handle_error, user_message,
)
from .events import (
    DisableListening, EnableListening, Event, PauseChanged, PhaseResult,
    PlaybackFinished, PlaybackStarted, ResumeListening, UtteranceBoundary,
)
from .logging_utils import setup_logger
from .pipeline import BackendPipeline, Command, Failed, Reply, ServerPaused, Skip
from .playback import PlaybackController
from .utterance import Accepted, Rejected, UtteranceBuffer
from .vad import BoundaryReason, VadMonitor, VoiceActivityDetector

logger = setup_logger("vera.turn_taking")


@dataclass(frozen=True)
class StatusUpdate:
    state: TurnState
    paused: bool
    message: str
    level: str = "info"  # "info" or "error"


StatusListener = Callable[[StatusUpdate], None]


class TurnTakingMachine:
    """Orchestrates recording spans, backend turns and playback"""

    def __init__(self, source, buffer: UtteranceBuffer, detector: VoiceActivityDetector,
                 pipeline: BackendPipeline, playback: PlaybackController,
                 conversation: Optional[ConversationLog] = None, session_id: str = "",
                 poll_interval_ms: float = 20.0, clock: Optional[Callable[[], float]] = None):
        self.source = source
        self.buffer = buffer
        self.pipeline = pipeline
        self.playback = playback
        self.conversation = conversation or ConversationLog()
        self.session_id = session_id
        self.monitor = VadMonitor(
            detector,
            read_window=source.read_window,
            on_boundary=self._on_boundary,
            on_voiced=buffer.mark_voiced,
            poll_interval_ms=poll_interval_ms,
            clock=clock,
        )
        self._clock = clock

        self._state = TurnState.IDLE
        self._paused = False
        self._span_id: Optional[int] = None
        self._turn_id = 0
        self._awaiting_resume: Optional[int] = None
        self._playback_task: Optional[asyncio.Task] = None
        self._events: Optional[asyncio.Queue] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[StatusListener] = []
        self.stats: Dict[str, int] = {
            "spans_opened": 0,
            "accepted": 0,
            "rejected": 0,
            "failed": 0,
            "replies": 0,
            "discarded_results": 0,
        }

        self._handlers = {
            EnableListening: self._handle_enable,
            DisableListening: self._handle_disable,
            UtteranceBoundary: self._handle_boundary,
            PhaseResult: self._handle_phase_result,
            PlaybackStarted: self._handle_playback_started,
            PlaybackFinished: self._handle_playback_finished,
            ResumeListening: self._handle_resume,
            PauseChanged: self._handle_pause_changed,
        }

    # ---- read-only view ----

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def span_id(self) -> Optional[int]:
        """Id of the open recording span, or None when not recording."""
        return self._span_id

    @property
    def span_open(self) -> bool:
        return self._span_id is not None

    @property
    def turn_id(self) -> int:
        return self._turn_id

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # ---- transition triggers ----

    def post(self, event: Event) -> None:
        self._queue().put_nowait(event)

    def enable(self) -> None:
        self.post(EnableListening())

    def disable(self) -> None:
        self.post(DisableListening())

    async def request_pause(self, paused: bool) -> bool:
        """Send an explicit pause/unpause through /command; the flag changes once acknowledged."""
        action = "pause" if paused else "unpause"
        try:
            await asyncio.to_thread(self.pipeline.client.send_command, self.session_id, action)
        except NetworkError as e:
            handle_error(e, "turn_taking", "command", session_id=self.session_id)
            self._emit_status(user_message(e), level="error")
            return False
        self.post(PauseChanged(paused))
        return True

    async def run(self) -> None:
        queue = self._queue()
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            except Exception as e:
                handle_error(e, "turn_taking", type(event).__name__, ErrorSeverity.HIGH,
                             session_id=self.session_id)
            finally:
                queue.task_done()

    async def dispatch(self, event: Event) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"Unhandled event: {event!r}")
            return
        result = handler(event)
        if asyncio.iscoroutine(result):
            await result

    def shutdown(self) -> None:
        """Stop polling and cancel background work. The device is left to the owner."""
        self.monitor.stop()
        self.source.detach()
        self.playback.stop()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ---- internals ----

    def _queue(self) -> asyncio.Queue:
        if self._events is None:
            self._events = asyncio.Queue()
        return self._events

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit_status(self, message: str, level: str = "info") -> None:
        status = StatusUpdate(state=self._state, paused=self._paused, message=message, level=level)
        for listener in self._listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Status listener error: {e}")

    def _transition(self, new_state: TurnState, message: str, level: str = "info") -> None:
        old_state, self._state = self._state, new_state
        if old_state is not new_state:
            logger.info(f"State changed: {old_state.value} -> {new_state.value}")
        self._emit_status(message, level)

    def _listening_message(self) -> str:
        return "Paused, say 'resume' to continue" if self._paused else "Listening"

    def _on_boundary(self, span_id: int, reason: BoundaryReason) -> None:
        self.post(UtteranceBoundary(span_id, reason))

    def _open_span(self) -> None:
        # Never record while a turn is with the backend or a reply is playing,
        # nor before the settle delay of a failed reply has run out
        if self._state is not TurnState.LISTENING or self._span_id is not None:
            return
        if self._awaiting_resume is not None:
            return
        self.buffer.open(self._now())
        self.source.attach(self.buffer.append)
        self._span_id = self.monitor.start()
        self.stats["spans_opened"] += 1

    def _close_span(self):
        self.monitor.stop()
        self.source.detach()
        self._span_id = None
        return self.buffer.close()

    def _abandon_span(self) -> None:
        self.monitor.stop()
        self.source.detach()
        self.buffer.discard()
        self._span_id = None

    def _resume_listening(self, message: Optional[str] = None, level: str = "info") -> None:
        self._transition(TurnState.LISTENING, message or self._listening_message(), level)
        self._open_span()

    async def _handle_enable(self, event: EnableListening) -> None:
        if self._state is not TurnState.IDLE:
            return
        try:
            await self.source.open()
        except DeviceError as e:
            handle_error(e, "turn_taking", "open_device", ErrorSeverity.HIGH, session_id=self.session_id)
            self._emit_status(user_message(e), level="error")
            return
        self._resume_listening()

    def _handle_disable(self, event: DisableListening) -> None:
        if self._state is TurnState.IDLE:
            return
        if self._span_id is not None:
            self._abandon_span()
        if self._state is TurnState.SPEAKING:
            self.playback.stop()
            if self._playback_task is not None and not self._playback_task.done():
                # Covers a reply task that has not taken its first step yet
                self._playback_task.cancel()
        if self._state is TurnState.PROCESSING:
            logger.info(f"Listening disabled during turn {self._turn_id}; its result will be discarded")
        self._awaiting_resume = None
        self._transition(TurnState.IDLE, "Listening off")

    def _handle_boundary(self, event: UtteranceBoundary) -> None:
        if self._state is not TurnState.LISTENING or event.span_id != self._span_id:
            logger.debug(f"Ignoring stale boundary for span {event.span_id}")
            return

        result = self._close_span()
        if isinstance(result, Rejected):
            self.stats["rejected"] += 1
            logger.debug(f"Utterance rejected ({result.reason.value}, {event.reason.value}); reopening")
            self._open_span()
            return

        assert isinstance(result, Accepted)
        self.stats["accepted"] += 1
        self._turn_id += 1
        self._transition(TurnState.PROCESSING, "Thinking...")
        self._spawn(self._process(self._turn_id, result.payload))

    async def _process(self, turn_id: int, payload: bytes) -> None:
        try:
            outcome = await self.pipeline.process(payload)
        except Exception as e:
            handle_error(e, "turn_taking", "process", ErrorSeverity.HIGH, session_id=self.session_id)
            outcome = Failed(error=e, phase="unknown")
        self.post(PhaseResult(turn_id, outcome))

    def _handle_phase_result(self, event: PhaseResult) -> None:
        if event.turn_id != self._turn_id or self._state is not TurnState.PROCESSING:
            self.stats["discarded_results"] += 1
            logger.info(f"Discarding result of turn {event.turn_id} (state={self._state.value})")
            return

        outcome = event.outcome
        if isinstance(outcome, Reply):
            self.stats["replies"] += 1
            self.conversation.add_exchange(outcome.transcript, outcome.reply)
            self._transition(TurnState.SPEAKING, "Speaking")
            self._playback_task = self._spawn(self.playback.play(outcome.audio_url, event.turn_id, self.post))
        elif isinstance(outcome, Command):
            self._paused = outcome.action == "pause"
            self._resume_listening()
        elif isinstance(outcome, ServerPaused):
            self._paused = True
            self._resume_listening()
        elif isinstance(outcome, Skip):
            self._resume_listening()
        elif isinstance(outcome, Failed):
            self.stats["failed"] += 1
            self._resume_listening(user_message(outcome.error), level="error")

    def _handle_playback_started(self, event: PlaybackStarted) -> None:
        if event.turn_id == self._turn_id and self._state is TurnState.SPEAKING:
            logger.debug(f"Playback started for turn {event.turn_id}")

    def _handle_playback_finished(self, event: PlaybackFinished) -> None:
        if event.turn_id != self._turn_id or self._state is not TurnState.SPEAKING:
            return
        if event.error is not None:
            # Leave Speaking at once; the span reopens on ResumeListening
            self._awaiting_resume = event.turn_id
            self._transition(TurnState.LISTENING, user_message(event.error), level="error")

    def _handle_resume(self, event: ResumeListening) -> None:
        if event.turn_id != self._turn_id:
            return
        awaited = self._state is TurnState.LISTENING and self._awaiting_resume == event.turn_id
        if self._state is not TurnState.SPEAKING and not awaited:
            return
        self._awaiting_resume = None
        self._resume_listening()

    def _handle_pause_changed(self, event: PauseChanged) -> None:
        self._paused = event.paused
        message = self._listening_message() if self._state is TurnState.LISTENING else (
            "Paused" if self._paused else "Resumed")
        self._emit_status(message)
