"""
Backend request pipeline.

Runs the two sequential exchanges for an accepted utterance: Phase A
(transcribe via /infer) and Phase B (continue via /continue), and folds the
responses into one outcome for the turn-taking state machine.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union

from .backend import BackendClient, VALID_ACTIONS
from .complexity import score_transcript
from .error_handler import NetworkError, ProtocolError, handle_error
from .logging_utils import setup_logger, log_with_context

logger = setup_logger("vera.pipeline", structured=True)

PHASE_TRANSCRIBE = "transcribe"
PHASE_CONTINUE = "continue"


@dataclass(frozen=True)
class Skip:
    """Backend judged the audio non-actionable"""
    reason: str = "backend"


@dataclass(frozen=True)
class ServerPaused:
    """Session is paused server-side; Phase B was not run"""
    transcript: str = ""


@dataclass(frozen=True)
class Command:
    action: str  # "pause" or "unpause"
    transcript: str = ""


@dataclass(frozen=True)
class Reply:
    transcript: str
    reply: str
    audio_url: str


@dataclass(frozen=True)
class Failed:
    error: Exception
    phase: str


PipelineOutcome = Union[Skip, ServerPaused, Command, Reply, Failed]


class FillerCue(Protocol):
    async def play_cue(self) -> None: ...

    def stop_cue(self) -> None: ...


def _flag(data: Dict[str, Any], key: str, operation: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ProtocolError(f"{operation}: '{key}' must be a boolean", component="pipeline", operation=operation)
    return value


def _text(data: Dict[str, Any], key: str, operation: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(f"{operation}: '{key}' must be a string", component="pipeline", operation=operation)
    return value


class BackendPipeline:
    """Sends one utterance at a time through transcribe then continue."""

    def __init__(self, client: BackendClient, session_id: str, cue: Optional[FillerCue] = None,
                 filler_enabled: bool = True, filler_threshold: int = 4):
        self.client = client
        self.session_id = session_id
        self.cue = cue
        self.filler_enabled = filler_enabled
        self.filler_threshold = filler_threshold
        self.in_flight = 0
        self._lock: Optional[asyncio.Lock] = None

    async def process(self, payload: bytes) -> PipelineOutcome:
        """Run both phases for one utterance. Never raises for backend failures."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            self.in_flight += 1
            phase = PHASE_TRANSCRIBE
            try:
                data = await self._timed(PHASE_TRANSCRIBE, self.client.infer, payload, self.session_id)
                transcript = _text(data, "transcript", PHASE_TRANSCRIBE).strip()
                outcome = self._check_transcription(data, transcript)
                if outcome is not None:
                    return outcome
                phase = PHASE_CONTINUE
                return await self._continue(transcript)
            except (NetworkError, ProtocolError) as e:
                handle_error(e, "pipeline", phase, session_id=self.session_id)
                return Failed(error=e, phase=phase)
            finally:
                self.in_flight -= 1

    async def _timed(self, phase: str, func, *args) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            return await asyncio.to_thread(func, *args)
        finally:
            log_with_context(logger, logging.INFO, f"Phase {phase} finished",
                             phase=phase, session_id=self.session_id,
                             latency_ms=int((time.monotonic() - started) * 1000))

    def _check_transcription(self, data: Dict[str, Any], transcript: str) -> Optional[PipelineOutcome]:
        """Outcome that ends the turn after Phase A, or None to go on to Phase B."""
        if _flag(data, "skip", PHASE_TRANSCRIBE):
            logger.info("Backend skipped utterance")
            return Skip("backend")
        if _flag(data, "paused", PHASE_TRANSCRIBE):
            logger.info("Session is paused server-side")
            return ServerPaused(transcript)
        if not transcript:
            logger.info("Empty transcript; skipping")
            return Skip("empty_transcript")
        return None

    async def _continue(self, transcript: str) -> PipelineOutcome:
        cue_task = self._maybe_start_cue(transcript)
        try:
            data = await self._timed(PHASE_CONTINUE, self.client.continue_dialogue, self.session_id, transcript)
        finally:
            self._stop_cue(cue_task)

        command = data.get("command")
        if command is not None:
            if command not in VALID_ACTIONS:
                raise ProtocolError(f"continue: unknown command {command!r}",
                                    component="pipeline", operation=PHASE_CONTINUE)
            logger.info(f"Backend command: {command}")
            return Command(action=command, transcript=transcript)

        reply = _text(data, "reply", PHASE_CONTINUE)
        audio_url = _text(data, "audio_url", PHASE_CONTINUE)
        if not reply or not audio_url:
            raise ProtocolError("continue: response has neither a command nor a reply with audio_url",
                                component="pipeline", operation=PHASE_CONTINUE)
        return Reply(transcript=transcript, reply=reply, audio_url=audio_url)

    def _maybe_start_cue(self, transcript: str) -> Optional[asyncio.Task]:
        if not self.filler_enabled or self.cue is None:
            return None
        try:
            complexity = score_transcript(transcript)
        except Exception as e:
            logger.debug(f"Complexity scoring failed: {e}")
            return None
        if complexity.score < self.filler_threshold:
            return None
        logger.debug(f"Complex request (score={complexity.score}, signals={complexity.signals}); playing cue")
        return asyncio.get_running_loop().create_task(self.cue.play_cue())

    def _stop_cue(self, task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        try:
            self.cue.stop_cue()
        except Exception as e:
            logger.debug(f"Stopping cue failed: {e}")
        task.cancel()
