"""
Playback controller.

Fetches and plays a synthesized reply, reports start and finish to the
turn-taking machine, and asks it to resume listening after a short settle
delay so the microphone does not catch the tail of the reply.

Every reply and cue play gets its own cancel token. stop() and stop_cue()
set it, so a stop that lands while audio is still being fetched or decoded
keeps the output stream from ever opening.
"""
import asyncio
import threading
from typing import Callable, Optional, Tuple

import numpy as np

from .audio_output import AudioPlayer, decode_audio, load_audio_file
from .backend import BackendClient
from .error_handler import NetworkError, PlaybackError, handle_error, ErrorSeverity
from .events import Event, PlaybackFinished, PlaybackStarted, ResumeListening
from .logging_utils import setup_logger

logger = setup_logger("vera.playback")

Emit = Callable[[Event], None]


class PlaybackController:
    def __init__(self, client: BackendClient, player: Optional[AudioPlayer] = None,
                 settle_delay_ms: float = 400.0, cue_path: Optional[str] = None,
                 cue_player: Optional[AudioPlayer] = None):
        self.client = client
        self.player = player or AudioPlayer()
        self.settle_delay = settle_delay_ms / 1000.0
        self.cue_path = cue_path
        self.cue_player = cue_player or AudioPlayer(output_device=self.player.output_device)
        self._cue_audio: Optional[Tuple[np.ndarray, int]] = None
        self._reply_cancel: Optional[threading.Event] = None
        self._cue_cancel: Optional[threading.Event] = None

    async def play(self, audio_url: str, turn_id: int, emit: Emit) -> None:
        """Play one reply; always ends by emitting PlaybackFinished then ResumeListening."""
        loop = asyncio.get_running_loop()
        cancel = threading.Event()
        self._reply_cancel = cancel
        error: Optional[PlaybackError] = None
        completed = False

        def on_start() -> None:
            loop.call_soon_threadsafe(emit, PlaybackStarted(turn_id, audio_url))

        try:
            data = await asyncio.to_thread(self.client.fetch_audio, audio_url)
            if not cancel.is_set():
                audio, sample_rate = decode_audio(data)
                completed = await asyncio.to_thread(self.player.play, audio, sample_rate, on_start, cancel)
        except NetworkError as e:
            error = PlaybackError(f"Could not fetch reply audio: {e}", component="playback", operation="fetch")
            error.__cause__ = e
        except PlaybackError as e:
            error = e
        except Exception as e:
            error = PlaybackError(f"Reply playback failed: {e}", component="playback", operation="play")
            error.__cause__ = e
        finally:
            if self._reply_cancel is cancel:
                self._reply_cancel = None
            if error is not None:
                handle_error(error, "playback", "play", ErrorSeverity.MEDIUM)
            elif not completed:
                logger.info("Reply playback interrupted")
            emit(PlaybackFinished(turn_id, error=error, completed=completed))

        await asyncio.sleep(self.settle_delay)
        emit(ResumeListening(turn_id))

    def stop(self) -> None:
        if self._reply_cancel is not None:
            self._reply_cancel.set()
        self.player.stop()
        self.stop_cue()

    def _load_cue(self) -> Optional[Tuple[np.ndarray, int]]:
        if self._cue_audio is None and self.cue_path:
            self._cue_audio = load_audio_file(self.cue_path)
        return self._cue_audio

    async def play_cue(self) -> None:
        """Best-effort thinking cue; failures are logged and dropped."""
        cancel = threading.Event()
        self._cue_cancel = cancel
        try:
            cue = self._load_cue()
            if cue is None or cancel.is_set():
                return
            await asyncio.to_thread(self.cue_player.play, cue[0], cue[1], None, cancel)
        except (PlaybackError, OSError) as e:
            logger.debug(f"Thinking cue unavailable: {e}")
        finally:
            if self._cue_cancel is cancel:
                self._cue_cancel = None

    def stop_cue(self) -> None:
        if self._cue_cancel is not None:
            self._cue_cancel.set()
        self.cue_player.stop()
