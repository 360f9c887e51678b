#!/usr/bin/env python3
"""
VERA audio output.

Decodes reply audio with soundfile and plays it through a sounddevice
OutputStream that can be interrupted from another thread.
"""
import io
import os
import threading
import time
from typing import Callable, Optional, Tuple

import numpy as np
try:
    import sounddevice as sd  # PortAudio bindings
except (ImportError, OSError):  # PortAudio missing; play() reports PlaybackError
    sd = None  # type: ignore
import soundfile as sf

from .error_handler import PlaybackError
from .logging_utils import setup_logger

logger = setup_logger("vera.audio_output")


def decode_audio(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode an encoded audio file (WAV, FLAC, OGG...) into mono float32 samples."""
    try:
        audio, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=False)
    except (RuntimeError, TypeError, ValueError) as e:
        raise PlaybackError(f"Could not decode reply audio: {e}",
                            component="audio_output", operation="decode") from e
    if audio.ndim > 1:
        audio = audio.mean(axis=1)
    return np.ascontiguousarray(audio, dtype=np.float32), int(sample_rate)


def load_audio_file(path: str) -> Tuple[np.ndarray, int]:
    with open(path, "rb") as f:
        return decode_audio(f.read())


class AudioPlayer:
    """Plays one clip at a time with interruption support.

    Each play() runs against a cancel token (a threading.Event). stop() sets
    the token of the current or most recent play; a caller that owns the token
    can also set it before play() starts, in which case no stream is opened.
    """

    def __init__(self, output_device=None):
        self.output_device = output_device  # sd device index or name
        self.current_stream = None
        self.is_playing = False
        self._cancel: Optional[threading.Event] = None

        self.audio_buffer = np.array([], dtype=np.float32)
        self.buffer_lock = threading.Lock()

    @property
    def interrupt_requested(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def play(self, audio_data: np.ndarray, sample_rate: int,
             on_start: Optional[Callable[[], None]] = None,
             cancel: Optional[threading.Event] = None) -> bool:
        """
        Play audio, blocking until it finishes or is interrupted.

        Args:
            audio_data: Mono float32 samples
            sample_rate: Sample rate of audio_data
            on_start: Called once the output stream is running
            cancel: Token that interrupts this play when set; a fresh one is used if None

        Returns:
            bool: True if playback completed, False if interrupted
        """
        cancel = cancel if cancel is not None else threading.Event()
        self._cancel = cancel
        if cancel.is_set():
            logger.debug("Playback cancelled before start")
            return False

        if os.environ.get("VERA_NO_AUDIO", "0") == "1":
            logger.info("VERA_NO_AUDIO=1 set; skipping audio playback")
            if on_start:
                on_start()
            return True
        if sd is None:
            raise PlaybackError("sounddevice not available", component="audio_output", operation="play")

        with self.buffer_lock:
            self.audio_buffer = np.asarray(audio_data, dtype=np.float32).ravel().copy()
            self.is_playing = True

        try:
            stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=int(sample_rate * 0.05),  # 50ms blocks
                callback=self._audio_callback,
                device=self.output_device,
            )
        except Exception as e:
            self.is_playing = False
            raise PlaybackError(f"Could not open output stream: {e}",
                                component="audio_output", operation="play") from e

        self.current_stream = stream
        # Derive an expected duration from the clip length, with a small cushion
        expected_sec = max(3.0, min(300.0, len(audio_data) / float(sample_rate) + 2.0))
        deadline = time.monotonic() + expected_sec
        try:
            with stream:
                if on_start:
                    on_start()
                while self.is_playing and not cancel.is_set():
                    if time.monotonic() > deadline:
                        logger.warning(f"Audio playback exceeded expected duration ({expected_sec:.1f}s); stopping")
                        cancel.set()
                        break
                    time.sleep(0.01)
        except PlaybackError:
            raise
        except Exception as e:
            raise PlaybackError(f"Audio playback error: {e}",
                                component="audio_output", operation="play") from e
        finally:
            self.is_playing = False
            self.current_stream = None

        return not cancel.is_set()

    def _audio_callback(self, outdata: np.ndarray, frames: int, time_info, status):
        if self.interrupt_requested or not self.is_playing:
            outdata.fill(0)
            return

        with self.buffer_lock:
            if len(self.audio_buffer) == 0:
                self.is_playing = False
                outdata.fill(0)
                return

            chunk_size = min(frames, len(self.audio_buffer))
            chunk = self.audio_buffer[:chunk_size]
            self.audio_buffer = self.audio_buffer[chunk_size:]

            if len(chunk) < frames:
                padded_chunk = np.zeros(frames, dtype=np.float32)
                padded_chunk[:len(chunk)] = chunk
                chunk = padded_chunk

        outdata[:] = chunk.reshape(-1, 1)

    def stop(self):
        """Interrupt current audio playback"""
        if self.is_playing:
            logger.info("Audio playback interruption requested")
        if self._cancel is not None:
            self._cancel.set()
        self.is_playing = False
