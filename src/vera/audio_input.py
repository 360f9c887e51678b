#!/usr/bin/env python3
"""
Microphone capture source.

Wraps a sounddevice InputStream. The PortAudio callback keeps a rolling window
of the most recent samples for the VAD and hands PCM fragments to the event
loop, where the currently attached sink (the open utterance buffer) receives
them.
"""
import asyncio
import threading
from typing import Callable, Optional

import numpy as np
try:
    import sounddevice as sd  # PortAudio bindings
except (ImportError, OSError):  # PortAudio missing; open() reports DeviceError
    sd = None  # type: ignore

from .error_handler import DeviceError
from .logging_utils import setup_logger
from .utterance import float_to_pcm16

logger = setup_logger("vera.audio_input")

FragmentSink = Callable[[bytes], None]


class MicrophoneSource:
    """Capture device held open for the life of the process once acquired."""

    def __init__(self, sample_rate: int = 16000, window_size: int = 2048,
                 block_size: int = 512, device=None):
        self.sample_rate = sample_rate
        self.window_size = window_size
        self.block_size = block_size
        self.device = device

        self._window = np.zeros(window_size, dtype=np.float32)
        self._window_lock = threading.Lock()
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sink: Optional[FragmentSink] = None
        self.open_count = 0

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    async def open(self) -> None:
        """Acquire the input device. Safe to call repeatedly."""
        if self._stream is not None:
            return
        if sd is None:
            raise DeviceError("sounddevice/PortAudio not available",
                              component="audio_input", operation="open")

        self._loop = asyncio.get_running_loop()
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.block_size,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            raise DeviceError(f"Microphone unavailable: {e}",
                              component="audio_input", operation="open") from e

        self._stream = stream
        self.open_count += 1
        logger.info(f"Microphone opened at {self.sample_rate} Hz (device={self.device!r})")

    def close(self) -> None:
        """Release the device. Only called on process shutdown."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.error(f"Error closing input stream: {e}")

    def attach(self, sink: FragmentSink) -> None:
        self._sink = sink

    def detach(self) -> None:
        self._sink = None

    def read_window(self) -> np.ndarray:
        with self._window_lock:
            return self._window.copy()

    def _callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")

        block = np.asarray(indata[:, 0] if indata.ndim > 1 else indata, dtype=np.float32)
        with self._window_lock:
            if len(block) >= self.window_size:
                self._window[:] = block[-self.window_size:]
            else:
                self._window = np.roll(self._window, -len(block))
                self._window[-len(block):] = block

        loop = self._loop
        if loop is not None and self._sink is not None:
            fragment = float_to_pcm16(block)
            try:
                loop.call_soon_threadsafe(self._deliver, fragment)
            except RuntimeError:
                # Loop already closed during shutdown
                pass

    def _deliver(self, fragment: bytes) -> None:
        sink = self._sink
        if sink is not None:
            sink(fragment)
