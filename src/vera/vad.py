#!/usr/bin/env python3
"""
Energy-based voice activity detection.

VoiceActivityDetector classifies windows of the live signal as voiced or silent
by RMS amplitude and decides when the current recording span has ended.
VadMonitor runs it as a periodic asyncio task that only exists while a span is
open.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .logging_utils import setup_logger

logger = setup_logger("vera.vad")


class BoundaryReason(Enum):
    """Why a recording span was closed"""
    SILENCE = "silence"
    NO_SPEECH_TIMEOUT = "no_speech_timeout"
    MAX_DURATION = "max_duration"


@dataclass
class VadDecision:
    """Result of classifying one window"""
    rms: float
    voiced: bool
    silence_ms: float
    boundary: Optional[BoundaryReason] = None


def compute_rms(window: np.ndarray) -> float:
    """Root-mean-square amplitude of a window of normalized float samples."""
    if window is None or window.size == 0:
        return 0.0
    # ravel() gives a view for contiguous multi-channel blocks
    return float(np.sqrt(np.mean(np.square(window.ravel(), dtype=np.float64))))


def is_voiced(window: np.ndarray, threshold: float) -> bool:
    return compute_rms(window) > threshold


class VoiceActivityDetector:
    """Per-span voicing and silence-timeout tracker.

    All times are in seconds on the caller's monotonic clock; the configured
    durations are given in milliseconds.
    """

    def __init__(self, volume_threshold: float = 0.004, silence_ms: float = 1800.0,
                 trailing_ms: float = 0.0, max_wait_for_speech_ms: float = 8000.0,
                 max_utterance_ms: Optional[float] = 30000.0):
        self.volume_threshold = volume_threshold
        self.silence_ms = silence_ms
        self.trailing_ms = trailing_ms
        self.max_wait_for_speech_ms = max_wait_for_speech_ms
        self.max_utterance_ms = max_utterance_ms

        self.span_id = 0
        self.active = False
        self.started_at: Optional[float] = None
        self.last_voiced_at: Optional[float] = None
        self.has_voiced = False
        self.fired = False

    def start_span(self, now: float) -> int:
        """Reset window state for a new recording span and return its id."""
        self.span_id += 1
        self.active = True
        self.started_at = now
        self.last_voiced_at = None
        self.has_voiced = False
        self.fired = False
        return self.span_id

    def close_span(self) -> None:
        self.active = False

    @property
    def silence_deadline(self) -> Optional[float]:
        """Time at which trailing silence closes the span, once speech was heard."""
        if self.last_voiced_at is None:
            return None
        return self.last_voiced_at + (self.silence_ms + self.trailing_ms) / 1000.0

    def update(self, window: np.ndarray, now: float) -> VadDecision:
        rms = compute_rms(window)
        voiced = rms > self.volume_threshold

        if not self.active or self.fired or self.started_at is None:
            return VadDecision(rms=rms, voiced=False, silence_ms=0.0)

        if voiced:
            self.has_voiced = True
            self.last_voiced_at = now

        reference = self.last_voiced_at if self.last_voiced_at is not None else self.started_at
        silence_ms = max(0.0, (now - reference) * 1000.0)
        elapsed_ms = (now - self.started_at) * 1000.0

        boundary = None
        if self.has_voiced:
            if silence_ms > self.silence_ms + self.trailing_ms:
                boundary = BoundaryReason.SILENCE
        elif elapsed_ms >= self.max_wait_for_speech_ms:
            boundary = BoundaryReason.NO_SPEECH_TIMEOUT

        if boundary is None and self.max_utterance_ms and elapsed_ms >= self.max_utterance_ms:
            boundary = BoundaryReason.MAX_DURATION

        if boundary is not None:
            self.fired = True

        return VadDecision(rms=rms, voiced=voiced, silence_ms=silence_ms, boundary=boundary)


class VadMonitor:
    """Polls the detector on a fixed interval while one recording span is open.

    ``start()`` opens a span and schedules the polling task; ``stop()`` closes
    the span and cancels the task. A tick that runs after ``stop()`` sees a
    different span id or an inactive detector and returns without acting.
    """

    def __init__(self, detector: VoiceActivityDetector,
                 read_window: Callable[[], np.ndarray],
                 on_boundary: Callable[[int, BoundaryReason], None],
                 on_voiced: Optional[Callable[[], None]] = None,
                 poll_interval_ms: float = 20.0,
                 clock: Optional[Callable[[], float]] = None):
        self.detector = detector
        self.read_window = read_window
        self.on_boundary = on_boundary
        self.on_voiced = on_voiced
        self.poll_interval = poll_interval_ms / 1000.0
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> int:
        self.stop()
        span_id = self.detector.start_span(self._now())
        self._task = asyncio.get_running_loop().create_task(self._run(span_id))
        return span_id

    def stop(self) -> None:
        self.detector.close_span()
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self, span_id: int) -> None:
        while True:
            if self.detector.span_id != span_id or not self.detector.active:
                return
            decision = self.detector.update(self.read_window(), self._now())
            if decision.voiced and self.on_voiced is not None:
                self.on_voiced()
            if decision.boundary is not None:
                logger.debug(f"Span {span_id} boundary: {decision.boundary.value} "
                             f"(silence {decision.silence_ms:.0f}ms)")
                self.on_boundary(span_id, decision.boundary)
                return
            await asyncio.sleep(self.poll_interval)
