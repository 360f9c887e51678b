"""
Utterance model and buffer.

Fragments are 16-bit mono PCM blocks delivered by the capture source while a
recording span is open. Closing the buffer assembles them into one WAV payload
or rejects the capture when it cannot hold speech.
"""
from __future__ import annotations

import io
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

import numpy as np
import soundfile as sf

from .logging_utils import setup_logger

logger = setup_logger("vera.utterance")


class RejectionReason(Enum):
    NO_SPEECH_DETECTED = "no_speech_detected"
    TOO_SMALL = "too_small"


@dataclass
class Utterance:
    """Audio captured during one recording span"""
    started_at: float
    fragments: List[bytes] = field(default_factory=list)
    has_voiced_frame: bool = False
    total_bytes: int = 0

    def append(self, fragment: bytes) -> None:
        self.fragments.append(fragment)
        self.total_bytes += len(fragment)


@dataclass(frozen=True)
class Accepted:
    payload: bytes
    total_bytes: int
    duration_sec: float


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    total_bytes: int = 0


CloseResult = Union[Accepted, Rejected]


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Clip normalized float samples and encode them as little-endian int16."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32).ravel(), -1.0, 1.0)
    return (clipped * 32767.0).astype('<i2').tobytes()


def encode_wav(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap raw 16-bit mono PCM in a WAV container."""
    data = np.frombuffer(pcm[:len(pcm) - len(pcm) % 2], dtype='<i2')
    out = io.BytesIO()
    sf.write(out, data, sample_rate, format="WAV", subtype="PCM_16")
    return out.getvalue()


class UtteranceBuffer:
    """Collects fragments for the open span and judges the result on close."""

    def __init__(self, sample_rate: int = 16000, min_audio_bytes: int = 6400):
        self.sample_rate = sample_rate
        self.min_audio_bytes = min_audio_bytes
        self.current: Optional[Utterance] = None

    @property
    def is_open(self) -> bool:
        return self.current is not None

    def open(self, now: Optional[float] = None) -> Utterance:
        self.current = Utterance(started_at=time.time() if now is None else now)
        return self.current

    def append(self, fragment: bytes) -> None:
        if self.current is None or not fragment:
            return
        self.current.append(fragment)

    def mark_voiced(self) -> None:
        if self.current is not None:
            self.current.has_voiced_frame = True

    def discard(self) -> None:
        self.current = None

    def close(self) -> CloseResult:
        utterance, self.current = self.current, None
        if utterance is None or not utterance.has_voiced_frame:
            total = utterance.total_bytes if utterance else 0
            return Rejected(RejectionReason.NO_SPEECH_DETECTED, total)
        if utterance.total_bytes < self.min_audio_bytes:
            return Rejected(RejectionReason.TOO_SMALL, utterance.total_bytes)

        payload = encode_wav(b"".join(utterance.fragments), self.sample_rate)
        duration = utterance.total_bytes / 2.0 / float(self.sample_rate)
        logger.debug(f"Utterance accepted: {utterance.total_bytes} bytes, {duration:.2f}s")
        return Accepted(payload=payload, total_bytes=utterance.total_bytes, duration_sec=duration)
