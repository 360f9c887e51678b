"""
Messages delivered to the turn-taking state machine.

Components never touch the machine's fields; they post one of these onto its
queue and the machine applies them in order on the event loop.
"""
from dataclasses import dataclass
from typing import Optional, Union

from .pipeline import PipelineOutcome
from .vad import BoundaryReason


@dataclass(frozen=True)
class EnableListening:
    pass


@dataclass(frozen=True)
class DisableListening:
    pass


@dataclass(frozen=True)
class UtteranceBoundary:
    span_id: int
    reason: BoundaryReason = BoundaryReason.SILENCE


@dataclass(frozen=True)
class PhaseResult:
    turn_id: int
    outcome: PipelineOutcome


@dataclass(frozen=True)
class PlaybackStarted:
    turn_id: int
    audio_url: str = ""


@dataclass(frozen=True)
class PlaybackFinished:
    turn_id: int
    error: Optional[Exception] = None
    completed: bool = True


@dataclass(frozen=True)
class ResumeListening:
    turn_id: int


@dataclass(frozen=True)
class PauseChanged:
    """Pause state acknowledged through the out-of-band /command path"""
    paused: bool


Event = Union[
    EnableListening, DisableListening, UtteranceBoundary, PhaseResult,
    PlaybackStarted, PlaybackFinished, ResumeListening, PauseChanged,
]
