"""
VERA - hands-free voice conversation client

Segments live microphone audio into utterances with an energy-based VAD,
exchanges each one with the VERA backend and plays the spoken reply before
listening again.
"""

__version__ = "1.0.0"
__author__ = "VERA Team"

from .cli import main

__all__ = ["main"]
