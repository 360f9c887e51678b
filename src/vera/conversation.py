#!/usr/bin/env python3
"""
VERA conversation state and log.

TurnState names the four primary states of the turn-taking loop. The
ConversationLog keeps the exchanges surfaced to the user and notifies the
renderer of each new message.
"""
import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .logging_utils import setup_logger

logger = setup_logger("vera.conversation")


class TurnState(Enum):
    """Primary turn-taking states"""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


@dataclass
class Message:
    """Message in conversation history"""
    timestamp: float
    sender: str  # "user" or "assistant"
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class ConversationLog:
    """Bounded history of user/assistant exchanges"""

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self.history: List[Message] = []
        self.turn_count = 0
        self.callbacks: List[Callable[[Message], None]] = []

    def add_exchange(self, transcript: str, reply: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Append the user's transcript followed by the assistant's reply."""
        now = time.time()
        self.turn_count += 1
        self._add(Message(timestamp=now, sender="user", content=transcript, metadata=dict(metadata or {})))
        self._add(Message(timestamp=now, sender="assistant", content=reply, metadata=dict(metadata or {})))
        logger.info(f"Exchange {self.turn_count}: {transcript[:50]!r} -> {reply[:50]!r}")

    def _add(self, message: Message) -> None:
        self.history.append(message)

        if len(self.history) > self.max_history:
            removed_count = len(self.history) - self.max_history
            self.history = self.history[removed_count:]
            logger.debug(f"Trimmed history: removed {removed_count} old messages")

        for callback in self.callbacks:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Conversation callback error: {e}")

    def register_callback(self, callback: Callable[[Message], None]) -> None:
        self.callbacks.append(callback)

    def get_recent_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [asdict(msg) for msg in self.history[-limit:]]

    def clear(self) -> None:
        self.history.clear()
        self.turn_count = 0
