"""
Session id bootstrap.

A single durable key, ``session_id``, stored in a small JSON file. It is
generated once and reused on every later start.
"""
import json
import os
import uuid
from typing import Any, Dict, Optional

from .logging_utils import setup_logger

logger = setup_logger("vera.session")

SESSION_KEY = "session_id"


class SessionStore:
    """JSON-file key-value store"""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)


def load_or_create_session_id(store: SessionStore) -> str:
    session_id: Optional[str] = store.get(SESSION_KEY)
    if isinstance(session_id, str) and session_id:
        return session_id
    session_id = str(uuid.uuid4())
    store.set(SESSION_KEY, session_id)
    logger.info(f"Created new session {session_id}")
    return session_id
