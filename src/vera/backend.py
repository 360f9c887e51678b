"""
HTTP client for the VERA inference backend.

All methods are blocking (requests). Async callers move them off the event
loop with asyncio.to_thread.
"""
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from .error_handler import NetworkError, ProtocolError
from .logging_utils import setup_logger

logger = setup_logger("vera.backend")

HEALTH_CHECK_TIMEOUT = 5  # seconds
VALID_ACTIONS = ("pause", "unpause")


class BackendClient:
    """Thin wrapper over the backend's /health, /infer, /continue and /command endpoints"""

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def resolve_url(self, ref: str) -> str:
        """Resolve a possibly relative audio reference against the backend base URL."""
        return urljoin(self.base_url + "/", ref)

    def _request(self, method: str, path: str, operation: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.http.request(method, self._url(path), **kwargs)
        except requests.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}", component="backend", operation=operation) from e
        if not response.ok:
            raise NetworkError(f"{method} {path} returned HTTP {response.status_code}",
                               status_code=response.status_code, component="backend", operation=operation)
        return response

    def _json(self, response: requests.Response, operation: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"{operation}: response is not JSON", component="backend", operation=operation) from e
        if not isinstance(data, dict):
            raise ProtocolError(f"{operation}: expected a JSON object", component="backend", operation=operation)
        return data

    def check_health(self) -> bool:
        """Liveness probe. Never raises."""
        try:
            response = self.http.get(self._url("/health"), timeout=HEALTH_CHECK_TIMEOUT)
            return response.ok
        except requests.RequestException as e:
            logger.warning(f"Backend health check failed: {e}")
            return False

    def infer(self, audio: bytes, session_id: str) -> Dict[str, Any]:
        """Phase A: upload an utterance for transcription."""
        response = self._request(
            "POST", "/infer", "infer",
            files={"audio": ("utterance.wav", audio, "audio/wav")},
            data={"session_id": session_id},
        )
        return self._json(response, "infer")

    def continue_dialogue(self, session_id: str, transcript: str) -> Dict[str, Any]:
        """Phase B: continue the dialogue with a transcript."""
        response = self._request(
            "POST", "/continue", "continue",
            json={"session_id": session_id, "transcript": transcript},
        )
        return self._json(response, "continue")

    def send_command(self, session_id: str, action: str) -> Dict[str, Any]:
        """Out-of-band pause/unpause control."""
        if action not in VALID_ACTIONS:
            raise ValueError(f"Unknown command action: {action}")
        response = self._request(
            "POST", "/command", "command",
            json={"session_id": session_id, "action": action},
        )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"result": data}

    def fetch_audio(self, ref: str) -> bytes:
        url = self.resolve_url(ref)
        try:
            response = self.http.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"GET {url} failed: {e}", component="backend", operation="fetch_audio") from e
        if not response.ok:
            raise NetworkError(f"GET {url} returned HTTP {response.status_code}",
                               status_code=response.status_code, component="backend", operation="fetch_audio")
        return response.content

    def close(self) -> None:
        self.http.close()
