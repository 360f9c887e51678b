"""
Centralized configuration loader and accessors for the VERA voice client.

Loads YAML from `config/config.yaml` (or the file named by VERA_CONFIG) and
provides typed getters aligned with the documented schema
(backend.*, audio.*, vad.*, utterance.*, playback.*, filler.*, session.*,
conversation.*, logging.*).
"""
from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Optional

import yaml

from .error_handler import ConfigurationError
from .logging_utils import setup_logger

logger = setup_logger("vera.config")

_DEFAULT_CONFIG_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "config", "config.yaml"))
_CONFIG_PATH = os.environ.get("VERA_CONFIG", _DEFAULT_CONFIG_PATH)
_CFG: Dict[str, Any] = {}
_LOADED = False

_BOOL_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_BOOL_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})

_STANDARD_SAMPLE_RATES = (8000, 16000, 22050, 24000, 44100, 48000)


def _load() -> None:
    global _CFG, _LOADED
    if _LOADED:
        return
    if os.path.exists(_CONFIG_PATH):
        with open(_CONFIG_PATH, "r") as f:
            _CFG = yaml.safe_load(f) or {}
    else:
        _CFG = {}

    _validate_config(_CFG)
    _LOADED = True


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration values and provide helpful error messages"""
    errors = []
    warnings = []

    backend_cfg = config.get("backend") or {}
    if isinstance(backend_cfg, dict):
        if "url" in backend_cfg:
            url = backend_cfg["url"]
            if not isinstance(url, str) or not _is_valid_url(url):
                errors.append("backend.url must be an http(s) URL")
        if "timeout_sec" in backend_cfg and not _positive_number(backend_cfg["timeout_sec"]):
            errors.append("backend.timeout_sec must be a positive number")

    audio_cfg = config.get("audio") or {}
    if isinstance(audio_cfg, dict):
        if "sample_rate" in audio_cfg:
            sr = audio_cfg["sample_rate"]
            if not _positive_number(sr):
                errors.append("audio.sample_rate must be a positive number")
            elif sr not in _STANDARD_SAMPLE_RATES:
                warnings.append("audio.sample_rate should be a standard rate (8000, 16000, 22050, 24000, 44100, 48000)")
        for key in ("window_size", "block_size"):
            if key in audio_cfg:
                value = audio_cfg[key]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(f"audio.{key} must be a positive integer")

    vad_cfg = config.get("vad") or {}
    if isinstance(vad_cfg, dict):
        if "volume_threshold" in vad_cfg:
            threshold = vad_cfg["volume_threshold"]
            if not isinstance(threshold, (int, float)) or threshold < 0 or threshold > 1:
                errors.append("vad.volume_threshold must be between 0 and 1")
            elif threshold > 0.05:
                warnings.append("vad.volume_threshold is unusually high; quiet speakers may never register")
        for key in ("silence_ms", "max_wait_for_speech_ms", "max_utterance_ms", "poll_interval_ms"):
            if key in vad_cfg and not _positive_number(vad_cfg[key]):
                errors.append(f"vad.{key} must be a positive number")
        if "trailing_ms" in vad_cfg:
            trailing = vad_cfg["trailing_ms"]
            if not isinstance(trailing, (int, float)) or trailing < 0:
                errors.append("vad.trailing_ms must be zero or a positive number")

    utterance_cfg = config.get("utterance") or {}
    if isinstance(utterance_cfg, dict) and "min_audio_bytes" in utterance_cfg:
        min_bytes = utterance_cfg["min_audio_bytes"]
        if not isinstance(min_bytes, int) or isinstance(min_bytes, bool) or min_bytes < 0:
            errors.append("utterance.min_audio_bytes must be a non-negative integer")

    playback_cfg = config.get("playback") or {}
    if isinstance(playback_cfg, dict) and "settle_delay_ms" in playback_cfg:
        delay = playback_cfg["settle_delay_ms"]
        if not isinstance(delay, (int, float)) or delay < 0:
            errors.append("playback.settle_delay_ms must be zero or a positive number")

    filler_cfg = config.get("filler") or {}
    if isinstance(filler_cfg, dict) and filler_cfg.get("audio_path"):
        path = filler_cfg["audio_path"]
        if not isinstance(path, str):
            errors.append("filler.audio_path must be a string")
        elif not os.path.exists(os.path.expanduser(path)):
            warnings.append(f"Filler audio file not found: {path}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        raise ConfigurationError(error_msg, component="config", operation="validate")

    for warning in warnings:
        logger.warning(f"Config warning: {warning}")


def _is_valid_url(url: str) -> bool:
    return bool(re.match(r'^https?://[^\s/]+(/[^\s]*)?$', url))


def set_config_path(path: str) -> None:
    """Point the loader at another YAML file and force a reload on next access."""
    global _CONFIG_PATH
    _CONFIG_PATH = os.path.abspath(os.path.expanduser(path))
    reload_config()


def get(path: str, default: Any = None) -> Any:
    """Dot-path getter from loaded config.

    Example: get("vad.silence_ms", 1800)
    """
    _load()
    cur: Any = _CFG
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def get_typed(path: str, default: Any, cast_type: type) -> Any:
    """Get a configuration value with type casting and default fallback.

    Args:
        path: Dot-separated configuration path
        default: Default value if path not found or casting fails
        cast_type: Type to cast the value to

    Returns:
        The cast value or default
    """
    val = get(path, default)

    if cast_type is bool:
        if isinstance(val, bool):
            return val
        if isinstance(val, str):
            normalized = val.strip().lower()
            if normalized in _BOOL_TRUE_VALUES:
                return True
            if normalized in _BOOL_FALSE_VALUES:
                return False
            return default
        try:
            return bool(val)
        except (TypeError, ValueError):
            return default

    if val is None:
        return default

    if isinstance(val, cast_type):
        return val

    try:
        return cast_type(val)
    except (TypeError, ValueError):
        return default


def get_backend_url() -> str:
    return str(get("backend.url", "http://localhost:8787")).rstrip("/")

def get_request_timeout() -> float:
    return get_typed("backend.timeout_sec", 30.0, float)

def get_sample_rate() -> int:
    return get_typed("audio.sample_rate", 16000, int)

def get_window_size() -> int:
    """Number of most recent samples the VAD inspects per tick."""
    return get_typed("audio.window_size", 2048, int)

def get_block_size() -> int:
    return get_typed("audio.block_size", 512, int)

def get_input_device():
    """Return configured input device (int index or str name) or None."""
    return get("audio.input_device", None)

def get_output_device():
    """Return configured output device (int index or str name) or None."""
    return get("audio.output_device", None)

def get_volume_threshold() -> float:
    return get_typed("vad.volume_threshold", 0.004, float)

def get_silence_ms() -> float:
    return get_typed("vad.silence_ms", 1800.0, float)

def get_trailing_ms() -> float:
    return get_typed("vad.trailing_ms", 0.0, float)

def get_max_wait_for_speech_ms() -> float:
    return get_typed("vad.max_wait_for_speech_ms", 8000.0, float)

def get_max_utterance_ms() -> float:
    return get_typed("vad.max_utterance_ms", 30000.0, float)

def get_poll_interval_ms() -> float:
    return get_typed("vad.poll_interval_ms", 20.0, float)

def get_min_audio_bytes() -> int:
    return get_typed("utterance.min_audio_bytes", 6400, int)

def get_settle_delay_ms() -> float:
    return get_typed("playback.settle_delay_ms", 400.0, float)

def filler_enabled() -> bool:
    return get_typed("filler.enabled", True, bool)

def get_filler_threshold() -> int:
    return get_typed("filler.threshold", 4, int)

def get_filler_audio_path() -> Optional[str]:
    """Local WAV played as a thinking cue, or None when not configured or missing."""
    path = get("filler.audio_path")
    if not path:
        return None
    path = os.path.expanduser(str(path))
    return path if os.path.exists(path) else None

def get_session_store_path() -> str:
    return os.path.expanduser(str(get("session.store_path", "~/.vera/session.json")))

def get_max_history() -> int:
    return get_typed("conversation.max_history", 100, int)

def get_log_level() -> str:
    return str(get("logging.level", "INFO")).upper()


def validate_config_silent() -> tuple[bool, List[str]]:
    """Validate configuration without raising exceptions

    Returns:
        tuple: (is_valid, list_of_errors)
    """
    try:
        if not _LOADED:
            _load()
        _validate_config(_CFG)
        return True, []
    except ValueError as e:
        return False, [str(e)]
    except (OSError, yaml.YAMLError) as e:
        return False, [f"Validation error: {e}"]


def reload_config() -> None:
    """Reload configuration from file on next access"""
    global _CFG, _LOADED
    _LOADED = False
    _CFG = {}
