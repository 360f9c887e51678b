"""
VERA centralized error handling and exception taxonomy
"""
import time
import traceback
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .logging_utils import setup_logger

logger = setup_logger("vera.error_handler")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class VeraException(Exception):
    """Base exception for voice client errors"""

    def __init__(self, message: str, component: str = "unknown", operation: str = "unknown", **kwargs):
        super().__init__(message)
        self.component = component
        self.operation = operation
        self.context = kwargs


class DeviceError(VeraException):
    """Microphone access denied or no input device available"""
    pass


class NetworkError(VeraException):
    """Backend request failed or returned a non-success status"""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ProtocolError(VeraException):
    """Backend response was received but is missing or malformed fields"""
    pass


class PlaybackError(VeraException):
    """Synthesized reply audio could not be fetched, decoded or started"""
    pass


class ConfigurationError(VeraException, ValueError):
    """Invalid configuration file or value"""
    pass


# Status lines shown to the user when an error is resolved into a transition
USER_MESSAGES = {
    "DeviceError": "Microphone blocked or unavailable",
    "NetworkError": "Couldn't reach VERA, listening again",
    "ProtocolError": "Unexpected reply from VERA, listening again",
    "PlaybackError": "Couldn't play the reply, listening again",
    "ConfigurationError": "Configuration error",
}


def user_message(error: Exception) -> str:
    """Human-readable status line for an error."""
    for cls in type(error).__mro__:
        if cls.__name__ in USER_MESSAGES:
            return USER_MESSAGES[cls.__name__]
    return "Something went wrong, listening again"


class ErrorHandler:
    """Centralized error recording and reporting"""

    def __init__(self, max_history_size: int = 1000):
        self.error_count = 0
        self.error_history: List[Dict[str, Any]] = []
        self.max_history_size = max_history_size

    def handle_error(self, error: Exception, context: ErrorContext,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> Dict[str, Any]:
        """Handle an error with context and severity"""
        error_id = f"ERR_{int(time.time() * 1000000)}"
        self.error_count += 1

        error_details = {
            'error_id': error_id,
            'type': error.__class__.__name__,
            'message': str(error),
            'user_message': user_message(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': {
                'component': context.component,
                'operation': context.operation,
                'session_id': context.session_id,
                'metadata': context.metadata
            },
            'severity': severity.value,
            'timestamp': context.timestamp.isoformat(),
            'count': self.error_count
        }

        self._log_error(error_details, severity)
        self._add_to_history(error_details)

        return error_details

    def _log_error(self, error_details: Dict[str, Any], severity: ErrorSeverity) -> None:
        """Log error with appropriate level"""
        log_message = (f"[{error_details['error_id']}] {error_details['context']['component']}."
                       f"{error_details['context']['operation']} {error_details['type']}: {error_details['message']}")

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.HIGH:
            logger.error(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message, extra={'error_details': error_details})
        else:
            logger.info(log_message, extra={'error_details': error_details})

    def _add_to_history(self, error_details: Dict[str, Any]) -> None:
        """Add error to history, removing old entries if needed"""
        self.error_history.append(error_details)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        return {
            'total_errors': self.error_count,
            'recent_errors': len(self.error_history),
            'error_types': self._get_error_type_counts()
        }

    def _get_error_type_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for error in self.error_history[-100:]:
            error_type = error['type']
            counts[error_type] = counts.get(error_type, 0) + 1
        return counts

    def clear_error_history(self) -> None:
        """Clear error history"""
        self.error_history.clear()
        self.error_count = 0


def get_error_handler() -> ErrorHandler:
    """Get or create error handler instance"""
    if not hasattr(get_error_handler, '_instance'):
        get_error_handler._instance = ErrorHandler()
    return get_error_handler._instance


def handle_error(error: Exception, component: str, operation: str,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **context_kwargs) -> Dict[str, Any]:
    """Convenience function to handle errors"""
    context = ErrorContext(component=component, operation=operation, **context_kwargs)
    return get_error_handler().handle_error(error, context, severity)
