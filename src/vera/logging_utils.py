#!/usr/bin/env python3
"""
Unified logging utility for the VERA voice client.

Provides setup_logger(name, logfile) to configure a rotating file handler and
console handler with consistent formatting. Idempotent: reuses existing handlers
if already configured for the logger.

Supports both traditional and structured JSON logging.
"""
from __future__ import annotations

import logging
import os
import json
import uuid
from logging.handlers import RotatingFileHandler
from typing import Optional
from datetime import datetime


DEFAULT_LOGFILE = os.environ.get("VERA_LOG_FILE", "logs/vera.log")

_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'message',
    'taskName', 'request_id', 'error_details',
})


def setup_logger(name: str, logfile: Optional[str] = None, level: int = logging.INFO,
                 structured: bool = False) -> logging.Logger:
    """Create or return a configured logger with rotating file + console handlers.

    Args:
        name: Logger name
        logfile: Log file path (defaults to VERA_LOG_FILE or logs/vera.log)
        level: Log level
        structured: Whether to use structured JSON logging
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False
    logfile = logfile or DEFAULT_LOGFILE

    # Ensure logs directory exists
    try:
        logdir = os.path.dirname(logfile)
        if logdir and not os.path.exists(logdir):
            os.makedirs(logdir, exist_ok=True)
    except OSError:
        pass

    if structured:
        fmt = JSONFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        fh = RotatingFileHandler(logfile, maxBytes=2_000_000, backupCount=3)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        # If file handler fails, rely on console handler only
        pass

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


def set_level(level: int) -> None:
    """Apply a log level to every logger configured under the ``vera`` namespace."""
    for name, existing in logging.Logger.manager.loggerDict.items():
        if name == "vera" or name.startswith("vera."):
            if isinstance(existing, logging.Logger):
                existing.setLevel(level)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, include_request_id: bool = True):
        super().__init__()
        self.include_request_id = include_request_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if self.include_request_id and hasattr(record, 'request_id'):
            log_entry['request_id'] = record.request_id

        if hasattr(record, 'error_details') and record.error_details:
            log_entry['error_details'] = record.error_details

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def log_with_context(logger: logging.Logger, level: int, message: str, **context) -> None:
    """Log message with additional context"""
    request_id = context.pop('request_id', str(uuid.uuid4())[:8])

    record = logging.LogRecord(
        name=logger.name,
        level=level,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None
    )

    record.request_id = request_id
    for key, value in context.items():
        setattr(record, key, value)

    if logger.isEnabledFor(level):
        logger.handle(record)


__all__ = ["setup_logger", "set_level", "JSONFormatter", "log_with_context"]
