"""Structured logging configuration for Engram."""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Callable, Optional

from .config import settings

# Context variable for operation tracking
operation_id_var: ContextVar[str] = ContextVar('operation_id', default='')


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "operation_id": operation_id_var.get(''),
        }

        # Add extra fields
        if hasattr(record, 'duration_ms'):
            log_data['duration_ms'] = record.duration_ms
        if hasattr(record, 'operation'):
            log_data['operation'] = record.operation
        if record.exc_info:
            log_data['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def with_operation_id(func: Callable) -> Callable:
    """Decorator to tag a call's log records with an operation ID and time it."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        # Nested calls keep the outer operation ID
        token = None
        if not operation_id_var.get(''):
            token = operation_id_var.set(str(uuid.uuid4())[:8])
        start = time.perf_counter()

        try:
            return func(*args, **kwargs)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger = logging.getLogger(func.__module__)
            logger.debug(
                "Operation completed",
                extra={'duration_ms': round(duration_ms, 2), 'operation': func.__name__}
            )
            if token is not None:
                operation_id_var.reset(token)

    return wrapper


def configure_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> logging.Logger:
    """
    Attach a stderr handler to the ``engram`` logger.

    Args:
        level: Log level name (default: settings.log_level)
        json_format: Emit JSON lines (default: settings.log_json)

    Returns:
        The configured package logger
    """
    level = level or settings.log_level
    json_format = settings.log_json if json_format is None else json_format

    root = logging.getLogger("engram")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_engram_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler._engram_handler = True
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root.addHandler(handler)

    return root
