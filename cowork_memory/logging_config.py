"""Structured logging configuration for CoworkMemory."""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Callable

# Context variable for request tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(''),
        }

        # Add extra fields
        if hasattr(record, 'duration_ms'):
            log_data['duration_ms'] = record.duration_ms
        if hasattr(record, 'operation'):
            log_data['operation'] = record.operation
        if hasattr(record, 'project_id'):
            log_data['project_id'] = record.project_id
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def with_request_id(func: Callable) -> Callable:
    """Decorator to add a request ID to engine operations."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request_id = str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)
        start = time.perf_counter()

        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger = logging.getLogger(func.__module__)
            logger.debug(
                "Operation completed",
                extra={'duration_ms': round(duration_ms, 2), 'operation': func.__name__}
            )
            request_id_var.reset(token)

    return wrapper


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Install a stderr handler on the package logger."""
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    package_logger = logging.getLogger("cowork_memory")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(level.upper())
    package_logger.propagate = False
