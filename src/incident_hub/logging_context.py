"""
Structured logging with correlation IDs.

This module provides context-aware logging that automatically includes
correlation IDs (request_id, incident_id, channel_id, notification_id)
in all log messages.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

CONTEXT_FIELDS = ('request_id', 'incident_id', 'channel_id', 'notification_id')

# Context variables survive thread-local and async boundaries alike
request_context: contextvars.ContextVar[dict] = contextvars.ContextVar(
    'request_context', default={}
)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically injects correlation IDs into log records.

    Usage:
        logger = get_logger(__name__)
        with LoggingContext(request_id='abc-123', incident_id='inc-1'):
            logger.info("Delivering notification")
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        """Inject context variables into log extra fields."""
        ctx = request_context.get({})
        extra = dict(kwargs.get('extra') or {})

        for key in CONTEXT_FIELDS:
            value = ctx.get(key)
            if value is not None:
                extra.setdefault(key, value)

        kwargs['extra'] = extra
        return msg, kwargs


class CorrelationFilter(logging.Filter):
    """
    Handler filter that stamps the current correlation context onto every
    record, so plain module loggers carry the same IDs as ContextualLogger.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = request_context.get({})
        for key in CONTEXT_FIELDS:
            if key in ctx and not hasattr(record, key):
                setattr(record, key, ctx[key])
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON objects with consistent fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def get_logger(name: str) -> ContextualLogger:
    """
    Get a contextual logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextualLogger instance
    """
    return ContextualLogger(logging.getLogger(name), {})


def set_context(**kwargs: Any) -> contextvars.Token:
    """
    Set correlation context.

    Returns:
        Token to reset context later
    """
    current = request_context.get({}).copy()
    current.update(kwargs)
    return request_context.set(current)


def get_context() -> dict:
    """Get current correlation context."""
    return request_context.get({}).copy()


def clear_context() -> None:
    """Clear correlation context."""
    request_context.set({})


class LoggingContext:
    """
    Context manager for setting logging context.

    Usage:
        with LoggingContext(incident_id=incident.id):
            logger.info("Processing")  # Includes incident_id
    """

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.token: Optional[contextvars.Token] = None

    def __enter__(self):
        self.token = set_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token:
            request_context.reset(self.token)
        return False
