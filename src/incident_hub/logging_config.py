"""
Process-wide logging setup for the hub.

Every handler installed here carries a CorrelationFilter, so records from
any module logger include the request, incident, channel and notification
IDs active when they were emitted. Plain-text output appends those IDs in
brackets; JSON output puts them in top-level fields.

    >>> from incident_hub.logging_config import setup_logging
    >>> setup_logging(level='DEBUG', log_file='hub.log', json_format=True)
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from .logging_context import CONTEXT_FIELDS, CorrelationFilter, JSONFormatter


_LOGGING_CONFIGURED = False

DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Flask's development server logs every request at INFO
NOISY_LOGGERS = ('werkzeug', 'urllib3')


class CorrelationTextFormatter(logging.Formatter):
    """Plain-text formatter that appends whichever correlation IDs are set."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ids = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        if ids:
            line = f"{line} [{' '.join(ids)}]"
        return line


def _build_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationFilter())
    return handler


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str | Path] = None,
    json_format: bool = False,
    log_format: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure the root logger for the hub process.

    Only the first call installs handlers; later calls adjust the level.

    Args:
        level: Log level name such as 'DEBUG' or 'WARNING'
        log_file: Optional path for a size-rotated log file
        json_format: Emit one JSON object per record
        log_format: Format string for plain-text output
        max_bytes: Rotation threshold for the log file
        backup_count: Rotated files to keep
    """
    global _LOGGING_CONFIGURED

    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if _LOGGING_CONFIGURED:
        return

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = CorrelationTextFormatter(log_format or DEFAULT_LOG_FORMAT)

    root_logger.handlers.clear()
    root_logger.addHandler(_build_handler(logging.StreamHandler(sys.stdout), formatter))

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_build_handler(
            logging.handlers.RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count
            ),
            formatter,
        ))

    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _LOGGING_CONFIGURED = True
    root_logger.info(
        f"Logging configured at {level.upper()} level"
        + (f", writing to {log_file}" if log_file else "")
    )


def reset_logging_config() -> None:
    """Remove installed handlers so setup_logging can run again (tests)."""
    global _LOGGING_CONFIGURED

    logging.getLogger().handlers.clear()
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
    _LOGGING_CONFIGURED = False
