"""
incident-hub: alert correlation, incident lifecycle and multi-channel notifications.
"""
from .version import __version__, VERSION_INFO, get_version, get_version_info
from .logging_context import (
    get_logger,
    set_context,
    get_context,
    clear_context,
    LoggingContext,
)
from .metrics import get_metrics_text
from .config import HubConfig
from .hub import IncidentHub, create_store

__all__ = [
    "__version__",
    "VERSION_INFO",
    "get_version",
    "get_version_info",
    "get_logger",
    "set_context",
    "get_context",
    "clear_context",
    "LoggingContext",
    "get_metrics_text",
    "HubConfig",
    "IncidentHub",
    "create_store",
]
