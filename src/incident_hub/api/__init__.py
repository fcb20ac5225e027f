"""HTTP API for incident-hub."""
from .app import create_app, status_for
from .health import get_health_status, get_readiness_status, get_version_info

__all__ = [
    "create_app",
    "status_for",
    "get_health_status",
    "get_readiness_status",
    "get_version_info",
]
