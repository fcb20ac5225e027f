"""
Version information for incident-hub.

This module provides a single source of truth for version information
across the entire codebase.
"""

__version__ = "1.2.0"

VERSION_INFO = {
    "version": __version__,
    "api_version": "v1",
    "name": "incident-hub",
    "full_name": "Incident Hub - alert correlation and notification delivery",
}


def get_version() -> str:
    """Return the current version string."""
    return __version__


def get_version_info() -> dict:
    """Return detailed version information."""
    return VERSION_INFO.copy()
