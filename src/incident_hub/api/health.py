"""
Health check API endpoints.

Provides health and readiness checks for monitoring.
"""

import logging
import time
from typing import Dict, Optional

from ..exceptions import StorageError
from ..storage import Store
from ..version import VERSION_INFO, __version__

logger = logging.getLogger(__name__)

# Track server start time
_start_time = time.time()


def get_health_status() -> Dict:
    """
    Liveness: the process is up and serving.

    Returns:
        Health status dictionary
    """
    uptime = time.time() - _start_time

    return {
        "status": "healthy",
        "uptime_seconds": round(uptime, 2),
        "service": VERSION_INFO["name"],
        "version": __version__,
    }


def get_readiness_status(store: Store, background_running: Optional[bool] = None) -> Dict:
    """
    Readiness: storage answers and, when known, the background sweeps are alive.

    Returns:
        Readiness status dictionary
    """
    try:
        storage_ok = store.ping()
    except StorageError as e:
        logger.warning(f"Readiness check: storage unavailable: {e}")
        storage_ok = False

    checks = {"storage": storage_ok}
    if background_running is not None:
        checks["background_tasks"] = background_running

    is_ready = all(checks.values())

    return {
        "status": "ready" if is_ready else "not_ready",
        "checks": checks
    }


def get_version_info() -> Dict:
    """
    Get version information.

    Returns:
        Version information dictionary
    """
    return {
        "version": __version__,
        "api_version": VERSION_INFO["api_version"],
        "platform": VERSION_INFO["name"],
    }
