"""
Storage and persistence for incident-hub.

Provides the storage contract plus in-memory and SQLite implementations.
"""

from .base import IncidentFilter, Store, apply_incident_filter
from .locking import LockedTable, ReadWriteLock
from .memory import MemoryStore
from .sqlite_store import SQLiteStore

__all__ = [
    "IncidentFilter",
    "Store",
    "apply_incident_filter",
    "LockedTable",
    "ReadWriteLock",
    "MemoryStore",
    "SQLiteStore",
]
