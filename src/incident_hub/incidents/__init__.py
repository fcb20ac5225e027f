"""Incident lifecycle."""
from .lifecycle import IncidentManager

__all__ = ["IncidentManager"]
