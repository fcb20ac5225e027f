"""
Alert ingestion for incident-hub.

Deduplicates alerts by fingerprint and groups firing alerts into incidents.
"""

from .correlation import (
    AlertCorrelator,
    CorrelationResult,
    compute_fingerprint,
    decisive_label,
    determine_severity,
    generate_description,
    generate_title,
)

__all__ = [
    "AlertCorrelator",
    "CorrelationResult",
    "compute_fingerprint",
    "decisive_label",
    "determine_severity",
    "generate_description",
    "generate_title",
]
