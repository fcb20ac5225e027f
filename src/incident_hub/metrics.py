"""
In-process metrics for incident-hub.

Counters, gauges and simple histograms (count and sum) exposed in
Prometheus text format at /metrics.
"""

import threading
from typing import Dict, Optional


class MetricsCollector:
    """
    Singleton metrics collector.

    All updates take an internal lock, so the collector can be shared by
    request handlers and background tasks.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize metrics storage."""
        self._update_lock = threading.Lock()
        self._gauges: Dict[str, Dict[str, float]] = {}
        self._counters: Dict[str, Dict[str, int]] = {}
        self._histograms: Dict[str, Dict[str, list]] = {}

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """
        Set a gauge metric value.

        Args:
            name: Metric name
            value: Metric value
            labels: Label dictionary (e.g., {'channel': 'email'})
        """
        label_key = self._make_label_key(labels or {})
        with self._update_lock:
            self._gauges.setdefault(name, {})[label_key] = value

    def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        """
        Increment a counter metric.

        Args:
            name: Metric name
            value: Increment amount (default 1)
            labels: Label dictionary
        """
        label_key = self._make_label_key(labels or {})
        with self._update_lock:
            series = self._counters.setdefault(name, {})
            series[label_key] = series.get(label_key, 0) + value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """
        Record a histogram observation.

        Only the observation count and sum are kept.
        """
        label_key = self._make_label_key(labels or {})
        with self._update_lock:
            series = self._histograms.setdefault(name, {})
            count, total = series.get(label_key, [0, 0.0])
            series[label_key] = [count + 1, total + value]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._update_lock:
            return self._counters.get(name, {}).get(self._make_label_key(labels or {}), 0)

    def get_metrics(self) -> str:
        """
        Get all metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        with self._update_lock:
            for name, labels_dict in self._gauges.items():
                lines.append(f"# TYPE {name} gauge")
                for label_key, value in labels_dict.items():
                    lines.append(f"{name}{{{label_key}}} {value}")

            for name, labels_dict in self._counters.items():
                lines.append(f"# TYPE {name} counter")
                for label_key, value in labels_dict.items():
                    lines.append(f"{name}{{{label_key}}} {value}")

            for name, labels_dict in self._histograms.items():
                lines.append(f"# TYPE {name} histogram")
                for label_key, (count, total) in labels_dict.items():
                    lines.append(f"{name}_count{{{label_key}}} {count}")
                    lines.append(f"{name}_sum{{{label_key}}} {total}")

        return "\n".join(lines)

    def reset(self) -> None:
        """Drop every series. Intended for tests."""
        with self._update_lock:
            self._gauges.clear()
            self._counters.clear()
            self._histograms.clear()

    def _make_label_key(self, labels: Dict[str, str]) -> str:
        """Convert label dict to string key."""
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


# Singleton instance
metrics = MetricsCollector()


def track_webhook_request(status: str):
    """Count inbound webhook requests by outcome (ok, duplicate, rejected, error)."""
    metrics.increment_counter(
        "incident_hub_webhook_requests_total",
        1,
        {"status": status}
    )


def track_alerts_received(count: int):
    metrics.increment_counter("incident_hub_alerts_received_total", count)


def track_incident_created(severity: str):
    """Count incidents opened by the correlation engine."""
    metrics.increment_counter(
        "incident_hub_incidents_created_total",
        1,
        {"severity": severity}
    )


def track_notification(channel_type: str, status: str):
    """Count delivery outcomes per channel type."""
    metrics.increment_counter(
        "incident_hub_notifications_total",
        1,
        {"channel": channel_type, "status": status}
    )


def track_notification_duration(channel_type: str, seconds: float):
    """Track time spent delivering, retries included."""
    metrics.record_histogram(
        "incident_hub_notification_duration_seconds",
        seconds,
        {"channel": channel_type}
    )


def track_incident_response(mtta_seconds: float, mttr_seconds: float):
    metrics.set_gauge("incident_hub_mtta_seconds", mtta_seconds)
    metrics.set_gauge("incident_hub_mttr_seconds", mttr_seconds)


def get_metrics_text() -> str:
    """
    Get all metrics in Prometheus text format.

    This is exposed via the /metrics endpoint.

    Returns:
        Prometheus-formatted metrics
    """
    return metrics.get_metrics()
