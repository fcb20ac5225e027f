"""
Alert correlation engine for deduplicating alerts and grouping them into incidents.

Alerts are deduplicated by fingerprint: a re-delivered fingerprint updates
status and end time on the stored alert instead of creating another one.
A firing alert without an incident is grouped into an active incident
whose first alert shares a label, with `service` taking precedence over
`instance` and `instance` over `alertname`; otherwise it opens a new
incident.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..constants import FALLBACK_INCIDENT_TITLE, GROUPING_LABELS
from ..exceptions import AlertNotFoundError, InvalidTransitionError, StorageError
from ..incidents import IncidentManager
from ..metrics import track_alerts_received, track_incident_created
from ..models import Alert, AlertStatus, Incident, Severity
from ..storage import Store

logger = logging.getLogger(__name__)

SEVERITY_ALIASES: Dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "p0": Severity.CRITICAL,
    "high": Severity.HIGH,
    "p1": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "p2": Severity.MEDIUM,
    "low": Severity.LOW,
    "p3": Severity.LOW,
}


def compute_fingerprint(labels: Dict[str, str]) -> str:
    """
    Stable hash of a label set.

    Example:
        >>> compute_fingerprint({"alertname": "HighCPU", "instance": "api-01"})[:8]
    """
    canonical = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def determine_severity(labels: Dict[str, str]) -> Severity:
    """Map the `severity` label (or `priority`) to a severity, medium when unknown."""
    raw = labels.get("severity") or labels.get("priority") or ""
    return SEVERITY_ALIASES.get(raw.strip().lower(), Severity.MEDIUM)


def generate_title(alert: Alert) -> str:
    summary = alert.annotations.get("summary")
    if summary:
        return summary
    alertname = alert.labels.get("alertname")
    if alertname:
        instance = alert.labels.get("instance")
        return f"{alertname} on {instance}" if instance else alertname
    return FALLBACK_INCIDENT_TITLE


def generate_description(alert: Alert) -> str:
    description = alert.annotations.get("description") or alert.annotations.get("summary") or ""
    if description:
        description += "\n\n"
    description += "Alert Details:\n"
    for key, value in sorted(alert.labels.items()):
        description += f"- {key}: {value}\n"
    return description


def decisive_label(
    left: Dict[str, str],
    right: Dict[str, str],
    labels: Sequence[str] = GROUPING_LABELS,
) -> Optional[str]:
    """First grouping label carried (non-empty) by both label sets."""
    for label in labels:
        if left.get(label) and right.get(label):
            return label
    return None


@dataclass
class CorrelationResult:
    """Outcome of one webhook batch."""
    alerts_received: int = 0
    alerts_created: int = 0
    alerts_updated: int = 0
    alerts_grouped: int = 0
    incidents_created: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "alerts_received": self.alerts_received,
            "alerts_created": self.alerts_created,
            "alerts_updated": self.alerts_updated,
            "alerts_grouped": self.alerts_grouped,
            "incidents_created": list(self.incidents_created),
        }


class AlertCorrelator:
    """
    Deduplicates inbound alerts and groups firing ones into incidents.

    Processing is fail-fast: a storage error on one alert stops the rest
    of the batch and propagates to the caller. Alerts and incidents
    committed before the failure stay as they are.

    Example:
        >>> correlator = AlertCorrelator(store, incident_manager)
        >>> result = correlator.process_alerts(alerts)
        >>> result.incidents_created
    """

    def __init__(
        self,
        store: Store,
        incidents: IncidentManager,
        grouping_labels: Sequence[str] = GROUPING_LABELS,
    ):
        self.store = store
        self.incidents = incidents
        self.grouping_labels = tuple(grouping_labels)

    def process_alerts(self, alerts: List[Alert]) -> CorrelationResult:
        """
        Upsert each alert and group the firing ones.

        Args:
            alerts: Alerts in delivery order

        Returns:
            CorrelationResult with per-batch counts

        Raises:
            StorageError: On the first backend failure
        """
        result = CorrelationResult(alerts_received=len(alerts))
        track_alerts_received(len(alerts))

        for incoming in alerts:
            alert, created = self._upsert(incoming)
            if created:
                result.alerts_created += 1
            else:
                result.alerts_updated += 1

            if alert.status == AlertStatus.FIRING and not alert.incident_id:
                incident, is_new = self._group(alert)
                if is_new:
                    result.incidents_created.append(incident.id)
                else:
                    result.alerts_grouped += 1

        logger.info(
            f"Processed {result.alerts_received} alerts: {result.alerts_created} new, "
            f"{result.alerts_updated} updated, {len(result.incidents_created)} incidents created"
        )
        return result

    def _upsert(self, incoming: Alert) -> Tuple[Alert, bool]:
        if not incoming.fingerprint:
            incoming.fingerprint = compute_fingerprint(incoming.labels)

        existing = self.store.get_alert_by_fingerprint(incoming.fingerprint)
        if existing is None:
            try:
                return self.store.create_alert(incoming), True
            except StorageError:
                # Lost an insert race for the same fingerprint
                existing = self.store.get_alert_by_fingerprint(incoming.fingerprint)
                if existing is None:
                    raise

        existing.status = incoming.status
        existing.ends_at = incoming.ends_at
        logger.debug(f"Alert {existing.fingerprint} re-delivered with status {existing.status.value}")
        return self.store.update_alert(existing), False

    def _group(self, alert: Alert) -> Tuple[Incident, bool]:
        """Attach to a matching active incident or open a new one. Returns (incident, created)."""
        target = self.find_matching_incident(alert)
        if target is not None:
            try:
                incident = self.incidents.attach_alert(target.id, alert.id)
                self._link(alert, incident.id)
                logger.info(f"Grouped alert {alert.fingerprint} into incident {incident.id}")
                return incident, False
            except InvalidTransitionError:
                logger.info(f"Incident {target.id} resolved while grouping; opening a new incident")

        severity = determine_severity(alert.labels)
        incident = self.incidents.create_incident(
            title=generate_title(alert),
            description=generate_description(alert),
            severity=severity,
            alert_ids=[alert.id],
            labels=alert.labels,
        )
        self._link(alert, incident.id)
        track_incident_created(severity.value)
        return incident, True

    def _link(self, alert: Alert, incident_id: str) -> None:
        alert.incident_id = incident_id
        self.store.update_alert(alert)

    def find_matching_incident(self, alert: Alert) -> Optional[Incident]:
        """
        Pick the active incident to group `alert` into.

        For each candidate the decisive label is the first grouping label
        present on both the alert and the candidate's first alert; the
        candidate matches when the values of that label are equal.
        Candidates are scanned label by label, so a service match anywhere
        beats an instance match anywhere, and so on.
        """
        candidates: List[Tuple[Incident, str, bool]] = []
        for incident in self.incidents.active_incidents():
            first = self._first_alert(incident)
            if first is None:
                continue
            label = decisive_label(alert.labels, first.labels, self.grouping_labels)
            if label is None:
                continue
            candidates.append((incident, label, alert.labels[label] == first.labels[label]))

        for label in self.grouping_labels:
            for incident, decided_by, matched in candidates:
                if decided_by == label and matched:
                    return incident
        return None

    def _first_alert(self, incident: Incident) -> Optional[Alert]:
        if not incident.alert_ids:
            return None
        try:
            return self.store.get_alert(incident.alert_ids[0])
        except AlertNotFoundError:
            logger.warning(f"Incident {incident.id} references missing alert {incident.alert_ids[0]}")
            return None
