"""
Storage contract consumed by the correlation engine, lifecycle manager
and notification pipeline.

Implementations raise the typed NotFoundError subclasses for unknown ids
and StorageError for backend failures. Returned models are copies: mutating
them has no effect until passed back through an update call.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..models import (
    Alert,
    DeliveryStatus,
    Incident,
    IncidentStatus,
    NotificationBatch,
    NotificationChannel,
    NotificationHistory,
    NotificationTemplate,
    Severity,
    TimelineEntry,
)

_ORDERABLE_FIELDS = {"created_at", "updated_at", "severity", "status", "title"}
_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


@dataclass
class IncidentFilter:
    """
    Optional filters for incident listing.

    None means "not filtered". An empty string for assignee_id is a real
    value and matches unassigned incidents.

    order_by accepts a field name, optionally prefixed with '-' for
    descending order, e.g. "-created_at".
    """
    status: Optional[IncidentStatus] = None
    severity: Optional[Severity] = None
    assignee_id: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    order_by: Optional[str] = None

    def validate(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must not be negative")
        if self.offset is not None and self.offset < 0:
            raise ValueError("offset must not be negative")
        if self.order_by is not None and self.order_by.lstrip("-") not in _ORDERABLE_FIELDS:
            raise ValueError(f"cannot order incidents by '{self.order_by}'")


def apply_incident_filter(
    incidents: Iterable[Incident],
    incident_filter: Optional[IncidentFilter],
) -> List[Incident]:
    """Filter, order and paginate a snapshot of incidents."""
    result = list(incidents)
    if incident_filter is None:
        return sorted(result, key=lambda i: i.created_at)

    incident_filter.validate()
    if incident_filter.status is not None:
        result = [i for i in result if i.status == incident_filter.status]
    if incident_filter.severity is not None:
        result = [i for i in result if i.severity == incident_filter.severity]
    if incident_filter.assignee_id is not None:
        wanted = incident_filter.assignee_id
        result = [i for i in result if (i.assignee_id or "") == wanted]

    order_by = incident_filter.order_by or "created_at"
    field_name = order_by.lstrip("-")
    if field_name == "severity":
        key = lambda i: _SEVERITY_RANK[i.severity]
    elif field_name == "status":
        key = lambda i: i.status.rank
    else:
        key = lambda i: getattr(i, field_name)
    result.sort(key=key, reverse=order_by.startswith("-"))

    start = incident_filter.offset or 0
    if incident_filter.limit is not None:
        return result[start:start + incident_filter.limit]
    return result[start:]


class Store(ABC):
    """CRUD contract for every persisted entity."""

    # Incidents
    @abstractmethod
    def create_incident(self, incident: Incident) -> Incident: ...

    @abstractmethod
    def get_incident(self, incident_id: str) -> Incident: ...

    @abstractmethod
    def update_incident(self, incident: Incident) -> Incident: ...

    @abstractmethod
    def delete_incident(self, incident_id: str) -> None: ...

    @abstractmethod
    def list_incidents(self, incident_filter: Optional[IncidentFilter] = None) -> List[Incident]: ...

    # Alerts
    @abstractmethod
    def create_alert(self, alert: Alert) -> Alert: ...

    @abstractmethod
    def get_alert(self, alert_id: str) -> Alert: ...

    @abstractmethod
    def get_alert_by_fingerprint(self, fingerprint: str) -> Optional[Alert]: ...

    @abstractmethod
    def update_alert(self, alert: Alert) -> Alert: ...

    @abstractmethod
    def list_alerts(self) -> List[Alert]: ...

    # Timeline
    @abstractmethod
    def add_timeline_entry(self, entry: TimelineEntry) -> TimelineEntry: ...

    @abstractmethod
    def list_timeline_entries(self, incident_id: str) -> List[TimelineEntry]: ...

    # Notification channels
    @abstractmethod
    def create_channel(self, channel: NotificationChannel) -> NotificationChannel: ...

    @abstractmethod
    def get_channel(self, channel_id: str) -> NotificationChannel: ...

    @abstractmethod
    def update_channel(self, channel: NotificationChannel) -> NotificationChannel: ...

    @abstractmethod
    def delete_channel(self, channel_id: str) -> None: ...

    @abstractmethod
    def list_channels(self) -> List[NotificationChannel]: ...

    # Notification templates
    @abstractmethod
    def create_template(self, template: NotificationTemplate) -> NotificationTemplate: ...

    @abstractmethod
    def get_template(self, template_id: str) -> NotificationTemplate: ...

    @abstractmethod
    def update_template(self, template: NotificationTemplate) -> NotificationTemplate: ...

    @abstractmethod
    def delete_template(self, template_id: str) -> None: ...

    @abstractmethod
    def list_templates(self) -> List[NotificationTemplate]: ...

    # Notification history
    @abstractmethod
    def create_history(self, record: NotificationHistory) -> NotificationHistory: ...

    @abstractmethod
    def get_history(self, history_id: str) -> NotificationHistory: ...

    @abstractmethod
    def update_history(self, record: NotificationHistory) -> NotificationHistory: ...

    @abstractmethod
    def list_history(
        self,
        incident_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[NotificationHistory]: ...

    # Notification batches
    @abstractmethod
    def create_batch(self, batch: NotificationBatch) -> NotificationBatch: ...

    @abstractmethod
    def get_batch(self, batch_id: str) -> NotificationBatch: ...

    @abstractmethod
    def update_batch(self, batch: NotificationBatch) -> NotificationBatch: ...

    @abstractmethod
    def list_batches(self, channel_id: Optional[str] = None) -> List[NotificationBatch]: ...

    def ping(self) -> bool:
        """Readiness probe. Backends override when they can check more."""
        return True
