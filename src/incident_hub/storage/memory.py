"""
Thread-safe in-memory implementation of the storage contract.
"""
import logging
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..exceptions import (
    AlertNotFoundError,
    BatchNotFoundError,
    ChannelNotFoundError,
    HistoryNotFoundError,
    IncidentNotFoundError,
    NotFoundError,
    StorageError,
    TemplateNotFoundError,
)
from ..models import (
    Alert,
    DeliveryStatus,
    Incident,
    NotificationBatch,
    NotificationChannel,
    NotificationHistory,
    NotificationTemplate,
    TimelineEntry,
    utcnow,
)
from .base import IncidentFilter, Store, apply_incident_filter
from .locking import LockedTable

logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


class MemoryStore(Store):
    """
    Store backed by LockedTables.

    Each call takes the lock of one table for the duration of that call
    only. Models are deep-copied on the way in and out.

    Example:
        >>> store = MemoryStore()
        >>> incident = store.create_incident(Incident(title="Disk full"))
        >>> store.get_incident(incident.id).title
        'Disk full'
    """

    def __init__(self):
        self._incidents: LockedTable[str, Incident] = LockedTable()
        self._alerts: LockedTable[str, Alert] = LockedTable()
        self._fingerprints: LockedTable[str, str] = LockedTable()
        self._timeline: LockedTable[str, List[TimelineEntry]] = LockedTable()
        self._channels: LockedTable[str, NotificationChannel] = LockedTable()
        self._templates: LockedTable[str, NotificationTemplate] = LockedTable()
        self._history: LockedTable[str, NotificationHistory] = LockedTable()
        self._batches: LockedTable[str, NotificationBatch] = LockedTable()

    # Generic helpers

    def _insert(self, table: LockedTable, model: M, kind: str) -> M:
        if not table.put_if_absent(model.id, _copy(model)):
            raise StorageError(f"{kind} already exists: {model.id}")
        return _copy(model)

    def _fetch(self, table: LockedTable, key: str, not_found: Type[NotFoundError]):
        found = table.get(key)
        if found is None:
            raise not_found(key)
        return _copy(found)

    def _replace(self, table: LockedTable, model: M, not_found: Type[NotFoundError]) -> M:
        if not table.replace(model.id, _copy(model)):
            raise not_found(model.id)
        return _copy(model)

    def _remove(self, table: LockedTable, key: str, not_found: Type[NotFoundError]) -> None:
        if table.pop(key) is None:
            raise not_found(key)

    # Incidents

    def create_incident(self, incident: Incident) -> Incident:
        return self._insert(self._incidents, incident, "incident")

    def get_incident(self, incident_id: str) -> Incident:
        return self._fetch(self._incidents, incident_id, IncidentNotFoundError)

    def update_incident(self, incident: Incident) -> Incident:
        return self._replace(self._incidents, incident, IncidentNotFoundError)

    def delete_incident(self, incident_id: str) -> None:
        self._remove(self._incidents, incident_id, IncidentNotFoundError)
        self._timeline.pop(incident_id)
        logger.warning(f"Incident {incident_id} deleted")

    def list_incidents(self, incident_filter: Optional[IncidentFilter] = None) -> List[Incident]:
        snapshot = [_copy(i) for i in self._incidents.values()]
        return apply_incident_filter(snapshot, incident_filter)

    # Alerts

    def create_alert(self, alert: Alert) -> Alert:
        if not self._fingerprints.put_if_absent(alert.fingerprint, alert.id):
            raise StorageError(f"alert with fingerprint {alert.fingerprint} already exists")
        try:
            return self._insert(self._alerts, alert, "alert")
        except StorageError:
            self._fingerprints.pop(alert.fingerprint)
            raise

    def get_alert(self, alert_id: str) -> Alert:
        return self._fetch(self._alerts, alert_id, AlertNotFoundError)

    def get_alert_by_fingerprint(self, fingerprint: str) -> Optional[Alert]:
        alert_id = self._fingerprints.get(fingerprint)
        if alert_id is None:
            return None
        found = self._alerts.get(alert_id)
        return _copy(found) if found is not None else None

    def update_alert(self, alert: Alert) -> Alert:
        return self._replace(self._alerts, alert, AlertNotFoundError)

    def list_alerts(self) -> List[Alert]:
        return sorted((_copy(a) for a in self._alerts.values()), key=lambda a: a.created_at)

    # Timeline

    def add_timeline_entry(self, entry: TimelineEntry) -> TimelineEntry:
        if not self._incidents.contains(entry.incident_id):
            raise IncidentNotFoundError(entry.incident_id)
        stored = _copy(entry)

        def append(entries: Optional[List[TimelineEntry]]) -> List[TimelineEntry]:
            entries = list(entries or [])
            stored.sequence = len(entries)
            entries.append(stored)
            return entries

        self._timeline.mutate(entry.incident_id, append)
        return _copy(stored)

    def list_timeline_entries(self, incident_id: str) -> List[TimelineEntry]:
        if not self._incidents.contains(incident_id):
            raise IncidentNotFoundError(incident_id)
        return [_copy(e) for e in self._timeline.get(incident_id) or []]

    # Channels

    def create_channel(self, channel: NotificationChannel) -> NotificationChannel:
        return self._insert(self._channels, channel, "channel")

    def get_channel(self, channel_id: str) -> NotificationChannel:
        return self._fetch(self._channels, channel_id, ChannelNotFoundError)

    def update_channel(self, channel: NotificationChannel) -> NotificationChannel:
        channel.updated_at = utcnow()
        return self._replace(self._channels, channel, ChannelNotFoundError)

    def delete_channel(self, channel_id: str) -> None:
        self._remove(self._channels, channel_id, ChannelNotFoundError)

    def list_channels(self) -> List[NotificationChannel]:
        return sorted((_copy(c) for c in self._channels.values()), key=lambda c: c.created_at)

    # Templates

    def create_template(self, template: NotificationTemplate) -> NotificationTemplate:
        return self._insert(self._templates, template, "template")

    def get_template(self, template_id: str) -> NotificationTemplate:
        return self._fetch(self._templates, template_id, TemplateNotFoundError)

    def update_template(self, template: NotificationTemplate) -> NotificationTemplate:
        template.updated_at = utcnow()
        return self._replace(self._templates, template, TemplateNotFoundError)

    def delete_template(self, template_id: str) -> None:
        self._remove(self._templates, template_id, TemplateNotFoundError)

    def list_templates(self) -> List[NotificationTemplate]:
        return sorted((_copy(t) for t in self._templates.values()), key=lambda t: t.created_at)

    # History

    def create_history(self, record: NotificationHistory) -> NotificationHistory:
        return self._insert(self._history, record, "history record")

    def get_history(self, history_id: str) -> NotificationHistory:
        return self._fetch(self._history, history_id, HistoryNotFoundError)

    def update_history(self, record: NotificationHistory) -> NotificationHistory:
        return self._replace(self._history, record, HistoryNotFoundError)

    def list_history(
        self,
        incident_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[NotificationHistory]:
        records = [
            _copy(r) for r in self._history.values()
            if (incident_id is None or r.incident_id == incident_id)
            and (channel_id is None or r.channel_id == channel_id)
            and (status is None or r.status == status)
        ]
        return sorted(records, key=lambda r: r.created_at)

    # Batches

    def create_batch(self, batch: NotificationBatch) -> NotificationBatch:
        return self._insert(self._batches, batch, "batch")

    def get_batch(self, batch_id: str) -> NotificationBatch:
        return self._fetch(self._batches, batch_id, BatchNotFoundError)

    def update_batch(self, batch: NotificationBatch) -> NotificationBatch:
        return self._replace(self._batches, batch, BatchNotFoundError)

    def list_batches(self, channel_id: Optional[str] = None) -> List[NotificationBatch]:
        batches = [
            _copy(b) for b in self._batches.values()
            if channel_id is None or b.channel_id == channel_id
        ]
        return sorted(batches, key=lambda b: b.created_at)
