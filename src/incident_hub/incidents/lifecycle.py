"""
Incident lifecycle management.

Owns the open -> acknowledged -> resolved state machine, the timeline,
tags and assignment, bulk operations, and MTTA/MTTR aggregation.

Every read-modify-write on an incident runs under that incident's lock,
so concurrent webhook batches and API calls never lose each other's
updates. Listeners are notified after the lock is released.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ..exceptions import IncidentHubError, InvalidTransitionError, ValidationError
from ..metrics import track_incident_response
from ..models import (
    BulkOperationFailure,
    BulkOperationResult,
    Incident,
    IncidentMetrics,
    IncidentStatus,
    NotificationType,
    Severity,
    TimelineEntry,
    TimelineEntryType,
    utcnow,
)
from ..storage import IncidentFilter, Store

logger = logging.getLogger(__name__)

Listener = Callable[[NotificationType, Incident], None]


class IncidentManager:
    """
    Example:
        >>> manager = IncidentManager(store)
        >>> incident = manager.create_incident("HighCPU on api-01", severity=Severity.CRITICAL)
        >>> manager.acknowledge(incident.id, assignee_id="alice")
        >>> manager.resolve(incident.id)
        >>> manager.calculate_metrics().mtta
    """

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock
        self._listeners: List[Listener] = []
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Events

    def subscribe(self, listener: Listener) -> None:
        """Register a callable invoked as listener(event_type, incident)."""
        self._listeners.append(listener)

    def _emit(self, event_type: NotificationType, incident: Incident) -> None:
        for listener in self._listeners:
            try:
                listener(event_type, incident.model_copy(deep=True))
            except Exception as e:
                logger.error(f"Listener error for {event_type.value} on incident {incident.id}: {e}")

    # Locking

    def _lock_for(self, incident_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(incident_id)
            if lock is None:
                lock = self._locks[incident_id] = threading.Lock()
            return lock

    def _forget_lock(self, incident_id: str) -> None:
        """Drop an idle per-incident lock; a later edit recreates it."""
        with self._locks_guard:
            lock = self._locks.get(incident_id)
            if lock is not None and not lock.locked():
                del self._locks[incident_id]

    @contextmanager
    def _editing(self, incident_id: str) -> Iterator[Incident]:
        """Load an incident under its lock and save it on normal exit."""
        with self._lock_for(incident_id):
            incident = self.store.get_incident(incident_id)
            yield incident
            incident.updated_at = self._now(incident)
            self.store.update_incident(incident)

    def _now(self, incident: Incident) -> datetime:
        # Timestamps never precede creation even if the clock steps back
        return max(self.clock(), incident.created_at)

    def _record(
        self,
        incident_id: str,
        entry_type: TimelineEntryType,
        content: str,
        user_id: Optional[str] = None,
        **metadata: Any,
    ) -> TimelineEntry:
        return self.store.add_timeline_entry(TimelineEntry(
            incident_id=incident_id,
            entry_type=entry_type,
            user_id=user_id,
            content=content,
            metadata=metadata,
            created_at=self.clock(),
        ))

    # Creation and lookup

    def create_incident(
        self,
        title: str,
        description: str = "",
        severity: Severity = Severity.MEDIUM,
        alert_ids: Optional[Iterable[str]] = None,
        labels: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
    ) -> Incident:
        if not title or not title.strip():
            raise ValidationError("incident title is required")
        now = self.clock()
        incident = Incident(
            title=title,
            description=description,
            severity=severity,
            created_at=now,
            updated_at=now,
            labels=dict(labels or {}),
        )
        for alert_id in alert_ids or []:
            incident.attach_alert(alert_id)

        created = self.store.create_incident(incident)
        self._record(created.id, TimelineEntryType.CREATED, f"Incident created: {title}", user_id,
                     severity=severity.value)
        logger.info(f"Created incident {created.id} ({severity.value}): {title}")
        self._emit(NotificationType.INCIDENT_CREATED, created)
        return created

    def get_incident(self, incident_id: str) -> Incident:
        return self.store.get_incident(incident_id)

    def list_incidents(self, incident_filter: Optional[IncidentFilter] = None) -> List[Incident]:
        return self.store.list_incidents(incident_filter)

    def active_incidents(self) -> List[Incident]:
        """Open and acknowledged incidents, oldest first."""
        return [
            i for i in self.store.list_incidents()
            if i.status != IncidentStatus.RESOLVED
        ]

    def delete_incident(self, incident_id: str) -> None:
        """Administrative removal."""
        with self._lock_for(incident_id):
            self.store.delete_incident(incident_id)
        self._forget_lock(incident_id)

    # State machine

    def acknowledge(
        self,
        incident_id: str,
        assignee_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Incident:
        """
        open -> acknowledged.

        Raises:
            InvalidTransitionError: If the incident is not open
        """
        with self._editing(incident_id) as incident:
            if incident.status != IncidentStatus.OPEN:
                raise InvalidTransitionError("incident", incident.status.value, IncidentStatus.ACKNOWLEDGED.value)
            incident.status = IncidentStatus.ACKNOWLEDGED
            incident.acked_at = self._now(incident)
            previous = incident.assignee_id
            if assignee_id:
                incident.assignee_id = assignee_id

        self._record(incident_id, TimelineEntryType.STATUS_CHANGE, "Status changed from open to acknowledged",
                     user_id, old_status="open", new_status="acknowledged")
        if assignee_id and assignee_id != previous:
            self._record(incident_id, TimelineEntryType.ASSIGNMENT, f"Assigned to {assignee_id}",
                         user_id, action="reassigned" if previous else "assigned",
                         old_assignee=previous, new_assignee=assignee_id)
        logger.info(f"Incident {incident_id} acknowledged by {assignee_id or user_id or 'unknown'}")
        self._emit(NotificationType.INCIDENT_ACKNOWLEDGED, incident)
        return incident

    def resolve(self, incident_id: str, user_id: Optional[str] = None) -> Incident:
        """
        acknowledged -> resolved.

        An open incident is acknowledged implicitly at the same instant, so
        acked_at is always set when resolved_at is.

        Raises:
            InvalidTransitionError: If the incident is already resolved
        """
        with self._editing(incident_id) as incident:
            previous = incident.status
            if previous == IncidentStatus.RESOLVED:
                raise InvalidTransitionError("incident", previous.value, IncidentStatus.RESOLVED.value)
            now = self._now(incident)
            if previous == IncidentStatus.OPEN:
                incident.acked_at = now
            incident.status = IncidentStatus.RESOLVED
            incident.resolved_at = now

        self._forget_lock(incident_id)
        if previous == IncidentStatus.OPEN:
            self._record(incident_id, TimelineEntryType.STATUS_CHANGE,
                         "Status changed from open to acknowledged (implicit on resolve)",
                         user_id, old_status="open", new_status="acknowledged", implicit=True)
        self._record(incident_id, TimelineEntryType.STATUS_CHANGE, "Status changed from acknowledged to resolved",
                     user_id, old_status="acknowledged", new_status="resolved")
        logger.info(f"Incident {incident_id} resolved")
        self._emit(NotificationType.INCIDENT_RESOLVED, incident)
        return incident

    def update_status(
        self,
        incident_id: str,
        status: IncidentStatus,
        assignee_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Incident:
        """Move to `status` through the regular transitions."""
        if status == IncidentStatus.ACKNOWLEDGED:
            return self.acknowledge(incident_id, assignee_id, user_id)
        if status == IncidentStatus.RESOLVED:
            return self.resolve(incident_id, user_id)
        current = self.store.get_incident(incident_id)
        raise InvalidTransitionError("incident", current.status.value, status.value)

    # Assignment, tags, comments

    def assign(self, incident_id: str, assignee_id: str, user_id: Optional[str] = None) -> Incident:
        if not assignee_id:
            raise ValidationError("assignee_id is required")
        with self._editing(incident_id) as incident:
            previous = incident.assignee_id
            incident.assignee_id = assignee_id

        self._record(incident_id, TimelineEntryType.ASSIGNMENT, f"Assigned to {assignee_id}", user_id,
                     action="reassigned" if previous else "assigned",
                     old_assignee=previous, new_assignee=assignee_id)
        return incident

    def add_tags(self, incident_id: str, tags: Dict[str, str], user_id: Optional[str] = None) -> Incident:
        if not tags:
            raise ValidationError("no tags given")
        with self._editing(incident_id) as incident:
            incident.tags.update(tags)
        for name, value in tags.items():
            self._record(incident_id, TimelineEntryType.TAG_ADDED, f"Tag added: {name}={value}", user_id,
                         tag=name, value=value)
        return incident

    def remove_tags(self, incident_id: str, names: List[str], user_id: Optional[str] = None) -> Incident:
        with self._editing(incident_id) as incident:
            removed = [name for name in names if incident.tags.pop(name, None) is not None]
        for name in removed:
            self._record(incident_id, TimelineEntryType.TAG_REMOVED, f"Tag removed: {name}", user_id, tag=name)
        return incident

    def add_comment(self, incident_id: str, content: str, user_id: Optional[str] = None) -> TimelineEntry:
        if not content or not content.strip():
            raise ValidationError("comment content is required")
        self.store.get_incident(incident_id)
        return self._record(incident_id, TimelineEntryType.COMMENT, content, user_id)

    def get_timeline(self, incident_id: str) -> List[TimelineEntry]:
        """Entries in creation order."""
        return self.store.list_timeline_entries(incident_id)

    def attach_alert(self, incident_id: str, alert_id: str) -> Incident:
        """
        Add an alert to an active incident.

        Raises:
            InvalidTransitionError: If the incident was resolved meanwhile
        """
        with self._editing(incident_id) as incident:
            if incident.status == IncidentStatus.RESOLVED:
                raise InvalidTransitionError("incident", incident.status.value, "grouped")
            added = incident.attach_alert(alert_id)
        if added:
            self._record(incident_id, TimelineEntryType.ALERT_GROUPED, f"Alert {alert_id} grouped",
                         alert_id=alert_id)
        return incident

    # Bulk operations

    def _bulk(self, incident_ids: List[str], operation: Callable[[str], Any]) -> BulkOperationResult:
        result = BulkOperationResult()
        for incident_id in incident_ids:
            try:
                operation(incident_id)
                result.processed_count += 1
            except IncidentHubError as e:
                result.failed_count += 1
                result.failures.append(BulkOperationFailure(incident_id=incident_id, error=str(e)))
        logger.info(
            f"Bulk operation on {len(incident_ids)} incidents: "
            f"{result.processed_count} processed, {result.failed_count} failed"
        )
        return result

    def bulk_acknowledge(
        self,
        incident_ids: List[str],
        assignee_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> BulkOperationResult:
        return self._bulk(incident_ids, lambda i: self.acknowledge(i, assignee_id, user_id))

    def bulk_resolve(self, incident_ids: List[str], user_id: Optional[str] = None) -> BulkOperationResult:
        return self._bulk(incident_ids, lambda i: self.resolve(i, user_id))

    def bulk_assign(
        self,
        incident_ids: List[str],
        assignee_id: str,
        user_id: Optional[str] = None,
    ) -> BulkOperationResult:
        return self._bulk(incident_ids, lambda i: self.assign(i, assignee_id, user_id))

    def bulk_update_status(
        self,
        incident_ids: List[str],
        status: IncidentStatus,
        assignee_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> BulkOperationResult:
        return self._bulk(incident_ids, lambda i: self.update_status(i, status, assignee_id, user_id))

    # Metrics

    def calculate_metrics(self) -> IncidentMetrics:
        """
        Aggregate counts and mean response times over all incidents.

        MTTA = mean(acked_at - created_at) over acknowledged incidents,
        MTTR = mean(resolved_at - created_at) over resolved incidents;
        both are zero when there are no samples.
        """
        incidents = self.store.list_incidents()
        metrics = IncidentMetrics(total_incidents=len(incidents))
        ack_times: List[timedelta] = []
        resolve_times: List[timedelta] = []

        for incident in incidents:
            status = incident.status.value
            severity = incident.severity.value
            metrics.by_status[status] = metrics.by_status.get(status, 0) + 1
            metrics.by_severity[severity] = metrics.by_severity.get(severity, 0) + 1
            if incident.acked_at is not None:
                ack_times.append(incident.acked_at - incident.created_at)
            if incident.resolved_at is not None:
                resolve_times.append(incident.resolved_at - incident.created_at)

        metrics.open_incidents = metrics.by_status.get(IncidentStatus.OPEN.value, 0)
        metrics.acknowledged_incidents = metrics.by_status.get(IncidentStatus.ACKNOWLEDGED.value, 0)
        metrics.resolved_incidents = metrics.by_status.get(IncidentStatus.RESOLVED.value, 0)
        if ack_times:
            metrics.mtta = sum(ack_times, timedelta(0)) / len(ack_times)
        if resolve_times:
            metrics.mttr = sum(resolve_times, timedelta(0)) / len(resolve_times)
        track_incident_response(metrics.mtta.total_seconds(), metrics.mttr.total_seconds())
        return metrics
