"""
Deferred notification delivery.

Pending entries live in a LockedTable keyed by id. The sweep removes due
entries from that table before dispatching them, so a cancel racing with
the sweep either removes the entry first or gets a not-found error.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from ..constants import MAX_RECURRING_OCCURRENCES
from ..exceptions import IncidentHubError, ScheduledNotificationNotFoundError, ValidationError
from ..models import (
    DeliveryStatus,
    Incident,
    NotificationChannel,
    NotificationHistory,
    NotificationType,
    ScheduledNotification,
    new_id,
    parse_timestamp,
    utcnow,
)
from ..storage import LockedTable

logger = logging.getLogger(__name__)

SendFn = Callable[[Incident, NotificationChannel, NotificationType], NotificationHistory]


class Scheduler:
    """
    Holds one-shot and recurring scheduled notifications.

    Args:
        send: Delivery path used for due entries; returns the history record
        clock: Current-time source
        completed_limit: How many dispatched entries stay queryable

    Example:
        >>> scheduler = Scheduler(service.deliver_scheduled)
        >>> scheduler.schedule(incident, channel, NotificationType.INCIDENT_CREATED,
        ...                    utcnow() + timedelta(minutes=5))
        >>> scheduler.run_due()
    """

    def __init__(
        self,
        send: SendFn,
        clock: Callable[[], datetime] = utcnow,
        completed_limit: int = 1000,
    ):
        self.send = send
        self.clock = clock
        self._pending: LockedTable[str, ScheduledNotification] = LockedTable()
        self._completed: Deque[ScheduledNotification] = deque(maxlen=completed_limit)
        self._completed_lock = threading.Lock()

    def schedule(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
        scheduled_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ScheduledNotification:
        entry = ScheduledNotification(
            incident=incident.model_copy(deep=True),
            channel=channel.model_copy(deep=True),
            type=notification_type,
            scheduled_at=scheduled_at,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        self._pending.put(entry.id, entry)
        logger.info(
            f"Scheduled {notification_type.value} for incident {incident.id} "
            f"on channel {channel.name} at {entry.scheduled_at.isoformat()}"
        )
        return entry.model_copy(deep=True)

    def schedule_recurring(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
        start: datetime,
        interval: timedelta,
        end_time: Optional[datetime] = None,
        max_occurrences: Optional[int] = None,
    ) -> List[ScheduledNotification]:
        """
        Expand a recurring schedule into discrete entries at
        start + k * interval.

        At least one of end_time or max_occurrences is required; expansion
        never exceeds MAX_RECURRING_OCCURRENCES entries.

        Raises:
            ValidationError: On a non-positive interval or missing bound
        """
        if interval <= timedelta(0):
            raise ValidationError("recurring interval must be positive")
        if end_time is None and not max_occurrences:
            raise ValidationError("recurring schedule needs max_occurrences or end_time")
        if max_occurrences is not None and max_occurrences < 0:
            raise ValidationError("max_occurrences must not be negative")

        start = parse_timestamp(start)
        end_time = parse_timestamp(end_time)
        limit = min(max_occurrences or MAX_RECURRING_OCCURRENCES, MAX_RECURRING_OCCURRENCES)
        series_id = new_id()

        entries = []
        for k in range(limit):
            at = start + k * interval
            if end_time is not None and at > end_time:
                break
            entries.append(self.schedule(
                incident,
                channel,
                notification_type,
                at,
                metadata={
                    "recurring": True,
                    "series_id": series_id,
                    "interval_seconds": interval.total_seconds(),
                    "occurrence": k + 1,
                },
            ))
        logger.info(f"Recurring series {series_id} expanded into {len(entries)} entries")
        return entries

    def cancel(self, entry_id: str) -> ScheduledNotification:
        """
        Remove a pending entry.

        Raises:
            ScheduledNotificationNotFoundError: Unknown or already dispatched
        """
        entry = self._pending.pop(entry_id)
        if entry is None:
            raise ScheduledNotificationNotFoundError(entry_id)
        logger.info(f"Cancelled scheduled notification {entry_id}")
        return entry

    def get(self, entry_id: str) -> ScheduledNotification:
        entry = self._pending.get(entry_id)
        if entry is not None:
            return entry.model_copy(deep=True)
        with self._completed_lock:
            for done in self._completed:
                if done.id == entry_id:
                    return done.model_copy(deep=True)
        raise ScheduledNotificationNotFoundError(entry_id)

    def list(
        self,
        channel_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[ScheduledNotification]:
        """Pending and recently dispatched entries ordered by scheduled time."""
        with self._completed_lock:
            entries = list(self._completed)
        entries.extend(self._pending.values())
        selected = [
            e.model_copy(deep=True) for e in entries
            if (channel_id is None or e.channel.id == channel_id)
            and (status is None or e.status == status)
        ]
        return sorted(selected, key=lambda e: e.scheduled_at)

    def collect_due(self, now: Optional[datetime] = None) -> List[ScheduledNotification]:
        """Remove and return every pending entry whose time has come."""
        now = now or self.clock()
        due = self._pending.pop_where(
            lambda _, e: e.status == DeliveryStatus.PENDING and e.scheduled_at <= now
        )
        return sorted(due, key=lambda e: e.scheduled_at)

    def dispatch(self, entry: ScheduledNotification) -> ScheduledNotification:
        """Deliver one entry taken out by collect_due."""
        try:
            record = self.send(entry.incident, entry.channel, entry.type)
            entry.status = record.status
            entry.metadata["history_id"] = record.id
            if record.error_msg and record.status == DeliveryStatus.FAILED:
                entry.metadata["error"] = record.error_msg
        except IncidentHubError as e:
            logger.error(f"Scheduled notification {entry.id} failed: {e}")
            entry.status = DeliveryStatus.FAILED
            entry.metadata["error"] = str(e)

        with self._completed_lock:
            self._completed.append(entry)
        return entry.model_copy(deep=True)

    def run_due(self, now: Optional[datetime] = None) -> List[ScheduledNotification]:
        """Collect and dispatch due entries in the calling thread."""
        return [self.dispatch(entry) for entry in self.collect_due(now)]

    def pending_count(self) -> int:
        return len(self._pending)
