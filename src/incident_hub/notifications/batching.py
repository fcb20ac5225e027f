"""
Batch aggregation of same-channel, same-type notifications.

Buckets are keyed by "<channel_id>_<notification_type>". A bucket flushes
synchronously when it reaches the channel's max batch size, or from the
periodic sweep once it is older than the batching timeout. Flushing first
removes the bucket from the table, so a bucket is never flushed twice and
a concurrent add always lands in exactly one bucket.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from ..constants import DEFAULT_BATCH_MAX_SIZE, DEFAULT_BATCH_TIMEOUT_SECONDS, DIGEST_MAX_ENTRIES
from ..exceptions import IncidentHubError
from ..models import (
    DeliveryStatus,
    Incident,
    NotificationBatch,
    NotificationChannel,
    NotificationType,
    utcnow,
)
from ..storage import LockedTable, Store
from .adapters import RenderedMessage
from .history import HistoryLedger
from .templates import format_time

logger = logging.getLogger(__name__)

DeliverFn = Callable[..., str]
RenderFn = Callable[[Incident, NotificationChannel, NotificationType], Tuple[RenderedMessage, Optional[str]]]

_DIGEST_HEADERS = {
    NotificationType.INCIDENT_CREATED: "🚨 **{count} New Incidents Created**",
    NotificationType.INCIDENT_ACKNOWLEDGED: "✅ **{count} Incidents Acknowledged**",
    NotificationType.INCIDENT_RESOLVED: "🎉 **{count} Incidents Resolved**",
}


def batch_key(channel_id: str, notification_type: NotificationType) -> str:
    return f"{channel_id}_{notification_type.value}"


def build_digest(
    notification_type: NotificationType,
    incidents: List[Incident],
    batched_at: datetime,
) -> RenderedMessage:
    """Summarize several incidents in one message."""
    count = len(incidents)
    header = _DIGEST_HEADERS.get(notification_type, "📢 **{count} Incident Updates**")
    lines = [header.format(count=count), ""]
    for incident in incidents[:DIGEST_MAX_ENTRIES]:
        lines.append(
            f"• **{incident.title}** ({incident.severity.value}) - {incident.status.value}"
        )
    if count > DIGEST_MAX_ENTRIES:
        lines.append(f"... and {count - DIGEST_MAX_ENTRIES} more incidents")
    lines.append(f"\n*Batched at: {format_time(batched_at)}*")
    return RenderedMessage(
        subject=f"Batched {notification_type.value} Notifications ({count})",
        content="\n".join(lines),
    )


@dataclass
class _Bucket:
    batch: NotificationBatch
    channel: NotificationChannel
    max_size: int
    timeout: timedelta
    opened_at: datetime
    incidents: List[Incident] = field(default_factory=list)

    def is_full(self) -> bool:
        return len(self.incidents) >= self.max_size

    def is_expired(self, now: datetime) -> bool:
        return now - self.opened_at >= self.timeout


class BatchAggregator:
    """
    Collects notifications per (channel, type) and flushes them as digests.

    Args:
        store: Where processed batches are recorded
        ledger: History ledger for the per-item records
        deliver: deliver(channel, message, on_retry) -> recipient; runs the
            retrying delivery path and raises when delivery fails
        render_single: Renders one incident with the channel's normal template
    """

    def __init__(
        self,
        store: Store,
        ledger: HistoryLedger,
        deliver: DeliverFn,
        render_single: RenderFn,
        clock: Callable[[], datetime] = utcnow,
        default_max_size: int = DEFAULT_BATCH_MAX_SIZE,
        default_timeout: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.ledger = ledger
        self.deliver = deliver
        self.render_single = render_single
        self.clock = clock
        self.default_max_size = default_max_size
        self.default_timeout = default_timeout
        self._buckets: LockedTable[str, _Bucket] = LockedTable()

    def _limits(self, channel: NotificationChannel) -> Tuple[int, timedelta]:
        prefs = channel.preferences
        max_size = prefs.max_batch_size if prefs and prefs.max_batch_size > 0 else self.default_max_size
        seconds = prefs.batching_interval if prefs and prefs.batching_interval > 0 else self.default_timeout
        return max_size, timedelta(seconds=seconds)

    def add(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
    ) -> Optional[NotificationBatch]:
        """
        Queue a notification.

        Returns:
            The processed batch when this add filled the bucket, else None
        """
        record = self.ledger.open(incident, channel, notification_type)
        key = batch_key(channel.id, notification_type)
        max_size, timeout = self._limits(channel)
        now = self.clock()
        snapshot = incident.model_copy(deep=True)

        def append(bucket: Optional[_Bucket]) -> _Bucket:
            if bucket is None:
                bucket = _Bucket(
                    batch=NotificationBatch(
                        channel_id=channel.id,
                        type=notification_type,
                        created_at=now,
                    ),
                    channel=channel.model_copy(deep=True),
                    max_size=max_size,
                    timeout=timeout,
                    opened_at=now,
                )
            bucket.incidents.append(snapshot)
            bucket.batch.notifications.append(record.id)
            bucket.batch.count = len(bucket.batch.notifications)
            return bucket

        bucket = self._buckets.mutate(key, append)
        logger.debug(f"Batch {key}: {bucket.batch.count}/{bucket.max_size} queued")

        if not bucket.is_full():
            return None
        popped = self._buckets.pop_where(lambda k, b: k == key and b is bucket)
        if not popped:
            # Another thread already took this bucket
            return None
        return self.flush(popped[0])

    def collect_expired(self, now: Optional[datetime] = None) -> List[_Bucket]:
        """Remove and return every bucket older than its timeout."""
        now = now or self.clock()
        return self._buckets.pop_where(lambda _, b: b.is_expired(now))

    def sweep(self, now: Optional[datetime] = None) -> List[NotificationBatch]:
        """Flush expired buckets synchronously."""
        return [self.flush(bucket) for bucket in self.collect_expired(now)]

    def flush_all(self) -> List[NotificationBatch]:
        """Flush everything still open, e.g. at shutdown."""
        return [self.flush(bucket) for bucket in self._buckets.clear()]

    def pending(self) -> List[NotificationBatch]:
        return [b.batch.model_copy(deep=True) for b in self._buckets.values()]

    def flush(self, bucket: _Bucket) -> NotificationBatch:
        """Deliver one bucket and record the outcome on every member."""
        batch = bucket.batch
        channel = bucket.channel
        history_ids = list(batch.notifications)
        message = RenderedMessage(subject="", content="")

        def on_retry(attempt: int, error: BaseException) -> None:
            for history_id in history_ids:
                self.ledger.mark_retrying(history_id, error)

        try:
            if len(bucket.incidents) == 1:
                message, _ = self.render_single(bucket.incidents[0], channel, batch.type)
            else:
                message = build_digest(batch.type, bucket.incidents, self.clock())
            recipient = self.deliver(channel, message, on_retry=on_retry)
        except Exception as e:
            batch.status = DeliveryStatus.FAILED
            batch.error_msg = str(e)
            for history_id in history_ids:
                self.ledger.mark_failed(history_id, e, message.subject, message.content)
            if isinstance(e, IncidentHubError):
                logger.error(f"Batch {batch.id} for channel {channel.name} failed: {e}")
            else:
                logger.exception(f"Batch {batch.id} for channel {channel.name} crashed")
        else:
            batch.status = DeliveryStatus.SENT
            for history_id in history_ids:
                self.ledger.mark_sent(history_id, recipient, message.subject, message.content)
            logger.info(f"Batch {batch.id} sent {batch.count} notification(s) to {channel.name}")

        batch.processed_at = self.clock()
        return self.store.create_batch(batch)
