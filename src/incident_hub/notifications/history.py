"""
Notification history ledger.

Every delivery gets a record in `pending` before the first attempt and is
moved to a terminal state afterwards, so each outcome stays auditable.
"""
import logging
from typing import Callable, Dict, FrozenSet, List, Optional

from ..exceptions import InvalidTransitionError
from ..models import (
    DeliveryStatus,
    Incident,
    NotificationChannel,
    NotificationHistory,
    NotificationType,
    utcnow,
)
from ..storage import Store

logger = logging.getLogger(__name__)

_ALLOWED: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.RETRYING, DeliveryStatus.SENT, DeliveryStatus.FAILED}),
    DeliveryStatus.RETRYING: frozenset({DeliveryStatus.RETRYING, DeliveryStatus.SENT, DeliveryStatus.FAILED}),
    DeliveryStatus.SENT: frozenset({DeliveryStatus.DELIVERED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}


class HistoryLedger:
    """Creates history records and drives their status transitions."""

    def __init__(self, store: Store, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def open(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
        template_id: Optional[str] = None,
    ) -> NotificationHistory:
        now = self.clock()
        record = NotificationHistory(
            incident_id=incident.id,
            channel_id=channel.id,
            template_id=template_id,
            type=notification_type,
            channel=channel.type,
            created_at=now,
            updated_at=now,
        )
        return self.store.create_history(record)

    def _transition(
        self,
        history_id: str,
        target: DeliveryStatus,
        **changes,
    ) -> NotificationHistory:
        record = self.store.get_history(history_id)
        if target not in _ALLOWED[record.status]:
            raise InvalidTransitionError("notification", record.status.value, target.value)
        record.status = target
        record.updated_at = self.clock()
        for key, value in changes.items():
            setattr(record, key, value)
        return self.store.update_history(record)

    def mark_retrying(self, history_id: str, error: BaseException) -> NotificationHistory:
        record = self.store.get_history(history_id)
        return self._transition(
            history_id,
            DeliveryStatus.RETRYING,
            retry_count=record.retry_count + 1,
            error_msg=str(error),
        )

    def mark_sent(
        self,
        history_id: str,
        recipient: str,
        subject: str = "",
        content: str = "",
    ) -> NotificationHistory:
        now = self.clock()
        return self._transition(
            history_id,
            DeliveryStatus.SENT,
            recipient=recipient,
            subject=subject,
            content=content,
            sent_at=now,
            error_msg=None,
        )

    def mark_delivered(self, history_id: str) -> NotificationHistory:
        return self._transition(history_id, DeliveryStatus.DELIVERED, delivered_at=self.clock())

    def mark_failed(
        self,
        history_id: str,
        error: BaseException | str,
        subject: str = "",
        content: str = "",
    ) -> NotificationHistory:
        logger.warning(f"Notification {history_id} failed: {error}")
        changes = {"error_msg": str(error)}
        if subject:
            changes["subject"] = subject
        if content:
            changes["content"] = content
        return self._transition(history_id, DeliveryStatus.FAILED, **changes)

    def query(
        self,
        incident_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
        limit: Optional[int] = None,
    ) -> List[NotificationHistory]:
        """Most recent first."""
        records = self.store.list_history(incident_id=incident_id, channel_id=channel_id, status=status)
        records.reverse()
        if limit is not None:
            records = records[:limit]
        return records
