"""
Notification orchestration.

For each incident event the service walks the configured channels, applies
their preferences, and then either delivers immediately through the retry
executor, hands the notification to the batch aggregator, or, when no
channel exists at all, broadcasts a fixed-format message using the global
credentials.
"""
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ..constants import DEFAULT_BATCH_MAX_SIZE, DEFAULT_BATCH_TIMEOUT_SECONDS, DEFAULT_SYSTEM_NAME
from ..exceptions import ConfigurationError, IncidentHubError, NotificationDispatchError, TemplateError
from ..logging_context import LoggingContext, get_logger
from ..metrics import track_notification, track_notification_duration
from ..models import (
    ChannelType,
    DeliveryStatus,
    Incident,
    IncidentStatus,
    NotificationChannel,
    NotificationHistory,
    NotificationType,
    Severity,
    utcnow,
)
from ..retry import Retryer, RetryPolicy
from ..storage import Store
from .adapters import AdapterSet, RenderedMessage
from .batching import BatchAggregator
from .history import HistoryLedger
from .preferences import should_notify
from .templates import TemplateCatalog, TemplateVariables, format_legacy_message

logger = get_logger(__name__)


class NotificationService:
    """
    Routes incident events to channels.

    Example:
        >>> service = NotificationService(store, catalog, adapters, ledger, Retryer())
        >>> service.notify(incident, NotificationType.INCIDENT_CREATED)
    """

    def __init__(
        self,
        store: Store,
        catalog: TemplateCatalog,
        adapters: AdapterSet,
        ledger: HistoryLedger,
        retryer: Retryer,
        system_name: str = DEFAULT_SYSTEM_NAME,
        system_url: str = "",
        clock: Callable[[], datetime] = utcnow,
        batch_max_size: int = DEFAULT_BATCH_MAX_SIZE,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.catalog = catalog
        self.adapters = adapters
        self.ledger = ledger
        self.retryer = retryer
        self.system_name = system_name
        self.system_url = system_url
        self.clock = clock
        self.batches = BatchAggregator(
            store,
            ledger,
            deliver=self.deliver,
            render_single=self.render_for,
            clock=clock,
            default_max_size=batch_max_size,
            default_timeout=batch_timeout,
        )

    def notify(self, incident: Incident, notification_type: NotificationType) -> List[NotificationHistory]:
        """
        Fan an incident event out to every eligible channel.

        Returns:
            History records of immediate deliveries

        Raises:
            NotificationDispatchError: One or more channels failed; every
                other channel was still attempted
        """
        channels = self.store.list_channels()
        if not channels:
            return self._broadcast_legacy(incident, notification_type)

        now = self.clock()
        results: List[NotificationHistory] = []
        errors: Dict[str, str] = {}

        for channel in channels:
            if not channel.enabled:
                continue
            try:
                allowed, reason = should_notify(channel.preferences, incident, notification_type, now)
                if not allowed:
                    logger.debug(f"Skipping channel {channel.name}: {reason}")
                    continue

                if channel.preferences and channel.preferences.batching_enabled:
                    batch = self.batches.add(incident, channel, notification_type)
                    if batch is not None and batch.status == DeliveryStatus.FAILED:
                        errors[channel.name] = batch.error_msg or "batch delivery failed"
                    continue

                record = self.send_to_channel(incident, channel, notification_type)
                results.append(record)
                if record.status == DeliveryStatus.FAILED:
                    errors[channel.name] = record.error_msg or "delivery failed"
            except IncidentHubError as e:
                logger.error(f"Notification to channel {channel.name} failed: {e}")
                errors[channel.name] = str(e)

        if errors:
            raise NotificationDispatchError(errors)
        return results

    def handle_event(self, notification_type: NotificationType, incident: Incident) -> None:
        """Listener hook for the incident lifecycle manager."""
        self.notify(incident, notification_type)

    def render_for(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
    ) -> Tuple[RenderedMessage, Optional[str]]:
        """Render the resolved template for a channel. Returns (message, template id)."""
        template = self.catalog.resolve(channel, notification_type)
        subject, content = self.catalog.renderer.render(
            template,
            TemplateVariables(
                incident=incident,
                channel_name=channel.name,
                system_name=self.system_name,
                system_url=self.system_url,
                timestamp=self.clock(),
            ),
        )
        return RenderedMessage(subject=subject, content=content), template.id

    def deliver(
        self,
        channel: NotificationChannel,
        message: RenderedMessage,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        retryer: Optional[Retryer] = None,
    ) -> str:
        """Send through the channel's adapter under the retry policy. Returns the recipient."""
        adapter = self.adapters.for_type(channel.type)
        retryer = retryer or self.retryer
        started = time.monotonic()
        try:
            return retryer.execute(
                lambda: adapter.send(message, channel.config),
                on_retry=on_retry,
                description=f"{channel.type.value} channel {channel.name}",
            )
        finally:
            track_notification_duration(channel.type.value, time.monotonic() - started)

    def send_to_channel(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
        retryer: Optional[Retryer] = None,
    ) -> NotificationHistory:
        """
        Deliver one notification immediately.

        The history record is created in pending before anything else and
        always ends in sent or failed; delivery errors are recorded, not raised.
        """
        template = self.catalog.resolve(channel, notification_type)
        record = self.ledger.open(incident, channel, notification_type, template.id)

        with LoggingContext(incident_id=incident.id, channel_id=channel.id, notification_id=record.id):
            try:
                message, _ = self.render_for(incident, channel, notification_type)
            except TemplateError as e:
                track_notification(channel.type.value, "failed")
                return self.ledger.mark_failed(record.id, e)

            except Exception as e:
                logger.exception(f"Rendering for channel {channel.name} crashed")
                track_notification(channel.type.value, "failed")
                return self.ledger.mark_failed(record.id, e)

            try:
                recipient = self.deliver(
                    channel,
                    message,
                    on_retry=lambda attempt, error: self.ledger.mark_retrying(record.id, error),
                    retryer=retryer,
                )
            except IncidentHubError as e:
                track_notification(channel.type.value, "failed")
                return self.ledger.mark_failed(record.id, e, message.subject, message.content)
            except Exception as e:
                logger.exception(f"Delivery to channel {channel.name} crashed")
                track_notification(channel.type.value, "failed")
                return self.ledger.mark_failed(record.id, e, message.subject, message.content)

            track_notification(channel.type.value, "sent")
            logger.info(f"Sent {notification_type.value} for incident {incident.id} to {channel.name}")
            return self.ledger.mark_sent(record.id, recipient, message.subject, message.content)

    def deliver_scheduled(
        self,
        incident: Incident,
        channel: NotificationChannel,
        notification_type: NotificationType,
    ) -> NotificationHistory:
        """Delivery path for scheduler entries."""
        if not channel.enabled:
            raise ConfigurationError(f"channel {channel.name} is disabled")
        return self.send_to_channel(incident, channel, notification_type)

    def send_test(self, channel: NotificationChannel) -> NotificationHistory:
        """Send a synthetic incident through a channel with a single attempt."""
        incident = Incident(
            id=f"test-{channel.id}",
            title="Test notification",
            description=f"Test message from {self.system_name}",
            status=IncidentStatus.OPEN,
            severity=Severity.LOW,
        )
        return self.send_to_channel(
            incident,
            channel,
            NotificationType.TEST,
            retryer=Retryer(RetryPolicy(max_attempts=1)),
        )

    def _broadcast_legacy(self, incident: Incident, notification_type: NotificationType) -> List[NotificationHistory]:
        """Credentials-only mode: one fixed-format message per globally configured channel type."""
        subject, text = format_legacy_message(incident, notification_type)
        message = RenderedMessage(subject=subject, content=text)
        results: List[NotificationHistory] = []
        errors: Dict[str, str] = {}

        for channel_type in ChannelType:
            if not self.adapters.has_global_credentials(channel_type):
                continue
            channel = NotificationChannel(
                id=f"global-{channel_type.value}",
                name=f"global {channel_type.value}",
                type=channel_type,
            )
            record = self.ledger.open(incident, channel, notification_type)
            try:
                recipient = self.deliver(
                    channel,
                    message,
                    on_retry=lambda attempt, error, rid=record.id: self.ledger.mark_retrying(rid, error),
                )
            except IncidentHubError as e:
                track_notification(channel_type.value, "failed")
                results.append(self.ledger.mark_failed(record.id, e, subject, text))
                errors[channel.name] = str(e)
                continue
            track_notification(channel_type.value, "sent")
            results.append(self.ledger.mark_sent(record.id, recipient, subject, text))

        if not results:
            logger.debug("No notification channels or global credentials configured")
        if errors:
            raise NotificationDispatchError(errors)
        return results
