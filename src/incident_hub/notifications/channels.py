"""
Notification channel management with up-front validation.
"""
import logging
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from ..models import NotificationChannel, NotificationType
from ..storage import Store
from .adapters import AdapterSet
from .templates import TemplateCatalog

logger = logging.getLogger(__name__)


class ChannelManager:
    """
    CRUD over notification channels.

    A channel is rejected at create/update time when its adapter cannot
    find required credentials (per-channel or global) or when one of its
    template overrides does not render.
    """

    def __init__(self, store: Store, adapters: AdapterSet, catalog: TemplateCatalog):
        self.store = store
        self.adapters = adapters
        self.catalog = catalog

    def _validate(self, channel: NotificationChannel) -> None:
        self.adapters.for_type(channel.type).check_config(channel.config)
        for type_value in channel.templates:
            template = self.catalog.resolve(channel, NotificationType(type_value))
            self.catalog.renderer.validate(template)

    @staticmethod
    def _build(data: Dict[str, Any]) -> NotificationChannel:
        try:
            return NotificationChannel.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"invalid channel: {e}") from e

    def create(self, data: Dict[str, Any] | NotificationChannel) -> NotificationChannel:
        channel = data if isinstance(data, NotificationChannel) else self._build(data)
        self._validate(channel)
        created = self.store.create_channel(channel)
        logger.info(f"Created {created.type.value} channel {created.name} ({created.id})")
        return created

    def update(self, channel_id: str, changes: Dict[str, Any]) -> NotificationChannel:
        current = self.store.get_channel(channel_id)
        merged = {**current.model_dump(), **changes, "id": channel_id, "created_at": current.created_at}
        channel = self._build(merged)
        self._validate(channel)
        return self.store.update_channel(channel)

    def delete(self, channel_id: str) -> None:
        self.store.delete_channel(channel_id)
        logger.info(f"Deleted channel {channel_id}")

    def get(self, channel_id: str) -> NotificationChannel:
        return self.store.get_channel(channel_id)

    def list(self, enabled_only: bool = False) -> List[NotificationChannel]:
        channels = self.store.list_channels()
        if enabled_only:
            channels = [c for c in channels if c.enabled]
        return channels
