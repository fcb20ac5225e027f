"""
Notification pipeline for incident-hub.

Templates, delivery adapters, history, batching, scheduling and the
service that routes incident events to channels.
"""

from .adapters import (
    AdapterSet,
    BotAdapter,
    ChatAdapter,
    DeliveryAdapter,
    EmailAdapter,
    HTTPDeliveryAdapter,
    RenderedMessage,
)
from .batching import BatchAggregator, batch_key, build_digest
from .channels import ChannelManager
from .history import HistoryLedger
from .preferences import in_quiet_hours, should_notify
from .scheduler import Scheduler
from .service import NotificationService
from .templates import (
    TemplateCatalog,
    TemplateRenderer,
    TemplateVariables,
    builtin_template,
    format_legacy_message,
    sample_incident,
)

__all__ = [
    "AdapterSet",
    "BotAdapter",
    "ChatAdapter",
    "DeliveryAdapter",
    "EmailAdapter",
    "HTTPDeliveryAdapter",
    "RenderedMessage",
    "BatchAggregator",
    "batch_key",
    "build_digest",
    "ChannelManager",
    "HistoryLedger",
    "in_quiet_hours",
    "should_notify",
    "Scheduler",
    "NotificationService",
    "TemplateCatalog",
    "TemplateRenderer",
    "TemplateVariables",
    "builtin_template",
    "format_legacy_message",
    "sample_incident",
]
