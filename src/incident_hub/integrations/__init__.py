"""
Inbound integrations for incident-hub.

Receives Alertmanager webhooks with validation and replay protection.
"""

from .idempotency import IdempotencyCache, payload_key
from .webhook_receiver import AlertmanagerWebhook, WebhookAlert, WebhookReceiver, parse_webhook

__all__ = [
    "AlertmanagerWebhook",
    "IdempotencyCache",
    "WebhookAlert",
    "WebhookReceiver",
    "parse_webhook",
    "payload_key",
]
