"""
Custom exception types for incident-hub.

Provides specific exception classes so callers can tell validation,
not-found, configuration and delivery failures apart.
"""
from typing import Dict, Optional


class IncidentHubError(Exception):
    """Base exception for all incident-hub errors."""
    pass


# Validation errors
class ValidationError(IncidentHubError):
    """Input rejected before any state mutation."""
    pass


class WebhookValidationError(ValidationError):
    """Inbound webhook payload is malformed."""

    def __init__(self, message: str, problems: Optional[list] = None):
        super().__init__(message)
        self.problems = problems or []


class TemplateError(ValidationError):
    """Template failed to compile or render."""
    pass


class PayloadTooLargeError(ValidationError):
    """Request body exceeds the configured limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


# Not-found errors
class NotFoundError(IncidentHubError):
    """Base exception for unknown identifiers."""
    kind = "resource"

    def __init__(self, resource_id: str):
        super().__init__(f"{self.kind} not found: {resource_id}")
        self.resource_id = resource_id


class IncidentNotFoundError(NotFoundError):
    kind = "incident"


class AlertNotFoundError(NotFoundError):
    kind = "alert"


class ChannelNotFoundError(NotFoundError):
    kind = "notification channel"


class TemplateNotFoundError(NotFoundError):
    kind = "notification template"


class HistoryNotFoundError(NotFoundError):
    kind = "notification history"


class BatchNotFoundError(NotFoundError):
    kind = "notification batch"


class ScheduledNotificationNotFoundError(NotFoundError):
    kind = "scheduled notification"


# State machine errors
class InvalidTransitionError(IncidentHubError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"cannot move {entity} from {current} to {target}")
        self.current = current
        self.target = target


# Configuration errors
class ConfigurationError(IncidentHubError):
    """Missing credentials or malformed channel configuration."""
    pass


# Storage errors
class StorageError(IncidentHubError):
    """Storage backend failure."""
    pass


# Delivery errors
class DeliveryError(IncidentHubError):
    """Provider rejected a delivery; retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Temporary delivery failure (timeouts, connection errors, 5xx)."""
    pass


class RetryExhaustedError(IncidentHubError):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"max retry attempts ({attempts}) exceeded: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class NotificationDispatchError(IncidentHubError):
    """One or more channels failed for a single incident event."""

    def __init__(self, errors: Dict[str, str]):
        joined = "; ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"notification failed for {len(errors)} channel(s): {joined}")
        self.errors = errors
