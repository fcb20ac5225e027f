"""
Tests for exception handling and custom exception types.

Verifies the hierarchy callers rely on and the HTTP status each maps to.
"""

import pytest

from incident_hub.api import status_for
from incident_hub.exceptions import (
    ConfigurationError,
    DeliveryError,
    IncidentHubError,
    IncidentNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    NotificationDispatchError,
    PayloadTooLargeError,
    RetryExhaustedError,
    StorageError,
    TemplateError,
    TransientDeliveryError,
    ValidationError,
    WebhookValidationError,
)


def test_not_found_message_names_the_kind():
    error = IncidentNotFoundError("inc-42")

    assert str(error) == "incident not found: inc-42"
    assert error.resource_id == "inc-42"
    assert isinstance(error, NotFoundError)


def test_validation_family():
    assert issubclass(WebhookValidationError, ValidationError)
    assert issubclass(TemplateError, ValidationError)
    assert issubclass(PayloadTooLargeError, ValidationError)
    assert WebhookValidationError("bad").problems == []


def test_transient_is_a_delivery_error():
    error = TransientDeliveryError("gateway timeout", status_code=504)

    assert isinstance(error, DeliveryError)
    assert error.status_code == 504


def test_retry_exhausted_keeps_last_error():
    cause = TransientDeliveryError("503")
    error = RetryExhaustedError(3, cause)

    assert error.attempts == 3
    assert error.last_error is cause
    assert "max retry attempts (3) exceeded" in str(error)


def test_dispatch_error_lists_every_channel():
    error = NotificationDispatchError({"ops": "timeout", "mail": "auth failed"})

    assert "2 channel(s)" in str(error)
    assert "ops: timeout" in str(error)
    assert "mail: auth failed" in str(error)


def test_invalid_transition_message():
    error = InvalidTransitionError("incident", "resolved", "acknowledged")

    assert str(error) == "cannot move incident from resolved to acknowledged"


@pytest.mark.parametrize("error,status", [
    (ValidationError("x"), 400),
    (WebhookValidationError("x", ["a: b"]), 400),
    (ConfigurationError("x"), 400),
    (PayloadTooLargeError(10, 5), 413),
    (IncidentNotFoundError("x"), 404),
    (InvalidTransitionError("incident", "open", "open"), 409),
    (StorageError("x"), 500),
    (IncidentHubError("x"), 500),
])
def test_status_for(error, status):
    assert status_for(error) == status
