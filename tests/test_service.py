"""
Tests for notification routing and delivery.
"""
import pytest

from incident_hub.config import HubConfig
from incident_hub.exceptions import ConfigurationError, NotificationDispatchError
from incident_hub.hub import IncidentHub
from incident_hub.metrics import metrics
from incident_hub.models import (
    ChannelPreferences,
    DeliveryStatus,
    Incident,
    NotificationType,
    Severity,
)
from incident_hub.storage import MemoryStore

from conftest import FakeResponse, chat_channel

CREATED = NotificationType.INCIDENT_CREATED


@pytest.fixture
def incident():
    return Incident(id="inc-1", title="Disk full on db-01", severity=Severity.HIGH)


@pytest.fixture
def service(hub):
    return hub.notifications


def test_no_channels_and_no_credentials_is_a_no_op(service, session, incident):
    assert service.notify(incident, CREATED) == []
    assert session.calls == []


def test_legacy_broadcast_uses_global_credentials(clock, session, smtp, incident):
    config = HubConfig(chat_token="xoxb-global", chat_channel="#global")
    hub = IncidentHub(config, MemoryStore(), clock=clock, session=session, smtp_factory=smtp, sleep=lambda s: None)

    records = hub.notifications.notify(incident, CREATED)

    assert len(records) == 1
    assert records[0].channel_id == "global-chat"
    assert records[0].status == DeliveryStatus.SENT
    assert session.calls[0]["json"]["channel"] == "#global"
    assert session.calls[0]["json"]["text"].startswith("🚨 New Incident Created: Disk full on db-01")
    assert smtp.sent == []


def test_channel_delivery_renders_template(service, store, session, incident):
    channel = store.create_channel(chat_channel())

    records = service.notify(incident, CREATED)

    assert len(records) == 1
    record = records[0]
    assert record.status == DeliveryStatus.SENT
    assert record.channel_id == channel.id
    assert record.template_id == "builtin:incident_created:chat"
    assert record.recipient == "#ops"
    assert "Disk full on db-01" in session.calls[0]["json"]["text"]
    assert "https://hub.example.com/incidents/inc-1" in record.content
    assert metrics.get_counter("incident_hub_notifications_total", {"channel": "chat", "status": "sent"}) == 1


def test_retry_ceiling_produces_exactly_three_attempts(service, store, session, sleeps, incident):
    """A persistently failing channel is tried max_attempts times with backoff in between."""
    store.create_channel(chat_channel())
    session.queue(FakeResponse(503), FakeResponse(503), FakeResponse(503))

    with pytest.raises(NotificationDispatchError) as exc_info:
        service.notify(incident, CREATED)

    assert len(session.calls) == 3
    assert sleeps == [2.0, 4.0]
    assert "ops-chat" in exc_info.value.errors

    [record] = store.list_history()
    assert record.status == DeliveryStatus.FAILED
    assert record.retry_count == 2
    assert "503" in record.error_msg


def test_transient_failure_then_success(service, store, session, incident):
    store.create_channel(chat_channel())
    session.queue(FakeResponse(502))

    [record] = service.notify(incident, CREATED)

    assert record.status == DeliveryStatus.SENT
    assert record.retry_count == 1
    assert len(session.calls) == 2


def test_failures_are_aggregated_across_channels(service, store, session, incident):
    """One failing channel does not stop delivery to the others."""
    store.create_channel(chat_channel("broken"))
    store.create_channel(chat_channel("healthy"))
    session.queue(FakeResponse(400, text="invalid channel"))

    with pytest.raises(NotificationDispatchError) as exc_info:
        service.notify(incident, CREATED)

    assert list(exc_info.value.errors) == ["broken"]
    assert len(session.calls) == 2
    statuses = sorted(r.status.value for r in store.list_history())
    assert statuses == ["failed", "sent"]


def test_disabled_and_filtered_channels_are_skipped(service, store, session, incident):
    store.create_channel(chat_channel("off", enabled=False))
    store.create_channel(chat_channel(
        "critical-only", preferences=ChannelPreferences(severity_filter=[Severity.CRITICAL])
    ))

    assert service.notify(incident, CREATED) == []
    assert session.calls == []
    assert store.list_history() == []


def test_batching_channels_defer_delivery(service, store, session, incident):
    store.create_channel(chat_channel(preferences=ChannelPreferences(batching_enabled=True, max_batch_size=5)))

    assert service.notify(incident, CREATED) == []
    assert session.calls == []
    assert len(service.batches.pending()) == 1
    assert store.list_history()[0].status == DeliveryStatus.PENDING


def test_template_errors_fail_without_sending(service, store, session, incident):
    store.create_channel(chat_channel(templates={"incident_created": "{{ undefined_name }}"}))

    with pytest.raises(NotificationDispatchError):
        service.notify(incident, CREATED)

    assert session.calls == []
    [record] = store.list_history()
    assert record.status == DeliveryStatus.FAILED


def test_send_test_uses_single_attempt(service, store, session, sleeps):
    channel = store.create_channel(chat_channel())
    session.queue(FakeResponse(503))

    record = service.send_test(channel)

    assert record.status == DeliveryStatus.FAILED
    assert record.type == NotificationType.TEST
    assert len(session.calls) == 1
    assert sleeps == []


def test_scheduled_delivery_requires_enabled_channel(service, incident):
    with pytest.raises(ConfigurationError):
        service.deliver_scheduled(incident, chat_channel(enabled=False), CREATED)


def test_scheduled_delivery_ignores_preference_filters(service, session, incident):
    channel = chat_channel(preferences=ChannelPreferences(opt_in=False))

    record = service.deliver_scheduled(incident, channel, CREATED)

    assert record.status == DeliveryStatus.SENT
    assert len(session.calls) == 1


def test_template_arithmetic_error_does_not_block_other_channels(service, store, session, incident):
    broken = store.create_channel(chat_channel(
        "per-tag", templates={"incident_created": "{{ 1 // (incident.tags|length) }}"}
    ))
    store.create_channel(chat_channel("healthy"))

    with pytest.raises(NotificationDispatchError) as exc_info:
        service.notify(incident, CREATED)

    assert list(exc_info.value.errors) == ["per-tag"]
    assert len(session.calls) == 1
    by_channel = {r.channel_id: r for r in store.list_history()}
    assert by_channel[broken.id].status == DeliveryStatus.FAILED
    assert "ZeroDivisionError" in by_channel[broken.id].error_msg
    assert all(r.status != DeliveryStatus.PENDING for r in by_channel.values())


def test_unexpected_delivery_crash_is_recorded_as_failure(service, store, session, incident, monkeypatch):
    store.create_channel(chat_channel("crashing"))
    store.create_channel(chat_channel("healthy"))
    deliver = service.deliver

    def crash_one(channel, message, **kwargs):
        if channel.name == "crashing":
            raise RuntimeError("adapter bug")
        return deliver(channel, message, **kwargs)

    monkeypatch.setattr(service, "deliver", crash_one)

    with pytest.raises(NotificationDispatchError) as exc_info:
        service.notify(incident, CREATED)

    assert list(exc_info.value.errors) == ["crashing"]
    assert len(session.calls) == 1
    statuses = sorted(r.status.value for r in store.list_history())
    assert statuses == ["failed", "sent"]


def test_failed_batch_flush_is_reported(service, store, session, incident):
    store.create_channel(chat_channel(
        "batched", preferences=ChannelPreferences(batching_enabled=True, max_batch_size=1)
    ))
    store.create_channel(chat_channel("healthy"))
    session.queue(FakeResponse(400, text="invalid channel"))

    with pytest.raises(NotificationDispatchError) as exc_info:
        service.notify(incident, CREATED)

    assert list(exc_info.value.errors) == ["batched"]
    assert len(session.calls) == 2
    [batch] = store.list_batches()
    assert batch.status == DeliveryStatus.FAILED
    assert batch.error_msg
