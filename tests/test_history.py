"""
Tests for the notification history ledger.
"""
import pytest

from incident_hub.exceptions import InvalidTransitionError
from incident_hub.models import DeliveryStatus, Incident, NotificationType
from incident_hub.notifications.history import HistoryLedger

from conftest import chat_channel


@pytest.fixture
def ledger(store, clock):
    return HistoryLedger(store, clock)


@pytest.fixture
def record(ledger):
    return ledger.open(Incident(id="inc-1", title="Disk full"), chat_channel(), NotificationType.INCIDENT_CREATED)


def test_open_creates_pending_record(record, clock):
    assert record.status == DeliveryStatus.PENDING
    assert record.incident_id == "inc-1"
    assert record.retry_count == 0
    assert record.created_at == clock.now


def test_retry_then_sent(ledger, record, clock):
    ledger.mark_retrying(record.id, RuntimeError("timeout"))
    retried = ledger.mark_retrying(record.id, RuntimeError("timeout again"))

    assert retried.status == DeliveryStatus.RETRYING
    assert retried.retry_count == 2
    assert retried.error_msg == "timeout again"

    clock.advance(seconds=4)
    sent = ledger.mark_sent(record.id, "#ops", "subject", "content")

    assert sent.status == DeliveryStatus.SENT
    assert sent.recipient == "#ops"
    assert sent.sent_at == clock.now
    assert sent.error_msg is None
    assert sent.retry_count == 2


def test_sent_then_delivered(ledger, record):
    ledger.mark_sent(record.id, "#ops")

    delivered = ledger.mark_delivered(record.id)

    assert delivered.status == DeliveryStatus.DELIVERED
    assert delivered.delivered_at is not None


def test_failed_is_terminal(ledger, record):
    failed = ledger.mark_failed(record.id, "provider rejected", subject="s", content="c")

    assert failed.status == DeliveryStatus.FAILED
    assert failed.error_msg == "provider rejected"
    assert failed.content == "c"

    with pytest.raises(InvalidTransitionError):
        ledger.mark_sent(record.id, "#ops")
    with pytest.raises(InvalidTransitionError):
        ledger.mark_retrying(record.id, RuntimeError("late"))


def test_cannot_deliver_before_sent(ledger, record):
    with pytest.raises(InvalidTransitionError):
        ledger.mark_delivered(record.id)


def test_query_newest_first_with_limit(ledger, clock):
    channel = chat_channel()
    ids = []
    for n in range(3):
        clock.advance(seconds=1)
        ids.append(ledger.open(Incident(id=f"inc-{n}", title="x"), channel, NotificationType.INCIDENT_CREATED).id)
    ledger.mark_sent(ids[1], "#ops")

    assert [r.id for r in ledger.query()] == list(reversed(ids))
    assert [r.id for r in ledger.query(limit=2)] == [ids[2], ids[1]]
    assert [r.id for r in ledger.query(status=DeliveryStatus.SENT)] == [ids[1]]
    assert [r.id for r in ledger.query(incident_id="inc-0")] == [ids[0]]
