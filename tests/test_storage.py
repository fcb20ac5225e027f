"""
Tests for the storage backends.

Every contract test runs against both the in-memory and the SQLite store.
"""
import threading
from datetime import timedelta

import pytest

from incident_hub.exceptions import (
    AlertNotFoundError,
    ChannelNotFoundError,
    IncidentNotFoundError,
    StorageError,
)
from incident_hub.models import (
    Alert,
    AlertStatus,
    ChannelType,
    DeliveryStatus,
    Incident,
    IncidentStatus,
    NotificationChannel,
    NotificationHistory,
    NotificationType,
    Severity,
    TimelineEntry,
    TimelineEntryType,
)
from incident_hub.storage import IncidentFilter, LockedTable, MemoryStore, SQLiteStore

from conftest import START


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SQLiteStore(tmp_path / "hub.db")


def _incident(title, minutes=0, **kwargs):
    created = START + timedelta(minutes=minutes)
    return Incident(title=title, created_at=created, updated_at=created, **kwargs)


def test_incident_round_trip(any_store):
    incident = any_store.create_incident(_incident("Disk full", severity=Severity.HIGH))

    loaded = any_store.get_incident(incident.id)

    assert loaded.title == "Disk full"
    assert loaded.severity == Severity.HIGH
    assert loaded.created_at == START


def test_unknown_incident_raises_not_found(any_store):
    with pytest.raises(IncidentNotFoundError, match="incident not found: nope"):
        any_store.get_incident("nope")

    with pytest.raises(IncidentNotFoundError):
        any_store.update_incident(Incident(id="nope", title="x"))

    with pytest.raises(IncidentNotFoundError):
        any_store.delete_incident("nope")


def test_duplicate_incident_id_rejected(any_store):
    incident = any_store.create_incident(_incident("Disk full"))

    with pytest.raises(StorageError):
        any_store.create_incident(incident)


def test_returned_models_are_copies(any_store):
    incident = any_store.create_incident(_incident("Disk full"))
    incident.title = "changed locally"

    assert any_store.get_incident(incident.id).title == "Disk full"


def test_list_incidents_filters_and_orders(any_store):
    any_store.create_incident(_incident("a", 0, severity=Severity.LOW))
    any_store.create_incident(_incident("b", 1, severity=Severity.CRITICAL, assignee_id="alice"))
    any_store.create_incident(_incident("c", 2, severity=Severity.CRITICAL, status=IncidentStatus.RESOLVED))

    assert [i.title for i in any_store.list_incidents()] == ["a", "b", "c"]

    critical = any_store.list_incidents(IncidentFilter(severity=Severity.CRITICAL))
    assert [i.title for i in critical] == ["b", "c"]

    resolved = any_store.list_incidents(IncidentFilter(status=IncidentStatus.RESOLVED))
    assert [i.title for i in resolved] == ["c"]

    unassigned = any_store.list_incidents(IncidentFilter(assignee_id=""))
    assert [i.title for i in unassigned] == ["a", "c"]

    newest_first = any_store.list_incidents(IncidentFilter(order_by="-created_at", limit=2))
    assert [i.title for i in newest_first] == ["c", "b"]

    by_severity = any_store.list_incidents(IncidentFilter(order_by="severity"))
    assert by_severity[-1].title == "a"

    page = any_store.list_incidents(IncidentFilter(offset=1, limit=1))
    assert [i.title for i in page] == ["b"]


def test_list_incidents_rejects_bad_filter(any_store):
    with pytest.raises(ValueError):
        any_store.list_incidents(IncidentFilter(limit=-1))

    with pytest.raises(ValueError):
        any_store.list_incidents(IncidentFilter(order_by="password"))


def test_alert_fingerprint_index(any_store):
    alert = any_store.create_alert(Alert(
        fingerprint="fp-1", status=AlertStatus.FIRING, starts_at=START, labels={"alertname": "HighCPU"}
    ))

    assert any_store.get_alert_by_fingerprint("fp-1").id == alert.id
    assert any_store.get_alert_by_fingerprint("fp-unknown") is None

    with pytest.raises(StorageError):
        any_store.create_alert(Alert(fingerprint="fp-1", status=AlertStatus.FIRING, starts_at=START))

    with pytest.raises(AlertNotFoundError):
        any_store.get_alert("missing")


def test_update_alert(any_store):
    alert = any_store.create_alert(Alert(fingerprint="fp-1", status=AlertStatus.FIRING, starts_at=START))
    alert.status = AlertStatus.RESOLVED
    alert.ends_at = START + timedelta(minutes=5)
    any_store.update_alert(alert)

    loaded = any_store.get_alert_by_fingerprint("fp-1")
    assert loaded.status == AlertStatus.RESOLVED
    assert loaded.ends_at == START + timedelta(minutes=5)
    assert len(any_store.list_alerts()) == 1


def test_timeline_sequence_and_delete(any_store):
    incident = any_store.create_incident(_incident("Disk full"))
    for content in ("first", "second", "third"):
        any_store.add_timeline_entry(TimelineEntry(
            incident_id=incident.id, entry_type=TimelineEntryType.COMMENT, content=content
        ))

    entries = any_store.list_timeline_entries(incident.id)
    assert [e.content for e in entries] == ["first", "second", "third"]
    assert [e.sequence for e in entries] == [0, 1, 2]

    any_store.delete_incident(incident.id)
    with pytest.raises(IncidentNotFoundError):
        any_store.list_timeline_entries(incident.id)


def test_timeline_entry_requires_incident(any_store):
    with pytest.raises(IncidentNotFoundError):
        any_store.add_timeline_entry(TimelineEntry(
            incident_id="missing", entry_type=TimelineEntryType.COMMENT, content="x"
        ))


def test_channel_crud(any_store):
    channel = any_store.create_channel(NotificationChannel(name="ops", type=ChannelType.CHAT))
    channel.enabled = False
    any_store.update_channel(channel)

    assert any_store.get_channel(channel.id).enabled is False
    assert [c.id for c in any_store.list_channels()] == [channel.id]

    any_store.delete_channel(channel.id)
    with pytest.raises(ChannelNotFoundError):
        any_store.get_channel(channel.id)


def test_history_filters(any_store):
    for incident_id, status in (("i1", DeliveryStatus.SENT), ("i1", DeliveryStatus.FAILED), ("i2", DeliveryStatus.SENT)):
        any_store.create_history(NotificationHistory(
            incident_id=incident_id,
            channel_id="c1",
            type=NotificationType.INCIDENT_CREATED,
            channel=ChannelType.CHAT,
            status=status,
        ))

    assert len(any_store.list_history(incident_id="i1")) == 2
    assert len(any_store.list_history(status=DeliveryStatus.SENT)) == 2
    assert len(any_store.list_history(incident_id="i1", status=DeliveryStatus.FAILED)) == 1
    assert any_store.list_history(channel_id="other") == []


def test_ping(any_store):
    assert any_store.ping() is True


def test_sqlite_store_persists_across_instances(tmp_path):
    path = tmp_path / "hub.db"
    incident = SQLiteStore(path).create_incident(_incident("Disk full"))

    assert SQLiteStore(path).get_incident(incident.id).title == "Disk full"


class TestLockedTable:
    """Tests for the keyed table behind the in-memory indices."""

    def test_put_if_absent(self):
        table = LockedTable()
        assert table.put_if_absent("a", 1) is True
        assert table.put_if_absent("a", 2) is False
        assert table.get("a") == 1

    def test_replace_requires_existing_key(self):
        table = LockedTable()
        assert table.replace("a", 1) is False
        table.put("a", 1)
        assert table.replace("a", 2) is True
        assert table.get("a") == 2

    def test_pop_where_removes_matches_only(self):
        table = LockedTable()
        for key, value in (("a", 1), ("b", 2), ("c", 3)):
            table.put(key, value)

        removed = table.pop_where(lambda k, v: v >= 2)

        assert sorted(removed) == [2, 3]
        assert table.items() == [("a", 1)]

    def test_concurrent_mutate_loses_no_updates(self):
        table = LockedTable()

        def bump():
            for _ in range(200):
                table.mutate("n", lambda v: (v or 0) + 1)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert table.get("n") == 1600
