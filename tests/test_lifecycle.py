"""
Tests for the incident lifecycle manager.
"""
import threading
from datetime import timedelta

import pytest

from incident_hub.exceptions import IncidentNotFoundError, InvalidTransitionError, ValidationError
from incident_hub.incidents import IncidentManager
from incident_hub.models import IncidentStatus, NotificationType, Severity, TimelineEntryType
from incident_hub.storage import IncidentFilter


@pytest.fixture
def manager(store, clock):
    return IncidentManager(store, clock)


@pytest.fixture
def events(manager):
    received = []
    manager.subscribe(lambda event_type, incident: received.append((event_type, incident.id)))
    return received


def test_create_records_timeline_and_emits(manager, events, clock):
    incident = manager.create_incident("Disk full", severity=Severity.HIGH, user_id="alice")

    assert incident.status == IncidentStatus.OPEN
    assert incident.created_at == clock.now
    assert events == [(NotificationType.INCIDENT_CREATED, incident.id)]

    [entry] = manager.get_timeline(incident.id)
    assert entry.entry_type == TimelineEntryType.CREATED
    assert entry.user_id == "alice"
    assert entry.metadata == {"severity": "high"}


def test_create_requires_title(manager):
    with pytest.raises(ValidationError):
        manager.create_incident("   ")


def test_acknowledge_then_resolve(manager, events, clock):
    incident = manager.create_incident("Disk full")

    clock.advance(minutes=5)
    acked = manager.acknowledge(incident.id, assignee_id="alice", user_id="alice")
    assert acked.status == IncidentStatus.ACKNOWLEDGED
    assert acked.acked_at == clock.now
    assert acked.assignee_id == "alice"

    clock.advance(minutes=30)
    resolved = manager.resolve(incident.id, user_id="alice")
    assert resolved.status == IncidentStatus.RESOLVED
    assert resolved.resolved_at == clock.now
    assert resolved.acked_at < resolved.resolved_at

    assert [e[0] for e in events] == [
        NotificationType.INCIDENT_CREATED,
        NotificationType.INCIDENT_ACKNOWLEDGED,
        NotificationType.INCIDENT_RESOLVED,
    ]
    types = [e.entry_type for e in manager.get_timeline(incident.id)]
    assert types == [
        TimelineEntryType.CREATED,
        TimelineEntryType.STATUS_CHANGE,
        TimelineEntryType.ASSIGNMENT,
        TimelineEntryType.STATUS_CHANGE,
    ]


def test_resolve_from_open_acknowledges_implicitly(manager, clock):
    incident = manager.create_incident("Disk full")
    clock.advance(minutes=12)

    resolved = manager.resolve(incident.id)

    assert resolved.acked_at == resolved.resolved_at == clock.now
    entries = manager.get_timeline(incident.id)
    assert [e.metadata.get("new_status") for e in entries[1:]] == ["acknowledged", "resolved"]
    assert entries[1].metadata["implicit"] is True


def test_status_never_moves_backwards(manager):
    incident = manager.create_incident("Disk full")
    manager.acknowledge(incident.id)

    with pytest.raises(InvalidTransitionError):
        manager.acknowledge(incident.id)
    with pytest.raises(InvalidTransitionError):
        manager.update_status(incident.id, IncidentStatus.OPEN)

    manager.resolve(incident.id)
    with pytest.raises(InvalidTransitionError):
        manager.resolve(incident.id)
    with pytest.raises(InvalidTransitionError):
        manager.acknowledge(incident.id)
    assert manager.get_incident(incident.id).status == IncidentStatus.RESOLVED


def test_timestamps_never_precede_creation(manager, clock):
    incident = manager.create_incident("Disk full")
    clock.advance(minutes=-10)

    acked = manager.acknowledge(incident.id)

    assert acked.acked_at == incident.created_at


def test_update_status_routes_to_transitions(manager):
    incident = manager.create_incident("Disk full")

    acked = manager.update_status(incident.id, IncidentStatus.ACKNOWLEDGED, assignee_id="bob")
    assert acked.assignee_id == "bob"

    assert manager.update_status(incident.id, IncidentStatus.RESOLVED).status == IncidentStatus.RESOLVED


def test_assign_and_reassign(manager):
    incident = manager.create_incident("Disk full")

    manager.assign(incident.id, "alice")
    manager.assign(incident.id, "bob")

    assert manager.get_incident(incident.id).assignee_id == "bob"
    actions = [e.metadata["action"] for e in manager.get_timeline(incident.id)
               if e.entry_type == TimelineEntryType.ASSIGNMENT]
    assert actions == ["assigned", "reassigned"]

    with pytest.raises(ValidationError):
        manager.assign(incident.id, "")


def test_tags(manager):
    incident = manager.create_incident("Disk full")

    manager.add_tags(incident.id, {"team": "storage", "env": "prod"})
    updated = manager.remove_tags(incident.id, ["env", "unknown"])

    assert updated.tags == {"team": "storage"}
    types = [e.entry_type for e in manager.get_timeline(incident.id)]
    assert types.count(TimelineEntryType.TAG_ADDED) == 2
    assert types.count(TimelineEntryType.TAG_REMOVED) == 1

    with pytest.raises(ValidationError):
        manager.add_tags(incident.id, {})


def test_comments_are_appended_in_order(manager, clock):
    incident = manager.create_incident("Disk full")
    manager.add_comment(incident.id, "looking", user_id="alice")
    clock.advance(minutes=1)
    manager.add_comment(incident.id, "fixed the volume", user_id="bob")

    comments = [e for e in manager.get_timeline(incident.id) if e.entry_type == TimelineEntryType.COMMENT]
    assert [c.content for c in comments] == ["looking", "fixed the volume"]
    assert [c.user_id for c in comments] == ["alice", "bob"]

    with pytest.raises(ValidationError):
        manager.add_comment(incident.id, "")
    with pytest.raises(IncidentNotFoundError):
        manager.add_comment("missing", "hello")


def test_attach_alert(manager):
    incident = manager.create_incident("Disk full", alert_ids=["a1"])

    manager.attach_alert(incident.id, "a2")
    manager.attach_alert(incident.id, "a2")

    assert manager.get_incident(incident.id).alert_ids == ["a1", "a2"]
    grouped = [e for e in manager.get_timeline(incident.id) if e.entry_type == TimelineEntryType.ALERT_GROUPED]
    assert len(grouped) == 1

    manager.resolve(incident.id)
    with pytest.raises(InvalidTransitionError):
        manager.attach_alert(incident.id, "a3")


def test_listener_errors_do_not_fail_the_operation(manager):
    def broken(event_type, incident):
        raise RuntimeError("listener exploded")

    manager.subscribe(broken)

    incident = manager.create_incident("Disk full")
    assert manager.get_incident(incident.id).title == "Disk full"


def test_list_and_active_incidents(manager):
    first = manager.create_incident("a", severity=Severity.CRITICAL)
    second = manager.create_incident("b")
    manager.resolve(first.id)

    assert [i.id for i in manager.active_incidents()] == [second.id]
    resolved = manager.list_incidents(IncidentFilter(status=IncidentStatus.RESOLVED))
    assert [i.id for i in resolved] == [first.id]


def test_delete_incident(manager):
    incident = manager.create_incident("Disk full")

    manager.delete_incident(incident.id)

    with pytest.raises(IncidentNotFoundError):
        manager.get_incident(incident.id)


class TestBulkOperations:
    def test_bulk_acknowledge_reports_failures(self, manager):
        a = manager.create_incident("a")
        b = manager.create_incident("b")
        manager.acknowledge(b.id)

        result = manager.bulk_acknowledge([a.id, b.id, "missing"], assignee_id="alice")

        assert result.processed_count == 1
        assert result.failed_count == 2
        assert {f.incident_id for f in result.failures} == {b.id, "missing"}
        assert manager.get_incident(a.id).assignee_id == "alice"

    def test_bulk_resolve(self, manager):
        ids = [manager.create_incident(f"i{n}").id for n in range(3)]

        result = manager.bulk_resolve(ids)

        assert result.processed_count == 3
        assert all(manager.get_incident(i).status == IncidentStatus.RESOLVED for i in ids)

    def test_bulk_assign_and_update_status(self, manager):
        ids = [manager.create_incident(f"i{n}").id for n in range(2)]

        assert manager.bulk_assign(ids, "carol").processed_count == 2
        result = manager.bulk_update_status(ids, IncidentStatus.ACKNOWLEDGED)

        assert result.processed_count == 2
        assert all(manager.get_incident(i).assignee_id == "carol" for i in ids)


class TestMetrics:
    def test_no_samples_gives_zero(self, manager):
        manager.create_incident("open one")

        metrics = manager.calculate_metrics()

        assert metrics.total_incidents == 1
        assert metrics.open_incidents == 1
        assert metrics.mtta == timedelta(0)
        assert metrics.mttr == timedelta(0)

    def test_mean_time_to_acknowledge_and_resolve(self, manager, clock):
        start = clock.now
        first = manager.create_incident("first", severity=Severity.CRITICAL)
        second = manager.create_incident("second")

        clock.now = start + timedelta(minutes=10)
        manager.acknowledge(first.id)
        clock.now = start + timedelta(minutes=20)
        manager.acknowledge(second.id)
        clock.now = start + timedelta(minutes=60)
        manager.resolve(first.id)

        metrics = manager.calculate_metrics()

        assert metrics.mtta == timedelta(minutes=15)
        assert metrics.mttr == timedelta(minutes=60)
        assert metrics.by_status == {"resolved": 1, "acknowledged": 1}
        assert metrics.by_severity == {"critical": 1, "medium": 1}
        assert metrics.acknowledged_incidents == 1
        assert metrics.resolved_incidents == 1


def test_concurrent_tagging_loses_no_updates(manager):
    incident = manager.create_incident("Disk full")

    def tag(n):
        manager.add_tags(incident.id, {f"tag{n}": "x"})

    threads = [threading.Thread(target=tag, args=(n,)) for n in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(manager.get_incident(incident.id).tags) == 20


def test_resolve_releases_per_incident_lock(manager):
    incident = manager.create_incident("Disk full")
    manager.acknowledge(incident.id)
    assert incident.id in manager._locks

    manager.resolve(incident.id)
    assert incident.id not in manager._locks

    # Later edits still work and only recreate the lock
    manager.add_tags(incident.id, {"team": "storage"})
    assert manager.get_incident(incident.id).tags == {"team": "storage"}
