"""
SQLite-based implementation of the storage contract.

Entities are stored as JSON documents keyed by (kind, id), with side
tables for the alert fingerprint index and incident timelines.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel

from ..exceptions import (
    AlertNotFoundError,
    BatchNotFoundError,
    ChannelNotFoundError,
    HistoryNotFoundError,
    IncidentNotFoundError,
    NotFoundError,
    StorageError,
    TemplateNotFoundError,
)
from ..models import (
    Alert,
    DeliveryStatus,
    Incident,
    NotificationBatch,
    NotificationChannel,
    NotificationHistory,
    NotificationTemplate,
    TimelineEntry,
    utcnow,
)
from .base import IncidentFilter, Store, apply_incident_filter

logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)


class SQLiteStore(Store):
    """
    SQLite-backed store.

    Opens a short-lived connection per operation so it can be shared
    between the HTTP workers and the background sweepers.

    Example:
        >>> store = SQLiteStore("incident_hub.db")
        >>> store.create_incident(Incident(title="Disk full"))
        >>> store.list_incidents(IncidentFilter(limit=10))
    """

    def __init__(self, db_path: str | Path = "incident_hub.db"):
        """
        Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._write_lock = threading.Lock()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_fingerprints (
                    fingerprint TEXT PRIMARY KEY,
                    alert_id TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS timeline_entries (
                    id TEXT PRIMARY KEY,
                    incident_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    data TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_kind_created
                ON documents(kind, created_at)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_timeline_incident
                ON timeline_entries(incident_id, sequence)
            """)

            conn.commit()
            logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            raise StorageError(f"cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    # Generic document helpers

    def _insert(self, kind: str, model: BaseModel) -> None:
        with self._write_lock, self._get_connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO documents (kind, id, data, created_at) VALUES (?, ?, ?, ?)",
                    (kind, model.id, model.model_dump_json(), model.created_at.isoformat()),
                )
            except sqlite3.IntegrityError as e:
                raise StorageError(f"{kind} already exists: {model.id}") from e
            conn.commit()

    def _fetch(self, kind: str, doc_id: str, model_cls: Type[M], not_found: Type[NotFoundError]) -> M:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM documents WHERE kind = ? AND id = ?", (kind, doc_id)
            ).fetchone()
        if row is None:
            raise not_found(doc_id)
        return model_cls.model_validate_json(row["data"])

    def _replace(self, kind: str, model: BaseModel, not_found: Type[NotFoundError]) -> None:
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE documents SET data = ? WHERE kind = ? AND id = ?",
                (model.model_dump_json(), kind, model.id),
            )
            if cursor.rowcount == 0:
                raise not_found(model.id)
            conn.commit()

    def _delete(self, kind: str, doc_id: str, not_found: Type[NotFoundError]) -> None:
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE kind = ? AND id = ?", (kind, doc_id)
            )
            if cursor.rowcount == 0:
                raise not_found(doc_id)
            conn.commit()

    def _list(self, kind: str, model_cls: Type[M]) -> List[M]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT data FROM documents WHERE kind = ? ORDER BY created_at", (kind,)
            ).fetchall()
        return [model_cls.model_validate_json(row["data"]) for row in rows]

    # Incidents

    def create_incident(self, incident: Incident) -> Incident:
        self._insert("incident", incident)
        return incident.model_copy(deep=True)

    def get_incident(self, incident_id: str) -> Incident:
        return self._fetch("incident", incident_id, Incident, IncidentNotFoundError)

    def update_incident(self, incident: Incident) -> Incident:
        self._replace("incident", incident, IncidentNotFoundError)
        return incident.model_copy(deep=True)

    def delete_incident(self, incident_id: str) -> None:
        self._delete("incident", incident_id, IncidentNotFoundError)
        with self._write_lock, self._get_connection() as conn:
            conn.execute("DELETE FROM timeline_entries WHERE incident_id = ?", (incident_id,))
            conn.commit()
        logger.warning(f"Incident {incident_id} deleted")

    def list_incidents(self, incident_filter: Optional[IncidentFilter] = None) -> List[Incident]:
        return apply_incident_filter(self._list("incident", Incident), incident_filter)

    # Alerts

    def create_alert(self, alert: Alert) -> Alert:
        with self._write_lock, self._get_connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO alert_fingerprints (fingerprint, alert_id) VALUES (?, ?)",
                    (alert.fingerprint, alert.id),
                )
                conn.execute(
                    "INSERT INTO documents (kind, id, data, created_at) VALUES (?, ?, ?, ?)",
                    ("alert", alert.id, alert.model_dump_json(), alert.created_at.isoformat()),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise StorageError(f"alert already exists: {alert.fingerprint}") from e
            conn.commit()
        return alert.model_copy(deep=True)

    def get_alert(self, alert_id: str) -> Alert:
        return self._fetch("alert", alert_id, Alert, AlertNotFoundError)

    def get_alert_by_fingerprint(self, fingerprint: str) -> Optional[Alert]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT alert_id FROM alert_fingerprints WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
        if row is None:
            return None
        try:
            return self.get_alert(row["alert_id"])
        except AlertNotFoundError:
            return None

    def update_alert(self, alert: Alert) -> Alert:
        self._replace("alert", alert, AlertNotFoundError)
        return alert.model_copy(deep=True)

    def list_alerts(self) -> List[Alert]:
        return self._list("alert", Alert)

    # Timeline

    def add_timeline_entry(self, entry: TimelineEntry) -> TimelineEntry:
        self.get_incident(entry.incident_id)
        stored = entry.model_copy(deep=True)
        with self._write_lock, self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM timeline_entries WHERE incident_id = ?",
                (entry.incident_id,),
            ).fetchone()
            stored.sequence = row["n"]
            conn.execute(
                "INSERT INTO timeline_entries (id, incident_id, sequence, data) VALUES (?, ?, ?, ?)",
                (stored.id, stored.incident_id, stored.sequence, stored.model_dump_json()),
            )
            conn.commit()
        return stored

    def list_timeline_entries(self, incident_id: str) -> List[TimelineEntry]:
        self.get_incident(incident_id)
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT data FROM timeline_entries WHERE incident_id = ? ORDER BY sequence",
                (incident_id,),
            ).fetchall()
        return [TimelineEntry.model_validate_json(row["data"]) for row in rows]

    # Channels

    def create_channel(self, channel: NotificationChannel) -> NotificationChannel:
        self._insert("channel", channel)
        return channel.model_copy(deep=True)

    def get_channel(self, channel_id: str) -> NotificationChannel:
        return self._fetch("channel", channel_id, NotificationChannel, ChannelNotFoundError)

    def update_channel(self, channel: NotificationChannel) -> NotificationChannel:
        channel.updated_at = utcnow()
        self._replace("channel", channel, ChannelNotFoundError)
        return channel.model_copy(deep=True)

    def delete_channel(self, channel_id: str) -> None:
        self._delete("channel", channel_id, ChannelNotFoundError)

    def list_channels(self) -> List[NotificationChannel]:
        return self._list("channel", NotificationChannel)

    # Templates

    def create_template(self, template: NotificationTemplate) -> NotificationTemplate:
        self._insert("template", template)
        return template.model_copy(deep=True)

    def get_template(self, template_id: str) -> NotificationTemplate:
        return self._fetch("template", template_id, NotificationTemplate, TemplateNotFoundError)

    def update_template(self, template: NotificationTemplate) -> NotificationTemplate:
        template.updated_at = utcnow()
        self._replace("template", template, TemplateNotFoundError)
        return template.model_copy(deep=True)

    def delete_template(self, template_id: str) -> None:
        self._delete("template", template_id, TemplateNotFoundError)

    def list_templates(self) -> List[NotificationTemplate]:
        return self._list("template", NotificationTemplate)

    # History

    def create_history(self, record: NotificationHistory) -> NotificationHistory:
        self._insert("history", record)
        return record.model_copy(deep=True)

    def get_history(self, history_id: str) -> NotificationHistory:
        return self._fetch("history", history_id, NotificationHistory, HistoryNotFoundError)

    def update_history(self, record: NotificationHistory) -> NotificationHistory:
        self._replace("history", record, HistoryNotFoundError)
        return record.model_copy(deep=True)

    def list_history(
        self,
        incident_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[NotificationHistory]:
        return [
            r for r in self._list("history", NotificationHistory)
            if (incident_id is None or r.incident_id == incident_id)
            and (channel_id is None or r.channel_id == channel_id)
            and (status is None or r.status == status)
        ]

    # Batches

    def create_batch(self, batch: NotificationBatch) -> NotificationBatch:
        self._insert("batch", batch)
        return batch.model_copy(deep=True)

    def get_batch(self, batch_id: str) -> NotificationBatch:
        return self._fetch("batch", batch_id, NotificationBatch, BatchNotFoundError)

    def update_batch(self, batch: NotificationBatch) -> NotificationBatch:
        self._replace("batch", batch, BatchNotFoundError)
        return batch.model_copy(deep=True)

    def list_batches(self, channel_id: Optional[str] = None) -> List[NotificationBatch]:
        return [
            b for b in self._list("batch", NotificationBatch)
            if channel_id is None or b.channel_id == channel_id
        ]

    def ping(self) -> bool:
        try:
            with self._get_connection() as conn:
                conn.execute("SELECT 1")
            return True
        except StorageError as e:
            logger.error(f"SQLite ping failed: {e}")
            return False
