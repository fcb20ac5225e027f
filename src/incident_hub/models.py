"""
Data models for incident-hub using Pydantic for validation.
"""
import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser
from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp from a string or pass a datetime through.

    Naive datetimes are assumed to be UTC so every stored timestamp
    can be compared with every other.

    Raises:
        ValueError: If a string cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = date_parser.parse(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AlertStatus(str, Enum):
    FIRING = "firing"
    RESOLVED = "resolved"


class IncidentStatus(str, Enum):
    """Incident lifecycle states, in forward order."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED, IncidentStatus.RESOLVED]


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            lowered = value.lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class ChannelType(str, Enum):
    """Closed set of delivery channel kinds."""
    CHAT = "chat"
    EMAIL = "email"
    BOT = "bot"

    @classmethod
    def _missing_(cls, value: object):
        aliases = {"slack": cls.CHAT, "telegram": cls.BOT, "smtp": cls.EMAIL}
        if isinstance(value, str):
            lowered = value.lower()
            if lowered in aliases:
                return aliases[lowered]
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class NotificationType(str, Enum):
    INCIDENT_CREATED = "incident_created"
    INCIDENT_ACKNOWLEDGED = "incident_acknowledged"
    INCIDENT_RESOLVED = "incident_resolved"
    TEST = "test"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


class TimelineEntryType(str, Enum):
    CREATED = "created"
    COMMENT = "comment"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    ALERT_GROUPED = "alert_grouped"


class Alert(BaseModel):
    """
    A single alert received from the monitoring pipeline.

    Attributes:
        fingerprint: Stable hash of the label set, used as the dedup key
        status: firing or resolved
        incident_id: Incident the alert was grouped into, if any
    """
    id: str = Field(default_factory=new_id)
    fingerprint: str
    status: AlertStatus
    starts_at: datetime
    ends_at: Optional[datetime] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    incident_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('starts_at', 'ends_at', 'created_at', mode='before')
    @classmethod
    def parse_times(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)


class Incident(BaseModel):
    """
    An incident groups one or more firing alerts.

    Status only moves forward: open -> acknowledged -> resolved.
    """
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    status: IncidentStatus = IncidentStatus.OPEN
    severity: Severity = Severity.MEDIUM
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    acked_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    assignee_id: Optional[str] = None
    alert_ids: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator('created_at', 'updated_at', 'acked_at', 'resolved_at', mode='before')
    @classmethod
    def parse_times(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    def attach_alert(self, alert_id: str) -> bool:
        """Append an alert id, keeping the list an ordered set."""
        if alert_id in self.alert_ids:
            return False
        self.alert_ids.append(alert_id)
        return True


class TimelineEntry(BaseModel):
    """Immutable record of one lifecycle mutation."""
    id: str = Field(default_factory=new_id)
    incident_id: str
    entry_type: TimelineEntryType
    user_id: Optional[str] = None
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0


_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class QuietHours(BaseModel):
    """
    Window during which a channel stays silent.

    Days use 0 = Sunday through 6 = Saturday. An empty day list means
    every day. A start later than the end wraps past midnight.
    """
    enabled: bool = False
    start_time: str = "22:00"
    end_time: str = "06:00"
    timezone: str = "UTC"
    days: List[int] = Field(default_factory=list)

    @field_validator('start_time', 'end_time')
    @classmethod
    def check_clock(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got '{v}'")
        return v

    @field_validator('days')
    @classmethod
    def check_days(cls, v: List[int]) -> List[int]:
        for day in v:
            if day < 0 or day > 6:
                raise ValueError(f"day must be between 0 (Sunday) and 6, got {day}")
        return v


class ChannelPreferences(BaseModel):
    opt_in: bool = True
    severity_filter: List[Severity] = Field(default_factory=list)
    notification_types: List[NotificationType] = Field(default_factory=list)
    quiet_hours: Optional[QuietHours] = None
    batching_enabled: bool = False
    max_batch_size: int = 0
    batching_interval: float = 0.0  # seconds


class NotificationChannel(BaseModel):
    """
    A configured delivery target.

    Attributes:
        config: Credentials and target, e.g. token/channel for chat
        templates: Per-type body overrides keyed by notification type value
    """
    id: str = Field(default_factory=new_id)
    name: str
    type: ChannelType
    enabled: bool = True
    config: Dict[str, str] = Field(default_factory=dict)
    preferences: Optional[ChannelPreferences] = None
    templates: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('name')
    @classmethod
    def check_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("channel name is required")
        return v

    @field_validator('templates')
    @classmethod
    def check_template_keys(cls, v: Dict[str, str]) -> Dict[str, str]:
        for key in v:
            NotificationType(key)
        return v


class NotificationTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: NotificationType
    channel: ChannelType
    subject: str = ""
    body: str
    is_default: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NotificationHistory(BaseModel):
    """One delivery attempt context for (incident, channel, type)."""
    id: str = Field(default_factory=new_id)
    incident_id: str
    channel_id: str
    template_id: Optional[str] = None
    type: NotificationType
    channel: ChannelType
    recipient: str = ""
    subject: str = ""
    content: str = ""
    status: DeliveryStatus = DeliveryStatus.PENDING
    error_msg: Optional[str] = None
    retry_count: int = 0
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NotificationBatch(BaseModel):
    id: str = Field(default_factory=new_id)
    channel_id: str
    type: NotificationType
    count: int = 0
    notifications: List[str] = Field(default_factory=list)
    status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error_msg: Optional[str] = None


class ScheduledNotification(BaseModel):
    id: str = Field(default_factory=new_id)
    incident: Incident
    channel: NotificationChannel
    type: NotificationType
    scheduled_at: datetime
    status: DeliveryStatus = DeliveryStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('scheduled_at', mode='before')
    @classmethod
    def parse_times(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)


class BulkOperationFailure(BaseModel):
    incident_id: str
    error: str


class BulkOperationResult(BaseModel):
    processed_count: int = 0
    failed_count: int = 0
    failures: List[BulkOperationFailure] = Field(default_factory=list)


class IncidentMetrics(BaseModel):
    """Aggregates over all incidents. MTTA/MTTR are zero with no samples."""
    total_incidents: int = 0
    open_incidents: int = 0
    acknowledged_incidents: int = 0
    resolved_incidents: int = 0
    mtta: timedelta = timedelta(0)
    mttr: timedelta = timedelta(0)
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_severity: Dict[str, int] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={'mtta', 'mttr'})
        data['mtta_seconds'] = self.mtta.total_seconds()
        data['mttr_seconds'] = self.mttr.total_seconds()
        return data


# Escalation is modelled only; no engine acts on it.
class EscalationRule(BaseModel):
    delay_minutes: int
    targets: List[str] = Field(default_factory=list)


class EscalationPolicy(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    rules: List[EscalationRule] = Field(default_factory=list)
