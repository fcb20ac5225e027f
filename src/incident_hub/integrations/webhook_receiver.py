"""
Alertmanager webhook receiver.

Validates the raw request body, drops replays, converts the payload into
alerts and hands them to the correlation engine.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..alerting import AlertCorrelator, compute_fingerprint
from ..constants import DEFAULT_WEBHOOK_MAX_BODY_BYTES
from ..exceptions import IncidentHubError, PayloadTooLargeError, ValidationError, WebhookValidationError
from ..logging_context import get_logger
from ..metrics import track_webhook_request
from ..models import Alert, AlertStatus, parse_timestamp
from .idempotency import IdempotencyCache

logger = get_logger(__name__)


def _optional_time(value: Any) -> Optional[datetime]:
    parsed = parse_timestamp(value)
    # Alertmanager sends the zero time for alerts that have not ended
    if parsed is not None and parsed.year <= 1:
        return None
    return parsed


class WebhookAlert(BaseModel):
    """One entry of the `alerts` array."""
    model_config = ConfigDict(populate_by_name=True)

    status: AlertStatus
    labels: Dict[str, str]
    annotations: Dict[str, str] = Field(default_factory=dict)
    starts_at: datetime = Field(alias="startsAt")
    ends_at: Optional[datetime] = Field(default=None, alias="endsAt")
    fingerprint: str = ""
    generator_url: str = Field(default="", alias="generatorURL")

    @field_validator('starts_at', mode='before')
    @classmethod
    def parse_start(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator('ends_at', mode='before')
    @classmethod
    def parse_end(cls, v: Any) -> Optional[datetime]:
        return _optional_time(v)

    def to_alert(self) -> Alert:
        return Alert(
            fingerprint=self.fingerprint or compute_fingerprint(self.labels),
            status=self.status,
            starts_at=self.starts_at,
            ends_at=self.ends_at,
            labels=dict(self.labels),
            annotations=dict(self.annotations),
        )


class AlertmanagerWebhook(BaseModel):
    """Alertmanager webhook payload (version 4)."""
    model_config = ConfigDict(populate_by_name=True)

    version: str
    status: AlertStatus
    receiver: str = ""
    group_key: str = Field(default="", alias="groupKey")
    group_labels: Dict[str, str] = Field(default_factory=dict, alias="groupLabels")
    common_labels: Dict[str, str] = Field(default_factory=dict, alias="commonLabels")
    common_annotations: Dict[str, str] = Field(default_factory=dict, alias="commonAnnotations")
    external_url: str = Field(default="", alias="externalURL")
    alerts: List[WebhookAlert] = Field(min_length=1)

    @field_validator('version')
    @classmethod
    def check_version(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("version is required")
        return v

    def to_alerts(self) -> List[Alert]:
        return [a.to_alert() for a in self.alerts]


def parse_webhook(body: bytes) -> AlertmanagerWebhook:
    """
    Decode and validate a webhook body.

    Raises:
        WebhookValidationError: With one problem string per failed field
    """
    if not body or not body.strip():
        raise WebhookValidationError("empty request body", ["body: must not be empty"])
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookValidationError("invalid JSON payload", [str(e)]) from e
    if not isinstance(data, dict):
        raise WebhookValidationError("invalid webhook payload", ["body: expected a JSON object"])

    try:
        return AlertmanagerWebhook.model_validate(data)
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise WebhookValidationError("invalid webhook payload", problems) from e


class WebhookReceiver:
    """
    Entry point for Alertmanager deliveries.

    Example:
        >>> receiver = WebhookReceiver(correlator, IdempotencyCache())
        >>> receiver.receive(request.get_data())
        {'status': 'ok', 'alerts_received': 1, ...}
    """

    def __init__(
        self,
        correlator: AlertCorrelator,
        idempotency: IdempotencyCache,
        max_body_bytes: int = DEFAULT_WEBHOOK_MAX_BODY_BYTES,
    ):
        self.correlator = correlator
        self.idempotency = idempotency
        self.max_body_bytes = max_body_bytes

    def receive(self, body: bytes) -> Dict[str, Any]:
        """
        Process one raw webhook body.

        Returns:
            Response document; `duplicate` is set for a replayed body

        Raises:
            PayloadTooLargeError: Body exceeds max_body_bytes
            WebhookValidationError: Body is empty or malformed
            StorageError: Processing aborted part way through the batch
        """
        try:
            if len(body) > self.max_body_bytes:
                raise PayloadTooLargeError(len(body), self.max_body_bytes)

            if self.idempotency.is_processed(body):
                logger.info("Ignoring replayed webhook payload")
                track_webhook_request("duplicate")
                return {"status": "ok", "duplicate": True}

            payload = parse_webhook(body)
            result = self.correlator.process_alerts(payload.to_alerts())
        except ValidationError as e:
            logger.warning(f"Webhook rejected: {e}")
            track_webhook_request("rejected")
            raise
        except IncidentHubError as e:
            logger.error(f"Webhook processing failed: {e}")
            track_webhook_request("error")
            raise

        self.idempotency.mark_processed(body)
        track_webhook_request("ok")
        return {"status": "ok", **result.to_dict()}
