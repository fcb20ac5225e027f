"""
Notification template rendering.

Templates are Jinja2 text over a fixed variable set:

    incident       the incident (title, description, status, severity,
                   created_at, acked_at, resolved_at, assignee_id, labels, ...)
    timestamp      time of rendering
    system_name    display name of this installation
    system_url     base URL of this installation
    incident_url   link to the incident
    channel_name   name of the channel being rendered for
    severity       incident severity
    status         incident status

and a small function set: upper(), lower(), format_time(), duration().
Rendering is strict: an undefined variable or unknown function fails.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import TemplateError, TemplateNotFoundError, ValidationError
from ..models import (
    ChannelType,
    Incident,
    IncidentStatus,
    NotificationChannel,
    NotificationTemplate,
    NotificationType,
    Severity,
    utcnow,
)
from ..storage import Store

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def format_time(value: Optional[datetime], fmt: str = TIME_FORMAT) -> str:
    if value is None:
        return "N/A"
    return value.strftime(fmt)


def format_duration(delta: timedelta) -> str:
    """Render a timedelta as e.g. '1h 5m 3s'."""
    total = int(delta.total_seconds())
    if total < 0:
        total = 0
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)


def duration(start: Optional[datetime], end: Optional[datetime] = None) -> str:
    """Time between two instants; `end` defaults to now."""
    if start is None:
        return "N/A"
    return format_duration((end or utcnow()) - start)


def _upper(value: Any) -> str:
    return str(value).upper()


def _lower(value: Any) -> str:
    return str(value).lower()


def _incident_context(incident: Incident) -> Dict[str, Any]:
    data = incident.model_dump()
    data["status"] = incident.status.value
    data["severity"] = incident.severity.value
    return data


@dataclass
class TemplateVariables:
    """The complete variable set a template may reference."""
    incident: Incident
    channel_name: str = ""
    system_name: str = "Incident Hub"
    system_url: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def as_context(self) -> Dict[str, Any]:
        base_url = self.system_url.rstrip("/")
        return {
            "incident": _incident_context(self.incident),
            "timestamp": self.timestamp,
            "system_name": self.system_name,
            "system_url": self.system_url,
            "incident_url": f"{base_url}/incidents/{self.incident.id}",
            "channel_name": self.channel_name,
            "severity": self.incident.severity.value,
            "status": self.incident.status.value,
        }


@dataclass(frozen=True)
class TemplateSpec:
    subject: str
    body: str


_CHAT_DETAILS = (
    "*Severity:* {{ upper(severity) }}\n"
    "*Status:* {{ status }}\n"
    "*Description:* {{ incident.description }}\n"
    "<{{ incident_url }}|View incident>"
)

_EMAIL_FOOTER = (
    "\n\nView incident: {{ incident_url }}\n"
    "-- \n{{ system_name }}"
)

_BOT_DETAILS = (
    "Severity: {{ upper(severity) }}\n"
    "Status: {{ status }}\n"
    "{{ incident_url }}"
)

DEFAULT_TEMPLATES: Dict[Tuple[NotificationType, ChannelType], TemplateSpec] = {
    (NotificationType.INCIDENT_CREATED, ChannelType.CHAT): TemplateSpec(
        subject="New incident: {{ incident.title }}",
        body="🚨 *New incident:* {{ incident.title }}\n" + _CHAT_DETAILS,
    ),
    (NotificationType.INCIDENT_CREATED, ChannelType.EMAIL): TemplateSpec(
        subject="[{{ upper(severity) }}] New incident: {{ incident.title }}",
        body=(
            "A new incident was opened at {{ format_time(incident.created_at) }}.\n\n"
            "Title: {{ incident.title }}\n"
            "Severity: {{ upper(severity) }}\n"
            "Status: {{ status }}\n\n"
            "{{ incident.description }}"
        ) + _EMAIL_FOOTER,
    ),
    (NotificationType.INCIDENT_CREATED, ChannelType.BOT): TemplateSpec(
        subject="New incident: {{ incident.title }}",
        body="🚨 New incident: {{ incident.title }}\n" + _BOT_DETAILS,
    ),
    (NotificationType.INCIDENT_ACKNOWLEDGED, ChannelType.CHAT): TemplateSpec(
        subject="Incident acknowledged: {{ incident.title }}",
        body=(
            "✅ *Incident acknowledged:* {{ incident.title }}\n"
            "*Assignee:* {{ incident.assignee_id or 'unassigned' }}\n"
            "*Time to acknowledge:* {{ duration(incident.created_at, incident.acked_at) }}\n"
        ) + _CHAT_DETAILS,
    ),
    (NotificationType.INCIDENT_ACKNOWLEDGED, ChannelType.EMAIL): TemplateSpec(
        subject="[ACK] {{ incident.title }}",
        body=(
            "Incident \"{{ incident.title }}\" was acknowledged at "
            "{{ format_time(incident.acked_at) }} by {{ incident.assignee_id or 'unassigned' }}.\n"
            "Time to acknowledge: {{ duration(incident.created_at, incident.acked_at) }}"
        ) + _EMAIL_FOOTER,
    ),
    (NotificationType.INCIDENT_ACKNOWLEDGED, ChannelType.BOT): TemplateSpec(
        subject="Incident acknowledged: {{ incident.title }}",
        body=(
            "✅ Acknowledged: {{ incident.title }}\n"
            "Assignee: {{ incident.assignee_id or 'unassigned' }}\n"
        ) + _BOT_DETAILS,
    ),
    (NotificationType.INCIDENT_RESOLVED, ChannelType.CHAT): TemplateSpec(
        subject="Incident resolved: {{ incident.title }}",
        body=(
            "🎉 *Incident resolved:* {{ incident.title }}\n"
            "*Time to resolve:* {{ duration(incident.created_at, incident.resolved_at) }}\n"
        ) + _CHAT_DETAILS,
    ),
    (NotificationType.INCIDENT_RESOLVED, ChannelType.EMAIL): TemplateSpec(
        subject="[RESOLVED] {{ incident.title }}",
        body=(
            "Incident \"{{ incident.title }}\" was resolved at "
            "{{ format_time(incident.resolved_at) }}.\n"
            "Time to resolve: {{ duration(incident.created_at, incident.resolved_at) }}"
        ) + _EMAIL_FOOTER,
    ),
    (NotificationType.INCIDENT_RESOLVED, ChannelType.BOT): TemplateSpec(
        subject="Incident resolved: {{ incident.title }}",
        body=(
            "🎉 Resolved: {{ incident.title }}\n"
            "Time to resolve: {{ duration(incident.created_at, incident.resolved_at) }}\n"
        ) + _BOT_DETAILS,
    ),
}

GENERIC_TEMPLATE = TemplateSpec(
    subject="Incident Alert: {{ incident.title }}",
    body=(
        "{{ incident.title }}\n"
        "Severity: {{ upper(severity) }}\n"
        "Status: {{ status }}\n"
        "Time: {{ format_time(timestamp) }}\n"
        "{{ incident_url }}"
    ),
)


def builtin_template(notification_type: NotificationType, channel_type: ChannelType) -> NotificationTemplate:
    """Builtin default for a (type, channel) pair, or the generic fallback."""
    default = DEFAULT_TEMPLATES.get((notification_type, channel_type), GENERIC_TEMPLATE)
    return NotificationTemplate(
        id=f"builtin:{notification_type.value}:{channel_type.value}",
        name=f"Default {notification_type.value} ({channel_type.value})",
        type=notification_type,
        channel=channel_type,
        subject=default.subject,
        body=default.body,
        is_default=True,
    )


def sample_incident() -> Incident:
    """Fully populated incident used for validation and previews."""
    created = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
    return Incident(
        id="sample-incident",
        title="High CPU usage on api-01",
        description="CPU usage above 95% for 5 minutes",
        status=IncidentStatus.RESOLVED,
        severity=Severity.CRITICAL,
        created_at=created,
        updated_at=created + timedelta(minutes=42),
        acked_at=created + timedelta(minutes=7),
        resolved_at=created + timedelta(minutes=42),
        assignee_id="oncall",
        alert_ids=["sample-alert"],
        labels={"alertname": "HighCPU", "service": "api", "instance": "api-01"},
        tags={"team": "platform"},
    )


class TemplateRenderer:
    """
    Compiles and evaluates templates in a sandboxed Jinja2 environment.

    Example:
        >>> renderer = TemplateRenderer()
        >>> subject, content = renderer.render(template, TemplateVariables(incident))
    """

    def __init__(self):
        self.env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=False,
        )
        self.env.globals.update(
            upper=_upper,
            lower=_lower,
            format_time=format_time,
            duration=duration,
        )
        self.env.filters["format_time"] = format_time
        self.env.filters["duration"] = duration

    def render_text(self, source: str, context: Dict[str, Any]) -> str:
        if not source:
            return ""
        try:
            return self.env.from_string(source).render(**context)
        except JinjaTemplateError as e:
            raise TemplateError(f"template error: {e}") from e
        except Exception as e:
            raise TemplateError(f"template evaluation failed: {type(e).__name__}: {e}") from e

    def render(self, template: NotificationTemplate, variables: TemplateVariables) -> Tuple[str, str]:
        """
        Render subject and body.

        Returns:
            (subject, content); subject is empty when the template has none

        Raises:
            TemplateError: On syntax errors, undefined names or failing helpers
        """
        context = variables.as_context()
        subject = self.render_text(template.subject, context)
        content = self.render_text(template.body, context)
        return subject.strip(), content

    def validate(self, template: NotificationTemplate) -> None:
        """
        Check required fields and render against a sample incident.

        Raises:
            ValidationError: If a required field is missing
            TemplateError: If the template cannot be rendered
        """
        missing = [
            name for name in ("name", "body")
            if not str(getattr(template, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"template is missing required fields: {', '.join(missing)}")

        self.render(
            template,
            TemplateVariables(
                incident=sample_incident(),
                channel_name="sample-channel",
                system_url="https://incidents.example.com",
            ),
        )


class TemplateCatalog:
    """
    Stored templates, builtin defaults and per-channel overrides.

    Resolution for a (channel, type) pair:
      1. the default: a stored template flagged is_default for the pair,
         else the builtin table entry, else the generic template;
      2. a channel override for the type replaces the default's body only.
    """

    def __init__(self, store: Store, renderer: TemplateRenderer):
        self.store = store
        self.renderer = renderer

    def default_for(self, notification_type: NotificationType, channel_type: ChannelType) -> NotificationTemplate:
        for template in self.store.list_templates():
            if template.is_default and template.type == notification_type and template.channel == channel_type:
                return template
        return builtin_template(notification_type, channel_type)

    def resolve(self, channel: NotificationChannel, notification_type: NotificationType) -> NotificationTemplate:
        default = self.default_for(notification_type, channel.type)
        override = channel.templates.get(notification_type.value)
        if not override:
            return default
        return default.model_copy(update={
            "id": f"{channel.id}_{notification_type.value}_custom",
            "name": f"{channel.name} {notification_type.value} override",
            "body": override,
            "is_default": False,
        })

    def create(self, template: NotificationTemplate) -> NotificationTemplate:
        self.renderer.validate(template)
        created = self.store.create_template(template)
        logger.info(f"Created template {created.id} ({created.type.value}/{created.channel.value})")
        return created

    def update(self, template_id: str, changes: Dict[str, Any]) -> NotificationTemplate:
        current = self.store.get_template(template_id)
        try:
            updated = NotificationTemplate.model_validate({**current.model_dump(), **changes, "id": template_id})
        except PydanticValidationError as e:
            raise ValidationError(f"invalid template: {e}") from e
        self.renderer.validate(updated)
        return self.store.update_template(updated)

    def delete(self, template_id: str) -> None:
        self.store.delete_template(template_id)

    def get(self, template_id: str) -> NotificationTemplate:
        if template_id.startswith("builtin:"):
            for template in self.list_builtin():
                if template.id == template_id:
                    return template
            raise TemplateNotFoundError(template_id)
        return self.store.get_template(template_id)

    def list_templates(self, include_builtin: bool = False) -> List[NotificationTemplate]:
        templates = self.store.list_templates()
        if include_builtin:
            templates.extend(self.list_builtin())
        return templates

    def list_builtin(self) -> List[NotificationTemplate]:
        return [builtin_template(t, c) for (t, c) in DEFAULT_TEMPLATES]

    def preview(
        self,
        template: NotificationTemplate,
        incident: Optional[Incident] = None,
        system_name: str = "Incident Hub",
        system_url: str = "",
    ) -> Dict[str, str]:
        subject, content = self.renderer.render(
            template,
            TemplateVariables(
                incident=incident or sample_incident(),
                channel_name="preview",
                system_name=system_name,
                system_url=system_url,
            ),
        )
        return {"subject": subject, "content": content}


def format_legacy_message(incident: Incident, notification_type: NotificationType) -> Tuple[str, str]:
    """
    Fixed-format message used when no channels are configured.

    Returns:
        (subject, text)
    """
    if notification_type == NotificationType.INCIDENT_CREATED:
        header = "🚨 New Incident Created"
    elif notification_type == NotificationType.INCIDENT_ACKNOWLEDGED:
        header = "✅ Incident Acknowledged"
    elif notification_type == NotificationType.INCIDENT_RESOLVED:
        header = "🎉 Incident Resolved"
    else:
        header = "Incident Update"

    lines = [
        f"{header}: {incident.title}",
        f"Severity: {incident.severity.value}",
        f"Status: {incident.status.value}",
        f"ID: {incident.id}",
    ]
    if incident.assignee_id:
        lines.append(f"Assignee: {incident.assignee_id}")
    if incident.description:
        lines.append("")
        lines.append(incident.description)
    return f"{header}: {incident.title}", "\n".join(lines)
