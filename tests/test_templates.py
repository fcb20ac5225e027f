"""
Tests for template rendering and the template catalog.
"""
from datetime import timedelta

import pytest

from incident_hub.exceptions import TemplateError, TemplateNotFoundError, ValidationError
from incident_hub.models import (
    ChannelType,
    Incident,
    NotificationChannel,
    NotificationTemplate,
    NotificationType,
)
from incident_hub.notifications.templates import (
    TemplateCatalog,
    TemplateRenderer,
    TemplateVariables,
    builtin_template,
    format_duration,
    format_legacy_message,
    sample_incident,
)


@pytest.fixture
def renderer():
    return TemplateRenderer()


@pytest.fixture
def catalog(store, renderer):
    return TemplateCatalog(store, renderer)


def _template(body, subject="", **kwargs):
    return NotificationTemplate(
        name=kwargs.pop("name", "custom"),
        type=kwargs.pop("type", NotificationType.INCIDENT_CREATED),
        channel=kwargs.pop("channel", ChannelType.CHAT),
        subject=subject,
        body=body,
        **kwargs,
    )


def test_format_duration():
    assert format_duration(timedelta(seconds=0)) == "0s"
    assert format_duration(timedelta(minutes=42)) == "42m"
    assert format_duration(timedelta(hours=1, minutes=5, seconds=3)) == "1h 5m 3s"
    assert format_duration(timedelta(seconds=-5)) == "0s"


def test_render_builtin_chat_template(renderer):
    """The builtin created template carries title, severity and link."""
    template = builtin_template(NotificationType.INCIDENT_CREATED, ChannelType.CHAT)
    subject, content = renderer.render(
        template,
        TemplateVariables(incident=sample_incident(), system_url="https://hub.example.com/"),
    )

    assert subject == "New incident: High CPU usage on api-01"
    assert "High CPU usage on api-01" in content
    assert "*Severity:* CRITICAL" in content
    assert "https://hub.example.com/incidents/sample-incident" in content


def test_render_helpers(renderer):
    template = _template(
        "{{ lower(incident.title) }} | {{ format_time(incident.created_at) }} | "
        "{{ duration(incident.created_at, incident.resolved_at) }} | {{ channel_name }}"
    )
    _, content = renderer.render(template, TemplateVariables(incident=sample_incident(), channel_name="ops"))

    assert content == "high cpu usage on api-01 | 2024-01-15 10:00:00 UTC | 42m | ops"


def test_unset_timestamps_render_as_na(renderer):
    template = _template("acked {{ format_time(incident.acked_at) }}")
    _, content = renderer.render(template, TemplateVariables(incident=Incident(title="x")))

    assert content == "acked N/A"


def test_undefined_variable_fails(renderer):
    with pytest.raises(TemplateError):
        renderer.render(_template("{{ no_such_thing }}"), TemplateVariables(incident=sample_incident()))


def test_unknown_function_fails(renderer):
    with pytest.raises(TemplateError):
        renderer.render(_template("{{ shout(incident.title) }}"), TemplateVariables(incident=sample_incident()))


def test_sandbox_blocks_private_attributes(renderer):
    with pytest.raises(TemplateError):
        renderer.render(_template("{{ ''.__class__ }}"), TemplateVariables(incident=sample_incident()))


def test_validate_reports_missing_fields(renderer):
    with pytest.raises(ValidationError, match="body"):
        renderer.validate(_template("   "))


def test_validate_rejects_syntax_errors(renderer):
    with pytest.raises(TemplateError):
        renderer.validate(_template("{{ incident.title "))


@pytest.mark.parametrize("body", [
    "{{ 1 / 0 }}",
    "{{ 1 // (incident.tags|length - 1) }}",
    "{{ 10.0 ** 1000 }}",
])
def test_arithmetic_failures_are_template_errors(renderer, body):
    with pytest.raises(TemplateError, match="evaluation failed"):
        renderer.validate(_template(body))


class TestTemplateCatalog:
    """Resolution order and CRUD."""

    def test_resolve_falls_back_to_builtin(self, catalog):
        channel = NotificationChannel(name="ops", type=ChannelType.EMAIL)

        template = catalog.resolve(channel, NotificationType.INCIDENT_RESOLVED)

        assert template.id == "builtin:incident_resolved:email"
        assert template.is_default

    def test_test_notifications_use_generic_template(self, catalog):
        channel = NotificationChannel(name="ops", type=ChannelType.BOT)

        template = catalog.resolve(channel, NotificationType.TEST)

        assert template.subject.startswith("Incident Alert:")

    def test_stored_default_beats_builtin(self, catalog):
        stored = catalog.create(_template("custom {{ incident.title }}", is_default=True))
        channel = NotificationChannel(name="ops", type=ChannelType.CHAT)

        assert catalog.resolve(channel, NotificationType.INCIDENT_CREATED).id == stored.id

    def test_channel_override_replaces_body_only(self, catalog):
        channel = NotificationChannel(
            name="ops",
            type=ChannelType.CHAT,
            templates={"incident_created": "override: {{ incident.title }}"},
        )

        template = catalog.resolve(channel, NotificationType.INCIDENT_CREATED)

        assert template.body == "override: {{ incident.title }}"
        assert template.subject == builtin_template(NotificationType.INCIDENT_CREATED, ChannelType.CHAT).subject
        assert not template.is_default

    def test_create_validates(self, catalog):
        with pytest.raises(TemplateError):
            catalog.create(_template("{{ missing }}"))
        assert catalog.list_templates() == []

    def test_update(self, catalog):
        created = catalog.create(_template("v1 {{ incident.title }}"))

        updated = catalog.update(created.id, {"body": "v2 {{ incident.title }}"})

        assert updated.body == "v2 {{ incident.title }}"
        assert catalog.get(created.id).body == "v2 {{ incident.title }}"

    def test_update_rejects_invalid_fields(self, catalog):
        created = catalog.create(_template("{{ incident.title }}"))

        with pytest.raises(ValidationError):
            catalog.update(created.id, {"type": "not_a_type"})

    def test_get_builtin_by_id(self, catalog):
        template = catalog.get("builtin:incident_created:bot")
        assert template.channel == ChannelType.BOT

        with pytest.raises(TemplateNotFoundError):
            catalog.get("builtin:nope:bot")

    def test_list_with_builtin(self, catalog):
        catalog.create(_template("{{ incident.title }}"))

        assert len(catalog.list_templates()) == 1
        assert len(catalog.list_templates(include_builtin=True)) == 1 + 9

    def test_delete(self, catalog):
        created = catalog.create(_template("{{ incident.title }}"))
        catalog.delete(created.id)

        with pytest.raises(TemplateNotFoundError):
            catalog.get(created.id)

    def test_preview_uses_sample_incident(self, catalog):
        preview = catalog.preview(_template("{{ incident.title }}", subject="[{{ upper(severity) }}]"))

        assert preview == {"subject": "[CRITICAL]", "content": "High CPU usage on api-01"}


def test_legacy_message_format():
    incident = Incident(id="inc-1", title="Disk full", description="95% used", assignee_id="alice")

    subject, text = format_legacy_message(incident, NotificationType.INCIDENT_ACKNOWLEDGED)

    assert subject == "✅ Incident Acknowledged: Disk full"
    assert "Severity: medium" in text
    assert "ID: inc-1" in text
    assert "Assignee: alice" in text
    assert text.endswith("95% used")
