"""
HTTP surface for incident-hub.

JSON over HTTP for the webhook intake, incident management, channels,
templates, scheduled notifications and delivery history, plus health and
Prometheus metrics endpoints.
"""
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type, TypeVar

from flask import Flask, Response, g, jsonify, request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from ..exceptions import (
    ConfigurationError,
    IncidentHubError,
    InvalidTransitionError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
    WebhookValidationError,
)
from ..logging_context import LoggingContext, clear_context, set_context
from ..metrics import get_metrics_text, track_webhook_request
from ..models import (
    DeliveryStatus,
    IncidentStatus,
    NotificationTemplate,
    NotificationType,
    Severity,
    parse_timestamp,
)
from ..storage import IncidentFilter
from .health import get_health_status, get_readiness_status, get_version_info

if TYPE_CHECKING:
    from ..hub import IncidentHub

logger = logging.getLogger(__name__)

E = TypeVar('E', bound=Enum)
M = TypeVar('M', bound=BaseModel)


def status_for(error: IncidentHubError) -> int:
    """HTTP status for a domain error."""
    if isinstance(error, PayloadTooLargeError):
        return 413
    if isinstance(error, (ValidationError, ConfigurationError)):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, InvalidTransitionError):
        return 409
    return 500


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def _dump_all(models: List[BaseModel]) -> List[Dict[str, Any]]:
    return [_dump(m) for m in models]


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _optional_json_body() -> Dict[str, Any]:
    """Like _json_body, but a missing or non-JSON body reads as empty."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}") from None


def _optional_enum(enum_cls: Type[E], value: Any, field_name: str) -> Optional[E]:
    if value is None or value == "":
        return None
    return _enum(enum_cls, value, field_name)


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


def _model(model_cls: Type[M], data: Dict[str, Any]) -> M:
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {model_cls.__name__}: {e}") from e


def _required(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} is required")
    return value


def create_app(hub: 'IncidentHub') -> Flask:
    """
    Create the Flask application for a hub.

    Args:
        hub: Fully wired IncidentHub

    Returns:
        Flask app instance
    """
    app = Flask(__name__)
    app.json.sort_keys = False

    @app.before_request
    def bind_request_id():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())
        set_context(request_id=g.request_id)

    @app.after_request
    def add_headers(response):
        response.headers['X-Request-ID'] = g.get('request_id', '')
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        return response

    @app.teardown_request
    def drop_context(exc):
        clear_context()

    @app.errorhandler(IncidentHubError)
    def handle_domain_error(error: IncidentHubError):
        status = status_for(error)
        body: Dict[str, Any] = {'error': str(error)}
        if isinstance(error, WebhookValidationError):
            body['problems'] = error.problems
        if status >= 500:
            logger.error(f"Request failed: {error}", exc_info=True)
        else:
            logger.warning(f"Client error ({status}): {error}")
        return jsonify(body), status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({'error': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        logger.error(f"Unhandled error: {error}", exc_info=True)
        return jsonify({'error': 'Internal server error'}), 500

    # Webhook intake

    @app.route('/api/webhooks/alertmanager', methods=['POST'])
    def alertmanager_webhook():
        client_id = request.remote_addr or 'unknown'
        if not hub.rate_limiter.is_allowed(client_id):
            logger.warning(f"Webhook rate limit exceeded for client: {client_id}")
            track_webhook_request("throttled")
            return jsonify({'error': 'Rate limit exceeded. Please try again later.', 'retry_after': 60}), 429

        limit = hub.webhooks.max_body_bytes
        if request.content_length is not None and request.content_length > limit:
            track_webhook_request("rejected")
            raise PayloadTooLargeError(request.content_length, limit)

        with LoggingContext(request_id=g.request_id):
            result = hub.webhooks.receive(request.get_data(cache=False))
        return jsonify(result), 200

    # Incidents

    @app.route('/api/incidents', methods=['GET'])
    def list_incidents():
        incident_filter = IncidentFilter(
            status=_optional_enum(IncidentStatus, request.args.get('status'), 'status'),
            severity=_optional_enum(Severity, request.args.get('severity'), 'severity'),
            assignee_id=request.args.get('assignee_id'),
            limit=_int_arg('limit'),
            offset=_int_arg('offset'),
            order_by=request.args.get('order_by'),
        )
        try:
            incidents = hub.incidents.list_incidents(incident_filter)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return jsonify({'incidents': _dump_all(incidents), 'count': len(incidents)})

    @app.route('/api/incidents/<incident_id>', methods=['GET'])
    def get_incident(incident_id: str):
        return jsonify(_dump(hub.incidents.get_incident(incident_id)))

    @app.route('/api/incidents/<incident_id>', methods=['DELETE'])
    def delete_incident(incident_id: str):
        hub.incidents.delete_incident(incident_id)
        return '', 204

    @app.route('/api/incidents/<incident_id>/acknowledge', methods=['POST'])
    def acknowledge_incident(incident_id: str):
        data = _optional_json_body()
        incident = hub.incidents.acknowledge(incident_id, data.get('assignee_id'), data.get('user_id'))
        return jsonify(_dump(incident))

    @app.route('/api/incidents/<incident_id>/resolve', methods=['POST'])
    def resolve_incident(incident_id: str):
        data = _optional_json_body()
        return jsonify(_dump(hub.incidents.resolve(incident_id, data.get('user_id'))))

    @app.route('/api/incidents/<incident_id>/assign', methods=['POST'])
    def assign_incident(incident_id: str):
        data = _json_body()
        incident = hub.incidents.assign(incident_id, _required(data, 'assignee_id'), data.get('user_id'))
        return jsonify(_dump(incident))

    @app.route('/api/incidents/<incident_id>/comments', methods=['POST'])
    def add_comment(incident_id: str):
        data = _json_body()
        entry = hub.incidents.add_comment(incident_id, _required(data, 'content'), data.get('user_id'))
        return jsonify(_dump(entry)), 201

    @app.route('/api/incidents/<incident_id>/timeline', methods=['GET'])
    def get_timeline(incident_id: str):
        entries = hub.incidents.get_timeline(incident_id)
        return jsonify({'incident_id': incident_id, 'entries': _dump_all(entries)})

    @app.route('/api/incidents/<incident_id>/tags', methods=['POST'])
    def add_tags(incident_id: str):
        data = _json_body()
        tags = data.get('tags')
        if not isinstance(tags, dict):
            raise ValidationError("tags must be an object of name -> value")
        incident = hub.incidents.add_tags(incident_id, {str(k): str(v) for k, v in tags.items()}, data.get('user_id'))
        return jsonify(_dump(incident))

    @app.route('/api/incidents/<incident_id>/tags', methods=['DELETE'])
    def remove_tags(incident_id: str):
        data = _json_body()
        names = data.get('names')
        if not isinstance(names, list):
            raise ValidationError("names must be a list")
        incident = hub.incidents.remove_tags(incident_id, [str(n) for n in names], data.get('user_id'))
        return jsonify(_dump(incident))

    @app.route('/api/incidents/bulk', methods=['POST'])
    def bulk_operation():
        data = _json_body()
        incident_ids = data.get('incident_ids')
        if not isinstance(incident_ids, list) or not incident_ids:
            raise ValidationError("incident_ids must be a non-empty list")
        operation = data.get('operation')
        user_id = data.get('user_id')

        if operation == 'acknowledge':
            result = hub.incidents.bulk_acknowledge(incident_ids, data.get('assignee_id'), user_id)
        elif operation == 'resolve':
            result = hub.incidents.bulk_resolve(incident_ids, user_id)
        elif operation == 'assign':
            result = hub.incidents.bulk_assign(incident_ids, _required(data, 'assignee_id'), user_id)
        elif operation == 'update_status':
            status = _enum(IncidentStatus, data.get('status'), 'status')
            result = hub.incidents.bulk_update_status(incident_ids, status, data.get('assignee_id'), user_id)
        else:
            raise ValidationError("operation must be one of: acknowledge, resolve, assign, update_status")
        return jsonify(_dump(result))

    @app.route('/api/metrics', methods=['GET'])
    def incident_metrics():
        return jsonify(hub.incidents.calculate_metrics().to_dict())

    # Alerts

    @app.route('/api/alerts', methods=['GET'])
    def list_alerts():
        alerts = hub.store.list_alerts()
        return jsonify({'alerts': _dump_all(alerts), 'count': len(alerts)})

    @app.route('/api/alerts/<alert_id>', methods=['GET'])
    def get_alert(alert_id: str):
        return jsonify(_dump(hub.store.get_alert(alert_id)))

    # Channels

    @app.route('/api/channels', methods=['GET'])
    def list_channels():
        enabled_only = request.args.get('enabled', '').lower() in ('true', '1', 'yes')
        return jsonify({'channels': _dump_all(hub.channels.list(enabled_only))})

    @app.route('/api/channels', methods=['POST'])
    def create_channel():
        channel = hub.channels.create(_json_body())
        return jsonify(_dump(channel)), 201

    @app.route('/api/channels/<channel_id>', methods=['GET'])
    def get_channel(channel_id: str):
        return jsonify(_dump(hub.channels.get(channel_id)))

    @app.route('/api/channels/<channel_id>', methods=['PUT'])
    def update_channel(channel_id: str):
        return jsonify(_dump(hub.channels.update(channel_id, _json_body())))

    @app.route('/api/channels/<channel_id>', methods=['DELETE'])
    def delete_channel(channel_id: str):
        hub.channels.delete(channel_id)
        return '', 204

    @app.route('/api/channels/<channel_id>/test', methods=['POST'])
    def test_channel(channel_id: str):
        record = hub.notifications.send_test(hub.channels.get(channel_id))
        status = 200 if record.status == DeliveryStatus.SENT else 502
        return jsonify(_dump(record)), status

    # Templates

    @app.route('/api/templates', methods=['GET'])
    def list_templates():
        include_builtin = request.args.get('include_builtin', '').lower() in ('true', '1', 'yes')
        return jsonify({'templates': _dump_all(hub.catalog.list_templates(include_builtin))})

    @app.route('/api/templates', methods=['POST'])
    def create_template():
        template = hub.catalog.create(_model(NotificationTemplate, _json_body()))
        return jsonify(_dump(template)), 201

    @app.route('/api/templates/<template_id>', methods=['GET'])
    def get_template(template_id: str):
        return jsonify(_dump(hub.catalog.get(template_id)))

    @app.route('/api/templates/<template_id>', methods=['PUT'])
    def update_template(template_id: str):
        return jsonify(_dump(hub.catalog.update(template_id, _json_body())))

    @app.route('/api/templates/<template_id>', methods=['DELETE'])
    def delete_template(template_id: str):
        hub.catalog.delete(template_id)
        return '', 204

    def _template_from(data: Dict[str, Any]) -> NotificationTemplate:
        if data.get('template_id'):
            return hub.catalog.get(data['template_id'])
        return _model(NotificationTemplate, data.get('template') or data)

    @app.route('/api/templates/preview', methods=['POST'])
    def preview_template():
        data = _json_body()
        template = _template_from(data)
        incident = hub.incidents.get_incident(data['incident_id']) if data.get('incident_id') else None
        preview = hub.catalog.preview(
            template,
            incident,
            system_name=hub.config.system_name,
            system_url=hub.config.system_url,
        )
        return jsonify(preview)

    @app.route('/api/templates/validate', methods=['POST'])
    def validate_template():
        try:
            hub.renderer.validate(_template_from(_json_body()))
        except ValidationError as e:
            return jsonify({'valid': False, 'error': str(e)})
        return jsonify({'valid': True})

    # Scheduled notifications

    @app.route('/api/notifications/scheduled', methods=['GET'])
    def list_scheduled():
        entries = hub.scheduler.list(
            channel_id=request.args.get('channel_id'),
            status=_optional_enum(DeliveryStatus, request.args.get('status'), 'status'),
        )
        return jsonify({'scheduled': _dump_all(entries)})

    @app.route('/api/notifications/scheduled', methods=['POST'])
    def create_scheduled():
        data = _json_body()
        incident = hub.incidents.get_incident(_required(data, 'incident_id'))
        channel = hub.channels.get(_required(data, 'channel_id'))
        notification_type = _enum(NotificationType, data.get('type'), 'type')
        try:
            scheduled_at = parse_timestamp(_required(data, 'scheduled_at'))
        except (ValueError, OverflowError) as e:
            raise ValidationError(f"scheduled_at is not a valid timestamp: {e}") from e

        recurring = data.get('recurring')
        if not recurring:
            entry = hub.scheduler.schedule(incident, channel, notification_type, scheduled_at, data.get('metadata'))
            return jsonify(_dump(entry)), 201

        if not isinstance(recurring, dict):
            raise ValidationError("recurring must be an object")
        try:
            interval = timedelta(seconds=float(_required(recurring, 'interval_seconds')))
            end_time = parse_timestamp(recurring.get('end_time'))
            max_occurrences = recurring.get('max_occurrences')
            if max_occurrences is not None:
                max_occurrences = int(max_occurrences)
        except (TypeError, ValueError, OverflowError) as e:
            raise ValidationError(f"invalid recurring schedule: {e}") from e
        entries = hub.scheduler.schedule_recurring(
            incident,
            channel,
            notification_type,
            scheduled_at,
            interval,
            end_time=end_time,
            max_occurrences=max_occurrences,
        )
        return jsonify({'scheduled': _dump_all(entries), 'count': len(entries)}), 201

    @app.route('/api/notifications/scheduled/<entry_id>', methods=['GET'])
    def get_scheduled(entry_id: str):
        return jsonify(_dump(hub.scheduler.get(entry_id)))

    @app.route('/api/notifications/scheduled/<entry_id>', methods=['DELETE'])
    def cancel_scheduled(entry_id: str):
        return jsonify(_dump(hub.scheduler.cancel(entry_id)))

    # Delivery history and batches

    @app.route('/api/notifications/history', methods=['GET'])
    def list_history():
        records = hub.ledger.query(
            incident_id=request.args.get('incident_id'),
            channel_id=request.args.get('channel_id'),
            status=_optional_enum(DeliveryStatus, request.args.get('status'), 'status'),
            limit=_int_arg('limit'),
        )
        return jsonify({'history': _dump_all(records), 'count': len(records)})

    @app.route('/api/notifications/history/<history_id>', methods=['GET'])
    def get_history(history_id: str):
        return jsonify(_dump(hub.store.get_history(history_id)))

    @app.route('/api/notifications/batches', methods=['GET'])
    def list_batches():
        channel_id = request.args.get('channel_id')
        return jsonify({
            'pending': _dump_all([
                b for b in hub.notifications.batches.pending()
                if channel_id is None or b.channel_id == channel_id
            ]),
            'processed': _dump_all(hub.store.list_batches(channel_id)),
        })

    # Operations

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify(get_health_status())

    @app.route('/ready', methods=['GET'])
    def ready():
        status = get_readiness_status(hub.store)
        return jsonify(status), 200 if status['status'] == 'ready' else 503

    @app.route('/version', methods=['GET'])
    def version():
        return jsonify(get_version_info())

    @app.route('/metrics', methods=['GET'])
    def metrics():
        return Response(get_metrics_text() + "\n", mimetype='text/plain; version=0.0.4')

    return app
