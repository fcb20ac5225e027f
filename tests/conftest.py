"""
Shared fixtures: a controllable clock and fake outbound transports.
"""
from datetime import datetime, timedelta, timezone

import pytest

from incident_hub.config import HubConfig
from incident_hub.hub import IncidentHub
from incident_hub.metrics import metrics
from incident_hub.models import Alert, AlertStatus, ChannelType, NotificationChannel
from incident_hub.storage import MemoryStore

# A Monday
START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = {"ok": True} if payload is None else payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Records every POST and replays scripted responses (or raises scripted errors)."""

    def __init__(self):
        self.calls = []
        self.responses = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        if not self.responses:
            return FakeResponse()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeSMTP:
    def __init__(self, owner: "FakeSMTPFactory", host: str, port: int, timeout=None):
        self.owner = owner
        self.host = host
        self.port = port
        self.timeout = timeout

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self):
        self.owner.tls = True

    def login(self, username, password):
        if self.owner.login_error is not None:
            raise self.owner.login_error
        self.owner.logins.append((username, password))

    def sendmail(self, sender, recipients, message):
        self.owner.sent.append({
            "host": self.host,
            "port": self.port,
            "from": sender,
            "to": list(recipients),
            "message": message,
        })


class FakeSMTPFactory:
    def __init__(self):
        self.sent = []
        self.logins = []
        self.tls = False
        self.login_error = None

    def __call__(self, host, port, timeout=None):
        return FakeSMTP(self, host, port, timeout)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def smtp():
    return FakeSMTPFactory()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def hub_config():
    return HubConfig(system_name="Test Hub", system_url="https://hub.example.com")


@pytest.fixture
def hub(hub_config, store, clock, session, smtp, sleeps):
    return IncidentHub(
        hub_config,
        store,
        clock=clock,
        session=session,
        smtp_factory=smtp,
        sleep=sleeps.append,
    )


def make_alert(labels, status=AlertStatus.FIRING, annotations=None, fingerprint="", starts_at=START):
    return Alert(
        fingerprint=fingerprint,
        status=status,
        starts_at=starts_at,
        labels=dict(labels),
        annotations=dict(annotations or {}),
    )


def chat_channel(name="ops-chat", **kwargs):
    config = kwargs.pop("config", {"token": "xoxb-test", "channel": "#ops"})
    return NotificationChannel(name=name, type=ChannelType.CHAT, config=config, **kwargs)
