"""
Tests for the channel delivery adapters.
"""
import smtplib

import pytest
import requests

from incident_hub.exceptions import ConfigurationError, DeliveryError, TransientDeliveryError
from incident_hub.models import ChannelType
from incident_hub.notifications.adapters import (
    AdapterSet,
    BotAdapter,
    ChatAdapter,
    EmailAdapter,
    RenderedMessage,
)

from conftest import FakeResponse

MESSAGE = RenderedMessage(subject="New incident: Disk full", content="Disk full on db-01")


class TestChatAdapter:
    def test_posts_channel_and_text(self, session):
        adapter = ChatAdapter(session=session, timeout=5)

        recipient = adapter.send(MESSAGE, {"token": "xoxb-1", "channel": "#ops"})

        assert recipient == "#ops"
        call = session.calls[0]
        assert call["url"] == "https://slack.com/api/chat.postMessage"
        assert call["json"] == {"channel": "#ops", "text": "Disk full on db-01"}
        assert call["headers"]["Authorization"] == "Bearer xoxb-1"
        assert call["timeout"] == 5

    def test_falls_back_to_global_defaults(self, session):
        adapter = ChatAdapter(defaults={"token": "global", "channel": "#global"}, session=session)

        assert adapter.send(MESSAGE, {"channel": "#override"}) == "#override"
        assert session.calls[0]["headers"]["Authorization"] == "Bearer global"

    def test_missing_credentials(self, session):
        adapter = ChatAdapter(session=session)

        with pytest.raises(ConfigurationError, match="token"):
            adapter.send(MESSAGE, {"channel": "#ops"})
        assert session.calls == []

    def test_server_error_is_transient(self, session):
        session.queue(FakeResponse(503))

        with pytest.raises(TransientDeliveryError):
            ChatAdapter(session=session).send(MESSAGE, {"token": "t", "channel": "#ops"})

    def test_rate_limited_is_transient(self, session):
        session.queue(FakeResponse(429))

        with pytest.raises(TransientDeliveryError):
            ChatAdapter(session=session).send(MESSAGE, {"token": "t", "channel": "#ops"})

    def test_client_error_is_permanent(self, session):
        session.queue(FakeResponse(400, text="bad request"))

        with pytest.raises(DeliveryError) as exc_info:
            ChatAdapter(session=session).send(MESSAGE, {"token": "t", "channel": "#ops"})
        assert not isinstance(exc_info.value, TransientDeliveryError)
        assert exc_info.value.status_code == 400

    def test_timeout_is_transient(self, session):
        session.queue(requests.Timeout("read timed out"))

        with pytest.raises(TransientDeliveryError):
            ChatAdapter(session=session).send(MESSAGE, {"token": "t", "channel": "#ops"})

    def test_api_level_auth_error(self, session):
        session.queue(FakeResponse(200, {"ok": False, "error": "invalid_auth"}))

        with pytest.raises(ConfigurationError):
            ChatAdapter(session=session).send(MESSAGE, {"token": "t", "channel": "#ops"})

    def test_api_level_other_error(self, session):
        session.queue(FakeResponse(200, {"ok": False, "error": "msg_too_long"}))

        with pytest.raises(DeliveryError, match="msg_too_long"):
            ChatAdapter(session=session).send(MESSAGE, {"token": "t", "channel": "#ops"})


class TestBotAdapter:
    def test_posts_to_send_message(self, session):
        adapter = BotAdapter(session=session)

        recipient = adapter.send(MESSAGE, {"bot_token": "123:abc", "chat_id": "-100"})

        assert recipient == "-100"
        assert session.calls[0]["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
        assert session.calls[0]["json"] == {"chat_id": "-100", "text": "Disk full on db-01"}

    def test_requires_chat_id(self, session):
        with pytest.raises(ConfigurationError, match="chat_id"):
            BotAdapter(session=session).send(MESSAGE, {"bot_token": "123:abc"})


class TestEmailAdapter:
    CONFIG = {
        "smtp_host": "smtp.example.com",
        "smtp_port": "2525",
        "username": "hub@example.com",
        "password": "secret",
        "to": "a@example.com, b@example.com",
    }

    def test_sends_mail(self, smtp):
        recipient = EmailAdapter(smtp_factory=smtp).send(MESSAGE, self.CONFIG)

        assert recipient == "a@example.com, b@example.com"
        sent = smtp.sent[0]
        assert sent["host"] == "smtp.example.com"
        assert sent["port"] == 2525
        assert sent["from"] == "hub@example.com"
        assert sent["to"] == ["a@example.com", "b@example.com"]
        assert "Subject: New incident: Disk full" in sent["message"]
        assert smtp.tls is True
        assert smtp.logins == [("hub@example.com", "secret")]

    def test_tls_can_be_disabled(self, smtp):
        EmailAdapter(smtp_factory=smtp).send(MESSAGE, {**self.CONFIG, "use_tls": "false"})

        assert smtp.tls is False

    def test_default_recipient(self, smtp):
        config = {k: v for k, v in self.CONFIG.items() if k != "to"}

        assert EmailAdapter(smtp_factory=smtp).send(MESSAGE, config) == "alerts@example.com"

    def test_authentication_failure_is_configuration_error(self, smtp):
        smtp.login_error = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        with pytest.raises(ConfigurationError):
            EmailAdapter(smtp_factory=smtp).send(MESSAGE, self.CONFIG)

    def test_connection_failure_is_transient(self):
        def refuse(host, port, timeout=None):
            raise ConnectionRefusedError("refused")

        with pytest.raises(TransientDeliveryError):
            EmailAdapter(smtp_factory=refuse).send(MESSAGE, self.CONFIG)

    def test_invalid_port(self, smtp):
        with pytest.raises(ConfigurationError, match="smtp_port"):
            EmailAdapter(smtp_factory=smtp).send(MESSAGE, {**self.CONFIG, "smtp_port": "abc"})


def test_adapter_set_has_one_adapter_per_type(session, smtp):
    adapters = AdapterSet.build(session=session, smtp_factory=smtp)

    assert isinstance(adapters.for_type(ChannelType.CHAT), ChatAdapter)
    assert isinstance(adapters.for_type(ChannelType.EMAIL), EmailAdapter)
    assert isinstance(adapters.for_type(ChannelType.BOT), BotAdapter)


def test_adapter_set_rejects_missing_types():
    with pytest.raises(ConfigurationError):
        AdapterSet({ChannelType.CHAT: ChatAdapter()})


def test_global_credentials_detection(session, smtp):
    adapters = AdapterSet.build(
        {ChannelType.CHAT: {"token": "t", "channel": "#ops"}, ChannelType.BOT: {"bot_token": "b"}},
        session=session,
        smtp_factory=smtp,
    )

    assert adapters.has_global_credentials(ChannelType.CHAT)
    assert not adapters.has_global_credentials(ChannelType.BOT)
    assert not adapters.has_global_credentials(ChannelType.EMAIL)
