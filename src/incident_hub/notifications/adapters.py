"""
Delivery adapters for notification channels.

One adapter per channel type (chat, email, bot). An adapter takes rendered
content plus the channel's config and performs the outbound call. Any
config field the channel omits falls back to the global credentials for
that channel type.
"""
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from ..constants import (
    DEFAULT_BOT_API_URL,
    DEFAULT_CHAT_API_URL,
    DEFAULT_EMAIL_RECIPIENT,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_SMTP_PORT,
)
from ..exceptions import ConfigurationError, DeliveryError, TransientDeliveryError
from ..models import ChannelType

logger = logging.getLogger(__name__)


@dataclass
class RenderedMessage:
    """Output of template rendering, ready to send."""
    subject: str
    content: str


class DeliveryAdapter(ABC):
    """Abstract base class for channel senders."""

    channel_type: ChannelType

    def __init__(
        self,
        defaults: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        """
        Args:
            defaults: Global credentials for this channel type
            timeout: Timeout for the outbound call, in seconds
        """
        self.defaults = dict(defaults or {})
        self.timeout = timeout

    def setting(self, config: Mapping[str, str], key: str, default: str = "") -> str:
        """Per-channel value, else global value, else `default`."""
        return config.get(key) or self.defaults.get(key) or default

    @abstractmethod
    def check_config(self, config: Mapping[str, str]) -> None:
        """
        Raise ConfigurationError when neither the channel config nor the
        global defaults supply a required field.
        """

    @abstractmethod
    def send(self, message: RenderedMessage, config: Mapping[str, str]) -> str:
        """
        Deliver a message.

        Args:
            message: Rendered subject and content
            config: Channel configuration

        Returns:
            Recipient description for the history ledger

        Raises:
            ConfigurationError: Required settings are missing
            TransientDeliveryError: Timeouts, connection failures, 5xx/429
            DeliveryError: Any other provider rejection
        """

    def _require(self, config: Mapping[str, str], keys: List[str]) -> None:
        missing = [key for key in keys if not self.setting(config, key)]
        if missing:
            raise ConfigurationError(
                f"{self.channel_type.value} channel configuration is incomplete: "
                f"missing {', '.join(missing)}"
            )


class HTTPDeliveryAdapter(DeliveryAdapter):
    """Shared POST handling for HTTP-based providers."""

    def __init__(
        self,
        defaults: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(defaults, timeout)
        self.session = session or requests.Session()

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        try:
            response = self.session.post(url, json=payload, headers=headers or {}, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientDeliveryError(f"{self.channel_type.value} request failed: {e}") from e
        except requests.RequestException as e:
            raise DeliveryError(f"{self.channel_type.value} request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDeliveryError(
                f"{self.channel_type.value} API returned status {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise DeliveryError(
                f"{self.channel_type.value} API returned status {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            return None


class ChatAdapter(HTTPDeliveryAdapter):
    """
    Chat workspace adapter (Slack Web API compatible).

    Config keys: token, channel, api_url.
    """

    channel_type = ChannelType.CHAT

    def check_config(self, config: Mapping[str, str]) -> None:
        self._require(config, ["token", "channel"])

    def send(self, message: RenderedMessage, config: Mapping[str, str]) -> str:
        self.check_config(config)
        target = self.setting(config, "channel")
        body = self._post_json(
            self.setting(config, "api_url", DEFAULT_CHAT_API_URL),
            {"channel": target, "text": message.content},
            headers={"Authorization": f"Bearer {self.setting(config, 'token')}"},
        )

        # The Web API answers 200 with ok=false on logical errors
        if isinstance(body, dict) and body.get("ok") is False:
            error = body.get("error", "unknown_error")
            if error in ("invalid_auth", "not_authed", "channel_not_found", "account_inactive"):
                raise ConfigurationError(f"chat API rejected credentials: {error}")
            if error == "ratelimited":
                raise TransientDeliveryError(f"chat API error: {error}")
            raise DeliveryError(f"chat API error: {error}")

        logger.debug(f"Chat message sent to {target}")
        return target


class BotAdapter(HTTPDeliveryAdapter):
    """
    Bot-messaging adapter (Telegram Bot API compatible).

    Config keys: bot_token, chat_id, api_url.
    """

    channel_type = ChannelType.BOT

    def check_config(self, config: Mapping[str, str]) -> None:
        self._require(config, ["bot_token", "chat_id"])

    def send(self, message: RenderedMessage, config: Mapping[str, str]) -> str:
        self.check_config(config)
        chat_id = self.setting(config, "chat_id")
        base_url = self.setting(config, "api_url", DEFAULT_BOT_API_URL).rstrip("/")
        self._post_json(
            f"{base_url}/bot{self.setting(config, 'bot_token')}/sendMessage",
            {"chat_id": chat_id, "text": message.content},
        )
        logger.debug(f"Bot message sent to chat {chat_id}")
        return chat_id


class EmailAdapter(DeliveryAdapter):
    """
    SMTP email adapter.

    Config keys: smtp_host, smtp_port, username, password, from, to
    (comma-separated), use_tls ("true"/"false", default true).
    """

    channel_type = ChannelType.EMAIL

    def __init__(
        self,
        defaults: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        super().__init__(defaults, timeout)
        self.smtp_factory = smtp_factory

    def check_config(self, config: Mapping[str, str]) -> None:
        self._require(config, ["smtp_host", "username", "password"])

    def recipients(self, config: Mapping[str, str]) -> List[str]:
        raw = self.setting(config, "to", DEFAULT_EMAIL_RECIPIENT)
        return [addr.strip() for addr in raw.split(",") if addr.strip()]

    def send(self, message: RenderedMessage, config: Mapping[str, str]) -> str:
        self.check_config(config)
        host = self.setting(config, "smtp_host")
        try:
            port = int(self.setting(config, "smtp_port", str(DEFAULT_SMTP_PORT)))
        except ValueError as e:
            raise ConfigurationError(f"invalid smtp_port: {e}") from e
        username = self.setting(config, "username")
        sender = self.setting(config, "from", username)
        to_addrs = self.recipients(config)
        use_tls = self.setting(config, "use_tls", "true").lower() in ("true", "1", "yes")

        msg = MIMEText(message.content, 'plain', 'utf-8')
        msg['Subject'] = message.subject or "Incident notification"
        msg['From'] = sender
        msg['To'] = ', '.join(to_addrs)

        try:
            with self.smtp_factory(host, port, timeout=self.timeout) as server:
                if use_tls:
                    server.starttls()
                server.login(username, self.setting(config, "password"))
                server.sendmail(sender, to_addrs, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            raise ConfigurationError(f"SMTP authentication failed: {e}") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(f"SMTP recipients refused: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError(f"SMTP delivery failed: {e}") from e

        logger.debug(f"Email sent to {', '.join(to_addrs)}")
        return ', '.join(to_addrs)


class AdapterSet:
    """
    Exactly one adapter per ChannelType.

    Example:
        >>> adapters = AdapterSet.build({ChannelType.CHAT: {"token": "xoxb"}})
        >>> adapters.for_type(ChannelType.CHAT).send(message, channel.config)
    """

    def __init__(self, adapters: Mapping[ChannelType, DeliveryAdapter]):
        missing = set(ChannelType) - set(adapters)
        if missing:
            raise ConfigurationError(
                f"no adapter for channel types: {', '.join(sorted(t.value for t in missing))}"
            )
        self._adapters = dict(adapters)

    @classmethod
    def build(
        cls,
        defaults: Optional[Mapping[ChannelType, Mapping[str, str]]] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> 'AdapterSet':
        defaults = defaults or {}
        return cls({
            ChannelType.CHAT: ChatAdapter(defaults.get(ChannelType.CHAT), timeout, session),
            ChannelType.EMAIL: EmailAdapter(defaults.get(ChannelType.EMAIL), timeout, smtp_factory),
            ChannelType.BOT: BotAdapter(defaults.get(ChannelType.BOT), timeout, session),
        })

    def for_type(self, channel_type: ChannelType) -> DeliveryAdapter:
        return self._adapters[channel_type]

    def has_global_credentials(self, channel_type: ChannelType) -> bool:
        """True when the global defaults alone are enough to send."""
        try:
            self._adapters[channel_type].check_config({})
        except ConfigurationError:
            return False
        return True
