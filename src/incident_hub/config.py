"""Configuration management for incident-hub.

Configuration can be loaded from environment variables, YAML/TOML files, or direct
instantiation.

Classes:
    HubConfig: Main configuration dataclass with validation.

Functions:
    _get_int_env: Safely extract integer values from environment variables.

Example:
    >>> from incident_hub.config import HubConfig
    >>>
    >>> # Load from environment variables
    >>> config = HubConfig.from_env()
    >>>
    >>> # Load from file with env overrides
    >>> config = HubConfig.from_file("incident-hub.yaml")
    >>>
    >>> # Recommended: automatic loading with fallback
    >>> config = HubConfig.load()
    >>> config.validate()
"""
import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_BATCH_MAX_SIZE,
    DEFAULT_BATCH_SWEEP_INTERVAL_SECONDS,
    DEFAULT_BATCH_TIMEOUT_SECONDS,
    DEFAULT_BOT_API_URL,
    DEFAULT_CHAT_API_URL,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_IDEMPOTENCY_TTL_SECONDS,
    DEFAULT_PORT,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    DEFAULT_RETRY_MULTIPLIER,
    DEFAULT_SCHEDULER_INTERVAL_SECONDS,
    DEFAULT_SMTP_PORT,
    DEFAULT_SQLITE_PATH,
    DEFAULT_SYSTEM_NAME,
    DEFAULT_SYSTEM_URL,
    DEFAULT_WEBHOOK_MAX_BODY_BYTES,
    DEFAULT_WEBHOOK_RATE_LIMIT_PER_MINUTE,
    VALID_STORAGE_BACKENDS,
)
from .models import ChannelType
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "INCIDENT_HUB_"


def _get_int_env(key: str, default: int) -> int:
    """Safely get an integer from environment variable.

    Returns the default value if the variable is not set, cannot be parsed,
    or is not a positive integer.

    Example:
        >>> os.environ['INCIDENT_HUB_PORT'] = '9090'
        >>> _get_int_env('INCIDENT_HUB_PORT', 8080)
        9090
        >>> os.environ['INCIDENT_HUB_PORT'] = 'not_a_number'
        >>> _get_int_env('INCIDENT_HUB_PORT', 8080)  # Logs warning, returns default
        8080
    """
    value = os.getenv(key)
    if value is None:
        return default

    try:
        result = int(value)
        if result <= 0:
            logger.warning(
                f"Environment variable {key}={value} must be positive. Using default: {default}"
            )
            return default
        return result
    except ValueError:
        logger.warning(
            f"Environment variable {key}={value} is not a valid integer. Using default: {default}"
        )
        return default


def _get_float_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Environment variable {key}={value} is not a valid number. Using default: {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


@dataclass
class HubConfig:
    """
    Configuration for incident-hub.

    Configuration can be loaded from:
    1. Configuration files (YAML or TOML)
    2. Environment variables (override file settings)
    3. Direct instantiation with parameters

    Environment variables (prefix INCIDENT_HUB_):
        HOST, PORT, SYSTEM_NAME, SYSTEM_URL
        HTTP_TIMEOUT, RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_DELAY, RETRY_MULTIPLIER
        BATCH_MAX_SIZE, BATCH_TIMEOUT, BATCH_SWEEP_INTERVAL, SCHEDULER_INTERVAL
        WEBHOOK_MAX_BODY_BYTES, WEBHOOK_RATE_LIMIT, IDEMPOTENCY_TTL
        STORAGE_BACKEND, SQLITE_PATH
        LOG_LEVEL, LOG_FILE, LOG_JSON
        CHAT_TOKEN, CHAT_CHANNEL, CHAT_API_URL
        SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD, EMAIL_FROM, EMAIL_TO
        BOT_TOKEN, BOT_CHAT_ID, BOT_API_URL

    Config file locations (searched in order):
        ./incident-hub.yaml, ./incident-hub.toml
        ~/.incident-hub.yaml, ~/.incident-hub.toml
        /etc/incident-hub.yaml, /etc/incident-hub.toml
    """
    # Server
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    system_name: str = DEFAULT_SYSTEM_NAME
    system_url: str = DEFAULT_SYSTEM_URL

    # Delivery and retry
    http_timeout: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    retry_multiplier: float = DEFAULT_RETRY_MULTIPLIER

    # Batching and scheduling
    batch_max_size: int = DEFAULT_BATCH_MAX_SIZE
    batch_timeout: int = DEFAULT_BATCH_TIMEOUT_SECONDS
    batch_sweep_interval: int = DEFAULT_BATCH_SWEEP_INTERVAL_SECONDS
    scheduler_interval: int = DEFAULT_SCHEDULER_INTERVAL_SECONDS

    # Webhook intake
    webhook_max_body_bytes: int = DEFAULT_WEBHOOK_MAX_BODY_BYTES
    webhook_rate_limit: int = DEFAULT_WEBHOOK_RATE_LIMIT_PER_MINUTE
    idempotency_ttl: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS

    # Storage
    storage_backend: str = "memory"
    sqlite_path: str = DEFAULT_SQLITE_PATH

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False

    # Global channel credentials
    chat_token: str = ""
    chat_channel: str = ""
    chat_api_url: str = DEFAULT_CHAT_API_URL
    smtp_host: str = ""
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_username: str = ""
    smtp_password: str = ""
    email_from: str = ""
    email_to: str = ""
    bot_token: str = ""
    bot_chat_id: str = ""
    bot_api_url: str = DEFAULT_BOT_API_URL

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If any configuration value is invalid
        """
        errors = []

        positive = (
            "port", "http_timeout", "retry_max_attempts", "batch_max_size", "batch_timeout",
            "batch_sweep_interval", "scheduler_interval", "webhook_max_body_bytes",
            "webhook_rate_limit", "idempotency_ttl", "smtp_port",
        )
        for name in positive:
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name} must be positive, got {value}")

        if self.retry_base_delay < 0:
            errors.append(f"retry_base_delay must not be negative, got {self.retry_base_delay}")
        if self.retry_max_delay < self.retry_base_delay:
            errors.append(
                f"retry_max_delay ({self.retry_max_delay}) must not be below retry_base_delay ({self.retry_base_delay})"
            )
        if self.retry_multiplier < 1.0:
            errors.append(f"retry_multiplier must be at least 1.0, got {self.retry_multiplier}")

        if self.storage_backend not in VALID_STORAGE_BACKENDS:
            errors.append(
                f"storage_backend must be one of {VALID_STORAGE_BACKENDS}, got '{self.storage_backend}'"
            )
        if self.storage_backend == "sqlite" and not self.sqlite_path:
            errors.append("sqlite_path must be specified when storage_backend is 'sqlite'")

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if errors:
            raise ValueError("Configuration validation failed:\n  - " + "\n  - ".join(errors))

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            multiplier=self.retry_multiplier,
        )

    def channel_defaults(self) -> Dict[ChannelType, Dict[str, Any]]:
        """Global credentials per channel type, used when a channel's own config omits a field."""
        return {
            ChannelType.CHAT: {
                "token": self.chat_token,
                "channel": self.chat_channel,
                "api_url": self.chat_api_url,
            },
            ChannelType.EMAIL: {
                "smtp_host": self.smtp_host,
                "smtp_port": str(self.smtp_port),
                "username": self.smtp_username,
                "password": self.smtp_password,
                "from": self.email_from,
                "to": self.email_to,
            },
            ChannelType.BOT: {
                "bot_token": self.bot_token,
                "chat_id": self.bot_chat_id,
                "api_url": self.bot_api_url,
            },
        }

    @classmethod
    def from_env(cls) -> 'HubConfig':
        """
        Create configuration from environment variables only.

        Returns:
            HubConfig instance populated from environment variables
        """
        p = ENV_PREFIX
        return cls(
            host=os.getenv(f"{p}HOST", "0.0.0.0"),
            port=_get_int_env(f"{p}PORT", DEFAULT_PORT),
            system_name=os.getenv(f"{p}SYSTEM_NAME", DEFAULT_SYSTEM_NAME),
            system_url=os.getenv(f"{p}SYSTEM_URL", DEFAULT_SYSTEM_URL),
            http_timeout=_get_int_env(f"{p}HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            retry_max_attempts=_get_int_env(f"{p}RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            retry_base_delay=_get_float_env(f"{p}RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS),
            retry_max_delay=_get_float_env(f"{p}RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS),
            retry_multiplier=_get_float_env(f"{p}RETRY_MULTIPLIER", DEFAULT_RETRY_MULTIPLIER),
            batch_max_size=_get_int_env(f"{p}BATCH_MAX_SIZE", DEFAULT_BATCH_MAX_SIZE),
            batch_timeout=_get_int_env(f"{p}BATCH_TIMEOUT", DEFAULT_BATCH_TIMEOUT_SECONDS),
            batch_sweep_interval=_get_int_env(f"{p}BATCH_SWEEP_INTERVAL", DEFAULT_BATCH_SWEEP_INTERVAL_SECONDS),
            scheduler_interval=_get_int_env(f"{p}SCHEDULER_INTERVAL", DEFAULT_SCHEDULER_INTERVAL_SECONDS),
            webhook_max_body_bytes=_get_int_env(f"{p}WEBHOOK_MAX_BODY_BYTES", DEFAULT_WEBHOOK_MAX_BODY_BYTES),
            webhook_rate_limit=_get_int_env(f"{p}WEBHOOK_RATE_LIMIT", DEFAULT_WEBHOOK_RATE_LIMIT_PER_MINUTE),
            idempotency_ttl=_get_int_env(f"{p}IDEMPOTENCY_TTL", DEFAULT_IDEMPOTENCY_TTL_SECONDS),
            storage_backend=os.getenv(f"{p}STORAGE_BACKEND", "memory"),
            sqlite_path=os.getenv(f"{p}SQLITE_PATH", DEFAULT_SQLITE_PATH),
            log_level=os.getenv(f"{p}LOG_LEVEL", "INFO"),
            log_file=os.getenv(f"{p}LOG_FILE"),
            log_json=_get_bool_env(f"{p}LOG_JSON", False),
            chat_token=os.getenv(f"{p}CHAT_TOKEN", ""),
            chat_channel=os.getenv(f"{p}CHAT_CHANNEL", ""),
            chat_api_url=os.getenv(f"{p}CHAT_API_URL", DEFAULT_CHAT_API_URL),
            smtp_host=os.getenv(f"{p}SMTP_HOST", ""),
            smtp_port=_get_int_env(f"{p}SMTP_PORT", DEFAULT_SMTP_PORT),
            smtp_username=os.getenv(f"{p}SMTP_USERNAME", ""),
            smtp_password=os.getenv(f"{p}SMTP_PASSWORD", ""),
            email_from=os.getenv(f"{p}EMAIL_FROM", ""),
            email_to=os.getenv(f"{p}EMAIL_TO", ""),
            bot_token=os.getenv(f"{p}BOT_TOKEN", ""),
            bot_chat_id=os.getenv(f"{p}BOT_CHAT_ID", ""),
            bot_api_url=os.getenv(f"{p}BOT_API_URL", DEFAULT_BOT_API_URL),
        )

    @classmethod
    def from_file(cls, config_path: Optional[str] = None) -> 'HubConfig':
        """
        Create configuration from file with environment variable overrides.

        If no path is provided, searches standard locations. A file that
        cannot be read or parsed is logged and environment-only
        configuration is used instead.

        Args:
            config_path: Optional explicit path to config file.

        Returns:
            HubConfig instance with merged configuration

        Example:
            >>> config = HubConfig.from_file("incident-hub.toml")
            >>> config = HubConfig.from_file()  # Auto-search
        """
        from .config_loader import load_config_with_overrides

        try:
            config_dict = load_config_with_overrides(config_path)
            return cls(**config_dict)
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Failed to load configuration from file: {e}")
            logger.warning("Falling back to environment variable configuration")
            return cls.from_env()

    @classmethod
    def load(cls, config_path: Optional[str] = None, use_file: bool = True) -> 'HubConfig':
        """
        Load configuration with automatic fallback.

        Args:
            config_path: Optional explicit path to config file
            use_file: If True, attempts to load from file before env vars

        Returns:
            HubConfig instance
        """
        if use_file:
            return cls.from_file(config_path)
        return cls.from_env()
