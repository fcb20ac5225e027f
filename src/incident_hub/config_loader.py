"""
Configuration file loader for incident-hub.

Supports loading configuration from YAML and TOML files with environment variable
overrides and a standard search path.

File layout (YAML shown, TOML uses the same sections):

    server:
      port: 8080
      system_name: Incident Hub
    retry:
      max_attempts: 3
    batching:
      max_size: 10
      timeout: 300
    chat:
      token: xoxb-...
      channel: "#alerts"
"""

import os
import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CONFIG_BASENAME = "incident-hub"

# (section, key) -> HubConfig field
SECTION_FIELDS: Dict[Tuple[str, str], str] = {
    ("server", "host"): "host",
    ("server", "port"): "port",
    ("server", "system_name"): "system_name",
    ("server", "system_url"): "system_url",
    ("server", "webhook_max_body_bytes"): "webhook_max_body_bytes",
    ("server", "webhook_rate_limit"): "webhook_rate_limit",
    ("server", "idempotency_ttl"): "idempotency_ttl",
    ("notifications", "http_timeout"): "http_timeout",
    ("retry", "max_attempts"): "retry_max_attempts",
    ("retry", "base_delay"): "retry_base_delay",
    ("retry", "max_delay"): "retry_max_delay",
    ("retry", "multiplier"): "retry_multiplier",
    ("batching", "max_size"): "batch_max_size",
    ("batching", "timeout"): "batch_timeout",
    ("batching", "sweep_interval"): "batch_sweep_interval",
    ("scheduler", "interval"): "scheduler_interval",
    ("storage", "backend"): "storage_backend",
    ("storage", "sqlite_path"): "sqlite_path",
    ("logging", "level"): "log_level",
    ("logging", "file"): "log_file",
    ("logging", "json"): "log_json",
    ("chat", "token"): "chat_token",
    ("chat", "channel"): "chat_channel",
    ("chat", "api_url"): "chat_api_url",
    ("email", "smtp_host"): "smtp_host",
    ("email", "smtp_port"): "smtp_port",
    ("email", "username"): "smtp_username",
    ("email", "password"): "smtp_password",
    ("email", "from"): "email_from",
    ("email", "to"): "email_to",
    ("bot", "bot_token"): "bot_token",
    ("bot", "chat_id"): "bot_chat_id",
    ("bot", "api_url"): "bot_api_url",
}


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


# Environment variable -> (section, key, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], object]]] = {
    "INCIDENT_HUB_HOST": ("server", "host", str),
    "INCIDENT_HUB_PORT": ("server", "port", int),
    "INCIDENT_HUB_SYSTEM_NAME": ("server", "system_name", str),
    "INCIDENT_HUB_SYSTEM_URL": ("server", "system_url", str),
    "INCIDENT_HUB_WEBHOOK_MAX_BODY_BYTES": ("server", "webhook_max_body_bytes", int),
    "INCIDENT_HUB_WEBHOOK_RATE_LIMIT": ("server", "webhook_rate_limit", int),
    "INCIDENT_HUB_IDEMPOTENCY_TTL": ("server", "idempotency_ttl", int),
    "INCIDENT_HUB_HTTP_TIMEOUT": ("notifications", "http_timeout", int),
    "INCIDENT_HUB_RETRY_MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "INCIDENT_HUB_RETRY_BASE_DELAY": ("retry", "base_delay", float),
    "INCIDENT_HUB_RETRY_MAX_DELAY": ("retry", "max_delay", float),
    "INCIDENT_HUB_RETRY_MULTIPLIER": ("retry", "multiplier", float),
    "INCIDENT_HUB_BATCH_MAX_SIZE": ("batching", "max_size", int),
    "INCIDENT_HUB_BATCH_TIMEOUT": ("batching", "timeout", int),
    "INCIDENT_HUB_BATCH_SWEEP_INTERVAL": ("batching", "sweep_interval", int),
    "INCIDENT_HUB_SCHEDULER_INTERVAL": ("scheduler", "interval", int),
    "INCIDENT_HUB_STORAGE_BACKEND": ("storage", "backend", str),
    "INCIDENT_HUB_SQLITE_PATH": ("storage", "sqlite_path", str),
    "INCIDENT_HUB_LOG_LEVEL": ("logging", "level", str),
    "INCIDENT_HUB_LOG_FILE": ("logging", "file", str),
    "INCIDENT_HUB_LOG_JSON": ("logging", "json", _as_bool),
    "INCIDENT_HUB_CHAT_TOKEN": ("chat", "token", str),
    "INCIDENT_HUB_CHAT_CHANNEL": ("chat", "channel", str),
    "INCIDENT_HUB_CHAT_API_URL": ("chat", "api_url", str),
    "INCIDENT_HUB_SMTP_HOST": ("email", "smtp_host", str),
    "INCIDENT_HUB_SMTP_PORT": ("email", "smtp_port", int),
    "INCIDENT_HUB_SMTP_USERNAME": ("email", "username", str),
    "INCIDENT_HUB_SMTP_PASSWORD": ("email", "password", str),
    "INCIDENT_HUB_EMAIL_FROM": ("email", "from", str),
    "INCIDENT_HUB_EMAIL_TO": ("email", "to", str),
    "INCIDENT_HUB_BOT_TOKEN": ("bot", "bot_token", str),
    "INCIDENT_HUB_BOT_CHAT_ID": ("bot", "chat_id", str),
    "INCIDENT_HUB_BOT_API_URL": ("bot", "api_url", str),
}


def load_yaml_file(path: Path) -> dict:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If YAML parsing fails
    """
    import yaml

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML config file {path}: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return config


def load_toml_file(path: Path) -> dict:
    """
    Load configuration from a TOML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If TOML parsing fails
    """
    try:
        # Python 3.11+ has tomllib built-in
        import tomllib
    except ImportError:
        import tomli as tomllib

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, 'rb') as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Failed to parse TOML config file {path}: {e}") from e


def load_config_file(path: str) -> dict:
    """
    Load configuration from a YAML or TOML file.

    The file format is determined by the file extension (.yaml, .yml, or .toml).

    Raises:
        ValueError: If file extension is not supported or parsing fails
        FileNotFoundError: If file doesn't exist
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        return load_yaml_file(file_path)
    elif suffix == '.toml':
        return load_toml_file(file_path)
    else:
        raise ValueError(
            f"Unsupported config file format: {suffix}. "
            "Supported formats: .yaml, .yml, .toml"
        )


def find_config_file() -> Optional[Path]:
    """
    Search for a configuration file in standard locations.

    Search order:
    1. ./incident-hub.yaml
    2. ./incident-hub.toml
    3. ~/.incident-hub.yaml
    4. ~/.incident-hub.toml
    5. /etc/incident-hub.yaml
    6. /etc/incident-hub.toml

    Returns:
        Path to the first configuration file found, or None if no file is found
    """
    search_paths = [
        Path.cwd() / f"{CONFIG_BASENAME}.yaml",
        Path.cwd() / f"{CONFIG_BASENAME}.toml",
        Path.home() / f".{CONFIG_BASENAME}.yaml",
        Path.home() / f".{CONFIG_BASENAME}.toml",
        Path(f"/etc/{CONFIG_BASENAME}.yaml"),
        Path(f"/etc/{CONFIG_BASENAME}.toml"),
    ]

    for path in search_paths:
        if path.exists() and path.is_file():
            logger.info(f"Found configuration file: {path}")
            return path

    logger.debug("No configuration file found in standard locations")
    return None


def get_env_config() -> dict:
    """
    Extract configuration from environment variables.

    Values that fail to parse are logged and ignored.

    Returns:
        Nested dictionary in the same section layout as the config file
    """
    config: Dict[str, dict] = {}

    for env_var, (section, key, parse) in ENV_OVERRIDES.items():
        raw = os.getenv(env_var)
        if not raw:
            continue
        try:
            value = parse(raw)
        except ValueError:
            logger.warning(f"Invalid {env_var}, ignoring")
            continue
        config.setdefault(section, {})[key] = value

    return config


def deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries, with override values taking precedence.

    Args:
        base: Base dictionary
        override: Override dictionary (values take precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def flatten_config(config: dict) -> dict:
    """
    Flatten nested configuration dictionary to match HubConfig fields.

    Unknown sections and keys are logged and dropped.
    """
    flat = {}

    for section, values in config.items():
        if not isinstance(values, dict):
            logger.warning(f"Ignoring non-section config entry: {section}")
            continue
        for key, value in values.items():
            field_name = SECTION_FIELDS.get((section, key))
            if field_name is None:
                logger.warning(f"Ignoring unknown config key: {section}.{key}")
                continue
            flat[field_name] = value

    return flat


def merge_config(file_config: dict, env_config: dict) -> dict:
    """
    Merge file-based and environment-based configuration.

    Environment variables take precedence over file-based configuration.

    Returns:
        Merged configuration dictionary (flattened)
    """
    merged = deep_merge(file_config, env_config)
    return flatten_config(merged)


def load_config_with_overrides(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from file with environment variable overrides.

    Args:
        config_path: Optional explicit path to config file.
                    If None, searches standard locations.

    Returns:
        Dictionary of HubConfig keyword arguments

    Raises:
        FileNotFoundError: If explicit config_path is provided but doesn't exist
        ValueError: If config parsing fails
    """
    file_config = {}

    if config_path:
        file_config = load_config_file(config_path)
        logger.info(f"Loaded configuration from: {config_path}")
    else:
        found_path = find_config_file()
        if found_path:
            file_config = load_config_file(str(found_path))
            logger.info(f"Loaded configuration from: {found_path}")

    env_config = get_env_config()
    if env_config:
        logger.info("Applying environment variable overrides")

    return merge_config(file_config, env_config)
