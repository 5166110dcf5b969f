"""Configuration manager for loading and managing configuration.

Supports JSON configuration files, environment variable overrides and
validation through the pydantic schema.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from ..utils.exceptions import ConfigurationError
from .defaults import DEFAULT_CONFIG, DEFAULT_CONFIG_PATH
from .schema import Config

logger = logging.getLogger(__name__)

# Environment variable prefix for all configuration overrides
ENV_PREFIX = "SAML_FED_"


def _parse_bool(value: str) -> bool:
    """Parse boolean value from string (case-insensitive)."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_list(value: str) -> list[str]:
    """Parse a comma-separated list, dropping empty items."""
    return [item.strip() for item in value.split(",") if item.strip()]


# (environment suffix, section, field, parser)
ENV_OVERRIDES: list[tuple[str, str, str, Callable[[str], Any]]] = [
    ("ENTITY_ID", "entity", "entity_id", str),
    ("SINGLE_LOGOUT_URL", "entity", "single_logout_url", str),
    ("ASSERTION_CONSUMER_URL", "entity", "assertion_consumer_url", str),
    ("SIGNING_CERT_PATH", "signing_credential", "cert_path", str),
    ("SIGNING_KEY_PATH", "signing_credential", "key_path", str),
    ("SIGNING_PASSWORD_ENV_VAR", "signing_credential", "password_env_var", str),
    ("SIGNING_ALIAS", "signing_credential", "alias", str),
    ("ENCRYPTION_CERT_PATH", "encryption_credential", "cert_path", str),
    ("ENCRYPTION_KEY_PATH", "encryption_credential", "key_path", str),
    ("ENCRYPTION_PASSWORD_ENV_VAR", "encryption_credential", "password_env_var", str),
    ("ENCRYPTION_ALIAS", "encryption_credential", "alias", str),
    ("METADATA_SOURCES", "metadata", "sources", _parse_list),
    ("METADATA_MAX_WORKERS", "metadata", "max_workers", int),
    ("METADATA_TIMEOUT", "metadata", "timeout", float),
    ("METADATA_MAX_RETRIES", "metadata", "max_retries", int),
    ("METADATA_BACKOFF_FACTOR", "metadata", "backoff_factor", float),
    ("METADATA_MAX_BACKOFF", "metadata", "max_backoff", float),
    ("METADATA_REFRESH_INTERVAL", "metadata", "refresh_interval", float),
    ("METADATA_VERIFY_TLS", "metadata", "verify_tls", _parse_bool),
    ("ISSUE_TIMEOUT", "validation", "issue_timeout", float),
    ("JITTER", "validation", "jitter", float),
    ("REQUIRE_SIGNED_POST", "validation", "require_signed_post", _parse_bool),
    ("RELAY_STATE_TTL", "relay_state", "ttl", float),
    ("RELAY_STATE_SWEEP_INTERVAL", "relay_state", "sweep_interval", float),
    ("VERIFY_TLS", "transport", "verify_tls", _parse_bool),
    ("TIMEOUT_CONNECT", "transport", "timeout_connect", int),
    ("TIMEOUT_READ", "transport", "timeout_read", int),
    ("LOG_LEVEL", "logging", "level", str),
    ("LOG_FILE", "logging", "log_file", str),
    ("REDACT_IDENTIFIERS", "logging", "redact_identifiers", _parse_bool),
    ("OP_LOG_METADATA_LEVEL", "operation_logging", "metadata_log_level", str),
    ("OP_LOG_SIGNING_LEVEL", "operation_logging", "signing_log_level", str),
    ("OP_LOG_VALIDATION_LEVEL", "operation_logging", "validation_log_level", str),
    ("OP_LOG_RELAY_STATE_LEVEL", "operation_logging", "relay_state_log_level", str),
]


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from file and environment variables.

    Configuration is loaded with the following precedence (highest to lowest):
    1. CLI arguments (handled by caller)
    2. Environment variables (SAML_FED_* prefix)
    3. Configuration file (JSON)
    4. Default values

    Args:
        config_path: Path to configuration file. If None, uses ./config/config.json

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid or malformed

    Example:
        >>> config = load_config(Path("custom/config.json"))
        >>> config.validation.issue_timeout
        600.0
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(DEFAULT_CONFIG_PATH)

    config_dict = _load_config_file(config_path)
    _check_sensitive_values(config_dict)
    config_dict = _apply_env_overrides(config_dict)

    try:
        return Config(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration validation failed:\n{e}\n\n"
            f"Fix: Check your configuration file at {config_path} and ensure all "
            f"values match the expected format."
        ) from e


def _load_config_file(config_path: Path) -> dict[str, Any]:
    """Load configuration file or return a copy of the defaults.

    Raises:
        ConfigurationError: If JSON is malformed or the file is unreadable
    """
    if not config_path.exists():
        logger.info(f"Config file not found: {config_path}. Using default configuration.")
        return json.loads(json.dumps(DEFAULT_CONFIG))

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_dict = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in config file: {config_path}\n"
            f"Error: {e}\n"
            f"Fix: Check JSON syntax at line {e.lineno}, column {e.colno}"
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read config file: {config_path}\n"
            f"Error: {e}\n"
            f"Fix: Check file permissions and path"
        ) from e

    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"Config file {config_path} must contain a JSON object at the top level"
        )
    logger.info(f"Loaded configuration from {config_path}")
    return config_dict


def _apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Apply SAML_FED_* environment variable overrides.

    For example SAML_FED_ENTITY_ID, SAML_FED_METADATA_SOURCES (comma
    separated) or SAML_FED_REQUIRE_SIGNED_POST.

    Raises:
        ConfigurationError: If a numeric override cannot be parsed
    """
    for suffix, section, field, parser in ENV_OVERRIDES:
        raw = os.getenv(f"{ENV_PREFIX}{suffix}")
        if not raw:
            continue
        try:
            value = parser(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}. Error: {e}"
            ) from e
        config_dict.setdefault(section, {})[field] = value
        logger.debug(f"Override: {section}.{field} from environment")
    return config_dict


def _check_sensitive_values(config_dict: dict[str, Any]) -> None:
    """Warn about passwords stored in the configuration file."""
    for section in ("signing_credential", "encryption_credential"):
        credential = config_dict.get(section) or {}
        if "password" in credential:
            logger.warning(
                f"WARNING: Password found in {section} of the configuration file! "
                f"Passwords should be stored in environment variables, not config files. "
                f"Set {section}.password_env_var instead."
            )
            del credential["password"]
