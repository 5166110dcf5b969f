"""Default configuration values.

Used when no configuration file is provided or a value is not specified.
"""

from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "entity": {
        # Matches the mock endpoint started by `saml-fed mock start`
        "entity_id": "http://localhost:8080/saml",
        "single_logout_url": "http://localhost:8080/slo",
    },
    "signing_credential": {
        "cert_path": None,
        "key_path": None,
        "password_env_var": "SAML_FED_KEY_PASSWORD",
        "alias": "signing",
    },
    "metadata": {
        "sources": [],
        "max_workers": 4,
        "timeout": 30,
        "max_retries": 5,
        "backoff_factor": 1.0,
        "max_backoff": 60,
        "refresh_interval": 3600,
    },
    "validation": {
        "issue_timeout": 600,
        "jitter": 30,
        # Unsigned POST messages are tolerated unless set
        "require_signed_post": False,
    },
    "relay_state": {
        "ttl": 600,
        "sweep_interval": 60,
    },
    "transport": {
        "verify_tls": True,
        "timeout_connect": 10,
        "timeout_read": 30,
    },
    "logging": {
        "level": "INFO",
        "log_file": "logs/saml-fed.log",
        "redact_identifiers": False,
    },
}

DEFAULT_CONFIG_PATH = "config/config.json"
