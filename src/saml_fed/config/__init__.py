"""Configuration loading and schema."""

from .manager import load_config
from .schema import (
    Config,
    CredentialConfig,
    EntityConfig,
    LoggingConfig,
    MetadataConfig,
    OperationLoggingConfig,
    RelayStateConfig,
    TransportConfig,
    ValidationConfig,
)

__all__ = [
    "load_config",
    "Config",
    "CredentialConfig",
    "EntityConfig",
    "LoggingConfig",
    "MetadataConfig",
    "OperationLoggingConfig",
    "RelayStateConfig",
    "TransportConfig",
    "ValidationConfig",
]
