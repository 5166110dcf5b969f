"""Configuration schema models using pydantic.

All configuration values are validated according to the schema defined here.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models.entity import Binding

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _validate_level(v: str) -> str:
    v_upper = v.upper()
    if v_upper not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )
    return v_upper


def _validate_url(v: Optional[str]) -> Optional[str]:
    if v is not None and not v.startswith(("http://", "https://")):
        raise ValueError(f"Invalid URL: {v}. Must start with http:// or https://")
    return v


class EntityConfig(BaseModel):
    """This entity's identity and endpoints.

    Attributes:
        entity_id: Entity identifier URI used as Issuer on outbound messages
        single_logout_url: This entity's SingleLogoutService location
        assertion_consumer_url: This entity's AssertionConsumerService
            location (service providers only)
    """

    entity_id: str = Field(..., min_length=1, description="Entity identifier URI")
    single_logout_url: Optional[str] = Field(
        default=None, description="SingleLogoutService location"
    )
    assertion_consumer_url: Optional[str] = Field(
        default=None, description="AssertionConsumerService location"
    )

    @field_validator("single_logout_url", "assertion_consumer_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return _validate_url(v)


class CredentialConfig(BaseModel):
    """One credential set (certificate, key, password source and alias).

    The password itself never appears in configuration; only the name of
    the environment variable holding it.

    Attributes:
        cert_path: Certificate file (PEM, DER or PKCS12)
        key_path: Private key file for PEM certificates
        password_env_var: Environment variable holding the key password
        alias: Name used for this credential in logs
    """

    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None
    password_env_var: Optional[str] = Field(
        default="SAML_FED_KEY_PASSWORD",
        description="Environment variable for the private key password",
    )
    alias: str = Field(default="", description="Credential alias")


class MetadataConfig(BaseModel):
    """Metadata ingestion settings.

    Attributes:
        sources: Inline XML, file: paths or http(s):// URLs
        max_workers: Size of the retrieval worker pool
        timeout: Per-request timeout in seconds
        max_retries: Total attempts per remote fetch
        backoff_factor: First retry delay in seconds, doubled per attempt
        max_backoff: Cap on any single retry delay in seconds
        refresh_interval: Seconds between remote refreshes (0 disables)
        verify_tls: Verify TLS certificates of metadata servers
        supported_bindings: Bindings accepted for browser-facing endpoints
    """

    sources: List[str] = Field(default_factory=list)
    max_workers: int = Field(default=4, ge=1, le=32)
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=5, ge=1)
    backoff_factor: float = Field(default=1.0, ge=0.0)
    max_backoff: float = Field(default=60.0, ge=0.0)
    refresh_interval: float = Field(default=3600.0, ge=0.0)
    verify_tls: bool = True
    supported_bindings: List[Binding] = Field(
        default_factory=lambda: [Binding.HTTP_POST, Binding.HTTP_REDIRECT]
    )

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, v: List[str]) -> List[str]:
        for source in v:
            text = source.strip()
            inline = text.startswith("<") and text.endswith(">")
            if not (inline or text.startswith(("file:", "http://", "https://"))):
                raise ValueError(
                    f"Invalid metadata source: {text[:80]}. "
                    f"Must be inline XML, a file: path or an http(s):// URL"
                )
        return v


class ValidationConfig(BaseModel):
    """Inbound message validation settings.

    Attributes:
        issue_timeout: Maximum accepted message age in seconds
        jitter: Allowed clock skew in seconds
        require_signed_post: Reject unsigned POST-bound messages
    """

    issue_timeout: float = Field(default=600.0, ge=0.0)
    jitter: float = Field(default=30.0, ge=0.0)
    require_signed_post: bool = False


class RelayStateConfig(BaseModel):
    """RelayState cache settings (seconds)."""

    ttl: float = Field(default=600.0, gt=0)
    sweep_interval: float = Field(default=60.0, gt=0)


class TransportConfig(BaseModel):
    """Configuration for outbound HTTP/HTTPS transport.

    Attributes:
        verify_tls: Whether to verify TLS certificates
        timeout_connect: Connection timeout in seconds
        timeout_read: Read timeout in seconds
    """

    verify_tls: bool = True
    timeout_connect: int = Field(default=10, ge=1, description="Connection timeout in seconds")
    timeout_read: int = Field(default=30, ge=1, description="Read timeout in seconds")


class LoggingConfig(BaseModel):
    """Configuration for logging.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file
        redact_identifiers: Redact NameIDs, encoded messages and certificates
    """

    level: str = Field(default="INFO", description="Console log level")
    log_file: Path = Field(default=Path("logs/saml-fed.log"), description="Log file path")
    redact_identifiers: bool = Field(default=False, description="Redact identifiers from logs")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return _validate_level(v)


class OperationLoggingConfig(BaseModel):
    """Per-operation logging levels.

    Example:
        >>> OperationLoggingConfig(validation_log_level="DEBUG")
    """

    metadata_log_level: str = "INFO"
    signing_log_level: str = "WARNING"
    validation_log_level: str = "INFO"
    relay_state_log_level: str = "WARNING"

    @field_validator(
        "metadata_log_level",
        "signing_log_level",
        "validation_log_level",
        "relay_state_log_level",
    )
    @classmethod
    def validate_operation_log_level(cls, v: str) -> str:
        return _validate_level(v)


class Config(BaseModel):
    """Root configuration model.

    Example:
        >>> config = Config(entity=EntityConfig(entity_id="https://sp.example.com"))
        >>> config.validation.issue_timeout
        600.0
    """

    entity: EntityConfig
    signing_credential: CredentialConfig = CredentialConfig(alias="signing")
    encryption_credential: CredentialConfig = CredentialConfig(alias="encryption")
    metadata: MetadataConfig = MetadataConfig()
    validation: ValidationConfig = ValidationConfig()
    relay_state: RelayStateConfig = RelayStateConfig()
    transport: TransportConfig = TransportConfig()
    logging: LoggingConfig = LoggingConfig()
    operation_logging: OperationLoggingConfig = OperationLoggingConfig()

    @model_validator(mode="after")
    def validate_credentials(self) -> "Config":
        """A key path without a certificate path is a configuration mistake."""
        for name in ("signing_credential", "encryption_credential"):
            credential = getattr(self, name)
            if credential.key_path is not None and credential.cert_path is None:
                raise ValueError(
                    f"{name}.key_path is set but {name}.cert_path is not. "
                    f"Fix: Set {name}.cert_path."
                )
        return self
