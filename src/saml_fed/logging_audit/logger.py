"""Logging configuration and logger factory for the SAML federation core.

This module provides centralized logging configuration with support for:
- Console and file handlers with different log levels
- Log rotation to prevent unbounded file growth
- Identifier redaction via custom formatters
- Per-operation log levels adjustable at runtime
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .formatters import IdentifierRedactingFormatter

if TYPE_CHECKING:
    from ..config.schema import OperationLoggingConfig

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_FILE = Path("logs") / "saml-fed.log"
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024  # 10MB
BACKUP_COUNT = 5

_logging_configured = False

# Operation-specific logger names
OPERATION_LOGGERS = {
    "metadata": "saml_fed.metadata",
    "signing": "saml_fed.signing",
    "validation": "saml_fed.validation",
    "relay_state": "saml_fed.relay_state",
}

logger = logging.getLogger(__name__)


def _numeric_level(level: str, what: str = "log level") -> int:
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(
            f"Invalid {what}: {level}. "
            f"Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )
    return numeric_level


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    redact_identifiers: bool = False,
) -> None:
    """Configure logging for the SAML federation core.

    Sets up a console handler at the requested level and a rotating file
    handler at DEBUG. Safe to call more than once.

    Args:
        level: Log level for console output (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               File handler always uses DEBUG level.
        log_file: Path to log file. If None, uses SAML_FED_LOG_FILE or
                 DEFAULT_LOG_FILE.
        redact_identifiers: Whether to redact NameIDs, encoded messages and
                 certificates from logs

    Raises:
        ValueError: If invalid log level is provided
        RuntimeError: If log directory cannot be created

    Example:
        >>> configure_logging(level="DEBUG", redact_identifiers=True)
    """
    global _logging_configured

    numeric_level = _numeric_level(level)

    if log_file is None:
        env_log_file = os.environ.get("SAML_FED_LOG_FILE")
        log_file = Path(env_log_file) if env_log_file else DEFAULT_LOG_FILE

    log_dir = log_file.parent
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except (OSError, PermissionError) as e:
        raise RuntimeError(
            f"Failed to create log directory: {log_dir}. "
            f"Ensure write permissions are available. Error: {e}"
        ) from e

    root_logger = logging.getLogger()

    if _logging_configured:
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(
        IdentifierRedactingFormatter(fmt=DEFAULT_LOG_FORMAT, redact_identifiers=redact_identifiers)
    )
    root_logger.addHandler(console_handler)

    try:
        file_handler = RotatingFileHandler(
            filename=str(log_file),
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            IdentifierRedactingFormatter(
                fmt=DEFAULT_LOG_FORMAT, redact_identifiers=redact_identifiers
            )
        )
        root_logger.addHandler(file_handler)
    except (OSError, PermissionError) as e:
        root_logger.warning(
            f"Failed to create file handler for {log_file}: {e}. "
            f"Logging to console only."
        )

    _logging_configured = True


def get_logger(module_name: str) -> logging.Logger:
    """Get a logger for the specified module, typically called with __name__."""
    return logging.getLogger(module_name)


def get_operation_logger(operation: str) -> logging.Logger:
    """Get a logger for a specific operation type.

    Supported operations: metadata, signing, validation, relay_state.

    Raises:
        ValueError: If operation is not a recognized type
    """
    if operation not in OPERATION_LOGGERS:
        raise ValueError(
            f"Unknown operation: {operation}. "
            f"Must be one of: {', '.join(OPERATION_LOGGERS.keys())}"
        )
    return logging.getLogger(OPERATION_LOGGERS[operation])


def configure_operation_logging(
    metadata_log_level: str = "INFO",
    signing_log_level: str = "WARNING",
    validation_log_level: str = "INFO",
    relay_state_log_level: str = "WARNING",
) -> None:
    """Configure logging levels for each operation type.

    Raises:
        ValueError: If any log level is invalid

    Example:
        >>> configure_operation_logging(metadata_log_level="DEBUG")
    """
    levels = {
        "metadata": metadata_log_level,
        "signing": signing_log_level,
        "validation": validation_log_level,
        "relay_state": relay_state_log_level,
    }

    for operation, level in levels.items():
        numeric_level = _numeric_level(level, f"log level for {operation}")
        logger_name = OPERATION_LOGGERS[operation]
        logging.getLogger(logger_name).setLevel(numeric_level)
        logger.debug("Set %s logger level to %s", logger_name, level.upper())


def configure_operation_logging_from_config(config: "OperationLoggingConfig") -> None:
    """Configure operation logging from an OperationLoggingConfig object."""
    configure_operation_logging(
        metadata_log_level=config.metadata_log_level,
        signing_log_level=config.signing_log_level,
        validation_log_level=config.validation_log_level,
        relay_state_log_level=config.relay_state_log_level,
    )


def set_operation_log_level(operation: str, level: str) -> None:
    """Set log level for a specific operation at runtime.

    Raises:
        ValueError: If operation or level is invalid

    Example:
        >>> set_operation_log_level("validation", "DEBUG")
    """
    operation_logger = get_operation_logger(operation)
    operation_logger.setLevel(_numeric_level(level))
    logger.debug("Set %s logger level to %s", operation_logger.name, level.upper())
