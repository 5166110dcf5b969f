"""Custom exception classes for the SAML federation core.

All exceptions inherit from SAMLFedError to allow catching all custom exceptions.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests


class SAMLFedError(Exception):
    """Base exception for all SAML federation custom exceptions."""

    pass


class ConfigurationError(SAMLFedError):
    """Raised when configuration loading or builder input validation fails.

    Examples:
        - Missing required configuration
        - Blank binding or destination on a validator builder
        - Redirect-binding validation requested without signature data
    """

    pass


class ValidationRule(str, Enum):
    """Protocol rule that rejected an inbound message.

    Attributes:
        TIMESTAMP: IssueInstant outside the accepted window
        VERSION: Version attribute other than "2.0"
        REQUIRED_FIELD: Required attribute (ID) missing or blank
        DESTINATION: Destination does not match the receiving endpoint
        SIGNATURE: Signature missing, malformed, or untrusted
        CORRELATION: InResponseTo does not match the expected request ID
        MALFORMED: Message could not be parsed
    """

    TIMESTAMP = "Timestamp"
    VERSION = "Version"
    REQUIRED_FIELD = "RequiredField"
    DESTINATION = "Destination"
    SIGNATURE = "Signature"
    CORRELATION = "Correlation"
    MALFORMED = "Malformed"


class ValidationFailure(SAMLFedError):
    """Raised when an inbound protocol message is rejected.

    Always recoverable: callers translate this into "reject this message".

    Attributes:
        rule: The validation rule that failed
        reason: Human-readable reason for the rejection
    """

    def __init__(self, rule: ValidationRule, reason: str) -> None:
        super().__init__(f"{rule.value}: {reason}")
        self.rule = rule
        self.reason = reason


class TransportFailure(SAMLFedError):
    """Raised when metadata retrieval or an outbound send fails.

    Attributes:
        url: Target URL of the failed request
        status_code: HTTP status code if a response was received
    """

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class DeliveryFailure(SAMLFedError):
    """Raised when an accepted message cannot be handed to its next step.

    Kept distinct from ValidationFailure so a downstream problem is never
    reported as a signature or protocol failure.
    """

    pass


class CryptoFailure(SAMLFedError):
    """Raised when key material or a signature operation is unusable.

    Always fatal to the current operation.
    """

    pass


class UnsupportedAlgorithmError(CryptoFailure):
    """Raised when a signature algorithm URI has no local mapping."""

    pass


class MissingCertificateError(CryptoFailure):
    """Raised when verification is requested without a certificate.

    This is a trust-configuration problem, not a cryptographic failure.
    """

    pass


class CertificateLoadError(CryptoFailure):
    """Raised when certificate or key loading fails.

    Examples:
        - Certificate file not found
        - Invalid certificate format
        - Incorrect password for encrypted key
    """

    pass


class SigningError(CryptoFailure):
    """Raised when a message cannot be signed."""

    pass


class IllegalArgumentError(SAMLFedError, ValueError):
    """Raised when a message factory input is blank or invalid."""

    pass


class TypeMismatchError(SAMLFedError):
    """Raised when parsed XML is not the expected protocol message type."""

    pass


class ErrorCategory(Enum):
    """Error categorization for handling strategy.

    Attributes:
        TRANSIENT: Retry with exponential backoff (network issues, timeouts, 5xx)
        PERMANENT: Skip the source and continue (malformed metadata, 4xx)
        CRITICAL: Halt the operation (certificate or configuration errors)
    """

    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    CRITICAL = "CRITICAL"


@dataclass
class ErrorInfo:
    """Structured error information for logging and audit.

    Attributes:
        category: Error category (TRANSIENT, PERMANENT, CRITICAL)
        error_type: Exception class name
        message: Error message
        is_retryable: Whether the error should trigger retry logic
        technical_details: Optional details of the chained cause
    """

    category: ErrorCategory
    error_type: str
    message: str
    is_retryable: bool
    technical_details: Optional[str] = None


def categorize_error(exception: Exception) -> ErrorCategory:
    """Categorize exception for error handling strategy.

    Args:
        exception: The exception to categorize

    Returns:
        ErrorCategory indicating handling strategy

    Example:
        >>> categorize_error(requests.Timeout("slow"))
        <ErrorCategory.TRANSIENT: 'TRANSIENT'>
        >>> categorize_error(MissingCertificateError("no cert"))
        <ErrorCategory.CRITICAL: 'CRITICAL'>
    """
    if isinstance(exception, (CryptoFailure, ConfigurationError)):
        return ErrorCategory.CRITICAL

    if isinstance(exception, requests.exceptions.SSLError):
        return ErrorCategory.CRITICAL

    if isinstance(exception, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.TRANSIENT

    if isinstance(exception, TransportFailure):
        if exception.status_code is None or exception.status_code >= 500:
            return ErrorCategory.TRANSIENT
        if exception.status_code == 429:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    if isinstance(exception, requests.HTTPError):
        if exception.response is not None and exception.response.status_code >= 500:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    return ErrorCategory.PERMANENT


def create_error_info(exception: Exception) -> ErrorInfo:
    """Create structured error information from exception.

    Args:
        exception: Exception that occurred

    Returns:
        ErrorInfo with categorization
    """
    category = categorize_error(exception)

    technical_details = None
    if exception.__cause__ is not None:
        technical_details = (
            f"Caused by: {type(exception.__cause__).__name__}: {exception.__cause__}"
        )

    return ErrorInfo(
        category=category,
        error_type=type(exception).__name__,
        message=str(exception),
        is_retryable=category == ErrorCategory.TRANSIENT,
        technical_details=technical_details,
    )
