"""Data models for key material and signature configuration.

This module defines dataclasses for loaded credentials, certificate
information, certificate validation results, and the per-operation
signature context.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from cryptography import x509


@dataclass
class CertificateInfo:
    """Certificate information for display and logging.

    Contains extracted metadata from X.509 certificates without
    exposing key material.

    Attributes:
        subject: Certificate subject Distinguished Name (DN)
        issuer: Certificate issuer Distinguished Name (DN)
        not_before: Certificate validity start date
        not_after: Certificate expiration date
        serial_number: Certificate serial number
        key_size: Public key size in bits (e.g., 2048, 4096)
        key_type: Public key algorithm name (RSA, DSA, EC)
    """

    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    serial_number: int
    key_size: Optional[int]
    key_type: str


@dataclass
class ValidationResult:
    """Result of certificate validation.

    Attributes:
        is_valid: True if certificate passes all validation checks
        errors: List of validation errors (blocking issues)
        warnings: List of validation warnings (non-blocking concerns)
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]


@dataclass
class CertificateBundle:
    """A loaded credential: certificate, private key and alias.

    Attributes:
        certificate: X.509 certificate
        private_key: Private key (None for verification-only bundles)
        chain: Additional certificates from the key store
        info: Extracted certificate information
        alias: Name the credential is registered under
    """

    certificate: x509.Certificate
    private_key: Optional[Any]
    chain: List[x509.Certificate]
    info: CertificateInfo
    alias: str = ""


@dataclass(frozen=True)
class SignatureContext:
    """Algorithms for a single signing operation.

    Built fresh from the signing certificate for every operation and
    never cached.

    Attributes:
        signature_algorithm: Signature algorithm URI
        digest_algorithm: Digest algorithm URI
        canonicalization_algorithm: Canonicalization algorithm URI
    """

    signature_algorithm: str
    digest_algorithm: str
    canonicalization_algorithm: str
