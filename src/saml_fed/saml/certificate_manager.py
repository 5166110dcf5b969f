"""Credential loading and certificate handling.

This module loads certificates and private keys from PEM, PKCS12 and DER
files, converts between the certificate encodings used in metadata and
signatures, and provides the credential store consumed by the signing
engine. The signing engine itself only sees CertificateBundle objects
handed out by a CredentialStore.
"""

import base64
import binascii
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    pkcs12,
)

from ..models.saml import CertificateBundle, CertificateInfo, ValidationResult
from ..utils.encoding import strip_pem
from ..utils.exceptions import CertificateLoadError
from .engine import KEY_TYPE_DSA, KEY_TYPE_EC, KEY_TYPE_RSA

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Source of the two independently configured credential sets."""

    def get_signing_credential(self) -> CertificateBundle:
        ...

    def get_encryption_credential(self) -> CertificateBundle:
        ...


class StaticCredentialStore:
    """Credential store over already-loaded bundles.

    The encryption credential falls back to the signing credential when
    none is configured.
    """

    def __init__(
        self,
        signing: CertificateBundle,
        encryption: Optional[CertificateBundle] = None,
    ) -> None:
        self._signing = signing
        self._encryption = encryption or signing

    def get_signing_credential(self) -> CertificateBundle:
        return self._signing

    def get_encryption_credential(self) -> CertificateBundle:
        return self._encryption


class FileCredentialStore:
    """Credential store backed by certificate and key files.

    Passwords are read from the environment variable named in the
    credential configuration, never from the configuration file.
    Bundles are cached and reloaded when the file modification time
    changes.

    Example:
        >>> store = FileCredentialStore(config.signing_credential)
        >>> bundle = store.get_signing_credential()
        >>> print(bundle.info.subject)
    """

    def __init__(self, signing_config: Any, encryption_config: Optional[Any] = None) -> None:
        self.signing_config = signing_config
        self.encryption_config = encryption_config
        self._cache = CertificateCache()

    def get_signing_credential(self) -> CertificateBundle:
        return self._load(self.signing_config, "signing")

    def get_encryption_credential(self) -> CertificateBundle:
        if self.encryption_config is None or self.encryption_config.cert_path is None:
            return self.get_signing_credential()
        return self._load(self.encryption_config, "encryption")

    def _load(self, credential_config: Any, purpose: str) -> CertificateBundle:
        if credential_config is None or credential_config.cert_path is None:
            raise CertificateLoadError(
                f"No {purpose} credential configured. "
                f"Set {purpose}_credential.cert_path in the configuration."
            )

        cert_path = Path(credential_config.cert_path)
        cached = self._cache.get(cert_path)
        if cached:
            return cached

        password: Optional[bytes] = None
        if credential_config.password_env_var:
            value = os.getenv(credential_config.password_env_var)
            if value is None:
                logger.warning(
                    f"Password variable {credential_config.password_env_var} is not set "
                    f"for {purpose} credential"
                )
            else:
                password = value.encode("utf-8")

        bundle = load_certificate(
            cert_path,
            key_path=credential_config.key_path,
            password=password,
            alias=credential_config.alias or purpose,
        )
        self._cache.put(cert_path, bundle)
        return bundle


class CertificateCache:
    """In-memory certificate cache to avoid repeated file I/O.

    Caches certificate bundles keyed by file path and modification time.
    Entries are invalidated when files are modified.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, Tuple[float, CertificateBundle]] = {}
        self._lock = threading.Lock()

    def get(self, cert_path: Path) -> Optional[CertificateBundle]:
        """Get cached certificate if file hasn't changed.

        Args:
            cert_path: Path to certificate file

        Returns:
            Cached CertificateBundle or None if not cached or stale
        """
        cache_key = str(cert_path.absolute())
        with self._lock:
            if cache_key not in self._cache:
                return None

            cached_mtime, bundle = self._cache[cache_key]
            try:
                current_mtime = os.path.getmtime(cert_path)
            except OSError:
                del self._cache[cache_key]
                return None

            if current_mtime != cached_mtime:
                del self._cache[cache_key]
                return None

        logger.debug(f"Cache hit for {cert_path.name}")
        return bundle

    def put(self, cert_path: Path, bundle: CertificateBundle) -> None:
        cache_key = str(cert_path.absolute())
        try:
            mtime = os.path.getmtime(cert_path)
        except OSError as e:
            logger.warning(f"Failed to cache certificate {cert_path.name}: {e}")
            return
        with self._lock:
            self._cache[cache_key] = (mtime, bundle)
        logger.debug(f"Cached certificate: {cert_path.name}")

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.debug("Certificate cache cleared")


def key_type_of(public_key: Any) -> str:
    """Return the key family (RSA, DSA, EC) of a public or private key.

    Raises:
        CertificateLoadError: If the key type is not supported for signing
    """
    if isinstance(public_key, (rsa.RSAPublicKey, rsa.RSAPrivateKey)):
        return KEY_TYPE_RSA
    if isinstance(public_key, (dsa.DSAPublicKey, dsa.DSAPrivateKey)):
        return KEY_TYPE_DSA
    if isinstance(public_key, (ec.EllipticCurvePublicKey, ec.EllipticCurvePrivateKey)):
        return KEY_TYPE_EC
    raise CertificateLoadError(
        f"Unsupported key type: {type(public_key).__name__}. "
        f"Supported key types: RSA, DSA, EC"
    )


def get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    """Extract certificate information for display and logging.

    Args:
        cert: X.509 certificate

    Returns:
        CertificateInfo dataclass with certificate details

    Example:
        >>> info = get_certificate_info(cert)
        >>> print(info.subject, info.key_type)
        CN=idp.example.com RSA
    """
    public_key = cert.public_key()
    key_size = public_key.key_size if hasattr(public_key, "key_size") else None

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        serial_number=cert.serial_number,
        key_size=key_size,
        key_type=key_type_of(public_key),
    )


def check_expiration_warning(cert: x509.Certificate, warning_days: int = 30) -> bool:
    """Check if certificate is expiring soon and log warning.

    Returns:
        True if certificate expires within warning_days, False otherwise
    """
    now = datetime.now(timezone.utc)
    warning_date = now + timedelta(days=warning_days)

    if cert.not_valid_after_utc < warning_date:
        days_remaining = (cert.not_valid_after_utc - now).days
        logger.warning(
            f"Certificate expiring soon: {days_remaining} days remaining "
            f"(expires: {cert.not_valid_after_utc.strftime('%Y-%m-%d')})"
        )
        return True

    return False


def validate_certificate(cert: x509.Certificate) -> ValidationResult:
    """Validate certificate for use in signing operations.

    Checks the validity period, warns about certificates expiring within
    30 days and about self-signed certificates.

    Args:
        cert: X.509 certificate to validate

    Returns:
        ValidationResult with is_valid flag and any errors/warnings
    """
    errors: List[str] = []
    warnings: List[str] = []
    now = datetime.now(timezone.utc)

    if cert.not_valid_before_utc > now:
        errors.append(
            f"Certificate not yet valid until "
            f"{cert.not_valid_before_utc.strftime('%Y-%m-%d %H:%M:%S UTC')}"
        )

    if cert.not_valid_after_utc < now:
        days_expired = (now - cert.not_valid_after_utc).days
        errors.append(
            f"Certificate expired {days_expired} days ago on "
            f"{cert.not_valid_after_utc.strftime('%Y-%m-%d %H:%M:%S UTC')}"
        )

    warning_date = now + timedelta(days=30)
    if now <= cert.not_valid_after_utc < warning_date:
        days_remaining = (cert.not_valid_after_utc - now).days
        warnings.append(
            f"Certificate expires in {days_remaining} days "
            f"({cert.not_valid_after_utc.strftime('%Y-%m-%d')})"
        )

    if cert.issuer == cert.subject:
        warnings.append(
            "Certificate is self-signed. Peers must trust it explicitly through metadata."
        )

    return ValidationResult(is_valid=len(errors) == 0, errors=errors, warnings=warnings)


def _read_file(path: Path, description: str) -> bytes:
    if not path.exists():
        raise CertificateLoadError(
            f"{description} file not found: {path}. "
            f"Ensure the file exists and path is correct."
        )
    with open(path, "rb") as f:
        return f.read()


def load_pem_certificate(cert_path: Path) -> x509.Certificate:
    """Load X.509 certificate from PEM file.

    Raises:
        CertificateLoadError: If certificate cannot be loaded
    """
    cert_data = _read_file(cert_path, "Certificate")
    try:
        cert = x509.load_pem_x509_certificate(cert_data)
    except ValueError as e:
        raise CertificateLoadError(
            f"Failed to load PEM certificate from {cert_path}: {e}. "
            f"Ensure file is valid PEM format."
        ) from e

    logger.info(f"Loaded PEM certificate: {cert.subject.rfc4514_string()}")
    check_expiration_warning(cert)
    return cert


def load_der_certificate(cert_path: Path) -> x509.Certificate:
    """Load X.509 certificate from DER file.

    Raises:
        CertificateLoadError: If certificate cannot be loaded
    """
    cert_data = _read_file(cert_path, "Certificate")
    try:
        cert = x509.load_der_x509_certificate(cert_data)
    except ValueError as e:
        raise CertificateLoadError(
            f"Failed to load DER certificate from {cert_path}: {e}. "
            f"Ensure file is valid DER format."
        ) from e

    logger.info(f"Loaded DER certificate: {cert.subject.rfc4514_string()}")
    check_expiration_warning(cert)
    return cert


def load_pem_private_key(key_path: Path, password: Optional[bytes] = None) -> Any:
    """Load private key from PEM file.

    Args:
        key_path: Path to PEM private key file
        password: Optional password for encrypted private key

    Returns:
        Loaded RSA, DSA or EC private key

    Raises:
        CertificateLoadError: If private key cannot be loaded
    """
    key_data = _read_file(key_path, "Private key")
    try:
        private_key = serialization.load_pem_private_key(key_data, password=password)
    except TypeError as e:
        raise CertificateLoadError(
            f"Failed to load private key from {key_path}: Incorrect password. "
            f"If key is encrypted, provide correct password."
        ) from e
    except ValueError as e:
        raise CertificateLoadError(
            f"Failed to load PEM private key from {key_path}: {e}. "
            f"Ensure file is valid PEM format and password is correct if encrypted."
        ) from e

    # Never log key contents
    logger.info(f"Loaded PEM private key from: {key_path.name}")
    return private_key


def load_pkcs12_certificate(
    p12_path: Path, password: Optional[bytes] = None
) -> Tuple[x509.Certificate, Any, List[x509.Certificate]]:
    """Load certificate, private key, and chain from PKCS12 file.

    Returns:
        Tuple of (certificate, private_key, certificate_chain)

    Raises:
        CertificateLoadError: If PKCS12 cannot be loaded
    """
    pkcs12_data = _read_file(p12_path, "PKCS12")
    try:
        private_key, certificate, additional_certs = pkcs12.load_key_and_certificates(
            pkcs12_data, password=password
        )
    except (TypeError, ValueError) as e:
        raise CertificateLoadError(
            f"Failed to load PKCS12 from {p12_path}: {e}. "
            f"Ensure file is valid PKCS12 format and password is correct."
        ) from e

    if certificate is None:
        raise CertificateLoadError(f"No certificate found in PKCS12 file: {p12_path}")
    if private_key is None:
        raise CertificateLoadError(f"No private key found in PKCS12 file: {p12_path}")

    logger.info(f"Loaded PKCS12 certificate: {certificate.subject.rfc4514_string()}")
    if additional_certs:
        logger.info(f"Loaded {len(additional_certs)} additional certificates from chain")

    check_expiration_warning(certificate)
    return certificate, private_key, list(additional_certs or [])


def load_certificate(
    cert_path: Union[Path, str],
    key_path: Optional[Union[Path, str]] = None,
    password: Optional[bytes] = None,
    alias: str = "",
) -> CertificateBundle:
    """Load a credential with format detection by file extension.

    Supports PEM (.pem, .crt), PKCS12 (.p12, .pfx) and DER (.der, .cer).

    Args:
        cert_path: Path to certificate or PKCS12 file
        key_path: Optional path to separate PEM private key file
        password: Optional password for PKCS12 or encrypted PEM keys
        alias: Name to register the credential under

    Returns:
        CertificateBundle containing certificate, key, chain, and info

    Raises:
        CertificateLoadError: If the credential cannot be loaded or the
            format is unsupported

    Example:
        >>> bundle = load_certificate(Path("certs/idp.p12"), password=b"secret")
        >>> print(bundle.info.key_type)
        RSA
    """
    cert_path = Path(cert_path)
    suffix = cert_path.suffix.lower()

    private_key: Optional[Any] = None
    chain: List[x509.Certificate] = []

    if suffix in (".pem", ".crt"):
        certificate = load_pem_certificate(cert_path)
    elif suffix in (".p12", ".pfx"):
        certificate, private_key, chain = load_pkcs12_certificate(cert_path, password)
    elif suffix in (".der", ".cer"):
        certificate = load_der_certificate(cert_path)
    else:
        raise CertificateLoadError(
            f"Unsupported certificate format: {suffix}. "
            f"Supported formats: .pem, .crt, .p12, .pfx, .der, .cer"
        )

    if key_path and private_key is None:
        private_key = load_pem_private_key(Path(key_path), password)

    return CertificateBundle(
        certificate=certificate,
        private_key=private_key,
        chain=chain,
        info=get_certificate_info(certificate),
        alias=alias,
    )


def certificate_from_base64(value: Union[str, bytes]) -> x509.Certificate:
    """Parse a certificate given as base64 DER text or PEM.

    Metadata and KeyInfo carry certificates as base64 DER bodies, possibly
    wrapped over several lines.

    Raises:
        CertificateLoadError: If the value is not a valid certificate
    """
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")
    body = strip_pem(value)
    if not body:
        raise CertificateLoadError("Certificate value is blank")
    try:
        der = base64.b64decode(body, validate=False)
        return x509.load_der_x509_certificate(der)
    except (binascii.Error, ValueError) as e:
        raise CertificateLoadError(f"Unable to parse certificate: {e}") from e


def certificate_to_base64(cert: x509.Certificate) -> str:
    """Return the single-line base64 DER body of a certificate."""
    return base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii")


def convert_to_pem(cert: x509.Certificate) -> bytes:
    """Convert certificate to PEM format bytes."""
    return cert.public_bytes(Encoding.PEM)


def convert_key_to_pem(private_key: Any, password: Optional[bytes] = None) -> bytes:
    """Convert private key to PKCS8 PEM format bytes.

    Args:
        private_key: Private key to convert
        password: Optional password to encrypt the private key
    """
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )

    return private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
