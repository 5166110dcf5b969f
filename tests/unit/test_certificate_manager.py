"""Unit tests for credential loading."""

import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from saml_fed.config.schema import CredentialConfig
from saml_fed.saml.certificate_manager import (
    FileCredentialStore,
    certificate_from_base64,
    certificate_to_base64,
    check_expiration_warning,
    key_type_of,
    load_certificate,
    validate_certificate,
)
from saml_fed.utils.exceptions import CertificateLoadError


def _certificate(key, not_before, not_after):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "short-lived.example.com")])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class TestLoadCertificate:
    """Test format detection and loading."""

    def test_pem_with_separate_key(self, sp_bundle, write_credential):
        cert_path, key_path = write_credential(sp_bundle)

        bundle = load_certificate(cert_path, key_path=key_path, alias="sp")

        assert bundle.certificate == sp_bundle.certificate
        assert bundle.private_key is not None
        assert bundle.info.key_type == "RSA"
        assert bundle.info.subject == "CN=sp.example.com"
        assert bundle.alias == "sp"

    def test_pem_without_key(self, sp_bundle, write_credential):
        cert_path, _ = write_credential(sp_bundle)
        assert load_certificate(cert_path).private_key is None

    def test_der_certificate(self, sp_bundle, tmp_path):
        path = tmp_path / "sp.der"
        path.write_bytes(sp_bundle.certificate.public_bytes(serialization.Encoding.DER))
        assert load_certificate(path).certificate == sp_bundle.certificate

    def test_pkcs12_with_password(self, idp_bundle, tmp_path):
        path = tmp_path / "idp.p12"
        path.write_bytes(
            pkcs12.serialize_key_and_certificates(
                b"idp",
                idp_bundle.private_key,
                idp_bundle.certificate,
                None,
                serialization.BestAvailableEncryption(b"secret"),
            )
        )
        bundle = load_certificate(path, password=b"secret")
        assert bundle.certificate == idp_bundle.certificate
        assert bundle.private_key is not None

    def test_pkcs12_wrong_password(self, idp_bundle, tmp_path):
        path = tmp_path / "idp.pfx"
        path.write_bytes(
            pkcs12.serialize_key_and_certificates(
                b"idp",
                idp_bundle.private_key,
                idp_bundle.certificate,
                None,
                serialization.BestAvailableEncryption(b"secret"),
            )
        )
        with pytest.raises(CertificateLoadError, match="PKCS12"):
            load_certificate(path, password=b"wrong")

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "credential.jks"
        path.write_bytes(b"\x00")
        with pytest.raises(CertificateLoadError, match="Unsupported certificate format"):
            load_certificate(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CertificateLoadError, match="not found"):
            load_certificate(tmp_path / "absent.pem")

    def test_garbage_pem(self, tmp_path):
        path = tmp_path / "garbage.pem"
        path.write_text("not a certificate", encoding="utf-8")
        with pytest.raises(CertificateLoadError):
            load_certificate(path)


class TestBase64Certificates:
    """Test the base64 DER form used in metadata and KeyInfo."""

    def test_round_trip(self, sp_bundle):
        encoded = certificate_to_base64(sp_bundle.certificate)
        assert "\n" not in encoded
        assert certificate_from_base64(encoded) == sp_bundle.certificate

    def test_wrapped_body_and_pem_accepted(self, sp_bundle):
        encoded = certificate_to_base64(sp_bundle.certificate)
        wrapped = "\n".join(encoded[i:i + 64] for i in range(0, len(encoded), 64))
        pem = sp_bundle.certificate.public_bytes(serialization.Encoding.PEM)

        assert certificate_from_base64(wrapped) == sp_bundle.certificate
        assert certificate_from_base64(pem) == sp_bundle.certificate

    def test_blank_value(self):
        with pytest.raises(CertificateLoadError, match="blank"):
            certificate_from_base64("   ")

    def test_invalid_value(self):
        with pytest.raises(CertificateLoadError, match="Unable to parse"):
            certificate_from_base64("bm90IGEgY2VydGlmaWNhdGU=")


class TestKeyTypes:
    """Test key family detection."""

    def test_key_families(self, sp_bundle, ec_bundle, dsa_bundle):
        assert key_type_of(sp_bundle.certificate.public_key()) == "RSA"
        assert key_type_of(ec_bundle.private_key) == "EC"
        assert key_type_of(dsa_bundle.certificate.public_key()) == "DSA"

    def test_unsupported_key(self):
        with pytest.raises(CertificateLoadError, match="Unsupported key type"):
            key_type_of(object())


class TestCertificateValidation:
    """Test validity period checks."""

    def test_self_signed_is_valid_with_warning(self, sp_bundle):
        result = validate_certificate(sp_bundle.certificate)
        assert result.is_valid
        assert any("self-signed" in warning for warning in result.warnings)

    def test_expired_certificate(self, rsa_key):
        now = datetime.now(timezone.utc)
        cert = _certificate(rsa_key, now - timedelta(days=30), now - timedelta(days=2))
        result = validate_certificate(cert)
        assert not result.is_valid
        assert "expired" in result.errors[0]

    def test_not_yet_valid_certificate(self, rsa_key):
        now = datetime.now(timezone.utc)
        cert = _certificate(rsa_key, now + timedelta(days=2), now + timedelta(days=30))
        assert "not yet valid" in validate_certificate(cert).errors[0]

    def test_expiring_soon(self, rsa_key):
        now = datetime.now(timezone.utc)
        cert = _certificate(rsa_key, now - timedelta(days=1), now + timedelta(days=10))
        assert check_expiration_warning(cert) is True
        assert any("expires in" in warning for warning in validate_certificate(cert).warnings)


class TestFileCredentialStore:
    """Test credential loading from configuration."""

    def test_signing_credential_from_files(self, sp_bundle, write_credential):
        cert_path, key_path = write_credential(sp_bundle)
        store = FileCredentialStore(
            CredentialConfig(cert_path=cert_path, key_path=key_path, password_env_var=None)
        )

        bundle = store.get_signing_credential()

        assert bundle.certificate == sp_bundle.certificate
        assert bundle.alias == "signing"

    def test_bundle_is_cached_until_file_changes(self, sp_bundle, write_credential):
        cert_path, key_path = write_credential(sp_bundle)
        store = FileCredentialStore(
            CredentialConfig(cert_path=cert_path, key_path=key_path, password_env_var=None)
        )

        first = store.get_signing_credential()
        assert store.get_signing_credential() is first

        stat = cert_path.stat()
        os.utime(cert_path, (stat.st_atime, stat.st_mtime + 10))
        assert store.get_signing_credential() is not first

    def test_encryption_falls_back_to_signing(self, sp_bundle, write_credential):
        cert_path, key_path = write_credential(sp_bundle)
        store = FileCredentialStore(
            CredentialConfig(cert_path=cert_path, key_path=key_path, password_env_var=None),
            CredentialConfig(),
        )
        assert store.get_encryption_credential().certificate == sp_bundle.certificate

    def test_password_read_from_environment(self, sp_bundle, tmp_path, monkeypatch):
        cert_path = tmp_path / "sp.pem"
        key_path = tmp_path / "sp-key.pem"
        cert_path.write_bytes(sp_bundle.certificate.public_bytes(serialization.Encoding.PEM))
        key_path.write_bytes(
            sp_bundle.private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.BestAvailableEncryption(b"from-env"),
            )
        )
        monkeypatch.setenv("TEST_SP_KEY_PASSWORD", "from-env")
        store = FileCredentialStore(
            CredentialConfig(
                cert_path=cert_path, key_path=key_path, password_env_var="TEST_SP_KEY_PASSWORD"
            )
        )
        assert store.get_signing_credential().private_key is not None

    def test_unconfigured_credential(self):
        with pytest.raises(CertificateLoadError, match="No signing credential configured"):
            FileCredentialStore(CredentialConfig()).get_signing_credential()
