"""
Shared pytest configuration and fixtures.

Credentials are generated in memory with cryptography so no key material is
checked into the repository. Identifiers used across the suite are exposed
as fixtures so individual test modules stay independent of each other.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, rsa
from cryptography.x509.oid import NameOID

from saml_fed.models.entity import Binding, EntityRecord
from saml_fed.models.protocol import LogoutRequest
from saml_fed.models.saml import CertificateBundle
from saml_fed.saml.certificate_manager import (
    StaticCredentialStore,
    certificate_to_base64,
    get_certificate_info,
)
from saml_fed.saml.engine import XMLSecurityEngine, initialize_engine
from saml_fed.saml.entity_catalog import EntityCatalog
from saml_fed.saml.logout_service import LogoutService
from saml_fed.saml.messages import MessageFactory
from saml_fed.saml.metadata import MetadataParser, create_sp_metadata
from saml_fed.saml.relay_state import RelayStateCache
from saml_fed.saml.signer import SigningEngine

# Fixed instant used by every frozen clock in the suite
FROZEN_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _build_bundle(private_key: Any, common_name: str, alias: str = "") -> CertificateBundle:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(private_key, hashes.SHA256())
    )
    return CertificateBundle(
        certificate=certificate,
        private_key=private_key,
        chain=[],
        info=get_certificate_info(certificate),
        alias=alias,
    )


@pytest.fixture(scope="session")
def ids() -> Dict[str, str]:
    """
    Entity identifiers and endpoint URLs shared across tests.

    Returns:
        Dict with sp/idp entity IDs and SLO locations.
    """
    return {
        "sp": "https://sp.example.com/saml",
        "sp_slo": "https://sp.example.com/slo",
        "idp": "https://idp.example.com/saml",
        "idp_slo": "https://idp.example.com/slo",
        "idp_soap": "https://idp.example.com/slo/soap",
        "idp_sso": "https://idp.example.com/sso",
    }


@pytest.fixture(scope="session")
def now() -> datetime:
    """The instant every frozen clock returns."""
    return FROZEN_NOW


@pytest.fixture(scope="session")
def make_bundle() -> Callable[..., CertificateBundle]:
    """
    Factory for self-signed credentials.

    Returns:
        Callable taking (private_key, common_name, alias="") and returning a
        CertificateBundle valid from one day ago for one year.
    """
    return _build_bundle


@pytest.fixture(scope="session")
def sp_bundle() -> CertificateBundle:
    """RSA credential of the local service provider."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return _build_bundle(key, "sp.example.com", alias="sp")


@pytest.fixture(scope="session")
def idp_bundle() -> CertificateBundle:
    """RSA credential of the peer identity provider."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return _build_bundle(key, "idp.example.com", alias="idp")


@pytest.fixture(scope="session")
def ec_bundle() -> CertificateBundle:
    """EC P-256 credential."""
    return _build_bundle(ec.generate_private_key(ec.SECP256R1()), "ec.example.com", alias="ec")


@pytest.fixture(scope="session")
def dsa_bundle() -> CertificateBundle:
    """DSA 2048 credential."""
    return _build_bundle(dsa.generate_private_key(key_size=2048), "dsa.example.com", alias="dsa")


@pytest.fixture(scope="session")
def engine() -> XMLSecurityEngine:
    """Initialised XML security engine."""
    return initialize_engine()


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Clock frozen at FROZEN_NOW."""
    return lambda: FROZEN_NOW


@pytest.fixture
def factory(engine: XMLSecurityEngine, clock: Callable[[], datetime]) -> MessageFactory:
    """Message factory stamping messages with the frozen clock."""
    return MessageFactory(engine, clock=clock)


@pytest.fixture
def sp_signing(engine: XMLSecurityEngine, sp_bundle: CertificateBundle) -> SigningEngine:
    """Signing engine holding the SP credential."""
    return SigningEngine(engine, StaticCredentialStore(sp_bundle))


@pytest.fixture
def idp_signing(engine: XMLSecurityEngine, idp_bundle: CertificateBundle) -> SigningEngine:
    """Signing engine holding the IdP credential."""
    return SigningEngine(engine, StaticCredentialStore(idp_bundle))


@pytest.fixture
def idp_certificate(idp_bundle: CertificateBundle) -> str:
    """IdP certificate as a base64 DER body, as metadata carries it."""
    return certificate_to_base64(idp_bundle.certificate)


@pytest.fixture
def sp_certificate(sp_bundle: CertificateBundle) -> str:
    """SP certificate as a base64 DER body."""
    return certificate_to_base64(sp_bundle.certificate)


@pytest.fixture
def write_credential(tmp_path: Path) -> Callable[[CertificateBundle], Tuple[Path, Path]]:
    """
    Write a bundle's certificate and key as PEM files.

    Returns:
        Callable returning (cert_path, key_path) inside tmp_path.
    """

    def _write(bundle: CertificateBundle) -> Tuple[Path, Path]:
        cert_path = tmp_path / f"{bundle.alias or 'credential'}.pem"
        key_path = tmp_path / f"{bundle.alias or 'credential'}-key.pem"
        cert_path.write_bytes(bundle.certificate.public_bytes(serialization.Encoding.PEM))
        key_path.write_bytes(
            bundle.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        return cert_path, key_path

    return _write


@pytest.fixture
def idp_metadata_factory(ids: Dict[str, str], idp_certificate: str) -> Callable[..., str]:
    """
    Build IdP metadata with a front-channel and a SOAP SLO endpoint.

    Returns:
        Callable taking (slo_binding=Binding.HTTP_REDIRECT, certificate=None,
        root_attributes="") and returning an EntityDescriptor document.
    """

    def _build(
        slo_binding: Binding = Binding.HTTP_REDIRECT,
        certificate: str = None,
        root_attributes: str = "",
    ) -> str:
        cert = idp_certificate if certificate is None else certificate
        return f"""<md:EntityDescriptor xmlns:md="urn:oasis:names:tc:SAML:2.0:metadata"
    xmlns:ds="http://www.w3.org/2000/09/xmldsig#" entityID="{ids['idp']}"{root_attributes}>
  <md:IDPSSODescriptor protocolSupportEnumeration="urn:oasis:names:tc:SAML:2.0:protocol"
      WantAuthnRequestsSigned="true">
    <md:KeyDescriptor use="signing">
      <ds:KeyInfo><ds:X509Data><ds:X509Certificate>{cert}</ds:X509Certificate></ds:X509Data></ds:KeyInfo>
    </md:KeyDescriptor>
    <md:SingleLogoutService Binding="{Binding.SOAP.value}" Location="{ids['idp_soap']}"/>
    <md:SingleLogoutService Binding="{slo_binding.value}" Location="{ids['idp_slo']}"/>
    <md:SingleSignOnService Binding="{Binding.HTTP_REDIRECT.value}" Location="{ids['idp_sso']}"/>
  </md:IDPSSODescriptor>
</md:EntityDescriptor>"""

    return _build


@pytest.fixture
def idp_metadata(idp_metadata_factory: Callable[..., str]) -> str:
    """IdP metadata declaring a Redirect SLO endpoint."""
    return idp_metadata_factory()


@pytest.fixture
def sp_record(
    engine: XMLSecurityEngine, ids: Dict[str, str], sp_certificate: str, now: datetime
) -> EntityRecord:
    """SP EntityRecord parsed from generated metadata (Redirect SLO first)."""
    xml = create_sp_metadata(
        ids["sp"], sp_certificate, sp_certificate, single_logout_location=ids["sp_slo"]
    )
    return MetadataParser(engine).parse(xml, now=now)[0]


@pytest.fixture
def idp_record(engine: XMLSecurityEngine, idp_metadata: str, now: datetime) -> EntityRecord:
    """IdP EntityRecord parsed from idp_metadata."""
    return MetadataParser(engine).parse(idp_metadata, now=now)[0]


@pytest.fixture
def sp_sessions() -> List[LogoutRequest]:
    """LogoutRequests the SP was asked to end sessions for."""
    return []


@pytest.fixture
def idp_sessions() -> List[LogoutRequest]:
    """LogoutRequests the IdP was asked to end sessions for."""
    return []


@pytest.fixture
def sp_service(
    ids: Dict[str, str],
    idp_record: EntityRecord,
    factory: MessageFactory,
    sp_signing: SigningEngine,
    sp_sessions: List[LogoutRequest],
) -> LogoutService:
    """
    LogoutService of the SP, trusting the IdP.

    The SOAP client is a MagicMock; tests wire its send() to a peer.
    """
    catalog = EntityCatalog()
    catalog.upsert(idp_record.entity_id, idp_record)
    return LogoutService(
        ids["sp"],
        ids["sp_slo"],
        catalog,
        factory,
        sp_signing,
        RelayStateCache(),
        sp_sessions.append,
        soap_client=MagicMock(),
    )


@pytest.fixture
def idp_service(
    ids: Dict[str, str],
    sp_record: EntityRecord,
    factory: MessageFactory,
    idp_signing: SigningEngine,
    idp_sessions: List[LogoutRequest],
) -> LogoutService:
    """LogoutService of the IdP, trusting the SP, with a separate SOAP endpoint."""
    catalog = EntityCatalog()
    catalog.upsert(sp_record.entity_id, sp_record)
    return LogoutService(
        ids["idp"],
        ids["idp_slo"],
        catalog,
        factory,
        idp_signing,
        RelayStateCache(),
        idp_sessions.append,
        soap_logout_url=ids["idp_soap"],
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers.

    Args:
        config: Pytest configuration object.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests that exercise several components together",
    )
