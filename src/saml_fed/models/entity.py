"""Data models for federation entities resolved from metadata.

An EntityRecord is immutable: re-ingesting an entity produces a new record
that replaces the old one wholesale in the EntityCatalog.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

# Applied when metadata carries neither cacheDuration nor validUntil
DEFAULT_CACHE_DURATION = timedelta(days=7)


class Binding(str, Enum):
    """SAML 2.0 protocol bindings and their canonical URIs.

    The value is used both to match endpoints declared in metadata and to
    populate the Binding attribute of generated endpoints.
    """

    HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
    HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
    SOAP = "urn:oasis:names:tc:SAML:2.0:bindings:SOAP"
    PAOS = "urn:oasis:names:tc:SAML:2.0:bindings:PAOS"

    @property
    def uri(self) -> str:
        return self.value

    @classmethod
    def from_uri(cls, uri: Optional[str]) -> Optional["Binding"]:
        """Return the binding for a URI, or None if the URI is unknown."""
        if not uri:
            return None
        for binding in cls:
            if binding.value == uri.strip():
                return binding
        return None


# Bindings accepted for browser-facing endpoints during metadata parsing
SUPPORTED_BINDINGS = (Binding.HTTP_POST, Binding.HTTP_REDIRECT)


class KeyDescriptorUse(str, Enum):
    """The use attribute of a metadata KeyDescriptor.

    Attributes:
        SIGNING: use="signing"
        ENCRYPTION: use="encryption"
        UNSPECIFIED: use attribute absent, key usable for both
    """

    SIGNING = "signing"
    ENCRYPTION = "encryption"
    UNSPECIFIED = "unspecified"

    @classmethod
    def from_attribute(cls, value: Optional[str]) -> "KeyDescriptorUse":
        if value is None or not value.strip():
            return cls.UNSPECIFIED
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNSPECIFIED


@dataclass(frozen=True)
class KeyDescriptor:
    """A certificate declared in metadata with its intended use.

    Attributes:
        use: Declared key use
        certificate: base64 DER body of the X.509 certificate (may be blank)
    """

    use: KeyDescriptorUse
    certificate: str


@dataclass(frozen=True)
class Endpoint:
    """A service endpoint declared in metadata.

    Attributes:
        binding: Binding URI as declared (may be unsupported)
        location: Endpoint URL
        response_location: Optional ResponseLocation URL
        is_default: True if declared isDefault="true"
        index: Optional index attribute for indexed endpoints
    """

    binding: str
    location: str
    response_location: Optional[str] = None
    is_default: bool = False
    index: Optional[int] = None


@dataclass(frozen=True)
class EntityRecord:
    """Resolved view of one IdP or SP.

    Certificates are base64 DER bodies without PEM armour. URL and binding
    fields are None when the entity declares no endpoint with a supported
    binding.

    Attributes:
        entity_id: Entity identifier URI
        signing_certificate: Certificate used to verify the entity's signatures
        encryption_certificate: Certificate used to encrypt to the entity
        assertion_consumer_url: SP AssertionConsumerService location
        assertion_consumer_binding: SP AssertionConsumerService binding
        single_logout_url: SingleLogoutService location
        single_logout_binding: SingleLogoutService binding
        single_sign_on_url: IdP SingleSignOnService location
        single_sign_on_binding: IdP SingleSignOnService binding
        want_authn_requests_signed: IdP WantAuthnRequestsSigned flag
        valid_until: Time after which the record must be refreshed
        cache_duration: Declared or assumed cache duration
        source: Metadata source the record was ingested from
        ingested_at: Time of ingestion
        soap_logout_url: SingleLogoutService location for the SOAP binding
        key_descriptors: All KeyDescriptors declared by the entity
    """

    entity_id: str
    signing_certificate: Optional[str] = None
    encryption_certificate: Optional[str] = None
    assertion_consumer_url: Optional[str] = None
    assertion_consumer_binding: Optional[Binding] = None
    single_logout_url: Optional[str] = None
    single_logout_binding: Optional[Binding] = None
    single_sign_on_url: Optional[str] = None
    single_sign_on_binding: Optional[Binding] = None
    want_authn_requests_signed: bool = False
    valid_until: Optional[datetime] = None
    cache_duration: timedelta = DEFAULT_CACHE_DURATION
    source: str = ""
    ingested_at: Optional[datetime] = None
    soap_logout_url: Optional[str] = None
    key_descriptors: Tuple[KeyDescriptor, ...] = field(default_factory=tuple)

    def is_expired(self, now: datetime) -> bool:
        """Return True once valid_until has passed."""
        return self.valid_until is not None and now >= self.valid_until
