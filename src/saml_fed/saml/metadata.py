"""SAML 2.0 metadata parsing and generation.

MetadataParser turns an EntityDescriptor or EntitiesDescriptor document into
EntityRecord objects. The create_*_metadata functions emit this entity's
own EntityDescriptor for publication to peers.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from lxml import etree
from pydantic import TypeAdapter, ValidationError

from ..models.entity import (
    DEFAULT_CACHE_DURATION,
    SUPPORTED_BINDINGS,
    Binding,
    Endpoint,
    EntityRecord,
    KeyDescriptor,
    KeyDescriptorUse,
)
from ..models.protocol import DS_NS, MD_NS, SAMLP_NS
from ..utils.encoding import parse_instant, strip_pem
from .engine import XMLSecurityEngine

logger = logging.getLogger("saml_fed.metadata")

NAMEID_FORMAT_PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
NAMEID_FORMAT_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
NAMEID_FORMAT_X509_SUBJECT = "urn:oasis:names:tc:SAML:1.1:nameid-format:X509SubjectName"

DEFAULT_NAMEID_FORMATS = (
    NAMEID_FORMAT_PERSISTENT,
    NAMEID_FORMAT_UNSPECIFIED,
    NAMEID_FORMAT_X509_SUBJECT,
)

# Certificate priority per purpose; earlier uses win
SIGNING_CERT_PRIORITY = (KeyDescriptorUse.SIGNING, KeyDescriptorUse.UNSPECIFIED)
ENCRYPTION_CERT_PRIORITY = (KeyDescriptorUse.ENCRYPTION, KeyDescriptorUse.UNSPECIFIED)

_duration_adapter = TypeAdapter(timedelta)


def _md(name: str) -> str:
    return f"{{{MD_NS}}}{name}"


def _ds(name: str) -> str:
    return f"{{{DS_NS}}}{name}"


def parse_duration(value: str) -> timedelta:
    """Parse an xs:duration value such as P7D or PT1H.

    Raises:
        ValueError: If the value is not an ISO 8601 duration
    """
    try:
        return _duration_adapter.validate_python(value.strip())
    except ValidationError as e:
        raise ValueError(f"Invalid duration: {value!r}") from e


def format_duration(duration: timedelta) -> str:
    """Format a timedelta as an xs:duration.

    Example:
        >>> format_duration(timedelta(days=7))
        'P7D'
    """
    days = duration.days
    seconds = duration.seconds
    if seconds == 0:
        return f"P{days}D"
    return f"P{days}DT{seconds}S"


def select_certificate(
    key_descriptors: Sequence[KeyDescriptor],
    priority: Sequence[KeyDescriptorUse],
) -> Optional[str]:
    """Select a certificate by scanning key uses in priority order.

    For each use in priority order, the first key descriptor of that use
    with a non-blank certificate wins.

    Args:
        key_descriptors: Key descriptors in document order
        priority: Key uses from most to least preferred

    Returns:
        base64 certificate body, or None if no descriptor is usable

    Example:
        >>> select_certificate(descriptors, SIGNING_CERT_PRIORITY)
    """
    for use in priority:
        for descriptor in key_descriptors:
            if descriptor.use is use and descriptor.certificate:
                return descriptor.certificate
    return None


def select_endpoint(
    endpoints: Sequence[Endpoint],
    supported_bindings: Iterable[Binding] = SUPPORTED_BINDINGS,
) -> Optional[Endpoint]:
    """Select the endpoint to use from a declared list.

    An endpoint flagged isDefault with a supported binding wins; otherwise
    the first endpoint with a supported binding in document order. Returns
    None when no endpoint is supported, which is not an error.
    """
    supported = {binding.value for binding in supported_bindings}
    candidates = [endpoint for endpoint in endpoints if endpoint.binding in supported]
    for endpoint in candidates:
        if endpoint.is_default:
            return endpoint
    return candidates[0] if candidates else None


class MetadataParser:
    """Parse SAML metadata documents into EntityRecords.

    Attributes:
        engine: XML security engine providing the hardened parser
        supported_bindings: Bindings accepted for browser-facing endpoints

    Example:
        >>> parser = MetadataParser(initialize_engine())
        >>> records = parser.parse(xml_text, source="file:/etc/saml/idp.xml")
    """

    def __init__(
        self,
        engine: XMLSecurityEngine,
        supported_bindings: Sequence[Binding] = SUPPORTED_BINDINGS,
    ) -> None:
        self.engine = engine
        self.supported_bindings = tuple(supported_bindings)

    def parse(
        self,
        xml: str,
        source: str = "",
        now: Optional[datetime] = None,
    ) -> List[EntityRecord]:
        """Parse a metadata document.

        Args:
            xml: EntityDescriptor or EntitiesDescriptor document
            source: Description of where the document came from
            now: Ingestion time (defaults to the current time)

        Returns:
            One record per entity descriptor

        Raises:
            ValueError: If the document is malformed or its root element is
                not a metadata descriptor
        """
        try:
            root = self.engine.parse(xml)
        except etree.XMLSyntaxError as e:
            raise ValueError(f"Malformed metadata from {source or 'inline source'}: {e}") from e

        ingested_at = now or datetime.now(timezone.utc)
        if root.tag == _md("EntityDescriptor"):
            records = [self._parse_entity(root, source, ingested_at, None, None)]
        elif root.tag == _md("EntitiesDescriptor"):
            records = self._parse_entities(root, source, ingested_at, None, None)
        else:
            raise ValueError(
                f"Unsupported metadata root element {root.tag} from {source or 'inline source'}. "
                f"Expected EntityDescriptor or EntitiesDescriptor."
            )

        logger.info(f"Parsed {len(records)} entities from {source or 'inline source'}")
        return records

    def _parse_entities(
        self,
        container: etree._Element,
        source: str,
        ingested_at: datetime,
        inherited_valid_until: Optional[datetime],
        inherited_cache_duration: Optional[timedelta],
    ) -> List[EntityRecord]:
        valid_until, cache_duration = self._read_validity(container, source)
        valid_until = _earliest(valid_until, inherited_valid_until)
        cache_duration = cache_duration or inherited_cache_duration

        records: List[EntityRecord] = []
        for child in container:
            if child.tag == _md("EntityDescriptor"):
                try:
                    record = self._parse_entity(
                        child, source, ingested_at, valid_until, cache_duration
                    )
                except ValueError as e:
                    logger.warning(f"Skipping entity in {source or 'inline source'}: {e}")
                    continue
                records.append(record)
            elif child.tag == _md("EntitiesDescriptor"):
                records.extend(
                    self._parse_entities(child, source, ingested_at, valid_until, cache_duration)
                )
        return records

    def _parse_entity(
        self,
        descriptor: etree._Element,
        source: str,
        ingested_at: datetime,
        inherited_valid_until: Optional[datetime],
        inherited_cache_duration: Optional[timedelta],
    ) -> EntityRecord:
        entity_id = (descriptor.get("entityID") or "").strip()
        if not entity_id:
            raise ValueError(f"EntityDescriptor without entityID in {source or 'inline source'}")

        valid_until, cache_duration = self._read_validity(descriptor, source)
        valid_until = _earliest(valid_until, inherited_valid_until)
        cache_duration = cache_duration or inherited_cache_duration
        if cache_duration is None:
            cache_duration = DEFAULT_CACHE_DURATION
            logger.info(
                f"No cacheDuration for {entity_id} from {source or 'inline source'}; "
                f"assuming {format_duration(DEFAULT_CACHE_DURATION)}"
            )
        valid_until = _earliest(valid_until, ingested_at + cache_duration)

        idp_descriptors = descriptor.findall(_md("IDPSSODescriptor"))
        sp_descriptors = descriptor.findall(_md("SPSSODescriptor"))
        roles = idp_descriptors + sp_descriptors

        key_descriptors = tuple(
            key_descriptor
            for role in roles
            for key_descriptor in self._read_key_descriptors(role)
        )

        single_logout = self._read_endpoints(roles, "SingleLogoutService")
        soap_logout = select_endpoint(single_logout, (Binding.SOAP,))
        logout_endpoint = select_endpoint(single_logout, self.supported_bindings)
        consumer_endpoint = select_endpoint(
            self._read_endpoints(sp_descriptors, "AssertionConsumerService"),
            self.supported_bindings,
        )
        sso_endpoint = select_endpoint(
            self._read_endpoints(idp_descriptors, "SingleSignOnService"),
            self.supported_bindings,
        )

        want_signed = any(
            (role.get("WantAuthnRequestsSigned") or "").strip().lower() in ("true", "1")
            for role in idp_descriptors
        )

        record = EntityRecord(
            entity_id=entity_id,
            signing_certificate=select_certificate(key_descriptors, SIGNING_CERT_PRIORITY),
            encryption_certificate=select_certificate(key_descriptors, ENCRYPTION_CERT_PRIORITY),
            assertion_consumer_url=consumer_endpoint.location if consumer_endpoint else None,
            assertion_consumer_binding=_binding_of(consumer_endpoint),
            single_logout_url=logout_endpoint.location if logout_endpoint else None,
            single_logout_binding=_binding_of(logout_endpoint),
            single_sign_on_url=sso_endpoint.location if sso_endpoint else None,
            single_sign_on_binding=_binding_of(sso_endpoint),
            want_authn_requests_signed=want_signed,
            valid_until=valid_until,
            cache_duration=cache_duration,
            source=source,
            ingested_at=ingested_at,
            soap_logout_url=soap_logout.location if soap_logout else None,
            key_descriptors=key_descriptors,
        )

        if record.signing_certificate is None:
            logger.warning(f"No usable signing certificate in metadata for {entity_id}")
        if logout_endpoint is None and soap_logout is None:
            logger.debug(f"No supported SingleLogoutService for {entity_id}")
        return record

    def _read_validity(
        self, element: etree._Element, source: str
    ) -> Tuple[Optional[datetime], Optional[timedelta]]:
        valid_until: Optional[datetime] = None
        cache_duration: Optional[timedelta] = None

        raw_valid_until = element.get("validUntil")
        if raw_valid_until:
            try:
                valid_until = parse_instant(raw_valid_until)
            except ValueError:
                logger.warning(f"Ignoring invalid validUntil {raw_valid_until!r} in {source}")

        raw_duration = element.get("cacheDuration")
        if raw_duration:
            try:
                cache_duration = parse_duration(raw_duration)
            except ValueError:
                logger.warning(f"Ignoring invalid cacheDuration {raw_duration!r} in {source}")

        return valid_until, cache_duration

    def _read_key_descriptors(self, role: etree._Element) -> List[KeyDescriptor]:
        descriptors = []
        for key_descriptor in role.findall(_md("KeyDescriptor")):
            use = KeyDescriptorUse.from_attribute(key_descriptor.get("use"))
            certificate_elem = key_descriptor.find(
                f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}"
            )
            text = certificate_elem.text if certificate_elem is not None else None
            descriptors.append(KeyDescriptor(use=use, certificate=strip_pem(text or "")))
        return descriptors

    def _read_endpoints(self, roles: Sequence[etree._Element], name: str) -> List[Endpoint]:
        endpoints = []
        for role in roles:
            for element in role.findall(_md(name)):
                location = (element.get("Location") or "").strip()
                if not location:
                    continue
                index = element.get("index")
                endpoints.append(
                    Endpoint(
                        binding=(element.get("Binding") or "").strip(),
                        location=location,
                        response_location=element.get("ResponseLocation"),
                        is_default=(element.get("isDefault") or "").strip().lower() in ("true", "1"),
                        index=int(index) if index and index.strip().isdigit() else None,
                    )
                )
        return endpoints


def _binding_of(endpoint: Optional[Endpoint]) -> Optional[Binding]:
    return Binding.from_uri(endpoint.binding) if endpoint else None


def _earliest(first: Optional[datetime], second: Optional[datetime]) -> Optional[datetime]:
    if first is None:
        return second
    if second is None:
        return first
    return min(first, second)


def _add_key_descriptor(role: etree._Element, use: KeyDescriptorUse, certificate: str) -> None:
    key_descriptor = etree.SubElement(role, _md("KeyDescriptor"), use=use.value)
    key_info = etree.SubElement(key_descriptor, _ds("KeyInfo"))
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    x509_certificate = etree.SubElement(x509_data, _ds("X509Certificate"))
    x509_certificate.text = strip_pem(certificate)


def _add_single_logout_services(role: etree._Element, location: Optional[str]) -> None:
    if not location or not location.strip():
        return
    for binding in (Binding.HTTP_REDIRECT, Binding.HTTP_POST, Binding.SOAP):
        etree.SubElement(
            role, _md("SingleLogoutService"), Binding=binding.value, Location=location
        )


def _new_entity_descriptor(entity_id: str, cache_duration: timedelta) -> etree._Element:
    if not entity_id or not entity_id.strip():
        raise ValueError("entity_id must not be blank")
    return etree.Element(
        _md("EntityDescriptor"),
        nsmap={"md": MD_NS, "ds": DS_NS},
        entityID=entity_id,
        cacheDuration=format_duration(cache_duration),
    )


def create_idp_metadata(
    entity_id: str,
    signing_certificate: str,
    encryption_certificate: str,
    name_id_formats: Sequence[str] = DEFAULT_NAMEID_FORMATS,
    sso_redirect_location: Optional[str] = None,
    sso_post_location: Optional[str] = None,
    sso_soap_location: Optional[str] = None,
    single_logout_location: Optional[str] = None,
    cache_duration: timedelta = DEFAULT_CACHE_DURATION,
) -> str:
    """Generate IdP metadata for this entity.

    Args:
        entity_id: Entity identifier URI
        signing_certificate: base64 DER (or PEM) signing certificate
        encryption_certificate: base64 DER (or PEM) encryption certificate
        name_id_formats: Supported NameID formats
        sso_redirect_location: SingleSignOnService URL for HTTP-Redirect
        sso_post_location: SingleSignOnService URL for HTTP-POST
        sso_soap_location: SingleSignOnService URL for SOAP
        single_logout_location: SingleLogoutService URL, published for the
            Redirect, POST and SOAP bindings
        cache_duration: cacheDuration attribute (default P7D)

    Returns:
        Serialized md:EntityDescriptor

    Raises:
        ValueError: If entity_id is blank
    """
    root = _new_entity_descriptor(entity_id, cache_duration)
    role = etree.SubElement(
        root,
        _md("IDPSSODescriptor"),
        WantAuthnRequestsSigned="true",
        protocolSupportEnumeration=SAMLP_NS,
    )
    _add_key_descriptor(role, KeyDescriptorUse.SIGNING, signing_certificate)
    _add_key_descriptor(role, KeyDescriptorUse.ENCRYPTION, encryption_certificate)
    _add_single_logout_services(role, single_logout_location)

    for name_id_format in name_id_formats:
        etree.SubElement(role, _md("NameIDFormat")).text = name_id_format

    for binding, location in (
        (Binding.HTTP_REDIRECT, sso_redirect_location),
        (Binding.HTTP_POST, sso_post_location),
        (Binding.SOAP, sso_soap_location),
    ):
        if location and location.strip():
            etree.SubElement(
                role, _md("SingleSignOnService"), Binding=binding.value, Location=location
            )

    logger.debug(f"Generated IdP metadata for {entity_id}")
    return etree.tostring(root, encoding="unicode")


def create_sp_metadata(
    entity_id: str,
    signing_certificate: str,
    encryption_certificate: str,
    name_id_formats: Sequence[str] = DEFAULT_NAMEID_FORMATS,
    single_logout_location: Optional[str] = None,
    acs_redirect_location: Optional[str] = None,
    acs_post_location: Optional[str] = None,
    acs_paos_location: Optional[str] = None,
    cache_duration: timedelta = DEFAULT_CACHE_DURATION,
) -> str:
    """Generate SP metadata for this entity.

    AssertionConsumerService endpoints are indexed from 0 in the order
    Redirect, POST, PAOS, skipping blank locations.

    Returns:
        Serialized md:EntityDescriptor

    Raises:
        ValueError: If entity_id is blank
    """
    root = _new_entity_descriptor(entity_id, cache_duration)
    role = etree.SubElement(
        root,
        _md("SPSSODescriptor"),
        AuthnRequestsSigned="true",
        protocolSupportEnumeration=SAMLP_NS,
    )
    _add_key_descriptor(role, KeyDescriptorUse.SIGNING, signing_certificate)
    _add_key_descriptor(role, KeyDescriptorUse.ENCRYPTION, encryption_certificate)
    _add_single_logout_services(role, single_logout_location)

    for name_id_format in name_id_formats:
        etree.SubElement(role, _md("NameIDFormat")).text = name_id_format

    index = 0
    for binding, location in (
        (Binding.HTTP_REDIRECT, acs_redirect_location),
        (Binding.HTTP_POST, acs_post_location),
        (Binding.PAOS, acs_paos_location),
    ):
        if location and location.strip():
            etree.SubElement(
                role,
                _md("AssertionConsumerService"),
                Binding=binding.value,
                Location=location,
                index=str(index),
            )
            index += 1

    logger.debug(f"Generated SP metadata for {entity_id}")
    return etree.tostring(root, encoding="unicode")
