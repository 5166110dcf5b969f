"""Construction and (de)serialization of SAML logout messages.

MessageFactory builds LogoutRequest and LogoutResponse objects, converts
them to and from XML, and wraps them in SOAP 1.1 envelopes for the SOAP
binding.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Union

from lxml import etree

from ..models.protocol import (
    SAML_NS,
    SAMLP_NS,
    SOAP_ENV_NS,
    LogoutRequest,
    LogoutResponse,
    ProtocolMessage,
    Status,
    create_status,
)
from ..utils.encoding import format_instant, parse_instant
from ..utils.exceptions import IllegalArgumentError, TypeMismatchError
from .engine import XMLSecurityEngine

logger = logging.getLogger(__name__)

PROTOCOL_NSMAP = {"samlp": SAMLP_NS, "saml": SAML_NS}


def _samlp(name: str) -> str:
    return f"{{{SAMLP_NS}}}{name}"


def _saml(name: str) -> str:
    return f"{{{SAML_NS}}}{name}"


def _soap(name: str) -> str:
    return f"{{{SOAP_ENV_NS}}}{name}"


def generate_message_id() -> str:
    """Generate a unique message ID.

    IDs are xs:ID values and must not start with a digit, so the UUID is
    prefixed with an underscore.

    Example:
        >>> message_id = generate_message_id()
        >>> message_id.startswith("_")
        True
    """
    return f"_{uuid.uuid4()}"


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def message_to_element(message: ProtocolMessage) -> etree._Element:
    """Build the lxml element for a protocol message.

    Child order follows the SAML schema: Issuer first, then the
    type-specific content. A signature, when added, goes directly after
    Issuer.
    """
    attributes = {
        "ID": message.id,
        "Version": message.version,
        "IssueInstant": format_instant(message.issue_instant),
    }
    if message.destination:
        attributes["Destination"] = message.destination

    if isinstance(message, LogoutRequest):
        if message.reason:
            attributes["Reason"] = message.reason
        if message.not_on_or_after is not None:
            attributes["NotOnOrAfter"] = format_instant(message.not_on_or_after)
        root = etree.Element(_samlp("LogoutRequest"), nsmap=PROTOCOL_NSMAP, **attributes)
        etree.SubElement(root, _saml("Issuer")).text = message.issuer

        name_id = etree.SubElement(root, _saml("NameID"))
        if message.name_id_format:
            name_id.set("Format", message.name_id_format)
        name_id.text = message.name_id

        for session_index in message.session_indexes:
            etree.SubElement(root, _samlp("SessionIndex")).text = session_index
        return root

    if message.in_response_to:
        attributes["InResponseTo"] = message.in_response_to
    root = etree.Element(_samlp("LogoutResponse"), nsmap=PROTOCOL_NSMAP, **attributes)
    etree.SubElement(root, _saml("Issuer")).text = message.issuer

    status = etree.SubElement(root, _samlp("Status"))
    etree.SubElement(status, _samlp("StatusCode"), Value=message.status.code)
    if message.status.message:
        etree.SubElement(status, _samlp("StatusMessage")).text = message.status.message
    return root


def _text(element: Optional[etree._Element]) -> Optional[str]:
    if element is None or element.text is None:
        return None
    return element.text.strip()


def _parse_optional_instant(value: Optional[str]) -> Optional[datetime]:
    if _is_blank(value):
        return None
    try:
        return parse_instant(value)
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}")
        return None


def _parse_header(root: etree._Element) -> dict:
    # A missing or unparseable IssueInstant is left as None for the
    # timestamp check to reject
    issue_instant = _parse_optional_instant(root.get("IssueInstant"))
    return {
        "id": root.get("ID") or "",
        "issuer": _text(root.find(_saml("Issuer"))) or "",
        "issue_instant": issue_instant,
        "version": root.get("Version") or "",
        "destination": root.get("Destination"),
    }


def element_to_logout_request(root: etree._Element) -> LogoutRequest:
    """Convert a samlp:LogoutRequest element into a LogoutRequest.

    Raises:
        TypeMismatchError: If the element is not a LogoutRequest
    """
    if root.tag != _samlp("LogoutRequest"):
        raise TypeMismatchError(f"Expected LogoutRequest but found {root.tag}")

    header = _parse_header(root)
    name_id = root.find(_saml("NameID"))
    raw_not_on_or_after = root.get("NotOnOrAfter")
    return LogoutRequest(
        name_id=_text(name_id) or "",
        name_id_format=name_id.get("Format") if name_id is not None else None,
        session_indexes=[
            _text(element) or "" for element in root.findall(_samlp("SessionIndex"))
        ],
        reason=root.get("Reason"),
        not_on_or_after=_parse_optional_instant(raw_not_on_or_after),
        **header,
    )


def element_to_logout_response(root: etree._Element) -> LogoutResponse:
    """Convert a samlp:LogoutResponse element into a LogoutResponse.

    Raises:
        TypeMismatchError: If the element is not a LogoutResponse
    """
    if root.tag != _samlp("LogoutResponse"):
        raise TypeMismatchError(f"Expected LogoutResponse but found {root.tag}")

    header = _parse_header(root)
    status_code = root.find(f"{_samlp('Status')}/{_samlp('StatusCode')}")
    status_message = root.find(f"{_samlp('Status')}/{_samlp('StatusMessage')}")
    return LogoutResponse(
        status=Status(
            code=status_code.get("Value", "") if status_code is not None else "",
            message=_text(status_message),
        ),
        in_response_to=root.get("InResponseTo"),
        **header,
    )


class MessageFactory:
    """Build, parse and envelope SAML logout messages.

    Attributes:
        engine: XML security engine used for parsing untrusted input
        clock: Callable returning the current UTC time

    Example:
        >>> factory = MessageFactory(initialize_engine())
        >>> request = factory.build_logout_request("alice", "https://sp.example.com")
        >>> xml = factory.to_xml(request)
        >>> factory.extract_logout_request(xml).name_id
        'alice'
    """

    def __init__(
        self,
        engine: XMLSecurityEngine,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.engine = engine
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def build_logout_request(
        self,
        name_id: str,
        issuer: str,
        id: Optional[str] = None,
        session_indexes: Optional[Sequence[str]] = None,
        destination: Optional[str] = None,
        name_id_format: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> LogoutRequest:
        """Build a LogoutRequest.

        Args:
            name_id: NameID of the principal to log out
            issuer: Issuer entity identifier
            id: Message ID; a random ID is generated when omitted
            session_indexes: SessionIndex values
            destination: Destination URL
            name_id_format: NameID Format URI
            reason: Reason URI

        Raises:
            IllegalArgumentError: If name_id, issuer or an explicit id is blank
        """
        if _is_blank(name_id):
            raise IllegalArgumentError("name_id must not be blank")
        if _is_blank(issuer):
            raise IllegalArgumentError("issuer must not be blank")
        if id is not None and _is_blank(id):
            raise IllegalArgumentError("id must not be blank when supplied")

        request = LogoutRequest(
            id=id if id is not None else generate_message_id(),
            issuer=issuer,
            issue_instant=self.clock(),
            name_id=name_id,
            session_indexes=list(session_indexes or []),
            destination=destination,
            name_id_format=name_id_format,
            reason=reason,
        )
        logger.debug(f"Built LogoutRequest {request.id} from {issuer}")
        return request

    def build_logout_response(
        self,
        issuer: str,
        status_code: Union[str, Status],
        in_response_to: Optional[str] = None,
        id: Optional[str] = None,
        destination: Optional[str] = None,
        status_message: Optional[str] = None,
    ) -> LogoutResponse:
        """Build a LogoutResponse.

        Args:
            issuer: Issuer entity identifier
            status_code: Status code URI (see StatusCode) or a Status
            in_response_to: ID of the request being answered
            id: Message ID; a random ID is generated when omitted
            destination: Destination URL
            status_message: Optional StatusMessage text

        Raises:
            IllegalArgumentError: If issuer, status_code or an explicit id is blank
        """
        if _is_blank(issuer):
            raise IllegalArgumentError("issuer must not be blank")
        if isinstance(status_code, Status):
            status = status_code
        else:
            if _is_blank(status_code):
                raise IllegalArgumentError("status_code must not be blank")
            status = create_status(status_code, status_message)
        if _is_blank(status.code):
            raise IllegalArgumentError("status_code must not be blank")
        if id is not None and _is_blank(id):
            raise IllegalArgumentError("id must not be blank when supplied")

        response = LogoutResponse(
            id=id if id is not None else generate_message_id(),
            issuer=issuer,
            issue_instant=self.clock(),
            status=status,
            in_response_to=in_response_to,
            destination=destination,
        )
        logger.debug(
            f"Built LogoutResponse {response.id} from {issuer} "
            f"(status={status.code}, in_response_to={in_response_to})"
        )
        return response

    def to_element(self, message: ProtocolMessage) -> etree._Element:
        return message_to_element(message)

    def to_xml(self, message: ProtocolMessage) -> str:
        """Serialize an unsigned protocol message."""
        return etree.tostring(message_to_element(message), encoding="unicode")

    def parse(self, xml: Union[str, bytes]) -> etree._Element:
        """Parse XML with the hardened parser.

        Raises:
            etree.XMLSyntaxError: If the document is not well-formed
            ValueError: If the document is empty or declares a DOCTYPE
        """
        return self.engine.parse(xml)

    def extract_logout_request(self, xml: Union[str, bytes]) -> LogoutRequest:
        """Parse raw XML into a LogoutRequest.

        Raises:
            TypeMismatchError: If the root element is not a LogoutRequest
            etree.XMLSyntaxError: If the document is not well-formed
        """
        return element_to_logout_request(self.parse(xml))

    def extract_logout_response(self, xml: Union[str, bytes]) -> LogoutResponse:
        """Parse raw XML into a LogoutResponse.

        Raises:
            TypeMismatchError: If the root element is not a LogoutResponse
            etree.XMLSyntaxError: If the document is not well-formed
        """
        return element_to_logout_response(self.parse(xml))

    def extract_message(self, root: etree._Element) -> ProtocolMessage:
        """Convert a parsed element into whichever logout message it is.

        Raises:
            TypeMismatchError: If the element is neither logout message type
        """
        if root.tag == _samlp("LogoutRequest"):
            return element_to_logout_request(root)
        if root.tag == _samlp("LogoutResponse"):
            return element_to_logout_response(root)
        raise TypeMismatchError(f"Expected a logout message but found {root.tag}")

    def wrap_in_soap_envelope(self, message: Union[ProtocolMessage, str, etree._Element]) -> str:
        """Wrap a message in a SOAP 1.1 envelope.

        Accepts a protocol message, an element, or already-serialized
        (typically signed) XML. Serialized XML is parsed and re-attached
        without re-serializing its content, so signatures stay valid.
        """
        if isinstance(message, (LogoutRequest, LogoutResponse)):
            element = message_to_element(message)
        elif isinstance(message, str):
            element = self.parse(message)
        else:
            element = message

        envelope = etree.Element(_soap("Envelope"), nsmap={"soap": SOAP_ENV_NS})
        etree.SubElement(envelope, _soap("Header"))
        body = etree.SubElement(envelope, _soap("Body"))
        body.append(element)
        return etree.tostring(envelope, encoding="unicode")

    def unwrap_soap_body(self, envelope: Union[str, bytes]) -> str:
        """Return the first element inside a SOAP envelope's Body as XML.

        Raises:
            TypeMismatchError: If the document is not a SOAP envelope or the
                body is empty
            etree.XMLSyntaxError: If the document is not well-formed
        """
        root = self.parse(envelope)
        if root.tag != _soap("Envelope"):
            raise TypeMismatchError(f"Expected SOAP Envelope but found {root.tag}")

        body = root.find(_soap("Body"))
        children: List[etree._Element] = (
            [child for child in body if isinstance(child.tag, str)] if body is not None else []
        )
        if not children:
            raise TypeMismatchError("SOAP Body contains no message")
        return etree.tostring(children[0], encoding="unicode")
