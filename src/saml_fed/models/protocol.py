"""Data models for SAML 2.0 logout protocol messages.

ProtocolMessage is the union of LogoutRequest and LogoutResponse. Both carry
the common header fields (ID, Issuer, IssueInstant, Version, Destination).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

SAML_VERSION = "2.0"

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

NSMAP = {
    "samlp": SAMLP_NS,
    "saml": SAML_NS,
    "md": MD_NS,
    "ds": DS_NS,
    "soap": SOAP_ENV_NS,
}


class MessageType(str, Enum):
    """Query/form parameter name carrying a SAML message."""

    SAML_REQUEST = "SAMLRequest"
    SAML_RESPONSE = "SAMLResponse"


class Direction(str, Enum):
    """Whether a message is a request or a response."""

    REQUEST = "request"
    RESPONSE = "response"


class StatusCode:
    """Top-level and second-level SAML status code URIs."""

    SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
    REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
    RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"
    VERSION_MISMATCH = "urn:oasis:names:tc:SAML:2.0:status:VersionMismatch"
    AUTHN_FAILED = "urn:oasis:names:tc:SAML:2.0:status:AuthnFailed"
    PARTIAL_LOGOUT = "urn:oasis:names:tc:SAML:2.0:status:PartialLogout"
    REQUEST_DENIED = "urn:oasis:names:tc:SAML:2.0:status:RequestDenied"


@dataclass(frozen=True)
class Status:
    """A samlp:Status value.

    Attributes:
        code: Status code URI
        message: Optional StatusMessage text
    """

    code: str
    message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.code == StatusCode.SUCCESS


def create_status(code: str, message: Optional[str] = None) -> Status:
    """Create a Status from a status code URI and optional message."""
    return Status(code=code, message=message)


@dataclass
class LogoutRequest:
    """A samlp:LogoutRequest.

    Attributes:
        id: Message ID (non-blank)
        issuer: Issuer entity identifier
        issue_instant: Time the message was issued (None if absent on input)
        name_id: NameID value of the principal being logged out
        session_indexes: Zero or more SessionIndex values
        version: SAML version, must be "2.0"
        destination: Optional Destination URL
        name_id_format: Optional NameID Format URI
        reason: Optional logout Reason URI
        not_on_or_after: Optional NotOnOrAfter time
    """

    id: str
    issuer: str
    issue_instant: Optional[datetime]
    name_id: str
    session_indexes: List[str] = field(default_factory=list)
    version: str = SAML_VERSION
    destination: Optional[str] = None
    name_id_format: Optional[str] = None
    reason: Optional[str] = None
    not_on_or_after: Optional[datetime] = None

    message_type = MessageType.SAML_REQUEST
    direction = Direction.REQUEST
    element_name = "LogoutRequest"


@dataclass
class LogoutResponse:
    """A samlp:LogoutResponse.

    Attributes:
        id: Message ID (non-blank)
        issuer: Issuer entity identifier
        issue_instant: Time the message was issued (None if absent on input)
        status: Status code and optional message
        in_response_to: ID of the request being answered
        version: SAML version, must be "2.0"
        destination: Optional Destination URL
    """

    id: str
    issuer: str
    issue_instant: Optional[datetime]
    status: Status
    in_response_to: Optional[str] = None
    version: str = SAML_VERSION
    destination: Optional[str] = None

    message_type = MessageType.SAML_RESPONSE
    direction = Direction.RESPONSE
    element_name = "LogoutResponse"


ProtocolMessage = Union[LogoutRequest, LogoutResponse]


@dataclass
class SignedMessage:
    """A protocol message with its serialized, signed XML.

    Attributes:
        message: The protocol message that was signed
        xml_content: Serialized XML including the enveloped ds:Signature
        signature_value: base64 SignatureValue text
        signature_algorithm: Signature algorithm URI used
        certificate_subject: Subject DN of the signing certificate
    """

    message: ProtocolMessage
    xml_content: str
    signature_value: str
    signature_algorithm: str
    certificate_subject: str
