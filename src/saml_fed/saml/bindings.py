"""HTTP-Redirect and HTTP-POST binding encoding.

Redirect query parameters are emitted in the order the detached signature
depends on: message parameter, RelayState, SigAlg, Signature. On the way in
the signed string is rebuilt from the raw, still URL-encoded query so it
matches the signer's bytes exactly.
"""

import html
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote_plus

from ..models.protocol import MessageType, ProtocolMessage
from ..utils.encoding import base64_decode_and_inflate, base64_encode, deflate_and_base64_encode
from ..utils.exceptions import ValidationFailure, ValidationRule
from .signer import SigningEngine

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
SUBMIT_FORM_TEMPLATE = "submit_form.html"
REDIRECT_PAGE_TEMPLATE = "redirect.html"

RELAY_STATE = "RelayState"
SIG_ALG = "SigAlg"
SIGNATURE = "Signature"


@lru_cache(maxsize=None)
def load_template(name: str) -> str:
    """Load one of the packaged HTML templates."""
    return (TEMPLATE_DIR / name).read_text(encoding="utf-8")


def _fill(value: Optional[str]) -> str:
    return "" if value is None else html.escape(value, quote=True)


def render_post_form(
    location: str,
    message_type: MessageType,
    message_xml: str,
    relay_state: Optional[str] = None,
) -> str:
    """Render the auto-submitting HTML form for the HTTP-POST binding.

    Args:
        location: Form action URL
        message_type: SAMLRequest or SAMLResponse
        message_xml: Signed message XML (base64-encoded here)
        relay_state: RelayState value, omitted as empty when None
    """
    return load_template(SUBMIT_FORM_TEMPLATE) % (
        _fill(location),
        _fill(message_type.value),
        _fill(base64_encode(message_xml)),
        _fill(relay_state),
    )


def render_redirect_page(url: Optional[str]) -> str:
    """Render the HTML page that forwards the browser to url."""
    filled = _fill(url)
    return load_template(REDIRECT_PAGE_TEMPLATE) % (filled, filled)


def build_redirect_url(
    location: str,
    message_xml: str,
    message_type: MessageType,
    relay_state: Optional[str] = None,
    signing: Optional[SigningEngine] = None,
) -> str:
    """Build an HTTP-Redirect binding URL.

    Args:
        location: Endpoint URL (may already carry a query string)
        message_xml: Unsigned message XML; redirect messages carry no
            enveloped signature
        message_type: SAMLRequest or SAMLResponse
        relay_state: Optional RelayState token
        signing: Signing engine; when given, SigAlg and Signature are appended

    Returns:
        ``location?SAMLRequest=...&RelayState=...&SigAlg=...&Signature=...``
    """
    params = f"{message_type.value}={quote(deflate_and_base64_encode(message_xml), safe='')}"
    if relay_state:
        params += f"&{RELAY_STATE}={quote(relay_state, safe='')}"

    if signing is not None:
        signature, sig_alg = signing.sign_query_string(params)
        params += f"&{SIG_ALG}={quote(sig_alg, safe='')}&{SIGNATURE}={quote(signature, safe='')}"

    separator = "&" if "?" in location else "?"
    return f"{location}{separator}{params}"


@dataclass(frozen=True)
class RedirectQuery:
    """Decoded HTTP-Redirect binding parameters.

    Attributes:
        message_type: Which message parameter was present
        encoded_message: URL-decoded base64 DEFLATE message value
        relay_state: RelayState, if present
        sig_alg: SigAlg URI, if present
        signature: base64 Signature, if present
        signed_string: Raw query portion covered by the signature
    """

    message_type: MessageType
    encoded_message: str
    relay_state: Optional[str] = None
    sig_alg: Optional[str] = None
    signature: Optional[str] = None
    signed_string: Optional[str] = None

    @property
    def is_signed(self) -> bool:
        return bool(
            self.signature and self.signature.strip() and self.sig_alg and self.sig_alg.strip()
        )

    def decode_message(self) -> str:
        """Inflate the message XML.

        Raises:
            ValidationFailure: With rule MALFORMED if the value cannot be decoded
        """
        try:
            return base64_decode_and_inflate(self.encoded_message)
        except ValueError as e:
            raise ValidationFailure(ValidationRule.MALFORMED, str(e)) from e


def _split_query(raw_query: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for part in raw_query.lstrip("?").split("&"):
        if not part:
            continue
        key, _, value = part.partition("=")
        if key in pairs:
            raise ValidationFailure(ValidationRule.MALFORMED, f"Duplicate query parameter {key}")
        pairs[key] = value
    return pairs


def parse_redirect_query(raw_query: str) -> RedirectQuery:
    """Parse a raw HTTP-Redirect query string.

    Args:
        raw_query: Query string exactly as received, still URL-encoded

    Raises:
        ValidationFailure: With rule MALFORMED if no single SAML message
            parameter is present or a parameter is repeated
    """
    raw = _split_query(raw_query)

    present = [message_type for message_type in MessageType if message_type.value in raw]
    if len(present) != 1:
        raise ValidationFailure(
            ValidationRule.MALFORMED,
            "Redirect query must carry exactly one of SAMLRequest or SAMLResponse",
        )
    message_type = present[0]

    signed_parts: List[Tuple[str, str]] = [(message_type.value, raw[message_type.value])]
    if RELAY_STATE in raw:
        signed_parts.append((RELAY_STATE, raw[RELAY_STATE]))

    signed_string = None
    if SIG_ALG in raw:
        signed_parts.append((SIG_ALG, raw[SIG_ALG]))
        signed_string = "&".join(f"{key}={value}" for key, value in signed_parts)

    def decoded(key: str) -> Optional[str]:
        return unquote_plus(raw[key]) if key in raw else None

    return RedirectQuery(
        message_type=message_type,
        encoded_message=unquote_plus(raw[message_type.value]),
        relay_state=decoded(RELAY_STATE),
        sig_alg=decoded(SIG_ALG),
        signature=decoded(SIGNATURE),
        signed_string=signed_string,
    )


def check_message_parameter(parameter: MessageType, message: ProtocolMessage) -> None:
    """Ensure a message arrived under the parameter its root element calls for.

    A LogoutRequest travels as SAMLRequest and a LogoutResponse as
    SAMLResponse, on both front-channel bindings.

    Raises:
        ValidationFailure: With rule MALFORMED on a mismatch
    """
    if message.message_type is not parameter:
        raise ValidationFailure(
            ValidationRule.MALFORMED,
            f"{parameter.value} parameter carries a {message.element_name}",
        )
