"""Wire encodings used by the SAML bindings.

The HTTP-Redirect binding carries messages as raw DEFLATE + base64, the
HTTP-POST binding as plain base64. SAML timestamps are xs:dateTime values
in UTC.
"""

import base64
import binascii
import logging
import zlib
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

# Negative window bits select raw DEFLATE without zlib header (RFC 1951)
_RAW_DEFLATE_WBITS = -15

_datetime_adapter = TypeAdapter(datetime)


def deflate_and_base64_encode(value: str) -> str:
    """Encode a message for the HTTP-Redirect binding.

    Args:
        value: XML string to encode

    Returns:
        base64 text of the raw-DEFLATE compressed UTF-8 bytes
    """
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, _RAW_DEFLATE_WBITS)
    compressed = compressor.compress(value.encode("utf-8")) + compressor.flush()
    return base64.b64encode(compressed).decode("ascii")


def base64_decode_and_inflate(value: str) -> str:
    """Decode an HTTP-Redirect binding message.

    Args:
        value: base64 text of raw-DEFLATE data (already URL-decoded)

    Returns:
        The inflated XML string

    Raises:
        ValueError: If the value is not valid base64 or DEFLATE data
    """
    try:
        compressed = base64.b64decode(value, validate=False)
        return zlib.decompress(compressed, _RAW_DEFLATE_WBITS).decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeDecodeError) as e:
        raise ValueError(f"Unable to decode and inflate SAML message: {e}") from e


def base64_encode(value: str) -> str:
    """Encode a message for the HTTP-POST binding."""
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def base64_decode(value: str) -> str:
    """Decode an HTTP-POST binding message.

    Raises:
        ValueError: If the value is not valid base64 UTF-8 data
    """
    try:
        return base64.b64decode(value, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Unable to decode SAML message: {e}") from e


def format_instant(instant: datetime) -> str:
    """Format a timestamp as a SAML xs:dateTime in UTC with Z suffix.

    Fractional seconds are kept when present, at millisecond precision
    where that is exact, so a parsed instant serializes back unchanged.

    Example:
        >>> format_instant(datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        '2025-01-02T03:04:05Z'
        >>> format_instant(datetime(2025, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc))
        '2025-01-02T03:04:05.123Z'
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    utc = instant.astimezone(timezone.utc).replace(tzinfo=None)
    if utc.microsecond == 0:
        timespec = "seconds"
    elif utc.microsecond % 1000 == 0:
        timespec = "milliseconds"
    else:
        timespec = "microseconds"
    return utc.isoformat(timespec=timespec) + "Z"


def parse_instant(value: str) -> datetime:
    """Parse a SAML xs:dateTime value into an aware UTC datetime.

    Naive values are interpreted as UTC.

    Raises:
        ValueError: If the value is not an ISO 8601 timestamp
    """
    try:
        parsed = _datetime_adapter.validate_python(value.strip())
    except ValidationError as e:
        raise ValueError(f"Invalid SAML timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def strip_pem(value: str) -> str:
    """Return the base64 body of a PEM or bare base64 certificate string."""
    lines = [
        line.strip()
        for line in value.strip().splitlines()
        if line.strip() and not line.startswith("-----")
    ]
    return "".join(lines)
