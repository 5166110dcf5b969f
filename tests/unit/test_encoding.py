"""Unit tests for binding wire encodings and timestamp handling."""

import base64
import zlib
from datetime import datetime, timedelta, timezone

import pytest

from saml_fed.utils.encoding import (
    base64_decode,
    base64_decode_and_inflate,
    base64_encode,
    deflate_and_base64_encode,
    format_instant,
    parse_instant,
    strip_pem,
)


class TestRedirectEncoding:
    """Test raw DEFLATE + base64 used by the HTTP-Redirect binding."""

    def test_deflate_produces_raw_deflate_without_zlib_header(self):
        """Encoded value inflates with wbits=-15 (no zlib header)."""
        encoded = deflate_and_base64_encode("<samlp:LogoutRequest/>")
        raw = base64.b64decode(encoded)
        assert zlib.decompress(raw, -15) == b"<samlp:LogoutRequest/>"

    def test_inflate_recovers_original(self):
        xml = '<samlp:LogoutRequest ID="_abc">ünïcode</samlp:LogoutRequest>'
        assert base64_decode_and_inflate(deflate_and_base64_encode(xml)) == xml

    def test_inflate_rejects_non_deflate_data(self):
        with pytest.raises(ValueError, match="Unable to decode and inflate"):
            base64_decode_and_inflate(base64.b64encode(b"not deflated").decode())

    def test_inflate_rejects_zlib_wrapped_data(self):
        """A zlib header is not accepted where raw DEFLATE is expected."""
        wrapped = base64.b64encode(zlib.compress(b"<x/>")).decode()
        with pytest.raises(ValueError):
            base64_decode_and_inflate(wrapped)


class TestPostEncoding:
    """Test plain base64 used by the HTTP-POST binding."""

    def test_encode_decode(self):
        assert base64_decode(base64_encode("<x/>")) == "<x/>"

    def test_decode_rejects_invalid_utf8(self):
        with pytest.raises(ValueError, match="Unable to decode"):
            base64_decode(base64.b64encode(b"\xff\xfe\xfd").decode())


class TestInstants:
    """Test xs:dateTime formatting and parsing."""

    def test_format_uses_utc_and_z_suffix(self):
        instant = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert format_instant(instant) == "2025-01-02T03:04:05Z"

    def test_format_keeps_milliseconds(self):
        instant = datetime(2025, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc)
        assert format_instant(instant) == "2025-01-02T03:04:05.123Z"

    def test_format_keeps_microseconds(self):
        instant = datetime(2025, 1, 2, 3, 4, 5, 999, tzinfo=timezone.utc)
        assert format_instant(instant) == "2025-01-02T03:04:05.000999Z"

    def test_fractional_instant_survives_reformatting(self):
        value = "2025-06-01T11:59:59.123Z"
        assert format_instant(parse_instant(value)) == value

    def test_format_converts_offsets_to_utc(self):
        instant = datetime(2025, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))
        assert format_instant(instant) == "2025-01-02T03:04:05Z"

    def test_format_treats_naive_as_utc(self):
        assert format_instant(datetime(2025, 1, 2, 3, 4, 5)) == "2025-01-02T03:04:05Z"

    def test_parse_returns_aware_utc(self):
        parsed = parse_instant("2025-01-02T03:04:05Z")
        assert parsed == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parsed.tzinfo is not None

    def test_parse_naive_value_as_utc(self):
        parsed = parse_instant("2025-01-02T03:04:05")
        assert parsed.utcoffset() == timedelta(0)

    def test_parse_fractional_seconds(self):
        parsed = parse_instant("2025-01-02T03:04:05.250Z")
        assert parsed.microsecond == 250000

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError, match="Invalid SAML timestamp"):
            parse_instant("yesterday")


class TestStripPem:
    """Test certificate body extraction."""

    def test_strips_armour_and_newlines(self):
        pem = "-----BEGIN CERTIFICATE-----\nMIIB\nAAAA\n-----END CERTIFICATE-----\n"
        assert strip_pem(pem) == "MIIBAAAA"

    def test_bare_base64_is_joined(self):
        assert strip_pem("  MIIB\n  AAAA  ") == "MIIBAAAA"
