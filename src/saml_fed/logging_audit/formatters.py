"""Custom log formatters for the SAML federation core.

This module provides a formatter that redacts principal identifiers and
encoded protocol messages from log lines.
"""

import logging
import re
from typing import List, Tuple


class IdentifierRedactingFormatter(logging.Formatter):
    """Formatter that redacts identifiers and encoded messages from log lines.

    Redacts NameID values, SAMLRequest/SAMLResponse/Signature query or form
    values, and embedded X.509 certificates.

    Attributes:
        redact_identifiers: Whether to enable redaction
        patterns: List of (regex_pattern, replacement_text) tuples for redaction

    Example:
        >>> formatter = IdentifierRedactingFormatter(redact_identifiers=True)
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(formatter)
    """

    def __init__(
        self,
        fmt: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt: str | None = None,
        redact_identifiers: bool = False,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.redact_identifiers = redact_identifiers

        self.patterns: List[Tuple[re.Pattern[str], str]] = [
            # <saml:NameID Format="...">alice</saml:NameID>
            (
                re.compile(r"(<(?:\w+:)?NameID\b[^>]*>)([^<]+)(</(?:\w+:)?NameID>)"),
                r"\1[NAMEID-REDACTED]\3",
            ),
            # name_id=alice, name_id='alice'
            (re.compile(r"name_id=[\"']?[^\s,\"'|]+[\"']?"), "name_id=[NAMEID-REDACTED]"),
            # SAMLRequest=..., SAMLResponse=..., Signature=... up to the next &, space or quote
            (
                re.compile(r"\b(SAMLRequest|SAMLResponse|Signature)=[^&\s\"']+"),
                r"\1=[REDACTED]",
            ),
            (
                re.compile(r"(<(?:\w+:)?X509Certificate>)[^<]+(</(?:\w+:)?X509Certificate>)"),
                r"\1[CERT-REDACTED]\2",
            ),
            (
                re.compile(
                    r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.DOTALL
                ),
                "[CERT-REDACTED]",
            ),
        ]

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional redaction."""
        original = super().format(record)

        if self.redact_identifiers:
            for pattern, replacement in self.patterns:
                original = pattern.sub(replacement, original)

        return original
