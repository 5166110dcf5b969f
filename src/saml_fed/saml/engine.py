"""XML security engine initialisation.

initialize_engine() is called once at process start-up. The returned
XMLSecurityEngine carries the hardened XML parser settings and the accepted
signature algorithms, and is passed to every component that parses, signs
or verifies XML. Nothing here is module-level mutable state.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple, Union

from cryptography.hazmat.primitives import hashes
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConfiguration,
    SignatureMethod,
)

from ..utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Key families used to pick a signature algorithm from a certificate
KEY_TYPE_RSA = "RSA"
KEY_TYPE_DSA = "DSA"
KEY_TYPE_EC = "EC"

# Signature algorithm used for outbound messages, per public key type
DEFAULT_SIGNATURE_METHODS: Dict[str, SignatureMethod] = {
    KEY_TYPE_RSA: SignatureMethod.RSA_SHA256,
    KEY_TYPE_DSA: SignatureMethod.DSA_SHA256,
    KEY_TYPE_EC: SignatureMethod.ECDSA_SHA256,
}

# Detached (redirect binding) signature algorithms: URI -> (key type, hash)
QUERY_SIGNATURE_ALGORITHMS: Dict[str, Tuple[str, type]] = {
    "http://www.w3.org/2000/09/xmldsig#rsa-sha1": (KEY_TYPE_RSA, hashes.SHA1),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256": (KEY_TYPE_RSA, hashes.SHA256),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384": (KEY_TYPE_RSA, hashes.SHA384),
    "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512": (KEY_TYPE_RSA, hashes.SHA512),
    "http://www.w3.org/2000/09/xmldsig#dsa-sha1": (KEY_TYPE_DSA, hashes.SHA1),
    "http://www.w3.org/2009/xmldsig11#dsa-sha256": (KEY_TYPE_DSA, hashes.SHA256),
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha1": (KEY_TYPE_EC, hashes.SHA1),
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256": (KEY_TYPE_EC, hashes.SHA256),
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha384": (KEY_TYPE_EC, hashes.SHA384),
    "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha512": (KEY_TYPE_EC, hashes.SHA512),
}

# Parser options that disable entity expansion, DTD loading and network access
_HARDENED_PARSER_OPTIONS = {
    "resolve_entities": False,
    "no_network": True,
    "load_dtd": False,
    "dtd_validation": False,
    "huge_tree": False,
    "remove_blank_text": False,
}


@dataclass(frozen=True)
class XMLSecurityEngine:
    """Process-wide XML parsing and signature configuration.

    Attributes:
        signature_methods: Outbound signature method per key type
        digest_algorithm: Digest algorithm for outbound signatures
        c14n_algorithm: Canonicalization algorithm for outbound signatures
        accepted_signature_methods: Signature methods accepted on inbound XML
        accepted_digest_algorithms: Digest algorithms accepted on inbound XML
        query_algorithms: Detached signature algorithm table
    """

    signature_methods: Dict[str, SignatureMethod]
    digest_algorithm: DigestAlgorithm
    c14n_algorithm: CanonicalizationMethod
    accepted_signature_methods: FrozenSet[SignatureMethod]
    accepted_digest_algorithms: FrozenSet[DigestAlgorithm]
    query_algorithms: Dict[str, Tuple[str, type]] = field(
        default_factory=lambda: dict(QUERY_SIGNATURE_ALGORITHMS)
    )

    def new_parser(self) -> etree.XMLParser:
        """Create a hardened parser.

        lxml parsers must not be shared between threads, so each parse
        gets its own.
        """
        return etree.XMLParser(**_HARDENED_PARSER_OPTIONS)

    def parse(self, xml: Union[str, bytes]) -> etree._Element:
        """Parse untrusted XML into an element tree.

        Args:
            xml: XML document text or bytes

        Returns:
            Root element

        Raises:
            etree.XMLSyntaxError: If the document is not well-formed
            ValueError: If the document is empty or declares a DOCTYPE
        """
        if isinstance(xml, str):
            xml = xml.encode("utf-8")
        if not xml or not xml.strip():
            raise ValueError("XML document is empty")

        root = etree.fromstring(xml, parser=self.new_parser())
        if root.getroottree().docinfo.doctype:
            raise ValueError("XML documents with a DOCTYPE declaration are not accepted")
        return root

    def verification_config(self) -> SignatureConfiguration:
        """Signature profile every inbound enveloped signature must match."""
        return SignatureConfiguration(
            require_x509=True,
            expect_references=1,
            signature_methods=self.accepted_signature_methods,
            digest_algorithms=self.accepted_digest_algorithms,
        )


def initialize_engine() -> XMLSecurityEngine:
    """Initialise the XML security engine.

    Call once at start-up and pass the result to MessageFactory,
    SigningEngine, MetadataParser and ValidationEngine.

    Returns:
        Configured XMLSecurityEngine

    Raises:
        ConfigurationError: If lxml lacks the features signing depends on
    """
    if etree.LXML_VERSION < (4, 4, 0, 0):
        raise ConfigurationError(
            f"lxml {etree.__version__} is too old for XML signatures. "
            f"Upgrade lxml to 4.4 or later."
        )

    engine = XMLSecurityEngine(
        signature_methods=dict(DEFAULT_SIGNATURE_METHODS),
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        accepted_signature_methods=frozenset(
            method for method in SignatureMethod
            if "SHA1" not in method.name and not method.name.startswith("HMAC")
        ),
        accepted_digest_algorithms=frozenset(
            digest for digest in DigestAlgorithm if "SHA1" not in digest.name
        ),
    )

    logger.info(
        f"XML security engine initialized: lxml={etree.__version__}, "
        f"digest={engine.digest_algorithm.name}, "
        f"c14n={engine.c14n_algorithm.value}"
    )
    return engine
