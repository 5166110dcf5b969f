"""Signing and signature verification for SAML protocol messages.

Enveloped XML signatures (POST and SOAP bindings) are produced and checked
with signxml. Detached signatures over the redirect-binding query string
are computed directly with cryptography.
"""

import base64
import binascii
import logging
from typing import Any, Optional, Tuple, Union
from urllib.parse import quote

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, padding
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureMethod,
    XMLSigner,
    XMLVerifier,
)
from signxml.exceptions import InvalidInput, InvalidSignature

from ..models.protocol import DS_NS, SAML_NS, ProtocolMessage, SignedMessage
from ..models.saml import CertificateBundle, SignatureContext
from ..utils.exceptions import (
    CertificateLoadError,
    MissingCertificateError,
    SigningError,
    UnsupportedAlgorithmError,
    ValidationFailure,
    ValidationRule,
)
from .certificate_manager import (
    CredentialStore,
    certificate_from_base64,
    convert_key_to_pem,
    convert_to_pem,
    key_type_of,
)
from .engine import KEY_TYPE_DSA, KEY_TYPE_EC, KEY_TYPE_RSA, XMLSecurityEngine
from .messages import message_to_element

logger = logging.getLogger("saml_fed.signing")

# Transforms an enveloped protocol message signature may declare
_ALLOWED_TRANSFORMS = frozenset(
    {
        "http://www.w3.org/2000/09/xmldsig#enveloped-signature",
        "http://www.w3.org/2001/10/xml-exc-c14n#",
        "http://www.w3.org/2001/10/xml-exc-c14n#WithComments",
        "http://www.w3.org/TR/2001/REC-xml-c14n-20010315",
        "http://www.w3.org/2006/12/xml-c14n11",
    }
)


def _ds(name: str) -> str:
    return f"{{{DS_NS}}}{name}"


class SigningEngine:
    """Sign outbound messages and verify inbound signatures.

    Holds no per-call mutable state; the credential store and engine are
    read-only configuration, so one instance can sign and verify from many
    threads at once.

    Attributes:
        engine: XML security engine (parser and algorithm configuration)
        credentials: Credential store for the signing key; None for a
            verification-only instance

    Example:
        >>> signing = SigningEngine(initialize_engine(), credential_store)
        >>> signed = signing.sign_xml(factory.build_logout_request("alice", issuer))
        >>> assert "<ds:Signature" in signed.xml_content
    """

    def __init__(
        self,
        engine: XMLSecurityEngine,
        credentials: Optional[CredentialStore] = None,
    ) -> None:
        self.engine = engine
        self.credentials = credentials

    def signature_context(self, certificate: Any) -> SignatureContext:
        """Select algorithms from the signing certificate's public key type.

        DSA keys get DSA-SHA256, EC keys ECDSA-SHA256 and everything else
        RSA-SHA256. Built fresh for every operation.
        """
        key_type = key_type_of(certificate.public_key())
        method = self.engine.signature_methods[key_type]
        return SignatureContext(
            signature_algorithm=method.value,
            digest_algorithm=self.engine.digest_algorithm.value,
            canonicalization_algorithm=self.engine.c14n_algorithm.value,
        )

    def _signing_bundle(self) -> CertificateBundle:
        if self.credentials is None:
            raise SigningError("No credential store configured for signing")
        bundle = self.credentials.get_signing_credential()
        if bundle.private_key is None:
            raise SigningError(
                f"Signing credential {bundle.alias or bundle.info.subject} has no private key. "
                f"Provide key_path or a PKCS12 key store."
            )
        return bundle

    def sign_xml(self, message: ProtocolMessage) -> SignedMessage:
        """Sign a protocol message with an enveloped XML signature.

        The signature is placed directly after Issuer and embeds the full
        signing certificate in KeyInfo. Signing happens on the element tree
        before the document is serialized.

        Args:
            message: Unsigned LogoutRequest or LogoutResponse

        Returns:
            SignedMessage with the serialized signed XML

        Raises:
            SigningError: If no usable signing key is configured or signing fails
        """
        bundle = self._signing_bundle()
        context = self.signature_context(bundle.certificate)

        logger.info(
            f"Signing {message.element_name} {message.id} "
            f"(algorithm={context.signature_algorithm})"
        )

        root = message_to_element(message)
        issuer = root.find(f"{{{SAML_NS}}}Issuer")
        placeholder = etree.Element(_ds("Signature"), nsmap={"ds": DS_NS}, Id="placeholder")
        if issuer is not None:
            issuer.addnext(placeholder)
        else:
            root.insert(0, placeholder)

        signer = XMLSigner(
            signature_algorithm=SignatureMethod(context.signature_algorithm),
            digest_algorithm=DigestAlgorithm(context.digest_algorithm),
            c14n_algorithm=CanonicalizationMethod(context.canonicalization_algorithm),
        )

        try:
            signed_root = signer.sign(
                root,
                key=convert_key_to_pem(bundle.private_key),
                cert=convert_to_pem(bundle.certificate).decode("ascii"),
            )
        except InvalidInput as e:
            logger.error(f"Invalid signing credential for {message.id}: {e}")
            raise SigningError(f"Invalid certificate or private key: {e}") from e

        signature_value = signed_root.find(f"{_ds('Signature')}/{_ds('SignatureValue')}")
        if signature_value is None or not (signature_value.text or "").strip():
            raise SigningError(
                "Failed to extract SignatureValue from signed message. "
                "This indicates a signing operation error."
            )

        signed_xml = etree.tostring(signed_root, encoding="unicode")
        logger.info(f"{message.element_name} {message.id} signed successfully")

        return SignedMessage(
            message=message,
            xml_content=signed_xml,
            signature_value="".join(signature_value.text.split()),
            signature_algorithm=context.signature_algorithm,
            certificate_subject=bundle.info.subject,
        )

    def sign_query_string(self, params: str) -> Tuple[str, str]:
        """Sign a redirect-binding query string.

        Args:
            params: URL-encoded ``SAMLRequest=...`` or ``SAMLResponse=...``
                parameter, followed by ``&RelayState=...`` when present

        Returns:
            Tuple of (base64 signature, signature algorithm URI). The
            signature covers ``params + "&SigAlg=" + url-encoded URI``; the
            caller appends SigAlg and Signature, in that order, to params.

        Raises:
            SigningError: If no usable signing key is configured
        """
        bundle = self._signing_bundle()
        context = self.signature_context(bundle.certificate)
        algorithm = context.signature_algorithm

        signed_string = f"{params}&SigAlg={quote(algorithm, safe='')}"
        key_type, hash_type = self.engine.query_algorithms[algorithm]
        data = signed_string.encode("utf-8")

        if key_type == KEY_TYPE_RSA:
            raw = bundle.private_key.sign(data, padding.PKCS1v15(), hash_type())
        elif key_type == KEY_TYPE_EC:
            raw = bundle.private_key.sign(data, ec.ECDSA(hash_type()))
        else:
            raw = bundle.private_key.sign(data, hash_type())

        logger.debug(f"Signed redirect query string with {algorithm}")
        return base64.b64encode(raw).decode("ascii"), algorithm

    def validate_signature_profile(self, root: etree._Element) -> etree._Element:
        """Check the structure of a protocol message's enveloped signature.

        The signature must be a direct child of the message, reference the
        message's own ID with a single Reference, use only the enveloped
        and canonicalization transforms, and carry a SignatureValue.

        Returns:
            The ds:Signature element

        Raises:
            ValidationFailure: If the signature structure is unacceptable
        """
        signatures = root.findall(_ds("Signature"))
        if len(signatures) != 1:
            raise ValidationFailure(
                ValidationRule.SIGNATURE,
                f"Expected exactly one enveloped signature, found {len(signatures)}",
            )
        signature = signatures[0]

        references = signature.findall(f"{_ds('SignedInfo')}/{_ds('Reference')}")
        if len(references) != 1:
            raise ValidationFailure(
                ValidationRule.SIGNATURE,
                f"Expected exactly one signature reference, found {len(references)}",
            )

        message_id = root.get("ID")
        if not message_id or references[0].get("URI") != f"#{message_id}":
            raise ValidationFailure(
                ValidationRule.SIGNATURE,
                f"Signature reference {references[0].get('URI')!r} does not cover message {message_id!r}",
            )

        for transform in references[0].findall(f"{_ds('Transforms')}/{_ds('Transform')}"):
            if transform.get("Algorithm") not in _ALLOWED_TRANSFORMS:
                raise ValidationFailure(
                    ValidationRule.SIGNATURE,
                    f"Signature transform not allowed: {transform.get('Algorithm')}",
                )

        signature_value = signature.find(_ds("SignatureValue"))
        if signature_value is None or not (signature_value.text or "").strip():
            raise ValidationFailure(ValidationRule.SIGNATURE, "SignatureValue is empty")

        return signature

    def verify_xml_signature(
        self,
        document: Union[str, bytes, etree._Element],
        certificate: Optional[str],
    ) -> bool:
        """Verify the enveloped signature of a protocol message.

        Runs the signature profile check, then the trust check against the
        supplied certificate. Both must pass.

        Args:
            document: Signed message XML or its parsed root element
            certificate: Trusted signer certificate (base64 DER or PEM)

        Returns:
            True when the signature is valid and trusted

        Raises:
            ValidationFailure: If the signature is malformed, invalid or untrusted
            MissingCertificateError: If no certificate was supplied
        """
        if isinstance(document, etree._Element):
            root = document
        else:
            try:
                root = self.engine.parse(document)
            except (etree.XMLSyntaxError, ValueError) as e:
                raise ValidationFailure(ValidationRule.MALFORMED, f"Invalid XML: {e}") from e

        self.validate_signature_profile(root)
        trusted = self._load_trusted_certificate(certificate)

        try:
            result = XMLVerifier().verify(
                root,
                x509_cert=convert_to_pem(trusted).decode("ascii"),
                expect_config=self.engine.verification_config(),
            )
        except InvalidSignature as e:
            logger.warning(f"Signature verification failed for {root.get('ID')}: {e}")
            raise ValidationFailure(
                ValidationRule.SIGNATURE, f"Signature verification failed: {e}"
            ) from e
        except InvalidInput as e:
            logger.warning(f"Unacceptable signature on {root.get('ID')}: {e}")
            raise ValidationFailure(
                ValidationRule.SIGNATURE, f"Unacceptable signature: {e}"
            ) from e

        if result.signed_xml is None or result.signed_xml.get("ID") != root.get("ID"):
            raise ValidationFailure(
                ValidationRule.SIGNATURE, "Signed content is not the message itself"
            )

        logger.debug(f"Signature verified for {root.get('ID')}")
        return True

    def verify_query_signature(
        self,
        sig_alg: str,
        signed_string: str,
        signature_b64: str,
        certificate: Optional[str],
    ) -> bool:
        """Verify a redirect-binding detached signature.

        Args:
            sig_alg: SigAlg URI from the query string
            signed_string: Exact signed portion of the raw query string
            signature_b64: base64 Signature value (URL-decoded)
            certificate: Trusted signer certificate (base64 DER or PEM)

        Returns:
            True if the signature verifies, False otherwise

        Raises:
            UnsupportedAlgorithmError: If sig_alg has no local mapping
            MissingCertificateError: If no certificate was supplied
            CertificateLoadError: If the certificate cannot be parsed
        """
        if sig_alg not in self.engine.query_algorithms:
            raise UnsupportedAlgorithmError(f"Unsupported signature algorithm: {sig_alg}")

        trusted = self._load_trusted_certificate(certificate)
        key_type, hash_type = self.engine.query_algorithms[sig_alg]
        public_key = trusted.public_key()

        if key_type_of(public_key) != key_type:
            logger.warning(
                f"Signature algorithm {sig_alg} does not match {key_type_of(public_key)} "
                f"certificate key"
            )
            return False

        try:
            raw = base64.b64decode(signature_b64, validate=False)
        except (binascii.Error, ValueError):
            logger.warning("Redirect signature is not valid base64")
            return False

        data = signed_string.encode("utf-8")
        try:
            if key_type == KEY_TYPE_RSA:
                public_key.verify(raw, data, padding.PKCS1v15(), hash_type())
            elif key_type == KEY_TYPE_EC:
                public_key.verify(raw, data, ec.ECDSA(hash_type()))
            elif key_type == KEY_TYPE_DSA:
                public_key.verify(raw, data, hash_type())
        except CryptoInvalidSignature:
            logger.warning(f"Redirect signature verification failed ({sig_alg})")
            return False

        return True

    def _load_trusted_certificate(self, certificate: Optional[str]) -> Any:
        if certificate is None or not str(certificate).strip():
            logger.warning(
                "No trusted certificate available for signature verification. "
                "Check the peer's metadata KeyDescriptor configuration."
            )
            raise MissingCertificateError("No certificate supplied for signature verification")
        try:
            return certificate_from_base64(certificate)
        except CertificateLoadError:
            logger.error("Trusted certificate could not be parsed")
            raise
