"""Inbound protocol message validation.

ValidationEngine runs a fixed sequence of checks and stops at the first
failure:

    NotStarted -> TimestampChecked -> VersionChecked -> RequiredFieldsChecked
    -> DestinationChecked -> SignatureChecked -> IdCorrelationChecked
    -> Accepted | Rejected(rule, reason)

Binding-specific behaviour (how the signature is checked, extra checks per
binding and direction) is looked up in dispatch tables keyed on
(Binding, Direction) rather than spread across subclasses.

ValidatorBuilder validates its own inputs at build() time so that a
misconfigured validator never sees a message.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from lxml import etree

from ..logging_audit.audit import MESSAGE_ACCEPTED, log_audit_event, log_validation_rejection
from ..models.entity import Binding
from ..models.protocol import DS_NS, Direction, LogoutRequest, LogoutResponse, ProtocolMessage
from ..utils.exceptions import (
    ConfigurationError,
    TypeMismatchError,
    ValidationFailure,
    ValidationRule,
)
from .messages import MessageFactory
from .signer import SigningEngine

logger = logging.getLogger("saml_fed.validation")

DEFAULT_ISSUE_TIMEOUT = timedelta(minutes=10)
DEFAULT_JITTER = timedelta(seconds=30)


class ValidationState(str, Enum):
    """Progress of a message through the validation sequence."""

    NOT_STARTED = "NotStarted"
    TIMESTAMP_CHECKED = "TimestampChecked"
    VERSION_CHECKED = "VersionChecked"
    REQUIRED_FIELDS_CHECKED = "RequiredFieldsChecked"
    DESTINATION_CHECKED = "DestinationChecked"
    SIGNATURE_CHECKED = "SignatureChecked"
    ID_CORRELATION_CHECKED = "IdCorrelationChecked"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class ValidationContext:
    """Binding context for validating one inbound message.

    Attributes:
        binding: Binding the message arrived on
        destination: URL of the endpoint that received the message
        certificate: Trusted signing certificate of the issuer
        in_response_to: Expected InResponseTo for responses
        issue_timeout: Maximum accepted message age
        jitter: Allowed clock skew in either direction
        signature: Redirect binding Signature value
        sig_alg: Redirect binding SigAlg URI
        signed_string: Exact signed portion of the redirect query string
        require_signed_post: Reject unsigned POST-bound messages
        trusted_channel: Channel integrity is guaranteed by the caller, so
            an unsigned SOAP message is acceptable
    """

    binding: Binding
    destination: str
    certificate: Optional[str] = None
    in_response_to: Optional[str] = None
    issue_timeout: timedelta = DEFAULT_ISSUE_TIMEOUT
    jitter: timedelta = DEFAULT_JITTER
    signature: Optional[str] = None
    sig_alg: Optional[str] = None
    signed_string: Optional[str] = None
    require_signed_post: bool = False
    trusted_channel: bool = False


@dataclass
class ValidationOutcome:
    """Result of running the validation sequence.

    Attributes:
        state: Final state (ACCEPTED or REJECTED)
        failure: The rejection, if any
        trail: States passed through, in order
    """

    state: ValidationState
    failure: Optional[ValidationFailure] = None
    trail: List[ValidationState] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.state is ValidationState.ACCEPTED


AdditionalValidation = Callable[[ProtocolMessage, ValidationContext, datetime], None]
SignatureCheck = Callable[
    [SigningEngine, ProtocolMessage, Optional[etree._Element], ValidationContext], None
]


def _has_enveloped_signature(document: Optional[etree._Element]) -> bool:
    return document is not None and document.find(f"{{{DS_NS}}}Signature") is not None


def _check_post_signature(
    signing: SigningEngine,
    message: ProtocolMessage,
    document: Optional[etree._Element],
    context: ValidationContext,
) -> None:
    if _has_enveloped_signature(document):
        signing.verify_xml_signature(document, context.certificate)
        return
    if context.require_signed_post:
        raise ValidationFailure(ValidationRule.SIGNATURE, "POST-bound message is not signed")
    logger.warning(f"Accepting unsigned POST-bound message {message.id}")


def _check_redirect_signature(
    signing: SigningEngine,
    message: ProtocolMessage,
    document: Optional[etree._Element],
    context: ValidationContext,
) -> None:
    verified = signing.verify_query_signature(
        context.sig_alg, context.signed_string, context.signature, context.certificate
    )
    if not verified:
        raise ValidationFailure(
            ValidationRule.SIGNATURE, "Redirect query string signature is not valid"
        )


def _check_soap_signature(
    signing: SigningEngine,
    message: ProtocolMessage,
    document: Optional[etree._Element],
    context: ValidationContext,
) -> None:
    if _has_enveloped_signature(document):
        signing.verify_xml_signature(document, context.certificate)
        return
    if context.trusted_channel:
        logger.debug(f"Unsigned SOAP message {message.id} accepted on trusted channel")
        return
    raise ValidationFailure(ValidationRule.SIGNATURE, "SOAP-bound message is not signed")


SIGNATURE_CHECKS: Dict[Binding, SignatureCheck] = {
    Binding.HTTP_POST: _check_post_signature,
    Binding.HTTP_REDIRECT: _check_redirect_signature,
    Binding.SOAP: _check_soap_signature,
    Binding.PAOS: _check_soap_signature,
}


def _check_logout_request_fields(
    message: ProtocolMessage, context: ValidationContext, now: datetime
) -> None:
    if not message.name_id:
        raise ValidationFailure(ValidationRule.REQUIRED_FIELD, "LogoutRequest has no NameID")
    if message.not_on_or_after is not None and message.not_on_or_after + context.jitter <= now:
        raise ValidationFailure(
            ValidationRule.TIMESTAMP,
            f"LogoutRequest expired at {message.not_on_or_after.isoformat()}",
        )


def _check_logout_response_fields(
    message: ProtocolMessage, context: ValidationContext, now: datetime
) -> None:
    if not message.status.code:
        raise ValidationFailure(ValidationRule.REQUIRED_FIELD, "LogoutResponse has no StatusCode")


DEFAULT_ADDITIONAL_VALIDATIONS: Dict[Tuple[Binding, Direction], AdditionalValidation] = {
    (binding, direction): check
    for binding in Binding
    for direction, check in (
        (Direction.REQUEST, _check_logout_request_fields),
        (Direction.RESPONSE, _check_logout_response_fields),
    )
}


class ValidationEngine:
    """Validate inbound logout messages against their binding context.

    Build instances with ValidatorBuilder. A built engine is immutable and
    performs no I/O.

    Example:
        >>> validator = (
        ...     ValidatorBuilder(signing)
        ...     .binding(Binding.HTTP_POST)
        ...     .destination("https://sp.example.com/slo")
        ...     .certificate(record.signing_certificate)
        ...     .build()
        ... )
        >>> validator.validate(message, document)
    """

    def __init__(
        self,
        signing: SigningEngine,
        context: ValidationContext,
        additional_validations: Dict[Tuple[Binding, Direction], AdditionalValidation],
        clock: Callable[[], datetime],
    ) -> None:
        self.signing = signing
        self.context = context
        self.additional_validations = dict(additional_validations)
        self.clock = clock

    def validate(
        self,
        message: ProtocolMessage,
        document: Optional[etree._Element] = None,
    ) -> None:
        """Validate a message, raising on the first failed check.

        Args:
            message: Parsed protocol message
            document: Parsed root element the message came from; needed to
                verify enveloped signatures

        Raises:
            ValidationFailure: If any check fails
            CryptoFailure: If the trusted certificate is missing or unusable,
                or the redirect signature algorithm is not supported
        """
        outcome = self.evaluate(message, document)
        if outcome.failure is not None:
            raise outcome.failure

    def evaluate(
        self,
        message: ProtocolMessage,
        document: Optional[etree._Element] = None,
    ) -> ValidationOutcome:
        """Run the validation sequence and return its outcome.

        Raises:
            CryptoFailure: If the trusted certificate is missing or unusable,
                or the redirect signature algorithm is not supported
        """
        now = self.clock()
        outcome = ValidationOutcome(state=ValidationState.NOT_STARTED)
        outcome.trail.append(ValidationState.NOT_STARTED)

        steps: List[Tuple[ValidationState, Callable[[], None]]] = [
            (ValidationState.TIMESTAMP_CHECKED, lambda: self._check_timestamp(message, now)),
            (ValidationState.VERSION_CHECKED, lambda: self._check_version(message)),
            (ValidationState.REQUIRED_FIELDS_CHECKED, lambda: self._check_required_fields(message)),
            (ValidationState.DESTINATION_CHECKED, lambda: self._check_destination(message)),
            (ValidationState.SIGNATURE_CHECKED, lambda: self._check_signature(message, document)),
            (ValidationState.ID_CORRELATION_CHECKED, lambda: self._check_correlation(message)),
        ]

        try:
            for state, step in steps:
                step()
                outcome.state = state
                outcome.trail.append(state)
            self._run_additional_validation(message, now)
        except ValidationFailure as failure:
            outcome.state = ValidationState.REJECTED
            outcome.failure = failure
            outcome.trail.append(ValidationState.REJECTED)
            logger.info(f"Rejected {message.element_name} {message.id or '<no id>'}: {failure}")
            log_validation_rejection(
                failure,
                issuer=message.issuer,
                message_id=message.id,
                binding=self.context.binding.name,
            )
            return outcome

        outcome.state = ValidationState.ACCEPTED
        outcome.trail.append(ValidationState.ACCEPTED)
        log_audit_event(
            MESSAGE_ACCEPTED,
            {
                "status": "success",
                "issuer": message.issuer,
                "message_id": message.id,
                "binding": self.context.binding.name,
            },
        )
        return outcome

    def _check_timestamp(self, message: ProtocolMessage, now: datetime) -> None:
        issue_instant = message.issue_instant
        if issue_instant is None:
            raise ValidationFailure(ValidationRule.TIMESTAMP, "IssueInstant is missing or invalid")

        jitter = self.context.jitter
        if issue_instant - jitter > now:
            raise ValidationFailure(
                ValidationRule.TIMESTAMP,
                f"IssueInstant {issue_instant.isoformat()} is in the future (clock skew)",
            )
        if issue_instant + jitter < now - self.context.issue_timeout:
            raise ValidationFailure(
                ValidationRule.TIMESTAMP,
                f"IssueInstant {issue_instant.isoformat()} is older than "
                f"{int(self.context.issue_timeout.total_seconds())}s",
            )

    def _check_version(self, message: ProtocolMessage) -> None:
        if message.version != "2.0":
            raise ValidationFailure(
                ValidationRule.VERSION, f"Unsupported SAML version {message.version!r}"
            )

    def _check_required_fields(self, message: ProtocolMessage) -> None:
        if not message.id or not message.id.strip():
            raise ValidationFailure(ValidationRule.REQUIRED_FIELD, "Message ID is missing")

    def _check_destination(self, message: ProtocolMessage) -> None:
        destination = (message.destination or "").strip()
        if destination and destination != self.context.destination:
            raise ValidationFailure(
                ValidationRule.DESTINATION,
                f"Destination {destination!r} does not match {self.context.destination!r}",
            )

    def _check_signature(
        self, message: ProtocolMessage, document: Optional[etree._Element]
    ) -> None:
        check = SIGNATURE_CHECKS[self.context.binding]
        check(self.signing, message, document, self.context)

    def _check_correlation(self, message: ProtocolMessage) -> None:
        if not isinstance(message, LogoutResponse):
            return
        expected = self.context.in_response_to
        if expected is not None and message.in_response_to != expected:
            raise ValidationFailure(
                ValidationRule.CORRELATION,
                f"InResponseTo {message.in_response_to!r} does not match {expected!r}",
            )

    def _run_additional_validation(self, message: ProtocolMessage, now: datetime) -> None:
        hook = self.additional_validations.get((self.context.binding, message.direction))
        if hook is not None:
            hook(message, self.context, now)


class ValidatorBuilder:
    """Builder for ValidationEngine.

    build() raises ConfigurationError when the binding or destination is
    unset, or when redirect-binding validation lacks any of the signature,
    SigAlg or signed string.

    Example:
        >>> validator = (
        ...     ValidatorBuilder(signing)
        ...     .binding(Binding.HTTP_REDIRECT)
        ...     .destination("https://sp.example.com/slo")
        ...     .redirect_params(signature, sig_alg, signed_string)
        ...     .certificate(cert)
        ...     .build()
        ... )
    """

    def __init__(
        self,
        signing: SigningEngine,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._signing = signing
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._binding: Optional[Binding] = None
        self._destination: Optional[str] = None
        self._certificate: Optional[str] = None
        self._in_response_to: Optional[str] = None
        self._issue_timeout = DEFAULT_ISSUE_TIMEOUT
        self._jitter = DEFAULT_JITTER
        self._signature: Optional[str] = None
        self._sig_alg: Optional[str] = None
        self._signed_string: Optional[str] = None
        self._require_signed_post = False
        self._trusted_channel = False
        self._additional: Dict[Tuple[Binding, Direction], AdditionalValidation] = dict(
            DEFAULT_ADDITIONAL_VALIDATIONS
        )

    def binding(self, binding: Union[Binding, str]) -> "ValidatorBuilder":
        if isinstance(binding, str) and not isinstance(binding, Binding):
            resolved = Binding.from_uri(binding)
            if resolved is None:
                raise ConfigurationError(f"Unknown binding: {binding!r}")
            binding = resolved
        self._binding = binding
        return self

    def destination(self, destination: Optional[str]) -> "ValidatorBuilder":
        self._destination = destination
        return self

    def certificate(self, certificate: Optional[str]) -> "ValidatorBuilder":
        self._certificate = certificate
        return self

    def expected_in_response_to(self, request_id: Optional[str]) -> "ValidatorBuilder":
        self._in_response_to = request_id
        return self

    def issue_timeout(self, timeout: timedelta) -> "ValidatorBuilder":
        self._issue_timeout = timeout
        return self

    def jitter(self, jitter: timedelta) -> "ValidatorBuilder":
        self._jitter = jitter
        return self

    def redirect_params(
        self,
        signature: Optional[str],
        sig_alg: Optional[str],
        signed_string: Optional[str],
    ) -> "ValidatorBuilder":
        self._signature = signature
        self._sig_alg = sig_alg
        self._signed_string = signed_string
        return self

    def require_signed_post(self, required: bool = True) -> "ValidatorBuilder":
        self._require_signed_post = required
        return self

    def trusted_channel(self, trusted: bool = True) -> "ValidatorBuilder":
        self._trusted_channel = trusted
        return self

    def additional_validation(
        self,
        binding: Binding,
        direction: Direction,
        check: Optional[AdditionalValidation],
    ) -> "ValidatorBuilder":
        """Override the extra check for one (binding, direction) pair.

        Passing None removes the check for that pair.
        """
        if check is None:
            self._additional.pop((binding, direction), None)
        else:
            self._additional[(binding, direction)] = check
        return self

    def build(self) -> ValidationEngine:
        """Build the validator.

        Raises:
            ConfigurationError: If required inputs are missing or blank
        """
        if self._binding is None:
            raise ConfigurationError("Validation binding must be set")
        if not self._destination or not self._destination.strip():
            raise ConfigurationError("Validation destination must be set")
        if self._binding is Binding.HTTP_REDIRECT:
            for name, value in (
                ("signature", self._signature),
                ("SigAlg", self._sig_alg),
                ("signed query string", self._signed_string),
            ):
                if value is None or not value.strip():
                    raise ConfigurationError(
                        f"Redirect binding validation requires a {name}"
                    )
        if self._issue_timeout < timedelta(0) or self._jitter < timedelta(0):
            raise ConfigurationError("issue_timeout and jitter must not be negative")

        context = ValidationContext(
            binding=self._binding,
            destination=self._destination.strip(),
            certificate=self._certificate,
            in_response_to=self._in_response_to,
            issue_timeout=self._issue_timeout,
            jitter=self._jitter,
            signature=self._signature,
            sig_alg=self._sig_alg,
            signed_string=self._signed_string,
            require_signed_post=self._require_signed_post,
            trusted_channel=self._trusted_channel,
        )
        return ValidationEngine(self._signing, context, self._additional, self._clock)

    def build_and_validate(
        self,
        message: ProtocolMessage,
        document: Optional[etree._Element] = None,
    ) -> None:
        """Build the validator and validate one message."""
        self.build().validate(message, document)


def parse_inbound(
    factory: MessageFactory,
    xml: Union[str, bytes],
    expected: Optional[type] = None,
) -> Tuple[ProtocolMessage, etree._Element]:
    """Parse an inbound message for validation.

    Malformed input is reported as a validation failure, never as a crash.

    Args:
        factory: Message factory with the hardened parser
        xml: Raw message XML
        expected: LogoutRequest or LogoutResponse to require a message type

    Returns:
        Tuple of (parsed message, root element)

    Raises:
        ValidationFailure: With rule MALFORMED if the XML cannot be parsed or
            is not the expected message type
    """
    try:
        root = factory.parse(xml)
        message = factory.extract_message(root)
    except (etree.XMLSyntaxError, ValueError, TypeMismatchError) as e:
        raise ValidationFailure(ValidationRule.MALFORMED, f"Unable to parse message: {e}") from e

    if expected is not None and not isinstance(message, expected):
        raise ValidationFailure(
            ValidationRule.MALFORMED,
            f"Expected {expected.__name__} but received {type(message).__name__}",
        )
    return message, root
