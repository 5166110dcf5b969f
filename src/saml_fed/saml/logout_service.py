"""Single logout orchestration.

LogoutService ties the core together for the SLO flows:

- initiate: build a LogoutRequest for a peer, sign it for the peer's
  logout binding and remember the request ID under a RelayState token
- receive a LogoutRequest (Redirect, POST or SOAP): validate it, invalidate
  local sessions through the injected callback and answer with a signed
  LogoutResponse
- receive a LogoutResponse: validate it against the request ID recovered
  from RelayState

A failure in the session invalidation callback is reported as a
DeliveryFailure and audited as such; it is never folded into a validation
failure.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from lxml import etree

from ..logging_audit.audit import DELIVERY_FAILED, log_audit_event, log_validation_rejection
from ..models.entity import Binding, EntityRecord
from ..models.protocol import (
    LogoutRequest,
    LogoutResponse,
    MessageType,
    ProtocolMessage,
    StatusCode,
    create_status,
)
from ..transport.soap_client import SoapLogoutClient
from ..utils.exceptions import (
    ConfigurationError,
    CryptoFailure,
    DeliveryFailure,
    MissingCertificateError,
    TypeMismatchError,
    ValidationFailure,
    ValidationRule,
)
from ..utils.encoding import base64_decode
from .bindings import (
    build_redirect_url,
    check_message_parameter,
    parse_redirect_query,
    render_post_form,
)
from .entity_catalog import EntityCatalog
from .messages import MessageFactory
from .relay_state import RelayStateCache
from .signer import SigningEngine
from .validator import ValidationEngine, ValidatorBuilder, parse_inbound

logger = logging.getLogger(__name__)

SessionInvalidator = Callable[[LogoutRequest], None]


@dataclass
class OutboundMessage:
    """A signed message encoded for a front-channel binding.

    Attributes:
        message: The protocol message
        binding: Binding it is encoded for
        location: Endpoint URL it is addressed to
        relay_state: RelayState sent with it
        redirect_url: Full URL for the Redirect binding
        form_html: Auto-submitting form for the POST binding
    """

    message: ProtocolMessage
    binding: Binding
    location: str
    relay_state: Optional[str] = None
    redirect_url: Optional[str] = None
    form_html: Optional[str] = None


@dataclass
class LogoutResult:
    """Outcome of handling one inbound logout message.

    Attributes:
        message: Parsed message, if parsing succeeded
        failure: Validation failure that rejected the message
        delivery_failure: Set when the message was accepted but local
            session invalidation failed
        reply: Response to return to the peer
        text: Human-readable summary for the end user
        relay_value: Caller state recovered from RelayState
    """

    message: Optional[ProtocolMessage] = None
    failure: Optional[ValidationFailure] = None
    delivery_failure: Optional[DeliveryFailure] = None
    reply: Optional[OutboundMessage] = None
    text: str = ""
    relay_value: Any = None

    @property
    def accepted(self) -> bool:
        return self.failure is None


class LogoutService:
    """Run SAML single logout for one local entity.

    Attributes:
        entity_id: This entity's identifier, used as Issuer
        single_logout_url: This entity's SLO endpoint (expected Destination)
        catalog: Peer entities
        factory: Message factory
        signing: Signing engine with this entity's credentials
        relay_states: RelayState cache for outstanding requests
        session_invalidator: Callback that ends local sessions for a request
        soap_client: Back-channel SOAP client
        issue_timeout: Maximum accepted message age
        jitter: Allowed clock skew
        require_signed_post: Reject unsigned POST-bound messages
        trust_soap_channel: Accept unsigned SOAP messages (mutually
            authenticated transport)
        soap_logout_url: This entity's SOAP SLO endpoint; defaults to
            single_logout_url

    Example:
        >>> service = LogoutService(
        ...     "https://sp.example.com", "https://sp.example.com/slo",
        ...     catalog, factory, signing, RelayStateCache(), end_sessions,
        ... )
        >>> outbound = service.initiate_logout("https://idp.example.com", "alice")
        >>> outbound.redirect_url or outbound.form_html
    """

    def __init__(
        self,
        entity_id: str,
        single_logout_url: str,
        catalog: EntityCatalog,
        factory: MessageFactory,
        signing: SigningEngine,
        relay_states: RelayStateCache,
        session_invalidator: SessionInvalidator,
        soap_client: Optional[SoapLogoutClient] = None,
        issue_timeout: timedelta = timedelta(minutes=10),
        jitter: timedelta = timedelta(seconds=30),
        require_signed_post: bool = False,
        trust_soap_channel: bool = False,
        soap_logout_url: Optional[str] = None,
    ) -> None:
        if not entity_id or not entity_id.strip():
            raise ConfigurationError("LogoutService requires an entity_id")
        if not single_logout_url or not single_logout_url.strip():
            raise ConfigurationError("LogoutService requires a single_logout_url")

        self.entity_id = entity_id
        self.single_logout_url = single_logout_url
        self.catalog = catalog
        self.factory = factory
        self.signing = signing
        self.relay_states = relay_states
        self.session_invalidator = session_invalidator
        self.soap_client = soap_client
        self.issue_timeout = issue_timeout
        self.jitter = jitter
        self.require_signed_post = require_signed_post
        self.trust_soap_channel = trust_soap_channel
        self.soap_logout_url = soap_logout_url or single_logout_url

    # Outbound

    def initiate_logout(
        self,
        peer_entity_id: str,
        name_id: str,
        session_indexes: Optional[Sequence[str]] = None,
        name_id_format: Optional[str] = None,
        relay_value: Any = None,
    ) -> OutboundMessage:
        """Build and sign a LogoutRequest for a peer's front-channel endpoint.

        The request ID is stored in the RelayState cache so the peer's
        response can be correlated when it comes back.

        Raises:
            ConfigurationError: If the peer is unknown or has no usable
                SingleLogoutService
            IllegalArgumentError: If name_id is blank
            CryptoFailure: If signing fails
        """
        record = self._require_peer(peer_entity_id)
        if not record.single_logout_url or record.single_logout_binding is None:
            raise ConfigurationError(
                f"Entity {peer_entity_id} declares no SingleLogoutService with a supported binding"
            )

        request = self.factory.build_logout_request(
            name_id,
            self.entity_id,
            session_indexes=session_indexes,
            destination=record.single_logout_url,
            name_id_format=name_id_format,
        )
        token = self.relay_states.put({"request_id": request.id, "state": relay_value})
        logger.info(f"Initiating logout {request.id} to {peer_entity_id}")
        return self._encode(
            request, record.single_logout_binding, record.single_logout_url, token
        )

    def send_soap_logout(
        self,
        peer_entity_id: str,
        name_id: str,
        session_indexes: Optional[Sequence[str]] = None,
    ) -> LogoutResponse:
        """Send a signed LogoutRequest over SOAP and validate the reply.

        Raises:
            ConfigurationError: If the peer is unknown, has no SOAP logout
                endpoint, or no SOAP client is configured
            TransportFailure: If the send fails
            ValidationFailure: If the reply is rejected
        """
        if self.soap_client is None:
            raise ConfigurationError("No SOAP client configured")
        record = self._require_peer(peer_entity_id)
        if not record.soap_logout_url:
            raise ConfigurationError(f"Entity {peer_entity_id} has no SOAP logout endpoint")

        request = self.factory.build_logout_request(
            name_id,
            self.entity_id,
            session_indexes=session_indexes,
            destination=record.soap_logout_url,
        )
        signed = self.signing.sign_xml(request)
        envelope = self.factory.wrap_in_soap_envelope(signed.xml_content)
        reply = self.soap_client.send(record.soap_logout_url, envelope, message_id=request.id)

        try:
            body = self.factory.unwrap_soap_body(reply)
        except (etree.XMLSyntaxError, ValueError, TypeMismatchError) as e:
            raise ValidationFailure(ValidationRule.MALFORMED, f"Invalid SOAP reply: {e}") from e

        response, document = parse_inbound(self.factory, body, LogoutResponse)
        validator = (
            self._builder(Binding.SOAP, record).expected_in_response_to(request.id).build()
        )
        self._validate(validator, response, document)
        return response

    # Inbound, front channel

    def handle_redirect(self, raw_query: str) -> LogoutResult:
        """Handle a Redirect-bound LogoutRequest or LogoutResponse.

        Args:
            raw_query: Query string exactly as received
        """
        try:
            query = parse_redirect_query(raw_query)
            xml = query.decode_message()
            message, document = parse_inbound(self.factory, xml)
            check_message_parameter(query.message_type, message)
        except ValidationFailure as failure:
            return LogoutResult(failure=failure, text="Invalid logout message")

        record = self.catalog.lookup(message.issuer)
        if record is None:
            return self._reject_unknown_issuer(message, Binding.HTTP_REDIRECT)

        if not query.is_signed:
            return self._reject(
                message,
                Binding.HTTP_REDIRECT,
                ValidationFailure(ValidationRule.SIGNATURE, "Redirect message is not signed"),
            )

        builder = self._builder(Binding.HTTP_REDIRECT, record).redirect_params(
            query.signature, query.sig_alg, query.signed_string
        )
        return self._dispatch(message, document, builder, query.relay_state, record)

    def handle_post(self, form: Mapping[str, str]) -> LogoutResult:
        """Handle a POST-bound LogoutRequest or LogoutResponse.

        Args:
            form: Submitted form fields
        """
        present = [message_type for message_type in MessageType if form.get(message_type.value)]
        if len(present) != 1:
            failure = ValidationFailure(
                ValidationRule.MALFORMED, "Form must carry exactly one of SAMLRequest or SAMLResponse"
            )
            return LogoutResult(failure=failure, text="Invalid logout message")
        parameter = present[0]

        try:
            xml = base64_decode(form[parameter.value])
            message, document = parse_inbound(self.factory, xml)
            check_message_parameter(parameter, message)
        except ValueError as e:
            failure = ValidationFailure(ValidationRule.MALFORMED, str(e))
            return LogoutResult(failure=failure, text="Invalid logout message")
        except ValidationFailure as failure:
            return LogoutResult(failure=failure, text="Invalid logout message")

        record = self.catalog.lookup(message.issuer)
        if record is None:
            return self._reject_unknown_issuer(message, Binding.HTTP_POST)

        builder = self._builder(Binding.HTTP_POST, record)
        return self._dispatch(message, document, builder, form.get("RelayState"), record)

    # Inbound, back channel

    def handle_soap(self, envelope: str) -> str:
        """Handle a SOAP-bound LogoutRequest and return the SOAP reply.

        A rejected signature is answered with AuthnFailed, any other
        rejection with Responder. The reply is always signed.
        """
        try:
            body = self.factory.unwrap_soap_body(envelope)
        except (etree.XMLSyntaxError, ValueError, TypeMismatchError) as e:
            logger.warning(f"Malformed SOAP logout envelope: {e}")
            return self._soap_reply(None, StatusCode.REQUESTER, "Malformed SOAP envelope")

        try:
            request, document = parse_inbound(self.factory, body, LogoutRequest)
        except ValidationFailure as failure:
            return self._soap_reply(None, StatusCode.REQUESTER, failure.reason)

        record = self.catalog.lookup(request.issuer)
        if record is None:
            self._reject_unknown_issuer(request, Binding.SOAP)
            return self._soap_reply(
                request, StatusCode.AUTHN_FAILED, "Unknown issuer"
            )

        validator = (
            self._builder(Binding.SOAP, record).trusted_channel(self.trust_soap_channel).build()
        )
        try:
            self._validate(validator, request, document)
        except ValidationFailure as failure:
            if failure.rule is ValidationRule.SIGNATURE:
                return self._soap_reply(request, StatusCode.AUTHN_FAILED, failure.reason)
            return self._soap_reply(request, StatusCode.RESPONDER, failure.reason)

        delivery_failure = self._invalidate_sessions(request, Binding.SOAP)
        if delivery_failure is not None:
            return self._soap_reply(
                request, StatusCode.RESPONDER, "Session invalidation failed"
            )
        return self._soap_reply(request, StatusCode.SUCCESS, None)

    # Internals

    def _require_peer(self, entity_id: str) -> EntityRecord:
        record = self.catalog.lookup(entity_id)
        if record is None:
            raise ConfigurationError(
                f"Unknown entity {entity_id}. Check that its metadata has been ingested."
            )
        return record

    def _builder(self, binding: Binding, record: EntityRecord) -> ValidatorBuilder:
        return (
            ValidatorBuilder(self.signing, clock=self.factory.clock)
            .binding(binding)
            .destination(
                self.soap_logout_url if binding is Binding.SOAP else self.single_logout_url
            )
            .certificate(record.signing_certificate)
            .issue_timeout(self.issue_timeout)
            .jitter(self.jitter)
            .require_signed_post(self.require_signed_post)
        )

    def _dispatch(
        self,
        message: ProtocolMessage,
        document: etree._Element,
        builder: ValidatorBuilder,
        relay_state: Optional[str],
        record: EntityRecord,
    ) -> LogoutResult:
        if isinstance(message, LogoutResponse):
            return self._handle_response(message, document, builder, relay_state)
        return self._handle_request(message, document, builder, relay_state, record)

    def _handle_request(
        self,
        request: LogoutRequest,
        document: etree._Element,
        builder: ValidatorBuilder,
        relay_state: Optional[str],
        record: EntityRecord,
    ) -> LogoutResult:
        validator = builder.build()
        binding = validator.context.binding
        try:
            self._validate(validator, request, document)
        except ValidationFailure as failure:
            return LogoutResult(message=request, failure=failure, text="Logout request rejected")

        delivery_failure = self._invalidate_sessions(request, binding)
        if delivery_failure is None:
            status = create_status(StatusCode.SUCCESS)
        else:
            status = create_status(StatusCode.RESPONDER, "Session invalidation failed")

        reply_binding = record.single_logout_binding or binding
        location = record.single_logout_url
        if not location:
            raise ConfigurationError(
                f"Entity {record.entity_id} declares no SingleLogoutService to answer to"
            )

        response = self.factory.build_logout_response(
            self.entity_id,
            status,
            in_response_to=request.id,
            destination=location,
        )
        return LogoutResult(
            message=request,
            delivery_failure=delivery_failure,
            reply=self._encode(response, reply_binding, location, relay_state),
            text="Logout request accepted",
        )

    def _handle_response(
        self,
        response: LogoutResponse,
        document: etree._Element,
        builder: ValidatorBuilder,
        relay_state: Optional[str],
    ) -> LogoutResult:
        # Left in place until the response validates; a rejected message
        # must not consume the pending request it claims to answer.
        pending: Optional[Dict[str, Any]] = self.relay_states.take(
            relay_state, remove_after_read=False
        )
        if pending is None:
            logger.info(
                f"No pending logout for RelayState {relay_state!r}; "
                f"validating response {response.id} without correlation"
            )
        else:
            builder.expected_in_response_to(pending["request_id"])

        try:
            self._validate(builder.build(), response, document)
        except ValidationFailure as failure:
            return LogoutResult(message=response, failure=failure, text="Logout response rejected")

        if pending is not None:
            self.relay_states.take(relay_state)

        relay_value = pending["state"] if pending is not None else None
        if response.status.is_success:
            text = f"{relay_value or 'You'} logged out successfully."
        else:
            text = f"Logout was not completed ({response.status.code})."
        return LogoutResult(message=response, text=text, relay_value=relay_value)

    def _validate(
        self, validator: ValidationEngine, message: ProtocolMessage, document: etree._Element
    ) -> None:
        """Run a validator, turning unusable trust material into a rejection.

        Raises:
            ValidationFailure: If the message is rejected
        """
        try:
            validator.validate(message, document)
        except MissingCertificateError as e:
            logger.error(
                f"Trust configuration problem: no signing certificate for {message.issuer}. "
                f"Check that its metadata publishes a signing KeyDescriptor."
            )
            failure = ValidationFailure(
                ValidationRule.SIGNATURE, f"No trusted certificate for issuer {message.issuer!r}"
            )
            log_validation_rejection(
                failure, message.issuer, message.id, validator.context.binding.name
            )
            raise failure from e
        except CryptoFailure as e:
            logger.warning(f"Signature of {message.id} from {message.issuer} unusable: {e}")
            failure = ValidationFailure(ValidationRule.SIGNATURE, str(e))
            log_validation_rejection(
                failure, message.issuer, message.id, validator.context.binding.name
            )
            raise failure from e

    def _invalidate_sessions(
        self, request: LogoutRequest, binding: Binding
    ) -> Optional[DeliveryFailure]:
        try:
            self.session_invalidator(request)
        except Exception as e:
            failure = DeliveryFailure(f"Session invalidation failed for {request.id}: {e}")
            logger.error(str(failure))
            log_audit_event(
                DELIVERY_FAILED,
                {
                    "status": "failure",
                    "issuer": request.issuer,
                    "message_id": request.id,
                    "binding": binding.name,
                    "reason": str(e),
                },
            )
            return failure
        logger.info(f"Sessions invalidated for logout request {request.id}")
        return None

    def _encode(
        self,
        message: ProtocolMessage,
        binding: Binding,
        location: str,
        relay_state: Optional[str],
    ) -> OutboundMessage:
        outbound = OutboundMessage(
            message=message, binding=binding, location=location, relay_state=relay_state
        )
        if binding is Binding.HTTP_REDIRECT:
            outbound.redirect_url = build_redirect_url(
                location,
                self.factory.to_xml(message),
                message.message_type,
                relay_state,
                self.signing,
            )
        elif binding is Binding.HTTP_POST:
            signed = self.signing.sign_xml(message)
            outbound.form_html = render_post_form(
                location, message.message_type, signed.xml_content, relay_state
            )
        else:
            raise ConfigurationError(f"Binding {binding.name} cannot carry a front-channel message")
        return outbound

    def _reject(
        self, message: ProtocolMessage, binding: Binding, failure: ValidationFailure
    ) -> LogoutResult:
        log_validation_rejection(failure, message.issuer, message.id, binding.name)
        return LogoutResult(message=message, failure=failure, text="Logout message rejected")

    def _reject_unknown_issuer(self, message: ProtocolMessage, binding: Binding) -> LogoutResult:
        failure = ValidationFailure(
            ValidationRule.SIGNATURE, f"Untrusted signer: unknown issuer {message.issuer!r}"
        )
        return self._reject(message, binding, failure)

    def _soap_reply(
        self,
        request: Optional[LogoutRequest],
        status_code: str,
        status_message: Optional[str],
    ) -> str:
        response = self.factory.build_logout_response(
            self.entity_id,
            create_status(status_code, status_message),
            in_response_to=request.id if request is not None else None,
        )
        signed = self.signing.sign_xml(response)
        return self.factory.wrap_in_soap_envelope(signed.xml_content)
