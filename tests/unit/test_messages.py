"""Unit tests for logout message construction and parsing."""

import re
from datetime import timedelta

import pytest
from lxml import etree

from saml_fed.models.protocol import (
    SAML_NS,
    SAMLP_NS,
    SOAP_ENV_NS,
    LogoutRequest,
    LogoutResponse,
    StatusCode,
    create_status,
)
from saml_fed.saml.messages import generate_message_id
from saml_fed.utils.exceptions import IllegalArgumentError, TypeMismatchError


class TestMessageIds:
    """Test message ID generation."""

    def test_id_is_underscore_prefixed_uuid(self):
        message_id = generate_message_id()
        assert re.fullmatch(r"_[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", message_id)

    def test_ids_are_unique(self):
        assert len({generate_message_id() for _ in range(100)}) == 100


class TestBuildLogoutRequest:
    """Test LogoutRequest construction."""

    def test_defaults(self, factory, now):
        request = factory.build_logout_request("alice", "https://sp.example.com")

        assert request.id.startswith("_")
        assert request.issuer == "https://sp.example.com"
        assert request.issue_instant == now
        assert request.version == "2.0"
        assert request.name_id == "alice"
        assert request.session_indexes == []
        assert request.destination is None

    def test_explicit_fields(self, factory):
        request = factory.build_logout_request(
            "alice",
            "https://sp.example.com",
            id="_fixed",
            session_indexes=["s1", "s2"],
            destination="https://idp.example.com/slo",
            name_id_format="urn:oasis:names:tc:SAML:2.0:nameid-format:persistent",
            reason="urn:oasis:names:tc:SAML:2.0:logout:user",
        )
        assert request.id == "_fixed"
        assert request.session_indexes == ["s1", "s2"]
        assert request.reason == "urn:oasis:names:tc:SAML:2.0:logout:user"

    @pytest.mark.parametrize(
        "name_id, issuer, message_id",
        [("", "https://sp", None), ("alice", "  ", None), ("alice", "https://sp", " ")],
    )
    def test_blank_inputs_rejected(self, factory, name_id, issuer, message_id):
        with pytest.raises(IllegalArgumentError):
            factory.build_logout_request(name_id, issuer, id=message_id)


class TestBuildLogoutResponse:
    """Test LogoutResponse construction."""

    def test_from_status_code(self, factory):
        response = factory.build_logout_response(
            "https://idp.example.com", StatusCode.SUCCESS, in_response_to="_req"
        )
        assert response.status.is_success
        assert response.in_response_to == "_req"

    def test_from_status_object(self, factory):
        response = factory.build_logout_response(
            "https://idp.example.com", create_status(StatusCode.RESPONDER, "busy")
        )
        assert response.status.code == StatusCode.RESPONDER
        assert response.status.message == "busy"
        assert not response.status.is_success

    def test_blank_status_rejected(self, factory):
        with pytest.raises(IllegalArgumentError, match="status_code"):
            factory.build_logout_response("https://idp.example.com", "")

    def test_blank_issuer_rejected(self, factory):
        with pytest.raises(IllegalArgumentError, match="issuer"):
            factory.build_logout_response("", StatusCode.SUCCESS)


class TestSerialization:
    """Test XML output and parsing back."""

    def test_request_element_layout(self, factory):
        request = factory.build_logout_request(
            "alice", "https://sp.example.com", session_indexes=["s1"], destination="https://idp/slo"
        )
        root = factory.to_element(request)

        assert root.tag == f"{{{SAMLP_NS}}}LogoutRequest"
        assert root.get("Version") == "2.0"
        assert root.get("IssueInstant") == "2025-06-01T12:00:00Z"
        assert root.get("Destination") == "https://idp/slo"
        children = [child.tag for child in root]
        assert children == [
            f"{{{SAML_NS}}}Issuer",
            f"{{{SAML_NS}}}NameID",
            f"{{{SAMLP_NS}}}SessionIndex",
        ]

    def test_request_parse_round_trip(self, factory):
        request = factory.build_logout_request(
            "alice",
            "https://sp.example.com",
            session_indexes=["s1", "s2"],
            destination="https://idp.example.com/slo",
            name_id_format="urn:oasis:names:tc:SAML:2.0:nameid-format:persistent",
        )
        request.not_on_or_after = request.issue_instant + timedelta(minutes=5)

        parsed = factory.extract_logout_request(factory.to_xml(request))

        assert parsed == request

    def test_response_parse_round_trip(self, factory):
        response = factory.build_logout_response(
            "https://idp.example.com",
            StatusCode.PARTIAL_LOGOUT,
            in_response_to="_req",
            destination="https://sp.example.com/slo",
            status_message="one session remained",
        )
        parsed = factory.extract_logout_response(factory.to_xml(response))
        assert parsed == response

    def test_fractional_instants_survive_reserialization(self, factory):
        xml = (
            f'<samlp:LogoutRequest xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
            f'ID="_x" Version="2.0" IssueInstant="2025-06-01T11:59:59.123Z" '
            f'NotOnOrAfter="2025-06-01T12:04:59.5Z"><saml:Issuer>https://idp</saml:Issuer>'
            f"<saml:NameID>alice</saml:NameID></samlp:LogoutRequest>"
        )
        first = factory.extract_logout_request(xml)
        second = factory.extract_logout_request(factory.to_xml(first))

        assert second == first
        assert second.issue_instant.microsecond == 123000
        root = factory.to_element(second)
        assert root.get("IssueInstant") == "2025-06-01T11:59:59.123Z"
        assert root.get("NotOnOrAfter") == "2025-06-01T12:04:59.500Z"

    def test_missing_issue_instant_parses_as_none(self, factory):
        xml = (
            f'<samlp:LogoutRequest xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
            f'ID="_x" Version="2.0"><saml:Issuer>https://idp</saml:Issuer>'
            f"<saml:NameID>alice</saml:NameID></samlp:LogoutRequest>"
        )
        assert factory.extract_logout_request(xml).issue_instant is None

    def test_extract_wrong_type(self, factory):
        response = factory.build_logout_response("https://idp", StatusCode.SUCCESS)
        with pytest.raises(TypeMismatchError):
            factory.extract_logout_request(factory.to_xml(response))

    def test_extract_message_dispatches_on_root(self, factory):
        request = factory.build_logout_request("alice", "https://sp")
        response = factory.build_logout_response("https://idp", StatusCode.SUCCESS)

        assert isinstance(factory.extract_message(factory.parse(factory.to_xml(request))), LogoutRequest)
        assert isinstance(factory.extract_message(factory.parse(factory.to_xml(response))), LogoutResponse)

    def test_extract_message_rejects_other_elements(self, factory):
        with pytest.raises(TypeMismatchError):
            factory.extract_message(factory.parse("<foo/>"))

    def test_parse_rejects_empty_document(self, factory):
        with pytest.raises(ValueError, match="empty"):
            factory.parse("   ")

    def test_parse_rejects_malformed(self, factory):
        with pytest.raises(etree.XMLSyntaxError):
            factory.parse("<samlp:LogoutRequest")


class TestSoapEnvelope:
    """Test SOAP 1.1 wrapping."""

    def test_wrap_and_unwrap(self, factory):
        request = factory.build_logout_request("alice", "https://sp")
        envelope = factory.wrap_in_soap_envelope(request)

        root = etree.fromstring(envelope.encode())
        assert root.tag == f"{{{SOAP_ENV_NS}}}Envelope"
        assert root.find(f"{{{SOAP_ENV_NS}}}Header") is not None

        body = factory.unwrap_soap_body(envelope)
        assert factory.extract_logout_request(body).id == request.id

    def test_wrap_serialized_xml(self, factory):
        request = factory.build_logout_request("alice", "https://sp")
        envelope = factory.wrap_in_soap_envelope(factory.to_xml(request))
        assert factory.extract_logout_request(factory.unwrap_soap_body(envelope)) == request

    def test_unwrap_rejects_non_envelope(self, factory):
        with pytest.raises(TypeMismatchError, match="SOAP Envelope"):
            factory.unwrap_soap_body("<foo/>")

    def test_unwrap_rejects_empty_body(self, factory):
        envelope = (
            f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}"><soap:Body>  </soap:Body></soap:Envelope>'
        )
        with pytest.raises(TypeMismatchError, match="no message"):
            factory.unwrap_soap_body(envelope)
