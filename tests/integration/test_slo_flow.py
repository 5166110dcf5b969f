"""Integration tests for single logout between two federated entities.

An SP and an IdP are each wired with build_federation(), exchange their
generated metadata through the ingester, and run logout over the IdP's
Flask mock endpoint on every binding.
"""

import dataclasses
import html
import re
from concurrent.futures import wait
from typing import List
from urllib.parse import urlsplit

import pytest

from saml_fed.config.schema import Config, EntityConfig
from saml_fed.federation import Federation, build_federation
from saml_fed.mock_server.app import create_app
from saml_fed.models.entity import Binding
from saml_fed.models.protocol import LogoutRequest
from saml_fed.saml.certificate_manager import StaticCredentialStore

pytestmark = pytest.mark.integration

SP_ID = "https://sp.example.org/saml"
SP_SLO = "https://sp.example.org/slo"
IDP_ID = "https://idp.example.org/saml"
IDP_SLO = "https://idp.example.org/slo"


def _federation(engine, bundle, entity_id: str, slo_url: str) -> Federation:
    config = Config(entity=EntityConfig(entity_id=entity_id, single_logout_url=slo_url))
    return build_federation(config, credentials=StaticCredentialStore(bundle), engine=engine)


def _exchange_metadata(federation: Federation, peer_metadata: str) -> None:
    futures = federation.ingester.ingest([peer_metadata])
    wait(futures)
    for future in futures:
        assert future.exception() is None


@pytest.fixture
def sp_federation(engine, sp_bundle):
    federation = _federation(engine, sp_bundle, SP_ID, SP_SLO)
    yield federation
    federation.shutdown()


@pytest.fixture
def idp_federation(engine, idp_bundle):
    federation = _federation(engine, idp_bundle, IDP_ID, IDP_SLO)
    yield federation
    federation.shutdown()


@pytest.fixture
def ended_sessions() -> List[LogoutRequest]:
    return []


@pytest.fixture
def federated(sp_federation, idp_federation):
    """Both parties trusting each other through their generated metadata."""
    _exchange_metadata(sp_federation, idp_federation.generate_metadata("idp"))
    _exchange_metadata(idp_federation, sp_federation.generate_metadata("sp"))
    return sp_federation, idp_federation


@pytest.fixture
def idp_client(federated, ended_sessions):
    _, idp_federation = federated
    service = idp_federation.logout_service(ended_sessions.append)
    app = create_app(service, idp_federation.generate_metadata("idp"))
    app.config["TESTING"] = True
    return app.test_client()


def _redirect_target(page: str) -> str:
    href = re.search(r'<a href="([^"]*)"', page).group(1)
    return html.unescape(href)


def test_peers_published_every_logout_binding(federated):
    sp_federation, idp_federation = federated

    idp_record = sp_federation.catalog.lookup(IDP_ID)
    sp_record = idp_federation.catalog.lookup(SP_ID)

    assert idp_record.single_logout_url == IDP_SLO
    assert idp_record.single_logout_binding is Binding.HTTP_REDIRECT
    assert idp_record.soap_logout_url == IDP_SLO
    assert sp_record.single_logout_url == SP_SLO
    assert sp_record.soap_logout_url == SP_SLO
    assert sp_record.signing_certificate is not None


def test_redirect_logout_through_mock_endpoint(federated, idp_client, ended_sessions):
    sp_federation, _ = federated
    sp_service = sp_federation.logout_service()

    outbound = sp_service.initiate_logout(IDP_ID, "alice", ["idx-1"], relay_value="/portal")
    page = idp_client.get(f"/slo?{urlsplit(outbound.redirect_url).query}")

    assert page.status_code == 200
    assert [request.session_indexes for request in ended_sessions] == [["idx-1"]]

    reply_url = _redirect_target(page.get_data(as_text=True))
    assert reply_url.startswith(f"{SP_SLO}?SAMLResponse=")

    result = sp_service.handle_redirect(urlsplit(reply_url).query)

    assert result.accepted, result.failure
    assert result.relay_value == "/portal"
    assert result.message.in_response_to == outbound.message.id


def test_post_logout_through_mock_endpoint(federated, idp_client, ended_sessions):
    sp_federation, _ = federated
    record = sp_federation.catalog.lookup(IDP_ID)
    sp_federation.catalog.upsert(
        IDP_ID, dataclasses.replace(record, single_logout_binding=Binding.HTTP_POST)
    )
    sp_service = sp_federation.logout_service()

    outbound = sp_service.initiate_logout(IDP_ID, "bob")
    form = {
        name: html.unescape(value)
        for name, value in re.findall(r'name="([^"]*)" value="([^"]*)"', outbound.form_html)
    }
    page = idp_client.post("/slo", data=form)

    assert page.status_code == 200
    assert [request.name_id for request in ended_sessions] == ["bob"]
    result = sp_service.handle_redirect(urlsplit(_redirect_target(page.get_data(as_text=True))).query)
    assert result.accepted, result.failure


def test_soap_logout_through_mock_endpoint(federated, idp_client, ended_sessions, mocker):
    sp_federation, _ = federated

    def post_to_idp(url, envelope, message_id=None):
        assert url == IDP_SLO
        reply = idp_client.post("/slo", data=envelope, content_type="text/xml; charset=utf-8")
        return reply.get_data(as_text=True)

    mocker.patch.object(sp_federation.soap_client, "send", side_effect=post_to_idp)

    response = sp_federation.logout_service().send_soap_logout(IDP_ID, "carol", ["idx-9"])

    assert response.status.is_success
    assert response.issuer == IDP_ID
    assert [request.name_id for request in ended_sessions] == ["carol"]


def test_forged_request_is_rejected(federated, idp_client, ended_sessions, engine, ec_bundle):
    sp_federation, _ = federated
    forger = _federation(engine, ec_bundle, SP_ID, SP_SLO)
    forger.catalog.upsert(IDP_ID, sp_federation.catalog.lookup(IDP_ID))
    try:
        outbound = forger.logout_service().initiate_logout(IDP_ID, "alice")
    finally:
        forger.shutdown()

    page = idp_client.get(f"/slo?{urlsplit(outbound.redirect_url).query}")

    assert page.status_code == 400
    assert ended_sessions == []
