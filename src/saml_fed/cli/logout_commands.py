"""Single logout CLI commands.

This module provides commands for building outbound LogoutRequests and for
validating captured inbound logout messages.
"""

import logging
from concurrent.futures import wait
from pathlib import Path
from typing import Optional, Tuple

import click
from lxml import etree

from saml_fed.federation import Federation, build_federation
from saml_fed.models.entity import Binding
from saml_fed.saml.bindings import parse_redirect_query
from saml_fed.saml.validator import parse_inbound
from saml_fed.utils.encoding import base64_decode
from saml_fed.utils.exceptions import (
    ConfigurationError,
    CryptoFailure,
    TransportFailure,
    TypeMismatchError,
    ValidationFailure,
    ValidationRule,
)

logger = logging.getLogger(__name__)

BINDING_CHOICES = {
    "redirect": Binding.HTTP_REDIRECT,
    "post": Binding.HTTP_POST,
    "soap": Binding.SOAP,
}


def _load_peers(federation: Federation, sources: Tuple[str, ...]) -> None:
    targets = list(sources) or list(federation.config.metadata.sources)
    futures = federation.ingester.ingest(targets)
    wait(futures)
    for future in futures:
        error = future.exception()
        if error is not None:
            click.echo(click.style("⚠", fg="yellow") + f" {error}", err=True)


@click.group(name="logout")
def logout_group() -> None:
    """Single logout commands."""
    pass


@logout_group.command(name="request")
@click.option("--peer", required=True, help="Entity ID of the peer to log out from")
@click.option("--name-id", required=True, help="NameID of the principal")
@click.option("--session-index", "session_indexes", multiple=True, help="SessionIndex (repeatable)")
@click.option(
    "--metadata",
    "metadata_sources",
    multiple=True,
    help="Metadata source for the peer (repeatable; defaults to configured sources)",
)
@click.option("--relay-state", default=None, help="Caller state to carry through RelayState")
@click.option(
    "--output",
    type=click.Path(path_type=Path),
    default=None,
    help="Write the form or URL to file instead of stdout",
)
@click.pass_context
def request(
    ctx: click.Context,
    peer: str,
    name_id: str,
    session_indexes: Tuple[str, ...],
    metadata_sources: Tuple[str, ...],
    relay_state: Optional[str],
    output: Optional[Path],
) -> None:
    """Build a signed LogoutRequest for a peer's SLO endpoint.

    Prints the redirect URL for the HTTP-Redirect binding or the
    auto-submitting form for HTTP-POST.

    Example:

        saml-fed logout request --peer https://idp.example.com \\
            --name-id alice --metadata idp-metadata.xml
    """
    federation = build_federation(ctx.obj["config"])
    try:
        _load_peers(federation, metadata_sources)
        service = federation.logout_service()
        outbound = service.initiate_logout(
            peer, name_id, session_indexes=list(session_indexes), relay_value=relay_state
        )
    except (ConfigurationError, CryptoFailure, ValueError) as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" {e}", err=True)
        logger.error(f"Logout request failed: {e}")
        raise click.exceptions.Exit(1)
    finally:
        federation.shutdown()

    content = outbound.redirect_url or outbound.form_html or ""
    click.echo(
        click.style("✓", fg="green", bold=True)
        + f" LogoutRequest {outbound.message.id} ({outbound.binding.name}) to {outbound.location}",
        err=True,
    )
    if output is None:
        click.echo(content)
    else:
        output.write_text(content, encoding="utf-8")
        click.echo(f"Written to {output}", err=True)


@logout_group.command(name="soap")
@click.option("--peer", required=True, help="Entity ID of the peer to log out from")
@click.option("--name-id", required=True, help="NameID of the principal")
@click.option("--session-index", "session_indexes", multiple=True, help="SessionIndex (repeatable)")
@click.option("--metadata", "metadata_sources", multiple=True, help="Metadata source for the peer")
@click.pass_context
def soap(
    ctx: click.Context,
    peer: str,
    name_id: str,
    session_indexes: Tuple[str, ...],
    metadata_sources: Tuple[str, ...],
) -> None:
    """Send a LogoutRequest over the SOAP back channel.

    Example:

        saml-fed logout soap --peer https://idp.example.com --name-id alice
    """
    federation = build_federation(ctx.obj["config"])
    try:
        _load_peers(federation, metadata_sources)
        response = federation.logout_service().send_soap_logout(
            peer, name_id, session_indexes=list(session_indexes)
        )
    except (ConfigurationError, CryptoFailure, TransportFailure, ValueError) as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" {e}", err=True)
        logger.error(f"SOAP logout failed: {e}")
        raise click.exceptions.Exit(1)
    except ValidationFailure as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" Reply rejected: {e}", err=True)
        raise click.exceptions.Exit(1)
    finally:
        federation.shutdown()

    if response.status.is_success:
        click.echo(click.style("✓", fg="green", bold=True) + f" Logged out at {peer}")
        return
    click.echo(
        click.style("✗", fg="red", bold=True)
        + f" Peer answered {response.status.code}: {response.status.message or ''}"
    )
    raise click.exceptions.Exit(1)


@logout_group.command(name="verify")
@click.argument("message_file", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--binding",
    type=click.Choice(sorted(BINDING_CHOICES), case_sensitive=False),
    default="post",
    help="Binding the message arrived on",
)
@click.option(
    "--destination",
    default=None,
    help="Expected Destination (defaults to the configured SLO URL)",
)
@click.option("--metadata", "metadata_sources", multiple=True, help="Metadata source for the issuer")
@click.option("--in-response-to", default=None, help="Expected InResponseTo for responses")
@click.pass_context
def verify(
    ctx: click.Context,
    message_file: Path,
    binding: str,
    destination: Optional[str],
    metadata_sources: Tuple[str, ...],
    in_response_to: Optional[str],
) -> None:
    """Validate a captured inbound logout message.

    MESSAGE_FILE holds the raw query string for redirect, the base64 form
    value or XML for post, or the SOAP envelope for soap.

    Example:

        saml-fed logout verify captured.xml --binding post --metadata idp.xml
    """
    config = ctx.obj["config"]
    chosen = BINDING_CHOICES[binding.lower()]
    destination = destination or config.entity.single_logout_url
    raw = message_file.read_text(encoding="utf-8").strip()

    federation = build_federation(config)
    try:
        _load_peers(federation, metadata_sources)
        builder = federation.validator_builder(chosen).destination(destination)

        if chosen is Binding.HTTP_REDIRECT:
            query = parse_redirect_query(raw)
            xml = query.decode_message()
            builder.redirect_params(query.signature, query.sig_alg, query.signed_string)
        elif chosen is Binding.SOAP:
            xml = federation.factory.unwrap_soap_body(raw)
        else:
            xml = raw if raw.startswith("<") else base64_decode(raw)

        message, document = parse_inbound(federation.factory, xml)
        record = federation.catalog.lookup(message.issuer)
        if record is None:
            raise ValidationFailure(
                ValidationRule.SIGNATURE, f"Untrusted signer: unknown issuer {message.issuer!r}"
            )

        outcome = (
            builder.certificate(record.signing_certificate)
            .expected_in_response_to(in_response_to)
            .build()
            .evaluate(message, document)
        )
    except ValidationFailure as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" Rejected: {e}")
        raise click.exceptions.Exit(1)
    except (
        ConfigurationError,
        CryptoFailure,
        TypeMismatchError,
        ValueError,
        etree.XMLSyntaxError,
    ) as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" {e}", err=True)
        logger.error(f"Verification failed: {e}")
        raise click.exceptions.Exit(1)
    finally:
        federation.shutdown()

    click.echo(f"Message:  {message.element_name} {message.id}")
    click.echo(f"Issuer:   {message.issuer}")
    click.echo(f"Trail:    {' -> '.join(state.value for state in outcome.trail)}")
    if outcome.accepted:
        click.echo(click.style("✓", fg="green", bold=True) + " Accepted")
        return
    click.echo(click.style("✗", fg="red", bold=True) + f" Rejected: {outcome.failure}")
    raise click.exceptions.Exit(1)
