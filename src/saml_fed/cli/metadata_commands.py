"""Metadata CLI commands.

This module provides commands for retrieving peer metadata and generating
this entity's own metadata document.
"""

import logging
from concurrent.futures import wait
from pathlib import Path
from typing import Optional, Tuple

import click

from saml_fed.federation import build_federation
from saml_fed.utils.exceptions import ConfigurationError, CryptoFailure

logger = logging.getLogger(__name__)


@click.group(name="metadata")
def metadata_group() -> None:
    """Metadata retrieval and generation commands."""
    pass


@metadata_group.command(name="fetch")
@click.argument("sources", nargs=-1, required=False)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Per-request timeout in seconds (overrides config)",
)
@click.pass_context
def fetch(ctx: click.Context, sources: Tuple[str, ...], timeout: Optional[float]) -> None:
    """Retrieve metadata and list the entities it describes.

    SOURCES may be http(s):// URLs, file: paths or directories. When none
    are given the configured metadata sources are used.

    Examples:

        # Fetch a remote IdP's metadata
        saml-fed metadata fetch https://idp.example.com/metadata

        # Load every file in a directory
        saml-fed metadata fetch file:/etc/saml/peers
    """
    config = ctx.obj["config"]
    if timeout is not None:
        config.metadata.timeout = timeout

    targets = list(sources) or list(config.metadata.sources)
    if not targets:
        click.echo("No metadata sources given and none configured.", err=True)
        raise click.exceptions.Exit(1)

    federation = build_federation(config)
    failures = 0
    try:
        try:
            futures = federation.ingester.ingest(targets)
        except ConfigurationError as e:
            click.echo(click.style("✗", fg="red", bold=True) + f" {e}", err=True)
            raise click.exceptions.Exit(1)

        wait(futures)
        for future in futures:
            error = future.exception()
            if error is not None:
                failures += 1
                click.echo(click.style("✗", fg="red", bold=True) + f" {error}", err=True)
                logger.error(f"Metadata fetch failed: {error}")
    finally:
        federation.shutdown()

    records = federation.catalog.records()
    for record in sorted(records, key=lambda r: r.entity_id):
        click.echo(click.style("✓", fg="green", bold=True) + f" {record.entity_id}")
        click.echo(f"    Source:          {record.source}")
        if record.single_sign_on_url:
            binding = record.single_sign_on_binding.name if record.single_sign_on_binding else "-"
            click.echo(f"    SSO:             {record.single_sign_on_url} ({binding})")
        if record.assertion_consumer_url:
            binding = (
                record.assertion_consumer_binding.name if record.assertion_consumer_binding else "-"
            )
            click.echo(f"    ACS:             {record.assertion_consumer_url} ({binding})")
        if record.single_logout_url:
            binding = record.single_logout_binding.name if record.single_logout_binding else "-"
            click.echo(f"    SLO:             {record.single_logout_url} ({binding})")
        if record.soap_logout_url:
            click.echo(f"    SLO (SOAP):      {record.soap_logout_url}")
        click.echo(f"    Signing cert:    {'yes' if record.signing_certificate else 'no'}")
        if record.valid_until:
            click.echo(f"    Valid until:     {record.valid_until.isoformat()}")

    click.echo(f"\n{len(records)} entities loaded")
    if failures:
        click.echo(f"{failures} sources failed", err=True)
        raise click.exceptions.Exit(1)


@metadata_group.command(name="generate")
@click.option(
    "--role",
    type=click.Choice(["idp", "sp"], case_sensitive=False),
    required=True,
    help="Role to describe this entity as",
)
@click.option(
    "--output",
    type=click.Path(path_type=Path),
    default=None,
    help="Write metadata to file instead of stdout",
)
@click.pass_context
def generate(ctx: click.Context, role: str, output: Optional[Path]) -> None:
    """Generate this entity's metadata from the configured credentials.

    Examples:

        saml-fed metadata generate --role sp

        saml-fed metadata generate --role idp --output idp-metadata.xml
    """
    config = ctx.obj["config"]
    federation = build_federation(config)
    try:
        xml = federation.generate_metadata(role.lower())
    except CryptoFailure as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" Could not load credentials: {e}", err=True)
        logger.error(f"Metadata generation failed: {e}")
        raise click.exceptions.Exit(1)
    finally:
        federation.shutdown()

    if output is None:
        click.echo(xml)
        return

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(xml, encoding="utf-8")
    except OSError as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" Cannot write {output}: {e}", err=True)
        raise click.exceptions.Exit(1)
    click.echo(click.style("✓", fg="green", bold=True) + f" Metadata written to {output}")
