"""CLI commands for the mock SLO endpoint."""

import logging
from concurrent.futures import wait

import click
import requests

from ..federation import build_federation
from ..mock_server.app import create_app, run_server
from ..utils.exceptions import ConfigurationError, CryptoFailure

logger = logging.getLogger(__name__)


@click.group(name="mock")
def mock_group() -> None:
    """Mock SLO endpoint commands."""
    pass


@mock_group.command(name="start")
@click.option("--host", default="127.0.0.1", help="Host address to bind")
@click.option("--port", type=int, default=8080, help="Port to listen on")
@click.option(
    "--role",
    type=click.Choice(["idp", "sp"], case_sensitive=False),
    default="sp",
    help="Role this entity's /metadata document describes",
)
@click.option("--debug", is_flag=True, help="Enable Flask debug mode")
@click.pass_context
def start(ctx: click.Context, host: str, port: int, role: str, debug: bool) -> None:
    """Start the mock SLO endpoint in the foreground.

    Peers are loaded from the configured metadata sources before the
    server starts; remote sources keep refreshing in the background.

    Example:

        saml-fed mock start --port 8080
    """
    config = ctx.obj["config"]
    federation = build_federation(config)

    try:
        futures = federation.ingester.ingest(config.metadata.sources)
    except ConfigurationError as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" {e}", err=True)
        federation.shutdown()
        raise click.exceptions.Exit(1)
    wait(futures)
    for future in futures:
        if future.exception() is not None:
            click.echo(click.style("⚠", fg="yellow") + f" {future.exception()}", err=True)
    federation.ingester.start_refresh()
    federation.relay_states.start()

    try:
        metadata_xml = federation.generate_metadata(role.lower())
    except CryptoFailure as e:
        logger.warning(f"Serving without /metadata: {e}")
        metadata_xml = None

    try:
        service = federation.logout_service()
    except ConfigurationError as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" {e}", err=True)
        federation.shutdown()
        raise click.exceptions.Exit(1)

    click.echo(click.style("✓", fg="green", bold=True) + f" Mock SLO endpoint on http://{host}:{port}")
    click.echo(f"  Entity ID: {service.entity_id}")
    click.echo(f"  Peers:     {len(federation.catalog)}")
    click.echo("  Endpoints: /health, /metadata, /slo")
    click.echo("\nPress CTRL+C to stop")

    try:
        run_server(create_app(service, metadata_xml), host=host, port=port, debug=debug)
    finally:
        federation.shutdown()


@mock_group.command(name="health")
@click.option("--url", default="http://127.0.0.1:8080", help="Base URL of the mock endpoint")
@click.option("--timeout", type=float, default=5.0, help="Request timeout in seconds")
def health(url: str, timeout: float) -> None:
    """Check a running mock endpoint's health.

    Example:

        saml-fed mock health --url http://localhost:8080
    """
    try:
        response = requests.get(f"{url.rstrip('/')}/health", timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" Mock endpoint unreachable: {e}")
        raise click.exceptions.Exit(1)

    click.echo(click.style("✓", fg="green", bold=True) + f" {data.get('status', 'unknown')}")
    click.echo(f"  Entity ID: {data.get('entity_id')}")
    click.echo(f"  Uptime:    {data.get('uptime_seconds')}s")
    click.echo(f"  Requests:  {data.get('request_count')}")
