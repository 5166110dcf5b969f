"""Main CLI entry point for saml-fed.

This module provides the main Click command group for the saml-fed CLI.
"""

from pathlib import Path
from typing import Optional

import click

from saml_fed import __version__
from saml_fed.cli.logout_commands import logout_group
from saml_fed.cli.metadata_commands import metadata_group
from saml_fed.cli.mock_commands import mock_group
from saml_fed.config import Config, load_config
from saml_fed.logging_audit import configure_logging
from saml_fed.logging_audit.logger import configure_operation_logging_from_config
from saml_fed.saml.certificate_manager import FileCredentialStore, validate_certificate
from saml_fed.utils.exceptions import ConfigurationError, CryptoFailure


@click.group()
@click.version_option(version=__version__, prog_name="saml-fed")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to configuration file (default: ./config/config.json)",
)
@click.option("--verbose", is_flag=True, help="Enable verbose logging (DEBUG level)")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to log file (overrides config file)",
)
@click.option(
    "--redact-identifiers",
    is_flag=True,
    help="Redact NameIDs, encoded messages and certificates from logs",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Optional[Path],
    verbose: bool,
    log_file: Optional[Path],
    redact_identifiers: bool,
) -> None:
    """saml-fed - SAML 2.0 single logout and metadata tooling.

    Common usage:

        # Fetch and summarize a peer's metadata
        saml-fed metadata fetch https://idp.example.com/metadata

        # Build a signed LogoutRequest for a peer
        saml-fed logout request --metadata idp.xml --peer https://idp.example.com --name-id alice

        # Start the local mock SLO endpoint
        saml-fed mock start

    Use --help with any command for more information.
    """
    ctx.ensure_object(dict)

    try:
        config_obj = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        ctx.exit(1)
        return

    ctx.obj["config"] = config_obj
    ctx.obj["verbose"] = verbose

    # Precedence: CLI flags > config file > defaults
    configure_logging(
        level="DEBUG" if verbose else config_obj.logging.level,
        log_file=log_file or config_obj.logging.log_file,
        redact_identifiers=redact_identifiers or config_obj.logging.redact_identifiers,
    )
    configure_operation_logging_from_config(config_obj.operation_logging)


cli.add_command(metadata_group)
cli.add_command(logout_group)
cli.add_command(mock_group)


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command()
@click.argument("config_file", type=click.Path(exists=True, path_type=Path))
def validate(config_file: Path) -> None:
    """Validate a configuration file.

    Example:
        saml-fed config validate config/config.json
    """
    try:
        config_obj = load_config(config_file)
    except ConfigurationError as e:
        click.echo(click.style("✗", fg="red", bold=True) + " Configuration validation failed")
        click.echo(f"\n{e}", err=True)
        raise click.exceptions.Exit(1)

    click.echo(click.style("✓", fg="green", bold=True) + " Configuration is valid")
    click.echo(f"\nConfiguration file: {config_file}")

    click.echo("\nEntity:")
    click.echo(f"  Entity ID:   {config_obj.entity.entity_id}")
    click.echo(f"  SLO URL:     {config_obj.entity.single_logout_url or 'Not configured'}")

    click.echo("\nCredentials:")
    signing = config_obj.signing_credential
    click.echo(f"  Signing:     {signing.cert_path or 'Not configured'}")
    click.echo(f"  Encryption:  {config_obj.encryption_credential.cert_path or 'Same as signing'}")

    click.echo("\nMetadata:")
    click.echo(f"  Sources:     {len(config_obj.metadata.sources)}")
    click.echo(f"  Workers:     {config_obj.metadata.max_workers}")
    click.echo(f"  Refresh:     {config_obj.metadata.refresh_interval:g}s")

    click.echo("\nValidation:")
    click.echo(f"  Issue timeout:       {config_obj.validation.issue_timeout:g}s")
    click.echo(f"  Jitter:              {config_obj.validation.jitter:g}s")
    click.echo(f"  Require signed POST: {config_obj.validation.require_signed_post}")

    click.echo("\nLogging:")
    click.echo(f"  Level:       {config_obj.logging.level}")
    click.echo(f"  Log file:    {config_obj.logging.log_file}")

    if signing.cert_path is not None and not _check_signing_credential(config_obj):
        raise click.exceptions.Exit(1)


def _check_signing_credential(config_obj: Config) -> bool:
    """Load the signing credential and check its certificate's validity period."""
    click.echo("\nSigning credential:")
    store = FileCredentialStore(config_obj.signing_credential, config_obj.encryption_credential)
    try:
        bundle = store.get_signing_credential()
    except CryptoFailure as e:
        click.echo(click.style("✗", fg="red", bold=True) + f" Signing credential could not be loaded: {e}")
        return False

    result = validate_certificate(bundle.certificate)
    click.echo(f"  Subject:     {bundle.info.subject}")
    click.echo(f"  Expires:     {bundle.certificate.not_valid_after_utc.strftime('%Y-%m-%d')}")
    for warning in result.warnings:
        click.echo(click.style("  ⚠ ", fg="yellow") + warning)
    for error in result.errors:
        click.echo(click.style("  ✗ ", fg="red") + error)
    return result.is_valid


cli.add_command(config)


@cli.command()
def version() -> None:
    """Display version information."""
    click.echo(f"saml-fed version {__version__}")


if __name__ == "__main__":
    cli()
