"""Entry point for running saml_fed as a module.

This allows the package to be executed as:
    python -m saml_fed
"""

from saml_fed.cli.main import cli

if __name__ == "__main__":
    cli()
