"""Command-line interface for the SAML federation core."""
