"""Shared utilities: exception taxonomy and SAML wire encodings."""
