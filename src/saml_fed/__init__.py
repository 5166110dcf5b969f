"""SAML 2.0 federation core: metadata, signing, and Single Logout validation."""

__version__ = "0.1.0"
