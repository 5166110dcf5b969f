"""SAML 2.0 security core: metadata, signing, validation and messages."""
