"""Data models for SAML entities, protocol messages and key material."""
