"""Unit tests for configuration loading."""

import json
import logging
import os
from pathlib import Path

import pytest

from saml_fed.config import Config, EntityConfig, load_config
from saml_fed.config.manager import ENV_PREFIX
from saml_fed.models.entity import Binding
from saml_fed.utils.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run every test in an empty directory with no SAML_FED_* variables."""
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def _write_config(path: Path, data) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestDefaults:
    """Test behaviour without a configuration file."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.json")

        assert config.entity.entity_id == "http://localhost:8080/saml"
        assert config.entity.single_logout_url == "http://localhost:8080/slo"
        assert config.validation.issue_timeout == 600
        assert config.validation.jitter == 30
        assert config.validation.require_signed_post is False
        assert config.relay_state.ttl == 600
        assert config.metadata.sources == []
        assert config.metadata.supported_bindings == [Binding.HTTP_POST, Binding.HTTP_REDIRECT]
        assert config.signing_credential.password_env_var == "SAML_FED_KEY_PASSWORD"

    def test_model_defaults(self):
        config = Config(entity=EntityConfig(entity_id="https://sp.example.com"))
        assert config.metadata.max_retries == 5
        assert config.transport.verify_tls is True
        assert config.operation_logging.signing_log_level == "WARNING"


class TestConfigFile:
    """Test JSON configuration files."""

    def test_values_from_file(self, tmp_path):
        path = _write_config(
            tmp_path / "config.json",
            {
                "entity": {"entity_id": "https://sp.example.com/saml"},
                "metadata": {"sources": ["https://fed.example.com/md.xml"], "max_retries": 3},
                "validation": {"require_signed_post": True},
                "logging": {"level": "debug"},
            },
        )
        config = load_config(path)

        assert config.entity.entity_id == "https://sp.example.com/saml"
        assert config.metadata.sources == ["https://fed.example.com/md.xml"]
        assert config.metadata.max_retries == 3
        assert config.validation.require_signed_post is True
        assert config.logging.level == "DEBUG"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_config(path)

    def test_top_level_must_be_object(self, tmp_path):
        path = _write_config(tmp_path / "config.json", ["entity"])
        with pytest.raises(ConfigurationError, match="JSON object"):
            load_config(path)

    def test_missing_entity_section(self, tmp_path):
        path = _write_config(tmp_path / "config.json", {"validation": {}})
        with pytest.raises(ConfigurationError, match="validation failed"):
            load_config(path)

    def test_invalid_metadata_source(self, tmp_path):
        path = _write_config(
            tmp_path / "config.json",
            {"entity": {"entity_id": "https://sp"}, "metadata": {"sources": ["ftp://fed"]}},
        )
        with pytest.raises(ConfigurationError, match="Invalid metadata source"):
            load_config(path)

    def test_invalid_log_level(self, tmp_path):
        path = _write_config(
            tmp_path / "config.json",
            {"entity": {"entity_id": "https://sp"}, "logging": {"level": "LOUD"}},
        )
        with pytest.raises(ConfigurationError, match="Invalid log level"):
            load_config(path)

    def test_key_without_certificate(self, tmp_path):
        path = _write_config(
            tmp_path / "config.json",
            {"entity": {"entity_id": "https://sp"}, "signing_credential": {"key_path": "key.pem"}},
        )
        with pytest.raises(ConfigurationError, match="cert_path"):
            load_config(path)

    def test_password_in_file_is_dropped(self, tmp_path, caplog):
        caplog.set_level(logging.WARNING)
        path = _write_config(
            tmp_path / "config.json",
            {
                "entity": {"entity_id": "https://sp"},
                "signing_credential": {"cert_path": "cert.pem", "password": "hunter2"},
            },
        )
        config = load_config(path)

        assert not hasattr(config.signing_credential, "password")
        assert "Password found in signing_credential" in caplog.text
        assert "hunter2" not in caplog.text


class TestEnvironmentOverrides:
    """Test SAML_FED_* overrides."""

    def test_env_beats_file(self, tmp_path, monkeypatch):
        path = _write_config(
            tmp_path / "config.json",
            {"entity": {"entity_id": "https://file.example.com"}, "validation": {"jitter": 10}},
        )
        monkeypatch.setenv("SAML_FED_ENTITY_ID", "https://env.example.com")
        monkeypatch.setenv("SAML_FED_JITTER", "45")
        monkeypatch.setenv("SAML_FED_REQUIRE_SIGNED_POST", "yes")

        config = load_config(path)

        assert config.entity.entity_id == "https://env.example.com"
        assert config.validation.jitter == 45.0
        assert config.validation.require_signed_post is True

    def test_comma_separated_sources(self, tmp_path, monkeypatch):
        monkeypatch.setenv(
            "SAML_FED_METADATA_SOURCES", "https://a.example.com/md, file:/etc/md.xml,"
        )
        config = load_config(tmp_path / "absent.json")
        assert config.metadata.sources == ["https://a.example.com/md", "file:/etc/md.xml"]

    def test_unparseable_number(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SAML_FED_METADATA_MAX_WORKERS", "many")
        with pytest.raises(ConfigurationError, match="SAML_FED_METADATA_MAX_WORKERS"):
            load_config(tmp_path / "absent.json")

    def test_out_of_range_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SAML_FED_METADATA_MAX_WORKERS", "0")
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "absent.json")
