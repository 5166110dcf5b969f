"""Unit tests for CLI commands.

This module tests the saml-fed command-line interface: the main group,
configuration validation, metadata generation and retrieval, and the
logout commands that work without a network.
"""

import json
from unittest.mock import MagicMock

import pytest
import requests
from click.testing import CliRunner

from saml_fed import __version__
from saml_fed.cli.main import cli
from saml_fed.models.saml import ValidationResult
from saml_fed.saml.messages import MessageFactory


@pytest.fixture(autouse=True)
def configure_logging(mocker, tmp_path, monkeypatch):
    """Keep the CLI from replacing the root logging handlers during tests."""
    monkeypatch.chdir(tmp_path)
    mocker.patch("saml_fed.cli.main.configure_operation_logging_from_config")
    return mocker.patch("saml_fed.cli.main.configure_logging")


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, ids, sp_bundle, write_credential):
    """Config file for the SP with its signing credential on disk."""
    cert_path, key_path = write_credential(sp_bundle)
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "entity": {"entity_id": ids["sp"], "single_logout_url": ids["sp_slo"]},
                "signing_credential": {
                    "cert_path": str(cert_path),
                    "key_path": str(key_path),
                    "password_env_var": None,
                },
                "logging": {"level": "WARNING", "log_file": str(tmp_path / "logs" / "cli.log")},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def idp_metadata_file(tmp_path, idp_metadata):
    path = tmp_path / "idp-metadata.xml"
    path.write_text(idp_metadata, encoding="utf-8")
    return f"file:{path}"


class TestMainCLI:
    """Test cases for main CLI entry point."""

    def test_cli_help(self, runner):
        """Test main CLI help output."""
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "saml-fed" in result.output
        assert "--verbose" in result.output
        assert "--redact-identifiers" in result.output

    def test_cli_version(self, runner):
        """Test --version option."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "saml-fed" in result.output
        assert __version__ in result.output

    def test_cli_version_command(self, runner):
        """Test explicit version command."""
        result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert f"saml-fed version {__version__}" in result.output

    def test_verbose_flag_configures_logging(self, runner, configure_logging):
        """Test --verbose flag enables DEBUG logging."""
        result = runner.invoke(cli, ["--verbose", "version"])

        assert result.exit_code == 0
        configure_logging.assert_called_once()
        assert configure_logging.call_args.kwargs["level"] == "DEBUG"

    def test_log_file_and_redaction_flags(self, runner, configure_logging, config_file, tmp_path):
        """Test CLI flags take precedence over the config file."""
        log_file = tmp_path / "override.log"

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "--log-file", str(log_file), "--redact-identifiers", "version"],
        )

        assert result.exit_code == 0
        kwargs = configure_logging.call_args.kwargs
        assert kwargs["level"] == "WARNING"
        assert kwargs["log_file"] == log_file
        assert kwargs["redact_identifiers"] is True

    def test_invalid_config_exits(self, runner, tmp_path):
        """Test a broken config file stops the CLI before any command runs."""
        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")

        result = runner.invoke(cli, ["--config", str(broken), "version"])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


class TestConfigValidate:
    """Test the config validate command."""

    def test_valid_config(self, runner, config_file, ids):
        result = runner.invoke(cli, ["config", "validate", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert ids["sp"] in result.output
        assert "Same as signing" in result.output
        assert "Signing credential:" in result.output
        assert "self-signed" in result.output

    def test_missing_signing_certificate_file(self, runner, tmp_path, ids):
        path = tmp_path / "missing-cert.json"
        path.write_text(
            json.dumps(
                {
                    "entity": {"entity_id": ids["sp"]},
                    "signing_credential": {"cert_path": str(tmp_path / "absent.pem")},
                }
            ),
            encoding="utf-8",
        )

        result = runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 1
        assert "Signing credential could not be loaded" in result.output

    def test_expired_signing_certificate(self, runner, config_file, mocker):
        mocker.patch(
            "saml_fed.cli.main.validate_certificate",
            return_value=ValidationResult(
                is_valid=False, errors=["Certificate expired 2 days ago"], warnings=[]
            ),
        )

        result = runner.invoke(cli, ["config", "validate", str(config_file)])

        assert result.exit_code == 1
        assert "Certificate expired 2 days ago" in result.output

    def test_invalid_config(self, runner, tmp_path):
        path = tmp_path / "invalid.json"
        path.write_text(json.dumps({"logging": {"level": "LOUD"}}), encoding="utf-8")

        result = runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 1
        assert "Configuration validation failed" in result.output


class TestMetadataCommands:
    """Test metadata generate and fetch."""

    def test_generate_sp_metadata(self, runner, config_file, ids):
        result = runner.invoke(cli, ["--config", str(config_file), "metadata", "generate", "--role", "sp"])

        assert result.exit_code == 0
        assert "SPSSODescriptor" in result.output
        assert f'entityID="{ids["sp"]}"' in result.output
        assert ids["sp_slo"] in result.output

    def test_generate_to_file(self, runner, config_file, tmp_path):
        output = tmp_path / "out" / "idp.xml"

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "metadata", "generate", "--role", "IDP", "--output", str(output)],
        )

        assert result.exit_code == 0
        assert "Metadata written to" in result.output
        assert "IDPSSODescriptor" in output.read_text(encoding="utf-8")

    def test_generate_without_credentials(self, runner):
        result = runner.invoke(cli, ["metadata", "generate", "--role", "sp"])

        assert result.exit_code == 1
        assert "Could not load credentials" in result.output

    def test_fetch_file_source(self, runner, config_file, idp_metadata_file, ids):
        result = runner.invoke(cli, ["--config", str(config_file), "metadata", "fetch", idp_metadata_file])

        assert result.exit_code == 0
        assert ids["idp"] in result.output
        assert f"{ids['idp_slo']} (HTTP_REDIRECT)" in result.output
        assert ids["idp_soap"] in result.output
        assert "1 entities loaded" in result.output

    def test_fetch_without_sources(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "metadata", "fetch"])

        assert result.exit_code == 1
        assert "No metadata sources" in result.output


class TestLogoutCommands:
    """Test the logout commands that need no network."""

    def test_request_prints_redirect_url(self, runner, config_file, idp_metadata_file, ids):
        result = runner.invoke(
            cli,
            [
                "--config", str(config_file),
                "logout", "request",
                "--peer", ids["idp"],
                "--name-id", "alice",
                "--session-index", "s1",
                "--metadata", idp_metadata_file,
            ],
        )

        assert result.exit_code == 0
        assert f"{ids['idp_slo']}?SAMLRequest=" in result.output
        assert "Signature=" in result.output

    def test_request_to_unknown_peer(self, runner, config_file, idp_metadata_file):
        result = runner.invoke(
            cli,
            [
                "--config", str(config_file),
                "logout", "request",
                "--peer", "https://stranger.example.com",
                "--name-id", "alice",
                "--metadata", idp_metadata_file,
            ],
        )

        assert result.exit_code == 1
        assert "Unknown entity" in result.output

    @pytest.fixture
    def signed_response(self, engine, idp_signing, ids):
        """A LogoutResponse from the IdP stamped with the real clock."""
        factory = MessageFactory(engine)
        response = factory.build_logout_response(
            ids["idp"],
            "urn:oasis:names:tc:SAML:2.0:status:Success",
            in_response_to="_req1",
            destination=ids["sp_slo"],
        )
        return idp_signing.sign_xml(response).xml_content

    def test_verify_accepts_signed_post_message(
        self, runner, config_file, idp_metadata_file, signed_response, tmp_path
    ):
        message_file = tmp_path / "captured.xml"
        message_file.write_text(signed_response, encoding="utf-8")

        result = runner.invoke(
            cli,
            [
                "--config", str(config_file),
                "logout", "verify", str(message_file),
                "--metadata", idp_metadata_file,
                "--in-response-to", "_req1",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Message:  LogoutResponse" in result.output
        assert "SignatureChecked -> IdCorrelationChecked -> Accepted" in result.output

    def test_verify_rejects_wrong_correlation(
        self, runner, config_file, idp_metadata_file, signed_response, tmp_path
    ):
        message_file = tmp_path / "captured.xml"
        message_file.write_text(signed_response, encoding="utf-8")

        result = runner.invoke(
            cli,
            [
                "--config", str(config_file),
                "logout", "verify", str(message_file),
                "--metadata", idp_metadata_file,
                "--in-response-to", "_other",
            ],
        )

        assert result.exit_code == 1
        assert "Rejected" in result.output
        assert "_other" in result.output


class TestMockHealth:
    """Test the mock health command against a patched HTTP client."""

    def test_healthy_endpoint(self, runner, mocker):
        response = MagicMock()
        response.json.return_value = {
            "status": "healthy",
            "entity_id": "https://sp.example.com/saml",
            "uptime_seconds": 12,
            "request_count": 3,
        }
        get = mocker.patch("saml_fed.cli.mock_commands.requests.get", return_value=response)

        result = runner.invoke(cli, ["mock", "health", "--url", "http://localhost:9000/"])

        assert result.exit_code == 0
        assert "healthy" in result.output
        assert "Requests:  3" in result.output
        get.assert_called_once_with("http://localhost:9000/health", timeout=5.0)

    def test_unreachable_endpoint(self, runner, mocker):
        mocker.patch(
            "saml_fed.cli.mock_commands.requests.get",
            side_effect=requests.ConnectionError("refused"),
        )

        result = runner.invoke(cli, ["mock", "health"])

        assert result.exit_code == 1
        assert "unreachable" in result.output
