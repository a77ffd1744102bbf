"""
Unit tests for environment-based settings.

Tests cover:
- Defaults and derived flags
- Parsing and validation of environment values
- Secret masking
- Loading `.env` files and environment precedence
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from shared_lib.exceptions import ConfigurationError

from axiom_session.auth.storage import DEFAULT_SESSION_PATH
from axiom_session.config import AxiomSettings, from_env
from axiom_session.urls import Region


class TestAxiomSettings:
    def test_defaults(self):
        settings = AxiomSettings()

        assert settings.region == Region.GLOBAL
        assert settings.session_path == DEFAULT_SESSION_PATH
        assert settings.auto_save is True
        assert settings.encrypt_session is False
        assert not settings.has_credentials
        assert not settings.has_tokens
        assert not settings.has_otp_mailbox

    def test_from_mapping(self):
        settings = AxiomSettings.from_mapping(
            {
                "AXIOM_EMAIL": "user@example.com",
                "AXIOM_PASSWORD": "secure_password",
                "AXIOM_SESSION_PATH": "/tmp/axiom/session.json",
                "AXIOM_ENCRYPT_SESSION": "true",
                "AXIOM_AUTO_SAVE": "false",
                "AXIOM_REGION": "eu-west",
                "AXIOM_OTP_TIMEOUT": "30",
                "INBOX_LV_EMAIL": "user@inbox.lv",
                "INBOX_LV_PASSWORD": "mailbox",
                "UNRELATED": "ignored",
            }
        )

        assert settings.has_credentials
        assert settings.has_otp_mailbox
        assert settings.password.get_secret_value() == "secure_password"
        assert settings.session_path == Path("/tmp/axiom/session.json")
        assert settings.encrypt_session is True
        assert settings.auto_save is False
        assert settings.region == Region.EU_WEST
        assert settings.otp_timeout_seconds == 30

    def test_secrets_are_masked(self):
        settings = AxiomSettings.from_mapping(
            {"AXIOM_PASSWORD": "secure_password", "AXIOM_ACCESS_TOKEN": "eyJtoken"}
        )

        assert "secure_password" not in repr(settings)
        assert "eyJtoken" not in repr(settings)

    def test_empty_values_are_ignored(self):
        settings = AxiomSettings.from_mapping({"AXIOM_EMAIL": "", "AXIOM_REGION": ""})

        assert settings.email is None
        assert settings.region == Region.GLOBAL

    @pytest.mark.parametrize(
        "values",
        [
            {"AXIOM_REGION": "mars"},
            {"AXIOM_OTP_TIMEOUT": "0"},
            {"AXIOM_OTP_POLL_INTERVAL": "soon"},
        ],
    )
    def test_invalid_values(self, values):
        with pytest.raises(ConfigurationError):
            AxiomSettings.from_mapping(values)

    def test_frozen(self):
        settings = AxiomSettings()

        with pytest.raises(ValidationError):
            settings.email = "other@example.com"


class TestFromEnv:
    def test_reads_dotenv_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "AXIOM_EMAIL=file@example.com\nAXIOM_PASSWORD=from-file\nAXIOM_REGION=asia\n"
        )

        settings = from_env(env_file)

        assert settings.email == "file@example.com"
        assert settings.region == Region.ASIA

    def test_environment_wins_over_dotenv(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("AXIOM_EMAIL=file@example.com\n")
        clean_env.setenv("AXIOM_EMAIL", "shell@example.com")

        assert from_env(env_file).email == "shell@example.com"

    def test_missing_file(self, clean_env, tmp_path):
        clean_env.setenv("AXIOM_ACCESS_TOKEN", "access")
        clean_env.setenv("AXIOM_REFRESH_TOKEN", "refresh")

        settings = from_env(tmp_path / "missing.env")

        assert settings.has_tokens
        assert not settings.has_credentials
