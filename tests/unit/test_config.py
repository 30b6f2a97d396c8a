"""Tests for settings and logging setup."""

import logging

import pytest
from pydantic import ValidationError

from spendnote.config import Settings, configure_logging, get_settings, reset_settings


@pytest.fixture(autouse=True)
def clean_settings():
    reset_settings()
    yield
    reset_settings()


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.deployment_mode == "development"
        assert settings.proof_backend == "mock"
        assert settings.default_amount == 10**18
        assert settings.link_ttl_minutes == 60
        assert not settings.is_production

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SPENDNOTE_DEPLOYMENT_MODE", "production")
        monkeypatch.setenv("SPENDNOTE_PROOF_BACKEND", "external")
        monkeypatch.setenv("SPENDNOTE_PROVER_TIMEOUT_SECONDS", "7.5")
        settings = Settings(_env_file=None)
        assert settings.is_production
        assert settings.proof_backend == "external"
        assert settings.prover_timeout_seconds == 7.5

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("SPENDNOTE_LINK_TTL_MINUTES=5\nSPENDNOTE_CLAIM_BASE_URL=https://x.test/c\n")
        settings = Settings(_env_file=str(env_file))
        assert settings.link_ttl_minutes == 5
        assert settings.claim_base_url == "https://x.test/c"

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, proof_backend="quantum")
        with pytest.raises(ValidationError):
            Settings(_env_file=None, link_ttl_minutes=0)

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()


class TestLogging:
    """Tests for logging configuration."""

    def test_single_handler(self):
        logger = configure_logging("DEBUG")
        count = len(logger.handlers)
        configure_logging("WARNING")
        assert len(logger.handlers) == count
        assert logger.level == logging.WARNING
