"""
Tests for Application Configuration.

Settings are built directly (not from the environment) so each test
controls every critical value.
"""

import pytest

from credit_engine.config import ConfigurationError, Settings


def _settings(**overrides) -> Settings:
    values = {
        "storage_backend": "postgres",
        "database_url": "postgresql+asyncpg://u:p@localhost/credits",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSettingsValidation:
    """Tests for FAIL FAST validation."""

    def test_valid_postgres_settings(self):
        settings = _settings()

        assert settings.storage_backend == "postgres"
        assert settings.read_database_url == settings.database_url

    def test_read_replica_url(self):
        settings = _settings(database_read_url="postgresql+asyncpg://u:p@replica/credits")

        assert settings.read_database_url.endswith("@replica/credits")

    def test_postgres_requires_database_url(self):
        with pytest.raises(ConfigurationError) as exc_info:
            _settings(database_url="")
        assert "DATABASE_URL is required" in str(exc_info.value)

    def test_postgres_rejects_other_databases(self):
        with pytest.raises(ConfigurationError):
            _settings(database_url="mysql://u:p@localhost/credits")

    def test_memory_backend_needs_no_database(self):
        settings = _settings(storage_backend="memory", database_url="")

        assert settings.storage_backend == "memory"

    def test_stale_window_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            _settings(reservation_stale_after_seconds=0)

    def test_identity_timeout_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            _settings(identity_timeout_seconds=0)

    def test_log_format_checked(self):
        with pytest.raises(ConfigurationError):
            _settings(log_format="xml")

    def test_errors_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            _settings(database_url="", log_format="xml")
        message = str(exc_info.value)
        assert "DATABASE_URL" in message
        assert "LOG_FORMAT" in message


class TestPolicyDefaults:
    """Billing policy defaults."""

    def test_defaults(self):
        settings = _settings()

        assert settings.allow_rollover is False
        assert settings.bill_partial_output is True
        assert settings.allow_shortfall_overdraft is False
        assert settings.reservation_stale_after_seconds == 900

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("ALLOW_ROLLOVER", "true")
        monkeypatch.setenv("ALLOW_SHORTFALL_OVERDRAFT", "1")

        settings = _settings()

        assert settings.allow_rollover is True
        assert settings.allow_shortfall_overdraft is True
