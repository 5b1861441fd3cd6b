"""
Tests for environment-driven settings.
"""

import pytest
from pydantic import ValidationError

from portfolio_ledger.config import AppSettings, get_settings, validate_all_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestAppSettings:
    """Tests for the application-wide settings."""

    def test_log_level_from_environment(self, monkeypatch):
        """Test LOG_LEVEL overrides the default."""
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert AppSettings(_env_file=None).log_level == "DEBUG"

    def test_unknown_log_level_rejected(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "VERBOSE")
        with pytest.raises(ValidationError):
            AppSettings(_env_file=None)

    def test_only_consumed_settings_are_declared(self, monkeypatch):
        """Test stray variables are ignored rather than exposed as settings."""
        monkeypatch.setenv("DEBUG_MODE", "true")
        monkeypatch.setenv("APP_ENVIRONMENT", "production")

        settings = AppSettings(_env_file=None)

        assert set(AppSettings.model_fields) == {"log_level"}
        assert not hasattr(settings, "debug_mode")

    def test_validate_all_settings_reports_bad_app_config(self, monkeypatch):
        """Test a bad log level shows up in the startup check."""
        monkeypatch.setenv("LOG_LEVEL", "LOUD")

        results = validate_all_settings()

        assert results["app"] is False
        assert "app_error" in results
        assert results["database"] is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
