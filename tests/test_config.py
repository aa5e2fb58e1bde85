"""Tests for configuration settings."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from ampel_sync.config import BulkMergeConfig, Settings, SyncConfig, get_settings


class TestSettings:
    """Tests for Settings class."""

    def test_settings_defaults(self):
        """Test default values are correct."""
        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite+aiosqlite:///./ampel.db"
        assert settings.encryption_key == ""
        assert settings.environment == "development"
        assert settings.log_level == "INFO"
        assert settings.rate_limit.reserve_buffer_pct == 5.0
        assert settings.status.required_approvals == 1
        assert settings.bulk_merge.default_strategy == "squash"

    def test_settings_from_env(self, monkeypatch):
        """Test environment variables override defaults."""
        monkeypatch.setenv("AMPEL_DATABASE_URL", "sqlite+aiosqlite:///./test.db")
        monkeypatch.setenv("AMPEL_ENCRYPTION_KEY", "a2V5")
        monkeypatch.setenv("AMPEL_ENVIRONMENT", "production")
        monkeypatch.setenv("AMPEL_LOG_LEVEL", "DEBUG")

        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite+aiosqlite:///./test.db"
        assert settings.encryption_key == "a2V5"
        assert settings.environment == "production"
        assert settings.log_level == "DEBUG"

    def test_nested_settings_from_env(self, monkeypatch):
        """Nested sections use a double underscore."""
        monkeypatch.setenv("AMPEL_SYNC__MAX_CONCURRENT_JOBS", "3")
        monkeypatch.setenv("AMPEL_STATUS__REQUIRE_REVIEW_BY_DEFAULT", "false")
        monkeypatch.setenv("AMPEL_RATE_LIMIT__RESERVE_BUFFER_PCT", "10")

        settings = Settings(_env_file=None)

        assert settings.sync.max_concurrent_jobs == 3
        assert settings.status.require_review_by_default is False
        assert settings.rate_limit.reserve_buffer_pct == 10.0

    def test_settings_environment_validation(self, monkeypatch):
        """Test that invalid environment value is rejected."""
        monkeypatch.setenv("AMPEL_ENVIRONMENT", "invalid")

        with pytest.raises(ValueError):
            Settings(_env_file=None)

    def test_settings_log_level_validation(self, monkeypatch):
        """Test that invalid log level is rejected."""
        monkeypatch.setenv("AMPEL_LOG_LEVEL", "INVALID")

        with pytest.raises(ValueError):
            Settings(_env_file=None)

    def test_settings_case_insensitive(self, monkeypatch):
        """Test that env var names are case-insensitive."""
        monkeypatch.setenv("ampel_database_url", "sqlite+aiosqlite:///./lower.db")

        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite+aiosqlite:///./lower.db"


class TestSyncConfig:
    """Derived values and bounds of the scheduler configuration."""

    def test_intervals(self):
        config = SyncConfig(poll_interval_seconds=60, token_refresh_lead_hours=48)

        assert config.poll_interval == timedelta(minutes=1)
        assert config.token_refresh_lead == timedelta(days=2)

    def test_defaults(self):
        config = SyncConfig()

        assert config.backoff_base_seconds == 30
        assert config.backoff_cap_seconds == 1800
        assert config.max_attempts == 8
        assert config.request_timeout_seconds == 30.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"poll_interval_seconds": 1},
            {"max_concurrent_jobs": 0},
            {"backoff_factor": 0.5},
            {"max_attempts": 0},
        ],
    )
    def test_bounds(self, kwargs):
        with pytest.raises(ValidationError):
            SyncConfig(**kwargs)


class TestBulkMergeConfig:
    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            BulkMergeConfig(default_strategy="octopus")

    def test_delay_bounds(self):
        with pytest.raises(ValidationError):
            BulkMergeConfig(merge_delay_seconds=-1)


class TestGetSettings:
    """Tests for get_settings function."""

    def test_get_settings_returns_settings(self):
        """Test that get_settings returns a Settings instance."""
        get_settings.cache_clear()

        settings = get_settings()

        assert isinstance(settings, Settings)

    def test_get_settings_cached(self):
        """Test that get_settings returns cached instance."""
        get_settings.cache_clear()

        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2
