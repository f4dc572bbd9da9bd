"""Tests for environment-driven settings."""

from __future__ import annotations

from syncspine.core.settings import SyncSettings, get_settings


class TestSyncSettings:
    def test_defaults(self):
        settings = SyncSettings()
        assert settings.worker_batch_size == 5
        assert settings.job_default_max_attempts == 3
        assert settings.ingestion_interval_seconds == 1800.0
        assert set(settings.rate_limits) == {"keepa", "sp_api"}

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("SYNCSPINE_WORKER_BATCH_SIZE", "11")
        monkeypatch.setenv("SYNCSPINE_LOG_LEVEL", "DEBUG")
        settings = SyncSettings()
        assert settings.worker_batch_size == 11
        assert settings.log_level == "DEBUG"

    def test_nested_rate_limit_override(self, monkeypatch):
        monkeypatch.setenv("SYNCSPINE_RATE_LIMITS__SP_API__RATE", "2.5")
        monkeypatch.setenv("SYNCSPINE_RATE_LIMITS__SP_API__CAPACITY", "8")
        settings = SyncSettings()
        assert settings.rate_limits["sp_api"].rate == 2.5
        assert settings.rate_limits["sp_api"].capacity == 8

    def test_timeout_for_known_and_unknown_type(self):
        settings = SyncSettings()
        assert settings.timeout_for("SYNC_KEEPA_ASIN") == 120.0
        assert settings.timeout_for("SOMETHING_ELSE") == settings.job_default_timeout_seconds

    def test_batch_size_for(self):
        settings = SyncSettings()
        assert settings.batch_size_for("keepa") == 10
        assert settings.batch_size_for("sp_api") == 20
        assert settings.batch_size_for("other") == settings.source_default_batch_size

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
