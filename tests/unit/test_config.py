"""Unit tests for configuration module."""

import pytest

from mailmirror.config import Settings, get_settings


class TestSettings:
    """Test suite for Settings class."""

    def test_default_settings(self) -> None:
        """Test that default settings are properly initialized."""
        settings = Settings(_env_file=None)

        assert settings.search_rrf_k == 60
        assert settings.embedding_batch_size == 16
        assert settings.push_backoff_base_seconds == 1.0
        assert settings.push_backoff_cap_seconds == 60.0
        assert settings.storage_error_threshold == 3
        assert settings.qdrant_location == ":memory:"
        assert settings.log_level == "INFO"
        assert settings.debug is False

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test loading settings from environment variables."""
        monkeypatch.setenv("MAILMIRROR_SEARCH_RRF_K", "10")
        monkeypatch.setenv("MAILMIRROR_SYNC_WORKERS", "2")
        monkeypatch.setenv("MAILMIRROR_OLLAMA_HOST", "http://custom:11434")
        monkeypatch.setenv("MAILMIRROR_DEBUG", "true")

        # Clear the cache to ensure fresh settings
        get_settings.cache_clear()

        settings = get_settings()

        assert settings.search_rrf_k == 10
        assert settings.sync_workers == 2
        assert settings.ollama_host == "http://custom:11434"
        assert settings.debug is True

        # Clean up
        get_settings.cache_clear()

    def test_get_settings_returns_cached_instance(self) -> None:
        """Test that get_settings returns the same cached instance."""
        get_settings.cache_clear()

        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2

        # Clean up
        get_settings.cache_clear()
