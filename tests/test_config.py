"""
Tests for configuration loading and validation.

Validates environment variable handling, defaults, validation rules,
and error handling for missing or invalid configuration.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from melody_map.config import Settings, get_settings, reset_settings

VALID_KEY = "test-key-32-characters-long-enough"


class TestConfiguration:
    """Test suite for configuration management."""

    def test_settings_loads_with_defaults(self):
        """Token lifecycle defaults match the production schedule."""
        with patch.dict(os.environ, {"APP_ENV": "test", "API_KEY": VALID_KEY}, clear=True):
            settings = Settings(_env_file=None)

            assert settings.app_env == "test"
            assert settings.port == 3001
            assert settings.cors_origins == ["http://localhost:5173"]
            assert settings.token_refresh_buffer_minutes == 5
            assert settings.token_refresh_interval_minutes == 30
            assert settings.token_refresh_delay_ms == 100
            assert settings.stale_connection_retention_days == 7
            assert settings.non_expiring_token_days == 365
            assert settings.provider_timeout_seconds == 10.0
            assert settings.token_refresh_scheduler_enabled is True
            assert settings.spotify_token_url == "https://accounts.spotify.com/api/token"

    def test_settings_validates_required_fields(self):
        """Missing API key fails fast."""
        with patch.dict(os.environ, {"APP_ENV": "test"}, clear=True):
            with pytest.raises(ValidationError) as exc_info:
                Settings(_env_file=None)

            assert "api_key" in str(exc_info.value).lower()

    def test_settings_validates_api_key_length(self):
        with patch.dict(os.environ, {"API_KEY": "short"}, clear=True):
            with pytest.raises(ValidationError) as exc_info:
                Settings(_env_file=None)

            assert "api_key" in str(exc_info.value).lower()

    def test_fernet_key_generated_when_missing(self):
        with patch.dict(os.environ, {"API_KEY": VALID_KEY}, clear=True):
            settings = Settings(_env_file=None)

            assert settings.fernet_key
            assert len(settings.fernet_key) == 44

    def test_cors_origins_comma_separated(self):
        with patch.dict(
            os.environ,
            {
                "API_KEY": VALID_KEY,
                "CORS_ORIGINS": "http://localhost:5173, https://melodymap.app",
            },
            clear=True,
        ):
            settings = Settings(_env_file=None)

            assert settings.cors_origins == [
                "http://localhost:5173",
                "https://melodymap.app",
            ]

    def test_cors_origins_json_array(self):
        with patch.dict(
            os.environ,
            {"API_KEY": VALID_KEY, "CORS_ORIGINS": '["https://melodymap.app"]'},
            clear=True,
        ):
            assert Settings(_env_file=None).cors_origins == ["https://melodymap.app"]

    def test_cors_wildcard_rejected_in_production(self):
        with patch.dict(
            os.environ,
            {"API_KEY": VALID_KEY, "APP_ENV": "production", "CORS_ORIGINS": "*"},
            clear=True,
        ):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_token_lifecycle_overrides(self):
        with patch.dict(
            os.environ,
            {
                "API_KEY": VALID_KEY,
                "TOKEN_REFRESH_BUFFER_MINUTES": "10",
                "TOKEN_REFRESH_INTERVAL_MINUTES": "15",
                "TOKEN_REFRESH_SCHEDULER_ENABLED": "false",
            },
            clear=True,
        ):
            settings = Settings(_env_file=None)

            assert settings.token_refresh_buffer_minutes == 10
            assert settings.token_refresh_interval_minutes == 15
            assert settings.token_refresh_scheduler_enabled is False

    def test_invalid_log_level(self):
        with patch.dict(os.environ, {"API_KEY": VALID_KEY, "LOG_LEVEL": "chatty"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_database_url_alias(self):
        with patch.dict(
            os.environ,
            {"API_KEY": VALID_KEY, "DB_URL": "postgresql://u:p@localhost/melody"},
            clear=True,
        ):
            assert Settings(_env_file=None).database_url == "postgresql://u:p@localhost/melody"

    def test_production_requires_database_and_spotify(self):
        with patch.dict(
            os.environ, {"API_KEY": VALID_KEY, "APP_ENV": "production"}, clear=True
        ):
            settings = Settings(_env_file=None)

            with pytest.raises(ValueError) as exc_info:
                settings.validate_required_for_production()

            assert "DATABASE_URL" in str(exc_info.value)
            assert "Spotify" in str(exc_info.value)

    def test_get_settings_singleton(self):
        reset_settings()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings()

    def test_entry_point_serves_on_configured_host_and_port(self):
        from melody_map.__main__ import main

        reset_settings()
        try:
            with patch.dict(
                os.environ,
                {"API_KEY": VALID_KEY, "HOST": "127.0.0.1", "PORT": "8123"},
                clear=True,
            ), patch("melody_map.__main__.uvicorn.run") as run:
                main()
        finally:
            reset_settings()

        run.assert_called_once_with(
            "melody_map.app:app", host="127.0.0.1", port=8123, log_level="info"
        )
