"""
Environment configuration loader using Pydantic BaseSettings.

This module centralizes all environment configuration for the Melody Map token
service. It provides type safety, validation, and automatic loading from
environment variables and .env files. All settings are validated at startup to
fail fast with clear errors.
"""

import json
from typing import Annotated, Any, List, Optional

import structlog
from pydantic import AliasChoices, BeforeValidator, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = structlog.get_logger(__name__)


def parse_string_list(v: Any) -> List[str]:
    """
    Parse string lists from various input formats.

    Supports:
    - Native Python list (from code/tests)
    - JSON array string: '["http://localhost:5173", "https://app.example.com"]'
    - Comma-separated string: 'http://localhost:5173,https://app.example.com'
    - Empty string or None: returns empty list
    """
    if v is None:
        return []
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        if s.startswith("["):
            return json.loads(s)
        return [item.strip() for item in s.split(",") if item.strip()]
    return v


# NoDecode prevents automatic JSON parsing, BeforeValidator applies our custom parser
StringList = Annotated[List[str], NoDecode, BeforeValidator(parse_string_list)]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Priority order for loading values:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values defined here

    Required fields will cause startup failure if not provided.
    """

    # ===== Application Settings =====
    app_env: str = Field(
        default="development",
        description="Application environment (development/staging/production/test)",
    )

    app_name: str = Field(
        default="Melody Map Token Service",
        description="Application name for logging and identification",
    )

    app_version: str = Field(default="0.1.0", description="Application version")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)"
    )

    # ===== API Security =====
    api_key: str = Field(
        ...,  # Required field, no default
        description="API key for authenticating requests to this service",
        min_length=32,
    )

    cors_origins: StringList = Field(
        default=["http://localhost:5173"],
        description="List of allowed CORS origins (JSON array or comma-separated in env)",
    )

    # ===== Server Configuration =====
    host: str = Field(default="0.0.0.0", description="Host to bind the server to")

    port: int = Field(
        default=3001, description="Port to bind the server to", ge=1, le=65535
    )

    # ===== Database Configuration =====
    database_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
        description="Database URL (postgresql://... or sqlite+aiosqlite://... for development)",
    )

    database_pool_size: int = Field(
        default=10, description="Database connection pool size", ge=1, le=100
    )

    database_pool_timeout: int = Field(
        default=30, description="Database connection pool timeout in seconds", ge=1
    )

    # ===== Token Encryption =====
    fernet_key: Optional[str] = Field(
        default=None,
        validate_default=True,
        description="Fernet key used to encrypt platform tokens at rest",
    )

    # ===== Spotify OAuth Configuration =====
    spotify_client_id: Optional[str] = Field(
        default=None, description="Spotify OAuth app client ID"
    )

    spotify_client_secret: Optional[str] = Field(
        default=None, description="Spotify OAuth app client secret"
    )

    spotify_token_url: str = Field(
        default="https://accounts.spotify.com/api/token",
        description="Spotify OAuth token endpoint",
    )

    spotify_api_url: str = Field(
        default="https://api.spotify.com/v1",
        description="Spotify Web API base URL",
    )

    # ===== Deezer OAuth Configuration =====
    deezer_app_id: Optional[str] = Field(
        default=None, description="Deezer application ID"
    )

    deezer_secret: Optional[str] = Field(
        default=None, description="Deezer application secret"
    )

    deezer_api_url: str = Field(
        default="https://api.deezer.com", description="Deezer API base URL"
    )

    # ===== Token Lifecycle Configuration =====
    token_refresh_buffer_minutes: int = Field(
        default=5,
        description="Lookahead window before expiry in which a token counts as stale",
        ge=0,
        le=60,
    )

    token_refresh_interval_minutes: float = Field(
        default=30,
        description="Interval between background refresh sweeps",
        gt=0,
    )

    token_refresh_delay_ms: int = Field(
        default=100,
        description="Pause between sequential refreshes during a sweep",
        ge=0,
        le=10000,
    )

    stale_connection_retention_days: int = Field(
        default=7,
        description="Days past expiry after which an active connection is deactivated",
        ge=1,
    )

    non_expiring_token_days: int = Field(
        default=365,
        description="Far-future expiry stored for providers whose tokens never expire",
        ge=1,
    )

    provider_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for calls to provider token and profile endpoints",
        gt=0,
        le=120,
    )

    oauth_refresh_max_attempts: int = Field(
        default=2,
        description="Attempts per refresh exchange when the network fails",
        ge=1,
        le=5,
    )

    oauth_refresh_backoff_seconds: float = Field(
        default=0.5,
        description="Base delay for exponential backoff between network retries",
        ge=0,
    )

    token_refresh_scheduler_enabled: bool = Field(
        default=True,
        description="Run the background token refresh scheduler in this process",
    )

    # ===== Validators =====

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, origins: List[str], info) -> List[str]:
        """Reject the CORS wildcard in production."""
        app_env = info.data.get("app_env", "development")
        if app_env == "production" and "*" in origins:
            raise ValueError("CORS wildcard (*) not allowed in production")
        return origins

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Ensure app environment is valid."""
        valid_envs = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid app_env: {v}. Must be one of {valid_envs}")
        return v_lower

    @field_validator("fernet_key", mode="before")
    @classmethod
    def generate_fernet_key_if_needed(cls, v: Optional[str]) -> str:
        """Generate Fernet key if not provided."""
        if v is None or v == "":
            from cryptography.fernet import Fernet

            key = Fernet.generate_key().decode()
            logger.warning(
                "Generated new Fernet key - save this in .env for persistence"
            )
            return key
        return v

    # ===== Pydantic Config =====

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # Accept API_KEY or api_key
        extra="ignore",
    )

    def log_config(self) -> None:
        """Log configuration (with secrets masked)."""
        config_dict = self.model_dump()

        sensitive_fields = [
            "api_key",
            "spotify_client_secret",
            "deezer_secret",
            "fernet_key",
            "database_url",
        ]

        for field in sensitive_fields:
            if field in config_dict and config_dict[field]:
                value = str(config_dict[field])
                if len(value) > 8:
                    config_dict[field] = f"{value[:4]}...{value[-4:]}"
                else:
                    config_dict[field] = "***"

        logger.info("Configuration loaded", **config_dict)

    def validate_required_for_production(self) -> None:
        """Additional validation for production environment."""
        if self.app_env == "production":
            errors = []

            if not self.database_url:
                errors.append("DATABASE_URL is required in production")

            if not self.spotify_client_id or not self.spotify_client_secret:
                errors.append("Spotify OAuth credentials required in production")

            if self.log_level == "DEBUG":
                logger.warning(
                    "DEBUG log level in production - consider using INFO or higher"
                )

            if errors:
                raise ValueError(
                    f"Production configuration errors: {'; '.join(errors)}"
                )


# ===== Global Settings Instance =====

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Use this function as a FastAPI dependency for injecting settings.
    """
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
            _settings.validate_required_for_production()
            logger.info(
                "Settings loaded successfully",
                app_env=_settings.app_env,
                app_version=_settings.app_version,
            )
        except ValidationError as e:
            logger.error("Failed to load settings", errors=e.errors())
            raise
        except Exception as e:
            logger.error("Unexpected error loading settings", error=str(e))
            raise

    return _settings


def reset_settings() -> None:
    """Reset settings (useful for testing)."""
    global _settings
    _settings = None
