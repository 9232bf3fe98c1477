"""
Centralized configuration management for the mongocdc change stream engine.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
import logging
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


FULL_DOCUMENT_MODES = ("default", "updateLookup", "whenAvailable", "required")


class MongoSettings(BaseSettings):
    """MongoDB connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    uri: str = Field(
        default="mongodb://localhost:27017/?replicaSet=rs0",
        description="MongoDB connection URI (change streams need a replica set)"
    )
    database: str = Field(default="testdb", description="Database to watch")
    collection: str = Field(default="users", description="Collection to watch")

    # Connection settings
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")
    max_pool_size: int = Field(default=100, description="Max connection pool size")


class CDCSettings(BaseSettings):
    """Change stream watcher configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(default=True, description="Start the watcher with the application")
    full_document: str = Field(
        default="updateLookup",
        description="Lookup mode: default, updateLookup, whenAvailable or required"
    )
    batch_size: Optional[int] = Field(default=None, description="Change stream batch size hint")
    max_await_time_ms: Optional[int] = Field(
        default=None,
        description="Max time the server waits for new changes per getMore (ms)"
    )

    # Reconnect settings
    auto_reconnect: bool = Field(default=True, description="Reopen the stream after errors")
    reconnect_delay: float = Field(default=1.0, description="Seconds to wait before each reopen")
    max_reconnect_attempts: int = Field(
        default=5,
        description="Reopen attempts before giving up (0 = unlimited)"
    )

    @field_validator("full_document")
    @classmethod
    def validate_full_document(cls, v: str) -> str:
        """Validate lookup mode."""
        if v not in FULL_DOCUMENT_MODES:
            raise ValueError(f"full_document must be one of: {FULL_DOCUMENT_MODES}")
        return v

    @field_validator("reconnect_delay")
    @classmethod
    def validate_reconnect_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("reconnect_delay must be non-negative")
        return v

    @field_validator("max_reconnect_attempts")
    @classmethod
    def validate_max_reconnect_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_reconnect_attempts must be non-negative")
        return v


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="Root log level for mongocdc loggers")
    json_format: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level


class APISettings(BaseSettings):
    """API server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="API_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    host: str = Field(default="0.0.0.0", description="API server host")
    port: int = Field(default=8000, description="API server port")
    prefix: str = Field(default="/cdc", description="Route prefix for CDC endpoints")


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    cdc: CDCSettings = Field(default_factory=CDCSettings)
    log: LoggingSettings = Field(default_factory=LoggingSettings)
    api: APISettings = Field(default_factory=APISettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
