"""
Configuration management for the session store service.

This module provides configuration loading and validation using Pydantic settings.
Connection details for the remote session store are read from REDIS_* environment
variables; application level options (environment, logging, tracing) are read from
unprefixed variables. Both can also come from .env files.

Unit conventions:
- ``ttl``, ``connect_timeout`` and ``operation_timeout`` are seconds
- ``base_backoff_ms`` and ``max_backoff_ms`` are milliseconds at this boundary
  only; everything past it works in float seconds (see ``base_backoff_seconds``)
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional, List, Tuple

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the list of .env files to load for the given environment.

    Files are loaded in order, with later files overriding earlier ones.
    """
    return (".env", f".env.{environment.value}")


def _existing_env_files(environment: Environment) -> Tuple[str, ...]:
    existing = tuple(f for f in _get_env_files(environment) if Path(f).exists())
    return existing or _get_env_files(environment)


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append(f"\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)

    @classmethod
    def from_validation_error(cls, message: str, error: ValidationError) -> "ConfigurationError":
        """Build a ConfigurationError from a Pydantic ValidationError."""
        missing_fields = []
        invalid_fields = {}

        for detail in error.errors():
            field_name = '.'.join(str(loc) for loc in detail.get('loc', [])) or "__root__"
            if detail.get('type') == 'missing':
                missing_fields.append(field_name)
            else:
                invalid_fields[field_name] = detail.get('msg', str(detail))

        return cls(message, missing_fields=missing_fields, invalid_fields=invalid_fields)


class StoreConfig(BaseSettings):
    """
    Immutable connection and lifecycle settings for the remote session store.

    Every field maps to a REDIS_* environment variable (REDIS_HOST, REDIS_TTL,
    REDIS_MAX_RECONNECT_ATTEMPTS, ...). Instances are frozen; invalid values
    are rejected at construction, before any connection is attempted.
    """

    host: str = Field(
        default="localhost",
        description="Hostname of the Redis server"
    )
    port: int = Field(
        default=6379,
        ge=1,
        le=65535,
        description="TCP port of the Redis server"
    )
    password: Optional[SecretStr] = Field(
        default=None,
        description="Optional Redis AUTH password"
    )
    db: int = Field(
        default=0,
        ge=0,
        description="Logical Redis database index"
    )
    key_prefix: str = Field(
        default="sess:",
        description="Namespace prepended to every session key"
    )
    ttl: int = Field(
        default=43200,  # 12 hours
        gt=0,
        description="Default session lifetime in seconds"
    )
    max_reconnect_attempts: int = Field(
        default=10,
        ge=0,
        description="Reconnect attempts before the connection is declared failed"
    )
    base_backoff_ms: int = Field(
        default=1000,
        gt=0,
        description="Delay before the first reconnect attempt, in milliseconds"
    )
    max_backoff_ms: int = Field(
        default=60000,
        gt=0,
        description="Ceiling for a single reconnect delay, in milliseconds"
    )
    connect_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout in seconds for the connection handshake and ping"
    )
    operation_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Timeout in seconds for a single session operation"
    )
    heartbeat_interval: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between liveness pings on an idle connection (0 disables)"
    )
    fallback_on_failure: bool = Field(
        default=True,
        description="Switch to the in-memory store once reconnection has failed"
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Validate that host is not empty."""
        if not v or not v.strip():
            raise ValueError("host cannot be empty")
        return v.strip()

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        """Validate that key_prefix is not empty, so sessions stay namespaced."""
        if not v:
            raise ValueError("key_prefix cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_backoff_range(self) -> "StoreConfig":
        """Validate that the backoff ceiling is not below the base delay."""
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be greater than or equal to base_backoff_ms")
        return self

    @property
    def base_backoff_seconds(self) -> float:
        return self.base_backoff_ms / 1000.0

    @property
    def max_backoff_seconds(self) -> float:
        return self.max_backoff_ms / 1000.0

    def describe(self) -> dict[str, Any]:
        """Return the non-secret settings, suitable for logs and diagnostics."""
        return {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "key_prefix": self.key_prefix,
            "ttl": self.ttl,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "base_backoff_ms": self.base_backoff_ms,
            "max_backoff_ms": self.max_backoff_ms,
            "heartbeat_interval": self.heartbeat_interval,
        }


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment-specific configuration is supported through:
    - .env.development - Development environment settings
    - .env.staging - Staging environment settings
    - .env.production - Production environment settings

    The ENVIRONMENT variable determines which file to load.
    """

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint URL"
    )
    otel_service_name: str = Field(
        default="session-store",
        description="Service name for OpenTelemetry traces"
    )
    health_poll_interval: float = Field(
        default=60.0,
        ge=0,
        description="Seconds between background session store health polls (0 disables)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Factory function to create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected from
                    ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the specified environment.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    try:
        return Settings(_env_file=_existing_env_files(environment))
    except ValidationError as e:
        raise ConfigurationError.from_validation_error(
            f"Failed to load configuration for environment '{environment.value}'", e
        ) from e


def load_store_config(environment: Optional[Environment] = None, **overrides: Any) -> StoreConfig:
    """
    Build the session store configuration from the environment.

    Keyword overrides take precedence over environment variables, which makes
    this the single entry point for both production startup and tests.

    Raises:
        ConfigurationError: If any value is missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    try:
        return StoreConfig(_env_file=_existing_env_files(environment), **overrides)
    except ValidationError as e:
        raise ConfigurationError.from_validation_error(
            "Invalid session store configuration", e
        ) from e


# Global settings cache
_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Settings are loaded once and cached for subsequent calls.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    This is primarily useful for testing to allow reloading settings
    with different environment variables.
    """
    global _settings_cache
    _settings_cache = None


def validate_startup() -> StoreConfig:
    """
    Validate all settings at application startup.

    Loads the application settings and the session store configuration so that
    a bad value fails the process loudly before any connection is attempted.

    Returns:
        StoreConfig: The validated session store configuration.

    Raises:
        ConfigurationError: If any setting is missing or invalid.
    """
    settings = get_settings()
    store_config = load_store_config(settings.environment)

    if settings.environment == Environment.PRODUCTION and store_config.password is None:
        if store_config.host not in {"localhost", "127.0.0.1"}:
            raise ConfigurationError(
                "Configuration validation failed during startup",
                invalid_fields={
                    "password": "A remote Redis host in production requires REDIS_PASSWORD"
                }
            )

    return store_config


def get_environment_info() -> dict:
    """
    Get information about the current environment configuration.

    Returns:
        dict: Information about the detected environment and loaded config files.
    """
    environment = _detect_environment()
    env_files = _get_env_files(environment)

    existing_files = [f for f in env_files if Path(f).exists()]

    return {
        "environment": environment.value,
        "env_files_checked": list(env_files),
        "env_files_loaded": existing_files,
    }
