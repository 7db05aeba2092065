"""
Configuration management for the collar gateway.

Settings are loaded with pydantic-settings from environment variables and
.env files. The record store endpoint and the device signing key are both
optional: a gateway without a store reports ``store: missing`` and refuses
telemetry, and a gateway without a key accepts unsigned payloads and
reports ``signature: disabled``.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, field_validator, model_validator
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
    Get the .env files to load for the given environment.

    The base .env file is loaded first, then the environment-specific file
    overrides it.
    """
    env_file_map = {
        Environment.DEVELOPMENT: ".env.development",
        Environment.STAGING: ".env.staging",
        Environment.PRODUCTION: ".env.production",
    }
    return (".env", env_file_map.get(environment, ".env.development"))


class Settings(BaseSettings):
    """
    Gateway settings loaded from environment variables.

    Environment-specific configuration is supported through
    .env.development, .env.staging and .env.production; the ENVIRONMENT
    variable determines which file is layered over .env.
    """

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    service_name: str = Field(
        default="Collar Gateway",
        description="Service name reported by /health"
    )
    service_version: str = Field(
        default="6.0.0",
        description="Service version reported by /health"
    )
    port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="HTTP listen port"
    )

    # Record store (Elasticsearch)
    elastic_endpoint: Optional[str] = Field(
        default=None,
        description="Elasticsearch endpoint URL; unset means the store is missing"
    )
    elastic_api_key: Optional[str] = Field(
        default=None,
        description="Elasticsearch API key"
    )
    elastic_index_prefix: str = Field(
        default="",
        description="Prefix prepended to every index name"
    )
    elastic_request_timeout: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Elasticsearch request timeout in seconds"
    )

    # Device signatures
    signing_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("signing_key", "hmac_key"),
        description="Shared key devices mix into the payload checksum"
    )

    # Rate limiting
    rate_limit_enabled: bool = Field(
        default=True,
        description="Whether slowapi rate limits are enforced"
    )
    rate_limit_telemetry_per_minute: int = Field(
        default=600,
        ge=1,
        le=100000,
        description="Maximum telemetry posts per minute per client IP"
    )
    rate_limit_requests_per_minute: int = Field(
        default=300,
        ge=1,
        le=100000,
        description="Maximum read/walk requests per minute per client IP"
    )

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint URL"
    )
    otel_service_name: str = Field(
        default="collar-gateway",
        description="Service name for OpenTelemetry traces"
    )

    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins for the companion app"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("elastic_endpoint")
    @classmethod
    def validate_elastic_endpoint(cls, v: Optional[str]) -> Optional[str]:
        """Blank means unset; anything else must be an HTTP/HTTPS URL."""
        if v is None or not v.strip():
            return None
        v = v.strip().strip('"')
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("elastic_endpoint must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("elastic_api_key", "signing_key", "otel_endpoint")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty strings from .env files as unset."""
        if v is None:
            return None
        v = v.strip().strip('"')
        return v or None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """Validate CORS origins format and reject wildcard patterns."""
        validated_origins = []
        for origin in v:
            origin = origin.strip()
            if "*" in origin:
                raise ValueError(
                    f"Wildcard patterns are not allowed in CORS origins: {origin}"
                )
            if not (origin.startswith("http://") or origin.startswith("https://")):
                raise ValueError(
                    f"Invalid CORS origin format: {origin}. "
                    "Must start with http:// or https://"
                )
            validated_origins.append(origin)
        return validated_origins

    @model_validator(mode="after")
    def validate_store_credentials(self) -> "Settings":
        """An endpoint without an API key is only tolerated in development."""
        if self.elastic_endpoint and not self.elastic_api_key:
            if self.environment != Environment.DEVELOPMENT:
                raise ValueError(
                    "elastic_api_key is required when elastic_endpoint is set "
                    "in non-development environments"
                )
        return self

    @property
    def store_configured(self) -> bool:
        return self.elastic_endpoint is not None

    @property
    def signature_enabled(self) -> bool:
        return self.signing_key is not None


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
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected
            from the ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the environment.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    if environment is None:
        # ENVIRONMENT itself may only be set in .env
        load_dotenv()
        environment = _detect_environment()

    env_files = _get_env_files(environment)
    existing_env_files = [f for f in env_files if Path(f).exists()] or list(env_files)

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(existing_env_files),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore",
                populate_by_name=True,
            )

        return EnvironmentSettings()
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        if hasattr(e, "errors"):
            for error in e.errors():
                field_name = ".".join(str(loc) for loc in error.get("loc", [])) or "settings"
                if error.get("type", "") == "missing":
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name] = error.get("msg", str(error))

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings, loading them on first use.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """Clear the settings cache so tests can reload with different env vars."""
    global _settings_cache
    _settings_cache = None


def validate_startup(settings: Optional[Settings] = None) -> None:
    """
    Validate settings before the gateway accepts requests.

    Staging and production must run with a record store and with signature
    verification enabled; development may run with either missing.

    Raises:
        ConfigurationError: If any startup rule is violated.
    """
    settings = settings or get_settings()
    validation_errors = {}

    if settings.environment != Environment.DEVELOPMENT:
        if not settings.store_configured:
            validation_errors["elastic_endpoint"] = (
                f"A record store is required in the {settings.environment.value} environment"
            )
        if not settings.signature_enabled:
            validation_errors["signing_key"] = (
                f"Signature verification cannot be disabled in the "
                f"{settings.environment.value} environment"
            )

    if settings.environment == Environment.PRODUCTION:
        localhost_only = all(
            "localhost" in origin or "127.0.0.1" in origin
            for origin in settings.cors_origins
        )
        if localhost_only:
            validation_errors["cors_origins"] = (
                "Production environment requires non-localhost CORS origins."
            )

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )
