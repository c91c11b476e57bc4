"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for the OSS Hero webhook platform.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Database connection settings
- Webhook delivery and inbound verification settings
- Rate limiting settings
"""
import os
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Primary database URL (takes precedence if set)
    database_url: Optional[str] = None

    # Individual database components (used if DATABASE_URL not set)
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "oss_hero"
    db_user: str = "oss_hero"
    db_password: str = "oss_hero_dev_password"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 30
    db_echo: bool = False

    @field_validator("db_port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("db_pool_size")
    @classmethod
    def validate_pool_size(cls, v):
        if v < 1:
            raise ValueError("Pool size must be at least 1")
        return v

    def get_database_url(self) -> str:
        """Get the complete database URL."""
        if self.database_url:
            return self.database_url

        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


class WebhookSettings(BaseSettings):
    """Outbound delivery and inbound verification settings."""

    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # JSON file describing event types and their endpoints
    config_path: Optional[str] = None
    user_agent: str = "OSS-Hero-Webhooks/1.0"

    # Inbound provider secrets
    stripe_secret: Optional[str] = Field(None, validation_alias=AliasChoices("stripe_secret", "STRIPE_WEBHOOK_SECRET"))
    github_secret: Optional[str] = Field(None, validation_alias=AliasChoices("github_secret", "GITHUB_WEBHOOK_SECRET"))
    generic_secret: Optional[str] = Field(None, validation_alias=AliasChoices("generic_secret", "GENERIC_WEBHOOK_SECRET"))
    generic_signature_header: str = "X-Hub-Signature-256"

    stripe_tolerance_seconds: int = 300
    idempotency_ttl_seconds: int = 86400
    delivery_retention_days: int = 30
    delivery_workers: int = 3

    @field_validator("stripe_tolerance_seconds", "idempotency_ttl_seconds", "delivery_retention_days")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    def secret_for(self, provider: str) -> Optional[str]:
        """Get the inbound secret configured for a provider."""
        return {
            "stripe": self.stripe_secret,
            "github": self.github_secret,
            "generic": self.generic_secret,
        }.get(provider)


class RateLimitSettings(BaseSettings):
    """Rate limiting settings."""

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    enabled: bool = True
    default_tenant: str = "default"
    # Only enable behind a proxy that sets X-Tenant-ID itself
    trust_tenant_header: bool = False
    # Comma-separated route prefixes that raise the risk score
    sensitive_routes: str = "/api/admin,/api/auth,/api/webhooks,/api/payments"
    violator_retention_seconds: int = 3600
    cleanup_interval_seconds: int = 300

    def get_sensitive_routes(self) -> List[str]:
        """Get sensitive route prefixes as a list."""
        return [route.strip() for route in self.sensitive_routes.split(",") if route.strip()]


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "colored"
    log_file: Optional[str] = None


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="allow")

    # Application settings
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    app_name: str = "OSS Hero Webhooks"
    app_version: str = "1.0.0"

    # Component settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings.
    This function can be used as a FastAPI dependency.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None


def validate_configuration(settings: Optional[Settings] = None) -> List[str]:
    """
    Validate the current configuration and return any errors.

    Checks the database URL, the webhook config file, and that every enabled
    endpoint has a signing secret.

    Returns:
        List of validation error messages
    """
    # Imported here to avoid a config <-> webhooks import cycle
    from ..webhooks.registry import WebhookRegistry

    settings = settings or get_settings()
    errors = []

    if not settings.database.get_database_url():
        errors.append("Database URL is not configured")

    config_path = settings.webhooks.config_path
    if config_path:
        if not os.path.exists(config_path):
            errors.append(f"Webhook config file not found: {config_path}")
        else:
            try:
                registry = WebhookRegistry.from_file(config_path)
                errors.extend(registry.validate())
            except (OSError, ValueError) as e:
                errors.append(f"Webhook config could not be loaded: {e}")

    if settings.is_production():
        if settings.debug:
            errors.append("Debug mode should be disabled in production")
        for provider in ("stripe", "github", "generic"):
            if not settings.webhooks.secret_for(provider):
                errors.append(f"{provider.upper()}_WEBHOOK_SECRET is not set")

    return errors


def get_config_summary(settings: Optional[Settings] = None) -> dict:
    """
    Get a summary of the current configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    settings = settings or get_settings()
    return {
        "environment": settings.environment,
        "debug": settings.debug,
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "database": {
            "host": settings.database.db_host,
            "port": settings.database.db_port,
            "name": settings.database.db_name,
            "pool_size": settings.database.db_pool_size,
        },
        "webhooks": {
            "config_path": settings.webhooks.config_path,
            "stripe_configured": bool(settings.webhooks.stripe_secret),
            "github_configured": bool(settings.webhooks.github_secret),
            "generic_configured": bool(settings.webhooks.generic_secret),
            "idempotency_ttl_seconds": settings.webhooks.idempotency_ttl_seconds,
        },
        "rate_limit": {
            "enabled": settings.rate_limit.enabled,
            "sensitive_routes": settings.rate_limit.get_sensitive_routes(),
        },
        "monitoring": {
            "log_level": settings.monitoring.log_level,
            "log_format": settings.monitoring.log_format,
        },
    }
