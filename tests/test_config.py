"""
Tests for application settings.
"""

import json

import pytest

from src.shared.config import (
    DatabaseSettings, Environment, RateLimitSettings, Settings, WebhookSettings,
    get_config_summary, get_settings, reset_settings, validate_configuration
)


class TestSettings:
    """Test environment-driven configuration."""

    def test_database_url_from_components(self):
        settings = DatabaseSettings(db_host="db", db_port=5433, db_name="hero", db_user="u", db_password="p")
        assert settings.get_database_url() == "postgresql+asyncpg://u:p@db:5433/hero"

    def test_explicit_database_url_wins(self):
        settings = DatabaseSettings(database_url="sqlite+aiosqlite:///x.db", db_host="db")
        assert settings.get_database_url() == "sqlite+aiosqlite:///x.db"

    def test_invalid_port(self):
        with pytest.raises(ValueError):
            DatabaseSettings(db_port=70000)

    def test_provider_secrets_from_environment(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_env")
        monkeypatch.setenv("WEBHOOK_IDEMPOTENCY_TTL_SECONDS", "600")

        settings = WebhookSettings()

        assert settings.secret_for("stripe") == "whsec_env"
        assert settings.secret_for("unknown") is None
        assert settings.idempotency_ttl_seconds == 600

    def test_sensitive_routes_parsing(self):
        settings = RateLimitSettings(sensitive_routes=" /api/admin, /billing ,,")
        assert settings.get_sensitive_routes() == ["/api/admin", "/billing"]

    def test_debug_rejected_in_production(self):
        with pytest.raises(ValueError):
            Settings(environment=Environment.PRODUCTION, debug=True)

    def test_get_settings_is_cached(self):
        reset_settings()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings()


class TestValidateConfiguration:
    """Test startup configuration checks."""

    def test_valid_development_configuration(self):
        settings = Settings(database=DatabaseSettings(database_url="sqlite+aiosqlite:///x.db"))
        assert validate_configuration(settings) == []

    def test_missing_config_file(self, tmp_path):
        settings = Settings(webhooks=WebhookSettings(config_path=str(tmp_path / "missing.json")))

        errors = validate_configuration(settings)
        assert any("not found" in error for error in errors)

    def test_invalid_endpoints_in_config_file(self, tmp_path):
        path = tmp_path / "webhooks.json"
        path.write_text(json.dumps({
            "events": {"lead_captured": {"endpoints": [{"url": "https://a.example.com/h", "secret": ""}]}}
        }))
        settings = Settings(webhooks=WebhookSettings(config_path=str(path)))

        assert validate_configuration(settings) == ["lead_captured.endpoints[0]: Secret is required"]

    def test_production_requires_provider_secrets(self, monkeypatch):
        for name in ("STRIPE_WEBHOOK_SECRET", "GITHUB_WEBHOOK_SECRET", "GENERIC_WEBHOOK_SECRET"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(environment=Environment.PRODUCTION, webhooks=WebhookSettings(github_secret="x"))
        errors = validate_configuration(settings)

        assert "STRIPE_WEBHOOK_SECRET is not set" in errors
        assert "GENERIC_WEBHOOK_SECRET is not set" in errors
        assert "GITHUB_WEBHOOK_SECRET is not set" not in errors

    def test_summary_hides_secrets(self):
        settings = Settings(webhooks=WebhookSettings(stripe_secret="whsec_secret_value"))
        summary = get_config_summary(settings)

        assert summary["webhooks"]["stripe_configured"] is True
        assert "whsec_secret_value" not in json.dumps(summary, default=str)
