"""Tests for application configuration.

Settings for database, HMAC gateway, ledger retries, rate limits and
webhooks. Tests cover defaults, invariant checks, and production security
validation.
"""

import pytest
from pydantic import SecretStr, ValidationError

from app.core.config import _INSECURE_DEFAULT_PASSWORD, Settings

# Reusable test constants
_SECURE_DB_PASSWORD = "my-secure-production-password-123!"
_LONG_SECRET = "s" * 64
_PRODUCTION = "production"


def _production(**overrides) -> Settings:
    values = {
        "environment": _PRODUCTION,
        "database_password": _SECURE_DB_PASSWORD,
        "shared_hmac_secret": _LONG_SECRET,
        "cron_secret": _LONG_SECRET,
    }
    values.update(overrides)
    return Settings(**values)


class TestDefaults:
    """Tests for default values."""

    def test_rate_limit_defaults(self):
        s = Settings()

        assert s.rate_limit_window_ms == 60_000
        assert s.rate_limit_deductions == 120
        assert s.rate_limit_refunds == 60
        assert s.rate_limit_grants == 60
        assert s.rate_limit_ledger_reads == 240

    def test_database_url_uses_asyncpg(self):
        s = Settings(database_host="db", database_port=6543, database_name="ledger")

        assert s.database_url.startswith("postgresql+asyncpg://")
        assert s.database_url.endswith("@db:6543/ledger")
        assert s.database_url_sync.startswith("postgresql://")

    def test_webhook_secret_falls_back_to_hmac_secret(self):
        s = Settings(shared_hmac_secret="shared")

        assert s.webhook_signing_secret == "shared"

    def test_dedicated_webhook_secret_wins(self):
        s = Settings(shared_hmac_secret="shared", credit_webhook_secret="hooks")

        assert s.webhook_signing_secret == "hooks"


class TestInvariantValidation:
    """Checks applied in every environment."""

    @pytest.mark.parametrize(
        "field",
        [
            "ledger_max_retries",
            "webhook_max_retries",
            "default_low_balance_threshold",
            "grant_sweep_interval_seconds",
        ],
    )
    def test_rejects_negative_values(self, field):
        with pytest.raises(ValidationError, match="cannot be negative"):
            Settings(**{field: -1})

    @pytest.mark.parametrize("window", [0, -1_000, 1_500, 200])
    def test_rejects_non_positive_or_fractional_second_window(self, window):
        with pytest.raises(ValidationError, match="RATE_LIMIT_WINDOW_MS"):
            Settings(rate_limit_window_ms=window)

    def test_rejects_wildcard_cors(self):
        with pytest.raises(ValidationError, match="wildcard"):
            Settings(allowed_origins=["*"])


class TestProductionSecurityValidation:
    """Tests for production security requirements."""

    def test_allows_default_password_in_development(self):
        """Default password is allowed in development environment."""
        s = Settings(
            environment="development",
            database_password=_INSECURE_DEFAULT_PASSWORD,
        )
        assert s.database_password == _INSECURE_DEFAULT_PASSWORD

    def test_rejects_default_password_in_production(self):
        with pytest.raises(ValidationError) as exc_info:
            _production(database_password=_INSECURE_DEFAULT_PASSWORD)

        assert "Cannot use default database password in production" in str(
            exc_info.value.errors()[0]["msg"]
        )

    def test_accepts_complete_production_config(self):
        s = _production()

        assert s.environment == _PRODUCTION
        assert s.shared_hmac_secret.get_secret_value() == _LONG_SECRET

    @pytest.mark.parametrize("field", ["shared_hmac_secret", "cron_secret"])
    def test_rejects_short_secrets_in_production(self, field):
        with pytest.raises(ValidationError, match="at least 32 characters"):
            _production(**{field: SecretStr("short")})

    def test_requires_auth_secret_when_auth_enabled(self):
        with pytest.raises(ValidationError, match="AUTH_SECRET"):
            _production(auth_enabled=True)

    def test_short_secrets_allowed_outside_production(self):
        s = Settings(environment="staging", shared_hmac_secret="short")

        assert s.shared_hmac_secret.get_secret_value() == "short"
