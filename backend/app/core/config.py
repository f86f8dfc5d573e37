"""Application configuration loaded from environment variables.

Settings for database, API, session auth, HMAC gateway, ledger retries,
rate limiting, and credit webhooks. Uses pydantic-settings for validation
and .env file support.
"""

import uuid

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "credit_ledger_dev_password"  # nosec B105

# Minimum length for shared secrets in production (256 bits = 32 bytes)
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "credit_ledger"
    database_user: str = "credit_ledger_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # API
    # 0.0.0.0 binds to all network interfaces (required for Docker containers)
    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 8000

    # CORS (Security)
    # Never set to ["*"] when allow_credentials=True
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Session auth for /me endpoints
    # Local-first mode: DEFAULT_USER_ID provides user context without JWT
    # Hosted mode: auth_enabled=True, JWT cookie required on every request
    default_user_id: uuid.UUID | None = None
    auth_enabled: bool = False
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "credit-ledger"
    auth_audience: str = "credit-ledger"
    auth_cookie_name: str = "credit-ledger.session-token"

    # HMAC gateway for external automation
    shared_hmac_secret: SecretStr = SecretStr("")

    # Cron endpoints (Authorization: Bearer <secret>)
    cron_secret: SecretStr = SecretStr("")

    # Ledger mutation retries (optimistic concurrency)
    ledger_max_retries: int = 3
    ledger_retry_base_delay_ms: int = 25
    ledger_retry_max_delay_ms: int = 500

    # Balance defaults
    default_low_balance_threshold: int = 5

    # Grant expiry sweep
    # 0 disables the in-process worker (external cron trigger only)
    grant_sweep_interval_seconds: int = 0

    # Credit webhooks
    credit_webhook_urls: list[str] = []
    credit_webhook_secret: SecretStr = SecretStr("")
    webhook_timeout_seconds: float = 10.0
    webhook_max_retries: int = 2
    webhook_retry_base_delay_ms: int = 1000
    webhook_retry_max_delay_ms: int = 10000

    # Rate Limiting (Security)
    # External credit endpoints: fixed-window quotas per client id
    rate_limit_window_ms: int = 60_000
    rate_limit_deductions: int = 120
    rate_limit_refunds: int = 60
    rate_limit_grants: int = 60
    rate_limit_ledger_reads: int = 240
    # slowapi format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_cron: str = "10/minute"
    rate_limit_self_service: str = "60/minute"
    rate_limit_enabled: bool = True  # Disable for testing

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def webhook_signing_secret(self) -> str:
        """Secret for outbound webhook signatures.

        Falls back to the shared HMAC secret when no dedicated webhook
        secret is configured. Empty string means webhooks go out unsigned.
        """
        return (
            self.credit_webhook_secret.get_secret_value()
            or self.shared_hmac_secret.get_secret_value()
        )

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate configuration invariants and production security.

        Checks:
        - Retry and quota settings must be non-negative (all environments)
        - CORS must not use wildcard origin (incompatible with credentials)
        - Database password must not be the default in production
        - SHARED_HMAC_SECRET and CRON_SECRET must be set and >= 32 chars
          in production
        - AUTH_SECRET must be set when auth is enabled in production
        """
        for name in (
            "ledger_max_retries",
            "webhook_max_retries",
            "default_low_balance_threshold",
            "grant_sweep_interval_seconds",
        ):
            value = getattr(self, name)
            if value < 0:
                msg = f"{name.upper()} cannot be negative. Got: {value}"
                raise ValueError(msg)

        if self.rate_limit_window_ms <= 0 or self.rate_limit_window_ms % 1000:
            msg = (
                "RATE_LIMIT_WINDOW_MS must be a positive multiple of 1000. "
                f"Got: {self.rate_limit_window_ms}"
            )
            raise ValueError(msg)

        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            for name, secret in (
                ("SHARED_HMAC_SECRET", self.shared_hmac_secret),
                ("CRON_SECRET", self.cron_secret),
            ):
                if len(secret.get_secret_value()) < _MIN_SECRET_LENGTH:
                    msg = (
                        f"{name} must be at least {_MIN_SECRET_LENGTH} characters "
                        'in production. Generate with: python -c "import secrets; '
                        'print(secrets.token_hex(32))"'
                    )
                    raise ValueError(msg)

            if self.auth_enabled and not self.auth_secret.get_secret_value():
                msg = "AUTH_SECRET must be set when AUTH_ENABLED=true in production."
                raise ValueError(msg)

        return self


settings = Settings()
