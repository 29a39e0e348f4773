"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite:///./case_ledger.db"
    DB_AUTO_MIGRATE: bool = False  # Upgrade to head on startup

    # External system of record (pushes via /external/*)
    EXTERNAL_API_SECRET: str = ""  # Sent as X-External-Api-Key

    # Internal portal surface (admin actions, messaging, audit read-back)
    INTERNAL_SECRET: str = ""  # Sent as X-Internal-Secret

    # Reconciliation
    # Absorb legacy cases lacking an external reference by matching on
    # account number. Off unless explicitly enabled.
    ALLOW_ACCOUNT_NUMBER_FALLBACK: bool = False

    # Audit
    AUDIT_ENABLED: bool = True

    # Outbound email (Resend)
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = ""
    DEFAULT_NOTIFICATION_EMAIL: str = ""  # Used when no admin handles the case
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0
    NOTIFICATION_MAX_ATTEMPTS: int = 2

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute). Redis shares counters across workers.
    REDIS_URL: str = ""
    RATE_LIMIT_EXTERNAL: int = 120
    RATE_LIMIT_BULK: int = 10

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def email_configured(self) -> bool:
        return bool(self.RESEND_API_KEY and self.EMAIL_FROM)


settings = Settings()
