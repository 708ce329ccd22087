"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.03.00"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./consult.db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Redis (optional; poll lock and rate limit storage)
    REDIS_URL: str = ""
    REDIS_MAX_CONNECTIONS: int = 20

    # Rate Limiting (requests per minute)
    RATE_LIMIT_API: int = 60

    # Billing
    BILLING_CURRENCY: str = "USD"  # USD or MWK
    # Refuse legacy appointment billing once a session owns the appointment.
    # Off during the migration window: violations are logged, not rejected.
    ENFORCE_SESSION_BILLING_GUARDRAIL: bool = False

    # Session lifecycle
    TEXT_SESSION_RESPONSE_WINDOW_SECONDS: int = 90
    CALL_CONNECT_GRACE_SECONDS: int = 5

    # Job queue
    JOB_MAX_ATTEMPTS: int = 3
    JOB_TIMEOUT_SECONDS: int = 60
    JOB_RETRY_BACKOFF_SECONDS: int = 5
    JOB_STALE_AFTER_SECONDS: int = 300  # Running jobs older than this are re-queued

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10

    # Degraded-mode poller (runs queued jobs from HTTP traffic)
    DEGRADED_POLL_ENABLED: bool = True
    DEGRADED_POLL_INTERVAL_SECONDS: int = 30
    DEGRADED_POLL_BATCH_SIZE: int = 5

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


settings = Settings()
