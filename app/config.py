from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./venue_booking.db",
        alias="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # CORS - Admin dashboard URLs (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        alias="ALLOWED_ORIGINS"
    )

    # ==============================================
    # Action Locks
    # ==============================================
    # How long a lease is held without extension
    lock_duration_seconds: int = Field(default=30, alias="LOCK_DURATION_SECONDS")

    # Extension cadence used by LockExtensionManager
    lock_extension_interval_seconds: int = Field(default=20, alias="LOCK_EXTENSION_INTERVAL_SECONDS")

    # Worst-case round trip for one extend call
    lock_network_latency_budget_seconds: int = Field(default=5, alias="LOCK_NETWORK_LATENCY_BUDGET_SECONDS")

    lock_max_consecutive_failures: int = Field(default=3, alias="LOCK_MAX_CONSECUTIVE_FAILURES")
    lock_cleanup_interval_seconds: int = Field(default=60, alias="LOCK_CLEANUP_INTERVAL_SECONDS")

    # ==============================================
    # Magic-link tokens
    # ==============================================
    token_grace_period_seconds: int = Field(default=5 * 60, alias="TOKEN_GRACE_PERIOD_SECONDS")
    token_extended_grace_period_seconds: int = Field(default=15 * 60, alias="TOKEN_EXTENDED_GRACE_PERIOD_SECONDS")

    # Lifetime of a freshly issued token when the booking has no start date
    token_ttl_seconds: int = Field(default=7 * 24 * 3600, alias="TOKEN_TTL_SECONDS")

    # ==============================================
    # Retry queue
    # ==============================================
    job_queue_batch_size: int = Field(default=10, alias="JOB_QUEUE_BATCH_SIZE")
    job_default_max_retries: int = Field(default=3, alias="JOB_DEFAULT_MAX_RETRIES")
    job_stuck_threshold_seconds: int = Field(default=30 * 60, alias="JOB_STUCK_THRESHOLD_SECONDS")
    job_queue_interval_seconds: int = Field(default=60, alias="JOB_QUEUE_INTERVAL_SECONDS")

    # ==============================================
    # Blob storage (Server-Side Only!)
    # ==============================================
    blob_store_url: str = Field(default="http://localhost:9000/blobs", alias="BLOB_STORE_URL")
    blob_store_token: str = Field(default="", alias="BLOB_STORE_TOKEN")
    blob_timeout_seconds: int = Field(default=20, alias="BLOB_TIMEOUT_SECONDS")

    # ==============================================
    # Scheduled workers
    # ==============================================
    # Bearer secret expected by /api/v1/cron/* endpoints
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Run the in-process APScheduler jobs (disable when an external cron calls the endpoints)
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    auto_update_interval_seconds: int = Field(default=15 * 60, alias="AUTO_UPDATE_INTERVAL_SECONDS")

    # Rate limit for anonymous deposit uploads (slowapi syntax)
    deposit_rate_limit: str = Field(default="10/minute", alias="DEPOSIT_RATE_LIMIT")
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")

    @field_validator("lock_duration_seconds", "lock_extension_interval_seconds", "token_grace_period_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v

    @model_validator(mode="after")
    def validate_lock_cadence(self) -> "Settings":
        """
        An extension must land before the lease runs out, even when the
        extend call itself is slow.
        """
        ceiling = self.lock_duration_seconds - self.lock_network_latency_budget_seconds
        if self.lock_extension_interval_seconds >= ceiling:
            raise ValueError(
                f"LOCK_EXTENSION_INTERVAL_SECONDS ({self.lock_extension_interval_seconds}) must be lower than "
                f"LOCK_DURATION_SECONDS - LOCK_NETWORK_LATENCY_BUDGET_SECONDS ({ceiling})"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
