from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # PostgreSQL when deployed, SQLite file locally
    database_url: str = Field(
        default="sqlite:///./fleetlink.db",
        alias="DATABASE_URL"
    )

    # Comma-separated list of front-end origins
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        alias="ALLOWED_ORIGINS"
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # ==============================================
    # Booking lifecycle
    # ==============================================
    # Window the partner has to accept after the first payment is marked sent
    partner_acceptance_window_hours: int = Field(default=2, alias="PARTNER_ACCEPTANCE_WINDOW_HOURS")

    # Single currency, only used when rendering amounts in messages
    currency_symbol: str = Field(default="£", alias="CURRENCY_SYMBOL")

    # markSent retries the booking promotion this many times before handing it to the worker
    promotion_retry_attempts: int = Field(default=3, alias="PROMOTION_RETRY_ATTEMPTS")

    # ==============================================
    # Side-effect outbox
    # ==============================================
    # Background drain inside the API process; worker.py uses the same values
    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_poll_interval: int = Field(default=10, alias="WORKER_POLL_INTERVAL")  # seconds
    worker_batch_size: int = Field(default=50, alias="WORKER_BATCH_SIZE")
    outbox_max_attempts: int = Field(default=5, alias="OUTBOX_MAX_ATTEMPTS")

    # Materialize history/notifications right after the request commits
    outbox_inline_drain: bool = Field(default=True, alias="OUTBOX_INLINE_DRAIN")

    # Approval deadline sweep (APScheduler)
    deadline_sweep_enabled: bool = Field(default=True, alias="DEADLINE_SWEEP_ENABLED")
    deadline_sweep_interval_minutes: int = Field(default=5, alias="DEADLINE_SWEEP_INTERVAL_MINUTES")

    @field_validator('partner_acceptance_window_hours', 'outbox_max_attempts', 'promotion_retry_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        origins = []
        for origin in (self.allowed_origins or "").split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins or ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
