from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "dunning-engine"
    version: str = "0.1.0"
    DEBUG: bool = False
    APP_DOMAIN: str = "example.com"
    APP_DATABASE_DSN: str = "sqlite:////tmp/dunning.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Retry policy defaults (used when no tenant/plan policy is configured)
    DUNNING_RETRY_OFFSETS_DAYS: list[int] = [1, 3, 7, 14, 21]
    DUNNING_ESCALATION_THRESHOLD: int = 2
    # When False, escalated sequences wait for the CSM instead of being retried
    DUNNING_RETRY_WHILE_ESCALATED: bool = True

    # Orchestrator tick
    DUNNING_TICK_INTERVAL_MINUTES: int = 15
    DUNNING_TICK_BATCH_SIZE: int = 500
    DUNNING_TICK_MAX_WORKERS: int = 8

    # Customer notices, in days after the failed payment; payment links are
    # included from DUNNING_PAYMENT_LINK_FROM_DAY onwards
    DUNNING_NOTIFICATION_DAYS: list[int] = [0, 1, 3, 5, 7]
    DUNNING_PAYMENT_LINK_FROM_DAY: int = 1

    # Payment gateway
    payment_gateway: str = "http"
    payment_gateway_url: str = ""
    payment_gateway_api_key: str = ""
    payment_gateway_timeout_seconds: float = 30.0
    payment_gateway_max_retries: int = 3
    payment_gateway_backoff_seconds: float = 0.5

    # Outbound notifications (payment links, recovery confirmations)
    notification_webhook_url: str = ""
    webhook_secret: str = "whsec_default_secret"

    # CSM assignment: either a remote service or a static round-robin pool
    csm_service_url: str = ""
    csm_pool: list[str] = []

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("DUNNING_TICK_INTERVAL_MINUTES")
    @classmethod
    def validate_tick_interval(cls, v: int) -> int:
        if not 1 <= v <= 60 or 60 % v:
            raise ValueError("DUNNING_TICK_INTERVAL_MINUTES must be a divisor of 60")
        return v


settings = Settings()
