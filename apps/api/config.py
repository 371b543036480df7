"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./credit_ledger.db"
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Redis (rate limits + webhook queue)
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Account tokens
    TOKEN_SECRET: str = "change_me_in_production"
    TOKEN_TTL_HOURS: int = 24

    # Ledger
    STARTER_CREDITS: int = 10
    LEDGER_MAX_RETRIES: int = 3
    PENDING_OPERATION_TIMEOUT_MINUTES: int = 30
    PENDING_OPERATION_RECOVERY_INTERVAL_MINUTES: int = 5  # 0 disables the periodic sweep
    EXTERNAL_ACTION_TIMEOUT_SECONDS: float = 120.0

    # Generation backend gated by credit deductions (unset = unavailable)
    GENERATION_BACKEND_URL: str = ""
    GENERATION_BACKEND_API_KEY: str = ""

    # Credit costs per billable operation
    CREDIT_COST_THUMBNAIL_STANDARD: int = 10
    CREDIT_COST_THUMBNAIL_HIGH: int = 15
    CREDIT_COST_THUMBNAIL_ULTRA: int = 25
    CREDIT_COST_VIDEO: int = 50
    CREDIT_COST_AUDIT: int = 5
    CREDIT_COST_METADATA: int = 5

    # Subscriptions
    BILLING_PERIOD_DAYS: int = 30
    BILLING_HISTORY_LIMIT: int = 10

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_CREATOR: str = ""
    STRIPE_PRICE_AGENCY: str = ""
    STRIPE_SUCCESS_URL: str = "http://localhost:3000/?success=true"
    STRIPE_CANCEL_URL: str = "http://localhost:3000/?canceled=true"

    # "inline" applies webhook events in the request, "queue" hands them to the RQ worker
    WEBHOOK_PROCESSING_MODE: str = "inline"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    insecure_values = {
        "",
        "change_me_in_production",
        "your_token_secret_change_in_production",
    }
    token_secret = (settings.TOKEN_SECRET or "").strip()

    if token_secret in insecure_values or len(token_secret) < 24:
        raise ValueError("TOKEN_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
    if settings.WEBHOOK_PROCESSING_MODE not in {"inline", "queue"}:
        raise ValueError("WEBHOOK_PROCESSING_MODE must be 'inline' or 'queue'.")
