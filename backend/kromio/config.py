"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (TokenServiceConfig, StripeConfig) are env-overridable
via the double-underscore delimiter, e.g.:
    TOKENS__RATE_LIMIT_MAX_REQUESTS=120
    TOKENS__BOOTSTRAP_RETRY_DELAY_SECONDS=0.25
    STRIPE__SECRET_KEY=sk_live_...
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TokenServiceConfig(BaseModel):
    """Token metering limits and retry behaviour."""

    # Sliding window per (user, operation)
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    # Upper bound on distinct keys tracked within one window
    rate_limit_max_keys: int = 10_000

    history_default_limit: int = 50
    history_max_limit: int = 200

    # Re-fetches after a lazy profile bootstrap (read-after-write lag)
    bootstrap_retry_attempts: int = 2
    bootstrap_retry_delay_seconds: float = 0.5

    # Used when neither the env override nor the plans table supplies one
    fallback_free_tokens: int = 5


class StripeConfig(BaseModel):
    """Stripe checkout configuration. Price ids live in the plan catalog."""

    secret_key: str = ""
    webhook_secret: str = ""
    checkout_success_url: str = "https://kromio.ai/payment-success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "https://kromio.ai/pricing"
    use_test_prices: bool = False


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Overrides the database-supplied allotment for newly bootstrapped free profiles
    free_plan_credits: int | None = None

    # Declarative plan catalog; defaults to the packaged kromio/data/plans.json
    plan_catalog_path: str | None = None

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000", "https://kromio.ai"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    tokens: TokenServiceConfig = Field(default_factory=TokenServiceConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
