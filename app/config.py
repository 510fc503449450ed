"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Tier names accepted in STRIPE_PRICE_TIERS
_PAID_TIERS = ("premium", "pro")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000)

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Stripe
    STRIPE_SECRET_KEY: str = Field(default="")
    STRIPE_WEBHOOK_SECRET: str = Field(default="")
    STRIPE_WEBHOOK_TOLERANCE: int = Field(
        default=300,
        description="Max age in seconds of a signed webhook timestamp",
    )
    STRIPE_API_BASE: str = Field(default="https://api.stripe.com")
    STRIPE_API_VERSION: str = Field(default="2023-10-16")
    STRIPE_API_TIMEOUT: float = Field(default=10.0)

    # Price → tier mapping
    STRIPE_PREMIUM_PRICE_ID: str = Field(default="")
    STRIPE_PRO_PRICE_ID: str = Field(default="")
    STRIPE_PRICE_TIERS: str = Field(
        default="",
        description="Extra mappings, e.g. 'price_a:premium,price_b:pro'",
    )

    # Reconciliation policy
    INVOICE_FAILURE_DOWNGRADE_ATTEMPTS: int = Field(default=3, ge=1)
    STRIPE_REJECT_STALE_EVENTS: bool = Field(default=False)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def price_tier_map(self) -> dict[str, str]:
        """
        Static mapping of Stripe price IDs to subscription tiers.

        Built from STRIPE_PREMIUM_PRICE_ID / STRIPE_PRO_PRICE_ID plus any
        extra pairs in STRIPE_PRICE_TIERS. Prices not listed map to free.
        """
        mapping: dict[str, str] = {}
        for pair in self.STRIPE_PRICE_TIERS.split(","):
            if not pair.strip():
                continue
            price_id, _, tier = pair.partition(":")
            mapping[price_id.strip()] = tier.strip().lower()

        if self.STRIPE_PREMIUM_PRICE_ID:
            mapping[self.STRIPE_PREMIUM_PRICE_ID] = "premium"
        if self.STRIPE_PRO_PRICE_ID:
            mapping[self.STRIPE_PRO_PRICE_ID] = "pro"
        return mapping

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("STRIPE_PRICE_TIERS")
    @classmethod
    def validate_price_tiers(cls, v: str) -> str:
        """Ensure every extra mapping names a paid tier."""
        for pair in v.split(","):
            if not pair.strip():
                continue
            price_id, sep, tier = pair.partition(":")
            if not sep or not price_id.strip():
                raise ValueError(f"Malformed STRIPE_PRICE_TIERS entry: {pair!r}")
            if tier.strip().lower() not in _PAID_TIERS:
                raise ValueError(
                    f"STRIPE_PRICE_TIERS tier must be one of {_PAID_TIERS}, got {tier!r}"
                )
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
