"""Configuration settings for the AgriMarket API."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings

from agrimarket.config import MarketplaceConfig


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage: "supabase" in production, "sqlite" for single-node, "memory" for dev
    storage_backend: Literal["supabase", "sqlite", "memory"] = "supabase"
    sqlite_path: str = "agrimarket.db"

    # Supabase
    supabase_url: str | None = None
    supabase_secret_key: str | None = None  # Backend/admin access
    supabase_service_role_key: str | None = None  # Legacy name for the same key

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 1 day

    # Marketplace
    offer_expiry_days: int = 14
    enforce_filters_on_offer: bool = True
    default_currency: str = "EUR"

    # Notifications
    resend_api_key: str | None = None
    notification_from: str = "AgriMarket <noreply@agrimarket.example>"

    # Rate limiting: peers allowed to set X-Forwarded-For
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]

    # App
    debug: bool = False
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8080",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def marketplace_config(self) -> MarketplaceConfig:
        """Library configuration derived from these settings."""
        return MarketplaceConfig(
            offer_expiry_days=self.offer_expiry_days,
            enforce_filters_on_offer=self.enforce_filters_on_offer,
            default_currency=self.default_currency,
            notification_from_address=self.notification_from,
            resend_api_key=self.resend_api_key,
            database_path=self.sqlite_path if self.storage_backend == "sqlite" else None,
            supabase_url=self.supabase_url,
            supabase_key=self.supabase_secret_key or self.supabase_service_role_key,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
