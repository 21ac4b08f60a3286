"""Marketplace configuration.

``MarketplaceConfig`` is built once (usually with ``from_env``) and passed to
the components that need it, so nothing deeper in the library reads process
environment at call time.
"""

import os
from dataclasses import dataclass
from typing import Optional

ENV_PREFIX = "AGRIMARKET_"

DEFAULT_OFFER_EXPIRY_DAYS = 14
DEFAULT_CURRENCY = "EUR"
DEFAULT_MAX_MESSAGE_LENGTH = 4000
DEFAULT_FROM_ADDRESS = "AgriMarket <noreply@agrimarket.example>"


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class MarketplaceConfig:
    """Configuration for the marketplace service and its collaborators."""

    # Offers still pending after this many days are expired by the sweep
    offer_expiry_days: int = DEFAULT_OFFER_EXPIRY_DAYS
    # Re-check the operator's offered service types when an offer is created
    enforce_filters_on_offer: bool = True
    default_currency: str = DEFAULT_CURRENCY
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH

    # Notifications
    notification_from_address: str = DEFAULT_FROM_ADDRESS
    resend_api_key: Optional[str] = None

    # Storage
    database_path: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    def __post_init__(self):
        if self.offer_expiry_days < 1:
            raise ValueError("offer_expiry_days must be at least 1")
        if self.max_message_length < 1:
            raise ValueError("max_message_length must be at least 1")
        if len(self.default_currency) != 3:
            raise ValueError(f"Invalid currency: {self.default_currency}")
        self.default_currency = self.default_currency.upper()

    @property
    def email_enabled(self) -> bool:
        return bool(self.resend_api_key)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "MarketplaceConfig":
        """Build a config from ``AGRIMARKET_*`` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            return env.get(ENV_PREFIX + name)

        expiry = get("OFFER_EXPIRY_DAYS")
        max_len = get("MAX_MESSAGE_LENGTH")
        return cls(
            offer_expiry_days=int(expiry) if expiry else DEFAULT_OFFER_EXPIRY_DAYS,
            enforce_filters_on_offer=_env_bool(get("ENFORCE_FILTERS_ON_OFFER"), True),
            default_currency=get("DEFAULT_CURRENCY") or DEFAULT_CURRENCY,
            max_message_length=int(max_len) if max_len else DEFAULT_MAX_MESSAGE_LENGTH,
            notification_from_address=get("NOTIFICATION_FROM") or DEFAULT_FROM_ADDRESS,
            resend_api_key=get("RESEND_API_KEY"),
            database_path=get("DATABASE_PATH"),
            supabase_url=get("SUPABASE_URL"),
            supabase_key=get("SUPABASE_KEY"),
        )
