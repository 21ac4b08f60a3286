"""Database and service wiring for the AgriMarket API."""

from typing import Annotated, Callable

from fastapi import Depends
from supabase import Client, create_client

from agrimarket.marketplace.notifications import (
    CompositeNotifier,
    LoggingNotifier,
    Notifier,
    ResendEmailNotifier,
)
from agrimarket.marketplace.service import MarketplaceService
from agrimarket.storage import (
    InMemoryMarketplaceStorage,
    MarketplaceStorage,
    SQLiteMarketplaceStorage,
    SupabaseMarketplaceStorage,
)

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("database")

ORGANIZATIONS_TABLE = "organizations"

_supabase_client: Client | None = None
_marketplace_service: MarketplaceService | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not settings.supabase_url or not api_key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SECRET_KEY (or SUPABASE_SERVICE_ROLE_KEY) must be set"
            )
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def _org_email_resolver(client: Client | None) -> Callable[[str], str | None]:
    """Look up an organization's contact email, or None when unknown."""

    def resolve(org_id: str) -> str | None:
        if client is None:
            return None
        result = (
            client.table(ORGANIZATIONS_TABLE).select("email").eq("id", org_id).limit(1).execute()
        )
        return result.data[0].get("email") if result.data else None

    return resolve


def build_storage(settings: Settings) -> MarketplaceStorage:
    """Create the storage backend named by ``settings.storage_backend``."""
    if settings.storage_backend == "memory":
        return InMemoryMarketplaceStorage()
    if settings.storage_backend == "sqlite":
        return SQLiteMarketplaceStorage(settings.sqlite_path)
    return SupabaseMarketplaceStorage(get_supabase_client(settings))


def build_notifier(settings: Settings) -> Notifier:
    """Log every event; also email when a Resend key is configured."""
    if not settings.resend_api_key:
        return LoggingNotifier()
    client = get_supabase_client(settings) if settings.storage_backend == "supabase" else None
    return CompositeNotifier(
        [
            LoggingNotifier(),
            ResendEmailNotifier(
                api_key=settings.resend_api_key,
                from_address=settings.notification_from,
                resolve_email=_org_email_resolver(client),
            ),
        ]
    )


def get_marketplace_service(
    settings: Annotated[Settings, Depends(get_settings)],
) -> MarketplaceService:
    """FastAPI dependency for the (process-wide) marketplace service."""
    global _marketplace_service
    if _marketplace_service is None:
        _marketplace_service = MarketplaceService(
            storage=build_storage(settings),
            config=settings.marketplace_config(),
            notifier=build_notifier(settings),
        )
        logger.info(f"Marketplace service ready (storage={settings.storage_backend})")
    return _marketplace_service


# Type alias for dependency injection
Marketplace = Annotated[MarketplaceService, Depends(get_marketplace_service)]
