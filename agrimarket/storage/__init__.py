"""AgriMarket storage backends.

- InMemoryMarketplaceStorage: tests and local experiments
- SQLiteMarketplaceStorage: local-first, single node
- SupabaseMarketplaceStorage: hosted Postgres behind the API
"""

from .base import MarketplaceStorage, StatusFilter, status_set
from .memory import InMemoryMarketplaceStorage
from .sqlite import SQLiteMarketplaceStorage
from .supabase_storage import SupabaseMarketplaceStorage

__all__ = [
    # Protocol
    "MarketplaceStorage",
    "StatusFilter",
    "status_set",
    # Implementations
    "InMemoryMarketplaceStorage",
    "SQLiteMarketplaceStorage",
    "SupabaseMarketplaceStorage",
]
