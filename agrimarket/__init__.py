"""
AgriMarket - marketplace for agricultural drone services.

Buyers post field jobs, operators offer to fly them.
"""

from .config import MarketplaceConfig
from .marketplace.service import MarketplaceService

try:
    from importlib.metadata import version

    __version__ = version("agrimarket")
except Exception:
    __version__ = "0.0.0"

__all__ = ["MarketplaceConfig", "MarketplaceService"]
