"""API routes."""

from .jobs import router as jobs_router
from .maintenance import router as maintenance_router
from .offers import router as offers_router
from .service_config import router as service_config_router

__all__ = [
    "jobs_router",
    "offers_router",
    "service_config_router",
    "maintenance_router",
]
