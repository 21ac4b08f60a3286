"""
Pytest fixtures and test configuration for AgriMarket tests.
"""

from unittest.mock import Mock

import pytest

from agrimarket.config import MarketplaceConfig
from agrimarket.marketplace.models import ServiceConfiguration
from agrimarket.marketplace.service import MarketplaceService
from agrimarket.storage.memory import InMemoryMarketplaceStorage
from agrimarket.storage.sqlite import SQLiteMarketplaceStorage

BUYER = "org-buyer"
OPERATOR_A = "org-operator-a"
OPERATOR_B = "org-operator-b"

# Pescia, Tuscany
FIELD_LOCATION = {"lat": 43.9036, "lng": 10.6894}


@pytest.fixture(autouse=True)
def agrimarket_home(tmp_path, monkeypatch):
    """Keep log and event files inside the test's temp directory."""
    home = tmp_path / "agrimarket-home"
    monkeypatch.setenv("AGRIMARKET_DATA_DIR", str(home))
    return home


@pytest.fixture
def storage():
    """Create in-memory storage for testing."""
    return InMemoryMarketplaceStorage()


@pytest.fixture
def sqlite_storage(tmp_path):
    """SQLite storage in a temporary file."""
    return SQLiteMarketplaceStorage(tmp_path / "marketplace.db")


@pytest.fixture
def config():
    """Create test configuration."""
    return MarketplaceConfig(offer_expiry_days=7)


@pytest.fixture
def notifier():
    """Notifier double recording every event."""
    return Mock()


@pytest.fixture
def service(storage, config, notifier):
    """Create marketplace service for testing."""
    return MarketplaceService(storage=storage, config=config, notifier=notifier)


@pytest.fixture
def make_job(service):
    """Factory posting a job as BUYER with sensible defaults."""

    def _make(**overrides):
        fields = {
            "buyer_org_id": BUYER,
            "service_type": "spray",
            "field_name": "Vigna Nord",
            "area_ha": 4.5,
            "crop_type": "vineyard",
            "terrain_conditions": "hilly",
            "location": FIELD_LOCATION,
        }
        fields.update(overrides)
        return service.create_job(**fields)

    return _make


@pytest.fixture
def open_job(make_job):
    """An OPEN spray job on a hilly vineyard."""
    return make_job()


@pytest.fixture
def make_config():
    """Factory for ServiceConfiguration with filters enabled."""

    def _make(org_id=OPERATOR_A, **overrides):
        fields = {"enable_job_filters": True}
        fields.update(overrides)
        return ServiceConfiguration(org_id=org_id, **fields)

    return _make
