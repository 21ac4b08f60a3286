"""Pytest configuration and fixtures."""

import os
import secrets
from unittest.mock import Mock

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# Unit tests never touch a real database
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("STORAGE_BACKEND", "memory")

from agrimarket.config import MarketplaceConfig  # noqa: E402
from agrimarket.marketplace.service import MarketplaceService  # noqa: E402
from agrimarket.storage.memory import InMemoryMarketplaceStorage  # noqa: E402
from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import get_marketplace_service  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

BUYER_ORG = "org-buyer"
OPERATOR_ORG = "org-operator-a"
OPERATOR_B_ORG = "org-operator-b"
PROVIDER_ORG = "org-provider"


@pytest.fixture(autouse=True)
def agrimarket_home(tmp_path, monkeypatch):
    """Keep event trail files inside the test's temp directory."""
    monkeypatch.setenv("AGRIMARKET_DATA_DIR", str(tmp_path / "agrimarket-home"))


@pytest.fixture(autouse=True)
def disable_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def marketplace(notifier):
    """Fresh in-memory marketplace service, injected into the app."""
    service = MarketplaceService(
        storage=InMemoryMarketplaceStorage(),
        config=MarketplaceConfig(offer_expiry_days=7),
        notifier=notifier,
    )
    app.dependency_overrides[get_marketplace_service] = lambda: service
    yield service
    app.dependency_overrides.pop(get_marketplace_service, None)


@pytest.fixture
def client(marketplace):
    """Create a test client."""
    return TestClient(app)


def _headers(org_id: str, role: str, user_id: str = "usr_TEST_ONLY_000000") -> dict:
    token = create_access_token(user_id, org_id, role, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer_headers():
    return _headers(BUYER_ORG, "buyer")


@pytest.fixture
def operator_headers():
    return _headers(OPERATOR_ORG, "operator")


@pytest.fixture
def operator_b_headers():
    return _headers(OPERATOR_B_ORG, "operator")


@pytest.fixture
def provider_headers():
    return _headers(PROVIDER_ORG, "provider")


@pytest.fixture
def admin_headers():
    return _headers("org-admin", "admin", user_id="usr_TEST_ADMIN_0000")


@pytest.fixture
def job_payload():
    return {
        "service_type": "spray",
        "field_name": "Vigna Nord",
        "area_ha": 4.5,
        "crop_type": "vineyard",
        "terrain_conditions": "hilly",
        "location": {"lat": 43.9036, "lng": 10.6894},
        "target_date_start": "2026-05-04",
        "target_date_end": "2026-05-06",
    }


@pytest.fixture
def posted_job(client, buyer_headers, job_payload):
    """A job posted by the buyer through the API."""
    response = client.post("/api/v1/jobs", json=job_payload, headers=buyer_headers)
    assert response.status_code == 201
    return response.json()
