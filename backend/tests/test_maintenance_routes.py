"""Tests for the maintenance routes."""

from datetime import timedelta

import pytest


@pytest.fixture
def stale_offer(marketplace, posted_job):
    """A pending offer created 30 days ago."""
    offer = marketplace.create_offer(posted_job["id"], "org-operator-a", 45000)
    marketplace.storage.update_offer_status(
        offer.id, "pending", "pending", created_at=offer.created_at - timedelta(days=30)
    )
    return offer


@pytest.fixture
def fresh_offer(marketplace, posted_job):
    return marketplace.create_offer(posted_job["id"], "org-operator-b", 52000)


class TestExpireOffers:
    """Tests for POST /maintenance/expire-offers."""

    def test_requires_admin(self, client, operator_headers):
        response = client.post(
            "/api/v1/maintenance/expire-offers", json={}, headers=operator_headers
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Admin privileges required"

    def test_requires_auth(self, client):
        response = client.post("/api/v1/maintenance/expire-offers", json={})
        assert response.status_code == 401

    def test_expires_only_stale_offers(
        self, client, admin_headers, marketplace, stale_offer, fresh_offer, notifier
    ):
        response = client.post(
            "/api/v1/maintenance/expire-offers", json={}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is False
        assert data["checked"] == 1
        assert data["expired"] == 1
        assert data["expired_offer_ids"] == [stale_offer.id]
        assert marketplace.get_offer(stale_offer.id).status == "expired"
        assert marketplace.get_offer(fresh_offer.id).status == "pending"

    def test_dry_run_changes_nothing(self, client, admin_headers, marketplace, stale_offer):
        response = client.post(
            "/api/v1/maintenance/expire-offers", json={"dry_run": True}, headers=admin_headers
        )

        assert response.json()["expired_offer_ids"] == [stale_offer.id]
        assert marketplace.get_offer(stale_offer.id).status == "pending"

    def test_max_age_override(self, client, admin_headers, stale_offer, fresh_offer):
        response = client.post(
            "/api/v1/maintenance/expire-offers",
            json={"max_age_days": 60},
            headers=admin_headers,
        )

        assert response.json()["checked"] == 0

    @pytest.mark.parametrize("max_age_days", [0, 366])
    def test_max_age_bounds(self, client, admin_headers, max_age_days):
        response = client.post(
            "/api/v1/maintenance/expire-offers",
            json={"max_age_days": max_age_days},
            headers=admin_headers,
        )
        assert response.status_code == 422

    def test_expired_offer_frees_operator(
        self, client, admin_headers, operator_headers, posted_job, stale_offer
    ):
        client.post("/api/v1/maintenance/expire-offers", json={}, headers=admin_headers)

        response = client.post(
            f"/api/v1/jobs/{posted_job['id']}/offers",
            json={"total_cents": 40000},
            headers=operator_headers,
        )

        assert response.status_code == 201


class TestMaintenanceHealth:
    def test_healthy(self, client, admin_headers, fresh_offer):
        response = client.get("/api/v1/maintenance/health", headers=admin_headers)

        data = response.json()
        assert data["status"] == "healthy"
        assert data["stale_pending_offers"] == 0
        assert data["offer_expiry_days"] == 7

    def test_attention_needed(self, client, admin_headers, stale_offer):
        data = client.get("/api/v1/maintenance/health", headers=admin_headers).json()

        assert data["status"] == "attention_needed"
        assert data["stale_pending_offers"] == 1

    def test_requires_admin(self, client, buyer_headers):
        response = client.get("/api/v1/maintenance/health", headers=buyer_headers)
        assert response.status_code == 403


class TestAppHealth:
    def test_root(self, client):
        assert client.get("/").json()["service"] == "agrimarket-api"

    def test_health_reports_storage(self, client):
        response = client.get("/health")
        assert response.json() == {"status": "healthy", "database": "connected"}
