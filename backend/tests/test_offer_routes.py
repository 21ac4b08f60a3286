"""Tests for the offer routes."""

import pytest


@pytest.fixture
def offer(client, posted_job, operator_headers):
    response = client.post(
        f"/api/v1/jobs/{posted_job['id']}/offers",
        json={"total_cents": 45000, "provider_note": "Two passes, early morning"},
        headers=operator_headers,
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def rival_offer(client, posted_job, operator_b_headers):
    response = client.post(
        f"/api/v1/jobs/{posted_job['id']}/offers",
        json={"total_cents": 52000},
        headers=operator_b_headers,
    )
    assert response.status_code == 201
    return response.json()


def _event_types(notifier):
    return [c.args[0].event_type for c in notifier.notify.call_args_list]


class TestGetOffers:
    def test_participants_can_view(self, client, offer, buyer_headers, operator_headers):
        for headers in (buyer_headers, operator_headers):
            response = client.get(f"/api/v1/offers/{offer['id']}", headers=headers)
            assert response.status_code == 200
            assert response.json()["provider_note"] == "Two passes, early morning"

    def test_outsider_cannot_view(self, client, offer, operator_b_headers):
        response = client.get(f"/api/v1/offers/{offer['id']}", headers=operator_b_headers)
        assert response.status_code == 403

    def test_admin_can_view(self, client, offer, admin_headers):
        response = client.get(f"/api/v1/offers/{offer['id']}", headers=admin_headers)
        assert response.status_code == 200

    def test_missing_offer(self, client, buyer_headers):
        response = client.get("/api/v1/offers/offer-missing", headers=buyer_headers)
        assert response.status_code == 404

    def test_my_offers(self, client, offer, rival_offer, operator_headers):
        response = client.get("/api/v1/offers/mine", headers=operator_headers)

        assert [o["id"] for o in response.json()["offers"]] == [offer["id"]]

    def test_my_offers_status_filter(self, client, offer, operator_headers):
        response = client.get("/api/v1/offers/mine?status=withdrawn", headers=operator_headers)
        assert response.json()["total"] == 0


class TestUpdateOffer:
    """Tests for PUT /offers/{id}."""

    def test_revise_total(self, client, offer, operator_headers):
        response = client.put(
            f"/api/v1/offers/{offer['id']}", json={"total_cents": 41000}, headers=operator_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_cents"] == 41000
        assert data["provider_note"] == "Two passes, early morning"

    def test_only_offering_operator(self, client, offer, buyer_headers):
        response = client.put(
            f"/api/v1/offers/{offer['id']}", json={"total_cents": 1}, headers=buyer_headers
        )
        assert response.status_code == 403

    def test_withdrawn_offer_cannot_change(self, client, offer, operator_headers):
        client.post(f"/api/v1/offers/{offer['id']}/withdraw", headers=operator_headers)

        response = client.put(
            f"/api/v1/offers/{offer['id']}", json={"total_cents": 1}, headers=operator_headers
        )

        assert response.status_code == 409


class TestAcceptOffer:
    """Tests for POST /offers/{id}/accept."""

    def test_accept_assigns_job(
        self, client, posted_job, offer, rival_offer, buyer_headers, notifier
    ):
        response = client.post(f"/api/v1/offers/{offer['id']}/accept", headers=buyer_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "accepted"
        job = client.get(f"/api/v1/jobs/{posted_job['id']}", headers=buyer_headers).json()
        assert job["status"] == "assigned"
        assert job["accepted_offer_id"] == offer["id"]
        rival = client.get(f"/api/v1/offers/{rival_offer['id']}", headers=buyer_headers).json()
        assert rival["status"] == "rejected"
        assert _event_types(notifier)[-2:] == ["offer_accepted", "offer_rejected"]

    def test_second_accept_conflicts(self, client, offer, rival_offer, buyer_headers):
        client.post(f"/api/v1/offers/{offer['id']}/accept", headers=buyer_headers)

        response = client.post(f"/api/v1/offers/{rival_offer['id']}/accept", headers=buyer_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "state_conflict"

    def test_operator_cannot_accept(self, client, offer, operator_headers):
        response = client.post(f"/api/v1/offers/{offer['id']}/accept", headers=operator_headers)
        assert response.status_code == 403


class TestRejectAndWithdraw:
    def test_reject_keeps_job_open(self, client, posted_job, offer, buyer_headers):
        response = client.post(
            f"/api/v1/offers/{offer['id']}/reject",
            json={"reason": "Too expensive"},
            headers=buyer_headers,
        )

        assert response.json()["status"] == "rejected"
        job = client.get(f"/api/v1/jobs/{posted_job['id']}", headers=buyer_headers).json()
        assert job["status"] == "open"

    def test_reject_without_body(self, client, offer, buyer_headers):
        response = client.post(f"/api/v1/offers/{offer['id']}/reject", headers=buyer_headers)
        assert response.status_code == 200

    def test_withdraw_then_offer_again(self, client, posted_job, offer, operator_headers):
        withdrawn = client.post(f"/api/v1/offers/{offer['id']}/withdraw", headers=operator_headers)
        again = client.post(
            f"/api/v1/jobs/{posted_job['id']}/offers",
            json={"total_cents": 39000},
            headers=operator_headers,
        )

        assert withdrawn.json()["status"] == "withdrawn"
        assert again.status_code == 201

    def test_buyer_cannot_withdraw(self, client, offer, buyer_headers):
        response = client.post(f"/api/v1/offers/{offer['id']}/withdraw", headers=buyer_headers)
        assert response.status_code == 403


class TestMessages:
    """Tests for the per-offer message thread."""

    def test_thread(self, client, offer, buyer_headers, operator_headers, notifier):
        url = f"/api/v1/offers/{offer['id']}/messages"
        first = client.post(url, json={"body": "Can you start Monday?"}, headers=buyer_headers)
        client.post(url, json={"body": "Yes, at 6am."}, headers=operator_headers)

        assert first.status_code == 201
        assert first.json()["sender_org_id"] == "org-buyer"
        thread = client.get(url, headers=operator_headers).json()
        assert [m["body"] for m in thread["messages"]] == ["Can you start Monday?", "Yes, at 6am."]
        assert "offer_message" in _event_types(notifier)

    def test_mark_read(self, client, offer, buyer_headers, operator_headers):
        url = f"/api/v1/offers/{offer['id']}/messages"
        client.post(url, json={"body": "One"}, headers=buyer_headers)
        client.post(url, json={"body": "Two"}, headers=buyer_headers)

        response = client.put(f"{url}/read", headers=operator_headers)

        assert response.json() == {"offer_id": offer["id"], "marked_read": 2}
        assert client.put(f"{url}/read", headers=operator_headers).json()["marked_read"] == 0

    def test_empty_body_rejected(self, client, offer, buyer_headers):
        response = client.post(
            f"/api/v1/offers/{offer['id']}/messages", json={"body": ""}, headers=buyer_headers
        )
        assert response.status_code == 422

    def test_too_long_body(self, client, offer, buyer_headers, marketplace):
        body = "x" * (marketplace.config.max_message_length + 1)

        response = client.post(
            f"/api/v1/offers/{offer['id']}/messages", json={"body": body}, headers=buyer_headers
        )

        assert response.status_code == 400

    def test_outsider_cannot_post(self, client, offer, operator_b_headers):
        response = client.post(
            f"/api/v1/offers/{offer['id']}/messages",
            json={"body": "Hello"},
            headers=operator_b_headers,
        )
        assert response.status_code == 403
