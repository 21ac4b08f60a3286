"""
Tests for the Supabase storage backend.

A small in-memory stand-in for the PostgREST query builder lets the storage
and the service run without cloud infrastructure.
"""

import copy
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from agrimarket.errors import (
    ConflictError,
    DependencyError,
    DuplicateOfferError,
    StateConflictError,
)
from agrimarket.marketplace.models import Offer, ServiceConfiguration, utc_now
from agrimarket.marketplace.service import MarketplaceService
from agrimarket.storage.supabase_storage import (
    BOOKINGS_TABLE,
    JOBS_TABLE,
    OFFERS_TABLE,
    UNIQUE_VIOLATION,
    SupabaseMarketplaceStorage,
)


class FakeQuery:
    """Chainable query over one table of ``FakeClient``."""

    def __init__(self, rows, action, payload=None, on_conflict=None):
        self._rows = rows
        self._action = action
        self._payload = payload
        self._on_conflict = on_conflict
        self._filters = []
        self._order = None
        self._slice = slice(None)

    def _filter(self, predicate):
        self._filters.append(predicate)
        return self

    def eq(self, column, value):
        return self._filter(lambda r: r.get(column) == value)

    def neq(self, column, value):
        return self._filter(lambda r: r.get(column) != value)

    def in_(self, column, values):
        return self._filter(lambda r: r.get(column) in values)

    def lt(self, column, value):
        return self._filter(lambda r: r.get(column) is not None and r.get(column) < value)

    def is_(self, column, value):
        assert value == "null"
        return self._filter(lambda r: r.get(column) is None)

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, n):
        self._slice = slice(0, n)
        return self

    def range(self, start, end):
        self._slice = slice(start, end + 1)
        return self

    def _matching(self):
        return [r for r in self._rows if all(f(r) for f in self._filters)]

    def execute(self):
        result = MagicMock()
        if self._action == "select":
            rows = self._matching()
            if self._order:
                column, desc = self._order
                rows.sort(key=lambda r: r.get(column) or "", reverse=desc)
            result.data = copy.deepcopy(rows[self._slice])
        elif self._action == "insert":
            self._rows.append(copy.deepcopy(self._payload))
            result.data = [copy.deepcopy(self._payload)]
        elif self._action == "upsert":
            key = self._on_conflict
            self._rows[:] = [r for r in self._rows if r.get(key) != self._payload.get(key)]
            self._rows.append(copy.deepcopy(self._payload))
            result.data = [copy.deepcopy(self._payload)]
        elif self._action == "update":
            updated = []
            for row in self._matching():
                row.update(copy.deepcopy(self._payload))
                updated.append(copy.deepcopy(row))
            result.data = updated
        elif self._action == "delete":
            removed = self._matching()
            self._rows[:] = [r for r in self._rows if r not in removed]
            result.data = copy.deepcopy(removed)
        return result


class FakeTable:
    def __init__(self, rows):
        self._rows = rows

    def select(self, *columns):
        return FakeQuery(self._rows, "select")

    def insert(self, payload):
        return FakeQuery(self._rows, "insert", payload)

    def upsert(self, payload, on_conflict=None):
        return FakeQuery(self._rows, "upsert", payload, on_conflict)

    def update(self, payload):
        return FakeQuery(self._rows, "update", payload)

    def delete(self):
        return FakeQuery(self._rows, "delete")


class FakeClient:
    def __init__(self):
        self.tables = {}

    def table(self, name):
        return FakeTable(self.tables.setdefault(name, []))


class OfferUpdatesDownClient(FakeClient):
    """FakeClient whose offer updates fail at the network level."""

    def table(self, name):
        table = super().table(name)
        if name == OFFERS_TABLE:
            query = MagicMock()
            query.eq.return_value = query
            query.in_.return_value = query
            query.execute.side_effect = httpx.ConnectError("connection reset")
            table.update = lambda payload: query
        return table


def _api_error(code, message="error"):
    return APIError({"code": code, "message": message, "details": None, "hint": None})


def _failing_client(exc):
    """Client whose every query raises ``exc`` on execute."""
    client = MagicMock()
    client.table.return_value.select.return_value.eq.return_value.execute.side_effect = exc
    client.table.return_value.insert.return_value.execute.side_effect = exc
    (
        client.table.return_value.update.return_value.eq.return_value.in_.return_value.execute.side_effect
    ) = exc
    return client


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def supabase_storage(client):
    return SupabaseMarketplaceStorage(client)


@pytest.fixture
def supabase_service(supabase_storage, config, notifier):
    return MarketplaceService(storage=supabase_storage, config=config, notifier=notifier)


class TestRowMapping:
    """Tests for reading and writing rows."""

    def test_job_round_trip(self, supabase_service, client):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna Nord", 4.5, location={"lat": 1, "lng": 2})

        (row,) = client.tables[JOBS_TABLE]
        assert row["status"] == "open"
        assert isinstance(row["created_at"], str)
        assert supabase_service.get_job(job.id) == job

    def test_list_jobs_excludes_buyer(self, supabase_service):
        supabase_service.create_job("org-buyer", "spray", "Campo A", 1.0)
        supabase_service.create_job("org-operator-a", "spray", "Campo B", 1.0)

        jobs = supabase_service.storage.list_jobs(status="open", exclude_buyer_org_id="org-operator-a")
        assert [j.field_name for j in jobs] == ["Campo A"]

    def test_service_configuration_upsert(self, supabase_storage, client):
        supabase_storage.save_service_configuration(
            ServiceConfiguration(org_id="org-operator-a", offered_service_types=["spray"])
        )
        supabase_storage.save_service_configuration(
            ServiceConfiguration(org_id="org-operator-a", offered_service_types=[])
        )

        assert len(client.tables["service_configurations"]) == 1
        config = supabase_storage.get_service_configuration("org-operator-a")
        assert config.offered_service_types == frozenset()

    def test_missing_records(self, supabase_storage):
        assert supabase_storage.get_job("missing") is None
        assert supabase_storage.get_offer("missing") is None
        assert supabase_storage.get_booking_for_job("missing") is None
        assert supabase_storage.get_service_configuration("missing") is None


class TestGuardedUpdates:
    def test_update_applies_when_status_matches(self, supabase_service, client):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)

        updated = supabase_service.storage.update_job_status(job.id, "open", "cancelled", cancelled_at=utc_now())

        assert updated.status == "cancelled"
        assert isinstance(client.tables[JOBS_TABLE][0]["cancelled_at"], str)

    def test_update_skipped_when_status_differs(self, supabase_service):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)

        assert supabase_service.storage.update_job_status(job.id, "assigned", "in_progress") is None
        assert supabase_service.get_job(job.id).status == "open"

    def test_update_offer_never_writes_status(self, supabase_service, client):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)
        offer = supabase_service.create_offer(job.id, "org-operator-a", 100)
        client.tables[OFFERS_TABLE][0]["status"] = "accepted"

        stale = Offer.from_dict({**offer.to_dict(), "total_cents": 90})
        supabase_service.storage.update_offer(stale)

        row = client.tables[OFFERS_TABLE][0]
        assert row["total_cents"] == 90
        assert row["status"] == "accepted"


class TestServiceOnSupabase:
    """The full offer flow over the Supabase backend."""

    def test_accept_flow(self, supabase_service):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)
        winner = supabase_service.create_offer(job.id, "org-operator-a", 100)
        loser = supabase_service.create_offer(job.id, "org-operator-b", 120)

        supabase_service.accept_offer(winner.id, "org-buyer")

        assert supabase_service.get_job(job.id).status == "assigned"
        assert supabase_service.get_offer(loser.id).status == "rejected"
        assert supabase_service.get_booking_for_job(job.id).offer_id == winner.id

    def test_accept_reverts_job_when_offer_changed(self, supabase_storage, notifier, config):
        """If the offer guard loses, the job is put back to OPEN."""
        service = MarketplaceService(storage=supabase_storage, config=config, notifier=notifier)
        job = service.create_job("org-buyer", "spray", "Vigna", 1.0)
        offer = service.create_offer(job.id, "org-operator-a", 100)

        original = supabase_storage.update_offer_status

        def withdraw_first(offer_id, expected, new_status, **fields):
            if new_status == "accepted":
                original(offer_id, "pending", "withdrawn")
            return original(offer_id, expected, new_status, **fields)

        supabase_storage.update_offer_status = withdraw_first

        with pytest.raises(StateConflictError):
            service.accept_offer(offer.id, "org-buyer")

        reverted = service.get_job(job.id)
        assert reverted.status == "open"
        assert reverted.accepted_offer_id is None

    def test_accept_reopens_job_when_offer_update_unreachable(self, notifier, config):
        """A network failure on the offer write leaves no half-applied accept."""
        client = OfferUpdatesDownClient()
        service = MarketplaceService(
            storage=SupabaseMarketplaceStorage(client), config=config, notifier=notifier
        )
        job = service.create_job("org-buyer", "spray", "Vigna", 1.0)
        offer = service.create_offer(job.id, "org-operator-a", 100)

        with pytest.raises(DependencyError):
            service.accept_offer(offer.id, "org-buyer")

        reverted = service.get_job(job.id)
        assert reverted.status == "open"
        assert reverted.accepted_offer_id is None
        assert reverted.assigned_at is None
        assert service.get_offer(offer.id).status == "pending"
        assert client.tables.get(BOOKINGS_TABLE, []) == []

    def test_accept_undone_when_booking_insert_fails(self, supabase_storage, supabase_service):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)
        winner = supabase_service.create_offer(job.id, "org-operator-a", 100)
        rival = supabase_service.create_offer(job.id, "org-operator-b", 120)

        def unavailable(booking):
            raise DependencyError("Database unavailable during booking insert")

        supabase_storage.save_booking = unavailable

        with pytest.raises(DependencyError):
            supabase_service.accept_offer(winner.id, "org-buyer")

        assert supabase_service.get_job(job.id).status == "open"
        restored = supabase_service.get_offer(winner.id)
        assert restored.status == "pending"
        assert restored.decided_at is None
        assert supabase_service.get_offer(rival.id).status == "pending"

    def test_accept_removes_booking_when_history_write_fails(
        self, supabase_storage, supabase_service, client
    ):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)
        offer = supabase_service.create_offer(job.id, "org-operator-a", 100)

        def unavailable(transition):
            raise DependencyError("Database unavailable during transition insert")

        supabase_storage.save_transition = unavailable

        with pytest.raises(DependencyError):
            supabase_service.accept_offer(offer.id, "org-buyer")

        assert client.tables[BOOKINGS_TABLE] == []
        assert supabase_service.get_job(job.id).status == "open"
        assert supabase_service.get_offer(offer.id).status == "pending"

    def test_mark_messages_read_counts_rows(self, supabase_service):
        job = supabase_service.create_job("org-buyer", "spray", "Vigna", 1.0)
        offer = supabase_service.create_offer(job.id, "org-operator-a", 100)
        supabase_service.post_offer_message(offer.id, "org-buyer", "Hi")
        supabase_service.post_offer_message(offer.id, "org-operator-a", "Hello")

        assert supabase_service.mark_offer_messages_read(offer.id, "org-operator-a") == 1
        assert supabase_service.mark_offer_messages_read(offer.id, "org-operator-a") == 0


class TestErrorMapping:
    """PostgREST failures become marketplace errors."""

    def test_unique_violation_on_offer_insert(self):
        storage = SupabaseMarketplaceStorage(_failing_client(_api_error(UNIQUE_VIOLATION)))
        offer = Offer(id="offer-1", job_id="job-1", operator_org_id="org-operator-a", total_cents=100)

        with pytest.raises(DuplicateOfferError):
            storage.save_offer(offer)

    def test_unique_violation_on_accept(self):
        storage = SupabaseMarketplaceStorage(_failing_client(_api_error(UNIQUE_VIOLATION)))

        with pytest.raises(ConflictError):
            storage.update_offer_status("offer-1", "pending", "accepted")

    def test_other_api_error_is_dependency_error(self):
        storage = SupabaseMarketplaceStorage(_failing_client(_api_error("42P01", "relation missing")))

        with pytest.raises(DependencyError, match="job lookup"):
            storage.get_job("job-1")

    def test_unique_violation_elsewhere_is_dependency_error(self):
        storage = SupabaseMarketplaceStorage(_failing_client(_api_error(UNIQUE_VIOLATION)))

        with pytest.raises(DependencyError):
            storage.update_job_status("job-1", "open", "assigned")

    def test_network_error_is_dependency_error(self):
        storage = SupabaseMarketplaceStorage(_failing_client(httpx.ConnectError("refused")))

        with pytest.raises(DependencyError, match="unavailable"):
            storage.get_offer("offer-1")
