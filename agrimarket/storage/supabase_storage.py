"""Supabase (Postgres) storage backend.

PostgREST offers no multi-statement transactions, so ``transaction()`` is a
no-op here. Correctness rests on two things instead:

- every status change is an ``UPDATE ... WHERE status IN (...)`` guard, so a
  losing concurrent writer matches zero rows
- partial unique indexes (one accepted offer per job, one active offer per
  operator per job) reject what the guards alone cannot; Postgres reports
  them as ``23505`` unique violations

The table layout lives in ``backend/supabase/migrations``.
"""

import contextlib
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError

from agrimarket.errors import ConflictError, DependencyError, DuplicateOfferError
from agrimarket.marketplace.models import (
    Booking,
    Job,
    JobStateTransition,
    Offer,
    OfferMessage,
    ServiceConfiguration,
)
from agrimarket.storage.base import OFFER_EDITABLE_FIELDS, StatusFilter, status_set

logger = logging.getLogger(__name__)

JOBS_TABLE = "marketplace_jobs"
OFFERS_TABLE = "marketplace_offers"
SERVICE_CONFIGS_TABLE = "service_configurations"
BOOKINGS_TABLE = "bookings"
OFFER_MESSAGES_TABLE = "offer_messages"
TRANSITIONS_TABLE = "job_state_transitions"

UNIQUE_VIOLATION = "23505"


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in fields.items()}


class SupabaseMarketplaceStorage:
    """Marketplace storage on a Supabase ``Client``."""

    def __init__(self, client):
        self.client = client

    @contextlib.contextmanager
    def transaction(self):
        yield self

    def _execute(self, description: str, build: Callable[[], Any], on_unique: Optional[Callable] = None):
        """Run a PostgREST query, mapping failures onto marketplace errors."""
        try:
            return build().execute()
        except APIError as e:
            if on_unique is not None and getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise on_unique(e) from e
            logger.error(f"Supabase error during {description}: {e}")
            raise DependencyError(f"Database error during {description}") from e
        except httpx.HTTPError as e:
            logger.error(f"Supabase unreachable during {description}: {e}")
            raise DependencyError(f"Database unavailable during {description}") from e

    def _guarded_update(
        self, table: str, record_id: str, expected: StatusFilter, new_status: str, fields: Dict[str, Any],
        on_unique: Optional[Callable] = None,
    ) -> Optional[Dict[str, Any]]:
        statuses = sorted(status_set(expected))
        update_data = _serialize({"status": new_status, **fields})
        result = self._execute(
            f"{table} status update",
            lambda: self.client.table(table)
            .update(update_data)
            .eq("id", record_id)
            .in_("status", statuses),
            on_unique=on_unique,
        )
        return result.data[0] if result.data else None

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        self._execute("job insert", lambda: self.client.table(JOBS_TABLE).insert(job.to_dict()))
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        result = self._execute(
            "job lookup", lambda: self.client.table(JOBS_TABLE).select("*").eq("id", job_id)
        )
        return Job.from_dict(result.data[0]) if result.data else None

    def list_jobs(
        self,
        status: StatusFilter = None,
        buyer_org_id: Optional[str] = None,
        exclude_buyer_org_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        def build():
            query = self.client.table(JOBS_TABLE).select("*")
            statuses = status_set(status)
            if statuses is not None:
                query = query.in_("status", sorted(statuses))
            if buyer_org_id is not None:
                query = query.eq("buyer_org_id", buyer_org_id)
            if exclude_buyer_org_id is not None:
                query = query.neq("buyer_org_id", exclude_buyer_org_id)
            return query.order("created_at", desc=True).range(offset, offset + limit - 1)

        result = self._execute("job listing", build)
        return [Job.from_dict(row) for row in result.data or []]

    def update_job_status(
        self, job_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Job]:
        row = self._guarded_update(JOBS_TABLE, job_id, expected, new_status, fields)
        return Job.from_dict(row) if row else None

    # === Offers ===

    def save_offer(self, offer: Offer) -> str:
        self._execute(
            "offer insert",
            lambda: self.client.table(OFFERS_TABLE).insert(offer.to_dict()),
            on_unique=lambda e: DuplicateOfferError(
                f"Operator {offer.operator_org_id} already has an active offer on job {offer.job_id}"
            ),
        )
        return offer.id

    def get_offer(self, offer_id: str) -> Optional[Offer]:
        result = self._execute(
            "offer lookup", lambda: self.client.table(OFFERS_TABLE).select("*").eq("id", offer_id)
        )
        return Offer.from_dict(result.data[0]) if result.data else None

    def list_offers(
        self,
        job_id: Optional[str] = None,
        operator_org_id: Optional[str] = None,
        status: StatusFilter = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Offer]:
        def build():
            query = self.client.table(OFFERS_TABLE).select("*")
            if job_id is not None:
                query = query.eq("job_id", job_id)
            if operator_org_id is not None:
                query = query.eq("operator_org_id", operator_org_id)
            statuses = status_set(status)
            if statuses is not None:
                query = query.in_("status", sorted(statuses))
            if created_before is not None:
                query = query.lt("created_at", created_before.isoformat())
            return query.order("created_at", desc=True).limit(limit)

        result = self._execute("offer listing", build)
        return [Offer.from_dict(row) for row in result.data or []]

    def update_offer(self, offer: Offer) -> bool:
        full = offer.to_dict()
        data = {name: full[name] for name in OFFER_EDITABLE_FIELDS}
        result = self._execute(
            "offer update",
            lambda: self.client.table(OFFERS_TABLE).update(data).eq("id", offer.id),
        )
        return bool(result.data)

    def update_offer_status(
        self, offer_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Offer]:
        row = self._guarded_update(
            OFFERS_TABLE,
            offer_id,
            expected,
            new_status,
            fields,
            on_unique=lambda e: ConflictError(f"Offer {offer_id} cannot become {new_status}"),
        )
        return Offer.from_dict(row) if row else None

    # === Service configurations ===

    def get_service_configuration(self, org_id: str) -> Optional[ServiceConfiguration]:
        result = self._execute(
            "service configuration lookup",
            lambda: self.client.table(SERVICE_CONFIGS_TABLE).select("*").eq("org_id", org_id),
        )
        return ServiceConfiguration.from_dict(result.data[0]) if result.data else None

    def save_service_configuration(self, config: ServiceConfiguration) -> None:
        self._execute(
            "service configuration upsert",
            lambda: self.client.table(SERVICE_CONFIGS_TABLE).upsert(
                config.to_dict(), on_conflict="org_id"
            ),
        )

    # === Bookings ===

    def save_booking(self, booking: Booking) -> str:
        self._execute(
            "booking insert", lambda: self.client.table(BOOKINGS_TABLE).insert(booking.to_dict())
        )
        return booking.id

    def get_booking_for_job(self, job_id: str) -> Optional[Booking]:
        result = self._execute(
            "booking lookup",
            lambda: self.client.table(BOOKINGS_TABLE).select("*").eq("job_id", job_id),
        )
        return Booking.from_dict(result.data[0]) if result.data else None

    def update_booking_status(self, job_id: str, status: str, updated_at: datetime) -> bool:
        result = self._execute(
            "booking update",
            lambda: self.client.table(BOOKINGS_TABLE)
            .update({"status": status, "updated_at": updated_at.isoformat()})
            .eq("job_id", job_id),
        )
        return bool(result.data)

    def delete_booking(self, booking_id: str) -> bool:
        result = self._execute(
            "booking delete",
            lambda: self.client.table(BOOKINGS_TABLE).delete().eq("id", booking_id),
        )
        return bool(result.data)

    # === Offer messages ===

    def save_message(self, message: OfferMessage) -> str:
        self._execute(
            "message insert",
            lambda: self.client.table(OFFER_MESSAGES_TABLE).insert(message.to_dict()),
        )
        return message.id

    def list_messages(self, offer_id: str, limit: int = 200) -> List[OfferMessage]:
        result = self._execute(
            "message listing",
            lambda: self.client.table(OFFER_MESSAGES_TABLE)
            .select("*")
            .eq("offer_id", offer_id)
            .order("created_at")
            .limit(limit),
        )
        return [OfferMessage.from_dict(row) for row in result.data or []]

    def mark_messages_read(self, offer_id: str, reader_org_id: str, read_at: datetime) -> int:
        result = self._execute(
            "message read receipt",
            lambda: self.client.table(OFFER_MESSAGES_TABLE)
            .update({"read_at": read_at.isoformat()})
            .eq("offer_id", offer_id)
            .neq("sender_org_id", reader_org_id)
            .is_("read_at", "null"),
        )
        return len(result.data or [])

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        self._execute(
            "transition insert",
            lambda: self.client.table(TRANSITIONS_TABLE).insert(transition.to_dict()),
        )
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        result = self._execute(
            "transition listing",
            lambda: self.client.table(TRANSITIONS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .order("created_at"),
        )
        return [JobStateTransition.from_dict(row) for row in result.data or []]
