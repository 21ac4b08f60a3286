"""Storage protocol for the marketplace.

A backend persists jobs, offers, service configurations, bookings, offer
messages and the job transition audit log. Status changes go through the
guarded ``update_*_status`` methods, which only apply when the record is
still in one of the expected statuses (``UPDATE ... WHERE status IN (...)``)
and return ``None`` otherwise. ``transaction()`` groups several calls into
one atomic unit where the backend supports it.
"""

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Iterable, List, Optional, Protocol, Union

from agrimarket.marketplace.models import (
    Booking,
    Job,
    JobStateTransition,
    Offer,
    OfferMessage,
    ServiceConfiguration,
)

StatusFilter = Union[str, Iterable[str], None]

# Fields an operator may revise on a pending offer; status is never among them
OFFER_EDITABLE_FIELDS = (
    "total_cents",
    "currency",
    "proposed_start",
    "proposed_end",
    "provider_note",
    "pricing_snapshot",
    "updated_at",
)


def status_set(statuses: StatusFilter) -> Optional[frozenset]:
    """Normalize a status or collection of statuses (enums allowed)."""
    if statuses is None:
        return None
    if isinstance(statuses, str) or hasattr(statuses, "value"):
        statuses = [statuses]
    return frozenset(getattr(s, "value", s) for s in statuses)


class MarketplaceStorage(Protocol):
    """Protocol for marketplace persistence backends."""

    def transaction(self) -> AbstractContextManager:
        """Run the enclosed calls as one atomic unit where supported."""
        ...

    # Jobs
    def save_job(self, job: Job) -> str:
        """Insert a job. Returns the job ID."""
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    def list_jobs(
        self,
        status: StatusFilter = None,
        buyer_org_id: Optional[str] = None,
        exclude_buyer_org_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs, newest first."""
        ...

    def update_job_status(
        self, job_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Job]:
        """Set status (and fields) only if the job is in an expected status."""
        ...

    # Offers
    def save_offer(self, offer: Offer) -> str:
        """Insert an offer. Raises DuplicateOfferError on an active duplicate."""
        ...

    def get_offer(self, offer_id: str) -> Optional[Offer]:
        ...

    def list_offers(
        self,
        job_id: Optional[str] = None,
        operator_org_id: Optional[str] = None,
        status: StatusFilter = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Offer]:
        """List offers, newest first."""
        ...

    def update_offer(self, offer: Offer) -> bool:
        """Write an offer's OFFER_EDITABLE_FIELDS. Returns True if it existed."""
        ...

    def update_offer_status(
        self, offer_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Offer]:
        """Set status (and fields) only if the offer is in an expected status."""
        ...

    # Service configurations
    def get_service_configuration(self, org_id: str) -> Optional[ServiceConfiguration]:
        ...

    def save_service_configuration(self, config: ServiceConfiguration) -> None:
        """Insert or replace an organization's configuration."""
        ...

    # Bookings
    def save_booking(self, booking: Booking) -> str:
        ...

    def get_booking_for_job(self, job_id: str) -> Optional[Booking]:
        ...

    def update_booking_status(self, job_id: str, status: str, updated_at: datetime) -> bool:
        ...

    def delete_booking(self, booking_id: str) -> bool:
        """Remove a booking whose accept did not complete."""
        ...

    # Offer messages
    def save_message(self, message: OfferMessage) -> str:
        ...

    def list_messages(self, offer_id: str, limit: int = 200) -> List[OfferMessage]:
        """List messages oldest first."""
        ...

    def mark_messages_read(self, offer_id: str, reader_org_id: str, read_at: datetime) -> int:
        """Mark messages not sent by the reader as read. Returns the count."""
        ...

    # Transitions (audit log)
    def save_transition(self, transition: JobStateTransition) -> str:
        ...

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """All transitions for a job, oldest first."""
        ...
