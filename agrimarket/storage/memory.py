"""In-memory marketplace storage for testing and local development."""

import contextlib
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agrimarket.errors import ConflictError, DuplicateOfferError
from agrimarket.marketplace.models import (
    ACTIVE_OFFER_STATUSES,
    Booking,
    Job,
    JobStateTransition,
    Offer,
    OfferMessage,
    OfferStatus,
    ServiceConfiguration,
)
from agrimarket.storage.base import OFFER_EDITABLE_FIELDS, StatusFilter, status_set

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryMarketplaceStorage:
    """Thread-safe in-memory storage.

    Transactions hold a re-entrant lock for their whole duration, so they are
    serializable; on an exception the state captured at the outermost
    ``transaction()`` is restored. Records are copied in and out so callers
    never share objects with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._jobs: Dict[str, Job] = {}
        self._offers: Dict[str, Offer] = {}
        self._configs: Dict[str, ServiceConfiguration] = {}
        self._bookings: Dict[str, Booking] = {}  # job_id -> booking
        self._messages: Dict[str, List[OfferMessage]] = {}  # offer_id -> list
        self._transitions: Dict[str, List[JobStateTransition]] = {}  # job_id -> list

    def _state(self) -> tuple:
        return (
            self._jobs,
            self._offers,
            self._configs,
            self._bookings,
            self._messages,
            self._transitions,
        )

    @contextlib.contextmanager
    def transaction(self):
        with self._lock:
            snapshot = copy.deepcopy(self._state()) if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except Exception as e:
                if snapshot is not None:
                    logger.debug(f"Transaction failed, restoring snapshot: {e}")
                    (
                        self._jobs,
                        self._offers,
                        self._configs,
                        self._bookings,
                        self._messages,
                        self._transitions,
                    ) = snapshot
                raise
            finally:
                self._depth -= 1

    @staticmethod
    def _apply(record: Any, new_status: str, fields: Dict[str, Any]) -> None:
        record.status = new_status
        for key, value in fields.items():
            if not hasattr(record, key):
                raise AttributeError(f"{type(record).__name__} has no field {key!r}")
            setattr(record, key, value)

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
            self._transitions.setdefault(job.id, [])
            return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        status: StatusFilter = None,
        buyer_org_id: Optional[str] = None,
        exclude_buyer_org_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        statuses = status_set(status)
        with self._lock:
            jobs = list(self._jobs.values())

            if statuses is not None:
                jobs = [j for j in jobs if j.status in statuses]
            if buyer_org_id is not None:
                jobs = [j for j in jobs if j.buyer_org_id == buyer_org_id]
            if exclude_buyer_org_id is not None:
                jobs = [j for j in jobs if j.buyer_org_id != exclude_buyer_org_id]

            # Sort by created_at desc
            jobs.sort(key=lambda j: j.created_at or _EPOCH, reverse=True)
            return copy.deepcopy(jobs[offset : offset + limit])

    def update_job_status(
        self, job_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Job]:
        statuses = status_set(expected)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in statuses:
                return None
            self._apply(job, new_status, fields)
            return copy.deepcopy(job)

    # === Offers ===

    def save_offer(self, offer: Offer) -> str:
        with self._lock:
            if offer.status in ACTIVE_OFFER_STATUSES:
                for existing in self._offers.values():
                    if (
                        existing.id != offer.id
                        and existing.job_id == offer.job_id
                        and existing.operator_org_id == offer.operator_org_id
                        and existing.status in ACTIVE_OFFER_STATUSES
                    ):
                        raise DuplicateOfferError(
                            f"Operator {offer.operator_org_id} already has an active offer "
                            f"on job {offer.job_id}"
                        )
            self._offers[offer.id] = copy.deepcopy(offer)
            return offer.id

    def get_offer(self, offer_id: str) -> Optional[Offer]:
        with self._lock:
            offer = self._offers.get(offer_id)
            return copy.deepcopy(offer) if offer else None

    def list_offers(
        self,
        job_id: Optional[str] = None,
        operator_org_id: Optional[str] = None,
        status: StatusFilter = None,
        created_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Offer]:
        statuses = status_set(status)
        with self._lock:
            offers = list(self._offers.values())

            if job_id is not None:
                offers = [o for o in offers if o.job_id == job_id]
            if operator_org_id is not None:
                offers = [o for o in offers if o.operator_org_id == operator_org_id]
            if statuses is not None:
                offers = [o for o in offers if o.status in statuses]
            if created_before is not None:
                offers = [o for o in offers if o.created_at and o.created_at < created_before]

            offers.sort(key=lambda o: o.created_at or _EPOCH, reverse=True)
            return copy.deepcopy(offers[:limit])

    def update_offer(self, offer: Offer) -> bool:
        with self._lock:
            stored = self._offers.get(offer.id)
            if stored is None:
                return False
            for name in OFFER_EDITABLE_FIELDS:
                setattr(stored, name, copy.deepcopy(getattr(offer, name)))
            return True

    def update_offer_status(
        self, offer_id: str, expected: StatusFilter, new_status: str, **fields: Any
    ) -> Optional[Offer]:
        statuses = status_set(expected)
        with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None or offer.status not in statuses:
                return None
            if new_status == OfferStatus.ACCEPTED.value:
                for other in self._offers.values():
                    if (
                        other.id != offer_id
                        and other.job_id == offer.job_id
                        and other.status == OfferStatus.ACCEPTED.value
                    ):
                        raise ConflictError(f"Job {offer.job_id} already has an accepted offer")
            self._apply(offer, new_status, fields)
            return copy.deepcopy(offer)

    # === Service configurations ===

    def get_service_configuration(self, org_id: str) -> Optional[ServiceConfiguration]:
        with self._lock:
            config = self._configs.get(org_id)
            return copy.deepcopy(config) if config else None

    def save_service_configuration(self, config: ServiceConfiguration) -> None:
        with self._lock:
            self._configs[config.org_id] = copy.deepcopy(config)

    # === Bookings ===

    def save_booking(self, booking: Booking) -> str:
        with self._lock:
            self._bookings[booking.job_id] = copy.deepcopy(booking)
            return booking.id

    def get_booking_for_job(self, job_id: str) -> Optional[Booking]:
        with self._lock:
            booking = self._bookings.get(job_id)
            return copy.deepcopy(booking) if booking else None

    def update_booking_status(self, job_id: str, status: str, updated_at: datetime) -> bool:
        with self._lock:
            booking = self._bookings.get(job_id)
            if not booking:
                return False
            booking.status = status
            booking.updated_at = updated_at
            return True

    def delete_booking(self, booking_id: str) -> bool:
        with self._lock:
            for job_id, booking in list(self._bookings.items()):
                if booking.id == booking_id:
                    del self._bookings[job_id]
                    return True
            return False

    # === Offer messages ===

    def save_message(self, message: OfferMessage) -> str:
        with self._lock:
            self._messages.setdefault(message.offer_id, []).append(copy.deepcopy(message))
            return message.id

    def list_messages(self, offer_id: str, limit: int = 200) -> List[OfferMessage]:
        with self._lock:
            messages = sorted(
                self._messages.get(offer_id, []), key=lambda m: m.created_at or _EPOCH
            )
            return copy.deepcopy(messages[:limit])

    def mark_messages_read(self, offer_id: str, reader_org_id: str, read_at: datetime) -> int:
        with self._lock:
            count = 0
            for message in self._messages.get(offer_id, []):
                if message.sender_org_id != reader_org_id and message.read_at is None:
                    message.read_at = read_at
                    count += 1
            return count

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        with self._lock:
            self._transitions.setdefault(transition.job_id, []).append(copy.deepcopy(transition))
            return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        with self._lock:
            transitions = self._transitions.get(job_id, [])
            # Stable sort keeps insertion order for equal timestamps
            return copy.deepcopy(sorted(transitions, key=lambda t: t.created_at or _EPOCH))
