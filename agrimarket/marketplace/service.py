"""Marketplace service: the offer and job lifecycles.

``MarketplaceService`` is the only writer of job and offer statuses. Every
operation follows the same shape:

1. load the records and check the actor's role/ownership (no mutation yet)
2. inside ``storage.transaction()``, re-read and apply guarded status
   updates; a guard that matches nothing means another writer got there
   first and becomes a ``StateConflictError``
3. after the transaction, write the event trail and send notifications;
   failures there are logged and never undo the committed change
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from agrimarket.config import MarketplaceConfig
from agrimarket.errors import (
    AuthorizationError,
    ConflictError,
    DuplicateOfferError,
    JobNotFoundError,
    NotFoundError,
    OfferNotFoundError,
    StateConflictError,
    ValidationError,
)
from agrimarket.logging_config import log_offer, log_sweep, log_transition
from agrimarket.marketplace.matching import MatchResult, evaluate_job, offers_service_type
from agrimarket.marketplace.models import (
    ACTIVE_OFFER_STATUSES,
    Booking,
    BookingStatus,
    Job,
    JobStateTransition,
    JobStatus,
    Offer,
    OfferMessage,
    OfferStatus,
    OrgRole,
    ServiceConfiguration,
    parse_date,
    parse_datetime,
    statuses_leading_to,
    utc_now,
)
from agrimarket.marketplace.notifications import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    OFFER_ACCEPTED,
    OFFER_CREATED,
    OFFER_MESSAGE,
    OFFER_REJECTED,
    OFFER_WITHDRAWN,
    LoggingNotifier,
    NotificationEvent,
    Notifier,
)
from agrimarket.storage.base import MarketplaceStorage

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# Upper bound on rows touched by one cascade or sweep batch
_BATCH_LIMIT = 10000

_CONFIG_FIELDS = {
    f.name for f in dataclasses.fields(ServiceConfiguration) if f.name not in ("org_id", "updated_at")
}


@dataclass
class OperatorJobView:
    """An open job as seen by one operator."""

    job: Job
    match: MatchResult
    can_offer: bool
    existing_offer_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.job.to_dict()
        data["match"] = self.match.to_dict()
        data["can_offer"] = self.can_offer
        data["existing_offer_status"] = self.existing_offer_status
        return data


@dataclass
class ExpirySweepResult:
    """Outcome of one offer-expiry sweep."""

    checked: int
    expired_offer_ids: List[str]
    cutoff: datetime
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "expired": len(self.expired_offer_ids),
            "expired_offer_ids": self.expired_offer_ids,
            "cutoff": self.cutoff.isoformat(),
            "dry_run": self.dry_run,
        }


class MarketplaceService:
    """Service for marketplace operations.

    Args:
        storage: Marketplace storage backend
        config: Marketplace configuration (defaults apply when omitted)
        notifier: Receives events after commit (defaults to LoggingNotifier)
    """

    def __init__(
        self,
        storage: MarketplaceStorage,
        config: Optional[MarketplaceConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.storage = storage
        self.config = config or MarketplaceConfig()
        self.notifier = notifier or LoggingNotifier()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _require_offer(self, offer_id: str) -> Offer:
        offer = self.storage.get_offer(offer_id)
        if offer is None:
            raise OfferNotFoundError(offer_id)
        return offer

    def _record_transition(
        self,
        job_id: str,
        from_status: Optional[str],
        to_status: str,
        actor_id: str,
        actor_role: str,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.storage.save_transition(
            JobStateTransition(
                id=str(uuid.uuid4()),
                job_id=job_id,
                from_status=from_status,
                to_status=to_status,
                actor_id=actor_id,
                actor_role=actor_role,
                reason=reason,
                metadata=metadata or {},
                created_at=utc_now(),
            )
        )

    def _trail(self, org_id: Optional[str], entity: str, entity_id: str, from_status, to_status) -> None:
        try:
            log_transition(org_id, entity, entity_id, from_status, to_status)
        except OSError as e:
            logger.warning(f"Could not write event trail for {entity} {entity_id}: {e}")

    def _dispatch(self, events: List[NotificationEvent]) -> None:
        for event in events:
            try:
                self.notifier.notify(event)
            except Exception as e:
                logger.warning(
                    f"Notification {event.event_type} to org {event.recipient_org_id} failed: {e}"
                )

    def _undo(self, steps: List[Callable[[], Any]], what: str) -> None:
        """Run compensating writes newest first; a failing step does not stop the rest."""
        for step in reversed(steps):
            try:
                step()
            except Exception as e:
                logger.error(f"Could not undo a step of {what}: {e}")

    def _job_conflict(self, job_id: str, expected, fallback: Optional[str]) -> StateConflictError:
        current = self.storage.get_job(job_id)
        actual = current.status if current else fallback
        return StateConflictError("job", job_id, expected, actual)

    def _offer_conflict(self, offer_id: str, expected, fallback: Optional[str]) -> StateConflictError:
        current = self.storage.get_offer(offer_id)
        actual = current.status if current else fallback
        return StateConflictError("offer", offer_id, expected, actual)

    def _require_transition(self, entity: str, record: Any, target) -> None:
        if not record.can_transition_to(target):
            raise StateConflictError(entity, record.id, statuses_leading_to(target), record.status)

    def _participants(self, offer: Offer) -> Tuple[Job, str, str]:
        job = self._require_job(offer.job_id)
        return job, job.buyer_org_id, offer.operator_org_id

    def _accepted_operator(self, job: Job) -> Optional[str]:
        if not job.accepted_offer_id:
            return None
        offer = self.storage.get_offer(job.accepted_offer_id)
        return offer.operator_org_id if offer else None

    def _service_type_allowed(self, job: Job, operator_org_id: str) -> bool:
        """Offer-time filter: only the service type is re-checked."""
        if not self.config.enforce_filters_on_offer:
            return True
        config = self.storage.get_service_configuration(operator_org_id)
        if config is None or not config.enable_job_filters:
            return True
        return offers_service_type(job, config)

    # =========================================================================
    # Jobs
    # =========================================================================

    def create_job(
        self,
        buyer_org_id: str,
        service_type: str,
        field_name: str,
        area_ha: float,
        crop_type: Optional[str] = None,
        terrain_conditions: Optional[str] = None,
        treatment_type: Optional[str] = None,
        location: Optional[Any] = None,
        target_date_start: Any = None,
        target_date_end: Any = None,
        requested_window_start: Any = None,
        requested_window_end: Any = None,
        notes: Optional[str] = None,
    ) -> Job:
        """Post a new OPEN job for a buyer organization.

        Raises:
            ValidationError: If a field is missing or invalid
        """
        now = utc_now()
        try:
            job = Job(
                id=str(uuid.uuid4()),
                buyer_org_id=buyer_org_id,
                service_type=service_type,
                field_name=field_name,
                area_ha=area_ha,
                crop_type=crop_type,
                terrain_conditions=terrain_conditions,
                treatment_type=treatment_type,
                location=location,
                target_date_start=parse_date(target_date_start),
                target_date_end=parse_date(target_date_end),
                requested_window_start=parse_datetime(requested_window_start),
                requested_window_end=parse_datetime(requested_window_end),
                notes=notes,
                created_at=now,
                updated_at=now,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e

        with self.storage.transaction():
            self.storage.save_job(job)
            self._record_transition(
                job.id, None, JobStatus.OPEN.value, buyer_org_id, OrgRole.BUYER.value
            )

        logger.info(f"Created job {job.id} ({job.service_type}, {job.area_ha} ha) for {buyer_org_id}")
        self._trail(buyer_org_id, "job", job.id, None, job.status)
        return job

    def get_job(self, job_id: str, org_id: Optional[str] = None) -> Job:
        """Fetch a job as seen by ``org_id`` (None reads as admin).

        Open jobs are listed publicly, so any organization may read them.
        Once a job leaves OPEN only its buyer and the accepted operator can.
        """
        job = self._require_job(job_id)
        if org_id is None or job.is_open or org_id == job.buyer_org_id:
            return job
        if org_id == self._accepted_operator(job):
            return job
        raise AuthorizationError("Only the buyer or the assigned operator can view this job")

    def list_jobs_for_buyer(
        self,
        buyer_org_id: str,
        status: Optional[Any] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        return self.storage.list_jobs(
            status=status, buyer_org_id=buyer_org_id, limit=limit, offset=offset
        )

    def list_jobs_for_operator(
        self,
        operator_org_id: str,
        include_ineligible: bool = False,
        limit: int = 100,
    ) -> List[OperatorJobView]:
        """Open jobs of other organizations, filtered by the operator's configuration.

        Each job is annotated with its match result, the operator's most recent
        offer status on it, and whether a new offer would be accepted.
        """
        config = self.storage.get_service_configuration(operator_org_id)

        latest_status: Dict[str, str] = {}
        for offer in self.storage.list_offers(operator_org_id=operator_org_id, limit=_BATCH_LIMIT):
            # Newest first: keep the first status seen per job
            latest_status.setdefault(offer.job_id, offer.status)

        views: List[OperatorJobView] = []
        # Filter before truncating, so page through until enough jobs match
        offset = 0
        while len(views) < limit:
            page = self.storage.list_jobs(
                status=JobStatus.OPEN.value,
                exclude_buyer_org_id=operator_org_id,
                limit=_BATCH_LIMIT,
                offset=offset,
            )
            for job in page:
                match = evaluate_job(job, config)
                if not match.eligible and not include_ineligible:
                    continue
                existing = latest_status.get(job.id)
                can_offer = existing not in ACTIVE_OFFER_STATUSES and self._service_type_allowed(
                    job, operator_org_id
                )
                views.append(
                    OperatorJobView(
                        job=job, match=match, can_offer=can_offer, existing_offer_status=existing
                    )
                )
            if len(page) < _BATCH_LIMIT:
                break
            offset += _BATCH_LIMIT
        return views[:limit]

    def evaluate_job_for_operator(self, job_id: str, operator_org_id: str) -> MatchResult:
        job = self._require_job(job_id)
        return evaluate_job(job, self.storage.get_service_configuration(operator_org_id))

    def start_job(self, job_id: str, operator_org_id: str) -> Job:
        """Move an ASSIGNED job to IN_PROGRESS. Only the accepted operator may start it."""
        job = self._require_job(job_id)
        self._require_transition("job", job, JobStatus.IN_PROGRESS)
        if self._accepted_operator(job) != operator_org_id:
            raise AuthorizationError("Only the assigned operator can start this job")

        now = utc_now()
        with self.storage.transaction():
            updated = self.storage.update_job_status(
                job_id,
                JobStatus.ASSIGNED.value,
                JobStatus.IN_PROGRESS.value,
                started_at=now,
                updated_at=now,
            )
            if updated is None:
                raise self._job_conflict(job_id, JobStatus.ASSIGNED.value, job.status)
            self.storage.update_booking_status(job_id, BookingStatus.IN_PROGRESS.value, now)
            self._record_transition(
                job_id,
                JobStatus.ASSIGNED.value,
                JobStatus.IN_PROGRESS.value,
                operator_org_id,
                OrgRole.OPERATOR.value,
            )

        logger.info(f"Job {job_id} started by {operator_org_id}")
        self._trail(operator_org_id, "job", job_id, JobStatus.ASSIGNED.value, updated.status)
        return updated

    def complete_job(self, job_id: str, org_id: str) -> Job:
        """Move an IN_PROGRESS job to COMPLETED.

        Either the buyer or the accepted operator may complete; which one did is
        stored on the job and in the audit log.
        """
        job = self._require_job(job_id)
        operator_org_id = self._accepted_operator(job)
        if org_id == job.buyer_org_id:
            role = OrgRole.BUYER.value
            counterpart = operator_org_id
        elif operator_org_id is not None and org_id == operator_org_id:
            role = OrgRole.OPERATOR.value
            counterpart = job.buyer_org_id
        else:
            raise AuthorizationError("Only the buyer or the assigned operator can complete this job")
        self._require_transition("job", job, JobStatus.COMPLETED)

        now = utc_now()
        with self.storage.transaction():
            updated = self.storage.update_job_status(
                job_id,
                JobStatus.IN_PROGRESS.value,
                JobStatus.COMPLETED.value,
                completed_by_org_id=org_id,
                completed_by_role=role,
                completed_at=now,
                updated_at=now,
            )
            if updated is None:
                raise self._job_conflict(job_id, JobStatus.IN_PROGRESS.value, job.status)
            self.storage.update_booking_status(job_id, BookingStatus.COMPLETED.value, now)
            self._record_transition(
                job_id,
                JobStatus.IN_PROGRESS.value,
                JobStatus.COMPLETED.value,
                org_id,
                role,
                metadata={"completed_by_role": role},
            )

        logger.info(f"Job {job_id} completed by {org_id} ({role})")
        self._trail(org_id, "job", job_id, JobStatus.IN_PROGRESS.value, updated.status)
        if counterpart:
            self._dispatch(
                [NotificationEvent(JOB_COMPLETED, counterpart, job_id, job.accepted_offer_id)]
            )
        return updated

    def cancel_job(self, job_id: str, buyer_org_id: str, reason: Optional[str] = None) -> Job:
        """Cancel an OPEN or ASSIGNED job.

        Pending and accepted offers on the job move to CANCELLED and the
        booking (if any) is cancelled with it.
        """
        job = self._require_job(job_id)
        if job.buyer_org_id != buyer_org_id:
            raise AuthorizationError("Only the job's buyer can cancel it")
        self._require_transition("job", job, JobStatus.CANCELLED)
        cancellable = statuses_leading_to(JobStatus.CANCELLED)

        now = utc_now()
        with self.storage.transaction():
            # Status may have moved since the check above; record the one replaced
            from_status = self._require_job(job_id).status
            if from_status not in cancellable:
                raise StateConflictError("job", job_id, cancellable, from_status)
            updated = self.storage.update_job_status(
                job_id,
                from_status,
                JobStatus.CANCELLED.value,
                cancelled_at=now,
                updated_at=now,
            )
            if updated is None:
                raise self._job_conflict(job_id, cancellable, from_status)

            cancelled_offers = []
            for offer in self.storage.list_offers(
                job_id=job_id, status=statuses_leading_to(OfferStatus.CANCELLED), limit=_BATCH_LIMIT
            ):
                moved = self.storage.update_offer_status(
                    offer.id,
                    offer.status,
                    OfferStatus.CANCELLED.value,
                    decided_at=now,
                    updated_at=now,
                )
                if moved is not None:
                    cancelled_offers.append((offer, moved))

            self.storage.update_booking_status(job_id, BookingStatus.CANCELLED.value, now)
            self._record_transition(
                job_id,
                from_status,
                JobStatus.CANCELLED.value,
                buyer_org_id,
                OrgRole.BUYER.value,
                reason=reason,
                metadata={"cancelled_offer_ids": [o.id for o, _ in cancelled_offers]},
            )

        logger.info(f"Job {job_id} cancelled by {buyer_org_id} ({len(cancelled_offers)} offers cancelled)")
        self._trail(buyer_org_id, "job", job_id, from_status, updated.status)
        for before, after in cancelled_offers:
            self._trail(buyer_org_id, "offer", after.id, before.status, after.status)
        self._dispatch(
            [
                NotificationEvent(JOB_CANCELLED, o.operator_org_id, job_id, o.id, message=reason)
                for o, _ in cancelled_offers
            ]
        )
        return updated

    def get_job_history(self, job_id: str, org_id: Optional[str] = None) -> List[JobStateTransition]:
        self.get_job(job_id, org_id)
        return self.storage.get_transitions(job_id)

    def get_booking_for_job(self, job_id: str, org_id: Optional[str] = None) -> Booking:
        job = self._require_job(job_id)
        booking = self.storage.get_booking_for_job(job_id)
        if booking is None:
            raise NotFoundError(f"No booking for job {job_id}")
        if org_id is not None and org_id not in (job.buyer_org_id, booking.operator_org_id):
            raise AuthorizationError("Only the buyer or the assigned operator can view the booking")
        return booking

    # =========================================================================
    # Offers
    # =========================================================================

    def create_offer(
        self,
        job_id: str,
        operator_org_id: str,
        total_cents: int,
        currency: Optional[str] = None,
        proposed_start: Any = None,
        proposed_end: Any = None,
        provider_note: Optional[str] = None,
        pricing_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Offer:
        """Submit a PENDING offer on an open job.

        Raises:
            JobNotFoundError: If the job doesn't exist
            StateConflictError: If the job is no longer open
            AuthorizationError: If the operator owns the job
            DuplicateOfferError: If the operator already has an active offer on it
            ValidationError: If the fields are invalid or the operator does not
                offer the job's service type
        """
        job = self._require_job(job_id)
        if not job.is_open:
            raise StateConflictError("job", job_id, JobStatus.OPEN.value, job.status)
        if job.buyer_org_id == operator_org_id:
            raise AuthorizationError("Cannot make an offer on your own job")
        if not self._service_type_allowed(job, operator_org_id):
            raise ValidationError(f"Operator {operator_org_id} does not offer {job.service_type}")

        now = utc_now()
        try:
            offer = Offer(
                id=str(uuid.uuid4()),
                job_id=job_id,
                operator_org_id=operator_org_id,
                total_cents=total_cents,
                currency=currency or self.config.default_currency,
                proposed_start=parse_datetime(proposed_start),
                proposed_end=parse_datetime(proposed_end),
                provider_note=provider_note,
                pricing_snapshot=pricing_snapshot,
                created_at=now,
                updated_at=now,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e

        with self.storage.transaction():
            current = self._require_job(job_id)
            if not current.is_open:
                raise StateConflictError("job", job_id, JobStatus.OPEN.value, current.status)
            if self.storage.list_offers(
                job_id=job_id, operator_org_id=operator_org_id, status=ACTIVE_OFFER_STATUSES, limit=1
            ):
                raise DuplicateOfferError(
                    f"Operator {operator_org_id} already has an active offer on job {job_id}"
                )
            self.storage.save_offer(offer)

        logger.info(f"Offer {offer.id} on job {job_id} by {operator_org_id}: {offer.total_cents} {offer.currency}")
        try:
            log_offer(operator_org_id, job_id, offer.id, offer.total_cents, offer.currency)
        except OSError as e:
            logger.warning(f"Could not write event trail for offer {offer.id}: {e}")

        config = self.storage.get_service_configuration(operator_org_id)
        message = config.offer_message_template if config else None
        self._dispatch(
            [NotificationEvent(OFFER_CREATED, job.buyer_org_id, job_id, offer.id, message=message)]
        )
        return offer

    def update_offer(
        self,
        offer_id: str,
        operator_org_id: str,
        total_cents: Optional[int] = None,
        proposed_start: Any = None,
        proposed_end: Any = None,
        provider_note: Optional[str] = None,
        pricing_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Offer:
        """Revise a PENDING offer while its job is still OPEN."""
        offer = self._require_offer(offer_id)
        if offer.operator_org_id != operator_org_id:
            raise AuthorizationError("Only the offering operator can update this offer")
        if not offer.is_pending:
            raise StateConflictError("offer", offer_id, OfferStatus.PENDING.value, offer.status)

        changes: Dict[str, Any] = {}
        try:
            if total_cents is not None:
                changes["total_cents"] = total_cents
            if proposed_start is not None:
                changes["proposed_start"] = parse_datetime(proposed_start)
            if proposed_end is not None:
                changes["proposed_end"] = parse_datetime(proposed_end)
            if provider_note is not None:
                changes["provider_note"] = provider_note
            if pricing_snapshot is not None:
                changes["pricing_snapshot"] = pricing_snapshot
            if not changes:
                return offer
            revised = dataclasses.replace(offer, updated_at=utc_now(), **changes)
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e

        with self.storage.transaction():
            job = self._require_job(offer.job_id)
            if not job.is_open:
                raise StateConflictError("job", job.id, JobStatus.OPEN.value, job.status)
            current = self._require_offer(offer_id)
            if not current.is_pending:
                raise StateConflictError("offer", offer_id, OfferStatus.PENDING.value, current.status)
            self.storage.update_offer(revised)

        logger.info(f"Offer {offer_id} updated by {operator_org_id}: {sorted(changes)}")
        return revised

    def accept_offer(self, offer_id: str, buyer_org_id: str) -> Offer:
        """Accept a PENDING offer; the job becomes ASSIGNED.

        In one transaction: the job is guarded OPEN -> ASSIGNED, the offer
        PENDING -> ACCEPTED, every other pending offer on the job is rejected
        and a booking is created. Losing a race raises StateConflictError.
        """
        offer = self._require_offer(offer_id)
        job = self._require_job(offer.job_id)
        if job.buyer_org_id != buyer_org_id:
            raise AuthorizationError("Only the job's buyer can accept offers")
        self._require_transition("offer", offer, OfferStatus.ACCEPTED)
        self._require_transition("job", job, JobStatus.ASSIGNED)

        now = utc_now()
        with self.storage.transaction():
            current_job = self._require_job(job.id)
            self._require_transition("job", current_job, JobStatus.ASSIGNED)

            assigned = self.storage.update_job_status(
                job.id,
                JobStatus.OPEN.value,
                JobStatus.ASSIGNED.value,
                accepted_offer_id=offer_id,
                assigned_at=now,
                updated_at=now,
            )
            if assigned is None:
                logger.warning(f"Lost accept race on job {job.id} (offer {offer_id})")
                raise self._job_conflict(job.id, JobStatus.OPEN.value, current_job.status)

            # Reverse steps for backends without rollback, newest last
            undo: List[Callable[[], Any]] = [
                lambda: self.storage.update_job_status(
                    job.id,
                    JobStatus.ASSIGNED.value,
                    JobStatus.OPEN.value,
                    accepted_offer_id=None,
                    assigned_at=None,
                    updated_at=now,
                )
            ]
            try:
                accepted, rejected = self._apply_accept(current_job, offer, buyer_org_id, now, undo)
            except Exception as e:
                logger.warning(f"Accept of offer {offer_id} failed ({e}); reopening job {job.id}")
                self._undo(undo, f"accept of offer {offer_id}")
                raise

        logger.info(
            f"Offer {offer_id} accepted for job {job.id}; {len(rejected)} other offers rejected"
        )
        self._trail(buyer_org_id, "job", job.id, JobStatus.OPEN.value, JobStatus.ASSIGNED.value)
        self._trail(buyer_org_id, "offer", offer_id, OfferStatus.PENDING.value, accepted.status)
        for other in rejected:
            self._trail(buyer_org_id, "offer", other.id, OfferStatus.PENDING.value, other.status)

        events = [NotificationEvent(OFFER_ACCEPTED, accepted.operator_org_id, job.id, offer_id)]
        events.extend(
            NotificationEvent(OFFER_REJECTED, o.operator_org_id, job.id, o.id) for o in rejected
        )
        self._dispatch(events)
        return accepted

    def _apply_accept(
        self,
        job: Job,
        offer: Offer,
        buyer_org_id: str,
        now: datetime,
        undo: List[Callable[[], Any]],
    ) -> Tuple[Offer, List[Offer]]:
        """Writes of an accept after the job guard; each pushes its inverse onto ``undo``."""
        try:
            accepted = self.storage.update_offer_status(
                offer.id,
                OfferStatus.PENDING.value,
                OfferStatus.ACCEPTED.value,
                decided_at=now,
                updated_at=now,
            )
        except ConflictError:
            accepted = None
        if accepted is None:
            raise self._offer_conflict(offer.id, OfferStatus.PENDING.value, offer.status)
        undo.append(lambda: self._reopen_offer(offer.id, OfferStatus.ACCEPTED.value, now))

        rejected = []
        for other in self.storage.list_offers(
            job_id=job.id, status=OfferStatus.PENDING.value, limit=_BATCH_LIMIT
        ):
            moved = self.storage.update_offer_status(
                other.id,
                OfferStatus.PENDING.value,
                OfferStatus.REJECTED.value,
                decided_at=now,
                updated_at=now,
            )
            if moved is not None:
                rejected.append(moved)
                undo.append(
                    lambda oid=other.id: self._reopen_offer(oid, OfferStatus.REJECTED.value, now)
                )

        booking = Booking(
            id=str(uuid.uuid4()),
            job_id=job.id,
            offer_id=offer.id,
            buyer_org_id=buyer_org_id,
            operator_org_id=accepted.operator_org_id,
            service_type=job.service_type,
            total_cents=accepted.total_cents,
            currency=accepted.currency,
            site_snapshot=job.site_snapshot(),
            created_at=now,
            updated_at=now,
        )
        self.storage.save_booking(booking)
        undo.append(lambda: self.storage.delete_booking(booking.id))

        self._record_transition(
            job.id,
            JobStatus.OPEN.value,
            JobStatus.ASSIGNED.value,
            buyer_org_id,
            OrgRole.BUYER.value,
            metadata={
                "offer_id": offer.id,
                "booking_id": booking.id,
                "rejected_offer_ids": [o.id for o in rejected],
            },
        )
        return accepted, rejected

    def _reopen_offer(self, offer_id: str, from_status: str, now: datetime) -> None:
        self.storage.update_offer_status(
            offer_id, from_status, OfferStatus.PENDING.value, decided_at=None, updated_at=now
        )

    def reject_offer(self, offer_id: str, buyer_org_id: str, reason: Optional[str] = None) -> Offer:
        """Reject a PENDING offer. The job is unaffected."""
        offer = self._require_offer(offer_id)
        job = self._require_job(offer.job_id)
        if job.buyer_org_id != buyer_org_id:
            raise AuthorizationError("Only the job's buyer can reject offers")
        self._require_transition("offer", offer, OfferStatus.REJECTED)

        now = utc_now()
        with self.storage.transaction():
            rejected = self.storage.update_offer_status(
                offer_id,
                OfferStatus.PENDING.value,
                OfferStatus.REJECTED.value,
                decided_at=now,
                updated_at=now,
            )
            if rejected is None:
                raise self._offer_conflict(offer_id, OfferStatus.PENDING.value, offer.status)

        logger.info(f"Offer {offer_id} rejected by {buyer_org_id}")
        self._trail(buyer_org_id, "offer", offer_id, OfferStatus.PENDING.value, rejected.status)
        if reason is None:
            config = self.storage.get_service_configuration(buyer_org_id)
            reason = config.rejection_message_template if config else None
        self._dispatch(
            [NotificationEvent(OFFER_REJECTED, offer.operator_org_id, job.id, offer_id, message=reason)]
        )
        return rejected

    def withdraw_offer(self, offer_id: str, operator_org_id: str) -> Offer:
        """Withdraw a PENDING offer. Only the offering operator may withdraw."""
        offer = self._require_offer(offer_id)
        if offer.operator_org_id != operator_org_id:
            raise AuthorizationError("Only the offering operator can withdraw this offer")
        self._require_transition("offer", offer, OfferStatus.WITHDRAWN)

        now = utc_now()
        with self.storage.transaction():
            withdrawn = self.storage.update_offer_status(
                offer_id,
                OfferStatus.PENDING.value,
                OfferStatus.WITHDRAWN.value,
                decided_at=now,
                updated_at=now,
            )
            if withdrawn is None:
                raise self._offer_conflict(offer_id, OfferStatus.PENDING.value, offer.status)

        logger.info(f"Offer {offer_id} withdrawn by {operator_org_id}")
        self._trail(operator_org_id, "offer", offer_id, OfferStatus.PENDING.value, withdrawn.status)
        job = self.storage.get_job(offer.job_id)
        if job is not None:
            self._dispatch(
                [NotificationEvent(OFFER_WITHDRAWN, job.buyer_org_id, job.id, offer_id)]
            )
        return withdrawn

    def expire_offer(self, offer_id: str) -> Offer:
        """Expire a PENDING offer on behalf of the system."""
        offer = self._require_offer(offer_id)
        self._require_transition("offer", offer, OfferStatus.EXPIRED)

        now = utc_now()
        with self.storage.transaction():
            expired = self.storage.update_offer_status(
                offer_id,
                OfferStatus.PENDING.value,
                OfferStatus.EXPIRED.value,
                decided_at=now,
                updated_at=now,
            )
            if expired is None:
                raise self._offer_conflict(offer_id, OfferStatus.PENDING.value, offer.status)

        logger.info(f"Offer {offer_id} expired")
        self._trail(SYSTEM_ACTOR, "offer", offer_id, OfferStatus.PENDING.value, expired.status)
        return expired

    def find_stale_offers(
        self, max_age: Optional[timedelta] = None, now: Optional[datetime] = None
    ) -> Tuple[datetime, List[Offer]]:
        """PENDING offers created before the expiry cutoff, with the cutoff used."""
        if max_age is None:
            max_age = timedelta(days=self.config.offer_expiry_days)
        if max_age <= timedelta(0):
            raise ValidationError("max_age must be positive")
        cutoff = (now or utc_now()) - max_age
        offers = self.storage.list_offers(
            status=OfferStatus.PENDING.value, created_before=cutoff, limit=_BATCH_LIMIT
        )
        return cutoff, offers

    def expire_stale_offers(
        self,
        max_age: Optional[timedelta] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> ExpirySweepResult:
        """Expire every PENDING offer older than ``max_age``.

        Meant to be run periodically (maintenance endpoint, CLI), never from
        a request handler. Offers that change status mid-sweep are skipped.
        """
        cutoff, candidates = self.find_stale_offers(max_age, now)
        expired_ids = []
        for offer in candidates:
            if dry_run:
                expired_ids.append(offer.id)
                continue
            try:
                self.expire_offer(offer.id)
            except StateConflictError as e:
                logger.debug(f"Skipping offer {offer.id} during sweep: {e}")
                continue
            expired_ids.append(offer.id)

        logger.info(
            f"Offer expiry sweep: {len(expired_ids)}/{len(candidates)} expired "
            f"(cutoff={cutoff.isoformat()}, dry_run={dry_run})"
        )
        try:
            log_sweep(len(expired_ids), len(candidates), dry_run=dry_run)
        except OSError as e:
            logger.warning(f"Could not write event trail for sweep: {e}")
        return ExpirySweepResult(
            checked=len(candidates), expired_offer_ids=expired_ids, cutoff=cutoff, dry_run=dry_run
        )

    def get_offer(self, offer_id: str, org_id: Optional[str] = None) -> Offer:
        offer = self._require_offer(offer_id)
        if org_id is not None:
            _, buyer, operator = self._participants(offer)
            if org_id not in (buyer, operator):
                raise AuthorizationError("Only the job's buyer or the offering operator can view this offer")
        return offer

    def list_offers_for_job(self, job_id: str, buyer_org_id: str, status: Optional[Any] = None) -> List[Offer]:
        job = self._require_job(job_id)
        if job.buyer_org_id != buyer_org_id:
            raise AuthorizationError("Only the job's buyer can list its offers")
        return self.storage.list_offers(job_id=job_id, status=status, limit=_BATCH_LIMIT)

    def list_offers_for_operator(
        self, operator_org_id: str, status: Optional[Any] = None, limit: int = 100
    ) -> List[Offer]:
        return self.storage.list_offers(operator_org_id=operator_org_id, status=status, limit=limit)

    # =========================================================================
    # Offer messages
    # =========================================================================

    def post_offer_message(self, offer_id: str, sender_org_id: str, body: str) -> OfferMessage:
        offer = self._require_offer(offer_id)
        job, buyer, operator = self._participants(offer)
        if sender_org_id not in (buyer, operator):
            raise AuthorizationError("Only the job's buyer or the offering operator can post messages")
        if body and len(body) > self.config.max_message_length:
            raise ValidationError(
                f"message too long (max {self.config.max_message_length} characters)"
            )
        try:
            message = OfferMessage(
                id=str(uuid.uuid4()),
                offer_id=offer_id,
                sender_org_id=sender_org_id,
                body=body,
                created_at=utc_now(),
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        self.storage.save_message(message)
        recipient = operator if sender_org_id == buyer else buyer
        self._dispatch([NotificationEvent(OFFER_MESSAGE, recipient, job.id, offer_id, message=body)])
        return message

    def list_offer_messages(self, offer_id: str, org_id: str) -> List[OfferMessage]:
        offer = self._require_offer(offer_id)
        _, buyer, operator = self._participants(offer)
        if org_id not in (buyer, operator):
            raise AuthorizationError("Only the job's buyer or the offering operator can read messages")
        return self.storage.list_messages(offer_id)

    def mark_offer_messages_read(self, offer_id: str, org_id: str) -> int:
        offer = self._require_offer(offer_id)
        _, buyer, operator = self._participants(offer)
        if org_id not in (buyer, operator):
            raise AuthorizationError("Only the job's buyer or the offering operator can read messages")
        return self.storage.mark_messages_read(offer_id, org_id, utc_now())

    # =========================================================================
    # Service configuration
    # =========================================================================

    def get_service_configuration(self, org_id: str) -> Optional[ServiceConfiguration]:
        return self.storage.get_service_configuration(org_id)

    def save_service_configuration(
        self, org_id: str, actor_org_id: str, **fields: Any
    ) -> ServiceConfiguration:
        """Create or replace an organization's service configuration.

        Fields left out are reset to "not restricting".
        """
        if actor_org_id != org_id:
            raise AuthorizationError("Organizations can only configure their own services")
        unknown = set(fields) - _CONFIG_FIELDS
        if unknown:
            raise ValidationError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")
        try:
            config = ServiceConfiguration(org_id=org_id, updated_at=utc_now(), **fields)
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e

        self.storage.save_service_configuration(config)
        logger.info(f"Service configuration saved for {org_id} (filters={config.enable_job_filters})")
        return config
