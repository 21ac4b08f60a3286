"""Job routes for the AgriMarket API.

Buyers post and manage jobs; operators browse the jobs matching their
service configuration and make offers on them.
"""

import asyncio

from fastapi import APIRouter, Query, Request, status

from ..auth import CurrentOrg
from ..database import Marketplace
from ..logging_config import get_logger, log_lifecycle_action
from ..models import (
    BookingResponse,
    CancelJobRequest,
    JobCreate,
    JobHistoryResponse,
    JobListResponse,
    JobResponse,
    JobStatus,
    OfferCreate,
    OfferListResponse,
    OfferResponse,
    OfferStatus,
    OperatorJobListResponse,
    OperatorJobResponse,
    TransitionResponse,
)
from ..rate_limit import limiter

logger = get_logger("jobs")
router = APIRouter(prefix="/jobs", tags=["jobs"])


def to_job_response(job) -> JobResponse:
    """Convert a domain job to the response model."""
    return JobResponse.model_validate(job.to_dict())


def to_offer_response(offer) -> OfferResponse:
    return OfferResponse.model_validate(offer.to_dict())


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_job(
    request: Request,
    job: JobCreate,
    auth: CurrentOrg,
    service: Marketplace,
):
    """
    Post a new job.

    The authenticated organization becomes the buyer. Jobs start OPEN and
    are visible to operators whose service configuration matches them.
    """
    auth.require_buyer()
    logger.info(
        f"POST /jobs | org={auth.org_id} | service={job.service_type} | field={job.field_name[:50]}"
    )

    created = await asyncio.to_thread(
        service.create_job, buyer_org_id=auth.org_id, **job.model_dump()
    )

    logger.info(f"Job created | id={created.id} | buyer={auth.org_id}")
    return to_job_response(created)


@router.get("", response_model=JobListResponse)
@limiter.limit("60/minute")
async def list_my_jobs(
    request: Request,
    auth: CurrentOrg,
    service: Marketplace,
    status_filter: JobStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List the jobs posted by the authenticated organization."""
    logger.info(f"GET /jobs | org={auth.org_id} | status={status_filter}")

    jobs = await asyncio.to_thread(
        service.list_jobs_for_buyer, auth.org_id, status_filter, limit, offset
    )
    return JobListResponse(
        jobs=[to_job_response(j) for j in jobs],
        total=len(jobs),
        limit=limit,
        offset=offset,
    )


@router.get("/operator", response_model=OperatorJobListResponse)
@limiter.limit("60/minute")
async def list_operator_jobs(
    request: Request,
    auth: CurrentOrg,
    service: Marketplace,
    include_ineligible: bool = Query(False, description="Also show jobs your filters exclude"),
    limit: int = Query(50, ge=1, le=200),
):
    """
    Open jobs for the authenticated operator.

    Jobs excluded by the operator's service configuration are hidden unless
    ``include_ineligible`` is set; each job carries its match result and
    whether a new offer can be made.
    """
    auth.require_operator()
    logger.info(f"GET /jobs/operator | org={auth.org_id} | include_ineligible={include_ineligible}")

    views = await asyncio.to_thread(
        service.list_jobs_for_operator, auth.org_id, include_ineligible, limit
    )
    return OperatorJobListResponse(
        jobs=[OperatorJobResponse.model_validate(v.to_dict()) for v in views],
        total=len(views),
    )


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit("60/minute")
async def get_job(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Get job details."""
    logger.debug(f"GET /jobs/{job_id} | org={auth.org_id}")
    org_id = None if auth.is_admin else auth.org_id
    job = await asyncio.to_thread(service.get_job, job_id, org_id)
    return to_job_response(job)


@router.get("/{job_id}/history", response_model=JobHistoryResponse)
@limiter.limit("60/minute")
async def get_job_history(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Status transitions of a job, oldest first."""
    logger.info(f"GET /jobs/{job_id}/history | org={auth.org_id}")
    org_id = None if auth.is_admin else auth.org_id
    transitions = await asyncio.to_thread(service.get_job_history, job_id, org_id)
    return JobHistoryResponse(
        job_id=job_id,
        transitions=[TransitionResponse.model_validate(t.to_dict()) for t in transitions],
    )


@router.get("/{job_id}/booking", response_model=BookingResponse)
@limiter.limit("60/minute")
async def get_job_booking(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """The booking created when the job's offer was accepted."""
    logger.info(f"GET /jobs/{job_id}/booking | org={auth.org_id}")
    org_id = None if auth.is_admin else auth.org_id
    booking = await asyncio.to_thread(service.get_booking_for_job, job_id, org_id)
    return BookingResponse.model_validate(booking.to_dict())


@router.post("/{job_id}/offers", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_offer(
    request: Request,
    job_id: str,
    offer: OfferCreate,
    auth: CurrentOrg,
    service: Marketplace,
):
    """
    Make an offer on an open job.

    One active (pending or accepted) offer per operator per job; a
    withdrawn, rejected or expired offer can be replaced by a new one.
    """
    auth.require_operator()
    logger.info(
        f"POST /jobs/{job_id}/offers | org={auth.org_id} | total_cents={offer.total_cents}"
    )

    created = await asyncio.to_thread(
        service.create_offer, job_id=job_id, operator_org_id=auth.org_id, **offer.model_dump()
    )

    log_lifecycle_action(f"org={auth.org_id}", "create", "offer", created.id, True)
    return to_offer_response(created)


@router.get("/{job_id}/offers", response_model=OfferListResponse)
@limiter.limit("60/minute")
async def list_job_offers(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
    status_filter: OfferStatus | None = Query(None, alias="status"),
):
    """List the offers on a job. Only the job's buyer can see them."""
    logger.info(f"GET /jobs/{job_id}/offers | org={auth.org_id} | status={status_filter}")
    offers = await asyncio.to_thread(
        service.list_offers_for_job, job_id, auth.org_id, status_filter
    )
    return OfferListResponse(offers=[to_offer_response(o) for o in offers], total=len(offers))


@router.post("/{job_id}/start", response_model=JobResponse)
@limiter.limit("20/minute")
async def start_job(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Start work on an assigned job (assigned operator only)."""
    logger.info(f"POST /jobs/{job_id}/start | org={auth.org_id}")
    job = await asyncio.to_thread(service.start_job, job_id, auth.org_id)
    log_lifecycle_action(f"org={auth.org_id}", "start", "job", job_id, True)
    return to_job_response(job)


@router.post("/{job_id}/complete", response_model=JobResponse)
@limiter.limit("20/minute")
async def complete_job(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """
    Mark an in-progress job as completed.

    Either the buyer or the assigned operator may complete the job; the
    completing side is recorded on the job.
    """
    logger.info(f"POST /jobs/{job_id}/complete | org={auth.org_id}")
    job = await asyncio.to_thread(service.complete_job, job_id, auth.org_id)
    log_lifecycle_action(f"org={auth.org_id}", "complete", "job", job_id, True)
    return to_job_response(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
@limiter.limit("20/minute")
async def cancel_job(
    request: Request,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
    body: CancelJobRequest | None = None,
):
    """
    Cancel an open or assigned job (buyer only).

    Pending and accepted offers on the job are cancelled with it.
    """
    reason = body.reason if body else None
    logger.info(f"POST /jobs/{job_id}/cancel | org={auth.org_id} | reason={reason}")
    job = await asyncio.to_thread(service.cancel_job, job_id, auth.org_id, reason)
    log_lifecycle_action(f"org={auth.org_id}", "cancel", "job", job_id, True)
    return to_job_response(job)
