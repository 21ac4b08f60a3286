"""Maintenance routes for the AgriMarket API.

Periodic housekeeping, meant to be called by a scheduler (e.g. cron with
an admin token) rather than by users:
- expire pending offers older than the configured expiry
"""

import asyncio
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Request

from ..auth import AdminOrg
from ..database import Marketplace
from ..logging_config import get_logger
from ..models import ExpireOffersRequest, ExpireOffersResponse, MaintenanceHealthResponse
from ..rate_limit import limiter

logger = get_logger("maintenance")
router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/expire-offers", response_model=ExpireOffersResponse)
@limiter.limit("10/minute")
async def expire_offers(
    request: Request,
    expire_request: ExpireOffersRequest,
    admin: AdminOrg,
    service: Marketplace,
):
    """
    Expire stale pending offers.

    Call periodically (e.g. hourly). Set dry_run=true to see which offers
    would expire without changing anything.

    **Important**: requires an admin token.
    """
    logger.info(
        f"POST /maintenance/expire-offers | admin={admin.user_id} | "
        f"dry_run={expire_request.dry_run} | max_age_days={expire_request.max_age_days}"
    )

    max_age = (
        timedelta(days=expire_request.max_age_days) if expire_request.max_age_days else None
    )
    result = await asyncio.to_thread(
        service.expire_stale_offers, max_age=max_age, dry_run=expire_request.dry_run
    )

    if result.expired_offer_ids and not result.dry_run:
        logger.warning(f"Expired {len(result.expired_offer_ids)} stale offers")

    return ExpireOffersResponse(
        dry_run=result.dry_run,
        checked=result.checked,
        expired=len(result.expired_offer_ids),
        expired_offer_ids=result.expired_offer_ids,
        cutoff=result.cutoff,
        checked_at=datetime.now(timezone.utc),
    )


@router.get("/health", response_model=MaintenanceHealthResponse)
@limiter.limit("30/minute")
async def maintenance_health(
    request: Request,
    admin: AdminOrg,
    service: Marketplace,
):
    """Report how many pending offers are waiting to be expired."""
    logger.info(f"GET /maintenance/health | admin={admin.user_id}")

    _, stale = await asyncio.to_thread(service.find_stale_offers)
    return MaintenanceHealthResponse(
        status="attention_needed" if stale else "healthy",
        stale_pending_offers=len(stale),
        offer_expiry_days=service.config.offer_expiry_days,
        checked_at=datetime.now(timezone.utc),
    )
