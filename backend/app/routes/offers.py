"""Offer routes for the AgriMarket API.

Offers are created under ``/jobs/{job_id}/offers``; these endpoints act on
an existing offer: accept/reject (buyer), update/withdraw (operator) and the
per-offer message thread.
"""

import asyncio

from fastapi import APIRouter, Query, Request, status

from ..auth import CurrentOrg
from ..database import Marketplace
from ..logging_config import get_logger, log_lifecycle_action
from ..models import (
    MarkReadResponse,
    MessageCreate,
    MessageListResponse,
    MessageResponse,
    OfferListResponse,
    OfferResponse,
    OfferStatus,
    OfferUpdate,
    RejectOfferRequest,
)
from ..rate_limit import limiter
from .jobs import to_offer_response

logger = get_logger("offers")
router = APIRouter(prefix="/offers", tags=["offers"])


@router.get("/mine", response_model=OfferListResponse)
@limiter.limit("60/minute")
async def list_my_offers(
    request: Request,
    auth: CurrentOrg,
    service: Marketplace,
    status_filter: OfferStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
):
    """List the offers made by the authenticated operator."""
    logger.info(f"GET /offers/mine | org={auth.org_id} | status={status_filter}")
    offers = await asyncio.to_thread(
        service.list_offers_for_operator, auth.org_id, status_filter, limit
    )
    return OfferListResponse(offers=[to_offer_response(o) for o in offers], total=len(offers))


@router.get("/{offer_id}", response_model=OfferResponse)
@limiter.limit("60/minute")
async def get_offer(
    request: Request,
    offer_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Get an offer (job buyer or offering operator)."""
    logger.debug(f"GET /offers/{offer_id} | org={auth.org_id}")
    org_id = None if auth.is_admin else auth.org_id
    offer = await asyncio.to_thread(service.get_offer, offer_id, org_id)
    return to_offer_response(offer)


@router.put("/{offer_id}", response_model=OfferResponse)
@limiter.limit("30/minute")
async def update_offer(
    request: Request,
    offer_id: str,
    update: OfferUpdate,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Revise a pending offer while its job is still open (operator only)."""
    logger.info(f"PUT /offers/{offer_id} | org={auth.org_id}")
    offer = await asyncio.to_thread(
        service.update_offer,
        offer_id=offer_id,
        operator_org_id=auth.org_id,
        **update.model_dump(exclude_none=True),
    )
    log_lifecycle_action(f"org={auth.org_id}", "update", "offer", offer_id, True)
    return to_offer_response(offer)


@router.post("/{offer_id}/accept", response_model=OfferResponse)
@limiter.limit("10/minute")
async def accept_offer(
    request: Request,
    offer_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """
    Accept an offer (job buyer only).

    The job becomes ASSIGNED, every other pending offer on it is rejected
    and a booking is created. If another offer was accepted first the
    request fails with 409.
    """
    logger.info(f"POST /offers/{offer_id}/accept | org={auth.org_id}")
    offer = await asyncio.to_thread(service.accept_offer, offer_id, auth.org_id)
    log_lifecycle_action(f"org={auth.org_id}", "accept", "offer", offer_id, True)
    return to_offer_response(offer)


@router.post("/{offer_id}/reject", response_model=OfferResponse)
@limiter.limit("30/minute")
async def reject_offer(
    request: Request,
    offer_id: str,
    auth: CurrentOrg,
    service: Marketplace,
    body: RejectOfferRequest | None = None,
):
    """Reject a pending offer (job buyer only). The job stays open."""
    reason = body.reason if body else None
    logger.info(f"POST /offers/{offer_id}/reject | org={auth.org_id}")
    offer = await asyncio.to_thread(service.reject_offer, offer_id, auth.org_id, reason)
    log_lifecycle_action(f"org={auth.org_id}", "reject", "offer", offer_id, True)
    return to_offer_response(offer)


@router.post("/{offer_id}/withdraw", response_model=OfferResponse)
@limiter.limit("30/minute")
async def withdraw_offer(
    request: Request,
    offer_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Withdraw a pending offer (offering operator only)."""
    logger.info(f"POST /offers/{offer_id}/withdraw | org={auth.org_id}")
    offer = await asyncio.to_thread(service.withdraw_offer, offer_id, auth.org_id)
    log_lifecycle_action(f"org={auth.org_id}", "withdraw", "offer", offer_id, True)
    return to_offer_response(offer)


@router.get("/{offer_id}/messages", response_model=MessageListResponse)
@limiter.limit("60/minute")
async def list_messages(
    request: Request,
    offer_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Message thread of an offer, oldest first."""
    logger.debug(f"GET /offers/{offer_id}/messages | org={auth.org_id}")
    messages = await asyncio.to_thread(service.list_offer_messages, offer_id, auth.org_id)
    return MessageListResponse(
        messages=[MessageResponse.model_validate(m.to_dict()) for m in messages],
        total=len(messages),
    )


@router.post(
    "/{offer_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED
)
@limiter.limit("60/minute")
async def post_message(
    request: Request,
    offer_id: str,
    message: MessageCreate,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Post a message to the offer's thread (job buyer or offering operator)."""
    logger.info(f"POST /offers/{offer_id}/messages | org={auth.org_id} | len={len(message.body)}")
    created = await asyncio.to_thread(
        service.post_offer_message, offer_id, auth.org_id, message.body
    )
    return MessageResponse.model_validate(created.to_dict())


@router.put("/{offer_id}/messages/read", response_model=MarkReadResponse)
@limiter.limit("60/minute")
async def mark_messages_read(
    request: Request,
    offer_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Mark the other side's messages on this offer as read."""
    logger.debug(f"PUT /offers/{offer_id}/messages/read | org={auth.org_id}")
    count = await asyncio.to_thread(service.mark_offer_messages_read, offer_id, auth.org_id)
    return MarkReadResponse(offer_id=offer_id, marked_read=count)
