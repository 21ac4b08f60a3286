"""Service configuration routes for the AgriMarket API.

An operator's service configuration decides which jobs show up in its feed.
"""

import asyncio

from fastapi import APIRouter, HTTPException, Request, status

from ..auth import CurrentOrg
from ..database import Marketplace
from ..logging_config import get_logger
from ..models import MatchResponse, ServiceConfigResponse, ServiceConfigUpdate
from ..rate_limit import limiter

logger = get_logger("service_config")
router = APIRouter(prefix="/service-config", tags=["service-config"])


def _require_self_or_admin(auth, org_id: str) -> None:
    if auth.org_id != org_id and not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot access another organization's service configuration",
        )


@router.get("/{org_id}", response_model=ServiceConfigResponse)
@limiter.limit("60/minute")
async def get_service_config(
    request: Request,
    org_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """
    Get an organization's service configuration.

    An organization that never saved one gets ``configured=false`` and no
    filters, which is how the matching treats it.
    """
    _require_self_or_admin(auth, org_id)
    logger.info(f"GET /service-config/{org_id} | org={auth.org_id}")

    config = await asyncio.to_thread(service.get_service_configuration, org_id)
    if config is None:
        return ServiceConfigResponse(org_id=org_id, configured=False)
    return ServiceConfigResponse.model_validate(config.to_dict())


@router.put("/{org_id}", response_model=ServiceConfigResponse)
@limiter.limit("20/minute")
async def put_service_config(
    request: Request,
    org_id: str,
    update: ServiceConfigUpdate,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Replace an organization's service configuration (owner only)."""
    logger.info(
        f"PUT /service-config/{org_id} | org={auth.org_id} | filters={update.enable_job_filters}"
    )

    actor_org_id = org_id if auth.is_admin else auth.org_id
    config = await asyncio.to_thread(
        service.save_service_configuration, org_id, actor_org_id, **update.model_dump()
    )
    return ServiceConfigResponse.model_validate(config.to_dict())


@router.get("/{org_id}/match/{job_id}", response_model=MatchResponse)
@limiter.limit("60/minute")
async def match_job(
    request: Request,
    org_id: str,
    job_id: str,
    auth: CurrentOrg,
    service: Marketplace,
):
    """Evaluate one job against the organization's configuration."""
    _require_self_or_admin(auth, org_id)
    logger.info(f"GET /service-config/{org_id}/match/{job_id} | org={auth.org_id}")

    result = await asyncio.to_thread(service.evaluate_job_for_operator, job_id, org_id)
    return MatchResponse.model_validate(result.to_dict())
