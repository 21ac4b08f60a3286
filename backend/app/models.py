"""Pydantic models for API requests and responses."""

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

JobStatus = Literal["open", "assigned", "in_progress", "completed", "cancelled"]
OfferStatus = Literal["pending", "accepted", "rejected", "withdrawn", "expired", "cancelled"]
BookingStatus = Literal["confirmed", "in_progress", "completed", "cancelled"]
ServiceType = Literal["spray", "spread", "mapping"]
CropType = Literal["vineyard", "olive_grove", "cereal", "vegetables", "fruit", "other"]
TerrainCondition = Literal["flat", "hilly", "mountainous"]
Weekday = Literal["MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN"]


def _lower(v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v


# =============================================================================
# Jobs
# =============================================================================

class JobCreate(BaseModel):
    """Request to post a job."""
    service_type: ServiceType
    field_name: str = Field(..., min_length=1, max_length=200)
    area_ha: float = Field(..., gt=0)
    crop_type: CropType | None = None
    terrain_conditions: TerrainCondition | None = None
    treatment_type: str | None = Field(None, max_length=100)
    location: dict[str, Any] | list[Any] | None = None
    target_date_start: date | None = None
    target_date_end: date | None = None
    requested_window_start: datetime | None = None
    requested_window_end: datetime | None = None
    notes: str | None = Field(None, max_length=4000)

    @field_validator("service_type", "crop_type", "terrain_conditions", mode="before")
    @classmethod
    def normalize_choice(cls, v):
        return _lower(v)


class JobResponse(BaseModel):
    """Job details response."""
    id: str
    buyer_org_id: str
    service_type: ServiceType
    field_name: str
    area_ha: float
    crop_type: CropType | None = None
    terrain_conditions: TerrainCondition | None = None
    treatment_type: str | None = None
    location: dict[str, Any] | list[Any] | None = None
    target_date_start: date | None = None
    target_date_end: date | None = None
    requested_window_start: datetime | None = None
    requested_window_end: datetime | None = None
    notes: str | None = None
    status: JobStatus
    accepted_offer_id: str | None = None
    completed_by_org_id: str | None = None
    completed_by_role: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""
    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class MatchResponse(BaseModel):
    """Eligibility of a job for an operator."""
    eligible: bool
    reasons: list[str]
    skipped: list[str] = Field(default_factory=list)


class OperatorJobResponse(JobResponse):
    """A job in the operator feed."""
    match: MatchResponse
    can_offer: bool
    existing_offer_status: OfferStatus | None = None


class OperatorJobListResponse(BaseModel):
    """Operator job feed."""
    jobs: list[OperatorJobResponse]
    total: int


class CancelJobRequest(BaseModel):
    """Request to cancel a job."""
    reason: str | None = Field(None, max_length=1000)


class TransitionResponse(BaseModel):
    """One entry of a job's status history."""
    id: str
    job_id: str
    from_status: str | None = None
    to_status: str
    actor_id: str | None = None
    actor_role: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class JobHistoryResponse(BaseModel):
    job_id: str
    transitions: list[TransitionResponse]


class BookingResponse(BaseModel):
    """Booking created when an offer is accepted."""
    id: str
    job_id: str
    offer_id: str
    buyer_org_id: str
    operator_org_id: str
    service_type: ServiceType
    total_cents: int
    currency: str
    site_snapshot: dict[str, Any] = Field(default_factory=dict)
    status: BookingStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =============================================================================
# Offers
# =============================================================================

class OfferCreate(BaseModel):
    """Request to make an offer on a job."""
    total_cents: int = Field(..., gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    proposed_start: datetime | None = None
    proposed_end: datetime | None = None
    provider_note: str | None = Field(None, max_length=4000)
    pricing_snapshot: dict[str, Any] | None = None


class OfferUpdate(BaseModel):
    """Request to revise a pending offer. Omitted fields are unchanged."""
    total_cents: int | None = Field(None, gt=0)
    proposed_start: datetime | None = None
    proposed_end: datetime | None = None
    provider_note: str | None = Field(None, max_length=4000)
    pricing_snapshot: dict[str, Any] | None = None


class OfferResponse(BaseModel):
    """Offer details response."""
    id: str
    job_id: str
    operator_org_id: str
    total_cents: int
    currency: str
    status: OfferStatus
    proposed_start: datetime | None = None
    proposed_end: datetime | None = None
    provider_note: str | None = None
    pricing_snapshot: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    decided_at: datetime | None = None


class OfferListResponse(BaseModel):
    offers: list[OfferResponse]
    total: int


class RejectOfferRequest(BaseModel):
    """Request to reject an offer."""
    reason: str | None = Field(None, max_length=1000)


class MessageCreate(BaseModel):
    """Request to post a message on an offer."""
    body: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    id: str
    offer_id: str
    sender_org_id: str
    body: str
    created_at: datetime | None = None
    read_at: datetime | None = None


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    total: int


class MarkReadResponse(BaseModel):
    offer_id: str
    marked_read: int


# =============================================================================
# Service configuration
# =============================================================================

class ServiceConfigUpdate(BaseModel):
    """Full replacement of an operator's service configuration.

    ``None`` (or an omitted field) means the constraint is not applied; an
    empty list is a constraint that matches nothing.
    """
    enable_job_filters: bool = False
    offered_service_types: list[ServiceType] | None = None
    available_days: list[Weekday] | None = None
    working_hours_start: int | None = Field(None, ge=0, le=24)
    working_hours_end: int | None = Field(None, ge=0, le=24)
    base_location_lat: float | None = Field(None, ge=-90, le=90)
    base_location_lng: float | None = Field(None, ge=-180, le=180)
    base_location_address: str | None = Field(None, max_length=500)
    service_radius_km: float | None = Field(None, gt=0)
    offer_message_template: str | None = Field(None, max_length=4000)
    rejection_message_template: str | None = Field(None, max_length=4000)

    @field_validator("offered_service_types", mode="before")
    @classmethod
    def normalize_service_types(cls, v):
        return [_lower(t) for t in v] if isinstance(v, list) else v

    @field_validator("available_days", mode="before")
    @classmethod
    def normalize_days(cls, v):
        return [d.strip().upper()[:3] if isinstance(d, str) else d for d in v] if isinstance(v, list) else v


class ServiceConfigResponse(BaseModel):
    org_id: str
    configured: bool = True
    enable_job_filters: bool = False
    offered_service_types: list[ServiceType] | None = None
    available_days: list[Weekday] | None = None
    working_hours_start: int | None = None
    working_hours_end: int | None = None
    base_location_lat: float | None = None
    base_location_lng: float | None = None
    base_location_address: str | None = None
    service_radius_km: float | None = None
    offer_message_template: str | None = None
    rejection_message_template: str | None = None
    updated_at: datetime | None = None


# =============================================================================
# Maintenance
# =============================================================================

class ExpireOffersRequest(BaseModel):
    """Request to expire stale pending offers."""
    max_age_days: int | None = Field(
        default=None, ge=1, le=365, description="Defaults to the configured offer expiry"
    )
    dry_run: bool = Field(
        default=False, description="If true, report what would be done without making changes"
    )


class ExpireOffersResponse(BaseModel):
    dry_run: bool
    checked: int
    expired: int
    expired_offer_ids: list[str]
    cutoff: datetime
    checked_at: datetime


class MaintenanceHealthResponse(BaseModel):
    status: str
    stale_pending_offers: int
    offer_expiry_days: int
    checked_at: datetime
