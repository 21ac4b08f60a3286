"""Marketplace data models.

Jobs are posted by buyer organizations, offers are submitted by operator
organizations, and service configurations describe what an operator is able
and willing to do. Statuses are stored as plain strings (the enum values) so
records round-trip through SQLite and Supabase rows unchanged.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from dateutil import parser as date_parser


class JobStatus(Enum):
    """Job lifecycle status."""

    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OfferStatus(Enum):
    """Offer lifecycle status."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class BookingStatus(Enum):
    """Booking status, kept in step with the job."""

    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ServiceType(Enum):
    SPRAY = "spray"
    SPREAD = "spread"
    MAPPING = "mapping"


class CropType(Enum):
    VINEYARD = "vineyard"
    OLIVE_GROVE = "olive_grove"
    CEREAL = "cereal"
    VEGETABLES = "vegetables"
    FRUIT = "fruit"
    OTHER = "other"


class TerrainCondition(Enum):
    FLAT = "flat"
    HILLY = "hilly"
    MOUNTAINOUS = "mountainous"


class OrgRole(Enum):
    """Role an organization acts in for a request."""

    BUYER = "buyer"
    OPERATOR = "operator"
    PROVIDER = "provider"  # buyer and operator
    ADMIN = "admin"


WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

# Job status transitions. OPEN -> ASSIGNED only happens through offer acceptance.
VALID_JOB_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.CANCELLED},
    JobStatus.ASSIGNED: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

# ACCEPTED is only left when the job it won is cancelled.
VALID_OFFER_TRANSITIONS: Dict[OfferStatus, set] = {
    OfferStatus.PENDING: {
        OfferStatus.ACCEPTED,
        OfferStatus.REJECTED,
        OfferStatus.WITHDRAWN,
        OfferStatus.EXPIRED,
        OfferStatus.CANCELLED,
    },
    OfferStatus.ACCEPTED: {OfferStatus.CANCELLED},
    OfferStatus.REJECTED: set(),
    OfferStatus.WITHDRAWN: set(),
    OfferStatus.EXPIRED: set(),
    OfferStatus.CANCELLED: set(),
}


def statuses_leading_to(target) -> Tuple[str, ...]:
    """Status values a job or offer may move to ``target`` from, sorted."""
    table = VALID_JOB_TRANSITIONS if isinstance(target, JobStatus) else VALID_OFFER_TRANSITIONS
    return tuple(sorted(s.value for s, targets in table.items() if target in targets))


# Offers that block the same operator from offering again on a job.
ACTIVE_OFFER_STATUSES = frozenset({OfferStatus.PENDING.value, OfferStatus.ACCEPTED.value})

_JOB_STATUS_VALUES = {s.value for s in JobStatus}
_OFFER_STATUS_VALUES = {s.value for s in OfferStatus}
_BOOKING_STATUS_VALUES = {s.value for s in BookingStatus}
_SERVICE_TYPE_VALUES = {s.value for s in ServiceType}
_CROP_TYPE_VALUES = {c.value for c in CropType}
_TERRAIN_VALUES = {t.value for t in TerrainCondition}


def utc_now() -> datetime:
    """Get current timestamp in UTC."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass through a datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return date_parser.isoparse(str(value))


def parse_date(value: Any) -> Optional[date]:
    """Parse an ISO date string (or reduce a datetime to its date)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.isoparse(str(value)).date()


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _normalize_choice(value: Any, allowed: set, label: str) -> Optional[str]:
    if value is None or value == "":
        return None
    normalized = str(_enum_value(value)).strip().lower()
    if normalized not in allowed:
        raise ValueError(f"Invalid {label}: {value}")
    return normalized


def normalize_weekdays(days: Any) -> Optional[FrozenSet[str]]:
    """Normalize a weekday collection (or "MON,TUE" string) to a frozenset.

    ``None`` stays ``None`` (no restriction); an empty collection stays empty.
    """
    if days is None:
        return None
    if isinstance(days, str):
        days = [d for d in days.split(",") if d.strip()]
    result = set()
    for day in days:
        code = str(day).strip().upper()[:3]
        if code not in WEEKDAYS:
            raise ValueError(f"Invalid weekday: {day}")
        result.add(code)
    return frozenset(result)


def normalize_service_types(types: Any) -> Optional[FrozenSet[str]]:
    """Normalize a service type collection (or "SPRAY,SPREAD" string)."""
    if types is None:
        return None
    if isinstance(types, str):
        types = [t for t in types.split(",") if t.strip()]
    return frozenset(_normalize_choice(t, _SERVICE_TYPE_VALUES, "service type") for t in types)


@dataclass
class Job:
    """A unit of agricultural work posted by a buyer organization."""

    id: str
    buyer_org_id: str
    service_type: str
    field_name: str
    area_ha: float
    crop_type: Optional[str] = None
    terrain_conditions: Optional[str] = None
    treatment_type: Optional[str] = None
    location: Optional[Any] = None
    target_date_start: Optional[date] = None
    target_date_end: Optional[date] = None
    requested_window_start: Optional[datetime] = None
    requested_window_end: Optional[datetime] = None
    notes: Optional[str] = None
    status: str = JobStatus.OPEN.value
    accepted_offer_id: Optional[str] = None
    completed_by_org_id: Optional[str] = None
    completed_by_role: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.buyer_org_id:
            raise ValueError("buyer_org_id is required")
        if not self.field_name or not self.field_name.strip():
            raise ValueError("field_name cannot be empty")
        if len(self.field_name) > 200:
            raise ValueError("field_name too long (max 200 characters)")
        if self.area_ha is None or float(self.area_ha) <= 0:
            raise ValueError("area_ha must be positive")
        self.area_ha = float(self.area_ha)

        self.service_type = _normalize_choice(self.service_type, _SERVICE_TYPE_VALUES, "service type")
        if self.service_type is None:
            raise ValueError("service_type is required")
        self.crop_type = _normalize_choice(self.crop_type, _CROP_TYPE_VALUES, "crop type")
        self.terrain_conditions = _normalize_choice(
            self.terrain_conditions, _TERRAIN_VALUES, "terrain condition"
        )

        self.status = _enum_value(self.status)
        if self.status not in _JOB_STATUS_VALUES:
            raise ValueError(f"Invalid status: {self.status}")

        if (
            self.target_date_start is not None
            and self.target_date_end is not None
            and self.target_date_end < self.target_date_start
        ):
            raise ValueError("target_date_end must not be before target_date_start")
        if (
            self.requested_window_start is not None
            and self.requested_window_end is not None
            and self.requested_window_end < self.requested_window_start
        ):
            raise ValueError("requested_window_end must not be before requested_window_start")

    def can_transition_to(self, new_status: JobStatus) -> bool:
        """Check if transition to new status is valid."""
        return new_status in VALID_JOB_TRANSITIONS[JobStatus(self.status)]

    @property
    def is_open(self) -> bool:
        return self.status == JobStatus.OPEN.value

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value)

    def site_snapshot(self) -> Dict[str, Any]:
        """Field details copied into the booking when the job is assigned."""
        return {
            "field_name": self.field_name,
            "area_ha": self.area_ha,
            "location": self.location,
            "target_date_start": _iso(self.target_date_start),
            "target_date_end": _iso(self.target_date_end),
            "notes": self.notes,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "buyer_org_id": self.buyer_org_id,
            "service_type": self.service_type,
            "field_name": self.field_name,
            "area_ha": self.area_ha,
            "crop_type": self.crop_type,
            "terrain_conditions": self.terrain_conditions,
            "treatment_type": self.treatment_type,
            "location": self.location,
            "target_date_start": _iso(self.target_date_start),
            "target_date_end": _iso(self.target_date_end),
            "requested_window_start": _iso(self.requested_window_start),
            "requested_window_end": _iso(self.requested_window_end),
            "notes": self.notes,
            "status": self.status,
            "accepted_offer_id": self.accepted_offer_id,
            "completed_by_org_id": self.completed_by_org_id,
            "completed_by_role": self.completed_by_role,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "assigned_at": _iso(self.assigned_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            buyer_org_id=data["buyer_org_id"],
            service_type=data["service_type"],
            field_name=data["field_name"],
            area_ha=data["area_ha"],
            crop_type=data.get("crop_type"),
            terrain_conditions=data.get("terrain_conditions"),
            treatment_type=data.get("treatment_type"),
            location=data.get("location"),
            target_date_start=parse_date(data.get("target_date_start")),
            target_date_end=parse_date(data.get("target_date_end")),
            requested_window_start=parse_datetime(data.get("requested_window_start")),
            requested_window_end=parse_datetime(data.get("requested_window_end")),
            notes=data.get("notes"),
            status=data.get("status", JobStatus.OPEN.value),
            accepted_offer_id=data.get("accepted_offer_id"),
            completed_by_org_id=data.get("completed_by_org_id"),
            completed_by_role=data.get("completed_by_role"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            assigned_at=parse_datetime(data.get("assigned_at")),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            cancelled_at=parse_datetime(data.get("cancelled_at")),
        )


@dataclass
class Offer:
    """An operator's priced proposal to carry out a job."""

    id: str
    job_id: str
    operator_org_id: str
    total_cents: int
    currency: str = "EUR"
    status: str = OfferStatus.PENDING.value
    proposed_start: Optional[datetime] = None
    proposed_end: Optional[datetime] = None
    provider_note: Optional[str] = None
    pricing_snapshot: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.job_id:
            raise ValueError("job_id is required")
        if not self.operator_org_id:
            raise ValueError("operator_org_id is required")
        if self.total_cents is None or int(self.total_cents) <= 0:
            raise ValueError("total_cents must be positive")
        self.total_cents = int(self.total_cents)
        if not self.currency or len(self.currency) != 3:
            raise ValueError(f"Invalid currency: {self.currency}")
        self.currency = self.currency.upper()

        self.status = _enum_value(self.status)
        if self.status not in _OFFER_STATUS_VALUES:
            raise ValueError(f"Invalid status: {self.status}")

        if (
            self.proposed_start is not None
            and self.proposed_end is not None
            and self.proposed_end < self.proposed_start
        ):
            raise ValueError("proposed_end must not be before proposed_start")

    def can_transition_to(self, new_status: OfferStatus) -> bool:
        return new_status in VALID_OFFER_TRANSITIONS[OfferStatus(self.status)]

    @property
    def is_pending(self) -> bool:
        return self.status == OfferStatus.PENDING.value

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_OFFER_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "operator_org_id": self.operator_org_id,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "status": self.status,
            "proposed_start": _iso(self.proposed_start),
            "proposed_end": _iso(self.proposed_end),
            "provider_note": self.provider_note,
            "pricing_snapshot": self.pricing_snapshot,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "decided_at": _iso(self.decided_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Offer":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            operator_org_id=data["operator_org_id"],
            total_cents=data["total_cents"],
            currency=data.get("currency") or "EUR",
            status=data.get("status", OfferStatus.PENDING.value),
            proposed_start=parse_datetime(data.get("proposed_start")),
            proposed_end=parse_datetime(data.get("proposed_end")),
            provider_note=data.get("provider_note"),
            pricing_snapshot=data.get("pricing_snapshot"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            decided_at=parse_datetime(data.get("decided_at")),
        )


@dataclass
class ServiceConfiguration:
    """An operator organization's declared capabilities and constraints.

    Every constraint field uses ``None`` for "not restricting". An explicitly
    empty set is a restriction that matches nothing.
    """

    org_id: str
    enable_job_filters: bool = False
    offered_service_types: Optional[FrozenSet[str]] = None
    available_days: Optional[FrozenSet[str]] = None
    working_hours_start: Optional[int] = None
    working_hours_end: Optional[int] = None
    base_location_lat: Optional[float] = None
    base_location_lng: Optional[float] = None
    base_location_address: Optional[str] = None
    service_radius_km: Optional[float] = None
    offer_message_template: Optional[str] = None
    rejection_message_template: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.org_id:
            raise ValueError("org_id is required")
        self.enable_job_filters = bool(self.enable_job_filters)
        self.offered_service_types = normalize_service_types(self.offered_service_types)
        self.available_days = normalize_weekdays(self.available_days)

        for name in ("working_hours_start", "working_hours_end"):
            value = getattr(self, name)
            if value is None:
                continue
            value = int(value)
            if not 0 <= value <= 24:
                raise ValueError(f"{name} must be between 0 and 24")
            setattr(self, name, value)
        if (
            self.working_hours_start is not None
            and self.working_hours_end is not None
            and self.working_hours_end <= self.working_hours_start
        ):
            raise ValueError("working_hours_end must be after working_hours_start")

        if self.service_radius_km is not None and self.service_radius_km <= 0:
            raise ValueError("service_radius_km must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "enable_job_filters": self.enable_job_filters,
            "offered_service_types": (
                sorted(self.offered_service_types) if self.offered_service_types is not None else None
            ),
            "available_days": (
                [d for d in WEEKDAYS if d in self.available_days]
                if self.available_days is not None
                else None
            ),
            "working_hours_start": self.working_hours_start,
            "working_hours_end": self.working_hours_end,
            "base_location_lat": self.base_location_lat,
            "base_location_lng": self.base_location_lng,
            "base_location_address": self.base_location_address,
            "service_radius_km": self.service_radius_km,
            "offer_message_template": self.offer_message_template,
            "rejection_message_template": self.rejection_message_template,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfiguration":
        return cls(
            org_id=data["org_id"],
            enable_job_filters=data.get("enable_job_filters", False),
            offered_service_types=data.get("offered_service_types"),
            available_days=data.get("available_days"),
            working_hours_start=data.get("working_hours_start"),
            working_hours_end=data.get("working_hours_end"),
            base_location_lat=data.get("base_location_lat"),
            base_location_lng=data.get("base_location_lng"),
            base_location_address=data.get("base_location_address"),
            service_radius_km=data.get("service_radius_km"),
            offer_message_template=data.get("offer_message_template"),
            rejection_message_template=data.get("rejection_message_template"),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class JobStateTransition:
    """Audit log entry for a job status change."""

    id: str
    job_id: str
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "reason": self.reason,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStateTransition":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor_id=data.get("actor_id"),
            actor_role=data.get("actor_role"),
            reason=data.get("reason"),
            metadata=data.get("metadata") or {},
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class Booking:
    """Confirmed engagement created when an offer is accepted."""

    id: str
    job_id: str
    offer_id: str
    buyer_org_id: str
    operator_org_id: str
    service_type: str
    total_cents: int
    currency: str = "EUR"
    site_snapshot: Dict[str, Any] = field(default_factory=dict)
    status: str = BookingStatus.CONFIRMED.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _enum_value(self.status)
        if self.status not in _BOOKING_STATUS_VALUES:
            raise ValueError(f"Invalid status: {self.status}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "offer_id": self.offer_id,
            "buyer_org_id": self.buyer_org_id,
            "operator_org_id": self.operator_org_id,
            "service_type": self.service_type,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "site_snapshot": self.site_snapshot,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Booking":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            offer_id=data["offer_id"],
            buyer_org_id=data["buyer_org_id"],
            operator_org_id=data["operator_org_id"],
            service_type=data["service_type"],
            total_cents=data["total_cents"],
            currency=data.get("currency") or "EUR",
            site_snapshot=data.get("site_snapshot") or {},
            status=data.get("status", BookingStatus.CONFIRMED.value),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class OfferMessage:
    """A chat message between a job's buyer and an offer's operator."""

    id: str
    offer_id: str
    sender_org_id: str
    body: str
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.body or not self.body.strip():
            raise ValueError("message cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "sender_org_id": self.sender_org_id,
            "body": self.body,
            "created_at": _iso(self.created_at),
            "read_at": _iso(self.read_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfferMessage":
        return cls(
            id=data["id"],
            offer_id=data["offer_id"],
            sender_org_id=data["sender_org_id"],
            body=data["body"],
            created_at=parse_datetime(data.get("created_at")),
            read_at=parse_datetime(data.get("read_at")),
        )


__all__: List[str] = [
    "JobStatus",
    "OfferStatus",
    "BookingStatus",
    "ServiceType",
    "CropType",
    "TerrainCondition",
    "OrgRole",
    "WEEKDAYS",
    "VALID_JOB_TRANSITIONS",
    "VALID_OFFER_TRANSITIONS",
    "ACTIVE_OFFER_STATUSES",
    "statuses_leading_to",
    "Job",
    "Offer",
    "ServiceConfiguration",
    "JobStateTransition",
    "Booking",
    "OfferMessage",
    "utc_now",
    "parse_datetime",
    "parse_date",
    "normalize_weekdays",
    "normalize_service_types",
]
