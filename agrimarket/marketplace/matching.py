"""Job-to-operator matching.

``evaluate_job`` decides whether a job should be shown to (and can be offered
on by) an operator, given the operator's service configuration. It is a pure
function: no storage access, no clock, no side effects.

Usage:
    from agrimarket.marketplace.matching import evaluate_job

    result = evaluate_job(job, config)
    if not result.eligible:
        print(result.reasons)  # e.g. ["service_type_mismatch"]
"""

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, List, Optional, Tuple

from agrimarket.marketplace.models import WEEKDAYS, Job, ServiceConfiguration

# Ineligibility reasons
SERVICE_TYPE_MISMATCH = "service_type_mismatch"
DAY_UNAVAILABLE = "day_unavailable"
OUTSIDE_WORKING_HOURS = "outside_working_hours"
OUTSIDE_SERVICE_RADIUS = "outside_service_radius"

# Checks that could not be evaluated
GEO_CHECK_SKIPPED = "geo_check_skipped"

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one job against one service configuration."""

    eligible: bool
    reasons: Tuple[str, ...] = ()
    skipped: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "reasons": list(self.reasons),
            "skipped": list(self.skipped),
        }


ELIGIBLE = MatchResult(eligible=True)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _coerce_point(value: Any) -> Optional[Tuple[float, float]]:
    """Read a (lat, lng) pair from a mapping or a 2-sequence."""
    if isinstance(value, dict):
        lat = value.get("lat", value.get("latitude"))
        lng = value.get("lng", value.get("lon", value.get("longitude")))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        lat, lng = value
    else:
        return None
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng


def extract_coordinates(location: Any) -> Optional[Tuple[float, float]]:
    """Get a representative (lat, lng) for a job location.

    Accepts ``{"lat", "lng"}`` / ``{"latitude", "longitude"}`` mappings, a
    ``{"center": ...}`` wrapper, or a polygon (``{"polygon": [...]}`` or a bare
    list of points) whose vertex centroid is used. Returns ``None`` for
    anything it cannot read.
    """
    if location is None:
        return None

    point = _coerce_point(location)
    if point is not None:
        return point

    if isinstance(location, dict):
        if "center" in location:
            return extract_coordinates(location["center"])
        if "polygon" in location:
            return extract_coordinates(location["polygon"])
        return None

    if isinstance(location, (list, tuple)) and location:
        points = [_coerce_point(p) for p in location]
        if any(p is None for p in points):
            return None
        lat = sum(p[0] for p in points) / len(points)
        lng = sum(p[1] for p in points) / len(points)
        return lat, lng

    return None


def _job_days(job: Job) -> Optional[List[date]]:
    """Dates the job could be carried out on, or None if unspecified.

    A range of seven days or more covers every weekday, so only the first
    week is materialized.
    """
    start = job.target_date_start or job.target_date_end
    end = job.target_date_end or job.target_date_start
    if start is None:
        return None
    span = min((end - start).days, 6)
    return [start + timedelta(days=i) for i in range(span + 1)]


def _check_service_type(job: Job, config: ServiceConfiguration) -> bool:
    if config.offered_service_types is None:
        return True
    return job.service_type in config.offered_service_types


def _check_days(job: Job, config: ServiceConfiguration) -> bool:
    if config.available_days is None:
        return True
    days = _job_days(job)
    if days is None:
        return True
    return any(WEEKDAYS[d.weekday()] in config.available_days for d in days)


def _hour_fraction(value) -> float:
    return value.hour + value.minute / 60.0 + value.second / 3600.0


def _check_working_hours(job: Job, config: ServiceConfiguration) -> bool:
    if job.requested_window_start is None and job.requested_window_end is None:
        return True
    start, end = job.requested_window_start, job.requested_window_end
    if start is not None and end is not None and end.date() > start.date():
        # A window running past midnight only fits round-the-clock hours
        return config.working_hours_start in (None, 0) and config.working_hours_end in (None, 24)
    if job.requested_window_start is not None and config.working_hours_start is not None:
        if _hour_fraction(job.requested_window_start) < config.working_hours_start:
            return False
    if job.requested_window_end is not None and config.working_hours_end is not None:
        if _hour_fraction(job.requested_window_end) > config.working_hours_end:
            return False
    return True


def _check_radius(job: Job, config: ServiceConfiguration) -> Optional[bool]:
    """Radius check. Returns None when the check had to be skipped."""
    if config.service_radius_km is None:
        return True
    base = _coerce_point({"lat": config.base_location_lat, "lng": config.base_location_lng})
    target = extract_coordinates(job.location)
    if base is None or target is None:
        return None
    return haversine_km(base[0], base[1], target[0], target[1]) <= config.service_radius_km


def evaluate_job(job: Job, config: Optional[ServiceConfiguration]) -> MatchResult:
    """Decide whether ``job`` is eligible for the operator owning ``config``.

    Args:
        job: The job posting
        config: The operator's service configuration, or None if the
            operator never configured one

    Returns:
        MatchResult; ``reasons`` lists every failed check in a fixed order,
        ``skipped`` lists checks that could not be evaluated.
    """
    if config is None or not config.enable_job_filters:
        return ELIGIBLE

    reasons: List[str] = []
    skipped: List[str] = []

    if not _check_service_type(job, config):
        reasons.append(SERVICE_TYPE_MISMATCH)
    if not _check_days(job, config):
        reasons.append(DAY_UNAVAILABLE)
    if not _check_working_hours(job, config):
        reasons.append(OUTSIDE_WORKING_HOURS)

    radius_ok = _check_radius(job, config)
    if radius_ok is None:
        skipped.append(GEO_CHECK_SKIPPED)
    elif not radius_ok:
        reasons.append(OUTSIDE_SERVICE_RADIUS)

    return MatchResult(eligible=not reasons, reasons=tuple(reasons), skipped=tuple(skipped))


def offers_service_type(job: Job, config: Optional[ServiceConfiguration]) -> bool:
    """Capability check re-run when an offer is created."""
    if config is None or not config.enable_job_filters:
        return True
    return _check_service_type(job, config)


def filter_jobs(
    jobs: Iterable[Job], config: Optional[ServiceConfiguration]
) -> List[Tuple[Job, MatchResult]]:
    """Keep only the jobs eligible for ``config``, paired with their result."""
    matched = []
    for job in jobs:
        result = evaluate_job(job, config)
        if result.eligible:
            matched.append((job, result))
    return matched
