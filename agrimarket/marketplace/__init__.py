"""Marketplace subsystem for AgriMarket.

Buyers post jobs, operators see the jobs matching their service
configuration and submit offers, buyers accept or reject them.

Models:
- Job: A unit of agricultural work (spray, spread, mapping)
- Offer: An operator's priced proposal for a job
- ServiceConfiguration: What an operator offers, when and where
- Booking: Created when an offer is accepted
- JobStateTransition: Audit log entry for job status changes

Matching:
- evaluate_job: Pure eligibility decision for (job, configuration)

Service:
- MarketplaceService: Offer and job lifecycles
"""

from agrimarket.marketplace.matching import MatchResult, evaluate_job, filter_jobs
from agrimarket.marketplace.models import (
    VALID_JOB_TRANSITIONS,
    VALID_OFFER_TRANSITIONS,
    Booking,
    BookingStatus,
    CropType,
    Job,
    JobStateTransition,
    JobStatus,
    Offer,
    OfferMessage,
    OfferStatus,
    OrgRole,
    ServiceConfiguration,
    ServiceType,
    TerrainCondition,
    statuses_leading_to,
)
from agrimarket.marketplace.notifications import (
    CompositeNotifier,
    LoggingNotifier,
    NotificationEvent,
    Notifier,
    ResendEmailNotifier,
)
from agrimarket.marketplace.service import (
    ExpirySweepResult,
    MarketplaceService,
    OperatorJobView,
)

__all__ = [
    # Models
    "Job",
    "Offer",
    "ServiceConfiguration",
    "Booking",
    "OfferMessage",
    "JobStateTransition",
    "JobStatus",
    "OfferStatus",
    "BookingStatus",
    "ServiceType",
    "CropType",
    "TerrainCondition",
    "OrgRole",
    "VALID_JOB_TRANSITIONS",
    "VALID_OFFER_TRANSITIONS",
    "statuses_leading_to",
    # Matching
    "MatchResult",
    "evaluate_job",
    "filter_jobs",
    # Notifications
    "Notifier",
    "NotificationEvent",
    "LoggingNotifier",
    "ResendEmailNotifier",
    "CompositeNotifier",
    # Service
    "MarketplaceService",
    "OperatorJobView",
    "ExpirySweepResult",
]
