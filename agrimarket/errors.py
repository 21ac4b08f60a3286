"""Error taxonomy for the AgriMarket marketplace.

Every failure raised by the marketplace service is a ``MarketplaceError``
subclass carrying a stable ``code`` so callers (the HTTP layer, the CLI,
tests) can branch on the kind of error rather than on message text.

- ValidationError: malformed or missing input
- AuthorizationError: actor lacks the role or ownership for the action
- NotFoundError: referenced job/offer/configuration does not exist
- ConflictError: the action collides with current state
- StateConflictError: a transition's source-state precondition failed
- DependencyError: storage or notification backend failure
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base class for marketplace errors."""

    code = "marketplace_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": str(self)}


class ValidationError(MarketplaceError):
    """Input failed validation."""

    code = "validation_error"


class AuthorizationError(MarketplaceError):
    """Actor is not allowed to perform the action."""

    code = "authorization_error"


class NotFoundError(MarketplaceError):
    """Referenced entity does not exist."""

    code = "not_found"


class JobNotFoundError(NotFoundError):
    """Job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class OfferNotFoundError(NotFoundError):
    """Offer does not exist."""

    def __init__(self, offer_id: str):
        self.offer_id = offer_id
        super().__init__(f"Offer not found: {offer_id}")


class ConflictError(MarketplaceError):
    """Action conflicts with the current state of the marketplace."""

    code = "conflict"


class StateConflictError(ConflictError):
    """A status transition was attempted from the wrong source state."""

    code = "state_conflict"

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected: Any,
        actual: Optional[str],
        message: Optional[str] = None,
    ):
        self.entity = entity
        self.entity_id = entity_id
        if isinstance(expected, (list, tuple, set, frozenset)):
            self.expected = sorted(str(e) for e in expected)
        else:
            self.expected = [str(expected)]
        self.actual = actual
        if message is None:
            message = (
                f"{entity.capitalize()} {entity_id} is '{actual}', "
                f"expected {' or '.join(repr(e) for e in self.expected)}"
            )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity
        data["expected_status"] = self.expected
        data["actual_status"] = self.actual
        return data


class DuplicateOfferError(ConflictError):
    """Operator already has an active offer on the job."""

    code = "duplicate_offer"


class DependencyError(MarketplaceError):
    """A storage or notification backend failed."""

    code = "dependency_error"


__all__ = [
    "MarketplaceError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "JobNotFoundError",
    "OfferNotFoundError",
    "ConflictError",
    "StateConflictError",
    "DuplicateOfferError",
    "DependencyError",
]
