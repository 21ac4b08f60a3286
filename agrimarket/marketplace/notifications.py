"""Notifications sent to organizations when their jobs and offers change.

The service hands a ``NotificationEvent`` to a ``Notifier`` after the state
change is committed. Notifiers may raise; the service logs the failure and
moves on, so a broken mail provider never undoes a transition.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

import httpx

from agrimarket.errors import DependencyError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

# Event types
OFFER_CREATED = "offer_created"
OFFER_ACCEPTED = "offer_accepted"
OFFER_REJECTED = "offer_rejected"
OFFER_WITHDRAWN = "offer_withdrawn"
OFFER_MESSAGE = "offer_message"
JOB_CANCELLED = "job_cancelled"
JOB_COMPLETED = "job_completed"

_SUBJECTS = {
    OFFER_CREATED: "New offer on your job",
    OFFER_ACCEPTED: "Your offer was accepted",
    OFFER_REJECTED: "Your offer was not selected",
    OFFER_WITHDRAWN: "An offer on your job was withdrawn",
    OFFER_MESSAGE: "New message about an offer",
    JOB_CANCELLED: "A job you offered on was cancelled",
    JOB_COMPLETED: "Job completed",
}


@dataclass
class NotificationEvent:
    """Something a single organization should hear about."""

    event_type: str
    recipient_org_id: str
    job_id: str
    offer_id: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        return _SUBJECTS.get(self.event_type, "AgriMarket update")


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes each event to the log."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notify {event.event_type} | org={event.recipient_org_id} | "
            f"job={event.job_id} | offer={event.offer_id}"
        )


class ResendEmailNotifier:
    """Send notification emails through the Resend HTTP API.

    Args:
        api_key: Resend API key
        from_address: Sender, e.g. ``"AgriMarket <noreply@example.com>"``
        resolve_email: Maps an organization ID to its contact address, or None
        client: Optional ``httpx.Client`` (injected in tests)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        from_address: str,
        resolve_email: Callable[[str], Optional[str]],
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.from_address = from_address
        self.resolve_email = resolve_email
        self.client = client or httpx.Client(timeout=timeout)

    def _body(self, event: NotificationEvent) -> str:
        lines = [event.subject, "", f"Job: {event.job_id}"]
        if event.offer_id:
            lines.append(f"Offer: {event.offer_id}")
        if event.message:
            lines.extend(["", event.message])
        return "\n".join(lines)

    def notify(self, event: NotificationEvent) -> None:
        to = self.resolve_email(event.recipient_org_id)
        if not to:
            logger.debug(f"No email for org {event.recipient_org_id}, skipping {event.event_type}")
            return

        payload = {
            "from": self.from_address,
            "to": [to],
            "subject": event.subject,
            "text": self._body(event),
        }
        try:
            response = self.client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DependencyError(f"Email delivery failed for {event.event_type}: {e}") from e
        logger.info(f"Email sent | event={event.event_type} | org={event.recipient_org_id}")


class CompositeNotifier:
    """Fan an event out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: Iterable[Notifier]):
        self.notifiers = list(notifiers)

    def notify(self, event: NotificationEvent) -> None:
        failures = []
        for notifier in self.notifiers:
            try:
                notifier.notify(event)
            except Exception as e:
                logger.warning(f"{type(notifier).__name__} failed for {event.event_type}: {e}")
                failures.append(e)
        if failures and len(failures) == len(self.notifiers):
            raise DependencyError(f"All notifiers failed for {event.event_type}")
