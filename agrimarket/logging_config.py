"""Logging setup for AgriMarket.

Two outputs:
- the ``agrimarket`` logger, written to ``logs/local-{date}.log``
- a marketplace event trail, ``logs/marketplace-events-{date}.log``, with one
  line per job/offer state change for auditing
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def get_agrimarket_home() -> Path:
    """Data directory: $AGRIMARKET_DATA_DIR or ~/.agrimarket."""
    custom = os.environ.get("AGRIMARKET_DATA_DIR")
    if custom:
        return Path(custom)
    return Path.home() / ".agrimarket"


def _log_dir() -> Path:
    log_dir = get_agrimarket_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_agrimarket_logging(org_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``agrimarket`` logger with a dated file handler.

    Calling it again returns the same logger without stacking handlers.
    DEBUG also logs to the console.
    """
    level_name = (level or "INFO").upper()
    if level_name not in _VALID_LEVELS:
        level_name = "INFO"
    numeric_level = getattr(logging, level_name)

    logger = logging.getLogger("agrimarket")
    logger.setLevel(numeric_level)

    formatter = logging.Formatter(LOG_FORMAT)
    log_file = _log_dir() / f"local-{_today()}.log"

    has_file = any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file.resolve()
        for h in logger.handlers
    )
    if not has_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if numeric_level <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    logger.debug(f"Logging configured for org={org_id} level={level_name}")
    return logger


def log_marketplace_event(event_type: str, details: str, org_id: Optional[str] = None) -> None:
    """Append one line to the marketplace event trail."""
    timestamp = datetime.now(timezone.utc).isoformat()
    line = f"{timestamp} | {event_type} | org={org_id or 'system'} | {details}\n"
    event_file = _log_dir() / f"marketplace-events-{_today()}.log"
    with open(event_file, "a", encoding="utf-8") as f:
        f.write(line)


def _short(record_id: Optional[str]) -> str:
    if not record_id:
        return "-"
    return f"{record_id[:8]}..." if len(record_id) > 8 else record_id


def log_transition(
    org_id: Optional[str],
    entity: str,
    entity_id: str,
    from_status: Optional[str],
    to_status: str,
) -> None:
    """Record a job or offer status change."""
    log_marketplace_event(
        "transition",
        f"{entity}={_short(entity_id)} {from_status or 'none'}->{to_status}",
        org_id=org_id,
    )


def log_offer(org_id: str, job_id: str, offer_id: str, total_cents: int, currency: str) -> None:
    """Record an offer submission."""
    log_marketplace_event(
        "offer",
        f"job={_short(job_id)}, offer={_short(offer_id)}, total={total_cents} {currency}",
        org_id=org_id,
    )


def log_sweep(expired: int, checked: int, dry_run: bool = False) -> None:
    """Record an offer-expiry sweep."""
    log_marketplace_event(
        "sweep",
        f"checked={checked}, expired={expired}, dry_run={dry_run}",
    )
