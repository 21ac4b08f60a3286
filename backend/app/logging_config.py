"""Logging configuration for the AgriMarket API.

All API loggers live under ``agrimarket.api`` so one handler covers the
routes, auth and maintenance code without touching the root logger.
"""

import logging
import sys

API_LOGGER_NAME = "agrimarket.api"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_configured = False


def _configure(debug: bool = False) -> None:
    global _configured
    if _configured:
        return
    base = logging.getLogger(API_LOGGER_NAME)
    base.setLevel(logging.DEBUG if debug else logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    base.addHandler(handler)
    base.propagate = True
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``agrimarket.api`` hierarchy.

    ``get_logger("jobs")`` and ``get_logger("agrimarket.api.jobs")`` return
    the same logger.
    """
    _configure()
    if name == API_LOGGER_NAME or name.startswith(API_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{API_LOGGER_NAME}.{name}")


def log_lifecycle_action(
    prefix: str,
    action: str,
    entity: str,
    entity_id: str,
    success: bool,
    error: str | None = None,
) -> None:
    """Log the outcome of a job/offer action taken through the API."""
    logger = get_logger("lifecycle")
    if success:
        logger.info(f"{prefix} | {action} {entity}={entity_id} | ok")
    else:
        logger.warning(f"{prefix} | {action} {entity}={entity_id} | failed: {error}")
