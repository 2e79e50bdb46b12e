"""Utilities shared across services to standardise observability."""

from .logging import (
    RequestContextMiddleware,
    bind_alert_id,
    configure_logging,
    get_alert_id,
    get_correlation_id,
)

__all__ = [
    "RequestContextMiddleware",
    "bind_alert_id",
    "configure_logging",
    "get_alert_id",
    "get_correlation_id",
]
