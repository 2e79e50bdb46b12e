"""Prometheus instrumentation for the gap alerts service."""

from __future__ import annotations

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest
from starlette.responses import Response

ALERTS_INGESTED = Counter(
    "gap_alerts_ingested_total",
    "Gap alerts accepted by the ingestor",
    labelnames=("alert_type",),
)
ALERTS_REJECTED = Counter(
    "gap_alerts_rejected_total",
    "Inbound payloads dropped because they failed validation",
)
ALERTS_DISMISSED = Counter(
    "gap_alerts_dismissed_total",
    "Active alerts removed from display",
    labelnames=("reason",),
)
PERSISTENCE_FAILURES = Counter(
    "gap_alerts_persistence_failures_total",
    "History reads or writes that failed against the store",
    labelnames=("operation",),
)
ACTIVE_ALERTS = Gauge("gap_alerts_active", "Alerts currently displayed")
UNREAD_ALERTS = Gauge("gap_alerts_unread", "Unread alerts in the history")


def setup_metrics(app: FastAPI) -> None:
    """Expose the default registry on ``/metrics``."""

    if getattr(app.state, "_metrics_configured", False):
        return

    async def metrics_endpoint() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(
        "/metrics",
        metrics_endpoint,
        methods=["GET"],
        include_in_schema=False,
        name="metrics",
    )
    app.state._metrics_configured = True
