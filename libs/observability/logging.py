"""Structured logging helpers shared by the alerting services."""

from __future__ import annotations

import contextvars
import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

_CORRELATION_ID_CTX: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
_ALERT_ID_CTX: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "alert_id", default=None
)
_CONFIGURED_SERVICES: set[str] = set()
_RESERVED_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class ContextFilter(logging.Filter):
    """Attach the service name and the active correlation/alert identifiers."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self._service_name
        record.correlation_id = _CORRELATION_ID_CTX.get()
        record.alert_id = _ALERT_ID_CTX.get()
        return True


class JsonLogFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "service": getattr(record, "service", self._service_name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _RESERVED_KEYS or key in payload or value is None:
                continue
            payload[key] = value
        return json.dumps(payload, default=str)


@contextmanager
def bind_alert_id(alert_id: str) -> Iterator[None]:
    """Tag every log line emitted in the block with ``alert_id``."""

    token = _ALERT_ID_CTX.set(alert_id)
    try:
        yield
    finally:
        _ALERT_ID_CTX.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Propagate or mint a correlation identifier for each request."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        service_name: str,
        correlation_header: str = "X-Correlation-ID",
    ) -> None:
        super().__init__(app)
        self._service_name = service_name
        self._correlation_header = correlation_header

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get(self._correlation_header) or uuid.uuid4().hex
        token = _CORRELATION_ID_CTX.set(correlation_id)
        request.state.correlation_id = correlation_id
        try:
            response = await call_next(request)
            response.headers.setdefault(self._correlation_header, correlation_id)
            return response
        finally:
            _CORRELATION_ID_CTX.reset(token)


def configure_logging(service_name: str, level: str | int = logging.INFO) -> None:
    """Install the JSON handler on the root and uvicorn loggers once per service."""

    if service_name in _CONFIGURED_SERVICES:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter(service_name))
    handler.addFilter(ContextFilter(service_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers = [handler]
        logger.setLevel(level)
        logger.propagate = False

    _CONFIGURED_SERVICES.add(service_name)


def get_correlation_id() -> Optional[str]:
    """Return the correlation identifier of the active request, if any."""

    return _CORRELATION_ID_CTX.get()


def get_alert_id() -> Optional[str]:
    """Return the alert identifier bound to the current context, if any."""

    return _ALERT_ID_CTX.get()
