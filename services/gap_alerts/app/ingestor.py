"""Turn inbound gap events into alert records."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError

from libs.observability.logging import bind_alert_id

from .active import ActiveAlertSet
from .channels import AlertChannel
from .history import HistoryLog
from .identifiers import IdGenerator, new_alert_id
from .metrics import ALERTS_INGESTED, ALERTS_REJECTED
from .schemas import GapAlertEvent, GapAlertRecord

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertIngestor:
    """Owns the channel subscription and fans records out to both stores."""

    def __init__(
        self,
        active: ActiveAlertSet,
        history: HistoryLog,
        *,
        auto_dismiss_ms: int = 0,
        id_generator: IdGenerator = new_alert_id,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if auto_dismiss_ms < 0:
            raise ValueError("auto_dismiss_ms cannot be negative")
        self._active = active
        self._history = history
        self._auto_dismiss_ms = auto_dismiss_ms
        self._id_generator = id_generator
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def is_subscribed(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_event(self, payload: GapAlertEvent | Mapping[str, Any]) -> GapAlertRecord | None:
        """Ingest one event; malformed payloads are logged and dropped."""

        try:
            event = (
                payload
                if isinstance(payload, GapAlertEvent)
                else GapAlertEvent.model_validate(payload)
            )
        except ValidationError as exc:
            ALERTS_REJECTED.inc()
            logger.warning(
                "Rejected malformed gap alert: %s", exc.errors(include_url=False)
            )
            return None

        record = GapAlertRecord.from_event(
            event, alert_id=self._id_generator(), received_at=self._clock()
        )
        with bind_alert_id(record.id):
            # Scheduling can fail (no running loop); nothing is stored until it succeeds.
            if self._auto_dismiss_ms > 0:
                self._active.schedule_dismiss(record.id, self._auto_dismiss_ms / 1000)
            self._history.append(record)
            self._active.push(record)
            ALERTS_INGESTED.labels(record.alert_type.value).inc()
            logger.info(
                "Gap alert %s for %s (%.2f%%)",
                record.alert_type.value,
                record.instrument_name,
                record.deviation_percent,
            )
        return record

    async def start(
        self,
        channel: AlertChannel,
        on_record: Callable[[GapAlertRecord], None] | None = None,
    ) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._consume(channel, on_record))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Alert channel consumer cancelled")

    async def _consume(
        self,
        channel: AlertChannel,
        on_record: Callable[[GapAlertRecord], None] | None,
    ) -> None:
        try:
            async for payload in channel.listen():
                record = self.on_event(payload)
                if record is not None and on_record is not None:
                    on_record(record)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Alert channel consumption failed")


__all__ = ["AlertIngestor", "utcnow"]
