"""Transient set of alerts currently on screen."""

from __future__ import annotations

import logging
from typing import Callable

from libs.observability.logging import bind_alert_id

from .config import DEFAULT_MAX_VISIBLE
from .history import HistoryLog
from .metrics import ACTIVE_ALERTS, ALERTS_DISMISSED
from .schemas import GapAlertRecord
from .timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class ActiveAlertSet:
    """Bounded newest-first alerts with one auto-dismiss timer per id.

    Records are the same objects held by the history, so a dismissal marks the
    alert read everywhere it appears.
    """

    def __init__(
        self,
        history: HistoryLog,
        scheduler: Scheduler,
        *,
        max_visible: int = DEFAULT_MAX_VISIBLE,
        on_expire: Callable[[str], None] | None = None,
    ) -> None:
        if max_visible < 1:
            raise ValueError("max_visible must be at least 1")
        self._history = history
        self._scheduler = scheduler
        self._max_visible = max_visible
        self._records: list[GapAlertRecord] = []
        self._timers: dict[str, TimerHandle] = {}
        self._on_expire = on_expire

    @property
    def max_visible(self) -> int:
        return self._max_visible

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, alert_id: object) -> bool:
        return any(record.id == alert_id for record in self._records)

    def snapshot(self) -> list[GapAlertRecord]:
        return list(self._records)

    def push(self, record: GapAlertRecord) -> list[GapAlertRecord]:
        """Prepend ``record`` and return whatever fell off the tail.

        Evicted records keep their pending timer; it later fires as a no-op
        removal that still marks them read.
        """

        self._records.insert(0, record)
        evicted = self._records[self._max_visible :]
        del self._records[self._max_visible :]
        ACTIVE_ALERTS.set(len(self._records))
        if evicted:
            logger.debug("Evicted %d active alerts", len(evicted))
        return evicted

    def schedule_dismiss(self, alert_id: str, delay: float) -> None:
        previous = self._timers.pop(alert_id, None)
        if previous is not None:
            previous.cancel()
        self._timers[alert_id] = self._scheduler.call_later(
            delay, lambda: self._on_timeout(alert_id)
        )

    def dismiss(self, alert_id: str, *, reason: str = "user") -> bool:
        """Remove ``alert_id`` from display and mark it read. Idempotent."""

        with bind_alert_id(alert_id):
            handle = self._timers.pop(alert_id, None)
            if handle is not None:
                handle.cancel()

            removed = False
            for index, record in enumerate(self._records):
                if record.id == alert_id:
                    del self._records[index]
                    removed = True
                    break

            self._history.mark_read(alert_id)
            if removed:
                ACTIVE_ALERTS.set(len(self._records))
                ALERTS_DISMISSED.labels(reason).inc()
                logger.debug("Alert dismissed (%s)", reason)
            return removed

    def cancel_timers(self) -> int:
        handles = list(self._timers.values())
        self._timers.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def _on_timeout(self, alert_id: str) -> None:
        self._timers.pop(alert_id, None)
        self.dismiss(alert_id, reason="timeout")
        if self._on_expire is not None:
            self._on_expire(alert_id)


__all__ = ["ActiveAlertSet"]
