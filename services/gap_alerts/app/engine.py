from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable

from .active import ActiveAlertSet
from .channels import AlertChannel, RedisAlertChannel
from .config import (
    DEFAULT_AUTO_DISMISS_MS,
    DEFAULT_HISTORY_KEY,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_MAX_VISIBLE,
    Settings,
)
from .history import HistoryLog
from .identifiers import IdGenerator, new_alert_id
from .ingestor import AlertIngestor, utcnow
from .schemas import GapAlertEvent, GapAlertRecord
from .storage import PersistentStore, create_store
from .timers import LoopScheduler, Scheduler

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]


class AlertEngine:
    """Public contract consumed by the presentation layer."""

    def __init__(
        self,
        store: PersistentStore,
        *,
        scheduler: Scheduler | None = None,
        channel: AlertChannel | None = None,
        max_visible: int = DEFAULT_MAX_VISIBLE,
        auto_dismiss_ms: int = DEFAULT_AUTO_DISMISS_MS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        history_key: str = DEFAULT_HISTORY_KEY,
        id_generator: IdGenerator = new_alert_id,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._channel = channel
        self._listeners: list[ChangeListener] = []
        self._history = HistoryLog(store, key=history_key, limit=history_limit)
        self._active = ActiveAlertSet(
            self._history,
            scheduler or LoopScheduler(),
            max_visible=max_visible,
            on_expire=lambda alert_id: self._notify("expired"),
        )
        self._ingestor = AlertIngestor(
            self._active,
            self._history,
            auto_dismiss_ms=auto_dismiss_ms,
            id_generator=id_generator,
            clock=clock,
        )
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: PersistentStore | None = None,
        channel: AlertChannel | None = None,
        scheduler: Scheduler | None = None,
    ) -> "AlertEngine":
        if channel is None and settings.subscribe_on_startup:
            channel = RedisAlertChannel(
                settings.redis_url,
                channel=settings.channel_name,
                event_name=settings.event_name,
            )
        return cls(
            store or create_store(settings.storage_url),
            scheduler=scheduler,
            channel=channel,
            max_visible=settings.max_visible,
            auto_dismiss_ms=settings.auto_dismiss_ms,
            history_limit=settings.history_limit,
            history_key=settings.history_key,
        )

    @property
    def is_running(self) -> bool:
        return self._started

    def active_alerts(self) -> list[GapAlertRecord]:
        return self._active.snapshot()

    def history_alerts(self) -> list[GapAlertRecord]:
        return self._history.snapshot()

    def unread_count(self) -> int:
        return self._history.unread_count()

    def pending_timers(self) -> int:
        return self._active.pending_timers

    def ingest(self, payload: GapAlertEvent | Mapping[str, Any]) -> GapAlertRecord | None:
        record = self._ingestor.on_event(payload)
        if record is not None:
            self._notify("ingested")
        return record

    def dismiss(self, alert_id: str) -> None:
        unread_before = self._history.unread_count()
        removed = self._active.dismiss(alert_id)
        if removed or self._history.unread_count() != unread_before:
            self._notify("dismissed")

    def mark_read(self, alert_id: str) -> None:
        if self._history.mark_read(alert_id):
            self._notify("read")

    def mark_all_read(self) -> None:
        self._history.mark_all_read()
        self._notify("read_all")

    def clear_history(self) -> None:
        self._history.clear()
        self._notify("cleared")

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unregisters it."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._channel is not None:
            await self._ingestor.start(
                self._channel, on_record=lambda record: self._notify("ingested")
            )
        logger.info("Gap alert engine started")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self._ingestor.stop()
        cancelled = self._active.cancel_timers()
        close = getattr(self._channel, "close", None)
        if close is not None:
            result = close()
            if asyncio.iscoroutine(result):
                await result
        logger.info("Gap alert engine stopped, %d timers cancelled", cancelled)

    def _notify(self, change: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # noqa: BLE001
                logger.exception("Alert change listener failed")


__all__ = ["AlertEngine", "ChangeListener"]
