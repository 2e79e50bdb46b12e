"""Capped, persisted notification history."""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from .config import DEFAULT_HISTORY_KEY, DEFAULT_HISTORY_LIMIT
from .metrics import PERSISTENCE_FAILURES, UNREAD_ALERTS
from .schemas import GapAlertRecord
from .storage import PersistentStore

logger = logging.getLogger(__name__)


class HistoryLog:
    """Newest-first alert history mirrored to a key-value store.

    Every mutation rewrites the whole trimmed log under ``key``. Store errors
    are logged and swallowed so the in-memory list stays authoritative.
    """

    def __init__(
        self,
        store: PersistentStore,
        *,
        key: str = DEFAULT_HISTORY_KEY,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if limit < 1:
            raise ValueError("history limit must be at least 1")
        self._store = store
        self._key = key
        self._limit = limit
        self._records: list[GapAlertRecord] = self._load()
        UNREAD_ALERTS.set(self.unread_count())

    @property
    def limit(self) -> int:
        return self._limit

    def __len__(self) -> int:
        return len(self._records)

    def snapshot(self) -> list[GapAlertRecord]:
        return list(self._records)

    def get(self, alert_id: str) -> GapAlertRecord | None:
        for record in self._records:
            if record.id == alert_id:
                return record
        return None

    def unread_count(self) -> int:
        return sum(1 for record in self._records if not record.read)

    def append(self, record: GapAlertRecord) -> None:
        self._records.insert(0, record)
        del self._records[self._limit :]
        self._persist()

    def mark_read(self, alert_id: str) -> bool:
        record = self.get(alert_id)
        if record is None or not record.mark_read():
            return False
        self._persist()
        return True

    def mark_all_read(self) -> int:
        changed = sum(1 for record in self._records if record.mark_read())
        self._persist()
        return changed

    def clear(self) -> None:
        self._records.clear()
        self._persist()

    def _load(self) -> list[GapAlertRecord]:
        try:
            raw = self._store.get(self._key)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to read alert history from store")
            PERSISTENCE_FAILURES.labels("read").inc()
            return []
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Stored alert history is not valid JSON, starting empty")
            return []
        if not isinstance(parsed, list):
            logger.warning("Stored alert history is not a list, starting empty")
            return []

        records: list[GapAlertRecord] = []
        for item in parsed[: self._limit]:
            try:
                records.append(GapAlertRecord.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed stored alert: %s", item)
        return records

    def _persist(self) -> bool:
        UNREAD_ALERTS.set(self.unread_count())
        payload = json.dumps([record.to_payload() for record in self._records])
        try:
            stored = self._store.set(self._key, payload)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist alert history")
            PERSISTENCE_FAILURES.labels("write").inc()
            return False
        if stored is False:
            logger.error("Store refused alert history write for key %s", self._key)
            PERSISTENCE_FAILURES.labels("write").inc()
            return False
        return True


__all__ = ["HistoryLog"]
