"""Identifier helpers for ingested alerts."""

from __future__ import annotations

import itertools
import uuid
from typing import Protocol


class IdGenerator(Protocol):
    def __call__(self) -> str:  # pragma: no cover - typing hook
        ...


def new_alert_id() -> str:
    """Return a process-unique opaque identifier."""

    return uuid.uuid4().hex


class SequentialIdGenerator:
    """Deterministic ``<prefix>-<n>`` identifiers for replays and tests."""

    def __init__(self, prefix: str = "alert") -> None:
        if not prefix:
            raise ValueError("prefix cannot be empty")
        self._prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"


__all__ = ["IdGenerator", "SequentialIdGenerator", "new_alert_id"]
