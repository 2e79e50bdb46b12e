"""Scheduling seam for auto-dismiss timers."""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:  # pragma: no cover - typing hook
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...  # pragma: no cover - typing hook


class LoopScheduler:
    """Schedule callbacks on an asyncio loop, the running one by default."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


__all__ = ["LoopScheduler", "Scheduler", "TimerHandle"]
