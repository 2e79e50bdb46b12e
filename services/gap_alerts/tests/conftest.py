from __future__ import annotations

import os

os.environ.setdefault("GAP_ALERTS_STORAGE_URL", "memory://")
os.environ.setdefault("GAP_ALERTS_SUBSCRIBE", "false")

from typing import Any, Callable  # noqa: E402

import pytest  # noqa: E402

from services.gap_alerts.app.engine import AlertEngine  # noqa: E402
from services.gap_alerts.app.identifiers import SequentialIdGenerator  # noqa: E402
from services.gap_alerts.tests.fakes import (  # noqa: E402
    RECEIVED_AT,
    CountingStore,
    ManualScheduler,
)


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture()
def make_engine(
    scheduler: ManualScheduler, store: CountingStore
) -> Callable[..., AlertEngine]:
    def _factory(**overrides: Any) -> AlertEngine:
        options: dict[str, Any] = {
            "scheduler": scheduler,
            "max_visible": 5,
            "auto_dismiss_ms": 0,
            "id_generator": SequentialIdGenerator(),
            "clock": lambda: RECEIVED_AT,
        }
        options.update(overrides)
        return AlertEngine(options.pop("store", store), **options)

    return _factory
