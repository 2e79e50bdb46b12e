from __future__ import annotations

import asyncio
import random
from typing import Callable

import pytest

from services.gap_alerts.app.channels import SimulatedAlertChannel
from services.gap_alerts.app.config import Settings
from services.gap_alerts.app.engine import AlertEngine
from services.gap_alerts.app.storage import InMemoryKeyValueStore
from services.gap_alerts.tests.fakes import (
    CountingStore,
    ManualScheduler,
    make_payload,
    make_stored_record,
    seed_history,
)

EngineFactory = Callable[..., AlertEngine]


def _unread(engine: AlertEngine) -> int:
    return len([record for record in engine.history_alerts() if not record.read])


def test_single_event_is_active_and_unread(make_engine: EngineFactory) -> None:
    engine = make_engine(max_visible=5, auto_dismiss_ms=0)

    engine.ingest(make_payload(1))

    assert len(engine.active_alerts()) == 1
    assert engine.unread_count() == 1


def test_active_set_keeps_most_recent(make_engine: EngineFactory) -> None:
    engine = make_engine(max_visible=5)

    records = [engine.ingest(make_payload(index)) for index in range(6)]

    active = engine.active_alerts()
    assert len(active) == 5
    assert [record.id for record in active] == [record.id for record in reversed(records[1:])]
    assert records[0] not in active
    assert records[0] in engine.history_alerts()
    assert engine.unread_count() == 6


def test_dismiss_keeps_record_in_history(make_engine: EngineFactory) -> None:
    engine = make_engine()
    record = engine.ingest(make_payload(1))

    engine.dismiss(record.id)

    assert engine.active_alerts() == []
    assert [item.id for item in engine.history_alerts()] == [record.id]
    assert engine.history_alerts()[0].read is True


def test_auto_dismiss_after_timeout(make_engine: EngineFactory, scheduler: ManualScheduler) -> None:
    engine = make_engine(auto_dismiss_ms=1000)
    record = engine.ingest(make_payload(1))

    scheduler.advance(1.0)

    assert engine.active_alerts() == []
    assert engine.history_alerts()[0].id == record.id
    assert engine.history_alerts()[0].read is True


def test_mark_all_read_issues_one_write(make_engine: EngineFactory, store: CountingStore) -> None:
    seed_history(store, [make_stored_record(i, read=i % 2 == 0) for i in range(10)])
    engine = make_engine()
    assert engine.unread_count() == 5

    engine.mark_all_read()

    assert engine.unread_count() == 0
    assert len(store.writes) == 1


def test_clear_history_persists_empty_state(make_engine: EngineFactory, store: CountingStore) -> None:
    engine = make_engine()
    engine.ingest(make_payload(1))
    engine.ingest(make_payload(2))

    engine.clear_history()

    assert engine.history_alerts() == []
    assert store.stored() == []
    assert engine.unread_count() == 0


def test_timer_and_user_race_resolves_once(
    make_engine: EngineFactory, scheduler: ManualScheduler, store: CountingStore
) -> None:
    engine = make_engine(auto_dismiss_ms=1000)
    record = engine.ingest(make_payload(1))

    scheduler.advance(1.0)
    writes_after_timer = len(store.writes)
    engine.dismiss(record.id)

    assert engine.active_alerts() == []
    assert engine.history_alerts()[0].read is True
    assert len(store.writes) == writes_after_timer


def test_user_then_timer_race_resolves_once(
    make_engine: EngineFactory, scheduler: ManualScheduler, store: CountingStore
) -> None:
    engine = make_engine(auto_dismiss_ms=1000)
    record = engine.ingest(make_payload(1))

    engine.dismiss(record.id)
    writes_after_dismiss = len(store.writes)
    scheduler.advance(1.0)

    assert engine.pending_timers() == 0
    assert engine.history_alerts()[0].read is True
    assert len(store.writes) == writes_after_dismiss


def test_mark_read_without_dismiss_keeps_alert_active(make_engine: EngineFactory) -> None:
    engine = make_engine()
    record = engine.ingest(make_payload(1))

    engine.mark_read(record.id)
    engine.mark_read("unknown")

    assert engine.active_alerts()[0].read is True
    assert engine.unread_count() == 0


def test_random_sequences_respect_bounds_and_invariants(
    scheduler: ManualScheduler,
) -> None:
    rng = random.Random(1234)
    engine = AlertEngine(
        CountingStore(),
        scheduler=scheduler,
        max_visible=4,
        auto_dismiss_ms=700,
        history_limit=12,
    )
    seen_read: set[str] = set()

    for step in range(400):
        action = rng.random()
        if action < 0.5:
            engine.ingest(make_payload(step))
        elif action < 0.65 and engine.active_alerts():
            engine.dismiss(rng.choice(engine.active_alerts()).id)
        elif action < 0.75 and engine.history_alerts():
            engine.mark_read(rng.choice(engine.history_alerts()).id)
        elif action < 0.78:
            engine.mark_all_read()
        elif action < 0.8:
            engine.clear_history()
            seen_read.clear()
        else:
            scheduler.advance(rng.uniform(0.0, 0.5))

        history = engine.history_alerts()
        assert len(engine.active_alerts()) <= 4
        assert len(history) <= 12
        assert engine.unread_count() == _unread(engine)
        for record in history:
            if record.id in seen_read:
                assert record.read is True
            if record.read:
                seen_read.add(record.id)


def test_ids_are_unique_by_default() -> None:
    engine = AlertEngine(
        InMemoryKeyValueStore(), scheduler=ManualScheduler(), auto_dismiss_ms=0, history_limit=200
    )

    ids = {engine.ingest(make_payload(index)).id for index in range(200)}

    assert len(ids) == 200


def test_malformed_event_changes_nothing(make_engine: EngineFactory, store: CountingStore) -> None:
    engine = make_engine()

    assert engine.ingest({"instrumentId": 1}) is None

    assert engine.active_alerts() == []
    assert engine.history_alerts() == []
    assert store.writes == []


def test_listeners_receive_changes(make_engine: EngineFactory, scheduler: ManualScheduler) -> None:
    engine = make_engine(auto_dismiss_ms=1000)
    changes: list[str] = []

    def _broken(change: str) -> None:
        raise RuntimeError("listener bug")

    engine.add_listener(_broken)
    remove = engine.add_listener(changes.append)
    first = engine.ingest(make_payload(1))
    engine.ingest(make_payload(2))
    engine.dismiss(first.id)
    scheduler.advance(1.0)
    engine.mark_all_read()
    remove()
    engine.clear_history()

    assert changes == ["ingested", "ingested", "dismissed", "expired", "read_all"]


def test_history_survives_engine_restart(scheduler: ManualScheduler) -> None:
    store = InMemoryKeyValueStore()
    first = AlertEngine(store, scheduler=scheduler, auto_dismiss_ms=0)
    record = first.ingest(make_payload(1))
    first.dismiss(record.id)

    second = AlertEngine(store, scheduler=scheduler, auto_dismiss_ms=0)

    assert second.active_alerts() == []
    assert [item.id for item in second.history_alerts()] == [record.id]
    assert second.unread_count() == 0


def test_from_settings_uses_configuration(scheduler: ManualScheduler) -> None:
    settings = Settings(
        max_visible=2,
        auto_dismiss_ms=0,
        history_limit=3,
        storage_url="memory://",
        subscribe_on_startup=False,
    )
    engine = AlertEngine.from_settings(settings, scheduler=scheduler)

    for index in range(5):
        engine.ingest(make_payload(index))

    assert len(engine.active_alerts()) == 2
    assert len(engine.history_alerts()) == 3


async def _wait_ready(channel: SimulatedAlertChannel) -> None:
    for _ in range(100):
        if channel.ready.is_set():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("channel never started listening")


async def _wait_for(predicate: Callable[[], bool]) -> None:
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def test_start_subscribes_and_stop_unsubscribes() -> None:
    channel = SimulatedAlertChannel()
    engine = AlertEngine(InMemoryKeyValueStore(), channel=channel, auto_dismiss_ms=0)

    async def _run() -> None:
        await engine.start()
        await engine.start()
        await _wait_ready(channel)
        channel.publish(make_payload(1))
        channel.publish(make_payload(2), event="other-event")
        channel.publish({"instrumentId": "broken"})
        channel.publish_raw("{not json")
        channel.publish(make_payload(3))
        await _wait_for(lambda: len(engine.history_alerts()) == 2)
        assert engine.is_running is True
        await engine.stop()

    asyncio.run(_run())

    assert engine.is_running is False
    assert [record.instrument_id for record in engine.history_alerts()] == [3, 1]


def test_loop_timers_dismiss_on_the_event_loop() -> None:
    engine = AlertEngine(InMemoryKeyValueStore(), auto_dismiss_ms=20)

    async def _run() -> None:
        await engine.start()
        engine.ingest(make_payload(1))
        assert len(engine.active_alerts()) == 1
        await _wait_for(lambda: not engine.active_alerts())
        await engine.stop()

    asyncio.run(_run())

    assert engine.history_alerts()[0].read is True


def test_stop_cancels_pending_timers() -> None:
    engine = AlertEngine(InMemoryKeyValueStore(), auto_dismiss_ms=50)

    async def _run() -> None:
        await engine.start()
        engine.ingest(make_payload(1))
        engine.ingest(make_payload(2))
        assert engine.pending_timers() == 2
        await engine.stop()
        await asyncio.sleep(0.1)

    asyncio.run(_run())

    assert engine.pending_timers() == 0
    assert len(engine.active_alerts()) == 2
    assert engine.unread_count() == 2


def test_stop_before_start_is_noop(make_engine: EngineFactory) -> None:
    engine = make_engine()

    asyncio.run(engine.stop())

    assert engine.is_running is False


@pytest.mark.parametrize("limit", [1, 3])
def test_history_limit_smaller_than_active_bound(scheduler: ManualScheduler, limit: int) -> None:
    engine = AlertEngine(
        InMemoryKeyValueStore(),
        scheduler=scheduler,
        max_visible=5,
        auto_dismiss_ms=0,
        history_limit=limit,
    )
    records = [engine.ingest(make_payload(index)) for index in range(5)]

    engine.dismiss(records[0].id)

    assert len(engine.history_alerts()) == limit
    assert len(engine.active_alerts()) == 4


def test_dismiss_notifies_only_on_change(make_engine: EngineFactory) -> None:
    engine = make_engine()
    changes: list[str] = []
    engine.add_listener(changes.append)
    record = engine.ingest(make_payload(1))

    engine.dismiss(record.id)
    engine.dismiss(record.id)
    engine.dismiss("unknown")

    assert changes == ["ingested", "dismissed"]


def test_dismissing_evicted_unread_alert_notifies(make_engine: EngineFactory) -> None:
    engine = make_engine(max_visible=1)
    first = engine.ingest(make_payload(1))
    engine.ingest(make_payload(2))
    changes: list[str] = []
    engine.add_listener(changes.append)

    engine.dismiss(first.id)

    assert changes == ["dismissed"]
    assert engine.unread_count() == 1


def test_ingest_without_event_loop_keeps_state_consistent() -> None:
    engine = AlertEngine(InMemoryKeyValueStore(), auto_dismiss_ms=1000)

    with pytest.raises(RuntimeError):
        engine.ingest(make_payload(1))

    assert engine.active_alerts() == []
    assert engine.history_alerts() == []
    assert engine.unread_count() == 0
