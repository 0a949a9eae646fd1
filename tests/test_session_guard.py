import asyncio

import pytest

from pharmacy_webapp.session_guard import ACTIVITY_EVENTS, VISIBILITY_EVENT, ActivitySignals, SessionGuard
from pharmacy_webapp.storage import (
    ACTIVITY_KEY,
    CredentialStore,
    EphemeralStore,
    KeyValueStore,
    StorageUnavailableError,
)

from tests.conftest import FOUR_HOURS_MS, FakeClock

ONE_MINUTE_MS = 60 * 1000


class CountingStore(EphemeralStore):
    def __init__(self):
        super().__init__()
        self.activity_writes = 0

    def set_item(self, key, value):
        if key == ACTIVITY_KEY:
            self.activity_writes += 1
        super().set_item(key, value)


class BrokenStore(KeyValueStore):
    def get_item(self, key):
        raise StorageUnavailableError("storage disabled")

    def set_item(self, key, value):
        raise StorageUnavailableError("storage disabled")

    def remove_item(self, key):
        raise StorageUnavailableError("storage disabled")

    def clear(self):
        raise StorageUnavailableError("storage disabled")


def test_initialize_records_activity_and_attaches_listeners(guard, signals, store, clock):
    guard.initialize(lambda: None)

    assert guard.is_initialized
    assert store.active.get_item(ACTIVITY_KEY) == str(clock.now)
    assert guard.get_remaining_time() == FOUR_HOURS_MS
    assert not guard.is_inactive()
    for event_type in ACTIVITY_EVENTS:
        assert signals.listener_count(event_type) == 1
    assert signals.listener_count(VISIBILITY_EVENT) == 1


def test_interactions_never_reduce_remaining_time(guard, signals, clock):
    guard.initialize(lambda: None)

    for step_ms, event_type in [(1000, "click"), (30 * ONE_MINUTE_MS, "keydown"), (5, "scroll"), (0, "focus")]:
        clock.advance(step_ms)
        without_event = guard.get_remaining_time()
        signals.dispatch(event_type)
        assert guard.get_remaining_time() >= without_event
        assert guard.get_remaining_time() == FOUR_HOURS_MS


def test_timestamp_never_moves_backwards(guard, store, clock):
    guard.initialize(lambda: None)
    recorded = int(store.active.get_item(ACTIVITY_KEY))

    clock.advance(-10_000)
    guard.record_event("mousemove")

    assert int(store.active.get_item(ACTIVITY_KEY)) == recorded


def test_unknown_events_and_events_after_cleanup_are_ignored(guard, store, clock):
    guard.initialize(lambda: None)
    clock.advance(ONE_MINUTE_MS)

    guard.record_event("resize")
    assert guard.get_remaining_time() == FOUR_HOURS_MS - ONE_MINUTE_MS

    guard.cleanup()
    guard.record_event("click")
    assert guard.get_remaining_time() == FOUR_HOURS_MS - ONE_MINUTE_MS


def test_inactivity_fires_callback_once_and_cleans_up(guard, signals, store, clock):
    calls = []
    guard.initialize(lambda: calls.append("logout"))
    store.active.set_item(ACTIVITY_KEY, str(clock.now - (FOUR_HOURS_MS + ONE_MINUTE_MS)))

    assert guard.check_inactivity() is True

    assert calls == ["logout"]
    assert not guard.is_initialized
    assert signals.listener_count() == 0
    assert guard.is_inactive()

    assert guard.check_inactivity() is False
    assert calls == ["logout"]


def test_check_before_timeout_does_nothing(guard, clock):
    calls = []
    guard.initialize(lambda: calls.append("logout"))
    clock.advance(FOUR_HOURS_MS - 1)

    assert guard.check_inactivity() is False
    assert calls == []
    assert guard.get_remaining_time() == 1


def test_second_initialize_keeps_first_callback_and_listeners(signals, clock):
    counting = CountingStore()
    store = CredentialStore(persistent=EphemeralStore(), ephemeral=counting)
    guard = SessionGuard(store, timeout_ms=FOUR_HOURS_MS, signals=signals, clock=clock)
    first, second = [], []

    guard.initialize(lambda: first.append(1))
    guard.initialize(lambda: second.append(1))

    assert signals.listener_count("click") == 1
    writes_before = counting.activity_writes
    clock.advance(1000)
    signals.dispatch("click")
    assert counting.activity_writes == writes_before + 1

    clock.advance(FOUR_HOURS_MS)
    guard.check_inactivity()
    assert first == [1]
    assert second == []


def test_visibility_change_detects_timeout_that_passed_in_background(guard, signals, clock):
    calls = []
    guard.initialize(lambda: calls.append("logout"))

    signals.dispatch(VISIBILITY_EVENT, hidden=True)
    clock.advance(FOUR_HOURS_MS + ONE_MINUTE_MS)
    signals.dispatch(VISIBILITY_EVENT, hidden=False)

    assert calls == ["logout"]
    assert not guard.is_initialized


def test_visibility_change_within_timeout_counts_as_activity(guard, signals, clock):
    calls = []
    guard.initialize(lambda: calls.append("logout"))
    clock.advance(ONE_MINUTE_MS)

    signals.dispatch(VISIBILITY_EVENT, hidden=False)

    assert calls == []
    assert guard.get_remaining_time() == FOUR_HOURS_MS


def test_cleanup_is_idempotent(guard, signals):
    guard.cleanup()
    guard.initialize(lambda: None)
    guard.cleanup()
    guard.cleanup()

    assert not guard.is_initialized
    assert signals.listener_count() == 0


def test_clear_activity_removes_timestamp_from_both_stores(guard, store):
    store.persistent.set_item(ACTIVITY_KEY, "1")
    store.ephemeral.set_item(ACTIVITY_KEY, "2")

    guard.clear_activity()

    assert store.persistent.get_item(ACTIVITY_KEY) is None
    assert store.ephemeral.get_item(ACTIVITY_KEY) is None


def test_missing_timestamp_rearms(guard, store, clock):
    guard.initialize(lambda: None)
    clock.advance(FOUR_HOURS_MS * 2)
    store.active.remove_item(ACTIVITY_KEY)

    assert guard.get_remaining_time() == FOUR_HOURS_MS
    assert store.active.get_item(ACTIVITY_KEY) == str(clock.now)


def test_unavailable_storage_degrades_to_always_active():
    clock = FakeClock()
    store = CredentialStore(persistent=EphemeralStore(), ephemeral=BrokenStore())
    guard = SessionGuard(store, timeout_ms=FOUR_HOURS_MS, clock=clock)
    calls = []

    guard.initialize(lambda: calls.append("logout"))
    clock.advance(FOUR_HOURS_MS * 3)

    assert guard.get_remaining_time() == FOUR_HOURS_MS
    assert guard.check_inactivity() is False
    assert calls == []
    guard.clear_activity()
    guard.cleanup()


def test_signals_hub_deduplicates_listeners():
    signals = ActivitySignals()
    seen = []

    def listener(event_type, hidden):
        seen.append(event_type)

    signals.add_listener("click", listener)
    signals.add_listener("click", listener)
    signals.dispatch("click")
    signals.remove_listener("click", listener)
    signals.dispatch("click")

    assert seen == ["click"]
    assert signals.listener_count() == 0


@pytest.mark.asyncio
async def test_periodic_check_fires_once_and_stops(store, signals):
    clock = FakeClock()
    guard = SessionGuard(store, timeout_ms=FOUR_HOURS_MS, check_interval=0.01, signals=signals, clock=clock)
    calls = []

    guard.initialize(lambda: calls.append("logout"))
    await asyncio.sleep(0.03)
    assert calls == []

    clock.advance(FOUR_HOURS_MS)
    await asyncio.sleep(0.05)

    assert calls == ["logout"]
    assert not guard.is_initialized
    assert guard.check_inactivity() is False
    assert calls == ["logout"]


@pytest.mark.asyncio
async def test_cleanup_cancels_periodic_check(store):
    clock = FakeClock()
    guard = SessionGuard(store, timeout_ms=FOUR_HOURS_MS, check_interval=0.01, clock=clock)
    calls = []

    guard.initialize(lambda: calls.append("logout"))
    guard.cleanup()
    clock.advance(FOUR_HOURS_MS)
    await asyncio.sleep(0.03)

    assert calls == []


@pytest.mark.asyncio
async def test_failing_callback_in_periodic_check_is_logged(store, caplog):
    clock = FakeClock()
    guard = SessionGuard(store, timeout_ms=FOUR_HOURS_MS, check_interval=0.01, clock=clock)

    def explode():
        raise RuntimeError("navigation failed")

    guard.initialize(explode)
    task = guard._check_task
    clock.advance(FOUR_HOURS_MS)
    with caplog.at_level("ERROR", logger="pharmacy_webapp.session_guard"):
        await asyncio.sleep(0.05)

    assert task.done()
    assert not guard.is_initialized
    assert "Inactivity callback failed" in caplog.text
    assert "navigation failed" in caplog.text
