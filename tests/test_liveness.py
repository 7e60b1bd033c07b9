"""Tests for the liveness monitor."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fieldlink.core import LivenessState
from fieldlink.events import EventBus, EventName
from fieldlink.liveness import (
    LivenessConfigurationError,
    LivenessMonitor,
    classify,
)

BASE = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def monitor_setup():
    bus = EventBus()
    events: list = []
    bus.subscribe(events.append, EventName.DEVICE_STATUS_CHANGED)
    clock = FakeClock(BASE)
    monitor = LivenessMonitor(
        bus,
        warning_threshold_ms=3 * 60 * 1000,
        offline_threshold_ms=5 * 60 * 1000,
        clock=clock,
    )
    return monitor, clock, events


def test_classify_thresholds():
    warning = timedelta(minutes=3)
    offline = timedelta(minutes=5)

    def state(minutes):
        return classify(
            BASE - timedelta(minutes=minutes),
            BASE,
            warning_threshold=warning,
            offline_threshold=offline,
        )

    assert state(1) is LivenessState.ONLINE
    assert state(3) is LivenessState.ONLINE
    assert state(4) is LivenessState.WARNING
    assert state(6) is LivenessState.OFFLINE
    assert (
        classify(None, BASE, warning_threshold=warning, offline_threshold=offline)
        is LivenessState.OFFLINE
    )


@pytest.mark.asyncio
async def test_first_message_brings_device_online(monitor_setup):
    monitor, _, events = monitor_setup

    change = await monitor.record_activity("D1")

    assert change is not None
    assert change.old_state is LivenessState.OFFLINE
    assert monitor.get("D1").state is LivenessState.ONLINE
    assert events[0].as_dict()["newState"] == "online"


@pytest.mark.asyncio
async def test_silence_of_four_minutes_is_warning(monitor_setup):
    monitor, clock, events = monitor_setup
    await monitor.record_activity("D1")

    clock.advance(minutes=4)
    changes = await monitor.sweep()

    assert [(c.old_state, c.new_state) for c in changes] == [
        (LivenessState.ONLINE, LivenessState.WARNING)
    ]
    assert events[-1].new_state == "warning"


@pytest.mark.asyncio
async def test_silence_of_six_minutes_is_offline(monitor_setup):
    monitor, clock, events = monitor_setup
    await monitor.record_activity("D1")

    clock.advance(minutes=6)
    await monitor.sweep()

    assert monitor.get("D1").state is LivenessState.OFFLINE
    assert events[-1].old_state == "online"
    assert events[-1].new_state == "offline"


@pytest.mark.asyncio
async def test_message_forces_online_without_waiting_for_sweep(monitor_setup):
    monitor, clock, events = monitor_setup
    await monitor.record_activity("D1")
    clock.advance(minutes=6)
    await monitor.sweep()

    change = await monitor.record_activity("D1")

    assert change.old_state is LivenessState.OFFLINE
    assert change.new_state is LivenessState.ONLINE
    assert monitor.get("D1").last_seen_at == clock.now


@pytest.mark.asyncio
async def test_sweep_emits_only_on_change(monitor_setup):
    monitor, clock, events = monitor_setup
    await monitor.record_activity("D1")
    await monitor.record_activity("D1")

    clock.advance(minutes=1)
    assert await monitor.sweep() == []
    clock.advance(minutes=3)
    await monitor.sweep()
    await monitor.sweep()

    assert [event.new_state for event in events] == ["online", "warning"]


@pytest.mark.asyncio
async def test_provisioned_devices_never_seen_stay_offline_silently():
    bus = EventBus()
    events: list = []
    bus.subscribe(events.append)
    monitor = LivenessMonitor(bus, device_source=lambda: ["D7", "D8"])

    changes = await monitor.sweep()

    assert changes == []
    assert events == []
    assert monitor.summary() == {"online": 0, "warning": 0, "offline": 2}


@pytest.mark.asyncio
async def test_failing_device_source_does_not_break_sweep(monitor_setup):
    monitor, clock, _ = monitor_setup
    await monitor.record_activity("D1")

    def _broken():
        raise RuntimeError("database unavailable")

    monitor._device_source = _broken
    clock.advance(minutes=4)

    changes = await monitor.sweep()

    assert [c.device_id for c in changes] == ["D1"]


@pytest.mark.asyncio
async def test_summary_counts_states(monitor_setup):
    monitor, clock, _ = monitor_setup
    await monitor.record_activity("D1")
    clock.advance(minutes=4)
    await monitor.record_activity("D2")
    await monitor.sweep()

    assert monitor.summary() == {"online": 1, "warning": 1, "offline": 0}
    assert set(monitor.snapshot()) == {"D1", "D2"}


@pytest.mark.asyncio
async def test_background_sweep_runs_and_stops():
    bus = EventBus()
    clock = FakeClock(BASE)
    monitor = LivenessMonitor(
        bus,
        warning_threshold_ms=1000,
        offline_threshold_ms=2000,
        sweep_interval_ms=10,
        clock=clock,
    )
    await monitor.record_activity("D1")
    clock.advance(seconds=5)

    monitor.start()
    assert monitor.running
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert not monitor.running
    assert monitor.get("D1").state is LivenessState.OFFLINE


@pytest.mark.asyncio
async def test_sweep_waiting_on_device_lock_sees_fresh_arrival(monitor_setup):
    monitor, clock, events = monitor_setup
    await monitor.record_activity("D1")
    clock.advance(minutes=6)

    lock = monitor._lock_for("D1")
    await lock.acquire()
    sweep = asyncio.create_task(monitor.sweep())
    await asyncio.sleep(0)
    assert not sweep.done()

    # An arrival lands while the sweep is blocked on the device.
    monitor.get("D1").last_seen_at = clock.now
    lock.release()
    changes = await sweep

    assert changes == []
    assert monitor.get("D1").state is LivenessState.ONLINE
    assert [event.new_state for event in events] == ["online"]


@pytest.mark.asyncio
async def test_interleaved_sweep_and_arrival_end_online(monitor_setup):
    monitor, clock, _ = monitor_setup
    await monitor.record_activity("D1")
    clock.advance(minutes=6)

    await asyncio.gather(monitor.sweep(), monitor.record_activity("D1"))

    assert monitor.get("D1").state is LivenessState.ONLINE
    assert monitor.get("D1").last_seen_at == clock.now


def test_warning_must_be_shorter_than_offline():
    with pytest.raises(LivenessConfigurationError):
        LivenessMonitor(
            EventBus(), warning_threshold_ms=300_000, offline_threshold_ms=300_000
        )
