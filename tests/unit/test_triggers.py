"""Trigger watcher tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from flowgate.bus import EventBus
from flowgate.config import TriggerConfig
from flowgate.contracts import ThresholdTrigger
from flowgate.transports.inmemory import InMemoryTransport
from flowgate.triggers import ScheduleWatcher, ThresholdWatcher, TriggerManager

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _threshold_definition(make_definition, make_step):
    return make_definition(
        [make_step("cool-down")],
        use_case_id="temperature-response",
        triggers=[
            {
                "type": "threshold",
                "threshold": {"metric": "temperature.deviation", "operator": ">", "value": 2},
            }
        ],
    )


def test_threshold_fires_then_cools_down(make_definition, make_step):
    definition = _threshold_definition(make_definition, make_step)
    trigger = definition.triggers[0]
    assert isinstance(trigger, ThresholdTrigger)
    watcher = ThresholdWatcher(definition, trigger, cooldown_seconds=60)

    assert watcher.observe(1.5, T0) is False
    assert watcher.observe(3, T0 + timedelta(seconds=1)) is True
    assert watcher.observe(3.1, T0 + timedelta(seconds=30)) is False
    assert watcher.observe(3.2, T0 + timedelta(seconds=61)) is True


def test_threshold_cooldown_uses_sample_time_not_clock(make_definition, make_step):
    definition = _threshold_definition(make_definition, make_step)
    watcher = ThresholdWatcher(definition, definition.triggers[0], cooldown_seconds=3600)

    assert watcher.observe(5, T0)
    # a late sample stamped before the cooldown ends is still suppressed
    assert not watcher.observe(5, T0 + timedelta(minutes=59))
    assert watcher.observe(5, T0 + timedelta(hours=1))


def test_trigger_config_cooldown_defaults_to_interval():
    assert TriggerConfig(evaluation_interval_seconds=30).cooldown_seconds == 30
    assert (
        TriggerConfig(
            evaluation_interval_seconds=30, threshold_cooldown_seconds=5
        ).cooldown_seconds
        == 5
    )


class _FakeClock:
    def __init__(self, now):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


@pytest.mark.asyncio
async def test_schedule_watcher_sleeps_until_next_match(make_definition, make_step):
    definition = make_definition(
        [make_step("report")], triggers=[{"type": "scheduled", "schedule": "*/15 * * * *"}]
    )
    clock = _FakeClock(T0 + timedelta(minutes=7))
    started = []

    async def start_run(defn, fire):
        started.append(fire)
        return f"run-{len(started)}"

    watcher = ScheduleWatcher(
        definition, definition.triggers[0], start_run, clock=clock, sleep=clock.sleep
    )
    assert await watcher.tick() == "run-1"
    assert await watcher.tick() == "run-2"

    assert clock.sleeps == [480.0, 900.0]
    assert [f.fired_at for f in started] == [
        T0 + timedelta(minutes=15),
        T0 + timedelta(minutes=30),
    ]
    assert started[0].kind == "scheduled"


@pytest.mark.asyncio
async def test_schedule_watcher_single_flight_skips_overlap(make_definition, make_step):
    definition = make_definition(
        [make_step("report")], triggers=[{"type": "scheduled", "schedule": "* * * * *"}]
    )
    clock = _FakeClock(T0)
    active = {"run-1"}

    async def start_run(defn, fire):
        return "run-1"

    watcher = ScheduleWatcher(
        definition,
        definition.triggers[0],
        start_run,
        overlap="single_flight",
        is_active=lambda run_id: run_id in active,
        clock=clock,
        sleep=clock.sleep,
    )
    assert await watcher.tick() == "run-1"
    assert await watcher.tick() is None
    active.clear()
    assert await watcher.tick() == "run-1"


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_manager_fans_out_events_to_every_definition(make_definition, make_step):
    bus = EventBus(InMemoryTransport())
    started = []

    async def start_run(defn, fire):
        started.append((defn.use_case_id, fire))
        return f"run-{len(started)}"

    manager = TriggerManager(bus, start_run)
    for name in ("first", "second"):
        manager.register(
            make_definition(
                [make_step("s")],
                use_case_id=name,
                triggers=[{"type": "event", "event": "grid.alarm"}],
            )
        )
    manager.start()
    try:
        await bus.publish_event("grid.alarm", {"feeder": "F12"})
        await _wait_for(lambda: len(started) == 2)
    finally:
        await manager.stop()

    assert sorted(name for name, _ in started) == ["first", "second"]
    assert all(fire.kind == "event" for _, fire in started)
    assert started[0][1].payload == {"feeder": "F12"}


@pytest.mark.asyncio
async def test_manager_threshold_from_metric_stream(make_definition, make_step):
    bus = EventBus(InMemoryTransport())
    started = []

    async def start_run(defn, fire):
        started.append(fire)
        return "run"

    manager = TriggerManager(bus, start_run, TriggerConfig(threshold_cooldown_seconds=60))
    manager.register(_threshold_definition(make_definition, make_step))
    manager.start()
    try:
        await bus.publish_sample("temperature.deviation", 1.0, T0)
        await bus.publish_sample("temperature.deviation", 3.0, T0 + timedelta(seconds=1))
        await bus.publish_sample("temperature.deviation", 3.1, T0 + timedelta(seconds=2))
        await _wait_for(lambda: len(started) >= 1)
        await asyncio.sleep(0.1)
    finally:
        await manager.stop()

    assert len(started) == 1
    assert started[0].kind == "threshold"
    assert started[0].payload == {"metric": "temperature.deviation", "value": 3.0}


@pytest.mark.asyncio
async def test_manager_unregister_drops_routes(make_definition, make_step):
    bus = EventBus(InMemoryTransport())
    started = []

    async def start_run(defn, fire):
        started.append(fire)
        return "run"

    manager = TriggerManager(bus, start_run)
    manager.register(
        make_definition([make_step("s")], triggers=[{"type": "event", "event": "x"}])
    )
    manager.unregister("test-case")
    manager.start()
    try:
        await bus.publish_event("x")
        await asyncio.sleep(0.1)
    finally:
        await manager.stop()
    assert started == []


@pytest.mark.asyncio
async def test_schedule_watcher_stops_when_cron_never_fires(make_definition, make_step):
    definition = make_definition(
        [make_step("report")], triggers=[{"type": "scheduled", "schedule": "0 0 31 2 *"}]
    )
    clock = _FakeClock(T0)
    started = []

    async def start_run(defn, fire):
        started.append(fire)
        return "run-1"

    watcher = ScheduleWatcher(
        definition, definition.triggers[0], start_run, clock=clock, sleep=clock.sleep
    )
    await asyncio.wait_for(watcher.run(), timeout=1)

    assert started == []
    assert clock.sleeps == []
