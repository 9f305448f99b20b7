"""Tests for DeviceRuntime: polling, publishing, writes, queueing and the watchdog."""

import asyncio

import pytest

from fieldbridge.common.exceptions import ProtocolError, TransportError, UnsupportedOperation
from fieldbridge.common.state import MemoryStateStore
from fieldbridge.services.device.poll_scheduler import PollKind, SchedulerMode
from fieldbridge.services.device.runtime import DeviceRuntime

from conftest import FakeDriver, PushDriver, make_device, make_template

VALUES = {"W": 1500, "WH": 1000, "PVConn": 1, "WMaxLimPct": 100, "WMaxLim_Ena": 1}

PRE_WRITE = {
    "pre_writes": [{
        "trigger_id": "WMaxLimPct",
        "cooldown_ms": 5000,
        "writes": [{"dp_id": "WMaxLim_Ena", "value": 1}],
    }],
}


@pytest.fixture
async def start(make_runtime):
    """Build and start a runtime; everything started is stopped on teardown."""
    started = []

    async def build(**kwargs):
        kwargs.setdefault("values", VALUES)
        runtime = make_runtime(**kwargs)
        await runtime.start()
        started.append(runtime)
        return runtime

    yield build
    for runtime in started:
        task = runtime.stop()
        if task is not None:
            await task


# --- publishing ---------------------------------------------------------------

async def test_start_publishes_initial_poll(start, store):
    runtime = await start()

    assert store.get_value("devices.inv1.W") == 1500
    assert store.get_state("devices.inv1.W").ack is True
    assert store.get_value("devices.inv1.info.connection") is True
    assert store.get_value("devices.inv1.info.lastError") == ""
    assert store.get_value("devices.inv1.aliases.comm.connected") is True
    assert store.get_value("devices.inv1.aliases.alarm.offline") is False
    assert store.get_value("devices.inv1.aliases.r.power") == 1500
    assert runtime.connected


async def test_start_creates_objects(start, store):
    await start()

    assert store.get_object("devices.inv1")["type"] == "device"
    assert store.get_object("devices.inv1.WMaxLimPct")["write"] is True
    assert store.get_object("devices.inv1.W")["write"] is False
    assert store.get_object("devices.inv1.Heartbeat")["read"] is False
    assert store.get_object("devices.inv1.aliases.ctrl.powerLimitPct")["write"] is True


async def test_write_only_points_are_never_read(make_runtime):
    runtime = make_runtime(values=VALUES)
    await runtime.poll_once()
    assert "Heartbeat" not in runtime.driver.reads[0]


async def test_slow_and_fast_tiers(make_runtime, clock):
    hints = {"poll": {"fast_interval_ms": 1000, "slow_interval_ms": 30000, "fast_ids": ["W"]}}
    runtime = make_runtime(hints=hints, values=VALUES)
    runtime.scheduler.start()

    assert runtime.scheduler.due() is PollKind.SLOW
    await runtime.poll_once(PollKind.SLOW)
    clock.advance(1000)
    assert runtime.scheduler.due() is PollKind.FAST
    await runtime.poll_once(PollKind.FAST)

    assert runtime.driver.reads == [["W", "WH", "PVConn", "WMaxLimPct", "WMaxLim_Ena"], ["W"]]


def _returning(values):
    async def read(datapoints):
        return dict(values)
    return read


async def test_unknown_and_invalid_values_not_published(make_runtime, store):
    runtime = make_runtime()
    runtime.driver.read_datapoints = _returning({"W": float("nan"), "Unknown": 5, "WH": "12.5"})

    await runtime.poll_once()

    assert store.get_state("devices.inv1.W") is None
    assert store.get_state("devices.inv1.Unknown") is None
    assert store.get_value("devices.inv1.WH") == 12.5


# --- error path -----------------------------------------------------------------

async def test_transport_error_marks_disconnected(make_runtime, store):
    runtime = make_runtime(values=VALUES)
    await runtime.poll_once()
    runtime.driver.read_errors.append(
        TransportError("connect ECONNREFUSED 10.0.0.5:502", code="ECONNREFUSED")
    )

    assert await runtime.poll_once() is False

    last_error = store.get_value("devices.inv1.info.lastError")
    assert last_error.startswith("connect ECONNREFUSED 10.0.0.5:502 | Hint: ")
    assert "10.0.0.5:502 was refused" in last_error
    assert store.get_value("devices.inv1.info.connection") is False
    assert runtime.driver.disconnect_count == 1
    assert "W" not in runtime.aliases.latest


async def test_error_updates_communication_aliases(start, store):
    runtime = await start()
    runtime.driver.read_errors.append(TransportError("Connection timed out", code="ETIMEDOUT"))

    await runtime.poll_once()

    assert store.get_value("devices.inv1.aliases.comm.connected") is False
    assert store.get_value("devices.inv1.aliases.alarm.offline") is True
    assert "Hint:" in store.get_value("devices.inv1.aliases.comm.lastError")


async def test_protocol_error_keeps_link(make_runtime, store):
    runtime = make_runtime(values=VALUES)
    await runtime.poll_once()
    runtime.driver.read_errors.append(ProtocolError("Modbus exception: Illegal data address"))

    await runtime.poll_once()

    assert runtime.driver.disconnect_count == 0
    assert not runtime.connected
    assert "address offset" in store.get_value("devices.inv1.info.lastError")


async def test_unexpected_exception_treated_as_transport(make_runtime):
    runtime = make_runtime(values=VALUES)
    runtime.driver.read_errors.append(RuntimeError("socket closed"))

    await runtime.poll_once()

    assert runtime.driver.disconnect_count == 1
    assert runtime.state.last_error == "socket closed"


async def test_recovery_clears_last_error(make_runtime, store):
    runtime = make_runtime(values=VALUES)
    runtime.driver.read_errors.append(TransportError("refused", code="ECONNREFUSED"))
    await runtime.poll_once()
    await runtime.poll_once()

    assert runtime.connected
    assert store.get_value("devices.inv1.info.lastError") == ""


class FlakyStore(MemoryStateStore):
    """Fails the first time a power reading is stored."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    async def set_state(self, path, value, ack=True):
        if path.endswith(".W") and not self.failures:
            self.failures += 1
            raise RuntimeError("store unavailable")
        await super().set_state(path, value, ack=ack)


def realtime_runtime(store, context, interval_ms: int = 250) -> DeviceRuntime:
    template = make_template(hints={"poll": {"fast_interval_ms": interval_ms}})
    device = make_device()
    driver = FakeDriver(device, template, context, values=VALUES)
    return DeviceRuntime(device, template, store, context, driver=driver)


async def stop_runtime(runtime):
    task = runtime.stop()
    if task is not None:
        await task


async def test_publish_failure_does_not_escape_poll(make_runtime):
    runtime = make_runtime(values=VALUES)
    runtime.store = FlakyStore()

    assert await runtime.poll_once() is False
    assert runtime.driver.disconnect_count == 0

    assert await runtime.poll_once() is True
    assert runtime.store.get_value("devices.inv1.W") == 1500


async def test_polling_continues_after_publish_failure(context):
    """A store failure on the first poll neither aborts start nor ends polling"""
    store = FlakyStore()
    runtime = realtime_runtime(store, context)

    await runtime.start()
    try:
        await asyncio.sleep(0.9)
        assert store.failures == 1
        assert len(runtime.driver.reads) >= 3
        assert runtime.connected
        assert store.get_value("devices.inv1.W") == 1500
    finally:
        await stop_runtime(runtime)


async def test_poll_loop_survives_error_handling_failure(context, monkeypatch):
    runtime = realtime_runtime(MemoryStateStore(), context)
    await runtime.start()
    handle_error = runtime._handle_error
    failed = []

    async def failing_once(error):
        if not failed:
            failed.append(error)
            raise RuntimeError("error state unavailable")
        await handle_error(error)

    monkeypatch.setattr(runtime, "_handle_error", failing_once)
    runtime.driver.read_errors.append(TransportError("reset", code="ECONNRESET"))
    reads = len(runtime.driver.reads)
    try:
        await asyncio.sleep(0.7)
        assert failed
        assert len(runtime.driver.reads) >= reads + 2
        assert runtime.connected
    finally:
        await stop_runtime(runtime)


# --- immediate writes -------------------------------------------------------------

async def test_alias_write_is_acknowledged_and_echoed(start, store):
    runtime = await start()

    assert await runtime.handle_write("devices.inv1.aliases.ctrl.powerLimitPct", 50) is True

    assert runtime.driver.writes == [("WMaxLimPct", 50)]
    state = store.get_state("devices.inv1.aliases.ctrl.powerLimitPct")
    assert state.value == 50 and state.ack is True
    assert store.get_value("devices.inv1.WMaxLimPct") == 50


async def test_datapoint_write_records_time(make_runtime, store, clock):
    runtime = make_runtime(values=VALUES)
    clock.set(1234)

    assert await runtime.handle_write("devices.inv1.WMaxLimPct", 70)

    assert runtime.state.last_write_at["WMaxLimPct"] == 1234
    assert store.get_state("devices.inv1.WMaxLimPct").ack is True


async def test_read_only_writes_rejected(start):
    runtime = await start()

    assert await runtime.handle_write("devices.inv1.W", 1) is False
    assert await runtime.handle_write("devices.inv1.aliases.comm.connected", False) is False
    assert await runtime.handle_write("devices.inv1.nothing", 1) is False
    assert runtime.driver.writes == []
    assert "W" not in runtime.state.last_write_at


async def test_unsupported_write_does_not_disconnect(make_runtime):
    runtime = make_runtime(values=VALUES)
    await runtime.poll_once()
    runtime.driver.write_errors.append(UnsupportedOperation("no write function"))

    assert await runtime.handle_write("devices.inv1.WMaxLimPct", 10) is False
    assert runtime.connected
    assert runtime.driver.disconnect_count == 0


async def test_failed_immediate_write_takes_error_path(make_runtime, store):
    runtime = make_runtime(values=VALUES)
    await runtime.poll_once()
    runtime.driver.write_errors.append(TransportError("connection reset", code="ECONNRESET"))

    assert await runtime.handle_write("devices.inv1.WMaxLimPct", 10) is False
    assert store.get_value("devices.inv1.info.connection") is False
    assert runtime.driver.disconnect_count == 1


# --- pre-writes ----------------------------------------------------------------

async def test_pre_write_runs_before_primary_with_cooldown(make_runtime, clock):
    runtime = make_runtime(hints=PRE_WRITE, values=VALUES)

    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)
    clock.set(2000)
    await runtime.handle_write("devices.inv1.WMaxLimPct", 60)
    clock.set(6000)
    await runtime.handle_write("devices.inv1.WMaxLimPct", 70)

    assert runtime.driver.writes == [
        ("WMaxLim_Ena", 1), ("WMaxLimPct", 50),
        ("WMaxLimPct", 60),
        ("WMaxLim_Ena", 1), ("WMaxLimPct", 70),
    ]


async def test_pre_write_failure_aborts_primary(make_runtime):
    runtime = make_runtime(hints=PRE_WRITE, values=VALUES)
    runtime.driver.write_errors.append(TransportError("refused", code="ECONNREFUSED"))

    assert await runtime.handle_write("devices.inv1.WMaxLimPct", 50) is False
    assert runtime.driver.writes == []

    # Cooldown was not consumed, so the next write runs the pre-write again
    assert await runtime.handle_write("devices.inv1.WMaxLimPct", 50) is True
    assert runtime.driver.writes == [("WMaxLim_Ena", 1), ("WMaxLimPct", 50)]


async def test_pre_write_echoes_target(make_runtime, store):
    runtime = make_runtime(hints=PRE_WRITE, values=VALUES)
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)
    assert store.get_value("devices.inv1.WMaxLim_Ena") == 1


# --- queued writes ----------------------------------------------------------------

THROTTLED = {"write_throttle": {"interval_ms": 1000, "max_attempts": 2}}


async def test_queued_writes_coalesce(start, store):
    runtime = await start(hints=THROTTLED)

    assert await runtime.handle_write("devices.inv1.aliases.ctrl.powerLimitPct", 30)
    assert await runtime.handle_write("devices.inv1.WMaxLimPct", 40)
    assert runtime.driver.writes == []
    assert len(runtime.queue) == 1
    assert runtime.get_status()["pending_writes"] == 1

    assert await runtime.drain_once() == 1

    assert runtime.driver.writes == [("WMaxLimPct", 40)]
    assert store.get_state("devices.inv1.aliases.ctrl.powerLimitPct").value == 30
    assert store.get_state("devices.inv1.aliases.ctrl.powerLimitPct").ack is True
    assert store.get_state("devices.inv1.WMaxLimPct").value == 40


async def test_queued_write_retried_then_dropped(make_runtime, store):
    runtime = make_runtime(hints=THROTTLED, values=VALUES)
    await runtime.poll_once()
    runtime.driver.write_errors.extend([
        ProtocolError("Modbus exception: Illegal data address"),
        ProtocolError("Modbus exception: Illegal data address"),
    ])
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)

    assert await runtime.drain_once() == 0
    assert runtime.queue.get("WMaxLimPct").attempts == 1
    assert runtime.connected

    assert await runtime.drain_once() == 0
    assert len(runtime.queue) == 0
    assert "dropped after 2 attempts" in store.get_value("devices.inv1.info.lastError")
    assert not runtime.connected
    assert runtime.driver.disconnect_count == 0


async def test_queued_transport_failure_retries(make_runtime):
    runtime = make_runtime(hints={"write_throttle": {"interval_ms": 1000, "max_attempts": 3}}, values=VALUES)
    runtime.driver.write_errors.append(TransportError("reset", code="ECONNRESET"))
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)

    await runtime.drain_once()
    assert runtime.driver.disconnect_count == 1
    assert await runtime.drain_once() == 1
    assert runtime.driver.writes == [("WMaxLimPct", 50)]


async def test_queued_unsupported_write_discarded(make_runtime):
    runtime = make_runtime(hints=THROTTLED, values=VALUES)
    await runtime.poll_once()
    runtime.driver.write_errors.append(UnsupportedOperation("no write function"))
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)

    await runtime.drain_once()

    assert len(runtime.queue) == 0
    assert runtime.connected


async def test_queued_pre_writes_go_first(make_runtime):
    hints = dict(THROTTLED, **PRE_WRITE)
    hints["write_throttle"] = {"interval_ms": 1000, "max_per_tick": 5}
    runtime = make_runtime(hints=hints, values=VALUES)

    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)
    assert runtime.queue.ids() == ["WMaxLim_Ena", "WMaxLimPct"]

    assert await runtime.drain_once() == 2
    assert runtime.driver.writes == [("WMaxLim_Ena", 1), ("WMaxLimPct", 50)]


async def test_one_queued_write_per_tick_in_arrival_order(make_runtime):
    runtime = make_runtime(hints={"write_throttle": {"interval_ms": 1000, "max_per_tick": 1}}, values=VALUES)
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)
    await runtime.handle_write("devices.inv1.WMaxLim_Ena", 1)

    assert await runtime.drain_once() == 1
    assert runtime.driver.writes == [("WMaxLimPct", 50)]
    assert runtime.queue.ids() == ["WMaxLim_Ena"]

    assert await runtime.drain_once() == 1
    assert runtime.driver.writes == [("WMaxLimPct", 50), ("WMaxLim_Ena", 1)]
    assert await runtime.drain_once() == 0


async def test_dropped_pre_write_resets_cooldown(make_runtime):
    hints = dict(PRE_WRITE, write_throttle={"interval_ms": 1000, "max_attempts": 1})
    runtime = make_runtime(hints=hints, values=VALUES)
    runtime.driver.write_errors.append(ProtocolError("Modbus exception: Illegal data address"))

    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)
    await runtime.drain_once()

    # Pre-write and its dependent primary are both gone
    assert len(runtime.queue) == 0
    await runtime.handle_write("devices.inv1.WMaxLimPct", 60)
    assert runtime.queue.ids() == ["WMaxLim_Ena", "WMaxLimPct"]


# --- command cadence -------------------------------------------------------------

async def test_cadence_tick_polls_or_writes_once(make_runtime):
    runtime = make_runtime(hints={"command_interval_ms": 500}, values=VALUES)
    assert runtime.mode is SchedulerMode.COMMAND_CADENCE
    assert runtime.queue is not None
    runtime.scheduler.start()
    await runtime.handle_write("devices.inv1.WMaxLimPct", 40)
    await runtime.handle_write("devices.inv1.WMaxLim_Ena", 0)

    await runtime.cadence_tick()
    assert len(runtime.driver.reads) == 1
    assert runtime.driver.writes == []

    await runtime.cadence_tick()
    assert len(runtime.driver.reads) == 1
    assert runtime.driver.writes == [("WMaxLimPct", 40)]


# --- watchdog --------------------------------------------------------------------

WATCHDOG = {
    "watchdog": {
        "targets": ["Heartbeat"],
        "period_ms": 10000,
        "sequence_min": 1,
        "sequence_max": 3,
        "fail_safe": {
            "trigger_ids": ["WMaxLimPct"],
            "silence_ms": 10000,
            "target_id": "WMaxLim_Ena",
            "disable_value": 0,
        },
    },
}


async def test_watchdog_ramp(make_runtime, store):
    runtime = make_runtime(hints=WATCHDOG, values=VALUES)
    await runtime.poll_once()

    for _ in range(4):
        await runtime.watchdog_tick()

    assert runtime.driver.writes == [("Heartbeat", 1), ("Heartbeat", 2), ("Heartbeat", 3), ("Heartbeat", 1)]
    assert store.get_value("devices.inv1.Heartbeat") == 1
    assert "Heartbeat" not in runtime.state.last_write_at


async def test_watchdog_skipped_while_disconnected(make_runtime):
    runtime = make_runtime(hints=WATCHDOG, values=VALUES)
    await runtime.watchdog_tick()
    assert runtime.driver.writes == []


async def test_fail_safe_after_silence(make_runtime, clock):
    runtime = make_runtime(hints=WATCHDOG, values=VALUES)
    await runtime.poll_once()
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)
    runtime.driver.writes.clear()

    clock.set(10000)
    await runtime.watchdog_tick()
    assert ("WMaxLim_Ena", 0) not in runtime.driver.writes

    clock.set(10001)
    await runtime.watchdog_tick()
    assert ("WMaxLim_Ena", 0) in runtime.driver.writes

    # Fires once per silence, re-armed by a newer trigger write
    runtime.driver.writes.clear()
    clock.set(30000)
    await runtime.watchdog_tick()
    assert ("WMaxLim_Ena", 0) not in runtime.driver.writes

    await runtime.handle_write("devices.inv1.WMaxLimPct", 60)
    clock.set(40001)
    await runtime.watchdog_tick()
    assert ("WMaxLim_Ena", 0) in runtime.driver.writes


async def test_watchdog_in_cadence_mode_is_queued(make_runtime):
    hints = dict(WATCHDOG, command_interval_ms=500)
    runtime = make_runtime(hints=hints, values=VALUES)
    await runtime.poll_once()

    await runtime.watchdog_tick()

    assert runtime.driver.writes == []
    assert runtime.queue.get("Heartbeat").value == 1


# --- lifecycle -------------------------------------------------------------------

async def test_stop_is_idempotent(make_runtime):
    runtime = make_runtime(values=VALUES)
    await runtime.start()
    assert runtime.running

    task = runtime.stop()
    assert task is not None
    await task
    assert runtime.driver.disconnect_count == 1
    assert not runtime.running
    assert not runtime.connected
    assert runtime.stop() is None


async def test_stop_resets_queue(make_runtime):
    runtime = make_runtime(hints=THROTTLED, values=VALUES)
    await runtime.start()
    await runtime.handle_write("devices.inv1.WMaxLimPct", 50)

    await runtime.stop()

    assert len(runtime.queue) == 0
    assert runtime.state.last_write_at == {}


async def test_disabled_device_does_not_start(make_runtime):
    runtime = make_runtime(device={"enabled": False}, values=VALUES)
    await runtime.start()
    assert not runtime.running
    assert runtime.driver.reads == []
    assert runtime.stop() is None


async def test_push_driver_publishes_through_listener(start, store):
    runtime = await start(driver_cls=PushDriver)
    assert runtime.driver.connect_count == 1
    assert runtime.driver.reads == []

    await runtime.driver.emit({"W": 10})

    assert store.get_value("devices.inv1.W") == 10
    assert store.get_value("devices.inv1.aliases.comm.connected") is True


async def test_owns_paths(start):
    runtime = await start()
    assert runtime.owns("devices.inv1.WMaxLimPct")
    assert runtime.owns("devices.inv1.aliases.ctrl.powerLimitPct")
    assert not runtime.owns("devices.inv1.info.connection")
    assert not runtime.owns("devices.inv2.WMaxLimPct")
