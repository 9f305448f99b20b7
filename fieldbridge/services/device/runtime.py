"""
Device Runtime

Owns the lifecycle of one device: polling, publishing to the state store,
inbound writes, the write queue, pre-writes, the watchdog and the error
path.

Scheduling modes:
- Free-running: a poll loop reads whichever tier is due, and an optional
  drain loop applies throttled writes in between.
- Command cadence: one tick per command interval performs exactly one
  link operation, a due poll if any, otherwise one queued write.

Only one operation at a time is in flight on a device. Polls and watchdog
ticks that find the link busy are skipped; writes wait for it.

Errors never escape the runtime. They update `info.connection` and
`info.lastError`, refresh the communication aliases and, for transport
failures, close the driver so the next cycle reconnects.
"""

import asyncio
from typing import Any

from ...common.config import DatapointDef, DeviceConfig, Template
from ...common.exceptions import (
    CodecError,
    UnsupportedOperation,
    WriteError,
    is_transport_error,
)
from ...common.logging_setup import (
    RateLimitedLogger,
    get_service_logger,
    log_device_read,
    log_device_write,
)
from ...common.scheduler import SchedulerGroup
from ...common.state import StateStore, device_path
from ...common.timestamp import Clock, monotonic_ms
from .alias_rules import derive_aliases
from .aliases import AliasContext, AliasDef, AliasEngine
from .context import RuntimeContext
from .error_reporter import describe_error
from .normalize import normalize_value
from .poll_scheduler import (
    PollKind,
    PollScheduler,
    ScheduleState,
    SchedulerMode,
    resolve_fast_interval,
    resolve_mode,
)
from .pre_writes import PreWriteManager
from .watchdog import Watchdog
from .write_queue import WriteQueue, WriteQueueEntry

logger = get_service_logger("device.runtime")


class DeviceRuntime:
    """
    Runtime for a single device.

    Usage:
        runtime = DeviceRuntime(device, template, store, context)
        await runtime.start()
        await runtime.handle_write("devices.inv1.aliases.ctrl.powerLimitPct", 50)
        runtime.stop()
    """

    def __init__(
        self,
        device: DeviceConfig,
        template: Template,
        store: StateStore,
        context: RuntimeContext | None = None,
        clock: Clock = monotonic_ms,
        driver=None,
    ):
        self.device = device
        self.template = template
        self.store = store
        self.context = context or RuntimeContext()
        self._clock = clock

        hints = template.driver_hints
        self.hints = hints
        self.driver = driver or self.context.drivers.create_driver(device, template, self.context)

        self.state = ScheduleState()
        self.mode = resolve_mode(template)
        self.scheduler = PollScheduler(
            resolve_fast_interval(device, template, self.context.gateway),
            hints.poll.slow_interval_ms if hints.poll.slow_tier_enabled else None,
            self.state,
            clock,
        )

        self.queue: WriteQueue | None = None
        if hints.write_throttle.enabled or self.mode is SchedulerMode.COMMAND_CADENCE:
            self.queue = WriteQueue(
                max_per_tick=hints.write_throttle.max_per_tick,
                max_attempts=hints.write_throttle.max_attempts,
            )

        self.pre_writes = PreWriteManager(hints.pre_writes, clock)

        self.watchdog: Watchdog | None = None
        if hints.watchdog is not None:
            watchdog = Watchdog(hints.watchdog, template, self.state)
            if watchdog.has_work:
                self.watchdog = watchdog

        self.aliases = AliasEngine()

        self.base_path = device_path(device.id)
        self._datapoints = {dp.id: dp for dp in template.datapoints}
        self._dp_paths = {device_path(device.id, dp.id): dp for dp in template.datapoints}
        self._alias_paths: dict[str, AliasDef] = {}

        self._readable = [dp for dp in template.datapoints if dp.readable]
        if self.scheduler.slow_tier:
            fast_ids = set(hints.poll.fast_ids)
            self._fast = [dp for dp in self._readable if dp.id in fast_ids]
        else:
            self._fast = self._readable

        self._busy = asyncio.Lock()
        self._loops = SchedulerGroup()
        self._poll_task: asyncio.Task | None = None
        self._running = False
        self._errors = RateLimitedLogger(logger)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def connected(self) -> bool:
        return self.state.connected

    def owns(self, path: str) -> bool:
        return path in self._dp_paths or path in self._alias_paths

    def alias_path(self, alias: AliasDef) -> str:
        return device_path(self.device.id, "aliases", alias.path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create state objects, run the first poll and start the loops."""
        if not self.device.enabled:
            logger.info(f"[{self.device.id}] Device disabled, not starting")
            return
        if self._running:
            return

        self._running = True
        self._reset_state()
        await self._init_objects()
        await self._init_aliases()
        self.store.subscribe(self.base_path)

        if not self.driver.polled:
            await self._start_push_driver()
        else:
            self.scheduler.start()
            # Initial poll right away, not one interval later
            kind = self.scheduler.due() or PollKind.FAST
            await self.poll_once(kind)

            if self.mode is SchedulerMode.COMMAND_CADENCE:
                self._loops.add(
                    f"{self.device.id}.cadence",
                    self.hints.command_interval_ms / 1000.0,
                    self.cadence_tick,
                    start_delay_seconds=self.hints.command_interval_ms / 1000.0,
                )
            else:
                self._poll_task = asyncio.create_task(
                    self._poll_loop(), name=f"poll:{self.device.id}",
                )
                if self.queue is not None:
                    interval_s = self.hints.write_throttle.interval_ms / 1000.0
                    self._loops.add(
                        f"{self.device.id}.drain", interval_s, self.drain_once,
                        start_delay_seconds=interval_s,
                    )

        if self.watchdog is not None:
            self._loops.add(
                f"{self.device.id}.watchdog",
                self.watchdog.period_ms / 1000.0,
                self.watchdog_tick,
                start_delay_seconds=self.watchdog.start_delay_ms / 1000.0,
            )

        await self._loops.start_all()
        logger.info(
            f"[{self.device.id}] Started ({self.mode.value}, "
            f"fast {self.scheduler.fast_interval_ms} ms"
            + (f", slow {self.scheduler.slow_interval_ms} ms" if self.scheduler.slow_tier else "")
            + ")",
            extra={"device": self.device.id, "mode": self.mode.value},
        )

    def stop(self) -> asyncio.Task | None:
        """Stop all loops and reset state.

        Safe to call from any state and more than once. Returns the driver
        disconnect task, which callers may await but do not have to.
        """
        was_running = self._running
        self._running = False
        self._loops.clear()
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self._reset_state()
        self.driver.set_listener(None)

        if not was_running:
            return None
        logger.info(f"[{self.device.id}] Stopped")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[{self.device.id}] No running loop, driver not disconnected")
            return None
        return loop.create_task(self._disconnect(), name=f"disconnect:{self.device.id}")

    def _reset_state(self) -> None:
        if self.queue is not None:
            self.queue.clear()
        self.pre_writes.clear()
        self.scheduler.reset()
        self.state.connected = False
        self.state.last_error = ""
        self.state.last_write_at.clear()
        if self.watchdog is not None:
            self.watchdog.reset()

    async def _disconnect(self) -> None:
        try:
            await self.driver.disconnect()
        except Exception as e:
            logger.debug(f"[{self.device.id}] Disconnect error: {e}")

    async def _start_push_driver(self) -> None:
        self.driver.set_listener(self._publish)
        try:
            await self.driver.connect(self.template.datapoints)
        except Exception as e:
            await self._handle_error(e)
            return
        await self._set_connected()

    async def _init_objects(self) -> None:
        await self.store.ensure_object(self.base_path, {
            "type": "device",
            "name": self.device.name or self.device.id,
            "template_id": self.template.id,
            "protocol": self.device.protocol.value,
        })
        await self.store.ensure_object(device_path(self.device.id, "info", "connection"), {
            "name": "Device connected", "type": "boolean", "role": "indicator.connected",
            "read": True, "write": False,
        })
        await self.store.ensure_object(device_path(self.device.id, "info", "lastError"), {
            "name": "Last error", "type": "string", "role": "text",
            "read": True, "write": False,
        })
        for path, dp in self._dp_paths.items():
            meta = {
                "name": dp.name or dp.id,
                "type": dp.type.value,
                "role": dp.role or "state",
                "read": dp.readable,
                "write": dp.writable,
            }
            if dp.unit:
                meta["unit"] = dp.unit
            await self.store.ensure_object(path, meta)

    async def _init_aliases(self) -> None:
        try:
            aliases = derive_aliases(self.template, self.device.category)
        except Exception as e:
            logger.warning(f"[{self.device.id}] Alias setup failed: {e}")
            aliases = []
        self.aliases = AliasEngine(aliases)
        self._alias_paths = {self.alias_path(a): a for a in aliases}
        for path, alias in self._alias_paths.items():
            await self.store.ensure_object(path, alias.metadata())
        if aliases:
            logger.debug(f"[{self.device.id}] {len(aliases)} aliases")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while self._running:
            kind = self.scheduler.due()
            if kind is None:
                await asyncio.sleep(self.scheduler.delay_ms() / 1000.0)
                continue
            try:
                await self.poll_once(kind)
            except Exception as e:
                logger.error(f"[{self.device.id}] Poll loop error: {e}")
                self.scheduler.completed(kind)

    async def cadence_tick(self) -> None:
        """One link operation: a due poll, else one queued write."""
        if self._busy.locked():
            return
        kind = self.scheduler.due()
        if kind is not None:
            await self.poll_once(kind)
        elif self.queue:
            await self.drain_once(max_entries=1)

    async def poll_once(self, kind: PollKind = PollKind.FAST) -> bool:
        """Read one tier and publish it. Returns False if skipped or failed."""
        if self._busy.locked():
            logger.debug(f"[{self.device.id}] Link busy, {kind.value} poll skipped")
            self.scheduler.completed(kind)
            return False

        datapoints = self._readable if kind is PollKind.SLOW else self._fast
        error = None
        async with self._busy:
            try:
                values = await self.driver.read_datapoints(datapoints)
            except Exception as e:
                error = e
        self.scheduler.completed(kind)

        if error is not None:
            await self._handle_error(error)
            return False
        try:
            await self._publish(values)
        except Exception as e:
            # The read succeeded, so the link stays up
            self._errors.error(
                f"{self.device.id}:publish",
                f"[{self.device.id}] Publishing {kind.value} poll failed: {e}",
            )
            return False
        return True

    async def _publish(self, values: dict[str, Any]) -> None:
        published: dict[str, Any] = {}
        for dp_id, raw in values.items():
            dp = self._datapoints.get(dp_id)
            if dp is None or not dp.readable:
                continue
            value = normalize_value(dp, raw)
            if value is None:
                continue
            published[dp_id] = value
            await self.store.set_state(device_path(self.device.id, dp_id), value, ack=True)
            log_device_read(logger, self.device.id, dp_id, value)

        await self._set_connected()
        await self._publish_aliases(self.aliases.update(published, self._alias_context()))

    async def _set_connected(self) -> None:
        if not self.state.connected:
            logger.info(f"[{self.device.id}] Connected")
            self._errors.reset(self.device.id)
        self.state.connected = True
        self.state.last_error = ""
        await self.store.set_state(device_path(self.device.id, "info", "connection"), True)
        await self.store.set_state(device_path(self.device.id, "info", "lastError"), "")

    def _alias_context(self) -> AliasContext:
        return AliasContext(connected=self.state.connected, last_error=self.state.last_error)

    async def _publish_aliases(self, updates: list[tuple[str, Any]], skip: set[str] = frozenset()) -> None:
        for alias_path, value in updates:
            path = device_path(self.device.id, "aliases", alias_path)
            if path in skip:
                continue
            await self.store.set_state(path, value, ack=True)

    # ------------------------------------------------------------------
    # Error path
    # ------------------------------------------------------------------

    async def _handle_error(self, error: BaseException) -> None:
        message = describe_error(error, self.device)
        self.state.connected = False
        self.state.last_error = message
        self._errors.warning(self.device.id, f"[{self.device.id}] {message}")

        if is_transport_error(error):
            # Cached values are stale once the link is gone
            self.aliases.clear_cache()
            await self._disconnect()

        try:
            await self.store.set_state(device_path(self.device.id, "info", "connection"), False)
            await self.store.set_state(device_path(self.device.id, "info", "lastError"), message)
            await self._publish_aliases(self.aliases.update({}, self._alias_context()))
        except Exception as e:
            logger.debug(f"[{self.device.id}] Failed to publish error state: {e}")

    async def _reject(self, path: str, error: BaseException) -> None:
        logger.warning(f"[{self.device.id}] Write to {path} rejected: {error}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def handle_write(self, path: str, value: Any) -> bool:
        """Apply an inbound (unacknowledged) write for this device.

        Returns True if the write was applied or queued.
        """
        try:
            dp, device_value = self._resolve_write(path, value)
        except UnsupportedOperation as e:
            await self._reject(path, e)
            return False
        if dp is None:
            return False

        self.state.last_write_at[dp.id] = self._clock()
        try:
            await self.write(dp, device_value, {path: value})
        except (UnsupportedOperation, CodecError) as e:
            await self._reject(path, e)
            return False
        except Exception as e:
            log_device_write(logger, self.device.id, dp.id, device_value, success=False)
            await self._handle_error(e)
            return False
        return True

    def _resolve_write(self, path: str, value: Any) -> tuple[DatapointDef | None, Any]:
        alias = self._alias_paths.get(path)
        if alias is not None:
            if not alias.writable:
                raise UnsupportedOperation(f"Alias {alias.path} is read-only")
            dp = self._datapoints.get(alias.target_dp_id or "")
            if dp is None or not dp.writable:
                raise UnsupportedOperation(f"Alias {alias.path} has no writable data point")
            return dp, alias.to_device(value) if alias.to_device else value

        dp = self._dp_paths.get(path)
        if dp is None:
            return None, value
        if not dp.writable:
            raise UnsupportedOperation(f"Data point {dp.id} is read-only", datapoint_id=dp.id)
        return dp, value

    async def write(self, dp: DatapointDef, value: Any, acks: dict[str, Any] | None = None) -> None:
        """Write a device-native value, running pre-writes first.

        With a write queue the write is only queued here. Otherwise it is
        applied immediately and any failure propagates to the caller.
        """
        acks = acks or {}
        if self.queue is not None:
            self._enqueue(dp, value, acks)
            return

        async with self._busy:
            await self._run_pre_writes(dp)
            await self.driver.write_datapoint(dp, value)
        log_device_write(logger, self.device.id, dp.id, value)
        await self._acknowledge(dp, value, acks)

    def _pre_write_targets(self, dp: DatapointDef, rule) -> list[tuple[DatapointDef, Any]]:
        targets = []
        for step in rule.writes:
            target = self._datapoints.get(step.dp_id)
            if target is None or not target.writable or target.id == dp.id:
                logger.debug(f"[{self.device.id}] Pre-write step {step.dp_id} skipped")
                continue
            targets.append((target, step.value))
        return targets

    async def _run_pre_writes(self, dp: DatapointDef) -> None:
        now = self._clock()
        for index, rule in self.pre_writes.due(dp.id, now):
            for target, value in self._pre_write_targets(dp, rule):
                await self.driver.write_datapoint(target, value)
                log_device_write(logger, self.device.id, target.id, value)
                await self._echo(target, value)
            # Only a fully applied rule consumes its cooldown
            self.pre_writes.mark_fired(index, now)

    def _enqueue(self, dp: DatapointDef, value: Any, acks: dict[str, Any]) -> WriteQueueEntry:
        now = self._clock()
        requires: set[str] = set()
        for index, rule in self.pre_writes.due(dp.id, now):
            for target, step_value in self._pre_write_targets(dp, rule):
                self.queue.enqueue(target.id, step_value, pre_write=True, rule=index)
                requires.add(target.id)
            self.pre_writes.mark_fired(index, now)
        entry = self.queue.enqueue(dp.id, value, acks=acks, requires=requires)
        logger.debug(f"[{self.device.id}] Queued {dp.id}={value} ({len(self.queue)} pending)")
        return entry

    async def drain_once(self, max_entries: int | None = None) -> int:
        """Apply up to `max_entries` queued writes. Returns how many succeeded."""
        if not self.queue:
            return 0
        limit = max_entries or self.queue.max_per_tick
        applied = 0
        while applied < limit:
            entry = self.queue.pop_next()
            if entry is None:
                break
            dp = self._datapoints[entry.dp_id]
            try:
                async with self._busy:
                    await self.driver.write_datapoint(dp, entry.value)
            except Exception as e:
                await self._queued_write_failed(entry, e)
                # Retry on a later tick
                break
            applied += 1
            log_device_write(logger, self.device.id, dp.id, entry.value)
            await self._acknowledge(dp, entry.value, entry.acks)
        return applied

    async def _queued_write_failed(self, entry: WriteQueueEntry, error: Exception) -> None:
        log_device_write(logger, self.device.id, entry.dp_id, entry.value, success=False)
        if isinstance(error, (UnsupportedOperation, CodecError)):
            entry.attempts += 1
            dropped = self.queue.discard(entry)
            for item in dropped:
                for path in item.acks:
                    await self._reject(path, error)
        else:
            dropped = self.queue.fail(entry)
            if is_transport_error(error):
                await self._handle_error(error)
            else:
                self._errors.warning(
                    f"{self.device.id}:{entry.dp_id}",
                    f"[{self.device.id}] Write {entry.dp_id} failed (attempt {entry.attempts}): {error}",
                )

        for item in dropped:
            for index in item.rules:
                self.pre_writes.reset(index)
        if dropped and not isinstance(error, (UnsupportedOperation, CodecError)):
            await self._handle_error(WriteError(
                f"Write {entry.dp_id}={entry.value} dropped after {entry.attempts} attempts: {error}",
                device_id=self.device.id,
                datapoint_id=entry.dp_id,
                attempts=entry.attempts,
                cause=error,
            ))

    async def _acknowledge(self, dp: DatapointDef, device_value: Any, acks: dict[str, Any]) -> None:
        for path, user_value in acks.items():
            await self.store.set_state(path, user_value, ack=True)
        await self._echo(dp, device_value, skip=set(acks))

    async def _echo(self, dp: DatapointDef, device_value: Any, skip: set[str] = frozenset()) -> None:
        """Publish a just-written value to the data point and its aliases."""
        path = device_path(self.device.id, dp.id)
        if path not in skip:
            await self.store.set_state(path, device_value, ack=True)
        await self._publish_aliases(self.aliases.echo(dp.id, device_value), skip=skip)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    async def watchdog_tick(self) -> None:
        """Feed the watchdog targets and evaluate the fail-safe."""
        watchdog = self.watchdog
        if watchdog is None:
            return
        if not self.state.connected or self._busy.locked():
            logger.debug(f"[{self.device.id}] Watchdog tick skipped")
            return

        now = self._clock()
        try:
            value = watchdog.advance()
            targets = watchdog.active_targets(now)
            if self.mode is SchedulerMode.COMMAND_CADENCE:
                for dp in targets:
                    self.queue.enqueue(dp.id, value)
            elif targets:
                async with self._busy:
                    for dp in targets:
                        await self.driver.write_datapoint(dp, value)
                for dp in targets:
                    await self._echo(dp, value)

            if watchdog.fail_safe_due(now):
                await self._fire_fail_safe(watchdog, now)
        except Exception as e:
            logger.debug(f"[{self.device.id}] Watchdog tick failed: {e}")

    async def _fire_fail_safe(self, watchdog: Watchdog, now: float) -> None:
        dp = watchdog.fail_safe_target
        value = watchdog.fail_safe.disable_value
        logger.warning(
            f"[{self.device.id}] No control writes for {watchdog.fail_safe.silence_ms} ms, "
            f"writing fail-safe {dp.id}={value}"
        )
        if self.mode is SchedulerMode.COMMAND_CADENCE:
            self.queue.enqueue(dp.id, value)
        else:
            async with self._busy:
                await self.driver.write_datapoint(dp, value)
            await self._echo(dp, value)
        watchdog.mark_fail_safe_fired(now)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "device_id": self.device.id,
            "device_name": self.device.name,
            "template_id": self.template.id,
            "protocol": self.device.protocol.value,
            "running": self._running,
            "mode": self.mode.value,
            "connected": self.state.connected,
            "last_error": self.state.last_error,
            "pending_writes": len(self.queue) if self.queue is not None else 0,
            "watchdog_counter": self.state.watchdog_counter if self.watchdog else None,
            "loops": self._loops.get_stats(),
        }
