"""
Driver Hints

Typed, validated template hints: poll cadence, write throttling, command
cadence, watchdog policy, pre-write rules and Modbus discovery settings.

Hints are validated once when the template is loaded. Unknown keys and
malformed values raise ConfigError instead of being ignored, so a typo
in a template never silently disables a safety watchdog.

Example (YAML):
    driver_hints:
      poll:
        fast_interval_ms: 1000
        slow_interval_ms: 30000
        fast_ids: [W, PhVphA]
      write_throttle:
        interval_ms: 1000
      watchdog:
        targets: [WatchdogCounter]
        period_ms: 10000
      pre_writes:
        - trigger_id: SetActivePower
          cooldown_ms: 5000
          writes:
            - {dp_id: ControlMode, value: 2}
"""

from dataclasses import dataclass, field
from typing import Any

from .exceptions import ConfigError

# Watchdog limits (devices reject faster keep-alives)
WATCHDOG_MIN_PERIOD_MS = 10_000
WATCHDOG_DEFAULT_PERIOD_MS = 60_000
WATCHDOG_DEFAULT_START_DELAY_MS = 1_000
WATCHDOG_DEFAULT_SEQUENCE_MIN = 1
WATCHDOG_DEFAULT_SEQUENCE_MAX = 1_000

DEFAULT_MAX_READ_REGISTERS = 120
DEFAULT_MAX_READ_BITS = 2000
DEFAULT_WRITE_MAX_ATTEMPTS = 10


@dataclass(frozen=True)
class PollHints:
    fast_interval_ms: int | None = None
    slow_interval_ms: int | None = None
    fast_ids: tuple[str, ...] = ()

    @property
    def slow_tier_enabled(self) -> bool:
        return bool(self.slow_interval_ms) and bool(self.fast_ids)


@dataclass(frozen=True)
class WriteThrottleHints:
    interval_ms: int = 0
    max_per_tick: int = 1
    max_attempts: int = DEFAULT_WRITE_MAX_ATTEMPTS

    @property
    def enabled(self) -> bool:
        return self.interval_ms > 0


@dataclass(frozen=True)
class WatchdogTarget:
    dp_id: str
    # Empty means "use the watchdog-wide activation ids"
    activation_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class FailSafeHints:
    trigger_ids: tuple[str, ...]
    silence_ms: int
    target_id: str
    disable_value: Any


@dataclass(frozen=True)
class WatchdogHints:
    enabled: bool = True
    targets: tuple[WatchdogTarget, ...] = ()
    period_ms: int = WATCHDOG_DEFAULT_PERIOD_MS
    start_delay_ms: int = WATCHDOG_DEFAULT_START_DELAY_MS
    sequence_min: int = WATCHDOG_DEFAULT_SEQUENCE_MIN
    sequence_max: int = WATCHDOG_DEFAULT_SEQUENCE_MAX
    activation_ids: tuple[str, ...] = ()
    activation_window_ms: int | None = None
    fail_safe: FailSafeHints | None = None


@dataclass(frozen=True)
class PreWriteStep:
    dp_id: str
    value: Any


@dataclass(frozen=True)
class PreWriteRule:
    trigger_id: str
    writes: tuple[PreWriteStep, ...]
    cooldown_ms: int = 0


@dataclass(frozen=True)
class ModbusHints:
    auto_sunspec: bool = False
    sunspec_template_base: int = 40000
    sunspec_scan_bases: tuple[int, ...] = ()
    sunspec_scan_unit_ids: tuple[int, ...] = ()
    sunspec_scan_function_codes: tuple[int, ...] = ()
    max_read_registers: int = DEFAULT_MAX_READ_REGISTERS
    max_read_bits: int = DEFAULT_MAX_READ_BITS


@dataclass(frozen=True)
class DriverHints:
    poll: PollHints = field(default_factory=PollHints)
    write_throttle: WriteThrottleHints = field(default_factory=WriteThrottleHints)
    command_interval_ms: int | None = None
    watchdog: WatchdogHints | None = None
    pre_writes: tuple[PreWriteRule, ...] = ()
    modbus: ModbusHints = field(default_factory=ModbusHints)

    @property
    def command_cadence(self) -> bool:
        return bool(self.command_interval_ms)


def _where(section: str, key: str | None = None) -> str:
    path = f"driver_hints.{section}" if section else "driver_hints"
    return f"{path}.{key}" if key else path


def _check_keys(section: str, data: Any, allowed: set[str]) -> dict:
    if not isinstance(data, dict):
        raise ConfigError(f"{_where(section)} must be a mapping")
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"{_where(section)}: unknown key(s) {', '.join(unknown)}")
    return data


def _int(section: str, key: str, value: Any, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{_where(section, key)} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{_where(section, key)} must be >= {minimum}, got {value}")
    return value


def _optional_int(section: str, key: str, value: Any, minimum: int = 0) -> int | None:
    if value is None:
        return None
    return _int(section, key, value, minimum)


def _id_list(section: str, key: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"driver_hints.{section}.{key} must be a list of ids")
    out = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"driver_hints.{section}.{key} contains an invalid id: {item!r}")
        out.append(item.strip())
    return tuple(out)


def _int_list(section: str, key: str, value: Any) -> tuple[int, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"driver_hints.{section}.{key} must be a list of integers")
    return tuple(_int(section, key, v) for v in value)


def parse_poll_hints(data: Any) -> PollHints:
    data = _check_keys("poll", data, {"fast_interval_ms", "slow_interval_ms", "fast_ids"})
    return PollHints(
        fast_interval_ms=_optional_int("poll", "fast_interval_ms", data.get("fast_interval_ms"), 1),
        slow_interval_ms=_optional_int("poll", "slow_interval_ms", data.get("slow_interval_ms"), 1),
        fast_ids=_id_list("poll", "fast_ids", data.get("fast_ids")),
    )


def parse_write_throttle_hints(data: Any) -> WriteThrottleHints:
    data = _check_keys("write_throttle", data, {"interval_ms", "max_per_tick", "max_attempts"})
    return WriteThrottleHints(
        interval_ms=_int("write_throttle", "interval_ms", data.get("interval_ms", 0)),
        max_per_tick=_int("write_throttle", "max_per_tick", data.get("max_per_tick", 1), 1),
        max_attempts=_int(
            "write_throttle", "max_attempts",
            data.get("max_attempts", DEFAULT_WRITE_MAX_ATTEMPTS), 1,
        ),
    )


def _parse_watchdog_target(item: Any) -> WatchdogTarget:
    if isinstance(item, str) and item.strip():
        return WatchdogTarget(dp_id=item.strip())
    if isinstance(item, dict):
        data = _check_keys("watchdog.targets[]", item, {"dp_id", "activation_ids"})
        dp_id = data.get("dp_id")
        if not isinstance(dp_id, str) or not dp_id.strip():
            raise ConfigError("driver_hints.watchdog.targets[] needs a dp_id")
        return WatchdogTarget(
            dp_id=dp_id.strip(),
            activation_ids=_id_list("watchdog.targets[]", "activation_ids", data.get("activation_ids")),
        )
    raise ConfigError(f"driver_hints.watchdog.targets contains an invalid entry: {item!r}")


def parse_fail_safe_hints(data: Any) -> FailSafeHints:
    data = _check_keys(
        "watchdog.fail_safe", data,
        {"trigger_ids", "silence_ms", "target_id", "disable_value"},
    )
    trigger_ids = _id_list("watchdog.fail_safe", "trigger_ids", data.get("trigger_ids"))
    if not trigger_ids:
        raise ConfigError("driver_hints.watchdog.fail_safe needs at least one trigger id")
    target_id = data.get("target_id")
    if not isinstance(target_id, str) or not target_id.strip():
        raise ConfigError("driver_hints.watchdog.fail_safe needs a target_id")
    if "disable_value" not in data:
        raise ConfigError("driver_hints.watchdog.fail_safe needs a disable_value")
    return FailSafeHints(
        trigger_ids=trigger_ids,
        silence_ms=_int("watchdog.fail_safe", "silence_ms", data.get("silence_ms"), 1),
        target_id=target_id.strip(),
        disable_value=data["disable_value"],
    )


def parse_watchdog_hints(data: Any) -> WatchdogHints | None:
    """Parse watchdog hints; returns None when disabled."""
    data = _check_keys("watchdog", data, {
        "enabled", "targets", "period_ms", "start_delay_ms", "sequence_min",
        "sequence_max", "activation_ids", "activation_window_ms", "fail_safe",
    })
    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError("driver_hints.watchdog.enabled must be true or false")
    if not enabled:
        return None

    raw_targets = data.get("targets") or []
    if isinstance(raw_targets, (str, dict)):
        raw_targets = [raw_targets]
    targets = tuple(_parse_watchdog_target(t) for t in raw_targets)

    fail_safe = None
    if data.get("fail_safe") is not None:
        fail_safe = parse_fail_safe_hints(data["fail_safe"])

    if not targets and fail_safe is None:
        raise ConfigError("driver_hints.watchdog needs targets or a fail_safe rule")

    period_ms = _int("watchdog", "period_ms", data.get("period_ms", WATCHDOG_DEFAULT_PERIOD_MS), 1)
    sequence_min = _int(
        "watchdog", "sequence_min",
        data.get("sequence_min", WATCHDOG_DEFAULT_SEQUENCE_MIN), -(2 ** 31),
    )
    sequence_max = _int(
        "watchdog", "sequence_max",
        data.get("sequence_max", WATCHDOG_DEFAULT_SEQUENCE_MAX), -(2 ** 31),
    )
    if sequence_max < sequence_min:
        sequence_max = WATCHDOG_DEFAULT_SEQUENCE_MAX

    return WatchdogHints(
        enabled=True,
        targets=targets,
        period_ms=max(WATCHDOG_MIN_PERIOD_MS, period_ms),
        start_delay_ms=_int(
            "watchdog", "start_delay_ms",
            data.get("start_delay_ms", WATCHDOG_DEFAULT_START_DELAY_MS),
        ),
        sequence_min=sequence_min,
        sequence_max=sequence_max,
        activation_ids=_id_list("watchdog", "activation_ids", data.get("activation_ids")),
        activation_window_ms=_optional_int(
            "watchdog", "activation_window_ms", data.get("activation_window_ms"), 1,
        ),
        fail_safe=fail_safe,
    )


def parse_pre_write_rule(data: Any) -> PreWriteRule:
    data = _check_keys("pre_writes[]", data, {"trigger_id", "cooldown_ms", "writes"})
    trigger_id = data.get("trigger_id")
    if not isinstance(trigger_id, str) or not trigger_id.strip():
        raise ConfigError("driver_hints.pre_writes[] needs a trigger_id")

    steps = []
    for step in data.get("writes") or []:
        step = _check_keys("pre_writes[].writes[]", step, {"dp_id", "value"})
        dp_id = step.get("dp_id")
        if not isinstance(dp_id, str) or not dp_id.strip():
            raise ConfigError(f"driver_hints.pre_writes[{trigger_id}] has a step without dp_id")
        if "value" not in step or step["value"] is None:
            raise ConfigError(f"driver_hints.pre_writes[{trigger_id}] step {dp_id} has no value")
        steps.append(PreWriteStep(dp_id=dp_id.strip(), value=step["value"]))
    if not steps:
        raise ConfigError(f"driver_hints.pre_writes[{trigger_id}] has no writes")

    return PreWriteRule(
        trigger_id=trigger_id.strip(),
        writes=tuple(steps),
        cooldown_ms=_int("pre_writes[]", "cooldown_ms", data.get("cooldown_ms", 0)),
    )


def check_pre_write_cycles(rules: tuple[PreWriteRule, ...]) -> None:
    """Reject rule sets whose pre-writes chain back to their own trigger.

    Triggers match case-insensitively, so the graph is built on lowercased
    ids. A step that targets its own trigger is skipped at runtime and is
    not an edge here.
    """
    edges: dict[str, set[str]] = {}
    for rule in rules:
        trigger = rule.trigger_id.lower()
        edges.setdefault(trigger, set()).update(
            step.dp_id.lower() for step in rule.writes if step.dp_id.lower() != trigger
        )

    path: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> None:
        if node in done:
            return
        if node in path:
            chain = path[path.index(node):] + [node]
            raise ConfigError(f"driver_hints.pre_writes form a cycle: {' -> '.join(chain)}")
        path.append(node)
        for target in sorted(edges.get(node, ())):
            visit(target)
        path.pop()
        done.add(node)

    for trigger in sorted(edges):
        visit(trigger)


def parse_modbus_hints(data: Any) -> ModbusHints:
    data = _check_keys("modbus", data, {
        "auto_sunspec", "sunspec_template_base", "sunspec_scan_bases",
        "sunspec_scan_unit_ids", "sunspec_scan_function_codes",
        "max_read_registers", "max_read_bits",
    })
    auto_sunspec = data.get("auto_sunspec", False)
    if not isinstance(auto_sunspec, bool):
        raise ConfigError("driver_hints.modbus.auto_sunspec must be true or false")
    fcs = _int_list("modbus", "sunspec_scan_function_codes", data.get("sunspec_scan_function_codes"))
    if any(fc not in (3, 4) for fc in fcs):
        raise ConfigError("driver_hints.modbus.sunspec_scan_function_codes only accepts 3 and 4")
    return ModbusHints(
        auto_sunspec=auto_sunspec,
        sunspec_template_base=_int(
            "modbus", "sunspec_template_base", data.get("sunspec_template_base", 40000),
        ),
        sunspec_scan_bases=_int_list("modbus", "sunspec_scan_bases", data.get("sunspec_scan_bases")),
        sunspec_scan_unit_ids=_int_list("modbus", "sunspec_scan_unit_ids", data.get("sunspec_scan_unit_ids")),
        sunspec_scan_function_codes=fcs,
        max_read_registers=_int(
            "modbus", "max_read_registers",
            data.get("max_read_registers", DEFAULT_MAX_READ_REGISTERS), 1,
        ),
        max_read_bits=_int(
            "modbus", "max_read_bits", data.get("max_read_bits", DEFAULT_MAX_READ_BITS), 1,
        ),
    )


def parse_driver_hints(data: Any) -> DriverHints:
    """Parse and validate a template's driver_hints block.

    Raises:
        ConfigError: on unknown keys or malformed values
    """
    if data is None:
        return DriverHints()
    data = _check_keys("", data, {
        "poll", "write_throttle", "command_interval_ms", "watchdog", "pre_writes", "modbus",
    })

    pre_writes = data.get("pre_writes") or []
    if not isinstance(pre_writes, list):
        raise ConfigError("driver_hints.pre_writes must be a list")
    rules = tuple(parse_pre_write_rule(rule) for rule in pre_writes)
    check_pre_write_cycles(rules)

    return DriverHints(
        poll=parse_poll_hints(data["poll"]) if data.get("poll") is not None else PollHints(),
        write_throttle=(
            parse_write_throttle_hints(data["write_throttle"])
            if data.get("write_throttle") is not None else WriteThrottleHints()
        ),
        command_interval_ms=_optional_int(
            "", "command_interval_ms", data.get("command_interval_ms"), 1,
        ),
        watchdog=parse_watchdog_hints(data["watchdog"]) if data.get("watchdog") is not None else None,
        pre_writes=rules,
        modbus=parse_modbus_hints(data["modbus"]) if data.get("modbus") is not None else ModbusHints(),
    )
