"""Tests for driver hint parsing."""

import pytest

from fieldbridge.common.exceptions import ConfigError
from fieldbridge.common.hints import (
    DEFAULT_WRITE_MAX_ATTEMPTS,
    WATCHDOG_MIN_PERIOD_MS,
    parse_driver_hints,
)


def test_empty_hints():
    hints = parse_driver_hints(None)
    assert not hints.poll.slow_tier_enabled
    assert not hints.write_throttle.enabled
    assert not hints.command_cadence
    assert hints.watchdog is None
    assert hints.pre_writes == ()


def test_full_hints():
    hints = parse_driver_hints({
        "poll": {"fast_interval_ms": 1000, "slow_interval_ms": 30000, "fast_ids": ["W", "Conn"]},
        "write_throttle": {"interval_ms": 500, "max_per_tick": 2},
        "command_interval_ms": 250,
        "watchdog": {
            "targets": ["Heartbeat", {"dp_id": "Keepalive", "activation_ids": ["SetPower"]}],
            "period_ms": 15000,
            "sequence_min": 1,
            "sequence_max": 100,
        },
        "pre_writes": [{"trigger_id": "SetPower", "cooldown_ms": 5000, "writes": [{"dp_id": "Mode", "value": 2}]}],
    })
    assert hints.poll.slow_tier_enabled
    assert hints.poll.fast_ids == ("W", "Conn")
    assert hints.write_throttle.enabled
    assert hints.write_throttle.max_per_tick == 2
    assert hints.write_throttle.max_attempts == DEFAULT_WRITE_MAX_ATTEMPTS
    assert hints.command_cadence
    assert [t.dp_id for t in hints.watchdog.targets] == ["Heartbeat", "Keepalive"]
    assert hints.watchdog.targets[1].activation_ids == ("SetPower",)
    assert hints.pre_writes[0].writes[0].value == 2


def test_slow_tier_needs_fast_ids():
    hints = parse_driver_hints({"poll": {"slow_interval_ms": 30000}})
    assert not hints.poll.slow_tier_enabled


def test_unknown_key_rejected():
    """A typo must not silently disable a safety feature."""
    with pytest.raises(ConfigError):
        parse_driver_hints({"watchdog": {"target": ["Heartbeat"]}})
    with pytest.raises(ConfigError):
        parse_driver_hints({"polling": {}})


def test_watchdog_period_floor():
    hints = parse_driver_hints({"watchdog": {"targets": ["Heartbeat"], "period_ms": 1000}})
    assert hints.watchdog.period_ms == WATCHDOG_MIN_PERIOD_MS


def test_watchdog_disabled():
    assert parse_driver_hints({"watchdog": {"enabled": False}}).watchdog is None


def test_watchdog_needs_work():
    with pytest.raises(ConfigError):
        parse_driver_hints({"watchdog": {"period_ms": 20000}})


def test_fail_safe_requires_disable_value():
    with pytest.raises(ConfigError):
        parse_driver_hints({"watchdog": {"fail_safe": {
            "trigger_ids": ["SetPower"], "silence_ms": 1000, "target_id": "Enable",
        }}})


def test_pre_write_step_needs_value():
    with pytest.raises(ConfigError):
        parse_driver_hints({"pre_writes": [{"trigger_id": "SetPower", "writes": [{"dp_id": "Mode"}]}]})


def test_circular_pre_writes_rejected():
    rules = [
        {"trigger_id": "WMaxLimPct", "writes": [{"dp_id": "WMaxLim_Ena", "value": 1}]},
        {"trigger_id": "wmaxlim_ena", "writes": [{"dp_id": "WMaxLimPct", "value": 100}]},
    ]
    with pytest.raises(ConfigError, match="cycle"):
        parse_driver_hints({"pre_writes": rules})


def test_pre_write_chains_without_cycle_allowed():
    rules = [
        {"trigger_id": "SetPower", "writes": [{"dp_id": "Mode", "value": 2}, {"dp_id": "SetPower", "value": 0}]},
        {"trigger_id": "Mode", "writes": [{"dp_id": "Unlock", "value": 1}]},
    ]
    hints = parse_driver_hints({"pre_writes": rules})
    assert len(hints.pre_writes) == 2


def test_negative_interval_rejected():
    with pytest.raises(ConfigError):
        parse_driver_hints({"write_throttle": {"interval_ms": -5}})


def test_modbus_scan_function_codes():
    with pytest.raises(ConfigError):
        parse_driver_hints({"modbus": {"sunspec_scan_function_codes": [3, 6]}})
