"""Tests for alias derivation and evaluation."""

from fieldbridge.common.config import Access, load_template
from fieldbridge.services.device.alias_rules import derive_aliases, register_alias_rule, _RULES
from fieldbridge.services.device.aliases import AliasContext, AliasEngine, AliasKind

from conftest import make_template

CONNECTED = AliasContext(connected=True)


def by_path(aliases):
    return {a.path: a for a in aliases}


def battery_template():
    return load_template({
        "id": "bat",
        "category": "BATTERY",
        "datapoints": [
            {"id": "sOC", "unit": "%"},
            {"id": "bATTERY_POWER", "unit": "W"},
            {"id": "bATTERY_VOLTAGE"},
            {"id": "sET_ACTIVE_POWER", "rw": "rw"},
            {"id": "eSS_DISABLE_CHARGE_FLAG", "rw": "rw"},
        ],
    })


def meter_template():
    return load_template({
        "id": "meter",
        "category": "METER",
        "datapoints": [
            {"id": "aCTIVE_CONSUMPTION_POWER"},
            {"id": "aCTIVE_PRODUCTION_POWER"},
            {"id": "aCTIVE_CONSUMPTION_ENERGY_L1"},
            {"id": "aCTIVE_CONSUMPTION_ENERGY_L2"},
            {"id": "fREQUENCY"},
        ],
    })


def test_communication_aliases_always_present():
    aliases = by_path(derive_aliases(load_template({"id": "empty"})))
    assert set(aliases) == {"comm.connected", "comm.lastError", "alarm.offline"}
    assert aliases["comm.connected"].kind is AliasKind.COMPUTED


def test_pv_inverter_aliases():
    aliases = by_path(derive_aliases(make_template()))

    assert aliases["r.power"].dp_id == "W"
    assert aliases["r.energyTotal"].dp_id == "WH"
    assert aliases["r.gridConnectionState"].dp_id == "PVConn"
    limit = aliases["ctrl.powerLimitPct"]
    assert limit.writable
    assert limit.unit == "%"
    assert limit.target_dp_id == "WMaxLimPct"
    assert aliases["ctrl.powerLimitEnable"].rw is Access.RW
    assert "ctrl.run" not in aliases


def test_derivation_is_repeatable():
    """Deriving twice from the same template gives the same alias set."""
    for template in (make_template(), battery_template(), meter_template()):
        first = [(a.path, a.kind) for a in derive_aliases(template)]
        second = [(a.path, a.kind) for a in derive_aliases(template)]
        assert first == second
        assert len({path for path, _ in first}) == len(first)


def test_device_category_overrides_template():
    aliases = by_path(derive_aliases(make_template(), category="meter"))
    assert "ctrl.powerLimitPct" not in aliases
    assert "r.power" not in aliases


def test_engine_update_and_context():
    engine = AliasEngine(derive_aliases(make_template()))
    updates = dict(engine.update({"W": 1500, "PVConn": 1}, CONNECTED))

    assert updates["r.power"] == 1500
    assert updates["r.gridConnected"] is True
    assert updates["comm.connected"] is True
    assert updates["alarm.offline"] is False
    assert updates["alarm.fault"] is False
    # Not part of this result
    assert "r.energyTotal" not in updates


def test_engine_error_context():
    engine = AliasEngine(derive_aliases(make_template()))
    updates = dict(engine.update({}, AliasContext(connected=False, last_error="refused")))
    assert updates["comm.connected"] is False
    assert updates["comm.lastError"] == "refused"
    assert updates["alarm.offline"] is True
    assert "r.power" not in updates


def test_computed_alias_uses_cached_values():
    """A fast poll with only some ids still yields the combined value."""
    engine = AliasEngine(derive_aliases(meter_template()))
    engine.update({"aCTIVE_CONSUMPTION_POWER": 800, "aCTIVE_PRODUCTION_POWER": 200}, CONNECTED)
    updates = dict(engine.update({"aCTIVE_CONSUMPTION_POWER": 900}, CONNECTED))
    assert updates["r.powerImport"] == 900
    assert updates["r.power"] == 700


def test_meter_phase_energy_sum():
    engine = AliasEngine(derive_aliases(meter_template()))
    updates = dict(engine.update(
        {"aCTIVE_CONSUMPTION_ENERGY_L1": 10, "aCTIVE_CONSUMPTION_ENERGY_L2": 5}, CONNECTED,
    ))
    assert updates["r.energyImport"] == 15
    assert "r.energyExport" not in updates


def test_clear_cache():
    engine = AliasEngine(derive_aliases(meter_template()))
    engine.update({"aCTIVE_CONSUMPTION_POWER": 800}, CONNECTED)
    engine.clear_cache()
    assert engine.latest == {}
    assert "r.power" not in dict(engine.update({}, CONNECTED))


def test_battery_aliases():
    aliases = by_path(derive_aliases(battery_template()))

    assert aliases["r.soc"].dp_id == "sOC"
    assert aliases["r.voltage"].dp_id == "bATTERY_VOLTAGE"
    assert aliases["ctrl.powerSetpointW"].writable
    # Battery templates do not get generic role guessing
    assert aliases["r.power"].kind is AliasKind.COMPUTED


def test_battery_charge_setpoint_transforms():
    """Charge and discharge setpoints share one signed register."""
    aliases = by_path(derive_aliases(battery_template()))
    charge = aliases["ctrl.chargePowerW"]
    discharge = aliases["ctrl.dischargePowerW"]

    assert charge.to_device(3000) == -3000
    assert charge.from_device(-3000) == 3000
    assert charge.from_device(1000) == 0
    assert discharge.to_device(-2000) == 2000
    assert discharge.from_device(2000) == 2000
    assert discharge.from_device(-500) == 0


def test_battery_charge_enable_inverts_flag():
    alias = by_path(derive_aliases(battery_template()))["ctrl.chargeEnable"]
    assert alias.to_device(True) == 0
    assert alias.from_device(1) is False


def test_battery_power_split():
    engine = AliasEngine(derive_aliases(battery_template()))
    updates = dict(engine.update({"bATTERY_POWER": -1200}, CONNECTED))
    assert updates["r.power"] == -1200
    assert updates["r.powerCharge"] == 1200
    assert updates["r.powerDischarge"] == 0


def test_echo_updates_datapoint_aliases():
    engine = AliasEngine(derive_aliases(battery_template()))
    updates = dict(engine.echo("sET_ACTIVE_POWER", -2500))
    assert updates == {
        "ctrl.powerSetpointW": -2500,
        "ctrl.chargePowerW": 2500,
        "ctrl.dischargePowerW": 0,
    }
    assert engine.latest["sET_ACTIVE_POWER"] == -2500


def test_failing_rule_does_not_block_others():
    @register_alias_rule("TEST_BROKEN")
    def broken(b):
        raise RuntimeError("boom")

    try:
        aliases = by_path(derive_aliases(make_template(), category="TEST_BROKEN"))
        assert "comm.connected" in aliases
    finally:
        _RULES.pop()


def test_failing_alias_evaluation_is_skipped():
    @register_alias_rule("TEST_FAILING")
    def failing(b):
        from fieldbridge.services.device.aliases import computed_alias
        b.add(computed_alias("r.bad", "Bad", lambda values, ctx: 1 / 0, role="value"))

    try:
        engine = AliasEngine(derive_aliases(make_template(), category="TEST_FAILING"))
        updates = dict(engine.update({"W": 1}, CONNECTED))
        assert "r.bad" not in updates
        assert updates["comm.connected"] is True
    finally:
        _RULES.pop()
