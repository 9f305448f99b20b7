"""
Alias Rules

Category-keyed rules that derive alias definitions from a template's data
point ids, roles and units. A rule registered without categories applies
to every device. Rules run in registration order and the first alias
registered for a path wins.

Adding support for a new device family means registering another rule:

    @register_alias_rule("HEAT_PUMP")
    def heat_pump_aliases(b: AliasBuilder) -> None:
        dp = b.by_id("FlowTemp")
        if dp:
            b.add(dp_alias("r.flowTemperature", "Flow temperature", dp, "value.temperature"))
"""

import dataclasses
import math
import re
from typing import Any, Callable, Optional

from ...common.config import Access, DatapointDef, Template, ValueType
from ...common.logging_setup import get_service_logger
from .aliases import (
    AliasBuilder,
    AliasContext,
    AliasDef,
    as_bool,
    as_number,
    computed_alias,
    dp_alias,
)

logger = get_service_logger("device.aliases")

AliasRule = Callable[[AliasBuilder], None]

CHARGER_CATEGORIES = frozenset({"EVCS", "EVSE", "CHARGER", "DC_CHARGER"})
BATTERY_CATEGORIES = frozenset({"BATTERY", "ESS", "BATTERY_INVERTER"})
# Categories with dedicated mappings; generic role guessing is unreliable there
NO_GENERIC_CATEGORIES = CHARGER_CATEGORIES | BATTERY_CATEGORIES | {"METER"}

_RULES: list[tuple[frozenset[str], AliasRule]] = []


def register_alias_rule(*categories: str) -> Callable[[AliasRule], AliasRule]:
    """Register an alias rule for the given categories (none = all)."""
    def decorator(rule: AliasRule) -> AliasRule:
        _RULES.append((frozenset(c.upper() for c in categories), rule))
        return rule
    return decorator


def derive_aliases(template: Template, category: str = "") -> list[AliasDef]:
    """Build the alias list for a template.

    A failing rule is logged and skipped; alias derivation never prevents
    a device from starting.
    """
    category = (category or template.category or "").upper()
    builder = AliasBuilder(template, category)
    for categories, rule in _RULES:
        if categories and category not in categories:
            continue
        try:
            rule(builder)
        except Exception as e:
            logger.warning(f"Template {template.id}: alias rule {rule.__name__} failed: {e}")
    return builder.aliases


# --- predicates -----------------------------------------------------------

def _id_re(pattern: str) -> Callable[[DatapointDef], bool]:
    regex = re.compile(pattern, re.IGNORECASE)
    return lambda dp: bool(regex.search(dp.id))


def _writable(dp: DatapointDef | None) -> bool:
    return dp is not None and dp.writable


def _value(values: dict[str, Any], dp: DatapointDef | None) -> Optional[float]:
    if dp is None:
        return None
    return as_number(values.get(dp.id))


def _sum_present(values: dict[str, Any], dps: list[DatapointDef | None]) -> Optional[float]:
    """Sum of the numeric values present, or None if none is."""
    present = [v for v in (_value(values, dp) for dp in dps) if v is not None]
    if not present:
        return None
    return sum(present)


def _to_finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _charge_to_device(value: Any) -> Any:
    n = _to_finite(value)
    return value if n is None else -abs(n)


def _charge_from_device(value: Any) -> Optional[float]:
    n = _to_finite(value)
    if n is None:
        return None
    return abs(n) if n < 0 else 0


def _discharge_to_device(value: Any) -> Any:
    n = _to_finite(value)
    return value if n is None else abs(n)


def _discharge_from_device(value: Any) -> Optional[float]:
    n = _to_finite(value)
    if n is None:
        return None
    return n if n > 0 else 0


def _any_non_zero(values: dict[str, Any], dps: list[DatapointDef]) -> bool:
    for dp in dps:
        value = values.get(dp.id)
        if isinstance(value, bool):
            if value:
                return True
        elif as_number(value) is not None and value != 0:
            return True
    return False


# --- communication ----------------------------------------------------------

@register_alias_rule()
def communication_aliases(b: AliasBuilder) -> None:
    b.add(computed_alias(
        "comm.connected", "Device communication connected",
        lambda _values, ctx: bool(ctx.connected),
        role="indicator.connected", value_type=ValueType.BOOLEAN,
    ))
    b.add(computed_alias(
        "comm.lastError", "Device communication last error",
        lambda _values, ctx: ctx.last_error or "",
        role="text", value_type=ValueType.STRING,
    ))
    b.add(computed_alias(
        "alarm.offline", "Device offline",
        lambda _values, ctx: not ctx.connected,
        role="indicator.alarm", value_type=ValueType.BOOLEAN,
    ))


@register_alias_rule()
def generic_role_aliases(b: AliasBuilder) -> None:
    if b.category in NO_GENERIC_CATEGORIES:
        return

    power = b.by_id("W") or b.first(lambda dp: dp.role == "value.power" and dp.readable)
    if power:
        b.add(dp_alias("r.power", "Active power", power, "value.power", unit="W"))

    energy = b.by_id("WH", "TotWhOut") or b.first(
        lambda dp: dp.role == "value.energy" and dp.readable
    )
    if energy:
        b.add(dp_alias("r.energyTotal", "Total energy", energy, "value.energy", unit="Wh"))

    status = b.by_id("Health", "St") or b.first(
        lambda dp: dp.role == "indicator.status" and dp.readable
    )
    if status:
        b.add(dp_alias("r.statusCode", "Status code", status, "indicator.status"))


# --- PV inverters -----------------------------------------------------------

FST_STOP_START = 1467
FST_STOP_STOP = 381
FST_STOP_FULL_STOP = 1749


def _grid_connected(values: dict[str, Any], _ctx: AliasContext) -> Optional[bool]:
    if as_number(values.get("PvGriConn")) is not None:
        return values["PvGriConn"] == 1780
    if as_number(values.get("GriSwStt")) is not None:
        return values["GriSwStt"] == 51
    if as_number(values.get("PVConn")) is not None:
        return values["PVConn"] != 0
    return None


def _inverter_fault(values: dict[str, Any], _ctx: AliasContext) -> bool:
    if as_number(values.get("Health")) is not None and values["Health"] == 35:
        return True
    if as_number(values.get("St")) is not None and values["St"] == 7:
        return True
    if as_number(values.get("Evt1")) is not None and values["Evt1"] != 0:
        return True
    return False


def _inverter_warning(values: dict[str, Any], _ctx: AliasContext) -> bool:
    return as_number(values.get("Health")) is not None and values["Health"] == 455


@register_alias_rule("PV_INVERTER")
def pv_inverter_aliases(b: AliasBuilder) -> None:
    grid_state = b.by_id("PVConn", "PvGriConn", "GriSwStt")
    if grid_state:
        b.add(dp_alias("r.gridConnectionState", "Grid connection state (raw)", grid_state, "indicator"))

    b.add(computed_alias(
        "r.gridConnected", "Grid connected", _grid_connected,
        role="indicator.connected", value_type=ValueType.BOOLEAN,
    ))

    limit_pct = b.by_id("WMaxLimPct", "WLimPct") or b.first(
        lambda dp: dp.unit.strip() == "%" and dp.writable and re.search("lim", dp.id, re.I)
    )
    if limit_pct:
        # Exposed read+write even when the register is write-only
        alias = dp_alias("ctrl.powerLimitPct", "Active power limit (%)", limit_pct, "level", writable=True)
        b.add(dataclasses.replace(alias, unit="%"))

    limit_enable = b.by_id("WMaxLim_Ena") or b.first(
        lambda dp: dp.type is ValueType.BOOLEAN
        and dp.rw is Access.RW
        and re.search("lim", dp.id, re.I)
        and re.search("ena", dp.id, re.I)
    )
    if limit_enable:
        b.add(dp_alias(
            "ctrl.powerLimitEnable", "Active power limit enable", limit_enable, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
        ))

    # Run/stop preference: boolean Conn, then FstStop, then OpMod
    conn, fst_stop, op_mod = b.by_id("Conn"), b.by_id("FstStop"), b.by_id("OpMod")
    if _writable(conn):
        b.add(dp_alias(
            "ctrl.run", "Run (connect/start)", conn, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
            to_device=bool, from_device=bool,
        ))
    elif _writable(fst_stop):
        b.add(dp_alias(
            "ctrl.run", "Run (start/stop)", fst_stop, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
            to_device=lambda v: FST_STOP_START if v else FST_STOP_STOP,
            from_device=lambda v: (
                True if v == FST_STOP_START
                else False if v in (FST_STOP_STOP, FST_STOP_FULL_STOP)
                else None
            ),
        ))
    elif _writable(op_mod):
        b.add(dp_alias(
            "ctrl.run", "Run (start/stop)", op_mod, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
            to_device=lambda v: FST_STOP_START if v else FST_STOP_STOP,
            from_device=lambda v: (
                True if v == FST_STOP_START else False if v == FST_STOP_STOP else None
            ),
        ))

    b.add(computed_alias(
        "alarm.fault", "Fault active", _inverter_fault,
        role="indicator.alarm", value_type=ValueType.BOOLEAN,
    ))
    b.add(computed_alias(
        "alarm.warning", "Warning active", _inverter_warning,
        role="indicator.alarm", value_type=ValueType.BOOLEAN,
    ))


# --- batteries and ESS ------------------------------------------------------

_EXCLUDED_FLAG_RE = re.compile("parameter|limit|recover|threshold", re.I)
_FAULT_FLAG_RE = re.compile(
    "vE_BUS_ERROR|vE_BUS_BMS_ERROR|ALARM_FLAG_REGISTER|PROTECT_FLAG_REGISTER"
    "|SYSTEM_FAULT_COUNTERS|INSULATION_RESISTANCE_ERROR_LEVEL",
    re.I,
)
_WARNING_FLAG_RE = re.compile("warning|warn", re.I)


def _energy_counter(value: Any) -> Optional[float]:
    """64-bit counters may arrive as strings; keep them only when exact."""
    if as_number(value) is not None:
        return value
    if isinstance(value, str):
        number = _to_finite(value)
        if number is not None and abs(number) <= 2 ** 53 - 1:
            return number
    return None


def _setpoint_alias(b: AliasBuilder, path: str, name: str, dp: DatapointDef | None, role: str = "level.power") -> None:
    if _writable(dp):
        b.add(dp_alias(path, name, dp, role, unit="W", writable=True))


@register_alias_rule(*BATTERY_CATEGORIES)
def battery_aliases(b: AliasBuilder) -> None:
    soc = (
        b.by_id("sOC", "bATTERY_SOC", "bATTERY_TOTAL_SOC")
        or b.first(_id_re(r"(^|_)soc($|_)"))
        or b.first(_id_re("soc"))
    )
    if soc:
        b.add(dp_alias("r.soc", "State of charge", soc, "value.battery", unit="%"))

    soh = b.by_id("sOH") or b.first(_id_re(r"(^|_)soh($|_)")) or b.first(_id_re("soh"))
    if soh:
        b.add(dp_alias("r.soh", "State of health", soh, "value", unit="%"))

    voltage = (
        b.by_id("bATTERY_VOLTAGE", "dC_BATTERY_VOLTAGE", "vOLTAGE", "lINK_VOLTAGE", "iNTERNAL_VOLTAGE")
        or b.first(_id_re("battery_.*voltage"))
        or b.first(lambda dp: re.search("voltage", dp.id, re.I) and not re.search("grid_", dp.id, re.I))
    )
    if voltage:
        b.add(dp_alias("r.voltage", "Battery voltage", voltage, "value.voltage", unit="V"))

    current = (
        b.by_id("bATTERY_CURRENT", "dC_BATTERY_CURRENT", "cURRENT")
        or b.first(_id_re("battery_.*current"))
        or b.first(
            lambda dp: re.search("current", dp.id, re.I)
            and not re.search("input_|output_", dp.id, re.I)
        )
    )
    if current:
        b.add(dp_alias("r.current", "Battery current", current, "value.current", unit="A"))

    temperature = (
        b.by_id("bATTERY_TEMPERATURE", "aVG_BATTERY_TEMPERATURE")
        or b.first(_id_re("^bATTERY_.*tEMPERATURE$"))
        or b.first(_id_re("battery_.*temperature"))
    )
    if temperature:
        b.add(dp_alias("r.temperature", "Battery temperature", temperature, "value.temperature", unit="°C"))

    # Power: measured power, else phase sum, else charge/discharge currents, else V*I
    active_power = (
        b.by_id("bATTERY_POWER", "aCTIVE_POWER")
        or b.first(lambda dp: re.search("^bATTERY_.*pOWER$", dp.id, re.I) and dp.readable)
        or b.first(lambda dp: re.search("^aCTIVE_POWER$", dp.id, re.I) and dp.readable)
    )
    charge_current = b.by_id("cUR_BAT_CHA")
    discharge_current = b.by_id("cUR_BAT_DSCH")
    phases = [b.by_id("aCTIVE_POWER_L1"), b.by_id("aCTIVE_POWER_L2"), b.by_id("aCTIVE_POWER_L3")]

    def battery_power(values: dict[str, Any]) -> Optional[float]:
        measured = _value(values, active_power)
        if measured is not None:
            return measured
        phase_sum = _sum_present(values, phases)
        if phase_sum is not None:
            return phase_sum
        if voltage and (charge_current or discharge_current):
            u = _value(values, voltage)
            i_charge = _value(values, charge_current)
            i_discharge = _value(values, discharge_current)
            if u is not None and (i_charge is not None or i_discharge is not None):
                # Discharge positive, charge negative
                return (i_discharge or 0) * u - (i_charge or 0) * u
        if voltage and current:
            u = _value(values, voltage)
            i = _value(values, current)
            if u is not None and i is not None:
                return u * i
        return None

    def charge_power(values: dict[str, Any], _ctx: AliasContext) -> Optional[float]:
        p = battery_power(values)
        if p is None:
            return None
        return abs(p) if p < 0 else 0

    def discharge_power(values: dict[str, Any], _ctx: AliasContext) -> Optional[float]:
        p = battery_power(values)
        if p is None:
            return None
        return p if p > 0 else 0

    b.add(computed_alias(
        "r.power", "Battery power (net)", lambda values, _ctx: battery_power(values),
        role="value.power", unit="W",
    ))
    b.add(computed_alias("r.powerCharge", "Battery charge power", charge_power, role="value.power", unit="W"))
    b.add(computed_alias(
        "r.powerDischarge", "Battery discharge power", discharge_power, role="value.power", unit="W",
    ))

    pv_power = (
        b.by_id("pV_POWER", "pV_POWER_SUM")
        or b.first(lambda dp: re.search("^pV_.*pOWER", dp.id, re.I) and dp.readable)
        or b.first(lambda dp: re.search("pv.*power", dp.id, re.I) and dp.readable)
    )
    if pv_power:
        b.add(dp_alias("r.pvPower", "PV power", pv_power, "value.power", unit="W"))

    charge_energy = b.by_id(
        "aCTIVE_CHARGE_ENERGY", "dC_CHARGED_ENERGY", "dC_CHARGE_ENERGY", "aCT_BAT_CHRG",
    ) or b.first(
        lambda dp: re.search("charge.*energy", dp.id, re.I) and not re.search("parameter", dp.id, re.I)
    )
    if charge_energy:
        b.add(dp_alias(
            "r.energyCharge", "Charge energy (total)", charge_energy, "value.energy",
            unit="Wh", from_device=_energy_counter,
        ))

    discharge_energy = b.by_id(
        "aCTIVE_DISCHARGE_ENERGY", "dC_DISCHARGED_ENERGY", "dC_DISCHARGE_ENERGY", "aCT_BAT_DSCH",
    ) or b.first(
        lambda dp: re.search("discharge.*energy", dp.id, re.I) and not re.search("parameter", dp.id, re.I)
    )
    if discharge_energy:
        b.add(dp_alias(
            "r.energyDischarge", "Discharge energy (total)", discharge_energy, "value.energy",
            unit="Wh", from_device=_energy_counter,
        ))

    allow_charge = b.by_id("bP_CHARGE_BMS", "vE_BUS_BMS_ALLOW_BATTERY_CHARGE")
    if allow_charge:
        b.add(dp_alias(
            "r.allowCharge", "BMS allows charge", allow_charge, "indicator",
            value_type=ValueType.BOOLEAN, from_device=as_bool,
        ))
    allow_discharge = b.by_id("bP_DISCHARGE_BMS", "vE_BUS_BMS_ALLOW_BATTERY_DISCHARGE")
    if allow_discharge:
        b.add(dp_alias(
            "r.allowDischarge", "BMS allows discharge", allow_discharge, "indicator",
            value_type=ValueType.BOOLEAN, from_device=as_bool,
        ))

    allowed_charge = b.by_id("aLLOWED_CHARGE_POWER", "oRIGINAL_ALLOWED_CHARGE_POWER")
    if allowed_charge:
        b.add(dp_alias("r.allowedChargePower", "Allowed charge power", allowed_charge, "value.power", unit="W"))
    allowed_discharge = b.by_id(
        "aLLOWED_DISCHARGE_POWER", "oRIGINAL_ALLOWED_DISCHARGE_POWER", "eSS_MAX_DISCHARGE_POWER",
    )
    if allowed_discharge:
        b.add(dp_alias(
            "r.allowedDischargePower", "Allowed discharge power", allowed_discharge, "value.power", unit="W",
        ))

    setpoint = b.by_id("sET_ACTIVE_POWER") or b.first(
        lambda dp: re.search(r"^sET_ACTIVE_POWER(_6_\d+)?$", dp.id, re.I) and dp.writable
    )
    if setpoint:
        b.add(dp_alias(
            "ctrl.powerSetpointW", "Active power setpoint (battery/ESS)", setpoint, "level.power",
            unit="W", writable=True,
        ))
        # One signed register; charge is negative, discharge positive
        b.add(dp_alias(
            "ctrl.chargePowerW", "Charge power setpoint", setpoint, "level.power",
            unit="W", writable=True,
            to_device=_charge_to_device, from_device=_charge_from_device,
        ))
        b.add(dp_alias(
            "ctrl.dischargePowerW", "Discharge power setpoint", setpoint, "level.power",
            unit="W", writable=True,
            to_device=_discharge_to_device, from_device=_discharge_from_device,
        ))

    for phase in (1, 2, 3):
        _setpoint_alias(
            b, f"ctrl.powerSetpointL{phase}", f"Active power setpoint L{phase}",
            b.by_id(f"sET_ACTIVE_POWER_L{phase}"),
        )

    control_mode = b.by_id("sET_CONTROL_MODE")
    if _writable(control_mode):
        b.add(dp_alias("ctrl.controlMode", "Control mode", control_mode, "level", writable=True))

    grid_power = b.by_id("gRID_POWER", "nAP_POWER") or b.first(
        lambda dp: re.search("(^|_)(grid|nap).*power", dp.id, re.I) and dp.readable
    )
    if grid_power:
        b.add(dp_alias("r.gridPower", "Grid / NAP power", grid_power, "value.power", unit="W"))

    grid_setpoint = b.by_id("nAP_POWER_SETPOINT", "sET_NAP_POWER", "gRID_POWER_SETPOINT") or b.first(
        lambda dp: dp.writable and re.search("(nap|grid).*(set|target|limit).*power", dp.id, re.I)
    )
    if grid_setpoint:
        _setpoint_alias(b, "ctrl.gridSetpointW", "Grid / NAP power setpoint", grid_setpoint)
        _setpoint_alias(b, "ctrl.napSetpointW", "NAP power setpoint", grid_setpoint)

    export_pct = b.by_id("eXPORT_POWER_PERCENTAGE", "wMaxLimPct", "wMAXLIMPCT")
    if _writable(export_pct):
        b.add(dp_alias("ctrl.powerLimitPct", "PV/export power limit (%)", export_pct, "level", unit="%", writable=True))
        b.add(dp_alias("ctrl.exportLimitPct", "Export power limit (%)", export_pct, "level", unit="%", writable=True))

    export_limit = b.by_id("eXPORT_POWER_LIMIT", "wMaxLim", "wMAXLIM")
    if _writable(export_limit):
        _setpoint_alias(b, "ctrl.powerLimitW", "PV/export power limit (W)", export_limit)
        _setpoint_alias(b, "ctrl.exportLimitW", "Export power limit (W)", export_limit)

    disable_charge = b.by_id("eSS_DISABLE_CHARGE_FLAG")
    if _writable(disable_charge):
        # The register is a disable flag
        b.add(dp_alias(
            "ctrl.chargeEnable", "Charge enable", disable_charge, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
            to_device=lambda v: 0 if v else 1,
            from_device=lambda v: None if as_bool(v) is None else not as_bool(v),
        ))

    status = b.by_id(
        "bAT_STATUS", "bATTERY_STATE", "bATTERY_WORK_STATE", "sYSTEM_STATE", "cLUSTER_RUN_STATE",
        "sYSTEM_RUNNING_STATE", "vE_BUS_STATE", "sWITCH_POSITION",
    ) or b.first(
        lambda dp: re.search("(^|_)(state|status|health)($|_)", dp.id, re.I)
        and not re.search("parameter", dp.id, re.I)
    )
    if status:
        b.add(dp_alias("r.statusCode", "Status code", status, "indicator.status"))

    error_code = b.by_id("vE_BUS_ERROR", "vE_BUS_BMS_ERROR", "iNSULATION_RESISTANCE_ERROR_LEVEL") or b.first(
        lambda dp: re.search("(^|_)(error|fault)($|_)", dp.id, re.I)
        and not re.search("parameter", dp.id, re.I)
    )
    if error_code:
        b.add(dp_alias("r.errorCode", "Error code", error_code, "indicator"))

    fault_flags = b.matching(
        lambda dp: not _EXCLUDED_FLAG_RE.search(dp.id) and bool(_FAULT_FLAG_RE.search(dp.id))
    )

    def battery_fault(values: dict[str, Any], _ctx: AliasContext) -> bool:
        code = _value(values, error_code)
        if code is not None:
            return code != 0
        return _any_non_zero(values, fault_flags)

    b.add(computed_alias(
        "alarm.fault", "Fault active", battery_fault,
        role="indicator.alarm", value_type=ValueType.BOOLEAN,
    ))

    warning_flags = b.matching(
        lambda dp: not _EXCLUDED_FLAG_RE.search(dp.id) and bool(_WARNING_FLAG_RE.search(dp.id))
    )
    if warning_flags:
        b.add(computed_alias(
            "alarm.warning", "Warning active",
            lambda values, _ctx: _any_non_zero(values, warning_flags),
            role="indicator.alarm", value_type=ValueType.BOOLEAN,
        ))


# --- meters -----------------------------------------------------------------

@register_alias_rule("METER")
def meter_aliases(b: AliasBuilder) -> None:
    net = b.by_id("aCTIVE_POWER") or b.first(_id_re("^aCTIVE_POWER$"))
    imp = b.by_id("aCTIVE_CONSUMPTION_POWER") or b.first(_id_re("^aCTIVE_CONSUMPTION_POWER(?!_L[123])"))
    exp = b.by_id("aCTIVE_PRODUCTION_POWER") or b.first(_id_re("^aCTIVE_PRODUCTION_POWER(?!_L[123])"))
    pos = b.by_id("aCTIVE_POWER_POS") or b.first(_id_re("^aCTIVE_POWER_POS$"))
    neg = b.by_id("aCTIVE_POWER_NEG") or b.first(_id_re("^aCTIVE_POWER_NEG$"))
    phases = [b.by_id(f"aCTIVE_POWER_L{n}") for n in (1, 2, 3)]

    imp_energy = b.by_id("aCTIVE_CONSUMPTION_ENERGY") or b.first(
        _id_re("^aCTIVE_CONSUMPTION_ENERGY(?!_L[123])")
    )
    exp_energy = b.by_id("aCTIVE_PRODUCTION_ENERGY") or b.first(
        _id_re("^aCTIVE_PRODUCTION_ENERGY(?!_L[123])")
    )
    imp_energy_phases = [b.first(_id_re(f"^aCTIVE_CONSUMPTION_ENERGY_L{n}")) for n in (1, 2, 3)]
    exp_energy_phases = [b.first(_id_re(f"^aCTIVE_PRODUCTION_ENERGY_L{n}")) for n in (1, 2, 3)]

    def net_power(values: dict[str, Any]) -> Optional[float]:
        direct = _value(values, net)
        if direct is not None:
            return direct
        i, e = _value(values, imp), _value(values, exp)
        if i is not None or e is not None:
            return (i or 0) - (e or 0)
        p, n = _value(values, pos), _value(values, neg)
        if p is not None or n is not None:
            return (p or 0) - (n or 0)
        return _sum_present(values, phases)

    def import_power(values: dict[str, Any], _ctx: AliasContext) -> Optional[float]:
        for dp in (imp, pos):
            v = _value(values, dp)
            if v is not None:
                return v
        p = net_power(values)
        if p is None:
            return None
        return p if p > 0 else 0

    def export_power(values: dict[str, Any], _ctx: AliasContext) -> Optional[float]:
        for dp in (exp, neg):
            v = _value(values, dp)
            if v is not None:
                return v
        p = net_power(values)
        if p is None:
            return None
        return abs(p) if p < 0 else 0

    def phase_energy(per_phase: list) -> Callable[[dict, AliasContext], Optional[float]]:
        return lambda values, _ctx: _sum_present(values, per_phase)

    if any([net, imp, exp, pos, neg, *phases]):
        if net:
            b.add(dp_alias("r.power", "Net active power", net, "value.power", unit="W"))
        else:
            b.add(computed_alias(
                "r.power", "Net active power", lambda values, _ctx: net_power(values),
                role="value.power", unit="W",
            ))
        if imp or pos:
            b.add(dp_alias("r.powerImport", "Import power", imp or pos, "value.power", unit="W"))
        else:
            b.add(computed_alias("r.powerImport", "Import power", import_power, role="value.power", unit="W"))
        if exp or neg:
            b.add(dp_alias("r.powerExport", "Export power", exp or neg, "value.power", unit="W"))
        else:
            b.add(computed_alias("r.powerExport", "Export power", export_power, role="value.power", unit="W"))

    if any([imp_energy, exp_energy, *imp_energy_phases, *exp_energy_phases]):
        if imp_energy:
            b.add(dp_alias("r.energyImport", "Import energy", imp_energy, "value.energy", unit="Wh"))
        else:
            b.add(computed_alias(
                "r.energyImport", "Import energy", phase_energy(imp_energy_phases),
                role="value.energy", unit="Wh",
            ))
        if exp_energy:
            b.add(dp_alias("r.energyExport", "Export energy", exp_energy, "value.energy", unit="Wh"))
        else:
            b.add(computed_alias(
                "r.energyExport", "Export energy", phase_energy(exp_energy_phases),
                role="value.energy", unit="Wh",
            ))

    voltages = [b.by_id("vOLTAGE_L1", "vOLTAGE"), b.by_id("vOLTAGE_L2"), b.by_id("vOLTAGE_L3")]
    currents = [b.by_id("cURRENT_L1", "cURRENT"), b.by_id("cURRENT_L2"), b.by_id("cURRENT_L3")]
    for phase, (v, c) in enumerate(zip(voltages, currents), start=1):
        if v:
            b.add(dp_alias(f"r.voltageL{phase}", f"Voltage L{phase}", v, "value.voltage", unit="V"))
        if c:
            b.add(dp_alias(f"r.currentL{phase}", f"Current L{phase}", c, "value.current", unit="A"))

    frequency = b.by_id("fREQUENCY")
    if frequency:
        b.add(dp_alias("r.frequency", "Frequency", frequency, "value.frequency", unit="Hz"))


# --- charging stations ------------------------------------------------------

def _flag_to_bool(value: Any) -> Optional[bool]:
    return as_bool(value)


@register_alias_rule(*CHARGER_CATEGORIES)
def charger_aliases(b: AliasBuilder) -> None:
    power = (
        b.by_id("aCTIVE_POWER")
        or b.first(_id_re("charging_power"))
        or b.first(_id_re("power_W$"))
        or b.first(
            lambda dp: dp.role == "value.power" and dp.readable and not re.match("station_", dp.id, re.I)
        )
        or b.first(lambda dp: dp.role == "value.power" and dp.readable)
    )
    if power:
        b.add(dp_alias("r.power", "Charging power", power, "value.power", unit="W"))

    session = (
        b.by_id("eNERGY_SESSION", "lAST_ENERGY_SESSION")
        or b.first(_id_re("charged_energy_session"))
        or b.first(_id_re("energy.*session"))
        or b.first(lambda dp: bool(re.search("energy.*session", f"{dp.id} {dp.name}", re.I)))
    )
    if session:
        b.add(dp_alias("r.energySession", "Energy (session)", session, "value.energy", unit="Wh"))

    total = (
        b.first(_id_re("total.*charged.*energy"))
        or b.first(_id_re("total.*energy"))
        or b.by_id("aCTIVE_PRODUCTION_ENERGY")
        or b.first(
            lambda dp: dp.role == "value.energy" and dp.readable
            and not re.search("session", f"{dp.id} {dp.name}", re.I)
        )
    )
    if total:
        b.add(dp_alias("r.energyTotal", "Energy (total)", total, "value.energy", unit="Wh"))

    status = (
        b.by_id("eVSE_STATE", "cHARGE_POINT_STATE", "gOE_STATE")
        or b.first(
            lambda dp: re.search("(^state$|_state$)", dp.id, re.I) and dp.readable
            and not re.match("station_", dp.id, re.I)
        )
        or b.by_id("station_state")
        or b.first(lambda dp: re.search("state", dp.id, re.I) and dp.readable)
    )
    if status:
        b.add(dp_alias("r.statusCode", "Status code", status, "indicator.status"))

    error = (
        b.by_id("eVSE_ERROR_CODE", "eRROR_CODE")
        or b.first(_id_re("error_code"))
        or b.first(lambda dp: re.search("error", dp.id, re.I) and dp.readable)
    )
    if error:
        b.add(dp_alias("r.errorCode", "Error code", error, "indicator"))
        b.add(computed_alias(
            "alarm.fault", "Fault active",
            lambda values, _ctx: as_number(values.get(error.id)) is not None and values[error.id] != 0,
            role="indicator.alarm", value_type=ValueType.BOOLEAN,
        ))

    current_limit = b.by_id(
        "sET_CHARGING_CURRENT", "cHARGE_CURRENT", "cHARGING_CURRENT", "currentUser_mA",
        "aPPLY_CHARGE_CURRENT_LIMIT",
    ) or b.first(
        lambda dp: dp.writable
        and re.search("current", dp.id, re.I)
        and not re.search("timeout|failsafe", dp.id, re.I)
    )
    if current_limit:
        milliamps = current_limit.unit == "mA"

        def amps_to_device(v: Any) -> Any:
            n = _to_finite(v)
            if n is None:
                return v
            return round(n * 1000) if milliamps else n

        def amps_from_device(v: Any) -> Any:
            n = _to_finite(v)
            if n is None:
                return v
            return n / 1000 if milliamps else n

        alias = dp_alias(
            "ctrl.currentLimitA", "Charging current limit", current_limit, "level.current",
            unit="A", writable=True, to_device=amps_to_device, from_device=amps_from_device,
        )
        if milliamps:
            alias = dataclasses.replace(alias, unit="A")
        b.add(alias)

    power_limit = (
        b.by_id("eV_SET_CHARGE_POWER_LIMIT", "aPPLY_CHARGE_POWER_LIMIT", "set_station_max_power")
        or b.first(_id_re(r"set_c\d+_max_power"))
        or b.first(_id_re("set_.*max_power"))
    )
    _setpoint_alias(b, "ctrl.powerLimitW", "Charging power limit", power_limit)

    enable = b.by_id("sET_ENABLE", "enableUser", "sTART_CANCEL_CHARGING_SESSION") or b.first(
        lambda dp: dp.writable and re.search("enable|start|stop", dp.id, re.I)
    )
    if enable:
        b.add(dp_alias(
            "ctrl.run", "Run (enable/start)", enable, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
            # Most chargers take 0/1 integer flags
            to_device=lambda v: (1 if v else 0) if isinstance(v, bool) else v,
            from_device=_flag_to_bool,
        ))

    unlock = b.by_id("sET_UNLOCK_PLUG")
    if _writable(unlock):
        b.add(dp_alias(
            "ctrl.unlockPlug", "Unlock plug", unlock, "switch",
            value_type=ValueType.BOOLEAN, writable=True,
            to_device=lambda v: 1 if v else 0,
            from_device=_flag_to_bool,
        ))
