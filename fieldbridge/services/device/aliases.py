"""
Alias Engine

Aliases are stable, vendor-independent state paths (e.g. `r.power`,
`ctrl.powerLimitPct`) derived from a template's data points. They live
under `devices.<id>.aliases.<path>` so downstream automations can target
any inverter or meter without knowing its register map.

Two kinds:
- DATAPOINT aliases mirror one data point, optionally transformed by
  `from_device` on read and `to_device` on write
- COMPUTED aliases evaluate a function over the latest known values and
  the device's connectivity context

Alias rules are registered per template category in alias_rules.py.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from ...common.config import Access, DatapointDef, Template, ValueType
from ...common.logging_setup import get_service_logger

logger = get_service_logger("device.aliases")


class AliasKind(str, Enum):
    DATAPOINT = "dp"
    COMPUTED = "computed"


@dataclass(frozen=True)
class AliasContext:
    connected: bool = False
    last_error: str = ""


ComputeFn = Callable[[dict[str, Any], AliasContext], Any]
TransformFn = Callable[[Any], Any]


@dataclass(frozen=True)
class AliasDef:
    path: str
    name: str
    kind: AliasKind
    role: str = "state"
    type: ValueType = ValueType.NUMBER
    unit: str = ""
    rw: Access = Access.RO
    dp_id: Optional[str] = None
    write_dp_id: Optional[str] = None
    to_device: Optional[TransformFn] = field(default=None, compare=False)
    from_device: Optional[TransformFn] = field(default=None, compare=False)
    compute: Optional[ComputeFn] = field(default=None, compare=False)

    @property
    def writable(self) -> bool:
        return self.rw.writable

    @property
    def target_dp_id(self) -> Optional[str]:
        return self.write_dp_id or self.dp_id

    def metadata(self) -> dict[str, Any]:
        meta = {
            "name": self.name,
            "type": self.type.value,
            "role": self.role,
            "read": self.rw.readable,
            "write": self.rw.writable,
            "alias": True,
            "alias_kind": self.kind.value,
        }
        if self.unit:
            meta["unit"] = self.unit
        if self.dp_id:
            meta["dp_id"] = self.dp_id
        if self.write_dp_id:
            meta["write_dp_id"] = self.write_dp_id
        return meta


def as_number(value: Any) -> Optional[float]:
    """Finite int/float, else None (booleans are not numbers here)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if as_number(value) is not None:
        return value != 0
    return None


def dp_alias(
    path: str,
    name: str,
    dp: DatapointDef,
    role: str,
    value_type: ValueType = ValueType.NUMBER,
    unit: str | None = None,
    writable: bool = False,
    to_device: TransformFn | None = None,
    from_device: TransformFn | None = None,
) -> AliasDef:
    """Alias mirroring a single data point.

    The unit falls back to `unit` only when the data point has none.
    """
    return AliasDef(
        path=path,
        name=name,
        kind=AliasKind.DATAPOINT,
        role=role,
        type=value_type,
        unit=dp.unit or (unit or ""),
        rw=Access.RW if writable else Access.RO,
        dp_id=dp.id,
        write_dp_id=dp.id if writable else None,
        to_device=to_device,
        from_device=from_device,
    )


def computed_alias(
    path: str,
    name: str,
    compute: ComputeFn,
    role: str,
    value_type: ValueType = ValueType.NUMBER,
    unit: str = "",
) -> AliasDef:
    return AliasDef(
        path=path,
        name=name,
        kind=AliasKind.COMPUTED,
        role=role,
        type=value_type,
        unit=unit,
        compute=compute,
    )


class AliasBuilder:
    """Collects alias definitions for one template; first one per path wins."""

    def __init__(self, template: Template, category: str):
        self.template = template
        self.category = category
        self.datapoints = template.datapoints
        self._by_id = {dp.id: dp for dp in template.datapoints}
        self.aliases: list[AliasDef] = []
        self._paths: set[str] = set()

    def add(self, alias: AliasDef) -> bool:
        if alias.path in self._paths:
            return False
        self._paths.add(alias.path)
        self.aliases.append(alias)
        return True

    def by_id(self, *ids: str) -> DatapointDef | None:
        """First data point whose id equals one of `ids`, in argument order."""
        for dp_id in ids:
            dp = self._by_id.get(dp_id)
            if dp is not None:
                return dp
        return None

    def first(self, predicate: Callable[[DatapointDef], bool]) -> DatapointDef | None:
        for dp in self.datapoints:
            if predicate(dp):
                return dp
        return None

    def matching(self, predicate: Callable[[DatapointDef], bool]) -> list[DatapointDef]:
        return [dp for dp in self.datapoints if predicate(dp)]


class AliasEngine:
    """
    Evaluates aliases for one device.

    Keeps a cache of the latest value per data point, so computed aliases
    that combine several data points (e.g. net meter power) still work
    when a fast poll only returned some of them.
    """

    def __init__(self, aliases: Iterable[AliasDef] = ()):
        self.aliases: list[AliasDef] = list(aliases)
        self._by_path = {a.path: a for a in self.aliases}
        self._cache: dict[str, Any] = {}

    def __len__(self) -> int:
        return len(self.aliases)

    def get(self, path: str) -> AliasDef | None:
        return self._by_path.get(path)

    @property
    def latest(self) -> dict[str, Any]:
        return dict(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _evaluate(self, alias: AliasDef, values: dict[str, Any], ctx: AliasContext) -> Any:
        if alias.kind is AliasKind.DATAPOINT:
            if alias.dp_id not in values:
                # Not part of this result (write-only or different poll tier)
                return None
            value = values[alias.dp_id]
            return alias.from_device(value) if alias.from_device else value
        return alias.compute(self._cache, ctx)

    def update(self, values: dict[str, Any], ctx: AliasContext) -> list[tuple[str, Any]]:
        """Alias values to publish for a poll result.

        Aliases that evaluate to None are left untouched. A failing alias is
        logged and skipped; it never affects the others.
        """
        self._cache.update(values)
        updates: list[tuple[str, Any]] = []
        for alias in self.aliases:
            try:
                value = self._evaluate(alias, values, ctx)
            except Exception as e:
                logger.debug(f"Alias {alias.path} evaluation failed: {e}")
                continue
            if value is None:
                continue
            updates.append((alias.path, value))
        return updates

    def echo(self, dp_id: str, raw_value: Any) -> list[tuple[str, Any]]:
        """Alias values derived from a just-written device-native value."""
        self._cache[dp_id] = raw_value
        updates: list[tuple[str, Any]] = []
        for alias in self.aliases:
            if alias.kind is not AliasKind.DATAPOINT or alias.dp_id != dp_id:
                continue
            try:
                value = alias.from_device(raw_value) if alias.from_device else raw_value
            except Exception as e:
                logger.debug(f"Alias {alias.path} echo failed: {e}")
                continue
            if value is not None:
                updates.append((alias.path, value))
        return updates
