"""
Value normalization before publishing: coerce to the data point's declared
type, round numbers to its decimals (3 by default) and drop values that
cannot be represented (NaN, infinities, unparsable strings).
"""

import math
from typing import Any

from ...common.config import DatapointDef, ValueType

DEFAULT_DECIMALS = 3

_TRUE_STRINGS = {"true", "on", "yes", "1"}
_FALSE_STRINGS = {"false", "off", "no", "0"}


def _to_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value != 0
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in _TRUE_STRINGS:
            return True
        if lower in _FALSE_STRINGS:
            return False
    return None


def normalize_value(dp: DatapointDef, value: Any) -> Any:
    """Publishable value for `dp`, or None to skip it this cycle."""
    if value is None:
        return None

    if dp.type is ValueType.BOOLEAN:
        return _to_bool(value)

    if dp.type is ValueType.STRING:
        return value if isinstance(value, str) else str(value)

    number = _to_number(value)
    if number is None:
        return None
    if isinstance(number, float):
        if not math.isfinite(number):
            return None
        decimals = dp.decimals if dp.decimals is not None else DEFAULT_DECIMALS
        number = round(number, decimals)
    return number
