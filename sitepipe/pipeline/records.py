"""Helpers for reading and coercing values inside flat/nested records."""

from __future__ import annotations

import json
import math
from typing import Any, Mapping

_MISSING = object()


def get_nested_value(record: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path (``"seller.rating"``) into nested mappings.

    Returns ``None`` when any segment is missing or not a mapping.
    """
    current: Any = record
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key, _MISSING)
        if current is _MISSING:
            return None
    return current


def to_number(value: Any) -> float | None:
    """Coerce a value to a number, or ``None`` when it is not numeric.

    Strings are stripped and parsed; booleans count as 1/0; blank strings,
    NaN and containers are not numbers.
    """
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def normalize_number(number: float) -> int | float:
    """Return integral floats as ints (``5.0`` -> ``5``) for cleaner output."""
    if math.isfinite(number) and number.is_integer():
        return int(number)
    return number


def stringify(value: Any) -> str:
    """Render a value as text for substring, regex and CSV use."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(normalize_number(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)
