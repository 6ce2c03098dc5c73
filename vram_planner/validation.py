"""Input guards shared by the memory primitives and strategies."""

from __future__ import annotations

import math
from collections.abc import Iterable

from vram_planner.errors import ValidationError


def require_positive(field: str, value: object) -> float:
    """Return *value* as a float, raising ValidationError unless finite and > 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field, value, "must be a number")
    if not math.isfinite(value):
        raise ValidationError(field, value, "must be finite")
    if value <= 0:
        raise ValidationError(field, value, "must be greater than 0")
    return float(value)


def require_choice(field: str, value: object, choices: Iterable[str]) -> str:
    choices = list(choices)
    if value not in choices:
        raise ValidationError(field, value, f"must be one of: {', '.join(choices)}")
    return value  # type: ignore[return-value]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
