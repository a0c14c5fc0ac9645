from __future__ import annotations

import logging
import math
from typing import Any

logger = logging.getLogger(__name__)


def to_float(value: Any, default: float | None = 0.0) -> float | None:
    """Safely parse numeric-like values to float with default fallback.

    Returns *default* for ``None``, non-numeric strings, **and** ``NaN``
    / infinite values so that downstream arithmetic never silently
    propagates NaN.  Strings like ``"$18.7M"`` or ``"100,000"`` are
    accepted because upstream feeds mix display and raw values.
    """
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        value = _parse_display_number(value)
        if value is None:
            return default
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    return default if (math.isnan(f) or math.isinf(f)) else f


_SUFFIXES = {"K": 1e3, "M": 1e6, "B": 1e9, "T": 1e12}


def _parse_display_number(text: str) -> float | None:
    s = text.strip().replace(",", "").replace("$", "").replace("%", "")
    if not s:
        return None
    mult = 1.0
    if s[-1].upper() in _SUFFIXES:
        mult = _SUFFIXES[s[-1].upper()]
        s = s[:-1]
    try:
        return float(s) * mult
    except ValueError:
        return None


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def norm_symbol(value: Any) -> str:
    """Upper-cased, stripped ticker; empty string when unusable."""
    if not isinstance(value, str):
        return ""
    return value.strip().upper()
