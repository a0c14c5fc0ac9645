"""Freshness scoring for cached source data.

Uses a true half-life formula:  ``exp(-t * ln(2) / hl)`` so that at
``t = hl`` the value is exactly 0.5.  The half-life is the entry's
``stale_after`` window: data exactly at the staleness boundary scores 0.5.

Usage::

    from signalstack.freshness import freshness_score

    freshness_score(45.0, stale_after=45.0)   # 0.5
    freshness_score(None, stale_after=45.0)   # 0.5 (unknown age)
"""
from __future__ import annotations

import math

_LN2 = math.log(2)  # ≈ 0.6931

MIN_HALF_LIFE_SECONDS: float = 1.0


def freshness_score(age_s: float | None, stale_after: float | None) -> float:
    """Return 0..1 where 1 = perfectly fresh.

    Unknown age → 0.5 (neutral, not dead).
    """
    if age_s is None or stale_after is None:
        return 0.5
    if age_s <= 0:
        return 1.0
    hl = max(MIN_HALF_LIFE_SECONDS, stale_after)
    return math.exp(-age_s * _LN2 / hl)


def decayed_strength(initial_strength: float, age_s: float | None, stale_after: float | None) -> float:
    """Decay an alert/signal strength by the freshness of its source."""
    return initial_strength * freshness_score(age_s, stale_after)
