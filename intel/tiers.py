"""Letter grades, tiers and recommendations from the six sub-scores."""

from __future__ import annotations

import math
from collections.abc import Mapping

from signalstack.common_types import SUB_SCORE_NAMES

from .thresholds import DEFAULT_RULE_TABLES, RuleTables


def _usable(value: float | None) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def composite_score(
    sub_scores: Mapping[str, float | None],
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> tuple[float, tuple[str, ...]]:
    """Weighted mean of the available sub-scores.

    Missing (or non-numeric) sub-scores are dropped and the remaining
    weights renormalised.  With nothing usable the neutral score is
    returned.  Returns ``(score, missing_names)``.
    """
    missing: list[str] = []
    total_w = 0.0
    acc = 0.0
    for name in SUB_SCORE_NAMES:
        value = sub_scores.get(name)
        weight = tables.sub_score_weights.get(name, 0.0)
        if not _usable(value):
            missing.append(name)
            continue
        if weight <= 0:
            continue
        acc += weight * max(0.0, min(100.0, float(value)))
        total_w += weight
    if total_w <= 0:
        return tables.neutral_score, tuple(missing)
    return round(acc / total_w, 4), tuple(missing)


def grade_for(score: float, tables: RuleTables = DEFAULT_RULE_TABLES) -> str:
    for grade, cutoff in tables.grade_bands:
        if score >= cutoff:
            return grade
    return tables.fallback_grade


def tier_for(grade: str) -> str:
    """``A+`` → ``A``; the tier is the grade without its modifier."""
    return grade[:1] if grade else "D"


def recommendation_for(score: float, tables: RuleTables = DEFAULT_RULE_TABLES) -> str:
    for label, cutoff in tables.recommendation_bands:
        if score >= cutoff:
            return label
    return tables.fallback_recommendation
