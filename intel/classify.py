"""Classification of a ``CompositeSignal`` into discrete decisions.

``classify()`` is pure and deterministic: identical composites and rule
tables always give an identical ``ClassificationResult``.  Results are
never cached; they are cheap and must not drift from their inputs.
Missing inputs fall back to neutral defaults (score 50, risk ``medium``,
exit ``hold``) and are listed in ``defaults_applied``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from signalstack.common_types import SUB_SCORE_NAMES, CompositeSignal
from signalstack.error_taxonomy import ClassificationInputError
from signalstack.utils import to_float

from .exit_window import advise_position, exit_window, with_quote_price
from .risk_levels import requires_disclaimer, risk_level
from .thresholds import DEFAULT_RULE_TABLES, RuleTables
from .tiers import composite_score, grade_for, recommendation_for, tier_for

logger = logging.getLogger("intel.classify")


@dataclass(frozen=True)
class ClassificationResult:
    symbol: str
    tier: str
    grade: str
    composite_score: float
    risk_level: str
    exit_window: str
    recommendation: str
    reasons: tuple[str, ...] = ()
    defaults_applied: tuple[str, ...] = ()
    research_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "tier": self.tier,
            "grade": self.grade,
            "composite_score": self.composite_score,
            "risk_level": self.risk_level,
            "exit_window": self.exit_window,
            "recommendation": self.recommendation,
            "reasons": list(self.reasons),
            "defaults_applied": list(self.defaults_applied),
            "research_only": self.research_only,
        }


def _int_or_none(value: Any) -> int | None:
    f = to_float(value, None)
    return int(f) if f is not None else None


def classify(
    signal: CompositeSignal,
    tables: RuleTables = DEFAULT_RULE_TABLES,
    now: float | None = None,
) -> ClassificationResult:
    """Map one composite to tier, risk level, exit window and recommendation.

    *now* only matters for exit positions that carry an expiry timestamp
    but no DTE.  When omitted it is taken from the fetch time of the
    position data, so the result depends on the composite alone.  The
    position's missing current price is filled from the joined quote.
    """
    if not isinstance(signal, CompositeSignal):
        raise ClassificationInputError(
            f"classify() expects a CompositeSignal, got {type(signal).__name__}",
            field_name="signal",
        )

    reasons: list[str] = []
    defaults: list[str] = []

    # ── Tier / grade ────────────────────────────────────────
    score, missing = composite_score(signal.sub_scores, tables)
    defaults.extend(f"{name}_score" for name in missing)
    if len(missing) == len(SUB_SCORE_NAMES):
        upstream = to_float(signal.get("trade_ideas", "grade_score"), None)
        if upstream is not None:
            score = max(0.0, min(100.0, upstream))
            reasons.append("UPSTREAM_GRADE_SCORE")
        else:
            defaults.append("composite_score")
    grade = grade_for(score, tables)
    reasons.append(f"GRADE_{grade}")

    # ── Exit window ─────────────────────────────────────────
    position = signal.sections.get("exit_positions")
    dte: int | None = None
    asset_type = signal.get("trade_ideas", "asset_type")
    if position is not None:
        if now is None:
            prov = signal.provenance.get("exit_positions")
            now = prov.fetched_at if prov is not None else None
        advisory = advise_position(with_quote_price(position, signal.price), tables, now=now)
        window = advisory.exit_window
        reasons.extend(advisory.reasons)
        reasons.extend(advisory.signals)
        defaults.extend(advisory.defaults_applied)
        dte = advisory.dte
        asset_type = advisory.asset_type
    else:
        decision = exit_window(None, None, None, None, tables)
        window = decision.window
        reasons.extend(decision.reasons)

    # ── Risk level ──────────────────────────────────────────
    risk = risk_level(
        price=signal.price,
        atr_pct=to_float(signal.get("trade_ideas", "atr_pct"), None),
        risk_profile=signal.get("trade_ideas", "risk_profile"),
        asset_type=asset_type,
        dte=dte if dte is not None else _int_or_none(signal.get("exit_positions", "dte")),
        tables=tables,
    )
    reasons.extend(risk.reasons)
    if risk.defaulted:
        defaults.append("risk_level")

    reasons.extend(f"STALE_{name.upper()}" for name in signal.stale_sources if signal.has_source(name))

    return ClassificationResult(
        symbol=signal.symbol,
        tier=tier_for(grade),
        grade=grade,
        composite_score=round(score, 2),
        risk_level=risk.level,
        exit_window=window,
        recommendation=recommendation_for(score, tables),
        reasons=tuple(reasons),
        defaults_applied=tuple(dict.fromkeys(defaults)),
        research_only=requires_disclaimer(risk.level),
    )
