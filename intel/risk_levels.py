"""Risk-level axis (low / medium / high / speculative).

Independent from the tier: an S-grade lotto play is still speculative.
"""

from __future__ import annotations

from dataclasses import dataclass

from .thresholds import DEFAULT_RULE_TABLES, RISK_LEVELS, RuleTables

# Upstream vocabularies mapped onto the four levels.
_PROFILE_ALIASES: dict[str, str] = {
    "conservative": "low",
    "safe": "low",
    "moderate": "medium",
    "balanced": "medium",
    "aggressive": "high",
    "lotto": "speculative",
    "yolo": "speculative",
}

_DISCLAIMER_LEVELS = frozenset({"high", "speculative"})


@dataclass(frozen=True)
class RiskDecision:
    level: str
    reasons: tuple[str, ...]
    defaulted: bool = False


def risk_level(
    price: float | None = None,
    atr_pct: float | None = None,
    risk_profile: str | None = None,
    asset_type: str | None = None,
    dte: int | None = None,
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> RiskDecision:
    """Classify risk from the upstream profile, price and volatility."""
    if risk_profile:
        label = risk_profile.strip().lower()
        label = _PROFILE_ALIASES.get(label, label)
        if label in RISK_LEVELS:
            return RiskDecision(label, ("UPSTREAM_PROFILE",))

    if price is not None and 0 < price < tables.speculative_price:
        return RiskDecision("speculative", ("PENNY_PRICE",))
    kind = (asset_type or "").lower()
    if kind in ("option", "lotto") and dte is not None and dte <= tables.lotto_dte:
        return RiskDecision("speculative", ("SHORT_DATED_OPTION",))

    if atr_pct is None:
        return RiskDecision(tables.neutral_risk_level, ("NO_VOLATILITY_INPUT",), defaulted=True)
    low, medium, high = tables.atr_bands
    if atr_pct < low:
        return RiskDecision("low", ("ATR_LOW",))
    if atr_pct < medium:
        return RiskDecision("medium", ("ATR_MEDIUM",))
    if atr_pct < high:
        return RiskDecision("high", ("ATR_HIGH",))
    return RiskDecision("speculative", ("ATR_EXTREME",))


def requires_disclaimer(level: str) -> bool:
    """True when the idea should be shown as research only."""
    return level in _DISCLAIMER_LEVELS
