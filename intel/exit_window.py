"""Exit-timing classification for open positions.

Two layers:

* ``exit_window()`` — the state rule over (exit probability, DTE, theta
  urgency, momentum) → hold / watch / soon / immediate, with reasons.
* ``advise_position()`` — derives those inputs from a normalised
  exit-position record (P&L, target/stop distances, expiry) the way the
  exit-intelligence service scores positions, then applies the rule.

Reason strings are machine-readable (``EXIT_PROB_HIGH``, ``NEAR_STOP``,
``0DTE_URGENCY`` …) so every outcome can be explained.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from signalstack.utils import to_float

from .thresholds import DEFAULT_RULE_TABLES, RuleTables

logger = logging.getLogger("intel.exit_window")

WINDOW_PRIORITY: dict[str, int] = {"immediate": 0, "soon": 1, "watch": 2, "hold": 3}
_BEARISH = frozenset({"bearish", "strong_bearish"})


@dataclass(frozen=True)
class ExitDecision:
    window: str
    reasons: tuple[str, ...]


def theta_urgency(dte: int | None, tables: RuleTables = DEFAULT_RULE_TABLES) -> str:
    """DTE bucket → critical / high / moderate / low (unknown → low)."""
    if dte is None:
        return "low"
    if dte <= tables.theta_critical_dte:
        return "critical"
    if dte <= tables.theta_high_dte:
        return "high"
    if dte <= tables.theta_moderate_dte:
        return "moderate"
    return "low"


def momentum_from_pnl(pnl_pct: float, tables: RuleTables = DEFAULT_RULE_TABLES) -> str:
    strong_up, up, flat, down = tables.momentum_bands
    if pnl_pct >= strong_up:
        return "strong_bullish"
    if pnl_pct >= up:
        return "bullish"
    if pnl_pct >= flat:
        return "neutral"
    if pnl_pct >= down:
        return "bearish"
    return "strong_bearish"


def exit_window(
    exit_probability: float | None,
    dte: int | None = None,
    theta: str | None = None,
    momentum: str | None = None,
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> ExitDecision:
    """Apply the exit rule.  Missing probability skips the probability bands."""
    if theta is None:
        theta = theta_urgency(dte, tables)
    prob = exit_probability
    reasons: list[str] = []

    if prob is not None and prob > tables.exit_immediate_probability:
        reasons.append("EXIT_PROB_HIGH")
    if dte is not None and dte <= tables.exit_immediate_dte:
        reasons.append("DTE_CRITICAL")
    if reasons:
        return ExitDecision("immediate", tuple(reasons))

    if prob is not None and prob >= tables.exit_soon_probability:
        return ExitDecision("soon", ("EXIT_PROB_ELEVATED",))

    if prob is not None and prob >= tables.exit_watch_probability:
        reasons.append("EXIT_PROB_WATCH")
    if theta in ("critical", "high"):
        reasons.append(f"THETA_{theta.upper()}")
    if momentum in _BEARISH:
        reasons.append("MOMENTUM_BEARISH")
    if reasons:
        return ExitDecision("watch", tuple(reasons))
    return ExitDecision("hold", ("NO_TRIGGER",))


# ── Position-level advisories ───────────────────────────────────


@dataclass(frozen=True)
class PositionAdvisory:
    position_id: str
    symbol: str
    asset_type: str
    exit_window: str
    exit_probability: float
    exit_reason: str
    time_estimate: str
    pnl_pct: float
    momentum: str
    momentum_score: float
    theta_urgency: str
    dte: int | None
    signals: tuple[str, ...]
    reasons: tuple[str, ...]
    defaults_applied: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "asset_type": self.asset_type,
            "exit_window": self.exit_window,
            "exit_probability": self.exit_probability,
            "exit_reason": self.exit_reason,
            "time_estimate": self.time_estimate,
            "pnl_pct": self.pnl_pct,
            "momentum": self.momentum,
            "theta_urgency": self.theta_urgency,
            "dte": self.dte,
            "signals": list(self.signals),
            "reasons": list(self.reasons),
        }


def dte_from_expiry(expiry_ts: float | None, now: float) -> int | None:
    """Whole days to expiry, rounded up, never negative."""
    if not expiry_ts:
        return None
    return max(0, math.ceil((expiry_ts - now) / 86400.0))


def estimate_exit_probability(
    current: float,
    entry: float,
    target: float,
    stop: float,
    dte: int | None,
    momentum: str,
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> tuple[float, str, str]:
    """Heuristic exit probability when upstream supplies none.

    Returns ``(probability, reason, time_estimate)``.
    """
    pnl = (current - entry) / entry * 100.0
    to_stop = (current - stop) / current * 100.0 if current else 0.0

    if current >= target:
        return 95.0, "TARGET HIT - Take profits", "Now"
    if current <= stop:
        return 95.0, "STOP HIT - Exit to protect capital", "Now"
    if dte is not None and dte <= tables.exit_immediate_dte:
        if pnl > 0:
            return 90.0, "0DTE with profit - Lock in gains before theta crush", "Within 30 min"
        return 85.0, "0DTE underwater - Exit to avoid total loss", "Within 30 min"
    if pnl >= 100:
        return 75.0, "DOUBLED UP - Consider taking partial profits", "1-2 hours"
    if pnl >= 50:
        return 60.0, "+50% - Strong gains, trail stop higher", "2-4 hours"
    if dte is not None and dte <= tables.theta_high_dte and pnl < 20:
        return 55.0, "Low DTE + limited gains - Theta working against you", "2-4 hours"
    if momentum == "strong_bearish":
        return 65.0, "Strong bearish momentum - Consider early exit", "1-2 hours"
    if to_stop < tables.danger_zone_pct:
        return 40.0, "DANGER ZONE - Near stop loss, watch closely", "Monitor actively"
    if pnl >= 20 and momentum == "bullish":
        return 25.0, "Healthy profit + bullish momentum - Let it ride", "Hold until target or momentum shift"
    return 20.0, "Position developing - Monitor for signals", "Continue monitoring"


def position_signals(
    current: float,
    entry: float,
    target: float,
    stop: float,
    dte: int | None,
    momentum: str,
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> list[str]:
    signals: list[str] = []
    pnl = (current - entry) / entry * 100.0
    to_target = (target - current) / target * 100.0 if target else 100.0
    to_stop = (current - stop) / current * 100.0 if current else 0.0

    if pnl >= 100:
        signals.append("DOUBLED_UP")
    elif pnl >= 50:
        signals.append("STRONG_GAINS")
    elif pnl >= 20:
        signals.append("PROFITABLE")
    elif pnl <= -30:
        signals.append("DEEP_RED")
    elif pnl <= -15:
        signals.append("UNDERWATER")

    if to_target <= tables.near_target_pct:
        signals.append("NEAR_TARGET")
    if to_stop <= tables.near_stop_pct:
        signals.append("NEAR_STOP")

    if dte is not None:
        if dte == 0:
            signals.append("0DTE_URGENCY")
        elif dte == 1:
            signals.append("1DTE_THETA_BURN")
        elif dte <= tables.theta_high_dte:
            signals.append("LOW_DTE")

    if momentum == "strong_bullish":
        signals.append("STRONG_MOMENTUM_UP")
    elif momentum == "strong_bearish":
        signals.append("STRONG_MOMENTUM_DOWN")
    return signals


def with_quote_price(position: Mapping[str, Any], price: float | None) -> dict[str, Any]:
    """Copy of *position* with ``current_price`` filled from a joined quote."""
    merged = dict(position)
    if to_float(merged.get("current_price"), None) is None and price is not None:
        merged["current_price"] = price
    return merged


def advise_position(
    position: Mapping[str, Any],
    tables: RuleTables = DEFAULT_RULE_TABLES,
    now: float | None = None,
) -> PositionAdvisory:
    """Full advisory for one normalised exit-position record.

    Missing prices fall back to neutral values (current = entry, target =
    2× entry, stop = ½ entry) and are listed in ``defaults_applied``.
    An expiry is only turned into DTE against an explicit *now*; without
    one the DTE stays unknown and ``dte`` is reported as defaulted.
    """
    defaults: list[str] = []

    entry = to_float(position.get("entry_price"), None)
    if entry is None or entry <= 0:
        defaults.append("entry_price")
        entry = to_float(position.get("current_price"), None) or 1.0
    current = to_float(position.get("current_price"), None)
    if current is None or current <= 0:
        defaults.append("current_price")
        current = entry
    target = to_float(position.get("target_price"), None)
    if target is None or target <= 0:
        defaults.append("target_price")
        target = entry * 2
    stop = to_float(position.get("stop_loss"), None)
    if stop is None or stop <= 0:
        defaults.append("stop_loss")
        stop = entry * 0.5

    dte_raw = position.get("dte")
    dte = int(dte_raw) if isinstance(dte_raw, (int, float)) and not isinstance(dte_raw, bool) else None
    if dte is None:
        expiry = to_float(position.get("expiry_ts"), None)
        if expiry and now is not None:
            dte = dte_from_expiry(expiry, now)
        elif expiry:
            defaults.append("dte")

    pnl = (current - entry) / entry * 100.0
    to_stop = (current - stop) / current * 100.0
    momentum = momentum_from_pnl(pnl, tables)
    momentum_score = pnl * 2 + (to_stop if to_stop > 0 else -10.0)
    theta = theta_urgency(dte, tables)

    est_prob, reason, time_estimate = estimate_exit_probability(
        current, entry, target, stop, dte, momentum, tables,
    )
    upstream_prob = to_float(position.get("exit_probability"), None)
    prob = upstream_prob if upstream_prob is not None else est_prob

    decision = exit_window(prob, dte, theta, momentum, tables)
    signals = position_signals(current, entry, target, stop, dte, momentum, tables)

    return PositionAdvisory(
        position_id=str(position.get("position_id") or ""),
        symbol=str(position.get("symbol") or ""),
        asset_type=str(position.get("asset_type") or "stock"),
        exit_window=decision.window,
        exit_probability=round(prob, 2),
        exit_reason=reason,
        time_estimate=time_estimate,
        pnl_pct=round(pnl, 2),
        momentum=momentum,
        momentum_score=round(momentum_score, 2),
        theta_urgency=theta,
        dte=dte,
        signals=tuple(signals),
        reasons=decision.reasons,
        defaults_applied=tuple(defaults),
    )


def sort_advisories(advisories: Iterable[PositionAdvisory]) -> list[PositionAdvisory]:
    """Most urgent window first, then highest exit probability."""
    return sorted(
        advisories,
        key=lambda a: (WINDOW_PRIORITY.get(a.exit_window, 99), -a.exit_probability),
    )
