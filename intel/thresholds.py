"""Rule tables for the classification engine.

Every cutoff the engine uses lives here, never inline in the
classifiers, so bands can be tuned without touching code.  Defaults are
built in; an optional JSON file (``RULE_TABLES_PATH``) overrides any
subset of them.

Provides:
  RuleTables            — frozen bundle of every threshold
  DEFAULT_RULE_TABLES   — the built-in bands
  load_rule_tables()    — defaults merged with a JSON override file
  validate_rule_tables() — sanity-checks ordering and ranges
  compute_config_diff() — detect changes between two table snapshots

JSON override example::

    {
      "grade_bands": [["S", 88], ["A+", 84], ...],
      "sub_score_weights": {"technical": 0.3, ...},
      "exit_immediate_probability": 75
    }
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from signalstack.common_types import SUB_SCORE_NAMES
from signalstack.error_taxonomy import ConfigError

logger = logging.getLogger("intel.thresholds")

GRADE_ORDER: tuple[str, ...] = ("S", "A+", "A", "A-", "B+", "B", "B-", "C+", "C", "C-", "D")
RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "speculative")
EXIT_WINDOWS: tuple[str, ...] = ("hold", "watch", "soon", "immediate")
RECOMMENDATIONS: tuple[str, ...] = ("strong_buy", "buy", "hold", "sell", "strong_sell")


def _default_grade_bands() -> tuple[tuple[str, float], ...]:
    return (
        ("S", 85.0),
        ("A+", 82.0),
        ("A", 78.0),
        ("A-", 75.0),
        ("B+", 72.0),
        ("B", 68.0),
        ("B-", 65.0),
        ("C+", 62.0),
        ("C", 58.0),
        ("C-", 55.0),
    )


def _default_weights() -> dict[str, float]:
    return {
        "technical": 0.25,
        "fundamental": 0.20,
        "quant": 0.15,
        "ml": 0.15,
        "flow": 0.15,
        "sentiment": 0.10,
    }


def _default_recommendation_bands() -> tuple[tuple[str, float], ...]:
    return (
        ("strong_buy", 80.0),
        ("buy", 65.0),
        ("hold", 45.0),
        ("sell", 30.0),
    )


@dataclass(frozen=True)
class RuleTables:
    """All classification cutoffs.  Bands are ``(label, min_inclusive)``
    pairs in descending order; anything below the last band gets the
    fallback label (``D`` / ``strong_sell``)."""

    # ── Tier / grade ────────────────────────────────────────
    grade_bands: tuple[tuple[str, float], ...] = field(default_factory=_default_grade_bands)
    fallback_grade: str = "D"
    sub_score_weights: dict[str, float] = field(default_factory=_default_weights)
    neutral_score: float = 50.0

    # ── Recommendation ──────────────────────────────────────
    recommendation_bands: tuple[tuple[str, float], ...] = field(
        default_factory=_default_recommendation_bands,
    )
    fallback_recommendation: str = "strong_sell"

    # ── Exit window ─────────────────────────────────────────
    exit_immediate_probability: float = 80.0   # strictly above
    exit_immediate_dte: int = 1                # at or below
    exit_soon_probability: float = 55.0
    exit_watch_probability: float = 35.0
    theta_critical_dte: int = 1
    theta_high_dte: int = 3
    theta_moderate_dte: int = 7
    # P&L % cutoffs for strong_bullish / bullish / neutral / bearish
    momentum_bands: tuple[float, float, float, float] = (50.0, 20.0, -10.0, -30.0)
    near_target_pct: float = 10.0
    near_stop_pct: float = 15.0
    danger_zone_pct: float = 10.0

    # ── Risk level ──────────────────────────────────────────
    speculative_price: float = 5.0
    # ATR % upper bounds for low / medium / high; above → speculative
    atr_bands: tuple[float, float, float] = (2.0, 4.0, 7.0)
    lotto_dte: int = 7
    neutral_risk_level: str = "medium"

    # ── Position sizing ─────────────────────────────────────
    kelly_max_allocation: float = 0.25
    kelly_min_win_rate: float = 0.01
    kelly_max_win_rate: float = 0.99

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


DEFAULT_RULE_TABLES = RuleTables()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_descending(name: str, bands: tuple[tuple[str, float], ...], issues: list[str]) -> None:
    cutoffs = [c for _, c in bands]
    if any(b >= a for a, b in zip(cutoffs, cutoffs[1:])):
        issues.append(f"{name} cutoffs must be strictly descending: {cutoffs}")
    for label, cutoff in bands:
        if not 0.0 <= cutoff <= 100.0:
            issues.append(f"{name} cutoff for {label!r} = {cutoff} outside [0, 100]")


def validate_rule_tables(tables: RuleTables, *, strict: bool = False) -> list[str]:
    """Sanity-check a rule table.

    Returns a list of issue messages (empty = all ok).  With
    ``strict=True`` any issue raises ``ConfigError``.
    """
    issues: list[str] = []

    _check_descending("grade_bands", tables.grade_bands, issues)
    unknown = [g for g, _ in tables.grade_bands if g not in GRADE_ORDER]
    if unknown:
        issues.append(f"Unknown grade labels: {unknown}")

    _check_descending("recommendation_bands", tables.recommendation_bands, issues)
    unknown = [r for r, _ in tables.recommendation_bands if r not in RECOMMENDATIONS]
    if unknown:
        issues.append(f"Unknown recommendation labels: {unknown}")

    missing = set(SUB_SCORE_NAMES) - set(tables.sub_score_weights)
    if missing:
        issues.append(f"Missing sub-score weights: {sorted(missing)}")
    extra = set(tables.sub_score_weights) - set(SUB_SCORE_NAMES)
    if extra:
        issues.append(f"Unexpected sub-score weights (typo?): {sorted(extra)}")
    for name, w in tables.sub_score_weights.items():
        if not isinstance(w, (int, float)) or w < 0:
            issues.append(f"Weight '{name}' must be a non-negative number, got {w!r}")
    positive = sum(w for w in tables.sub_score_weights.values() if isinstance(w, (int, float)) and w > 0)
    if positive <= 0:
        issues.append("Sub-score weights sum to zero")

    if not 0.0 <= tables.neutral_score <= 100.0:
        issues.append(f"neutral_score {tables.neutral_score} outside [0, 100]")

    if not (tables.exit_immediate_probability >= tables.exit_soon_probability >= tables.exit_watch_probability):
        issues.append("Exit probability cutoffs must satisfy immediate >= soon >= watch")
    if not (tables.theta_critical_dte <= tables.theta_high_dte <= tables.theta_moderate_dte):
        issues.append("Theta DTE buckets must satisfy critical <= high <= moderate")
    m = tables.momentum_bands
    if any(b >= a for a, b in zip(m, m[1:])):
        issues.append(f"momentum_bands must be strictly descending: {list(m)}")

    a = tables.atr_bands
    if any(b <= x for x, b in zip(a, a[1:])):
        issues.append(f"atr_bands must be strictly ascending: {list(a)}")
    if tables.neutral_risk_level not in RISK_LEVELS:
        issues.append(f"neutral_risk_level {tables.neutral_risk_level!r} not in {RISK_LEVELS}")

    if not 0.0 < tables.kelly_max_allocation <= 1.0:
        issues.append(f"kelly_max_allocation {tables.kelly_max_allocation} outside (0, 1]")
    if not 0.0 < tables.kelly_min_win_rate < tables.kelly_max_win_rate < 1.0:
        issues.append("Kelly win-rate clamp must satisfy 0 < min < max < 1")

    for msg in issues:
        logger.warning("Rule table validation: %s", msg)

    if strict and issues:
        raise ConfigError(
            f"Rule table validation failed with {len(issues)} issue(s):\n"
            + "\n".join(f"  • {m}" for m in issues)
        )
    return issues


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_TUPLE_FIELDS = {"momentum_bands", "atr_bands"}
_BAND_FIELDS = {"grade_bands", "recommendation_bands"}


def _coerce(name: str, value: Any) -> Any:
    if name in _BAND_FIELDS:
        return tuple((str(label), float(cutoff)) for label, cutoff in value)
    if name in _TUPLE_FIELDS:
        return tuple(float(v) for v in value)
    if name == "sub_score_weights":
        return {str(k): float(v) for k, v in dict(value).items()}
    return value


def rule_tables_from_dict(overrides: dict[str, Any], base: RuleTables = DEFAULT_RULE_TABLES) -> RuleTables:
    """Apply *overrides* on top of *base*.  Unknown keys are an error."""
    known = {f.name for f in dataclasses.fields(RuleTables)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown rule table keys: {sorted(unknown)}")
    try:
        changes = {name: _coerce(name, value) for name, value in overrides.items()}
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Malformed rule table override: {exc}") from exc
    return dataclasses.replace(base, **changes)


def load_rule_tables(path: str | Path | None = None, *, strict: bool = True) -> RuleTables:
    """Return defaults merged with the JSON file at *path* (if any).

    A missing or empty *path* yields the defaults.  An unreadable or
    invalid file raises ``ConfigError`` when *strict*; otherwise it is
    logged and the defaults are used.
    """
    if not path:
        return DEFAULT_RULE_TABLES
    p = Path(path)
    try:
        overrides = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(overrides, dict):
            raise ConfigError(f"{p}: expected a JSON object, got {type(overrides).__name__}")
        tables = rule_tables_from_dict(overrides)
        validate_rule_tables(tables, strict=True)
    except (OSError, json.JSONDecodeError, ConfigError) as exc:
        if strict:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(f"Cannot load rule tables from {p}: {exc}") from exc
        logger.warning("Ignoring rule table override %s: %s", p, exc)
        return DEFAULT_RULE_TABLES

    diff = compute_config_diff(DEFAULT_RULE_TABLES.to_dict(), tables.to_dict())
    if diff:
        logger.info("Rule tables loaded from %s (%d overrides: %s)", p, len(diff), ", ".join(diff))
    return tables


def compute_config_diff(
    old: dict[str, Any],
    new: dict[str, Any],
) -> dict[str, dict[str, Any]]:
    """Return a dict of changed keys: {key: {"old": ..., "new": ...}}.

    Only includes keys whose values differ.
    """
    diff: dict[str, dict[str, Any]] = {}
    all_keys = set(old) | set(new)
    for key in sorted(all_keys):
        old_val = old.get(key)
        new_val = new.get(key)
        if old_val != new_val:
            diff[key] = {"old": old_val, "new": new_val}
    return diff
