"""Kelly-criterion position sizing.

``f* = p − q/b`` where *p* is the win rate, *q = 1 − p* and *b* the
average-win / average-loss ratio.  The raw fraction is clamped to
``[0, max_allocation]``; half and quarter Kelly are that clamped value
divided by 2 and 4.  A negative edge sizes every variant to zero.

Half Kelly is the default selection.  Full Kelly is available but
flagged ``aggressive``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from signalstack.utils import clamp

from .thresholds import DEFAULT_RULE_TABLES, RuleTables

logger = logging.getLogger("intel.sizing")

KELLY_FRACTIONS: dict[str, float] = {"full": 1.0, "half": 0.5, "quarter": 0.25}
DEFAULT_KELLY_FRACTION = "half"


@dataclass(frozen=True)
class KellySizing:
    win_rate: float
    win_loss_ratio: float
    raw_kelly: float
    full_kelly: float
    half_kelly: float
    quarter_kelly: float
    selection: str
    fraction: float           # selected fraction of portfolio
    dollar_size: float        # after the max_position_size cap
    capped: bool
    aggressive: bool
    negative_edge: bool
    rationale: str


def kelly_fraction(
    win_rate: float,
    avg_win: float,
    avg_loss: float,
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> tuple[float, float, float]:
    """Return ``(raw_kelly, clamped_kelly, win_loss_ratio)``."""
    p = clamp(win_rate, tables.kelly_min_win_rate, tables.kelly_max_win_rate)
    b = max(0.01, avg_win) / max(0.01, abs(avg_loss))
    raw = p - (1.0 - p) / b
    return raw, clamp(raw, 0.0, tables.kelly_max_allocation), b


def position_size(
    win_rate: float,
    avg_win: float,
    avg_loss: float,
    portfolio_value: float,
    max_position_size: float,
    selection: str = DEFAULT_KELLY_FRACTION,
    tables: RuleTables = DEFAULT_RULE_TABLES,
) -> KellySizing:
    """Recommended dollar size for the selected Kelly fraction."""
    if selection not in KELLY_FRACTIONS:
        raise ValueError(f"Unknown Kelly fraction {selection!r}; expected one of {sorted(KELLY_FRACTIONS)}")
    raw, clamped, b = kelly_fraction(win_rate, avg_win, avg_loss, tables)
    p = clamp(win_rate, tables.kelly_min_win_rate, tables.kelly_max_win_rate)

    if raw < 0:
        return KellySizing(
            win_rate=p, win_loss_ratio=b, raw_kelly=raw,
            full_kelly=0.0, half_kelly=0.0, quarter_kelly=0.0,
            selection=selection, fraction=0.0, dollar_size=0.0,
            capped=False, aggressive=selection == "full", negative_edge=True,
            rationale=f"Negative edge (raw Kelly {raw * 100:.2f}%) - no position",
        )

    fraction = clamped * KELLY_FRACTIONS[selection]
    uncapped = fraction * max(0.0, portfolio_value)
    dollar = min(uncapped, max(0.0, max_position_size))
    if selection == "full":
        rationale = "Full Kelly - aggressive, expect large drawdowns"
    elif selection == "half":
        rationale = "Half Kelly - balanced risk/reward"
    else:
        rationale = "Quarter Kelly - capital preservation"
    return KellySizing(
        win_rate=p,
        win_loss_ratio=b,
        raw_kelly=raw,
        full_kelly=clamped,
        half_kelly=clamped / 2,
        quarter_kelly=clamped / 4,
        selection=selection,
        fraction=fraction,
        dollar_size=round(dollar, 2),
        capped=uncapped > dollar,
        aggressive=selection == "full",
        negative_edge=False,
        rationale=rationale,
    )
