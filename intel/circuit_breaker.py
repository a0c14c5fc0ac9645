"""Circuit breaker: suspension after a run of consecutive losses.

Pure replay of closed-trade history.  The engine only reports whether
trading should be suspended; a separate executor acts on it.

Rules:
  * a loss (pnl < 0) extends the streak; a win or breakeven resets it;
  * when the streak reaches ``losses_threshold`` trading is suspended
    until ``trigger time + cooldown``;
  * once the cooldown has elapsed the streak resets to zero;
  * a disabled breaker never suspends;
  * separately, the day's realised loss is checked against the daily
    loss limit.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from signalstack.utils import to_float

logger = logging.getLogger("intel.circuit_breaker")


@dataclass(frozen=True)
class ClosedTrade:
    closed_at: float   # epoch seconds
    pnl: float


@dataclass(frozen=True)
class BreakerState:
    loss_streak: int
    suspended: bool
    suspended_until: float | None
    triggered_at: float | None
    daily_pnl: float
    daily_limit_hit: bool
    reason: str | None

    @property
    def should_halt(self) -> bool:
        return self.suspended or self.daily_limit_hit


def _coerce_trade(trade: ClosedTrade | dict[str, Any]) -> ClosedTrade:
    if isinstance(trade, ClosedTrade):
        return trade
    return ClosedTrade(
        closed_at=to_float(trade.get("closed_at"), 0.0) or 0.0,
        pnl=to_float(trade.get("pnl"), 0.0) or 0.0,
    )


def _same_utc_day(a: float, b: float) -> bool:
    return datetime.fromtimestamp(a, tz=UTC).date() == datetime.fromtimestamp(b, tz=UTC).date()


def evaluate_breaker(
    trades: Iterable[ClosedTrade | dict[str, Any]],
    now: float,
    *,
    enabled: bool = True,
    losses_threshold: int = 3,
    cooldown_minutes: float = 30.0,
    daily_loss_limit: float | None = None,
) -> BreakerState:
    """Replay *trades* (any order) up to *now* and report breaker state."""
    history = sorted((_coerce_trade(t) for t in trades), key=lambda t: t.closed_at)
    history = [t for t in history if t.closed_at <= now]
    cooldown_s = max(0.0, cooldown_minutes) * 60.0

    streak = 0
    suspended_until: float | None = None
    triggered_at: float | None = None
    for trade in history:
        if suspended_until is not None and trade.closed_at >= suspended_until:
            # Cooldown elapsed before this trade closed.
            streak = 0
            suspended_until = None
            triggered_at = None
        if trade.pnl < 0:
            streak += 1
        else:
            streak = 0
        if enabled and suspended_until is None and losses_threshold > 0 and streak >= losses_threshold:
            triggered_at = trade.closed_at
            suspended_until = trade.closed_at + cooldown_s

    if suspended_until is not None and now >= suspended_until:
        streak = 0
        suspended_until = None
        triggered_at = None

    daily_pnl = sum(t.pnl for t in history if _same_utc_day(t.closed_at, now))
    daily_hit = daily_loss_limit is not None and daily_loss_limit > 0 and daily_pnl <= -daily_loss_limit

    reason: str | None = None
    suspended = enabled and suspended_until is not None
    if suspended:
        reason = f"{streak} consecutive losses >= {losses_threshold}"
    elif daily_hit:
        reason = f"Daily loss ${abs(daily_pnl):.2f} >= limit ${daily_loss_limit:.2f}"
    if reason:
        logger.debug("Circuit breaker: %s", reason)

    return BreakerState(
        loss_streak=streak,
        suspended=suspended,
        suspended_until=suspended_until if suspended else None,
        triggered_at=triggered_at if suspended else None,
        daily_pnl=round(daily_pnl, 2),
        daily_limit_hit=daily_hit,
        reason=reason,
    )
