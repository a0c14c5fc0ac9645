"""US market-session helpers for session-aware polling.

The scheduler can stretch poll intervals outside regular hours to save
upstream quota: nothing moves on a Sunday, so a 30 s quote poll is wasted.
"""
from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

_ET = ZoneInfo("America/New_York")

# NYSE regular session: 09:30 – 16:00 ET
_NYSE_OPEN_MIN = 9 * 60 + 30   # 570
_NYSE_CLOSE_MIN = 16 * 60      # 960
_PREMARKET_START_MIN = 4 * 60  # 04:00 ET
_AFTER_HOURS_END_MIN = 20 * 60  # 20:00 ET


def now_et() -> datetime:
    """Return current time in US/Eastern."""
    return datetime.now(_ET)


def _minutes_since_midnight(dt: datetime) -> int:
    return dt.hour * 60 + dt.minute


def _as_et(dt: datetime | None) -> datetime:
    if dt is None:
        return now_et()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=_ET)
    return dt.astimezone(_ET)


def is_weekend(dt: datetime | None = None) -> bool:
    """True on Saturday (5) or Sunday (6)."""
    return _as_et(dt).weekday() >= 5


def market_status(dt: datetime | None = None) -> str:
    """Return ``open`` / ``pre_market`` / ``after_hours`` / ``closed``."""
    dt = _as_et(dt)
    if dt.weekday() >= 5:
        return "closed"
    mins = _minutes_since_midnight(dt)
    if _NYSE_OPEN_MIN <= mins < _NYSE_CLOSE_MIN:
        return "open"
    if _PREMARKET_START_MIN <= mins < _NYSE_OPEN_MIN:
        return "pre_market"
    if _NYSE_CLOSE_MIN <= mins < _AFTER_HOURS_END_MIN:
        return "after_hours"
    return "closed"


def session_interval(base_interval: float, dt: datetime | None = None) -> float:
    """Return a longer poll interval outside regular hours.

    During market hours: base_interval (unchanged)
    Pre-market: base_interval * 2
    After-hours: base_interval * 3
    Overnight: max(60, base_interval * 10)
    Weekends: max(120, base_interval * 20)
    """
    dt = _as_et(dt)
    if dt.weekday() >= 5:
        return max(120.0, base_interval * 20)
    status = market_status(dt)
    if status == "open":
        return base_interval
    if status == "pre_market":
        return base_interval * 2
    if status == "after_hours":
        return base_interval * 3
    return max(60.0, base_interval * 10)
