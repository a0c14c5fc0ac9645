"""User risk profile, validation and the active-profile store.

A profile is only ever *applied* after validation: the three strategy
allocations must each lie in [0, 100] and sum to exactly 100, and every
risk control must sit inside the range the settings sliders allow.  An
invalid profile is rejected and the previous one stays active.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from signalstack.error_taxonomy import PreferenceValidationError

from .sizing import KELLY_FRACTIONS

logger = logging.getLogger("intel.preferences")

RISK_TOLERANCES: tuple[str, ...] = ("conservative", "moderate", "aggressive")

# Inclusive slider ranges for the numeric controls.
PROFILE_BOUNDS: dict[str, tuple[float, float]] = {
    "options_allocation": (0, 100),
    "futures_allocation": (0, 100),
    "crypto_allocation": (0, 100),
    "max_position_size": (25, 500),
    "stop_loss_pct": (5, 50),
    "take_profit_pct": (10, 200),
    "trailing_stop_pct": (0, 30),
    "daily_loss_limit": (25, 500),
    "max_concurrent_trades": (1, 10),
    "max_drawdown_pct": (5, 50),
    "circuit_breaker_losses": (2, 10),
    "cooldown_minutes": (15, 120),
    "min_confluence_score": (50, 95),
}

# snake_case field -> upstream camelCase key
_WIRE_NAMES: dict[str, str] = {
    "options_allocation": "optionsAllocation",
    "futures_allocation": "futuresAllocation",
    "crypto_allocation": "cryptoAllocation",
    "max_position_size": "maxPositionSize",
    "stop_loss_pct": "stopLossPercent",
    "take_profit_pct": "takeProfitPercent",
    "trailing_stop_pct": "trailingStopPercent",
    "daily_loss_limit": "dailyLossLimit",
    "max_concurrent_trades": "maxConcurrentTrades",
    "max_drawdown_pct": "maxDrawdownPercent",
    "risk_tolerance": "riskTolerance",
    "kelly_fraction": "kellyFraction",
    "circuit_breaker_enabled": "circuitBreakerEnabled",
    "circuit_breaker_losses": "circuitBreakerLosses",
    "cooldown_minutes": "cooldownMinutes",
    "require_confluence": "requireConfluence",
    "min_confluence_score": "minConfluenceScore",
}


@dataclass(frozen=True)
class RiskProfile:
    options_allocation: float = 40.0
    futures_allocation: float = 30.0
    crypto_allocation: float = 30.0
    max_position_size: float = 100.0
    stop_loss_pct: float = 25.0
    take_profit_pct: float = 50.0
    trailing_stop_pct: float = 0.0
    daily_loss_limit: float = 100.0
    max_concurrent_trades: int = 3
    max_drawdown_pct: float = 20.0
    risk_tolerance: str = "moderate"
    kelly_fraction: str = "half"
    circuit_breaker_enabled: bool = True
    circuit_breaker_losses: int = 3
    cooldown_minutes: float = 30.0
    require_confluence: bool = True
    min_confluence_score: float = 70.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RiskProfile:
        """Build from snake_case or upstream camelCase keys; unknown keys ignored."""
        by_wire = {wire: name for name, wire in _WIRE_NAMES.items()}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = key if key in _WIRE_NAMES else by_wire.get(key)
            if name is not None and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    def to_payload(self) -> dict[str, Any]:
        """Upstream (camelCase) representation."""
        return {wire: getattr(self, name) for name, wire in _WIRE_NAMES.items()}

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class AllocationCheck:
    ok: bool
    total: float
    delta: float               # 100 - total
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    issues: tuple[str, ...] = ()
    allocation_delta: float = 0.0
    profile: RiskProfile | None = field(default=None, compare=False)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_allocation(options: Any, futures: Any, crypto: Any) -> AllocationCheck:
    """Allocations must each be in [0, 100] and sum to exactly 100."""
    issues: list[str] = []
    values = {"options": options, "futures": futures, "crypto": crypto}
    for name, value in values.items():
        if not _is_number(value):
            issues.append(f"{name} allocation must be a number, got {value!r}")
        elif not 0 <= value <= 100:
            issues.append(f"{name} allocation {value} outside [0, 100]")
    total = float(sum(v for v in values.values() if _is_number(v)))
    delta = round(100.0 - total, 6)
    if delta != 0:
        issues.append(f"Allocations sum to {total:g}%, must be 100% (delta {delta:+g})")
    return AllocationCheck(ok=not issues, total=total, delta=delta, issues=tuple(issues))


def validate_profile(profile: RiskProfile) -> ValidationResult:
    """Check allocations, slider ranges and enumerated choices."""
    alloc = validate_allocation(
        profile.options_allocation, profile.futures_allocation, profile.crypto_allocation,
    )
    issues = list(alloc.issues)
    for name, (lo, hi) in PROFILE_BOUNDS.items():
        if name.endswith("_allocation"):
            continue
        value = getattr(profile, name)
        if not _is_number(value):
            issues.append(f"{name} must be a number, got {value!r}")
        elif not lo <= value <= hi:
            issues.append(f"{name} = {value} outside [{lo}, {hi}]")
    if profile.risk_tolerance not in RISK_TOLERANCES:
        issues.append(f"risk_tolerance {profile.risk_tolerance!r} not in {RISK_TOLERANCES}")
    if profile.kelly_fraction not in KELLY_FRACTIONS:
        issues.append(f"kelly_fraction {profile.kelly_fraction!r} not in {tuple(KELLY_FRACTIONS)}")
    return ValidationResult(
        ok=not issues,
        issues=tuple(issues),
        allocation_delta=alloc.delta,
        profile=profile,
    )


class PreferenceStore:
    """Holds the active profile.  Only validated profiles replace it."""

    def __init__(self, initial: RiskProfile | None = None) -> None:
        self._lock = threading.Lock()
        self._active = initial if initial is not None else RiskProfile()

    @property
    def active(self) -> RiskProfile:
        with self._lock:
            return self._active

    def apply(self, profile: RiskProfile) -> ValidationResult:
        """Validate and, if ok, activate *profile*.  Never raises for bad input."""
        result = validate_profile(profile)
        if not result.ok:
            logger.warning("Rejected risk profile (%d issues): %s", len(result.issues), "; ".join(result.issues))
            return result
        with self._lock:
            self._active = profile
        logger.info("Risk profile applied (%s, %s Kelly)", profile.risk_tolerance, profile.kelly_fraction)
        return result

    def apply_strict(self, profile: RiskProfile) -> RiskProfile:
        result = self.apply(profile)
        if not result.ok:
            raise PreferenceValidationError("Risk profile rejected", issues=list(result.issues))
        return profile
