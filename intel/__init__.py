"""Classification engine: pure functions from composites to decisions.

No I/O.  Every cutoff comes from ``intel.thresholds.RuleTables``.
"""

from .circuit_breaker import BreakerState, ClosedTrade, evaluate_breaker
from .classify import ClassificationResult, classify
from .exit_window import PositionAdvisory, advise_position, exit_window, sort_advisories, theta_urgency
from .preferences import (
    PreferenceStore,
    RiskProfile,
    ValidationResult,
    validate_allocation,
    validate_profile,
)
from .risk_levels import RiskDecision, requires_disclaimer, risk_level
from .sizing import KellySizing, position_size
from .thresholds import DEFAULT_RULE_TABLES, RuleTables, load_rule_tables, validate_rule_tables
from .tiers import composite_score, grade_for, recommendation_for, tier_for

__all__ = [
    "BreakerState",
    "ClassificationResult",
    "ClosedTrade",
    "DEFAULT_RULE_TABLES",
    "KellySizing",
    "PositionAdvisory",
    "PreferenceStore",
    "RiskDecision",
    "RiskProfile",
    "RuleTables",
    "ValidationResult",
    "advise_position",
    "classify",
    "composite_score",
    "evaluate_breaker",
    "exit_window",
    "grade_for",
    "load_rule_tables",
    "position_size",
    "recommendation_for",
    "requires_disclaimer",
    "risk_level",
    "sort_advisories",
    "theta_urgency",
    "tier_for",
    "validate_allocation",
    "validate_profile",
    "validate_rule_tables",
]
