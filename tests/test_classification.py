"""Tests for the intel classification engine.

Covers tiers, exit windows, position advisories, risk levels, Kelly
sizing, the circuit breaker, preference validation and rule tables.
"""
from __future__ import annotations

import json

import pytest

from intel.circuit_breaker import ClosedTrade, evaluate_breaker
from intel.classify import classify
from intel.exit_window import (
    advise_position,
    dte_from_expiry,
    exit_window,
    momentum_from_pnl,
    sort_advisories,
    theta_urgency,
    with_quote_price,
)
from intel.preferences import (
    PreferenceStore,
    RiskProfile,
    validate_allocation,
    validate_profile,
)
from intel.risk_levels import requires_disclaimer, risk_level
from intel.sizing import kelly_fraction, position_size
from intel.thresholds import (
    DEFAULT_RULE_TABLES,
    RuleTables,
    compute_config_diff,
    load_rule_tables,
    rule_tables_from_dict,
    validate_rule_tables,
)
from intel.tiers import composite_score, grade_for, recommendation_for, tier_for
from signalstack.common_types import SUB_SCORE_NAMES, CompositeSignal, SourceProvenance
from signalstack.error_taxonomy import (
    ClassificationInputError,
    ConfigError,
    PreferenceValidationError,
)
from signalstack.normalize import normalize_payload

BASE_TS = 1_700_000_000.0


def _all(score: float) -> dict[str, float]:
    return {name: score for name in SUB_SCORE_NAMES}


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


class TestCompositeScore:
    def test_uniform_scores(self):
        score, missing = composite_score(_all(90.0))
        assert score == pytest.approx(90.0)
        assert missing == ()

    def test_weighted_mean(self):
        scores = {"technical": 100.0, "fundamental": 0.0, "quant": 0.0, "ml": 0.0, "flow": 0.0, "sentiment": 0.0}
        score, _ = composite_score(scores)
        assert score == pytest.approx(25.0)

    def test_missing_scores_renormalised(self):
        score, missing = composite_score({"technical": 80.0, "fundamental": None})
        assert score == pytest.approx(80.0)
        assert set(missing) == set(SUB_SCORE_NAMES) - {"technical"}

    def test_nothing_usable_is_neutral(self):
        score, missing = composite_score({"technical": float("nan")})
        assert score == DEFAULT_RULE_TABLES.neutral_score
        assert len(missing) == len(SUB_SCORE_NAMES)

    def test_out_of_range_clamped(self):
        score, _ = composite_score({"technical": 140.0})
        assert score == 100.0


class TestGradeBands:
    @pytest.mark.parametrize("score,grade", [
        (85.0, "S"),
        (84.99, "A+"),
        (82.0, "A+"),
        (78.0, "A"),
        (75.0, "A-"),
        (72.0, "B+"),
        (68.0, "B"),
        (65.0, "B-"),
        (62.0, "C+"),
        (58.0, "C"),
        (55.0, "C-"),
        (54.99, "D"),
        (0.0, "D"),
    ])
    def test_band_boundaries(self, score, grade):
        assert grade_for(score) == grade

    def test_tier_strips_modifier(self):
        assert tier_for("A+") == "A"
        assert tier_for("B-") == "B"
        assert tier_for("S") == "S"

    @pytest.mark.parametrize("score,label", [
        (80.0, "strong_buy"),
        (79.9, "buy"),
        (65.0, "buy"),
        (45.0, "hold"),
        (44.9, "sell"),
        (30.0, "sell"),
        (29.9, "strong_sell"),
    ])
    def test_recommendation_bands(self, score, label):
        assert recommendation_for(score) == label


# ---------------------------------------------------------------------------
# Exit window
# ---------------------------------------------------------------------------


class TestExitWindow:
    def test_high_probability_and_critical_dte(self):
        d = exit_window(85.0, dte=1)
        assert d.window == "immediate"
        assert d.reasons == ("EXIT_PROB_HIGH", "DTE_CRITICAL")

    def test_probability_80_is_not_immediate(self):
        assert exit_window(80.0, dte=10).window == "soon"

    def test_zero_dte_alone_is_immediate(self):
        d = exit_window(10.0, dte=0)
        assert d.window == "immediate"
        assert d.reasons == ("DTE_CRITICAL",)

    def test_moderate_probability_watch(self):
        d = exit_window(45.0, dte=10)
        assert d.window == "watch"
        assert d.reasons == ("EXIT_PROB_WATCH",)

    def test_theta_high_triggers_watch(self):
        d = exit_window(10.0, dte=3)
        assert d.window == "watch"
        assert "THETA_HIGH" in d.reasons

    def test_bearish_momentum_triggers_watch(self):
        d = exit_window(10.0, dte=30, momentum="bearish")
        assert d.reasons == ("MOMENTUM_BEARISH",)

    def test_quiet_position_holds(self):
        d = exit_window(20.0, dte=30, momentum="neutral")
        assert d.window == "hold"
        assert d.reasons == ("NO_TRIGGER",)

    def test_unknown_probability(self):
        assert exit_window(None).window == "hold"

    def test_theta_and_momentum_buckets(self):
        assert theta_urgency(None) == "low"
        assert theta_urgency(1) == "critical"
        assert theta_urgency(2) == "high"
        assert theta_urgency(6) == "moderate"
        assert theta_urgency(8) == "low"
        assert momentum_from_pnl(60) == "strong_bullish"
        assert momentum_from_pnl(25) == "bullish"
        assert momentum_from_pnl(0) == "neutral"
        assert momentum_from_pnl(-20) == "bearish"
        assert momentum_from_pnl(-40) == "strong_bearish"

    def test_dte_from_expiry(self):
        assert dte_from_expiry(None, BASE_TS) is None
        assert dte_from_expiry(BASE_TS + 2.5 * 86400, BASE_TS) == 3
        assert dte_from_expiry(BASE_TS - 86400, BASE_TS) == 0


class TestPositionAdvisory:
    def test_target_hit(self):
        adv = advise_position({
            "position_id": "p1", "symbol": "SPY", "asset_type": "option",
            "entry_price": 2.0, "current_price": 4.2, "target_price": 4.0, "stop_loss": 1.0, "dte": 5,
        })
        assert adv.exit_window == "immediate"
        assert adv.exit_probability == 95.0
        assert adv.exit_reason.startswith("TARGET HIT")
        assert adv.pnl_pct == 110.0
        assert adv.momentum == "strong_bullish"
        assert adv.signals == ("DOUBLED_UP", "NEAR_TARGET", "STRONG_MOMENTUM_UP")
        assert adv.defaults_applied == ()

    def test_developing_position_holds(self):
        adv = advise_position({
            "position_id": "p2", "symbol": "QQQ",
            "entry_price": 2.0, "current_price": 2.1, "target_price": 4.0, "stop_loss": 1.0, "dte": 10,
        })
        assert adv.exit_window == "hold"
        assert adv.exit_probability == 20.0
        assert adv.theta_urgency == "low"

    def test_zero_dte_underwater(self):
        adv = advise_position({
            "position_id": "p3", "entry_price": 2.0, "current_price": 1.5,
            "target_price": 4.0, "stop_loss": 1.0, "dte": 0,
        })
        assert adv.exit_window == "immediate"
        assert adv.exit_probability == 85.0
        assert "0DTE_URGENCY" in adv.signals
        assert "UNDERWATER" in adv.signals

    def test_upstream_probability_wins(self):
        adv = advise_position({
            "position_id": "p4", "entry_price": 2.0, "current_price": 2.1,
            "target_price": 4.0, "stop_loss": 1.0, "dte": 10, "exit_probability": 60.0,
        })
        assert adv.exit_window == "soon"
        assert adv.exit_probability == 60.0

    def test_missing_prices_defaulted(self):
        adv = advise_position({"position_id": "p5", "symbol": "IWM", "entry_price": 2.0})
        assert adv.defaults_applied == ("current_price", "target_price", "stop_loss")
        assert adv.pnl_pct == 0.0
        assert adv.exit_window == "hold"

    def test_dte_derived_from_expiry(self):
        adv = advise_position(
            {"position_id": "p6", "entry_price": 2.0, "current_price": 2.1, "target_price": 4.0,
             "stop_loss": 1.0, "expiry_ts": BASE_TS + 2 * 86400},
            now=BASE_TS,
        )
        assert adv.dte == 2
        assert adv.theta_urgency == "high"

    def test_expiry_without_clock_left_unknown(self):
        position = {"position_id": "p6", "entry_price": 2.0, "current_price": 2.1, "target_price": 4.0,
                    "stop_loss": 1.0, "expiry_ts": BASE_TS + 2 * 86400}
        adv = advise_position(position)
        assert adv.dte is None
        assert "dte" in adv.defaults_applied
        assert advise_position(position) == adv

    def test_sort_most_urgent_first(self):
        hold = advise_position({"position_id": "h", "entry_price": 2.0, "current_price": 2.1,
                                "target_price": 4.0, "stop_loss": 1.0, "dte": 10})
        now = advise_position({"position_id": "n", "entry_price": 2.0, "current_price": 4.5,
                               "target_price": 4.0, "stop_loss": 1.0, "dte": 10})
        soon = advise_position({"position_id": "s", "entry_price": 2.0, "current_price": 2.1,
                                "target_price": 4.0, "stop_loss": 1.0, "dte": 10, "exit_probability": 70})
        assert [a.position_id for a in sort_advisories([hold, soon, now])] == ["n", "s", "h"]


# ---------------------------------------------------------------------------
# Risk level
# ---------------------------------------------------------------------------


class TestRiskLevel:
    def test_upstream_profile_wins(self):
        d = risk_level(price=2.0, risk_profile="Aggressive")
        assert d.level == "high"
        assert d.reasons == ("UPSTREAM_PROFILE",)

    def test_unknown_profile_ignored(self):
        assert risk_level(atr_pct=1.0, risk_profile="mystery").level == "low"

    def test_penny_price_speculative(self):
        assert risk_level(price=3.5, atr_pct=1.0).level == "speculative"

    def test_short_dated_option_speculative(self):
        d = risk_level(price=50.0, asset_type="option", dte=5)
        assert d.level == "speculative"
        assert d.reasons == ("SHORT_DATED_OPTION",)

    @pytest.mark.parametrize("atr,level", [(1.5, "low"), (3.0, "medium"), (5.0, "high"), (8.0, "speculative")])
    def test_atr_bands(self, atr, level):
        assert risk_level(price=100.0, atr_pct=atr).level == level

    def test_no_input_defaults_medium(self):
        d = risk_level()
        assert d.level == "medium"
        assert d.defaulted is True

    def test_disclaimer(self):
        assert requires_disclaimer("speculative")
        assert requires_disclaimer("high")
        assert not requires_disclaimer("medium")


# ---------------------------------------------------------------------------
# classify()
# ---------------------------------------------------------------------------


class TestClassify:
    def test_strong_idea(self):
        signal = CompositeSignal(
            symbol="NVDA", view="trade_ideas", price=120.0,
            sections={"trade_ideas": {"atr_pct": 1.5}},
            sub_scores=_all(90.0),
        )
        result = classify(signal)
        assert result.grade == "S"
        assert result.tier == "S"
        assert result.recommendation == "strong_buy"
        assert result.risk_level == "low"
        assert result.exit_window == "hold"
        assert result.research_only is False
        assert "GRADE_S" in result.reasons

    def test_empty_composite_uses_neutral_defaults(self):
        result = classify(CompositeSignal(symbol="ZZZ", view="symbol"))
        assert result.composite_score == 50.0
        assert result.grade == "D"
        assert result.recommendation == "hold"
        assert result.risk_level == "medium"
        assert result.exit_window == "hold"
        assert "composite_score" in result.defaults_applied
        assert "risk_level" in result.defaults_applied
        assert "technical_score" in result.defaults_applied

    def test_upstream_grade_score_used_when_no_sub_scores(self):
        signal = CompositeSignal(symbol="AMD", view="trade_ideas", sections={"trade_ideas": {"grade_score": 83.0}})
        result = classify(signal)
        assert result.grade == "A+"
        assert "UPSTREAM_GRADE_SCORE" in result.reasons
        assert "composite_score" not in result.defaults_applied

    def test_lotto_position_is_research_only(self):
        signal = CompositeSignal(
            symbol="SPY", view="exit_positions", price=1.2,
            sections={"exit_positions": {
                "position_id": "p1", "symbol": "SPY", "asset_type": "option",
                "entry_price": 1.0, "current_price": 1.2, "target_price": 2.0, "stop_loss": 0.5, "dte": 0,
            }},
            sub_scores=_all(70.0),
        )
        result = classify(signal)
        assert result.exit_window == "immediate"
        assert result.risk_level == "speculative"
        assert result.research_only is True
        assert "DTE_CRITICAL" in result.reasons

    def test_stale_sources_reported(self):
        signal = CompositeSignal(
            symbol="AAPL", view="trade_ideas",
            sections={"trade_ideas": {"technical_score": 70.0}},
            sub_scores={"technical": 70.0},
            provenance={
                "trade_ideas": SourceProvenance("trade_ideas", present=True, stale=True),
                "surge": SourceProvenance("surge", present=False, stale=True),
            },
        )
        result = classify(signal)
        assert "STALE_TRADE_IDEAS" in result.reasons
        assert "STALE_SURGE" not in result.reasons

    def test_deterministic(self):
        signal = CompositeSignal(symbol="MSFT", view="symbol", price=410.0, sub_scores=_all(66.0))
        assert classify(signal) == classify(signal)
        assert classify(signal).to_dict() == classify(signal).to_dict()

    def test_position_price_filled_from_joined_quote(self):
        position = {"position_id": "p9", "symbol": "SPY", "entry_price": 100.0,
                    "target_price": 300.0, "stop_loss": 50.0, "dte": 30}
        signal = CompositeSignal(symbol="SPY", view="exit_positions", price=310.0,
                                 sections={"exit_positions": position})
        result = classify(signal, now=BASE_TS)
        advisory = advise_position(with_quote_price(position, 310.0), now=BASE_TS)
        assert "current_price" not in result.defaults_applied
        assert "NEAR_TARGET" in result.reasons
        assert result.exit_window == advisory.exit_window

    def test_expiry_resolved_against_position_fetch_time(self):
        signal = CompositeSignal(
            symbol="SPY", view="exit_positions",
            sections={"exit_positions": {
                "position_id": "p7", "symbol": "SPY", "asset_type": "option", "entry_price": 2.0,
                "current_price": 2.1, "target_price": 4.0, "stop_loss": 1.0,
                "expiry_ts": BASE_TS + 2 * 86400,
            }},
            provenance={"exit_positions": SourceProvenance(
                "exit_positions", present=True, stale=False, fetched_at=BASE_TS,
            )},
        )
        first = classify(signal)
        assert "LOW_DTE" in first.reasons
        assert "dte" not in first.defaults_applied
        assert classify(signal) == first

    def test_malformed_dte_is_neutral(self):
        (record,) = normalize_payload("exit_positions", [
            {"id": "p8", "symbol": "SPY", "entryPrice": 2.0, "currentPrice": 2.1, "targetPrice": 4.0,
             "stopLoss": 1.0, "dteRemaining": "n/a", "exitProbability": 10},
        ])
        assert record["dte"] is None
        signal = CompositeSignal(symbol="SPY", view="exit_positions", sections={"exit_positions": record})
        result = classify(signal, now=BASE_TS)
        assert result.exit_window == "hold"
        assert "DTE_CRITICAL" not in result.reasons
        assert "0DTE_URGENCY" not in result.reasons

    def test_rejects_non_composite(self):
        with pytest.raises(ClassificationInputError):
            classify({"symbol": "AAPL"})  # type: ignore[arg-type]

    def test_custom_tables(self):
        tables = rule_tables_from_dict({"grade_bands": [["S", 95], ["A", 60]]})
        signal = CompositeSignal(symbol="X", view="symbol", sub_scores=_all(90.0))
        assert classify(signal, tables).grade == "A"


# ---------------------------------------------------------------------------
# Kelly sizing
# ---------------------------------------------------------------------------


class TestKellySizing:
    def test_raw_fraction_clamped(self):
        raw, clamped, b = kelly_fraction(0.6, 200.0, 100.0)
        assert b == pytest.approx(2.0)
        assert raw == pytest.approx(0.4)
        assert clamped == 0.25

    def test_half_kelly_default(self):
        s = position_size(0.6, 200.0, 100.0, portfolio_value=10_000.0, max_position_size=5_000.0)
        assert s.selection == "half"
        assert s.fraction == pytest.approx(0.125)
        assert s.dollar_size == 1250.0
        assert s.capped is False
        assert s.aggressive is False

    def test_max_position_cap(self):
        s = position_size(0.6, 200.0, 100.0, portfolio_value=10_000.0, max_position_size=100.0)
        assert s.dollar_size == 100.0
        assert s.capped is True

    def test_full_is_aggressive(self):
        s = position_size(0.6, 200.0, 100.0, 10_000.0, 5_000.0, selection="full")
        assert s.aggressive is True
        assert s.fraction == 0.25
        assert s.quarter_kelly == pytest.approx(0.0625)

    def test_negative_edge(self):
        s = position_size(0.3, 100.0, 100.0, 10_000.0, 500.0)
        assert s.negative_edge is True
        assert s.dollar_size == 0.0
        assert s.half_kelly == 0.0

    def test_win_rate_clamped(self):
        s = position_size(1.0, 100.0, 100.0, 10_000.0, 500.0)
        assert s.win_rate == 0.99

    def test_unknown_selection(self):
        with pytest.raises(ValueError):
            position_size(0.6, 2.0, 1.0, 1000.0, 100.0, selection="double")


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    def _losses(self, *offsets: float, pnl: float = -40.0) -> list[ClosedTrade]:
        return [ClosedTrade(closed_at=BASE_TS + o, pnl=pnl) for o in offsets]

    def test_three_losses_suspend(self):
        state = evaluate_breaker(self._losses(0, 60, 120), now=BASE_TS + 300)
        assert state.suspended is True
        assert state.loss_streak == 3
        assert state.triggered_at == BASE_TS + 120
        assert state.suspended_until == BASE_TS + 120 + 1800
        assert state.should_halt

    def test_cooldown_elapsed_resets(self):
        state = evaluate_breaker(self._losses(0, 60, 120), now=BASE_TS + 2000)
        assert state.suspended is False
        assert state.loss_streak == 0
        assert state.suspended_until is None

    def test_win_resets_streak(self):
        trades = self._losses(0, 60) + [ClosedTrade(BASE_TS + 90, 25.0)] + self._losses(120)
        state = evaluate_breaker(trades, now=BASE_TS + 300)
        assert state.loss_streak == 1
        assert state.suspended is False

    def test_trade_after_cooldown_starts_new_streak(self):
        state = evaluate_breaker(self._losses(0, 60, 120, 2000), now=BASE_TS + 2100)
        assert state.loss_streak == 1
        assert state.suspended is False

    def test_disabled_never_suspends(self):
        state = evaluate_breaker(self._losses(0, 60, 120, 180), now=BASE_TS + 300, enabled=False)
        assert state.suspended is False
        assert state.loss_streak == 4

    def test_future_trades_ignored(self):
        state = evaluate_breaker(self._losses(0, 60, 120), now=BASE_TS + 90)
        assert state.loss_streak == 2

    def test_daily_loss_limit(self):
        state = evaluate_breaker(
            [{"closed_at": BASE_TS, "pnl": -60.0}, {"closed_at": BASE_TS + 10, "pnl": -50.0}],
            now=BASE_TS + 20,
            daily_loss_limit=100.0,
        )
        assert state.daily_pnl == -110.0
        assert state.daily_limit_hit is True
        assert state.suspended is False
        assert state.should_halt
        assert "Daily loss" in state.reason


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class TestAllocation:
    def test_valid(self):
        check = validate_allocation(40, 30, 30)
        assert check.ok
        assert check.delta == 0

    def test_sum_off(self):
        check = validate_allocation(50, 30, 30)
        assert not check.ok
        assert check.delta == -10
        assert check.total == 110

    def test_negative_component(self):
        check = validate_allocation(-10, 60, 50)
        assert not check.ok
        assert any("outside [0, 100]" in m for m in check.issues)

    def test_non_numeric(self):
        assert not validate_allocation("40", 30, 30).ok


class TestRiskProfile:
    def test_defaults_valid(self):
        assert validate_profile(RiskProfile()).ok

    def test_slider_bounds(self):
        result = validate_profile(RiskProfile(max_position_size=1000.0, cooldown_minutes=5))
        assert not result.ok
        assert len(result.issues) == 2

    def test_enumerations(self):
        result = validate_profile(RiskProfile(risk_tolerance="yolo", kelly_fraction="double"))
        assert len(result.issues) == 2

    def test_camel_case_round_trip(self):
        profile = RiskProfile.from_mapping({
            "optionsAllocation": 50, "futuresAllocation": 25, "cryptoAllocation": 25,
            "kellyFraction": "quarter", "bogus": 1,
        })
        assert profile.options_allocation == 50
        assert profile.kelly_fraction == "quarter"
        payload = profile.to_payload()
        assert payload["optionsAllocation"] == 50
        assert payload["circuitBreakerEnabled"] is True


class TestPreferenceStore:
    def test_invalid_profile_keeps_previous(self):
        store = PreferenceStore()
        before = store.active
        result = store.apply(RiskProfile(options_allocation=90.0))
        assert not result.ok
        assert result.allocation_delta == -50.0
        assert store.active is before

    def test_valid_profile_applied(self):
        store = PreferenceStore()
        new = RiskProfile(options_allocation=60.0, futures_allocation=20.0, crypto_allocation=20.0)
        assert store.apply(new).ok
        assert store.active == new

    def test_apply_strict_raises(self):
        store = PreferenceStore()
        with pytest.raises(PreferenceValidationError) as excinfo:
            store.apply_strict(RiskProfile(crypto_allocation=0.0))
        assert excinfo.value.issues


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------


class TestRuleTables:
    def test_defaults_validate(self):
        assert validate_rule_tables(DEFAULT_RULE_TABLES) == []

    def test_no_path_returns_defaults(self):
        assert load_rule_tables(None) is DEFAULT_RULE_TABLES
        assert load_rule_tables("") is DEFAULT_RULE_TABLES

    def test_load_overrides(self, tmp_path):
        p = tmp_path / "rules.json"
        p.write_text(json.dumps({"exit_immediate_probability": 75, "atr_bands": [1, 3, 6]}))
        tables = load_rule_tables(p)
        assert tables.exit_immediate_probability == 75
        assert tables.atr_bands == (1.0, 3.0, 6.0)
        assert tables.grade_bands == DEFAULT_RULE_TABLES.grade_bands

    def test_unknown_key_rejected(self, tmp_path):
        p = tmp_path / "rules.json"
        p.write_text(json.dumps({"grade_bandz": []}))
        with pytest.raises(ConfigError):
            load_rule_tables(p)
        assert load_rule_tables(p, strict=False) is DEFAULT_RULE_TABLES

    def test_bad_ordering_rejected(self, tmp_path):
        p = tmp_path / "rules.json"
        p.write_text(json.dumps({"grade_bands": [["S", 70], ["A", 80]]}))
        with pytest.raises(ConfigError):
            load_rule_tables(p)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_rule_tables(tmp_path / "nope.json")

    def test_validate_reports_issues(self):
        tables = RuleTables(sub_score_weights={"technical": 1.0}, neutral_risk_level="extreme")
        issues = validate_rule_tables(tables)
        assert any("Missing sub-score weights" in m for m in issues)
        assert any("neutral_risk_level" in m for m in issues)
        with pytest.raises(ConfigError):
            validate_rule_tables(tables, strict=True)

    def test_config_diff(self):
        diff = compute_config_diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
        assert diff == {"b": {"old": 2, "new": 3}, "c": {"old": None, "new": 4}}
