"""Read-only query surface for presentation code.

``ConsumerInterface`` never performs network I/O.  Reads go through the
``StalenessCache`` (non-blocking snapshots) and the pure classification
engine; subscriptions go to the ``PollScheduler``.  A view is therefore
always answerable, possibly with stale or partial data, which its
provenance reports.

Usage::

    iface = ConsumerInterface(cache, scheduler)
    handles = iface.subscribe_view("trade_ideas")
    for composite, result in iface.classify_view("trade_ideas"):
        ...
    iface.get_classification("AAPL").grade
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from intel.circuit_breaker import BreakerState, ClosedTrade, evaluate_breaker
from intel.classify import ClassificationResult, classify
from intel.exit_window import PositionAdvisory, advise_position, sort_advisories, with_quote_price
from intel.preferences import PreferenceStore, RiskProfile, ValidationResult
from intel.sizing import KellySizing, position_size
from intel.thresholds import DEFAULT_RULE_TABLES, RuleTables
from signalstack.adapters import SOURCE_CATALOG
from signalstack.cache import StalenessCache
from signalstack.common_types import CacheRead, CompositeSignal, FetchKey
from signalstack.freshness import freshness_score
from signalstack.merger import (
    EXIT_POSITIONS,
    SMART_MONEY,
    TRADE_IDEAS,
    MergeMemo,
    ViewSpec,
    symbol_spec,
)
from signalstack.scheduler import PollScheduler, RegistrationHandle
from signalstack.utils import norm_symbol

logger = logging.getLogger(__name__)

VIEWS: dict[str, ViewSpec] = {
    SMART_MONEY.name: SMART_MONEY,
    TRADE_IDEAS.name: TRADE_IDEAS,
    EXIT_POSITIONS.name: EXIT_POSITIONS,
}


class ConsumerInterface:
    """Facade over cache, scheduler, merger and classification engine.

    Parameters
    ----------
    cache : StalenessCache
    scheduler : PollScheduler
    tables : RuleTables, optional
        Classification cutoffs (defaults built in).
    preferences : PreferenceStore, optional
        Active risk profile holder; a default-profile store is created
        when omitted.
    clock : callable, optional
    """

    def __init__(
        self,
        cache: StalenessCache,
        scheduler: PollScheduler,
        *,
        tables: RuleTables = DEFAULT_RULE_TABLES,
        preferences: PreferenceStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.scheduler = scheduler
        self.tables = tables
        self.preferences = preferences if preferences is not None else PreferenceStore()
        self._clock = clock
        self._memo = MergeMemo()

    # ── Subscriptions ───────────────────────────────────────

    def subscribe(
        self,
        key: FetchKey,
        interval_s: float | None = None,
        enabled: bool | Callable[[], bool] = True,
    ) -> RegistrationHandle:
        return self.scheduler.register(key, interval_s, enabled)

    def unsubscribe(self, handle: RegistrationHandle) -> bool:
        return self.scheduler.unregister(handle)

    def subscribe_view(
        self,
        name: str,
        symbols: Iterable[str] = (),
        enabled: bool | Callable[[], bool] = True,
    ) -> list[RegistrationHandle]:
        """Register every key a view needs at its sources' default cadences.

        Parameterised sources (quotes) get one key per symbol in *symbols*;
        parameterless sources get a single key.
        """
        spec = self._view_spec(name)
        handles: list[RegistrationHandle] = []
        for source in spec.sources:
            catalog = SOURCE_CATALOG.get(source)
            if catalog is not None and "symbol" in catalog.param_names:
                for sym in symbols:
                    handles.append(self.subscribe(FetchKey.of(source, norm_symbol(sym)), enabled=enabled))
            else:
                handles.append(self.subscribe(FetchKey.of(source), enabled=enabled))
        return handles

    # ── Reads ───────────────────────────────────────────────

    def _reads(self, sources: Iterable[str]) -> dict[FetchKey, CacheRead]:
        wanted = set(sources)
        return self.cache.get_many(k for k in self.cache.keys() if k.source in wanted)

    def _view_spec(self, name: str) -> ViewSpec:
        try:
            return VIEWS[name]
        except KeyError:
            raise ValueError(f"Unknown view {name!r}; expected one of {sorted(VIEWS)}") from None

    def get_view(self, name: str) -> list[CompositeSignal]:
        """Composites for a named view (``smart_money``, ``trade_ideas``, ``exit_positions``)."""
        spec = self._view_spec(name)
        return self._memo.merge(spec, self._reads(spec.sources))

    def get_composite(self, symbol: str) -> CompositeSignal:
        """Everything cached about *symbol*; never raises for missing data."""
        spec = symbol_spec(symbol)
        return self._memo.merge(spec, self._reads(spec.sources))[0]

    def get_classification(self, symbol: str) -> ClassificationResult:
        """Recomputed on every call from the current composite."""
        return classify(self.get_composite(symbol), self.tables, now=self._clock())

    def classify_view(self, name: str) -> list[tuple[CompositeSignal, ClassificationResult]]:
        now = self._clock()
        return [(c, classify(c, self.tables, now=now)) for c in self.get_view(name)]

    def exit_advisories(self) -> list[PositionAdvisory]:
        """Open positions, most urgent first."""
        now = self._clock()
        out: list[PositionAdvisory] = []
        for composite in self.get_view(EXIT_POSITIONS.name):
            position = composite.sections.get("exit_positions")
            if position is None:
                continue
            out.append(advise_position(with_quote_price(position, composite.price), self.tables, now=now))
        return sort_advisories(out)

    def bot_status(self) -> list[dict[str, Any]]:
        read = self.cache.get(FetchKey.of("bot_status"))
        return list(read.value or [])

    def freshness(self, key: FetchKey) -> dict[str, Any]:
        read = self.cache.get(key)
        return {
            "key": key.label,
            "has_value": read.has_value,
            "is_stale": read.is_stale,
            "fetched_at": read.fetched_at,
            "age_s": read.age_s,
            "freshness": freshness_score(read.age_s, read.stale_after) if read.fetched_at is not None else 0.0,
            "last_error": read.last_error,
            "in_flight": read.in_flight,
        }

    # ── Preferences / risk controls ─────────────────────────

    @property
    def profile(self) -> RiskProfile:
        return self.preferences.active

    def apply_preferences(self, profile: RiskProfile) -> ValidationResult:
        """Validate and activate; on failure the prior profile stays active."""
        return self.preferences.apply(profile)

    def circuit_breaker_status(
        self,
        trades: Iterable[ClosedTrade | dict[str, Any]],
        now: float | None = None,
    ) -> BreakerState:
        p = self.profile
        return evaluate_breaker(
            trades,
            now if now is not None else self._clock(),
            enabled=p.circuit_breaker_enabled,
            losses_threshold=p.circuit_breaker_losses,
            cooldown_minutes=p.cooldown_minutes,
            daily_loss_limit=p.daily_loss_limit,
        )

    def position_size(
        self,
        win_rate: float,
        avg_win: float,
        avg_loss: float,
        portfolio_value: float,
        selection: str | None = None,
    ) -> KellySizing:
        """Kelly size under the active profile's fraction and position cap."""
        p = self.profile
        return position_size(
            win_rate, avg_win, avg_loss, portfolio_value,
            max_position_size=p.max_position_size,
            selection=selection or p.kelly_fraction,
            tables=self.tables,
        )
