"""Aggregation merger: cached per-source records → per-symbol composites.

``merge(view_spec, reads)`` joins the records of every source named in
the view by ``join_key`` (default ``symbol``).  A symbol missing from one
source still yields a composite; that source's section is simply absent.

Same-source duplicates for one join value are collapsed:

* additive fields (premium, shares, mentions …) are summed;
* every other field takes the most recent record by ``ts``, ties
  broken by arrival order (later wins).

Derived fields (insider totals, flow premium split and direction) are
computed once here so that consumers never re-derive them.  ``MergeMemo``
keeps the composites of a view while none of its input reads changed.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from .adapters import SOURCE_CATALOG
from .common_types import SUB_SCORE_NAMES, CacheRead, CompositeSignal, FetchKey, SourceProvenance
from .freshness import freshness_score
from .utils import clamp, norm_symbol, to_float

logger = logging.getLogger(__name__)

# Fields summed across same-source duplicates.
ADDITIVE_FIELDS: dict[str, tuple[str, ...]] = {
    "insider": ("shares", "value"),
    "whale_flow": ("premium", "contracts"),
    "social_sentiment": ("mentions",),
    "catalysts": ("value",),
}

# Precedence for the headline price / change / volume of a composite.
_PRICE_SOURCES: tuple[tuple[str, str], ...] = (
    ("quote", "price"),
    ("movers", "price"),
    ("surge", "price"),
    ("exit_positions", "current_price"),
    ("trade_ideas", "price"),
)
_CHANGE_SOURCES: tuple[str, ...] = ("quote", "movers", "surge")
_VOLUME_SOURCES: tuple[str, ...] = ("quote", "movers")

_BOOKKEEPING = frozenset({"ts", "received_ts", "seq"})


@dataclass(frozen=True)
class ViewSpec:
    """Which sources a view joins, and how."""

    name: str
    sources: tuple[str, ...]
    join_key: str = "symbol"
    symbol_filter: str | None = None


SMART_MONEY = ViewSpec("smart_money", ("insider", "whale_flow", "movers"))
TRADE_IDEAS = ViewSpec("trade_ideas", ("trade_ideas", "surge", "social_sentiment", "whale_flow"))
EXIT_POSITIONS = ViewSpec("exit_positions", ("exit_positions", "quote"), join_key="position_id")


def symbol_spec(symbol: str) -> ViewSpec:
    """Every per-symbol source, filtered to one ticker."""
    sources = tuple(name for name, spec in SOURCE_CATALOG.items() if spec.per_symbol)
    return ViewSpec("symbol", sources, symbol_filter=norm_symbol(symbol))


# ── Source state (provenance) ───────────────────────────────────


@dataclass(frozen=True)
class _SourceState:
    has_value: bool
    stale: bool
    fetched_at: float | None
    age_s: float | None
    stale_after: float | None
    last_error: str | None


def _source_states(sources: Iterable[str], reads: Mapping[FetchKey, CacheRead]) -> dict[str, _SourceState]:
    """Fold every read of a source into one provenance state.

    A source spread over several keys (e.g. one quote key per ticker) is
    as stale as its stalest key and as old as its oldest.
    """
    out: dict[str, _SourceState] = {}
    for source in sources:
        rs = [r for k, r in reads.items() if k.source == source]
        if not rs:
            out[source] = _SourceState(False, True, None, None, None, None)
            continue
        fetched = [r.fetched_at for r in rs if r.fetched_at is not None]
        ages = [r.age_s for r in rs if r.age_s is not None]
        windows = [r.stale_after for r in rs if r.stale_after is not None]
        errors = [r.last_error for r in rs if r.last_error]
        out[source] = _SourceState(
            has_value=any(r.has_value for r in rs),
            stale=any(r.is_stale for r in rs),
            fetched_at=min(fetched) if fetched else None,
            age_s=max(ages) if ages else None,
            stale_after=min(windows) if windows else None,
            last_error=errors[0] if errors else None,
        )
    return out


def _provenance(
    sources: Iterable[str],
    states: Mapping[str, _SourceState],
    counts: Mapping[str, int],
) -> dict[str, SourceProvenance]:
    prov: dict[str, SourceProvenance] = {}
    for source in sources:
        st = states[source]
        prov[source] = SourceProvenance(
            source=source,
            present=counts.get(source, 0) > 0,
            stale=st.stale,
            fetched_at=st.fetched_at,
            age_s=st.age_s,
            freshness=freshness_score(st.age_s, st.stale_after) if st.fetched_at is not None else 0.0,
            last_error=st.last_error,
            record_count=counts.get(source, 0),
        )
    return prov


# ── Record collection / collapsing ──────────────────────────────


def _records_for(source: str, reads: Mapping[FetchKey, CacheRead]) -> list[dict[str, Any]]:
    """All records of *source* in arrival order (oldest fetch first)."""
    rs = [r for k, r in reads.items() if k.source == source and isinstance(r.value, list)]
    rs.sort(key=lambda r: (r.fetched_at or 0.0, r.key.label))
    out: list[dict[str, Any]] = []
    for r in rs:
        out.extend(rec for rec in r.value if isinstance(rec, dict))
    return out


def collapse(source: str, records: list[dict[str, Any]]) -> dict[str, Any]:
    """Collapse same-source duplicates for one join value into one section."""
    additive = ADDITIVE_FIELDS.get(source, ())
    # Stable sort keeps arrival order among equal timestamps.
    ordered = sorted(
        enumerate(records),
        key=lambda pair: (to_float(pair[1].get("ts"), 0.0), pair[0]),
    )
    section: dict[str, Any] = {}
    for _, rec in ordered:
        for name, value in rec.items():
            if name in _BOOKKEEPING or name in additive:
                continue
            if value is not None or name not in section:
                section[name] = value
    for name in additive:
        vals = [to_float(rec.get(name), None) for rec in records]
        present = [v for v in vals if v is not None]
        section[name] = sum(present) if present else None
    section["ts"] = to_float(ordered[-1][1].get("ts"), 0.0) if ordered else 0.0
    section["record_count"] = len(records)
    _DERIVERS.get(source, _no_derive)(section, records)
    return section


def _no_derive(section: dict[str, Any], records: list[dict[str, Any]]) -> None:
    return None


def _derive_insider(section: dict[str, Any], records: list[dict[str, Any]]) -> None:
    buys = [r for r in records if r.get("action") == "buy"]
    sells = [r for r in records if r.get("action") == "sell"]
    section["total_value"] = sum(to_float(r.get("value"), 0.0) or 0.0 for r in records)
    section["net_shares"] = (
        sum(to_float(r.get("shares"), 0.0) or 0.0 for r in buys)
        - sum(to_float(r.get("shares"), 0.0) or 0.0 for r in sells)
    )
    section["buy_count"] = len(buys)
    section["sell_count"] = len(sells)


def _derive_flow(section: dict[str, Any], records: list[dict[str, Any]]) -> None:
    calls = sum(to_float(r.get("premium"), 0.0) or 0.0 for r in records if r.get("option_type") == "call")
    puts = sum(to_float(r.get("premium"), 0.0) or 0.0 for r in records if r.get("option_type") == "put")
    total = sum(to_float(r.get("premium"), 0.0) or 0.0 for r in records)
    section["premium_total"] = total
    section["call_premium"] = calls
    section["put_premium"] = puts
    directional = calls + puts
    section["flow_direction"] = (calls - puts) / directional if directional > 0 else 0.0
    scores = [to_float(r.get("flow_score"), None) for r in records]
    scores = [s for s in scores if s is not None]
    if scores:
        section["flow_score"] = max(scores)
    elif directional > 0:
        # Premium-weighted bias mapped onto the 0..100 sub-score scale.
        section["flow_score"] = clamp(50.0 + 50.0 * section["flow_direction"], 0.0, 100.0)
    else:
        section["flow_score"] = None


_DERIVERS = {
    "insider": _derive_insider,
    "whale_flow": _derive_flow,
}


# ── Composite assembly ──────────────────────────────────────────


def _first_value(sections: Mapping[str, Mapping[str, Any]], pairs: Iterable[tuple[str, str]]) -> float | None:
    for source, name in pairs:
        val = to_float(sections.get(source, {}).get(name), None)
        if val is not None:
            return val
    return None


def sub_scores_for(sections: Mapping[str, Mapping[str, Any]]) -> dict[str, float | None]:
    """Pick each sub-score from the most specific source that carries it.

    Trade ideas carry all six; flow and sentiment fall back to the whale
    flow and social sentiment sections.
    """
    fallbacks = {
        "flow": (("whale_flow", "flow_score"),),
        "sentiment": (("social_sentiment", "sentiment_score"),),
    }
    out: dict[str, float | None] = {}
    for name in SUB_SCORE_NAMES:
        pairs = (("trade_ideas", f"{name}_score"),) + fallbacks.get(name, ())
        val = _first_value(sections, pairs)
        out[name] = clamp(val, 0.0, 100.0) if val is not None else None
    return out


def merge(view: ViewSpec, reads: Mapping[FetchKey, CacheRead]) -> list[CompositeSignal]:
    """Join the view's sources into composites, one per join value.

    Never raises for missing or failed sources; those show up only in
    provenance.  Output is sorted by join value for determinism.
    """
    states = _source_states(view.sources, reads)
    groups: dict[str, dict[str, list[dict[str, Any]]]] = {}
    symbols: dict[str, str] = {}

    # Position-keyed views still pull per-symbol sources (quotes) in by symbol.
    by_symbol: dict[str, dict[str, list[dict[str, Any]]]] = {}

    for source in view.sources:
        for rec in _records_for(source, reads):
            sym = norm_symbol(rec.get("symbol"))
            if view.symbol_filter and sym != view.symbol_filter:
                continue
            join = str(rec.get(view.join_key) or "").strip()
            if view.join_key == "symbol" or (not join and source == view.sources[0]):
                join = sym
            if not join:
                if view.join_key != "symbol" and sym:
                    by_symbol.setdefault(sym, {}).setdefault(source, []).append(rec)
                continue
            groups.setdefault(join, {}).setdefault(source, []).append(rec)
            if sym:
                symbols.setdefault(join, sym)

    if view.symbol_filter and not groups:
        groups[view.symbol_filter] = {}
        symbols[view.symbol_filter] = view.symbol_filter

    out: list[CompositeSignal] = []
    for join in sorted(groups):
        per_source = dict(groups[join])
        sym = symbols.get(join, join)
        for source, recs in by_symbol.get(sym, {}).items():
            per_source.setdefault(source, recs)
        sections = {source: collapse(source, recs) for source, recs in per_source.items() if recs}
        counts = {source: len(recs) for source, recs in per_source.items()}
        out.append(CompositeSignal(
            symbol=sym,
            view=view.name,
            price=_first_value(sections, _PRICE_SOURCES),
            change_pct=_first_value(sections, ((s, "change_pct") for s in _CHANGE_SOURCES)),
            volume=_first_value(sections, ((s, "volume") for s in _VOLUME_SOURCES)),
            sections=sections,
            sub_scores=sub_scores_for(sections),
            provenance=_provenance(view.sources, states, counts),
        ))
    missing = [s for s, st in states.items() if not st.has_value]
    if missing:
        logger.debug("%s view merged without %s", view.name, ", ".join(missing))
    return out


# ── Named views ─────────────────────────────────────────────────


def smart_money_view(reads: Mapping[FetchKey, CacheRead]) -> list[CompositeSignal]:
    """Insider filings + whale flow + movers, per symbol."""
    return merge(SMART_MONEY, reads)


def trade_ideas_view(reads: Mapping[FetchKey, CacheRead]) -> list[CompositeSignal]:
    """Curated ideas enriched with surge, sentiment and flow."""
    return merge(TRADE_IDEAS, reads)


def symbol_view(reads: Mapping[FetchKey, CacheRead], symbol: str) -> CompositeSignal:
    """Everything known about one ticker.  Always returns a composite."""
    return merge(symbol_spec(symbol), reads)[0]


def exit_positions_view(reads: Mapping[FetchKey, CacheRead]) -> list[CompositeSignal]:
    """One composite per open position, quotes joined in by symbol."""
    return merge(EXIT_POSITIONS, reads)


# ── Memoisation ─────────────────────────────────────────────────


def _fingerprint(view: ViewSpec, reads: Mapping[FetchKey, CacheRead]) -> str:
    """Deterministic hash of the data versions feeding *view*."""
    parts = [f"{view.name}|{view.join_key}|{view.symbol_filter}"]
    for key in sorted((k for k in reads if k.source in view.sources), key=lambda k: k.label):
        r = reads[key]
        fetched = f"{r.fetched_at:.6f}" if r.fetched_at is not None else "None"
        parts.append(f"{key.label}={fetched}/{r.last_error}/{r.has_value}")
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()


class MergeMemo:
    """Reuse a view's composites while its inputs are unchanged.

    Sections and derived fields are reused as-is; provenance (ages,
    staleness, freshness) is rebuilt on every call because it moves
    with the clock, not with the data.  At most *max_entries* slots are
    held; the least recently used one is dropped first.
    """

    def __init__(self, max_entries: int = 256) -> None:
        self._lock = threading.Lock()
        self._max_entries = max(1, max_entries)
        self._entries: OrderedDict[tuple[str, str | None], tuple[str, list[CompositeSignal]]] = OrderedDict()
        self._stats = {"hits": 0, "misses": 0}

    def merge(self, view: ViewSpec, reads: Mapping[FetchKey, CacheRead]) -> list[CompositeSignal]:
        fp = _fingerprint(view, reads)
        slot = (view.name, view.symbol_filter)
        with self._lock:
            cached = self._entries.get(slot)
            if cached is not None:
                self._entries.move_to_end(slot)
        if cached is not None and cached[0] == fp:
            with self._lock:
                self._stats["hits"] += 1
            states = _source_states(view.sources, reads)
            return [
                replace(c, provenance=_provenance(
                    view.sources, states, {s: p.record_count for s, p in c.provenance.items()},
                ))
                for c in cached[1]
            ]
        result = merge(view, reads)
        with self._lock:
            self._stats["misses"] += 1
            self._entries[slot] = (fp, result)
            self._entries.move_to_end(slot)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return result

    def invalidate(self, view_name: str | None = None) -> None:
        with self._lock:
            if view_name is None:
                self._entries.clear()
            else:
                for slot in [s for s in self._entries if s[0] == view_name]:
                    del self._entries[slot]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return dict(self._stats)
