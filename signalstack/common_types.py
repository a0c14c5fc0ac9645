"""Internal schema shared by the cache, scheduler, merger and consumers.

``FetchKey`` identifies a poll target, ``CacheEntry`` is the cache's
mutable per-key state, and ``CacheRead`` is the immutable snapshot that
everything outside the cache works with.  ``CompositeSignal`` is the
merged per-symbol view handed to the classification engine.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

SUB_SCORE_NAMES: tuple[str, ...] = (
    "technical",
    "fundamental",
    "quant",
    "ml",
    "flow",
    "sentiment",
)


@dataclass(frozen=True)
class FetchKey:
    """Logical source name + ordered parameter list.

    Two keys are equal iff the source and every parameter match by value.
    """

    source: str
    params: tuple[Any, ...] = ()

    @classmethod
    def of(cls, source: str, *params: Any) -> FetchKey:
        return cls(source=source, params=tuple(params))

    @property
    def label(self) -> str:
        """Short human-readable form for logs: ``quote[AAPL]``."""
        if not self.params:
            return self.source
        return f"{self.source}[{','.join(str(p) for p in self.params)}]"

    def __str__(self) -> str:
        return self.label


@dataclass
class CacheEntry:
    """Mutable per-key cache state.  Only ``StalenessCache`` touches it."""

    key: FetchKey
    stale_after: float
    value: Any | None = None
    fetched_at: float | None = None  # epoch seconds the successful call was issued
    in_flight: Future | None = None
    last_error: str | None = None
    last_error_at: float | None = None
    invalidated: bool = False
    created_at: float = 0.0
    last_read_at: float = 0.0

    def is_stale(self, now: float) -> bool:
        if self.fetched_at is None or self.invalidated:
            return True
        return (now - self.fetched_at) > self.stale_after


@dataclass(frozen=True)
class CacheRead:
    """Immutable snapshot returned by ``StalenessCache.get``."""

    key: FetchKey
    value: Any | None
    is_stale: bool
    last_error: str | None = None
    fetched_at: float | None = None
    age_s: float | None = None
    stale_after: float | None = None
    in_flight: bool = False

    @property
    def has_value(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class PollRegistration:
    """Binds a FetchKey to a refresh cadence and an ``enabled`` predicate.

    ``enabled`` may be a plain bool or a zero-arg callable evaluated on
    every scheduler tick (e.g. "only while the detail panel is open").
    """

    handle_id: int
    key: FetchKey
    interval_s: float
    enabled: bool | Callable[[], bool] = True

    def is_enabled(self) -> bool:
        if callable(self.enabled):
            return bool(self.enabled())
        return bool(self.enabled)


@dataclass(frozen=True)
class SourceProvenance:
    """Which source contributed to a composite, and how fresh it was."""

    source: str
    present: bool
    stale: bool
    fetched_at: float | None = None
    age_s: float | None = None
    freshness: float = 0.0
    last_error: str | None = None
    record_count: int = 0


def _freeze(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class CompositeSignal:
    """Per-symbol aggregate assembled by the merger.

    ``sections`` maps source name -> merged fields from that source.  A
    source with no record for this symbol has **no** section (absent, not
    empty), so consumers can tell "missing" from "zero".
    """

    symbol: str
    view: str
    price: float | None = None
    change_pct: float | None = None
    volume: float | None = None
    sections: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    sub_scores: Mapping[str, float | None] = field(default_factory=dict)
    provenance: Mapping[str, SourceProvenance] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "sections", _freeze({k: _freeze(v) for k, v in self.sections.items()}),
        )
        object.__setattr__(self, "sub_scores", _freeze(self.sub_scores))
        object.__setattr__(self, "provenance", _freeze(self.provenance))

    def has_source(self, source: str) -> bool:
        return source in self.sections

    def get(self, source: str, name: str, default: Any = None) -> Any:
        """Return ``sections[source][name]`` or *default* when absent."""
        section = self.sections.get(source)
        if section is None:
            return default
        return section.get(name, default)

    @property
    def stale_sources(self) -> list[str]:
        return sorted(name for name, p in self.provenance.items() if p.stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "view": self.view,
            "price": self.price,
            "change_pct": self.change_pct,
            "volume": self.volume,
            "sections": {k: dict(v) for k, v in self.sections.items()},
            "sub_scores": dict(self.sub_scores),
            "stale_sources": self.stale_sources,
        }
