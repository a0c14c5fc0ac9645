"""Staleness-aware cache with stale-while-revalidate and fetch dedup.

The cache is the only shared mutable structure in signalstack.  Every
mutation goes through ``refresh`` / ``invalidate`` / ``evict``; readers
get immutable ``CacheRead`` snapshots and never block on network I/O.

Contract:

* ``get(key)`` returns the best value currently held (possibly stale)
  plus ``is_stale`` and ``last_error``.
* ``refresh(key)`` issues at most one upstream call per key at a time.
  Concurrent callers attach to the in-flight ``Future``.
* A failed refresh keeps the prior value, records the error and leaves
  ``fetched_at`` alone so staleness keeps accruing honestly.
* ``fetched_at`` is stamped when the upstream call is *issued*; if two
  results ever overlap the later ``fetched_at`` wins.

Usage::

    cache = StalenessCache(cfg)
    cache.register_adapter("quote", HttpSourceAdapter(cfg))

    fut = cache.refresh(FetchKey.of("quote", "AAPL"))
    read = cache.get(FetchKey.of("quote", "AAPL"))   # never blocks
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any

from ._http import log_fetch_warning, sanitize_exc
from .adapters import SourceAdapter, interval_for
from .common_types import CacheEntry, CacheRead, FetchKey
from .config import StackConfig
from .error_taxonomy import SourceFetchError

logger = logging.getLogger(__name__)


class StalenessCache:
    """Keyed store ``FetchKey -> CacheEntry`` with per-key locking.

    Parameters
    ----------
    cfg : StackConfig, optional
        Supplies worker count and default staleness windows.
    executor : concurrent.futures.Executor, optional
        Pool that runs adapter calls.  When omitted the cache owns a
        ``ThreadPoolExecutor`` and shuts it down in ``close()``.
    clock : callable, optional
        Returns epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        cfg: StackConfig | None = None,
        *,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cfg = cfg if cfg is not None else StackConfig()
        self._clock = clock
        self._entries: dict[FetchKey, CacheEntry] = {}
        self._locks: dict[FetchKey, threading.Lock] = {}
        # Guards the key -> (entry, lock) tables only, never held during I/O.
        self._registry_lock = threading.Lock()
        self._adapters: dict[str, SourceAdapter] = {}
        self._owns_executor = executor is None
        self._executor = executor if executor is not None else ThreadPoolExecutor(
            max_workers=max(1, self._cfg.fetch_workers),
            thread_name_prefix="signalstack-fetch",
        )
        self._stats_lock = threading.Lock()
        self._stats = {"fetches": 0, "dedup_hits": 0, "failures": 0, "discarded": 0}

    # ── Adapter registry ────────────────────────────────────

    def register_adapter(self, source: str, adapter: SourceAdapter) -> None:
        with self._registry_lock:
            self._adapters[source] = adapter

    def adapter_for(self, source: str) -> SourceAdapter | None:
        with self._registry_lock:
            return self._adapters.get(source)

    # ── Slot management ─────────────────────────────────────

    def _default_stale_after(self, key: FetchKey) -> float:
        return self._cfg.stale_after(interval_for(key.source, self._cfg))

    def _slot(self, key: FetchKey, stale_after: float | None = None) -> tuple[CacheEntry, threading.Lock]:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(
                    key=key,
                    stale_after=stale_after if stale_after is not None else self._default_stale_after(key),
                    created_at=self._clock(),
                )
                self._entries[key] = entry
                self._locks[key] = threading.Lock()
            return entry, self._locks[key]

    def ensure(self, key: FetchKey, stale_after: float | None = None) -> None:
        """Create the entry for *key* if needed and set its staleness window."""
        entry, lock = self._slot(key, stale_after)
        if stale_after is not None:
            with lock:
                entry.stale_after = stale_after

    def _snapshot(self, entry: CacheEntry, now: float) -> CacheRead:
        age = (now - entry.fetched_at) if entry.fetched_at is not None else None
        return CacheRead(
            key=entry.key,
            value=entry.value,
            is_stale=entry.is_stale(now),
            last_error=entry.last_error,
            fetched_at=entry.fetched_at,
            age_s=age,
            stale_after=entry.stale_after,
            in_flight=entry.in_flight is not None,
        )

    # ── Reads ───────────────────────────────────────────────

    def get(self, key: FetchKey) -> CacheRead:
        """Return the best currently-held value; never blocks on I/O."""
        with self._registry_lock:
            entry = self._entries.get(key)
            lock = self._locks.get(key)
        if entry is None or lock is None:
            return CacheRead(key=key, value=None, is_stale=True)
        now = self._clock()
        with lock:
            entry.last_read_at = now
            return self._snapshot(entry, now)

    def get_many(self, keys: Iterable[FetchKey]) -> dict[FetchKey, CacheRead]:
        return {key: self.get(key) for key in keys}

    def is_fresh(self, key: FetchKey, max_age_s: float | None = None) -> bool:
        """True if *key* holds a value younger than *max_age_s* (or its window)."""
        read = self.get(key)
        if read.fetched_at is None:
            return False
        if max_age_s is None:
            return not read.is_stale
        return (read.age_s or 0.0) <= max_age_s

    def keys(self) -> list[FetchKey]:
        with self._registry_lock:
            return list(self._entries)

    # ── Refresh (dedup + stale-while-revalidate) ────────────

    def refresh(self, key: FetchKey, timeout: float | None = None) -> Future:
        """Trigger an upstream fetch unless one is already in flight.

        Returns a ``Future`` resolving to the post-refresh ``CacheRead``.
        Fetch errors are recorded on the entry; the future itself never
        raises for them.
        """
        entry, lock = self._slot(key)
        adapter = self.adapter_for(key.source)
        with lock:
            if entry.in_flight is not None:
                with self._stats_lock:
                    self._stats["dedup_hits"] += 1
                return entry.in_flight
            fut: Future = Future()
            entry.in_flight = fut
            issued_at = self._clock()
        with self._stats_lock:
            self._stats["fetches"] += 1
        try:
            self._executor.submit(self._run_fetch, key, adapter, timeout, issued_at, fut)
        except RuntimeError as exc:
            # Executor already shut down.
            self._complete_failure(key, fut, exc)
        return fut

    def _run_fetch(
        self,
        key: FetchKey,
        adapter: SourceAdapter | None,
        timeout: float | None,
        issued_at: float,
        fut: Future,
    ) -> None:
        try:
            if adapter is None:
                raise SourceFetchError(
                    f"No adapter registered for source {key.source!r}",
                    source=key.source, key=key.label,
                )
            value = adapter.fetch(key, timeout=timeout)
        except Exception as exc:
            log_fetch_warning(key.label, exc)
            self._complete_failure(key, fut, exc)
            return
        self._complete_success(key, fut, value, issued_at)

    def _complete_success(self, key: FetchKey, fut: Future, value: Any, issued_at: float) -> None:
        entry, lock = self._slot(key)
        now = self._clock()
        with lock:
            if entry.fetched_at is None or issued_at >= entry.fetched_at:
                entry.value = value
                entry.fetched_at = issued_at
                entry.last_error = None
                entry.last_error_at = None
                entry.invalidated = False
            else:
                with self._stats_lock:
                    self._stats["discarded"] += 1
                logger.debug(
                    "%s: discarding result issued at %.3f (newer value from %.3f held)",
                    key.label, issued_at, entry.fetched_at,
                )
            if entry.in_flight is fut:
                entry.in_flight = None
            read = self._snapshot(entry, now)
        fut.set_result(read)

    def _complete_failure(self, key: FetchKey, fut: Future, exc: BaseException) -> None:
        entry, lock = self._slot(key)
        now = self._clock()
        with self._stats_lock:
            self._stats["failures"] += 1
        with lock:
            entry.last_error = sanitize_exc(exc) or type(exc).__name__
            entry.last_error_at = now
            # Last good value is kept but no longer counts as fresh.
            entry.invalidated = True
            if entry.in_flight is fut:
                entry.in_flight = None
            read = self._snapshot(entry, now)
        fut.set_result(read)

    # ── Invalidation / eviction ─────────────────────────────

    def invalidate(self, key: FetchKey, refetch: bool = False) -> Future | None:
        """Mark *key* stale while keeping its value (no flash of "no data")."""
        with self._registry_lock:
            entry = self._entries.get(key)
            lock = self._locks.get(key)
        if entry is not None and lock is not None:
            with lock:
                entry.invalidated = True
        if refetch:
            return self.refresh(key)
        return None

    def invalidate_source(self, source: str, refetch: bool = False) -> int:
        """Invalidate every key of a logical source.  Returns the count."""
        keys = [k for k in self.keys() if k.source == source]
        for key in keys:
            self.invalidate(key, refetch=refetch)
        return len(keys)

    def evict(self, key: FetchKey) -> bool:
        """Drop *key* entirely.

        While a fetch is in flight the slot survives with its data cleared,
        so a later ``refresh`` still joins that fetch instead of issuing a
        second upstream call.  The in-flight result lands afterwards.
        """
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            lock = self._locks[key]
            with lock:
                if entry.in_flight is None:
                    self._entries.pop(key, None)
                    self._locks.pop(key, None)
                    return True
                entry.value = None
                entry.fetched_at = None
                entry.last_error = None
                entry.last_error_at = None
                entry.invalidated = False
        logger.debug("%s: evicted while in flight; keeping slot for the pending fetch", key.label)
        return True

    def prune(self, keep_seconds: float, protected: Iterable[FetchKey] = ()) -> int:
        """Evict unprotected entries untouched for longer than *keep_seconds*."""
        keep = set(protected)
        now = self._clock()
        victims: list[FetchKey] = []
        with self._registry_lock:
            for key, entry in self._entries.items():
                if key in keep or entry.in_flight is not None:
                    continue
                last_touch = max(entry.fetched_at or 0.0, entry.last_read_at, entry.created_at)
                if now - last_touch > keep_seconds:
                    victims.append(key)
            for key in victims:
                self._entries.pop(key, None)
                self._locks.pop(key, None)
        if victims:
            logger.info("Cache prune: evicted %d idle entries", len(victims))
        return len(victims)

    # ── Introspection / lifecycle ───────────────────────────

    @property
    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            out = dict(self._stats)
        with self._registry_lock:
            out["entries"] = len(self._entries)
        return out

    def close(self, wait: bool = True) -> None:
        """Shut down the owned worker pool (in-flight fetches complete)."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
