"""Reference-counted poll scheduler.

One daemon thread drives ``tick()``; each due key is handed to
``StalenessCache.refresh`` which runs the adapter on the cache's worker
pool, so the scheduler thread itself never blocks on network I/O.

All registrations for the same ``FetchKey`` share one timer slot.  The
effective interval is the smallest interval among the currently enabled
registrations; when every registration is disabled the slot pauses
(cache entry retained), and when the last one is unregistered the slot
disappears.

Usage::

    scheduler = PollScheduler(cache, cfg)
    handle = scheduler.register(FetchKey.of("quote", "AAPL"), interval_s=30)
    scheduler.start()
    ...
    scheduler.unregister(handle)
    scheduler.stop()
"""
from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .adapters import interval_for
from .cache import StalenessCache
from .common_types import FetchKey, PollRegistration
from .config import StackConfig
from .market_session import session_interval

logger = logging.getLogger(__name__)

# Handles returned by ``register``; opaque to callers.
RegistrationHandle = PollRegistration

# Upper bound on how long the loop sleeps, so new registrations are
# picked up promptly even when every slot is far from due.
_MAX_WAIT_S = 1.0
_MIN_WAIT_S = 0.05
# Prune idle cache entries every N ticks of the background loop.
_PRUNE_EVERY_TICKS = 600


@dataclass
class _KeySlot:
    registrations: dict[int, PollRegistration] = field(default_factory=dict)
    last_fired: float | None = None


class PollScheduler:
    """Triggers ``cache.refresh`` for each registered key on its cadence.

    Thread-safe: registration tables are guarded by one lock; enabled
    predicates and cache calls run outside it.

    Parameters
    ----------
    cache : StalenessCache
    cfg : StackConfig, optional
    clock : callable, optional
        Epoch-seconds clock used when ``tick()`` is called without *now*.
    """

    def __init__(
        self,
        cache: StalenessCache,
        cfg: StackConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._cfg = cfg if cfg is not None else StackConfig()
        self._clock = clock
        self._slots: dict[FetchKey, _KeySlot] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        # Observable status
        self.tick_count: int = 0
        self.refresh_count: int = 0
        self.last_tick_ts: float = 0.0

    # ── Registration ────────────────────────────────────────

    def register(
        self,
        key: FetchKey,
        interval_s: float | None = None,
        enabled: bool | Callable[[], bool] = True,
    ) -> RegistrationHandle:
        """Add a consumer for *key*.  ``interval_s`` defaults to the source cadence."""
        if interval_s is None:
            interval_s = interval_for(key.source, self._cfg)
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")
        handle = PollRegistration(
            handle_id=next(self._ids), key=key, interval_s=float(interval_s), enabled=enabled,
        )
        with self._lock:
            slot = self._slots.setdefault(key, _KeySlot())
            slot.registrations[handle.handle_id] = handle
            count = len(slot.registrations)
        self._cache.ensure(key)
        logger.debug("Registered %s every %.1fs (consumers=%d)", key.label, interval_s, count)
        return handle

    def unregister(self, handle: RegistrationHandle) -> bool:
        """Remove one consumer (idempotent).  In-flight fetches still complete."""
        with self._lock:
            slot = self._slots.get(handle.key)
            if slot is None or handle.handle_id not in slot.registrations:
                return False
            del slot.registrations[handle.handle_id]
            if not slot.registrations:
                del self._slots[handle.key]
                logger.debug("Stopped polling %s (last consumer gone)", handle.key.label)
        return True

    def consumer_count(self, key: FetchKey) -> int:
        with self._lock:
            slot = self._slots.get(key)
            return len(slot.registrations) if slot else 0

    def active_keys(self) -> list[FetchKey]:
        """Keys with at least one registration (enabled or paused)."""
        with self._lock:
            return list(self._slots)

    def effective_interval(self, key: FetchKey) -> float | None:
        """Smallest enabled interval for *key*, or ``None`` when paused/unknown."""
        with self._lock:
            slot = self._slots.get(key)
            regs = list(slot.registrations.values()) if slot else []
        return _min_enabled_interval(regs)

    # ── Tick ────────────────────────────────────────────────

    def _scaled(self, interval: float, now: float) -> float:
        if not self._cfg.session_aware_polling:
            return interval
        return session_interval(interval, datetime.fromtimestamp(now, tz=UTC))

    def tick(self, now: float | None = None) -> list[FetchKey]:
        """Fire every due key once.  Returns the keys refreshed."""
        if now is None:
            now = self._clock()
        with self._lock:
            snapshot = [
                (key, slot.last_fired, list(slot.registrations.values()))
                for key, slot in self._slots.items()
            ]

        due: list[tuple[FetchKey, float]] = []
        for key, last_fired, regs in snapshot:
            base = _min_enabled_interval(regs)
            if base is None:
                continue  # paused
            interval = self._scaled(base, now)
            if last_fired is None or now - last_fired >= interval:
                due.append((key, interval))

        fired: list[FetchKey] = []
        with self._lock:
            for key, _interval in due:
                slot = self._slots.get(key)
                if slot is None:
                    continue  # unregistered since the snapshot
                slot.last_fired = now
                fired.append(key)

        intervals = dict(due)
        for key in fired:
            interval = intervals[key]
            try:
                self._cache.ensure(key, self._cfg.stale_after(interval))
                self._cache.refresh(key, timeout=self._cfg.fetch_timeout(interval))
            except Exception:
                # A broken key must not starve the others.
                logger.exception("Scheduling refresh for %s failed", key.label)
                continue
            self.refresh_count += 1

        self.tick_count += 1
        self.last_tick_ts = now
        return fired

    def seconds_until_due(self, now: float | None = None) -> float | None:
        """Time until the next enabled slot is due; ``None`` when idle."""
        if now is None:
            now = self._clock()
        with self._lock:
            snapshot = [(slot.last_fired, list(slot.registrations.values())) for slot in self._slots.values()]
        waits: list[float] = []
        for last_fired, regs in snapshot:
            base = _min_enabled_interval(regs)
            if base is None:
                continue
            if last_fired is None:
                return 0.0
            waits.append(last_fired + self._scaled(base, now) - now)
        if not waits:
            return None
        return max(0.0, min(waits))

    # ── Thread lifecycle ────────────────────────────────────

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background scheduling thread (idempotent)."""
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="signalstack-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Poll scheduler started (%d keys)", len(self.active_keys()))

    def stop(self, join_timeout: float | None = None) -> None:
        """Signal the thread to stop; optionally wait for it."""
        self._stop_event.set()
        logger.info("Poll scheduler stop requested")
        if join_timeout is not None and self._thread is not None:
            self._thread.join(timeout=join_timeout)

    def _run_loop(self) -> None:
        logger.info("Scheduler loop entered")
        while not self._stop_event.is_set():
            wait = self.seconds_until_due()
            wait = _MAX_WAIT_S if wait is None else min(_MAX_WAIT_S, max(_MIN_WAIT_S, wait))
            if self._stop_event.wait(timeout=wait):
                break
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
                continue
            if self.tick_count % _PRUNE_EVERY_TICKS == 0:
                self._cache.prune(self._cfg.keep_unregistered_s, protected=self.active_keys())
        logger.info("Scheduler loop exited")


def _min_enabled_interval(regs: list[PollRegistration]) -> float | None:
    enabled: list[float] = []
    for reg in regs:
        try:
            if reg.is_enabled():
                enabled.append(reg.interval_s)
        except Exception:
            logger.warning("enabled predicate for %s raised; treating as disabled", reg.key.label, exc_info=True)
    return min(enabled) if enabled else None
