"""Global configuration for the signalstack poller.

All tunables can be overridden via environment variables.  Cadence
classes are configuration, not per-call-site constants: a source is
assigned a class in ``adapters.SOURCE_CATALOG`` and the class resolves
to seconds here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


CADENCE_CLASSES: tuple[str, ...] = ("realtime", "fast", "medium", "slow")

# A fetch may use at most this share of its poll interval.
_MAX_TIMEOUT_FRACTION = 0.95
_MIN_FETCH_TIMEOUT_S = 0.5


@dataclass(frozen=True)
class StackConfig:
    """Central configuration – one instance per process.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``StackConfig``.
    """

    # ── Upstream API (repr=False to prevent accidental logging) ──
    base_url: str = field(
        default_factory=lambda: os.getenv("SIGNALSTACK_BASE_URL", "http://localhost:5000"),
    )
    api_key: str = field(
        default_factory=lambda: os.getenv("SIGNALSTACK_API_KEY", ""),
        repr=False,
    )

    # ── Polling cadence classes (seconds) ───────────────────────
    poll_realtime_s: float = field(default_factory=lambda: _env_float("POLL_REALTIME_S", 30.0))
    poll_fast_s: float = field(default_factory=lambda: _env_float("POLL_FAST_S", 60.0))
    poll_medium_s: float = field(default_factory=lambda: _env_float("POLL_MEDIUM_S", 120.0))
    poll_slow_s: float = field(default_factory=lambda: _env_float("POLL_SLOW_S", 300.0))

    # Scale polling down outside US market hours.
    session_aware_polling: bool = field(
        default_factory=lambda: os.getenv("SESSION_AWARE_POLLING", "0") == "1",
    )

    # ── Fetch behaviour ─────────────────────────────────────────
    # Per-call timeout is min(request_timeout_s, interval * timeout_fraction)
    request_timeout_s: float = field(default_factory=lambda: _env_float("REQUEST_TIMEOUT_S", 10.0))
    timeout_fraction: float = field(default_factory=lambda: _env_float("TIMEOUT_FRACTION", 0.8))
    # An entry is stale after interval * stale_multiplier without a success.
    stale_multiplier: float = field(default_factory=lambda: _env_float("STALE_MULTIPLIER", 1.5))
    fetch_workers: int = field(default_factory=lambda: _env_int("FETCH_WORKERS", 8))

    # ── Outbound signal forwarding ──────────────────────────────
    webhook_url: str = field(default_factory=lambda: os.getenv("SIGNALSTACK_WEBHOOK_URL", ""))
    webhook_secret: str = field(
        default_factory=lambda: os.getenv("SIGNALSTACK_WEBHOOK_SECRET", ""),
        repr=False,
    )
    alert_throttle_s: int = field(default_factory=lambda: _env_int("ALERT_THROTTLE_S", 600))
    alert_min_score: float = field(default_factory=lambda: _env_float("ALERT_MIN_SCORE", 70.0))

    # ── Reports / rule tables ───────────────────────────────────
    report_dir: str = field(default_factory=lambda: os.getenv("REPORT_DIR", "artifacts/reports"))
    rule_tables_path: str = field(default_factory=lambda: os.getenv("RULE_TABLES_PATH", ""))

    # ── Cache retention ─────────────────────────────────────────
    keep_unregistered_s: float = field(
        default_factory=lambda: _env_float("KEEP_UNREGISTERED_S", 6 * 3600),
    )

    # ── Derived helpers ─────────────────────────────────────────

    def cadence_seconds(self, cadence: str) -> float:
        """Resolve a cadence class name to seconds."""
        mapping = {
            "realtime": self.poll_realtime_s,
            "fast": self.poll_fast_s,
            "medium": self.poll_medium_s,
            "slow": self.poll_slow_s,
        }
        try:
            return mapping[cadence]
        except KeyError:
            raise ValueError(f"Unknown cadence class {cadence!r}") from None

    def fetch_timeout(self, interval_s: float) -> float:
        """Per-call timeout that always stays below the poll interval."""
        ceiling = interval_s * _MAX_TIMEOUT_FRACTION
        budget = max(_MIN_FETCH_TIMEOUT_S, interval_s * min(self.timeout_fraction, _MAX_TIMEOUT_FRACTION))
        return min(self.request_timeout_s, budget, ceiling)

    def stale_after(self, interval_s: float) -> float:
        return interval_s * self.stale_multiplier
