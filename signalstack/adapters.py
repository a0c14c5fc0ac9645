"""Source adapters: one logical dataset per ``FetchKey``.

``SOURCE_CATALOG`` maps each logical source to its upstream path, the
names of its positional key parameters, and its cadence class.  Cadence
classes resolve to seconds via ``StackConfig.cadence_seconds``.

Uses httpx synchronously; the cache runs adapter calls on its worker
pool so the poll thread never blocks on network I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ._http import safe_json, sanitize_exc, sanitize_url
from .common_types import FetchKey
from .config import StackConfig
from .error_taxonomy import SourceFetchError
from .normalize import normalize_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSpec:
    """Static description of one upstream source."""

    name: str
    path: str
    cadence: str
    param_names: tuple[str, ...] = ()
    per_symbol: bool = False  # records are keyed by symbol


SOURCE_CATALOG: dict[str, SourceSpec] = {
    "quote": SourceSpec("quote", "/api/quote/{symbol}", "realtime", ("symbol",), per_symbol=True),
    "movers": SourceSpec("movers", "/api/market-movers", "fast", ("category", "timeframe"), per_symbol=True),
    "sectors": SourceSpec("sectors", "/api/sectors", "medium", ("timeframe",)),
    "trade_ideas": SourceSpec("trade_ideas", "/api/watchlist/graded", "slow", per_symbol=True),
    "insider": SourceSpec("insider", "/api/insider-trades", "slow", per_symbol=True),
    "catalysts": SourceSpec("catalysts", "/api/catalysts", "slow", per_symbol=True),
    "whale_flow": SourceSpec("whale_flow", "/api/whale-flows/recent", "medium", per_symbol=True),
    "social_sentiment": SourceSpec("social_sentiment", "/api/social-sentiment", "medium", per_symbol=True),
    "surge": SourceSpec("surge", "/api/surge-scanner", "fast", per_symbol=True),
    "bot_status": SourceSpec("bot_status", "/api/automations/status", "realtime"),
    "exit_positions": SourceSpec("exit_positions", "/api/auto-lotto/exit-intelligence", "realtime", per_symbol=True),
}


def interval_for(source: str, cfg: StackConfig) -> float:
    """Default poll interval (seconds) for a logical source."""
    spec = SOURCE_CATALOG.get(source)
    if spec is None:
        return cfg.poll_slow_s
    return cfg.cadence_seconds(spec.cadence)


def build_request(spec: SourceSpec, key: FetchKey) -> tuple[str, dict[str, Any]]:
    """Resolve a key to ``(path, query_params)``.

    Parameters named in the path template are substituted; the rest are
    sent as query parameters.  Extra positional params beyond
    ``param_names`` are rejected so typos surface as fetch errors.
    """
    if len(key.params) > len(spec.param_names):
        raise SourceFetchError(
            f"{key.label}: expected at most {len(spec.param_names)} params",
            source=key.source, key=key.label,
        )
    named = dict(zip(spec.param_names, key.params))
    path = spec.path
    query: dict[str, Any] = {}
    for name, value in named.items():
        placeholder = "{" + name + "}"
        if placeholder in path:
            path = path.replace(placeholder, str(value))
        elif value is not None:
            query[name] = value
    if "{" in path:
        raise SourceFetchError(f"{key.label}: unresolved path {path}", source=key.source, key=key.label)
    return path, query


class SourceAdapter(Protocol):
    """Anything that can fetch one key.  Must honour *timeout*."""

    def fetch(self, key: FetchKey, timeout: float | None = None) -> list[dict[str, Any]]:
        ...


class HttpSourceAdapter:
    """Synchronous adapter for the upstream JSON API."""

    def __init__(
        self,
        cfg: StackConfig,
        client: httpx.Client | None = None,
        catalog: dict[str, SourceSpec] | None = None,
    ) -> None:
        self.cfg = cfg
        self.catalog = catalog if catalog is not None else SOURCE_CATALOG
        headers = {"Accept": "application/json"}
        if cfg.api_key:
            headers["Authorization"] = f"Bearer {cfg.api_key}"
        self.client = client if client is not None else httpx.Client(
            base_url=cfg.base_url,
            timeout=cfg.request_timeout_s,
            headers=headers,
        )

    def fetch(self, key: FetchKey, timeout: float | None = None) -> list[dict[str, Any]]:
        """GET the key's endpoint and return normalised records."""
        spec = self.catalog.get(key.source)
        if spec is None:
            raise SourceFetchError(f"Unknown source {key.source!r}", source=key.source, key=key.label)
        path, query = build_request(spec, key)
        try:
            r = self.client.get(
                path,
                params=query,
                timeout=timeout if timeout is not None else self.cfg.request_timeout_s,
            )
            r.raise_for_status()
            payload = safe_json(r)
        except httpx.HTTPStatusError as exc:
            raise SourceFetchError(
                f"HTTP {exc.response.status_code} from {sanitize_url(str(exc.request.url))}",
                source=key.source, key=key.label, status_code=exc.response.status_code,
            ) from exc
        except httpx.TimeoutException as exc:
            raise SourceFetchError(
                f"{key.label} timed out after {timeout or self.cfg.request_timeout_s:.1f}s",
                source=key.source, key=key.label,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SourceFetchError(
                f"{key.label}: {type(exc).__name__}: {sanitize_exc(exc)}",
                source=key.source, key=key.label,
            ) from exc
        return normalize_payload(key.source, payload)

    def close(self) -> None:
        self.client.close()


class CallableSourceAdapter:
    """Wrap a plain function ``fn(key, timeout) -> payload`` as an adapter.

    Useful for in-process sources (e.g. a local scanner) and tests.  The
    returned payload goes through the same normalisers as HTTP data
    unless *normalize* is False.
    """

    def __init__(
        self,
        fn: Callable[[FetchKey, float | None], Any],
        *,
        normalize: bool = True,
    ) -> None:
        self._fn = fn
        self._normalize = normalize

    def fetch(self, key: FetchKey, timeout: float | None = None) -> list[dict[str, Any]]:
        payload = self._fn(key, timeout)
        if not self._normalize:
            return payload
        return normalize_payload(key.source, payload)
