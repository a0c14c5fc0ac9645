"""User-triggered mutations: bot toggles, manual scans, preference saves.

Mutations are never polled.  Transport failures are retried with
backoff; HTTP errors are not (the upstream already said no).  On success
the affected cache keys are invalidated and re-fetched so dependent
views update without waiting for the next scheduler tick.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from intel.preferences import PreferenceStore, RiskProfile, validate_profile

from ._http import sanitize_exc
from .cache import StalenessCache
from .common_types import FetchKey
from .config import StackConfig
from .error_taxonomy import MutationError, PreferenceValidationError, retry

logger = logging.getLogger(__name__)

PREFERENCES_PATH = "/api/auto-lotto-bot/preferences"

# Scanner bot -> the source its scan refreshes.
SCAN_TARGETS: dict[str, str] = {
    "quant-bot": "trade_ideas",
    "options-flow": "whale_flow",
    "social-sentiment": "social_sentiment",
    "surge-scanner": "surge",
    "auto-lotto-bot": "exit_positions",
}

_BOT_STATUS = FetchKey.of("bot_status")


def _log_retry(attempt: int, exc: Exception) -> None:
    logger.warning("Mutation attempt %d failed, retrying: %s", attempt, sanitize_exc(exc))


class MutationClient:
    """Issues write calls against the upstream API.

    Parameters
    ----------
    cfg : StackConfig
    cache : StalenessCache, optional
        When given, affected keys are invalidated after each success.
    client : httpx.Client, optional
        Injected client (tests).  Otherwise one is created and owned.
    """

    def __init__(
        self,
        cfg: StackConfig,
        cache: StalenessCache | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.cfg = cfg
        self.cache = cache
        headers = {"Accept": "application/json"}
        if cfg.api_key:
            headers["Authorization"] = f"Bearer {cfg.api_key}"
        self._owns_client = client is None
        self.client = client if client is not None else httpx.Client(
            base_url=cfg.base_url,
            timeout=cfg.request_timeout_s,
            headers=headers,
        )

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    # ── Transport ───────────────────────────────────────────

    @retry(attempts=3, backoff=2.0, max_delay=10.0,
           retryable_exceptions=(httpx.TransportError,), on_retry=_log_retry)
    def _send(self, method: str, path: str, body: dict[str, Any] | None = None) -> httpx.Response:
        return self.client.request(method, path, json=body)

    def _call(self, action: str, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            r = self._send(method, path, body)
            r.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MutationError(
                f"{action} rejected: HTTP {exc.response.status_code}", action=action,
            ) from exc
        except httpx.HTTPError as exc:
            raise MutationError(f"{action} failed: {sanitize_exc(exc)}", action=action) from exc
        try:
            data = r.json()
        except ValueError:
            return {"status": r.status_code}
        return data if isinstance(data, dict) else {"status": r.status_code, "data": data}

    def _invalidate(self, *sources: str) -> None:
        if self.cache is None:
            return
        for source in sources:
            if source == "bot_status":
                self.cache.invalidate(_BOT_STATUS, refetch=True)
            else:
                self.cache.invalidate_source(source, refetch=True)

    # ── Public mutations ────────────────────────────────────

    def toggle_bot(self, bot: str, enabled: bool) -> dict[str, Any]:
        """Switch a bot on or off."""
        result = self._call("toggle_bot", "POST", f"/api/automations/{bot}/toggle", {"active": bool(enabled)})
        logger.info("Bot %s %s", bot, "enabled" if enabled else "disabled")
        self._invalidate("bot_status")
        return result

    def trigger_scan(self, scanner: str) -> dict[str, Any]:
        """Run a scanner now instead of waiting for its schedule."""
        result = self._call("trigger_scan", "POST", f"/api/automations/{scanner}/scan")
        logger.info("Manual scan triggered for %s", scanner)
        target = SCAN_TARGETS.get(scanner)
        self._invalidate("bot_status", *((target,) if target else ()))
        return result

    def save_preferences(self, profile: RiskProfile, store: PreferenceStore | None = None) -> dict[str, Any]:
        """Validate locally, then persist upstream and activate.

        An invalid profile raises ``PreferenceValidationError`` without
        any network call; the active profile is untouched.
        """
        check = validate_profile(profile)
        if not check.ok:
            raise PreferenceValidationError("Risk profile rejected", issues=list(check.issues))
        result = self._call("save_preferences", "PUT", PREFERENCES_PATH, profile.to_payload())
        if store is not None:
            store.apply(profile)
        self._invalidate("bot_status")
        return result
