"""Forward surge alerts to an external webhook.

Guarded like every outbound hook here:

- empty URL → disabled, returns ``None``;
- alert strength below ``min_score`` → skipped;
- the same symbol fired within ``throttle_s`` → skipped.

Payloads are HMAC-SHA256 signed (``X-Signature-256: sha256=<hex>``)
when a secret is configured.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

import httpx

from ._http import sanitize_exc, sanitize_url
from .freshness import decayed_strength
from .utils import norm_symbol, to_float

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Throttle state
# ---------------------------------------------------------------------------

_last_fired: dict[str, float] = {}
_throttle_lock = threading.Lock()
_THROTTLE_DICT_MAX = 500


def _is_throttled(symbol: str, throttle_s: float, now: float) -> bool:
    with _throttle_lock:
        last = _last_fired.get(symbol)
    return last is not None and (now - last) < throttle_s


def _mark_fired(symbol: str, now: float) -> None:
    with _throttle_lock:
        _last_fired[symbol] = now
        # Evict old entries
        if len(_last_fired) > _THROTTLE_DICT_MAX:
            stale = [k for k, v in _last_fired.items() if (now - v) > 3600]
            for k in stale:
                del _last_fired[k]


def reset_throttle() -> None:
    """Clear the throttle state (used on session reset and in tests)."""
    with _throttle_lock:
        _last_fired.clear()


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

def _sign_payload(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def build_signal_payload(
    alert: Mapping[str, Any],
    classification: Mapping[str, Any] | None = None,
    age_s: float | None = None,
    stale_after: float | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Webhook body for one surge record (plus optional classification)."""
    if now is None:
        now = time.time()
    score = to_float(alert.get("surge_score"), 0.0) or 0.0
    change = to_float(alert.get("change_pct"), None)
    action = "watch"
    if change is not None and score >= 80:
        action = "buy" if change > 0 else "sell"
    payload: dict[str, Any] = {
        "ticker": norm_symbol(alert.get("symbol")),
        "action": action,
        "surge_score": round(score, 2),
        "strength": round(decayed_strength(score, age_s, stale_after) if age_s is not None else score, 2),
        "price": to_float(alert.get("price"), None),
        "change_pct": change,
        "volume_ratio": to_float(alert.get("volume_ratio"), None),
        "pattern": str(alert.get("pattern") or ""),
        "detected_at": to_float(alert.get("ts"), None),
        "fired_at": now,
    }
    if classification:
        payload["grade"] = classification.get("grade")
        payload["tier"] = classification.get("tier")
        payload["risk_level"] = classification.get("risk_level")
    return payload


def send_signal(
    alert: Mapping[str, Any],
    url: str,
    secret: str = "",
    *,
    classification: Mapping[str, Any] | None = None,
    age_s: float | None = None,
    stale_after: float | None = None,
    min_score: float = 0.0,
    throttle_s: float = 600.0,
    timeout: float = 5.0,
    now: float | None = None,
    _client: httpx.Client | None = None,
) -> dict[str, Any] | None:
    """POST a surge alert to a webhook receiver.

    Parameters
    ----------
    alert : mapping
        A normalised surge record (``symbol``, ``surge_score``, …).
    url : str
        Webhook endpoint URL.  Empty string = disabled.
    secret : str
        HMAC-SHA256 signing secret.  Empty = no signature header.
    min_score : float
        Minimum freshness-decayed strength to fire.
    throttle_s : float
        Per-symbol minimum spacing between fires.
    _client : httpx.Client, optional
        Pre-created client to reuse; the caller closes it.

    Returns
    -------
    dict or None
        Response JSON on success, None on skip/error.
    """
    if not url:
        return None
    if now is None:
        now = time.time()
    payload = build_signal_payload(alert, classification, age_s, stale_after, now)
    symbol = payload["ticker"]
    if not symbol:
        logger.debug("send_signal: alert without symbol skipped")
        return None
    if payload["strength"] < min_score:
        return None
    if _is_throttled(symbol, throttle_s, now):
        logger.debug("send_signal: %s throttled", symbol)
        return None

    body = json.dumps(payload, ensure_ascii=False).encode()
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if secret:
        headers["X-Signature-256"] = f"sha256={_sign_payload(body, secret)}"

    managed = _client is None
    client = _client if _client is not None else httpx.Client(timeout=timeout)
    try:
        r = client.post(url, content=body, headers=headers)
        r.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Signal webhook failed for %s (%s): %s", symbol, sanitize_url(url), sanitize_exc(exc))
        return None
    finally:
        if managed:
            client.close()

    _mark_fired(symbol, now)
    logger.info("Signal forwarded for %s (strength=%.1f): HTTP %d", symbol, payload["strength"], r.status_code)
    try:
        data = r.json()
    except ValueError:
        return {"status": r.status_code, "text": r.text[:200]}
    return data if isinstance(data, dict) else {"status": r.status_code, "data": data}
