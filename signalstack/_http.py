"""Shared HTTP helpers for the upstream adapters.

Centralises URL/exception sanitisation so that API keys are never logged
in plain text, regardless of which adapter raises the error.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Regex to strip API keys/tokens from URLs before logging.
_TOKEN_RE = re.compile(r"(apikey|api_key|token|key)=[^&\s]+", re.IGNORECASE)

# ── Once-per-endpoint error suppression ─────────────────────────
# 400/403/404 responses typically mean the endpoint is not available
# for this account.  Warn once, then suppress to avoid log spam on every
# poll tick.
_WARNED_ENDPOINTS: set[str] = set()
_warned_lock = threading.Lock()

_TIER_LIMITED_CODES: frozenset[int] = frozenset({400, 401, 403, 404})


def sanitize_url(url: str) -> str:
    """Remove apikey/token query params from a URL for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", url)


def sanitize_exc(exc: BaseException) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", str(exc))


def _is_tier_limited_error(exc: BaseException) -> bool:
    return (
        isinstance(exc, httpx.HTTPStatusError)
        and exc.response.status_code in _TIER_LIMITED_CODES
    )


def log_fetch_warning(label: str, exc: BaseException) -> None:
    """Log a fetch failure, suppressing repeated tier-limited errors.

    On the first occurrence of a 400/401/403/404 for a given *label*,
    the error is logged at WARNING level with a note that further
    occurrences will be suppressed.  Subsequent occurrences for the
    same *label* are logged at DEBUG only.

    Other errors (network, timeout, 5xx, etc.) are always logged at WARNING.
    """
    msg = sanitize_exc(exc)
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    if _is_tier_limited_error(cause):
        with _warned_lock:
            already_warned = label in _WARNED_ENDPOINTS
            _WARNED_ENDPOINTS.add(label)
        if not already_warned:
            code = cause.response.status_code  # type: ignore[attr-defined]
            logger.warning(
                "%s fetch failed (HTTP %d) – endpoint not available; "
                "suppressing further warnings: %s",
                label, code, msg,
            )
        else:
            logger.debug("%s fetch failed (suppressed): %s", label, msg)
    else:
        logger.warning("%s fetch failed: %s", label, msg)


def reset_warned_endpoints() -> None:
    """Forget which endpoints were already warned about (tests, key change)."""
    with _warned_lock:
        _WARNED_ENDPOINTS.clear()


def safe_json(r: httpx.Response) -> Any:
    """Parse JSON response; raise ValueError with sanitized URL on failure."""
    ct = r.headers.get("content-type", "")
    try:
        return r.json()
    except (json.JSONDecodeError, ValueError):
        raise ValueError(
            f"Upstream returned non-JSON (content-type={ct!r}, "
            f"status={r.status_code}, url={sanitize_url(str(r.url))})"
        ) from None
