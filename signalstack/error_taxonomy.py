"""Structured error taxonomy and retry decorator for signalstack.

Provides:
  - A custom exception hierarchy so callers can catch specific failure
    modes (upstream fetch errors, preference validation, classification
    input, mutations) without resorting to bare ``Exception``.
  - A ``@retry()`` decorator with exponential backoff, jitter, exception-
    type filtering, and an on_retry callback.  Used for user-triggered
    mutations only; polled reads are retried by the next scheduler tick.
"""
from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("signalstack.error_taxonomy")


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class SignalStackError(Exception):
    """Base error for all signalstack / intel subsystems."""
    pass


class SourceFetchError(SignalStackError):
    """Upstream source returned an error, timed out, or sent bad data."""

    def __init__(self, message: str, *, source: str = "", key: str = "", status_code: int | None = None):
        self.source = source
        self.key = key
        self.status_code = status_code
        super().__init__(message)


class PreferenceValidationError(SignalStackError):
    """A RiskProfile failed validation and was not applied."""

    def __init__(self, message: str, *, issues: list[str] | None = None):
        self.issues = list(issues or [])
        super().__init__(message)


class ClassificationInputError(SignalStackError):
    """Classification input is unusable even after neutral defaults."""

    def __init__(self, message: str, *, symbol: str = "", field_name: str = ""):
        self.symbol = symbol
        self.field_name = field_name
        super().__init__(message)


class MutationError(SignalStackError):
    """A user-triggered mutation (toggle, scan, save) was rejected upstream."""

    def __init__(self, message: str, *, action: str = ""):
        self.action = action
        super().__init__(message)


class ConfigError(SignalStackError):
    """Invalid configuration value."""
    pass


# ---------------------------------------------------------------------------
# Retry decorator
# ---------------------------------------------------------------------------

def retry(
    attempts: int = 3,
    backoff: float = 1.5,
    max_delay: float = 30.0,
    jitter_pct: float = 0.10,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[..., Any] | None = None,
):
    """Decorator: retry a function with exponential backoff + jitter.

    Parameters
    ----------
    attempts : int
        Maximum number of tries (including the first).
    backoff : float
        Multiplier applied to the delay after each failure.
    max_delay : float
        Upper cap on the sleep between retries (seconds).
    jitter_pct : float
        ±N % random jitter added to the delay (0.10 = ±10 %).
    retryable_exceptions : tuple
        Only retry if the raised exception is an instance of one of these.
    on_retry : callable, optional
        ``on_retry(attempt, exception)`` called before each retry sleep.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            delay = 1.0
            last_exc: Exception | None = None
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retryable_exceptions as exc:
                    last_exc = exc
                    if attempt >= attempts:
                        raise
                    if on_retry is not None:
                        try:
                            on_retry(attempt, exc)
                        except Exception:
                            logger.debug("on_retry callback failed", exc_info=True)
                    jitter = delay * jitter_pct * (2 * random.random() - 1)
                    sleep_time = min(delay + jitter, max_delay)
                    logger.debug(
                        "retry %d/%d for %s after %.1fs — %s",
                        attempt, attempts, fn.__qualname__, sleep_time, exc,
                    )
                    time.sleep(max(sleep_time, 0))
                    delay = min(delay * backoff, max_delay)
            if last_exc:
                raise last_exc
        return wrapper
    return decorator
