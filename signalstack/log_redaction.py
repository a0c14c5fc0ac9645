"""Scrub credentials from log lines before any handler writes them.

signalstack logs upstream URLs, webhook targets and exception text.  All
of those can carry the API key, the bearer token or the webhook secret,
so the root handlers get a filter that rewrites the final message.

    from signalstack.log_redaction import install_log_redaction
    install_log_redaction()  # once, after logging.basicConfig
"""
from __future__ import annotations

import logging
import re

MASK = "***REDACTED***"

# (pattern, replacement) pairs; group 1 is kept where a prefix must survive.
_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"((?:api[_-]?key|apikey|token|secret|password)\s*[:=]\s*[\"']?)[^\s'\"&]+", re.IGNORECASE), rf"\g<1>{MASK}"),
    (re.compile(r"(Bearer\s+)\S+", re.IGNORECASE), rf"\g<1>{MASK}"),
    (re.compile(r"(sha256=)[a-fA-F0-9]{64}"), rf"\g<1>{MASK}"),
    (re.compile(r"(https?://[^\s/]+/(?:hooks?|webhooks?)/)\S+", re.IGNORECASE), rf"\g<1>{MASK}"),
)


def redact_secrets(text: str) -> str:
    if not text:
        return text
    for pattern, repl in _RULES:
        text = pattern.sub(repl, text)
    return text


class LogRedactionFilter(logging.Filter):
    """Render the record once, redact the result, drop the args."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            rendered = str(record.msg)
        record.msg = redact_secrets(rendered)
        record.args = None
        return True


def install_log_redaction(logger: logging.Logger | None = None) -> int:
    """Attach one filter to each handler of *logger* (root by default).

    Handlers that already carry a ``LogRedactionFilter`` are skipped.
    Returns the number of handlers newly covered.
    """
    target = logger if logger is not None else logging.getLogger()
    added = 0
    for handler in target.handlers:
        if any(isinstance(f, LogRedactionFilter) for f in handler.filters):
            continue
        handler.addFilter(LogRedactionFilter())
        added += 1
    return added
