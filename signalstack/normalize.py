"""Normalisation functions: raw upstream payloads → flat record dicts.

Each logical source has its own normaliser.  The functions are
intentionally **schema-tolerant**: they try multiple field names so that
minor API changes don't silently drop data.  Every record carries a
canonical ``symbol`` (upper-case, may be empty for non-symbol feeds such
as sectors or bot status) and ``ts`` (epoch seconds, 0.0 when unknown).

Quote:           symbol, price, changePercent, volume, timestamp
Movers:          symbol, price, changePercent, volume, category
Insider:         symbol, insiderName, title, transactionType, shares, value, filingDate
Whale flow:      symbol, optionType, premium, strike, expiry, detectedAt
Trade ideas:     symbol, technicalScore, fundamentalScore, quantScore, mlScore,
                 flowScore, sentimentScore, riskProfile, assetType, gradedAt
Exit positions:  id, symbol, entryPrice, currentPrice, targetPrice, stopLoss, …
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timezone
from typing import Any

from dateutil import parser as dtparser

from .utils import norm_symbol, to_float

logger = logging.getLogger(__name__)


# ── Shared helpers ──────────────────────────────────────────────

# Minimum length for a date string to be considered valid.
# Shortest valid format: "YYYYMMDD" = 8 chars.  Shorter strings like
# "5" or "12" are ambiguously parsed by dateutil (e.g. "5" → Feb 5).
_MIN_DATE_LEN = 8

# Epoch values above this are milliseconds.
_MS_THRESHOLD = 1e11

_LIST_WRAPPERS: tuple[str, ...] = ("data", "items", "results", "positions", "trades", "flows", "ideas")


def to_epoch(value: Any) -> float:
    """Parse a date/time string or epoch number to epoch seconds.

    Returns ``0.0`` for empty, too-short, or unparseable values so that
    the caller can detect 'no timestamp available'.  Naive datetimes
    are assumed UTC to guarantee deterministic results regardless of
    server timezone.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        return ts / 1000.0 if ts > _MS_THRESHOLD else ts
    s_stripped = str(value).strip()
    if len(s_stripped) < _MIN_DATE_LEN:
        logger.warning("Date string too short (%d chars): %r — returning epoch 0.", len(s_stripped), s_stripped)
        return 0.0
    try:
        dt = dtparser.parse(s_stripped)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except (ValueError, OverflowError):
        logger.warning("Unparseable date %r — returning epoch 0.", s_stripped[:80])
        return 0.0


def _first(it: dict[str, Any], *names: str) -> Any:
    for name in names:
        val = it.get(name)
        if val is not None and val != "":
            return val
    return None


def _as_records(payload: Any, source: str) -> list[dict[str, Any]]:
    """Coerce an upstream payload to a list of dicts.

    Accepts a bare list, a single object, or an object wrapping the list
    under one of the usual keys (``data``, ``items``, ``positions`` …).
    """
    if isinstance(payload, dict):
        for wrapper in _LIST_WRAPPERS:
            inner = payload.get(wrapper)
            if isinstance(inner, list):
                payload = inner
                break
        else:
            return [payload]
    if not isinstance(payload, list):
        if payload is not None:
            logger.warning(
                "%s returned %s instead of list — 0 records ingested.",
                source, type(payload).__name__,
            )
        return []
    return [item for item in payload if isinstance(item, dict)]


def _ts(it: dict[str, Any], *names: str) -> float:
    return to_epoch(_first(it, *names, "timestamp", "updatedAt", "createdAt", "date"))


def _direction(value: Any) -> str:
    s = str(value or "").strip().lower()
    if s in {"buy", "purchase", "p", "p-purchase", "acquire", "a"}:
        return "buy"
    if s in {"sell", "sale", "s", "s-sale", "dispose", "d"}:
        return "sell"
    return s or "unknown"


# ── Per-source normalisers ──────────────────────────────────────

def normalize_quote(it: dict[str, Any]) -> dict[str, Any]:
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "price": to_float(_first(it, "price", "currentPrice", "last"), None),
        "change_pct": to_float(_first(it, "changePercent", "changesPercentage", "change_pct"), None),
        "volume": to_float(_first(it, "volume", "vol"), None),
        "ts": _ts(it, "quoteTime", "lastUpdated"),
    }


def normalize_mover(it: dict[str, Any]) -> dict[str, Any]:
    rec = normalize_quote(it)
    rec["category"] = str(_first(it, "category", "moverType") or "")
    rec["timeframe"] = str(_first(it, "timeframe", "period") or "")
    return rec


def normalize_sector(it: dict[str, Any]) -> dict[str, Any]:
    return {
        "symbol": norm_symbol(_first(it, "etf", "symbol")),
        "sector": str(_first(it, "sector", "name") or ""),
        "change_pct": to_float(_first(it, "changePercent", "changesPercentage", "change_pct"), None),
        "ts": _ts(it),
    }


def normalize_trade_idea(it: dict[str, Any]) -> dict[str, Any]:
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "price": to_float(_first(it, "price", "currentPrice", "entryPrice"), None),
        "technical_score": to_float(_first(it, "technicalScore", "technical_score"), None),
        "fundamental_score": to_float(_first(it, "fundamentalScore", "fundamental_score"), None),
        "quant_score": to_float(_first(it, "quantScore", "quant_score"), None),
        "ml_score": to_float(_first(it, "mlScore", "aiScore", "ml_score"), None),
        "flow_score": to_float(_first(it, "flowScore", "flow_score"), None),
        "sentiment_score": to_float(_first(it, "sentimentScore", "sentiment_score"), None),
        "grade_score": to_float(_first(it, "gradeScore", "confidenceScore"), None),
        "atr_pct": to_float(_first(it, "atrPercent", "atr_pct"), None),
        "risk_profile": str(_first(it, "riskProfile", "risk_profile") or "").lower() or None,
        "asset_type": str(_first(it, "assetType", "asset_type") or "stock").lower(),
        "direction": str(_first(it, "direction") or "long").lower(),
        "source_label": str(_first(it, "source", "engine") or ""),
        "ts": _ts(it, "gradedAt", "generatedAt", "timestamp"),
    }


def normalize_insider(it: dict[str, Any]) -> dict[str, Any]:
    shares = to_float(_first(it, "shares", "securitiesTransacted", "qty"), 0.0)
    value = to_float(_first(it, "value", "totalValue", "amount"), None)
    price = to_float(_first(it, "price", "pricePerShare"), None)
    if value is None and price is not None:
        value = shares * price
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "insider": str(_first(it, "insiderName", "name", "reportingName") or ""),
        "role": str(_first(it, "title", "type", "role") or ""),
        "action": _direction(_first(it, "transactionType", "action", "acquistionOrDisposition")),
        "shares": shares,
        "value": value or 0.0,
        "ts": _ts(it, "filingDate", "transactionDate"),
    }


def normalize_catalyst(it: dict[str, Any]) -> dict[str, Any]:
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "event_type": str(_first(it, "eventType", "type", "category") or "unknown").lower(),
        "title": str(_first(it, "title", "headline") or "")[:240],
        "impact": str(_first(it, "impact", "materiality") or "").lower() or None,
        "value": to_float(_first(it, "contractValue", "value"), None),
        "ts": _ts(it, "eventDate", "filedAt"),
    }


def normalize_whale_flow(it: dict[str, Any]) -> dict[str, Any]:
    option_type = str(_first(it, "optionType", "type", "putCall") or "").lower()
    if option_type in {"c", "calls"}:
        option_type = "call"
    elif option_type in {"p", "puts"}:
        option_type = "put"
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker", "underlying")),
        "option_type": option_type or "unknown",
        "premium": to_float(_first(it, "premium", "totalPremium", "premiumAmount"), 0.0),
        "contracts": to_float(_first(it, "contracts", "size", "volume"), 0.0),
        "strike": to_float(_first(it, "strike", "strikePrice"), None),
        "expiry": str(_first(it, "expiry", "expiryDate", "expiration") or "") or None,
        "flow_score": to_float(_first(it, "flowScore", "score"), None),
        "ts": _ts(it, "detectedAt", "tradeTime"),
    }


def normalize_sentiment(it: dict[str, Any]) -> dict[str, Any]:
    score = to_float(_first(it, "sentimentScore", "score"), None)
    if score is None:
        # Polarity feeds report -1..+1 instead of 0..100.
        polarity = to_float(_first(it, "polarity", "sentiment"), None)
        if polarity is not None:
            score = (max(-1.0, min(1.0, polarity)) + 1.0) * 50.0
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "sentiment_score": score,
        "mentions": to_float(_first(it, "mentions", "mentionCount"), 0.0),
        "ts": _ts(it, "scannedAt"),
    }


def normalize_surge(it: dict[str, Any]) -> dict[str, Any]:
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "price": to_float(_first(it, "price", "currentPrice"), None),
        "change_pct": to_float(_first(it, "changePercent", "change_pct", "priceChange"), None),
        "volume_ratio": to_float(_first(it, "volumeRatio", "relativeVolume", "rvol"), None),
        "surge_score": to_float(_first(it, "surgeScore", "score", "confidence"), None),
        "pattern": str(_first(it, "pattern", "signalType") or ""),
        "ts": _ts(it, "detectedAt"),
    }


def normalize_bot_status(it: dict[str, Any]) -> dict[str, Any]:
    return {
        "symbol": "",
        "bot": str(_first(it, "bot", "name", "botName") or "default"),
        "enabled": bool(_first(it, "enabled", "isActive", "active") or False),
        "status": str(_first(it, "status", "state") or "unknown").lower(),
        "last_scan_ts": to_epoch(_first(it, "lastScan", "lastScanAt")),
        "open_positions": int(to_float(_first(it, "openPositions", "positionCount"), 0.0) or 0),
        "ts": _ts(it, "lastUpdated"),
    }


def normalize_exit_position(it: dict[str, Any]) -> dict[str, Any]:
    dte = to_float(_first(it, "dteRemaining", "dte"), None)
    return {
        "symbol": norm_symbol(_first(it, "symbol", "ticker")),
        "position_id": str(_first(it, "positionId", "id") or ""),
        "asset_type": str(_first(it, "assetType") or ("option" if _first(it, "optionType") else "stock")).lower(),
        "option_type": str(_first(it, "optionType") or "").lower() or None,
        "entry_price": to_float(_first(it, "entryPrice"), None),
        "current_price": to_float(_first(it, "currentPrice", "price"), None),
        "target_price": to_float(_first(it, "targetPrice"), None),
        "stop_loss": to_float(_first(it, "stopLoss"), None),
        "quantity": to_float(_first(it, "quantity", "qty"), 1.0),
        "expiry_ts": to_epoch(_first(it, "expiryDate", "expiry")),
        "dte": int(dte) if dte is not None else None,
        "exit_probability": to_float(_first(it, "exitProbability"), None),
        "portfolio": str(_first(it, "portfolioName", "portfolio") or ""),
        "ts": _ts(it, "lastUpdated"),
    }


_NORMALIZERS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "quote": normalize_quote,
    "movers": normalize_mover,
    "sectors": normalize_sector,
    "trade_ideas": normalize_trade_idea,
    "insider": normalize_insider,
    "catalysts": normalize_catalyst,
    "whale_flow": normalize_whale_flow,
    "social_sentiment": normalize_sentiment,
    "surge": normalize_surge,
    "bot_status": normalize_bot_status,
    "exit_positions": normalize_exit_position,
}


def normalize_payload(source: str, payload: Any) -> list[dict[str, Any]]:
    """Normalise a raw payload for *source* into a list of records.

    Unknown sources pass through as plain dict records.  Records are
    stamped with ``received_ts`` so the merger can break timestamp ties
    by arrival order.
    """
    fn = _NORMALIZERS.get(source)
    received = time.time()
    out: list[dict[str, Any]] = []
    for idx, raw in enumerate(_as_records(payload, source)):
        rec = fn(raw) if fn is not None else dict(raw)
        rec.setdefault("ts", 0.0)
        rec["received_ts"] = received
        rec["seq"] = idx
        out.append(rec)
    return out
