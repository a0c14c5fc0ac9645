"""Tests for source adapters, payload normalisers, HTTP helpers and config."""
from __future__ import annotations

import logging
import os
import unittest
from unittest.mock import patch

import httpx
import pytest

from signalstack._http import log_fetch_warning, reset_warned_endpoints, sanitize_url
from signalstack.adapters import (
    SOURCE_CATALOG,
    CallableSourceAdapter,
    HttpSourceAdapter,
    build_request,
    interval_for,
)
from signalstack.common_types import FetchKey
from signalstack.config import StackConfig
from signalstack.error_taxonomy import SourceFetchError
from signalstack.normalize import (
    normalize_payload,
    normalize_sentiment,
    normalize_whale_flow,
    to_epoch,
)


def _adapter(handler) -> HttpSourceAdapter:
    cfg = StackConfig(base_url="http://upstream.test", api_key="secret-key")
    client = httpx.Client(base_url=cfg.base_url, transport=httpx.MockTransport(handler))
    return HttpSourceAdapter(cfg, client=client)


# ---------------------------------------------------------------------------
# HttpSourceAdapter
# ---------------------------------------------------------------------------


class TestHttpSourceAdapter:
    def test_quote_fetch_normalised(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"symbol": "aapl", "price": "187.25", "changePercent": 1.1})

        records = _adapter(handler).fetch(FetchKey.of("quote", "AAPL"), timeout=2.0)
        assert seen[0].url.path == "/api/quote/AAPL"
        assert records[0]["symbol"] == "AAPL"
        assert records[0]["price"] == 187.25
        assert records[0]["change_pct"] == 1.1
        assert "received_ts" in records[0]

    def test_query_params_for_unbound_names(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": []})

        assert _adapter(handler).fetch(FetchKey.of("movers", "gainers", "1d")) == []
        assert seen[0].url.params["category"] == "gainers"
        assert seen[0].url.params["timeframe"] == "1d"

    def test_http_error_status(self):
        adapter = _adapter(lambda request: httpx.Response(404, json={"error": "nope"}))
        with pytest.raises(SourceFetchError) as excinfo:
            adapter.fetch(FetchKey.of("insider"))
        assert excinfo.value.status_code == 404
        assert excinfo.value.source == "insider"
        assert isinstance(excinfo.value.__cause__, httpx.HTTPStatusError)

    def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(SourceFetchError, match="timed out"):
            _adapter(handler).fetch(FetchKey.of("surge"), timeout=1.0)

    def test_non_json_body(self):
        adapter = _adapter(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(SourceFetchError, match="non-JSON"):
            adapter.fetch(FetchKey.of("trade_ideas"))

    def test_unknown_source(self):
        adapter = _adapter(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(SourceFetchError, match="Unknown source"):
            adapter.fetch(FetchKey.of("astrology"))

    def test_bearer_header_set(self):
        adapter = HttpSourceAdapter(StackConfig(base_url="http://upstream.test", api_key="k123"))
        try:
            assert adapter.client.headers["Authorization"] == "Bearer k123"
        finally:
            adapter.close()


class TestBuildRequest:
    def test_path_substitution(self):
        path, query = build_request(SOURCE_CATALOG["quote"], FetchKey.of("quote", "MSFT"))
        assert path == "/api/quote/MSFT"
        assert query == {}

    def test_missing_path_param(self):
        with pytest.raises(SourceFetchError, match="unresolved"):
            build_request(SOURCE_CATALOG["quote"], FetchKey.of("quote"))

    def test_too_many_params(self):
        with pytest.raises(SourceFetchError):
            build_request(SOURCE_CATALOG["insider"], FetchKey.of("insider", "AAPL"))

    def test_none_param_not_sent(self):
        _, query = build_request(SOURCE_CATALOG["movers"], FetchKey.of("movers", "losers", None))
        assert query == {"category": "losers"}


class TestCallableSourceAdapter:
    def test_normalises_by_default(self):
        adapter = CallableSourceAdapter(lambda key, timeout: {"items": [{"ticker": "tsla", "surgeScore": 91}]})
        (rec,) = adapter.fetch(FetchKey.of("surge"))
        assert rec["symbol"] == "TSLA"
        assert rec["surge_score"] == 91.0

    def test_raw_passthrough(self):
        adapter = CallableSourceAdapter(lambda key, timeout: [{"x": 1}], normalize=False)
        assert adapter.fetch(FetchKey.of("surge")) == [{"x": 1}]


# ---------------------------------------------------------------------------
# Normalisers
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_to_epoch_variants(self):
        assert to_epoch(None) == 0.0
        assert to_epoch(1_700_000_000_000) == 1_700_000_000.0
        assert to_epoch("2023-11-14T22:13:20Z") == 1_700_000_000.0
        assert to_epoch("2023-11-14 22:13:20") == 1_700_000_000.0
        assert to_epoch("12") == 0.0
        assert to_epoch("not a date at all") == 0.0

    def test_sentiment_polarity_mapped(self):
        assert normalize_sentiment({"symbol": "gme", "polarity": 0.5})["sentiment_score"] == 75.0
        assert normalize_sentiment({"symbol": "gme", "score": 40})["sentiment_score"] == 40.0

    def test_whale_flow_option_type_aliases(self):
        rec = normalize_whale_flow({"ticker": "NVDA", "putCall": "C", "totalPremium": "$1.5M"})
        assert rec["option_type"] == "call"
        assert rec["premium"] == 1_500_000.0

    def test_insider_value_derived(self):
        (rec,) = normalize_payload("insider", [{"symbol": "AAPL", "shares": 100, "price": 10.0, "transactionType": "P-Purchase"}])
        assert rec["value"] == 1000.0
        assert rec["action"] == "buy"

    def test_payload_shapes(self):
        assert normalize_payload("quote", None) == []
        assert normalize_payload("quote", "oops") == []
        wrapped = normalize_payload("exit_positions", {"positions": [{"id": 7, "symbol": "spy", "dte": 2}]})
        assert wrapped[0]["position_id"] == "7"
        assert wrapped[0]["dte"] == 2
        assert [r["seq"] for r in normalize_payload("quote", [{"symbol": "A"}, {"symbol": "B"}])] == [0, 1]

    def test_unknown_source_passthrough(self):
        (rec,) = normalize_payload("custom", [{"a": 1}])
        assert rec["a"] == 1
        assert rec["ts"] == 0.0


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


class TestHttpHelpers:
    def setup_method(self):
        reset_warned_endpoints()

    def test_sanitize_url(self):
        assert sanitize_url("http://x/api?apikey=abc&sym=A") == "http://x/api?apikey=***&sym=A"

    def test_tier_limited_errors_warn_once(self, caplog):
        request = httpx.Request("GET", "http://x/api/insider-trades")
        response = httpx.Response(403, request=request)
        exc = httpx.HTTPStatusError("forbidden", request=request, response=response)
        with caplog.at_level(logging.DEBUG, logger="signalstack._http"):
            log_fetch_warning("insider", exc)
            log_fetch_warning("insider", exc)
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "suppressing" in warnings[0].getMessage()

    def test_other_errors_always_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="signalstack._http"):
            log_fetch_warning("surge", RuntimeError("boom"))
            log_fetch_warning("surge", RuntimeError("boom"))
        assert len(caplog.records) == 2


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestStackConfig(unittest.TestCase):
    @patch.dict(os.environ, {"POLL_REALTIME_S": "15", "STALE_MULTIPLIER": "2"})
    def test_env_overrides(self):
        cfg = StackConfig()
        self.assertEqual(cfg.poll_realtime_s, 15.0)
        self.assertEqual(cfg.stale_after(15.0), 30.0)

    @patch.dict(os.environ, {"POLL_SLOW_S": "five minutes"})
    def test_bad_env_value_falls_back(self):
        self.assertEqual(StackConfig().poll_slow_s, 300.0)

    @patch.dict(os.environ, {"SIGNALSTACK_API_KEY": "topsecret"})
    def test_api_key_not_in_repr(self):
        cfg = StackConfig()
        self.assertEqual(cfg.api_key, "topsecret")
        self.assertNotIn("topsecret", repr(cfg))

    def test_fetch_timeout_below_interval(self):
        cfg = StackConfig(request_timeout_s=10.0, timeout_fraction=0.8)
        self.assertEqual(cfg.fetch_timeout(30.0), 10.0)
        self.assertAlmostEqual(cfg.fetch_timeout(5.0), 4.0)
        self.assertAlmostEqual(cfg.fetch_timeout(1.0), 0.8)
        for interval in (0.1, 0.5, 0.6):
            self.assertLess(cfg.fetch_timeout(interval), interval)

    def test_fetch_timeout_fraction_capped(self):
        cfg = StackConfig(request_timeout_s=60.0, timeout_fraction=1.5)
        self.assertLess(cfg.fetch_timeout(2.0), 2.0)
        self.assertAlmostEqual(cfg.fetch_timeout(2.0), 1.9)

    def test_cadence_resolution(self):
        cfg = StackConfig(poll_fast_s=60.0, poll_slow_s=300.0)
        self.assertEqual(interval_for("surge", cfg), 60.0)
        self.assertEqual(interval_for("unheard_of", cfg), 300.0)
        with self.assertRaises(ValueError):
            cfg.cadence_seconds("glacial")
