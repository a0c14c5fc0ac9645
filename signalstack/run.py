"""CLI entry point: poll every source, log view summaries, export reports.

    python -m signalstack.run --symbols AAPL,NVDA --report-every 900
"""
from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

import httpx
from dotenv import load_dotenv

from intel.thresholds import load_rule_tables
from terminal_export import generate_report
from terminal_interface import VIEWS, ConsumerInterface

from .adapters import SOURCE_CATALOG, HttpSourceAdapter
from .alerts import send_signal
from .cache import StalenessCache
from .common_types import FetchKey
from .config import StackConfig
from .log_redaction import install_log_redaction
from .scheduler import PollScheduler

logger = logging.getLogger(__name__)


def build_stack(cfg: StackConfig) -> tuple[StalenessCache, PollScheduler, ConsumerInterface, HttpSourceAdapter]:
    """Wire cache, adapters, scheduler and interface from one config."""
    tables = load_rule_tables(cfg.rule_tables_path)
    cache = StalenessCache(cfg)
    adapter = HttpSourceAdapter(cfg)
    for source in SOURCE_CATALOG:
        cache.register_adapter(source, adapter)
    scheduler = PollScheduler(cache, cfg)
    iface = ConsumerInterface(cache, scheduler, tables=tables)
    return cache, scheduler, iface, adapter


def forward_surge_alerts(
    iface: ConsumerInterface,
    cfg: StackConfig,
    client: httpx.Client | None = None,
) -> int:
    """Send every qualifying cached surge record to the webhook.  Returns fires."""
    if not cfg.webhook_url:
        return 0
    read = iface.cache.get(FetchKey.of("surge"))
    fired = 0
    for rec in read.value or []:
        symbol = rec.get("symbol")
        if not symbol:
            continue
        result = send_signal(
            rec,
            cfg.webhook_url,
            cfg.webhook_secret,
            classification=iface.get_classification(symbol).to_dict(),
            age_s=read.age_s,
            stale_after=read.stale_after,
            min_score=cfg.alert_min_score,
            throttle_s=cfg.alert_throttle_s,
            _client=client,
        )
        if result is not None:
            fired += 1
    return fired


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll trading-intelligence sources and classify signals")
    parser.add_argument(
        "--symbols", default="",
        help="Comma-separated tickers to poll quotes for (e.g. AAPL,NVDA)",
    )
    parser.add_argument(
        "--views", default=",".join(VIEWS),
        help="Comma-separated views to keep polled",
    )
    parser.add_argument(
        "--summary-every", type=float, default=60.0,
        help="Seconds between view summary log lines",
    )
    parser.add_argument(
        "--report-every", type=float, default=0.0,
        help="Seconds between report exports (0 disables)",
    )
    parser.add_argument("--report-format", choices=("csv", "json"), default="csv")
    parser.add_argument(
        "--forward-alerts", action="store_true",
        help="Forward surge alerts to SIGNALSTACK_WEBHOOK_URL",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


def _log_summary(iface: ConsumerInterface, views: list[str]) -> None:
    for name in views:
        pairs = iface.classify_view(name)
        top = sorted(pairs, key=lambda p: -p[1].composite_score)[:5]
        logger.info(
            "%s: %d composites; top %s",
            name, len(pairs),
            ", ".join(f"{c.symbol}={r.grade}" for c, r in top) or "-",
        )
    for adv in iface.exit_advisories()[:5]:
        if adv.exit_window in ("immediate", "soon"):
            logger.info(
                "EXIT %s %s (%s, p=%.0f): %s",
                adv.symbol, adv.exit_window.upper(), adv.position_id, adv.exit_probability, adv.exit_reason,
            )


def main() -> None:
    """Run the poll scheduler until interrupted."""
    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.is_file():
        load_dotenv(env_path, override=False)

    args = _parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    install_log_redaction()

    cfg = StackConfig()
    cache, scheduler, iface, adapter = build_stack(cfg)

    symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
    views = [v.strip() for v in args.views.split(",") if v.strip()]
    for name in views:
        iface.subscribe_view(name, symbols=symbols)
    for sym in symbols:
        iface.subscribe(FetchKey.of("quote", sym))
    iface.subscribe(FetchKey.of("bot_status"))

    scheduler.start()
    logger.info(
        "signalstack running (views=%s, symbols=%d, keys=%d)",
        ",".join(views), len(symbols), len(scheduler.active_keys()),
    )

    webhook_client = httpx.Client(timeout=5.0) if args.forward_alerts and cfg.webhook_url else None
    last_summary = last_report = time.monotonic()
    try:
        while True:
            time.sleep(1.0)
            now = time.monotonic()
            if webhook_client is not None:
                forward_surge_alerts(iface, cfg, webhook_client)
            if now - last_summary >= args.summary_every:
                _log_summary(iface, views)
                last_summary = now
            if args.report_every > 0 and now - last_report >= args.report_every:
                for name in views:
                    generate_report(iface, name, args.report_format, cfg.report_dir)
                last_report = now
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.stop(join_timeout=5.0)
        cache.close(wait=False)
        adapter.close()
        if webhook_client is not None:
            webhook_client.close()


if __name__ == "__main__":
    main()
