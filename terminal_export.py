"""On-demand report export.

- **Report table**: one row per composite with its classification and
  source freshness, built as a pandas DataFrame.
- **Atomic write**: CSV or JSON written via tempfile + ``os.replace`` so
  a reader never sees a half-written file.

Reports are exports, not storage: nothing here is read back.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pandas as pd

from intel.classify import ClassificationResult
from signalstack.common_types import SUB_SCORE_NAMES, CompositeSignal

if TYPE_CHECKING:
    from terminal_interface import ConsumerInterface

logger = logging.getLogger(__name__)

REPORT_FORMATS: tuple[str, ...] = ("csv", "json")

REPORT_COLUMNS: list[str] = [
    "symbol",
    "view",
    "grade",
    "tier",
    "composite_score",
    "recommendation",
    "risk_level",
    "exit_window",
    "research_only",
    "price",
    "change_pct",
    "volume",
    *(f"{name}_score" for name in SUB_SCORE_NAMES),
    "sources",
    "stale_sources",
    "min_freshness",
    "defaults_applied",
    "reasons",
]


def build_report_rows(
    pairs: Iterable[tuple[CompositeSignal, ClassificationResult]],
) -> list[dict[str, Any]]:
    """Flatten (composite, classification) pairs into report rows."""
    rows: list[dict[str, Any]] = []
    for composite, result in pairs:
        present = sorted(composite.sections)
        fresh = [p.freshness for p in composite.provenance.values() if p.present]
        row: dict[str, Any] = {
            "symbol": composite.symbol,
            "view": composite.view,
            "grade": result.grade,
            "tier": result.tier,
            "composite_score": result.composite_score,
            "recommendation": result.recommendation,
            "risk_level": result.risk_level,
            "exit_window": result.exit_window,
            "research_only": result.research_only,
            "price": composite.price,
            "change_pct": composite.change_pct,
            "volume": composite.volume,
            "sources": ",".join(present),
            "stale_sources": ",".join(s for s in composite.stale_sources if s in present),
            "min_freshness": round(min(fresh), 4) if fresh else None,
            "defaults_applied": ",".join(result.defaults_applied),
            "reasons": ",".join(result.reasons),
        }
        for name in SUB_SCORE_NAMES:
            row[f"{name}_score"] = composite.sub_scores.get(name)
        rows.append(row)
    return rows


def report_frame(pairs: Iterable[tuple[CompositeSignal, ClassificationResult]]) -> pd.DataFrame:
    """Report rows as a DataFrame, best composite score first."""
    df = pd.DataFrame(build_report_rows(pairs), columns=REPORT_COLUMNS)
    if df.empty:
        return df
    return df.sort_values(
        ["composite_score", "symbol"], ascending=[False, True], kind="mergesort",
    ).reset_index(drop=True)


def write_atomic(path: str, text: str) -> None:
    """Write *text* to *path* via tempfile + os.replace."""
    dest = os.path.abspath(path)
    dest_dir = os.path.dirname(dest)
    os.makedirs(dest_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dest_dir, suffix=".tmp", prefix="rpt_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_path, dest)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def generate_report(
    iface: ConsumerInterface,
    view: str = "trade_ideas",
    fmt: str = "csv",
    report_dir: str = "artifacts/reports",
    now: float | None = None,
) -> str:
    """Classify a view and write it as ``<view>_<UTC stamp>.<fmt>``.

    Returns the written path.  Raises ``ValueError`` for an unknown
    format or view; I/O errors propagate.
    """
    if fmt not in REPORT_FORMATS:
        raise ValueError(f"Unknown report format {fmt!r}; expected one of {REPORT_FORMATS}")
    if now is None:
        now = time.time()
    df = report_frame(iface.classify_view(view))
    stamp = datetime.fromtimestamp(now, tz=UTC).strftime("%Y%m%dT%H%M%SZ")
    path = os.path.join(report_dir, f"{view}_{stamp}.{fmt}")
    if fmt == "csv":
        text = df.to_csv(index=False)
    else:
        text = df.to_json(orient="records", indent=2)
    write_atomic(path, text)
    logger.info("Report written: %s (%d rows)", path, len(df))
    return path
