"""Render receipts for humans and for other tools.

Markdown: a PR-comment summary of a comparison (or of a run that had no
baseline to compare with).

GitHub annotations: ``::error::`` / ``::warning::`` workflow commands, one per
metric that failed or warned.

CSV / JSONL: flat rows for spreadsheets and trend dashboards.  A run
exports to a single row of summary statistics; a comparison exports to one
row per metric, sorted by metric name.
"""

from __future__ import annotations

import csv
import enum
import io
import json
from collections.abc import Sequence
from typing import Any

from perfgate.formatting import (
    format_budget,
    format_pct,
    format_status_emoji,
    format_value,
    format_value_with_unit,
)
from perfgate.results import CompareReceipt, Metric, MetricStatus, RunReceipt

_HEADERS = {
    MetricStatus.PASS: "✅ perfgate: pass",
    MetricStatus.WARN: "⚠️ perfgate: warn",
    MetricStatus.FAIL: "❌ perfgate: fail",
}


class ExportFormat(enum.StrEnum):
    CSV = "csv"
    JSONL = "jsonl"


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------


def render_markdown(compare: CompareReceipt) -> str:
    """Render a comparison as a Markdown PR comment."""
    lines = [
        _HEADERS[compare.verdict.status],
        "",
        f"**Bench:** `{compare.bench.name}`",
        "",
        "| metric | baseline (median) | current (median) | delta | budget | status |",
        "|---|---:|---:|---:|---:|---|",
    ]
    for metric, delta in compare.deltas.items():
        budget = compare.budgets.get(metric)
        budget_str = format_budget(budget.threshold, budget.direction) if budget else ""
        unit = metric.display_unit
        lines.append(
            f"| `{metric.value}` "
            f"| {format_value(metric, delta.baseline)} {unit} "
            f"| {format_value(metric, delta.current)} {unit} "
            f"| {format_pct(delta.pct)} "
            f"| {budget_str} "
            f"| {format_status_emoji(delta.status)} |"
        )

    if compare.verdict.reasons:
        lines.append("")
        lines.append("**Notes:**")
        lines.extend(f"- {reason}" for reason in compare.verdict.reasons)

    return "\n".join(lines) + "\n"


def render_no_baseline_markdown(run: RunReceipt, warnings: Sequence[str] = ()) -> str:
    """Render a run that had no baseline: current medians only."""
    lines = [
        "⚠️ perfgate: no baseline",
        "",
        f"**Bench:** `{run.bench.name}`",
        "",
        "No baseline was found, so this run was not compared. "
        "Promote a run receipt to create one.",
        "",
        "| metric | current (median) |",
        "|---|---:|",
    ]
    for metric in Metric:
        value = run.stats.value(metric)
        if value is not None:
            shown = f"{format_value(metric, value)} {metric.display_unit}"
            lines.append(f"| `{metric.value}` | {shown} |")

    if warnings:
        lines.append("")
        lines.append("**Warnings:**")
        lines.extend(f"- {w}" for w in warnings)

    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# GitHub annotations
# ---------------------------------------------------------------------------


def github_annotations(compare: CompareReceipt) -> list[str]:
    """One workflow command per failing or warning metric."""
    out: list[str] = []
    for metric, delta in compare.deltas.items():
        if delta.status is MetricStatus.FAIL:
            prefix = "::error"
        elif delta.status is MetricStatus.WARN:
            prefix = "::warning"
        else:
            continue
        out.append(
            f"{prefix}::perfgate {compare.bench.name} {metric.value}: {format_pct(delta.pct)} "
            f"(baseline {format_value_with_unit(metric, delta.baseline)}, "
            f"current {format_value_with_unit(metric, delta.current)})"
        )
    return out


# ---------------------------------------------------------------------------
# CSV / JSONL
# ---------------------------------------------------------------------------

RUN_COLUMNS = [
    "bench_name",
    "wall_ms_median",
    "wall_ms_min",
    "wall_ms_max",
    "max_rss_kb_median",
    "throughput_median",
    "sample_count",
    "timestamp",
]

COMPARE_COLUMNS = [
    "bench_name",
    "metric",
    "baseline_value",
    "current_value",
    "regression_pct",
    "status",
    "threshold",
]


def _run_row(receipt: RunReceipt) -> dict[str, Any]:
    stats = receipt.stats
    return {
        "bench_name": receipt.bench.name,
        "wall_ms_median": stats.wall_ms.median,
        "wall_ms_min": stats.wall_ms.min,
        "wall_ms_max": stats.wall_ms.max,
        "max_rss_kb_median": stats.max_rss_kb.median if stats.max_rss_kb else None,
        "throughput_median": stats.throughput_per_s.median if stats.throughput_per_s else None,
        "sample_count": sum(1 for s in receipt.samples if not s.warmup),
        "timestamp": receipt.run.started_at,
    }


def _compare_rows(receipt: CompareReceipt) -> list[dict[str, Any]]:
    rows = []
    for metric, delta in receipt.deltas.items():
        budget = receipt.budgets.get(metric)
        rows.append(
            {
                "bench_name": receipt.bench.name,
                "metric": metric.value,
                "baseline_value": delta.baseline,
                "current_value": delta.current,
                "regression_pct": delta.pct * 100.0,
                "status": delta.status.value,
                "threshold": (budget.threshold if budget else 0.0) * 100.0,
            }
        )
    rows.sort(key=lambda r: r["metric"])
    return rows


def _csv(columns: list[str], rows: list[list[Any]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(columns)
    writer.writerows(rows)
    return output.getvalue()


def _jsonl(rows: list[dict[str, Any]]) -> str:
    return "".join(json.dumps(row, ensure_ascii=False) + "\n" for row in rows)


def export_run(receipt: RunReceipt, fmt: ExportFormat | str) -> str:
    """Export a run receipt as a single CSV or JSONL row."""
    row = _run_row(receipt)
    if ExportFormat(fmt) is ExportFormat.JSONL:
        return _jsonl([row])
    tput = row["throughput_median"]
    rss = row["max_rss_kb_median"]
    return _csv(
        RUN_COLUMNS,
        [
            [
                row["bench_name"],
                row["wall_ms_median"],
                row["wall_ms_min"],
                row["wall_ms_max"],
                "" if rss is None else rss,
                "" if tput is None else f"{tput:.6f}",
                row["sample_count"],
                row["timestamp"],
            ]
        ],
    )


def export_compare(receipt: CompareReceipt, fmt: ExportFormat | str) -> str:
    """Export a compare receipt as one row per metric, sorted by metric name."""
    rows = _compare_rows(receipt)
    if ExportFormat(fmt) is ExportFormat.JSONL:
        return _jsonl(rows)
    return _csv(
        COMPARE_COLUMNS,
        [
            [
                r["bench_name"],
                r["metric"],
                f"{r['baseline_value']:.6f}",
                f"{r['current_value']:.6f}",
                f"{r['regression_pct']:.6f}",
                r["status"],
                f"{r['threshold']:.6f}",
            ]
            for r in rows
        ],
    )
