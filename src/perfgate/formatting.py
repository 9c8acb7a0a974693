"""Shared text formatting helpers for perfgate output."""

from __future__ import annotations

from perfgate.results import Direction, Metric, MetricStatus

_STATUS_EMOJI = {
    MetricStatus.PASS: "✅",
    MetricStatus.WARN: "⚠️",
    MetricStatus.FAIL: "❌",
}

_STATUS_LABEL = {
    MetricStatus.PASS: "✓ PASS",
    MetricStatus.WARN: "⚠ WARN",
    MetricStatus.FAIL: "✗ FAIL",
}


def format_pct(fraction: float) -> str:
    """Format a signed fraction as a percentage, e.g. ``0.1 -> '+10.00%'``."""
    return f"{fraction * 100:+.2f}%"


def format_value(metric: Metric, value: float) -> str:
    """Format a metric value: throughput with three decimals, others as integers."""
    if metric is Metric.THROUGHPUT_PER_S:
        return f"{value:.3f}"
    return f"{value:.0f}"


def format_value_with_unit(metric: Metric, value: float) -> str:
    unit = metric.display_unit
    sep = "" if unit.startswith("/") else " "
    return f"{format_value(metric, value)}{sep}{unit}"


def format_budget(threshold: float, direction: Direction) -> str:
    """``20.0% (lower)``: fail threshold and which way is better."""
    return f"{threshold * 100:.1f}% ({direction.value})"


def format_status_emoji(status: MetricStatus) -> str:
    return _STATUS_EMOJI[status]


def format_status_icon(status: MetricStatus) -> str:
    """Plain-terminal status marker such as ``'✓ PASS'``."""
    return _STATUS_LABEL.get(status, status.value.upper())


def format_table(
    headers: list[str],
    rows: list[list[str]],
    *,
    alignments: list[str] | None = None,
    indent: int = 2,
) -> str:
    """Format rows as an aligned text table.

    Args:
        headers: Column header strings.
        rows: List of rows, each a list of cell strings.  Short rows are
            padded and long rows truncated to the header count.
        alignments: Per-column ``'l'`` or ``'r'``; missing entries are ``'l'``.
        indent: Number of leading spaces per line.
    """
    if not headers:
        return ""
    ncols = len(headers)
    aligns = list(alignments or []) + ["l"] * ncols
    cells = [list(headers)] + [(list(r) + [""] * ncols)[:ncols] for r in rows]
    widths = [max(len(row[ci]) for row in cells) for ci in range(ncols)]

    prefix = " " * indent
    lines = []
    for row in cells:
        parts = [
            cell.rjust(widths[ci]) if aligns[ci] == "r" else cell.ljust(widths[ci])
            for ci, cell in enumerate(row)
        ]
        lines.append(prefix + "  ".join(parts).rstrip())
    return "\n".join(lines)
