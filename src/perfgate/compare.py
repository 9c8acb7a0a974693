"""Budget evaluation: compare two Stats snapshots metric by metric.

For every budgeted metric present on both sides::

    ratio      = current / baseline
    pct        = (current - baseline) / baseline
    regression = max(pct, 0)    for lower-is-better metrics
               = max(-pct, 0)   for higher-is-better metrics

A metric fails when its regression exceeds the budget threshold and warns
when it reaches the warn threshold.  The verdict is the worst metric status.
Metrics are always visited in metric-key order, so deltas, counts and
reasons do not depend on how the budget mapping was built.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from perfgate.results import (
    Budget,
    CompareReceipt,
    CompareRef,
    Delta,
    Direction,
    Metric,
    MetricStatus,
    RunReceipt,
    Stats,
    Verdict,
    VerdictCounts,
    sorted_metrics,
    tool_info,
)

log = logging.getLogger("perfgate")

DEFAULT_THRESHOLD = 0.20
DEFAULT_WARN_FACTOR = 0.90


class InvalidBaseline(ValueError):
    """A baseline value is zero, negative or not a number."""

    def __init__(self, metric: Metric, value: float) -> None:
        super().__init__(f"baseline value for {metric.value} must be > 0 (got {value})")
        self.metric = metric
        self.value = value


@dataclass
class Comparison:
    """Per-metric deltas plus the aggregate verdict."""

    deltas: dict[Metric, Delta] = field(default_factory=dict)
    verdict: Verdict = field(default_factory=lambda: Verdict(status=MetricStatus.PASS))


def metric_status(regression: float, budget: Budget) -> MetricStatus:
    """Classify a regression against *budget*."""
    if regression > budget.threshold:
        return MetricStatus.FAIL
    if regression >= budget.warn_threshold:
        return MetricStatus.WARN
    return MetricStatus.PASS


def compute_delta(metric: Metric, baseline: float, current: float, budget: Budget) -> Delta:
    """Compute the delta for one metric.

    Raises:
        InvalidBaseline: If *baseline* is not strictly positive.
    """
    if not baseline > 0:
        raise InvalidBaseline(metric, baseline)
    ratio = current / baseline
    pct = (current - baseline) / baseline
    if budget.direction is Direction.LOWER:
        regression = max(pct, 0.0)
    else:
        regression = max(-pct, 0.0)
    return Delta(
        baseline=baseline,
        current=current,
        ratio=ratio,
        pct=pct,
        regression=regression,
        status=metric_status(regression, budget),
    )


def _reason(metric: Metric, delta: Delta, budget: Budget) -> str:
    if delta.status is MetricStatus.FAIL:
        return (
            f"{metric.value} regressed {delta.regression:.2%}, "
            f"over the {budget.threshold:.2%} budget"
        )
    return (
        f"{metric.value} regressed {delta.regression:.2%}, "
        f"at or over the {budget.warn_threshold:.2%} warn threshold"
    )


def compare_stats(
    baseline: Stats,
    current: Stats,
    budgets: Mapping[Metric, Budget],
) -> Comparison:
    """Compare *current* against *baseline* under *budgets*.

    Metrics without a budget, or missing from either snapshot, are skipped.
    A warn threshold above the fail threshold is used as given.

    Raises:
        InvalidBaseline: If any compared baseline value is not > 0.
    """
    result = Comparison()
    worst = MetricStatus.PASS
    counts = VerdictCounts()
    reasons: list[str] = []

    for metric in sorted_metrics(budgets):
        budget = budgets[metric]
        base_value = baseline.value(metric)
        cur_value = current.value(metric)
        if base_value is None or cur_value is None:
            log.debug("Skipping %s: not present in both snapshots", metric.value)
            continue

        delta = compute_delta(metric, base_value, cur_value, budget)
        result.deltas[metric] = delta
        counts.add(delta.status)
        if delta.status.severity > worst.severity:
            worst = delta.status
        if delta.status is not MetricStatus.PASS:
            reasons.append(_reason(metric, delta, budget))

    result.verdict = Verdict(status=worst, counts=counts, reasons=reasons)
    return result


def make_budget(
    metric: Metric,
    threshold: float = DEFAULT_THRESHOLD,
    warn_factor: float | None = None,
    direction: Direction | None = None,
) -> Budget:
    """Build a Budget with per-metric defaults for anything not given."""
    factor = metric.default_warn_factor if warn_factor is None else warn_factor
    if factor > 1.0:
        log.warning(
            "warn factor %.3f for %s puts the warn threshold above the fail threshold",
            factor,
            metric.value,
        )
    return Budget(
        threshold=threshold,
        warn_threshold=threshold * factor,
        direction=direction or metric.default_direction,
    )


def compare_runs(
    baseline: RunReceipt,
    current: RunReceipt,
    budgets: Mapping[Metric, Budget],
    *,
    baseline_path: str | None = None,
    current_path: str | None = None,
) -> CompareReceipt:
    """Compare two run receipts and build a ``perfgate.compare.v1`` receipt.

    The bench metadata is taken from *current*.

    Raises:
        InvalidBaseline: If any compared baseline value is not > 0.
    """
    comparison = compare_stats(baseline.stats, current.stats, budgets)
    return CompareReceipt(
        tool=tool_info(),
        bench=current.bench,
        baseline_ref=CompareRef(path=baseline_path, run_id=baseline.run.id),
        current_ref=CompareRef(path=current_path, run_id=current.run.id),
        budgets={m: budgets[m] for m in sorted_metrics(budgets)},
        deltas=comparison.deltas,
        verdict=comparison.verdict,
    )
