"""Report envelopes (``perfgate.report.v1``) for dashboards and PR bots.

A report wraps a compare receipt with one finding per metric that warned or
failed, plus summary counts.  When a bench has no baseline yet, a report
with a single ``baseline_missing`` warning is produced instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from perfgate.results import (
    REPORT_SCHEMA_V1,
    CompareReceipt,
    Direction,
    MetricStatus,
    RunReceipt,
    Verdict,
    VerdictCounts,
)

BUDGET_CHECK_ID = "perf.budget"
BASELINE_CHECK_ID = "perf.baseline"
CODE_METRIC_WARN = "metric_warn"
CODE_METRIC_FAIL = "metric_fail"
CODE_BASELINE_MISSING = "baseline_missing"
REASON_NO_BASELINE = "no baseline found, comparison skipped"


@dataclass(frozen=True)
class FindingData:
    metric_name: str
    baseline: float
    current: float
    regression_pct: float  # fraction, 0.25 = 25%
    threshold: float
    direction: Direction

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "baseline": self.baseline,
            "current": self.current,
            "regression_pct": self.regression_pct,
            "threshold": self.threshold,
            "direction": self.direction.value,
        }


@dataclass(frozen=True)
class Finding:
    check_id: str
    code: str
    severity: MetricStatus  # warn or fail
    message: str
    data: FindingData | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "check_id": self.check_id,
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.data is not None:
            out["data"] = self.data.to_dict()
        return out


@dataclass(frozen=True)
class ReportSummary:
    pass_count: int
    warn_count: int
    fail_count: int

    @property
    def total_count(self) -> int:
        return self.pass_count + self.warn_count + self.fail_count

    def to_dict(self) -> dict[str, int]:
        return {
            "pass_count": self.pass_count,
            "warn_count": self.warn_count,
            "fail_count": self.fail_count,
            "total_count": self.total_count,
        }


@dataclass
class PerfgateReport:
    verdict: Verdict
    summary: ReportSummary
    findings: list[Finding] = field(default_factory=list)
    compare: CompareReceipt | None = None
    report_type: str = REPORT_SCHEMA_V1

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "report_type": self.report_type,
            "verdict": self.verdict.to_dict(),
        }
        if self.compare is not None:
            out["compare"] = self.compare.to_dict()
        out["findings"] = [f.to_dict() for f in self.findings]
        out["summary"] = self.summary.to_dict()
        return out


def build_report(compare: CompareReceipt) -> PerfgateReport:
    """Wrap *compare* into a report with one finding per warn/fail metric."""
    findings: list[Finding] = []
    for metric, delta in compare.deltas.items():
        if delta.status is MetricStatus.PASS:
            continue
        budget = compare.budgets.get(metric)
        threshold = budget.threshold if budget is not None else 0.0
        direction = budget.direction if budget is not None else metric.default_direction
        if delta.status is MetricStatus.FAIL:
            code = CODE_METRIC_FAIL
            headline = "Performance regression exceeded threshold"
        else:
            code = CODE_METRIC_WARN
            headline = "Performance regression near threshold"
        findings.append(
            Finding(
                check_id=BUDGET_CHECK_ID,
                code=code,
                severity=delta.status,
                message=(
                    f"{headline} for {metric.value}: {delta.regression * 100:.2f}% "
                    f"regression (threshold: {threshold * 100:.2f}%)"
                ),
                data=FindingData(
                    metric_name=metric.value,
                    baseline=delta.baseline,
                    current=delta.current,
                    regression_pct=delta.regression,
                    threshold=threshold,
                    direction=direction,
                ),
            )
        )

    counts = compare.verdict.counts
    return PerfgateReport(
        verdict=compare.verdict,
        summary=ReportSummary(
            pass_count=counts.passed,
            warn_count=counts.warned,
            fail_count=counts.failed,
        ),
        findings=findings,
        compare=compare,
    )


def build_no_baseline_report(run: RunReceipt) -> PerfgateReport:
    """Report for a bench that has no baseline to compare against."""
    verdict = Verdict(
        status=MetricStatus.WARN,
        counts=VerdictCounts(warned=1),
        reasons=[REASON_NO_BASELINE],
    )
    finding = Finding(
        check_id=BASELINE_CHECK_ID,
        code=CODE_BASELINE_MISSING,
        severity=MetricStatus.WARN,
        message=f"No baseline found for bench '{run.bench.name}'; comparison skipped",
    )
    return PerfgateReport(
        verdict=verdict,
        summary=ReportSummary(pass_count=0, warn_count=1, fail_count=0),
        findings=[finding],
    )
