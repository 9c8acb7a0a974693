"""Config-driven check: run one bench, compare it with its baseline, write artifacts.

Artifacts written to the output directory::

    run.json      : perfgate.run.v1 receipt of this run
    compare.json  : perfgate.compare.v1 receipt (only when a baseline exists)
    report.json   : perfgate.report.v1 envelope
    comment.md    : Markdown summary for a PR comment

Exit code policy::

    0  pass, warn without fail_on_warn, or no baseline
    1  measured iterations timed out or exited nonzero (without allow_nonzero)
    2  fail verdict
    3  warn verdict with fail_on_warn
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from perfgate.compare import compare_runs
from perfgate.config import BenchConfigFile, ConfigError, ConfigFile, build_budgets, check_config
from perfgate.executor import DEFAULT_OUTPUT_CAP
from perfgate.export import render_markdown, render_no_baseline_markdown
from perfgate.logging import get_logger
from perfgate.report import PerfgateReport, build_no_baseline_report, build_report
from perfgate.results import (
    CompareReceipt,
    MetricStatus,
    RunReceipt,
    load_run_receipt,
    write_json,
)
from perfgate.runner import BenchRunner, RunRequest

log = get_logger("check")

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_FAIL = 2
EXIT_WARN = 3


@dataclass
class CheckRequest:
    config: ConfigFile
    bench_name: str
    out_dir: Path | None = None  # defaults to the config's out_dir
    baseline_path: Path | None = None  # defaults to <baseline_dir>/<bench>.json
    require_baseline: bool = False
    fail_on_warn: bool = False
    allow_nonzero: bool = False
    env: list[tuple[str, str]] = field(default_factory=list)
    output_cap_bytes: int = DEFAULT_OUTPUT_CAP
    include_hostname_hash: bool = False


@dataclass
class CheckOutcome:
    run_receipt: RunReceipt
    run_path: Path
    report: PerfgateReport
    report_path: Path
    markdown: str
    markdown_path: Path
    compare_receipt: CompareReceipt | None = None
    compare_path: Path | None = None
    warnings: list[str] = field(default_factory=list)
    failed: bool = False
    exit_code: int = EXIT_OK


def build_run_request(
    bench: BenchConfigFile,
    config: ConfigFile,
    req: CheckRequest,
) -> RunRequest:
    """Resolve a bench entry against config defaults into a RunRequest."""
    return RunRequest(
        name=bench.name,
        command=list(bench.command),
        cwd=Path(bench.cwd) if bench.cwd is not None else None,
        env=list(bench.env.items()) + list(req.env),
        repeat=config.repeat_for(bench),
        warmup=config.warmup_for(bench),
        work_units=bench.work,
        timeout=bench.timeout_seconds(),
        output_cap_bytes=req.output_cap_bytes,
        include_hostname_hash=req.include_hostname_hash,
    )


def _verdict_exit_code(status: MetricStatus, fail_on_warn: bool) -> int:
    if status is MetricStatus.FAIL:
        return EXIT_FAIL
    if status is MetricStatus.WARN and fail_on_warn:
        return EXIT_WARN
    return EXIT_OK


def run_check(req: CheckRequest, runner: BenchRunner | None = None) -> CheckOutcome:
    """Run the check workflow for one bench and write its artifacts.

    Raises:
        ConfigError: If the config is invalid, the bench is unknown, or a
            baseline is required but missing.
        ExecutorError: If the command cannot be run at all.
        InvalidBaseline: If the baseline holds a non-positive value.
    """
    check_config(req.config)
    bench = req.config.find_bench(req.bench_name)
    run_request = build_run_request(bench, req.config, req)

    out_dir = req.out_dir or req.config.out_dir
    baseline_path = req.baseline_path or req.config.baseline_dir / f"{bench.name}.json"
    run_path = out_dir / "run.json"
    report_path = out_dir / "report.json"
    markdown_path = out_dir / "comment.md"

    runner = runner or BenchRunner()
    run_outcome = runner.run_bench(run_request)
    run_receipt = run_outcome.receipt
    write_json(run_path, run_receipt.to_dict(), pretty=True)

    warnings: list[str] = [f"run: {reason}" for reason in run_outcome.reasons]
    compare_receipt: CompareReceipt | None = None
    compare_path: Path | None = None

    if baseline_path.exists():
        baseline = load_run_receipt(baseline_path)
        budgets = build_budgets(
            baseline.stats,
            run_receipt.stats,
            threshold=req.config.threshold,
            warn_factor=req.config.warn_factor,
            overrides=bench.budgets,
            metrics=bench.metrics,
        )
        compare_receipt = compare_runs(
            baseline,
            run_receipt,
            budgets,
            baseline_path=str(baseline_path),
            current_path=str(run_path),
        )
        compare_path = out_dir / "compare.json"
        write_json(compare_path, compare_receipt.to_dict(), pretty=True)
        report = build_report(compare_receipt)
        markdown = render_markdown(compare_receipt)
        exit_code = _verdict_exit_code(compare_receipt.verdict.status, req.fail_on_warn)
        log.info("%s: %s", bench.name, compare_receipt.verdict.status.value)
    else:
        if req.require_baseline:
            raise ConfigError(
                f"baseline required but not found for bench '{bench.name}' ({baseline_path})"
            )
        warning = f"no baseline found for bench '{bench.name}', skipping comparison"
        log.warning("%s", warning)
        warnings.append(warning)
        report = build_no_baseline_report(run_receipt)
        markdown = render_no_baseline_markdown(run_receipt, warnings)
        exit_code = EXIT_OK

    if run_outcome.failed and not req.allow_nonzero:
        exit_code = max(exit_code, EXIT_RUN_FAILED)

    write_json(report_path, report.to_dict(), pretty=True)
    markdown_path.parent.mkdir(parents=True, exist_ok=True)
    markdown_path.write_text(markdown, encoding="utf-8")

    return CheckOutcome(
        run_receipt=run_receipt,
        run_path=run_path,
        report=report,
        report_path=report_path,
        markdown=markdown,
        markdown_path=markdown_path,
        compare_receipt=compare_receipt,
        compare_path=compare_path,
        warnings=warnings,
        failed=exit_code != EXIT_OK,
        exit_code=exit_code,
    )
