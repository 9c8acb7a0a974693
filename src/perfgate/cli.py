"""Command-line interface for perfgate.

Subcommands::

    run                 benchmark a command and write a run receipt
    compare             compare two run receipts under budgets
    md                  render a compare receipt as Markdown
    github-annotations  emit GitHub Actions annotations for a compare receipt
    report              wrap a compare receipt into a report envelope
    promote             copy a run receipt into place as a baseline
    export              flatten a run or compare receipt to CSV / JSONL
    check               config-driven run + compare + artifacts

Exit codes: 0 success, 1 tool error (or failing samples without
``--allow-nonzero``), 2 fail verdict, 3 warn verdict with ``--fail-on-warn``,
130 interrupted.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from pathlib import Path

import click

from perfgate import __version__
from perfgate.logging import setup_logging

EXIT_TOOL_ERROR = 1
EXIT_FAIL = 2
EXIT_WARN = 3


@contextlib.contextmanager
def _cli_errors() -> Iterator[None]:
    """Turn perfgate exceptions into ``Error: ...`` and exit code 1."""
    from perfgate.executor import ExecutorError

    try:
        yield
    except KeyboardInterrupt:
        click.echo("\nInterrupted.", err=True)
        raise SystemExit(130)  # noqa: B904
    except (ExecutorError, ValueError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(EXIT_TOOL_ERROR) from exc


@click.group()
@click.version_option(version=__version__, prog_name="perfgate")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output.")
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors.")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Also write DEBUG-level logs to this file.",
)
def main(verbose: bool, quiet: bool, log_file: Path | None) -> None:
    """perfgate: benchmark commands and gate CI on performance budgets."""
    setup_logging(verbose=verbose, quiet=quiet, log_file=log_file)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@main.command("run")
@click.option("--name", required=True, help="Bench name recorded in the receipt.")
@click.option("--repeat", type=click.IntRange(min=1), default=5, show_default=True)
@click.option("--warmup", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--work", "work_units", type=click.IntRange(min=0), default=None,
              help="Work units per invocation; enables throughput_per_s.")
@click.option("--timeout", default=None, help="Per-iteration timeout, e.g. 2s or 500ms.")
@click.option("--cwd", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE, repeatable.")
@click.option("--output-cap-bytes", type=click.IntRange(min=0), default=8192, show_default=True)
@click.option("--allow-nonzero", is_flag=True, help="Do not exit 1 when samples fail.")
@click.option("--include-hostname-hash", is_flag=True, help="Record a SHA-256 of the hostname.")
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path),
              default=Path("perfgate.json"), show_default=True)
@click.option("--pretty", is_flag=True, help="Pretty-print the JSON receipt.")
@click.argument("command", nargs=-1, required=True)
def run_cmd(
    name: str,
    repeat: int,
    warmup: int,
    work_units: int | None,
    timeout: str | None,
    cwd: Path | None,
    env_pairs: tuple[str, ...],
    output_cap_bytes: int,
    allow_nonzero: bool,
    include_hostname_hash: bool,
    out: Path,
    pretty: bool,
    command: tuple[str, ...],
) -> None:
    """Benchmark COMMAND (put it after ``--``) and write a run receipt."""
    from perfgate.config import parse_duration, parse_key_value
    from perfgate.formatting import format_table
    from perfgate.results import write_json
    from perfgate.runner import BenchRunner, RunRequest

    with _cli_errors():
        request = RunRequest(
            name=name,
            command=list(command),
            cwd=cwd,
            env=[parse_key_value(p) for p in env_pairs],
            repeat=repeat,
            warmup=warmup,
            work_units=work_units,
            timeout=parse_duration(timeout) if timeout is not None else None,
            output_cap_bytes=output_cap_bytes,
            include_hostname_hash=include_hostname_hash,
        )
        outcome = BenchRunner().run_bench(request)
        write_json(out, outcome.receipt.to_dict(), pretty=pretty)

    stats = outcome.receipt.stats
    wall = stats.wall_ms
    rows = [["wall_ms", str(wall.median), str(wall.min), str(wall.max)]]
    if stats.max_rss_kb is not None:
        rss = stats.max_rss_kb
        rows.append(["max_rss_kb", str(rss.median), str(rss.min), str(rss.max)])
    if stats.throughput_per_s is not None:
        tp = stats.throughput_per_s
        rows.append(
            ["throughput_per_s", f"{tp.median:.3f}", f"{tp.min:.3f}", f"{tp.max:.3f}"]
        )
    click.echo(
        format_table(["metric", "median", "min", "max"], rows, alignments=["l", "r", "r", "r"])
    )
    click.echo(f"Wrote {out}")

    if outcome.failed and not allow_nonzero:
        for reason in outcome.reasons:
            click.echo(f"Error: {reason}", err=True)
        raise SystemExit(EXIT_TOOL_ERROR)


# ---------------------------------------------------------------------------
# compare
# ---------------------------------------------------------------------------


@main.command("compare")
@click.option("--baseline", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              required=True)
@click.option("--current", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              required=True)
@click.option("--threshold", type=float, default=0.20, show_default=True,
              help="Fail threshold as a fraction (0.20 = 20%).")
@click.option("--warn-factor", type=float, default=0.90, show_default=True,
              help="Warn threshold = threshold * warn factor.")
@click.option("--metric-threshold", "metric_thresholds", multiple=True,
              help="METRIC=FRACTION, repeatable.")
@click.option("--direction", "directions", multiple=True,
              help="METRIC=lower|higher, repeatable.")
@click.option("--fail-on-warn", is_flag=True, help="Exit 3 on a warn verdict.")
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path),
              default=Path("perfgate-compare.json"), show_default=True)
@click.option("--pretty", is_flag=True, help="Pretty-print the JSON receipt.")
def compare_cmd(
    baseline: Path,
    current: Path,
    threshold: float,
    warn_factor: float,
    metric_thresholds: tuple[str, ...],
    directions: tuple[str, ...],
    fail_on_warn: bool,
    out: Path,
    pretty: bool,
) -> None:
    """Compare a current run receipt against a baseline run receipt."""
    from perfgate.compare import compare_runs
    from perfgate.config import build_budgets, parse_directions, parse_metric_thresholds
    from perfgate.formatting import format_pct, format_status_icon, format_table, format_value
    from perfgate.results import MetricStatus, load_run_receipt, write_json

    with _cli_errors():
        base = load_run_receipt(baseline)
        cur = load_run_receipt(current)
        budgets = build_budgets(
            base.stats,
            cur.stats,
            threshold=threshold,
            warn_factor=warn_factor,
            metric_thresholds=parse_metric_thresholds(metric_thresholds),
            directions=parse_directions(directions),
        )
        receipt = compare_runs(
            base,
            cur,
            budgets,
            baseline_path=str(baseline),
            current_path=str(current),
        )
        write_json(out, receipt.to_dict(), pretty=pretty)

    rows = [
        [
            metric.value,
            format_value(metric, delta.baseline),
            format_value(metric, delta.current),
            format_pct(delta.pct),
            format_status_icon(delta.status),
        ]
        for metric, delta in receipt.deltas.items()
    ]
    click.echo(
        format_table(
            ["metric", "baseline", "current", "delta", "status"],
            rows,
            alignments=["l", "r", "r", "r", "l"],
        )
    )
    click.echo(f"Verdict: {receipt.verdict.status.value}")
    click.echo(f"Wrote {out}")

    status = receipt.verdict.status
    if status is MetricStatus.FAIL:
        raise SystemExit(EXIT_FAIL)
    if status is MetricStatus.WARN and fail_on_warn:
        raise SystemExit(EXIT_WARN)


# ---------------------------------------------------------------------------
# md / github-annotations / report
# ---------------------------------------------------------------------------


_compare_option = click.option(
    "--compare",
    "compare_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Path to a perfgate.compare.v1 receipt.",
)


@main.command("md")
@_compare_option
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write Markdown here instead of stdout.")
def md_cmd(compare_path: Path, out: Path | None) -> None:
    """Render a compare receipt as a Markdown PR comment."""
    from perfgate.export import render_markdown
    from perfgate.results import load_compare_receipt

    with _cli_errors():
        markdown = render_markdown(load_compare_receipt(compare_path))
        if out is not None:
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(markdown, encoding="utf-8")
            return
    click.echo(markdown, nl=False)


@main.command("github-annotations")
@_compare_option
def github_annotations_cmd(compare_path: Path) -> None:
    """Print ::error:: / ::warning:: lines for failing and warning metrics."""
    from perfgate.export import github_annotations
    from perfgate.results import load_compare_receipt

    with _cli_errors():
        lines = github_annotations(load_compare_receipt(compare_path))
    for line in lines:
        click.echo(line)


@main.command("report")
@_compare_option
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path),
              default=Path("perfgate-report.json"), show_default=True)
@click.option("--md", "md_out", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Also write the Markdown summary here.")
@click.option("--pretty", is_flag=True, help="Pretty-print the JSON report.")
def report_cmd(compare_path: Path, out: Path, md_out: Path | None, pretty: bool) -> None:
    """Wrap a compare receipt into a perfgate.report.v1 envelope."""
    from perfgate.export import render_markdown
    from perfgate.report import build_report
    from perfgate.results import load_compare_receipt, write_json

    with _cli_errors():
        receipt = load_compare_receipt(compare_path)
        report = build_report(receipt)
        write_json(out, report.to_dict(), pretty=pretty)
        if md_out is not None:
            md_out.parent.mkdir(parents=True, exist_ok=True)
            md_out.write_text(render_markdown(receipt), encoding="utf-8")
    click.echo(f"Wrote {out} ({len(report.findings)} finding(s))")


# ---------------------------------------------------------------------------
# promote / export
# ---------------------------------------------------------------------------


@main.command("promote")
@click.option("--current", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              required=True, help="Run receipt to promote.")
@click.option("--to", "to_path", type=click.Path(dir_okay=False, path_type=Path),
              required=True, help="Baseline path to write.")
@click.option("--normalize", is_flag=True,
              help="Replace run id and timestamps with fixed values.")
@click.option("--pretty", is_flag=True, help="Pretty-print the JSON receipt.")
def promote_cmd(current: Path, to_path: Path, normalize: bool, pretty: bool) -> None:
    """Promote a run receipt to a baseline."""
    from perfgate.results import load_run_receipt, promote_receipt, write_json

    with _cli_errors():
        receipt = promote_receipt(load_run_receipt(current), normalize=normalize)
        write_json(to_path, receipt.to_dict(), pretty=pretty)
    click.echo(f"Promoted {current} -> {to_path}")


@main.command("export")
@click.option("--run", "run_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Run receipt to export.")
@click.option("--compare", "compare_path",
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Compare receipt to export.")
@click.option("--format", "fmt", type=click.Choice(["csv", "jsonl"]), default="csv",
              show_default=True)
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write here instead of stdout.")
def export_cmd(
    run_path: Path | None,
    compare_path: Path | None,
    fmt: str,
    out: Path | None,
) -> None:
    """Export a run or compare receipt as CSV or JSONL."""
    from perfgate.export import export_compare, export_run
    from perfgate.results import load_compare_receipt, load_run_receipt

    if (run_path is None) == (compare_path is None):
        raise click.UsageError("Exactly one of --run or --compare is required.")

    with _cli_errors():
        if run_path is not None:
            text = export_run(load_run_receipt(run_path), fmt)
        else:
            assert compare_path is not None
            text = export_compare(load_compare_receipt(compare_path), fmt)
        if out is not None:
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(text, encoding="utf-8")
            return
    click.echo(text, nl=False)


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


@main.command("check")
@click.option("--config", "config_path",
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=Path("perfgate.toml"), show_default=True)
@click.option("--bench", "bench_name", required=True, help="Name of the bench to run.")
@click.option("--out-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Artifact directory (default: config out_dir).")
@click.option("--baseline", "baseline_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Baseline receipt (default: <baseline_dir>/<bench>.json).")
@click.option("--require-baseline", is_flag=True, help="Fail if the baseline is missing.")
@click.option("--fail-on-warn", is_flag=True, help="Exit 3 on a warn verdict.")
@click.option("--allow-nonzero", is_flag=True, help="Do not exit 1 when samples fail.")
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE, repeatable.")
@click.option("--output-cap-bytes", type=click.IntRange(min=0), default=8192, show_default=True)
def check_cmd(
    config_path: Path,
    bench_name: str,
    out_dir: Path | None,
    baseline_path: Path | None,
    require_baseline: bool,
    fail_on_warn: bool,
    allow_nonzero: bool,
    env_pairs: tuple[str, ...],
    output_cap_bytes: int,
) -> None:
    """Run a configured bench, compare it with its baseline and write artifacts."""
    from perfgate.check import CheckRequest, run_check
    from perfgate.config import load_config, parse_key_value

    with _cli_errors():
        outcome = run_check(
            CheckRequest(
                config=load_config(config_path),
                bench_name=bench_name,
                out_dir=out_dir,
                baseline_path=baseline_path,
                require_baseline=require_baseline,
                fail_on_warn=fail_on_warn,
                allow_nonzero=allow_nonzero,
                env=[parse_key_value(p) for p in env_pairs],
                output_cap_bytes=output_cap_bytes,
            )
        )

    click.echo(f"Verdict: {outcome.report.verdict.status.value}")
    click.echo(f"Wrote {outcome.run_path}")
    if outcome.compare_path is not None:
        click.echo(f"Wrote {outcome.compare_path}")
    click.echo(f"Wrote {outcome.report_path}")
    click.echo(f"Wrote {outcome.markdown_path}")
    if outcome.exit_code != 0:
        raise SystemExit(outcome.exit_code)
