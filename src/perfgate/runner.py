"""Benchmark loop: warmup and measured invocations of one command.

Iterations run strictly one after another with an identical command.
Warmup iterations are recorded but never contribute to statistics or to
the failure reasons.  A measured iteration that times out or exits nonzero
marks the run as failed, but the loop always runs to the end so the
receipt holds every sample.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from perfgate.executor import (
    DEFAULT_OUTPUT_CAP,
    CommandSpec,
    ExecutionFailed,
    RunResult,
    execute,
)
from perfgate.results import (
    BenchMeta,
    HostInfo,
    RunMeta,
    RunReceipt,
    Sample,
    tool_info,
    utc_now_iso,
)
from perfgate.stats import compute_stats
from perfgate.system import capture_host_info

log = logging.getLogger("perfgate")


# ---------------------------------------------------------------------------
# Request and outcome
# ---------------------------------------------------------------------------


@dataclass
class RunRequest:
    """A fully resolved benchmark to run."""

    name: str
    command: list[str]
    cwd: Path | None = None
    env: list[tuple[str, str]] = field(default_factory=list)
    repeat: int = 5
    warmup: int = 0
    work_units: int | None = None
    timeout: float | None = None  # seconds, per iteration
    output_cap_bytes: int = DEFAULT_OUTPUT_CAP
    include_hostname_hash: bool = False

    def validate(self) -> None:
        """Raise ValueError if the request cannot produce statistics."""
        problems: list[str] = []
        if not self.name:
            problems.append("name must not be empty")
        if not self.command:
            problems.append("command must not be empty")
        if self.repeat < 1:
            problems.append(f"repeat must be at least 1 (got {self.repeat})")
        if self.warmup < 0:
            problems.append(f"warmup must not be negative (got {self.warmup})")
        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"timeout must be positive (got {self.timeout})")
        if problems:
            raise ValueError("Invalid run request:\n" + "\n".join(f"  {p}" for p in problems))

    def command_spec(self) -> CommandSpec:
        return CommandSpec(
            argv=list(self.command),
            cwd=self.cwd,
            env=list(self.env),
            timeout=self.timeout,
            output_cap_bytes=self.output_cap_bytes,
        )

    def bench_meta(self) -> BenchMeta:
        return BenchMeta(
            name=self.name,
            cwd=str(self.cwd) if self.cwd is not None else None,
            command=list(self.command),
            repeat=self.repeat,
            warmup=self.warmup,
            work_units=self.work_units,
            timeout_ms=int(self.timeout * 1000) if self.timeout is not None else None,
        )


@dataclass
class RunOutcome:
    samples: list[Sample] = field(default_factory=list)
    failed: bool = False
    reasons: list[str] = field(default_factory=list)


@dataclass
class RunBenchOutcome:
    receipt: RunReceipt
    failed: bool
    reasons: list[str]


@dataclass
class BenchProgress:
    """Progress info passed to the callback after each iteration."""

    phase: str  # "warmup" or "measure"
    iteration: int  # 1-based over warmup + measured
    total_iterations: int
    wall_ms: int = 0
    status: str = ""  # "", "timeout" or "exit N"


ProgressCallback = Callable[[BenchProgress], None]
Executor = Callable[[CommandSpec], RunResult]


def _decode(data: bytes) -> str | None:
    if not data:
        return None
    return data.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# BenchRunner
# ---------------------------------------------------------------------------


class BenchRunner:
    """Runs a command repeatedly and assembles samples and receipts.

    Usage::

        runner = BenchRunner()
        outcome = runner.run_bench(RunRequest(name="demo", command=["true"]))
        outcome.receipt.stats.wall_ms.median
    """

    def __init__(
        self,
        executor: Executor | None = None,
        progress_callback: ProgressCallback | None = None,
        host_probe: Callable[..., HostInfo] | None = None,
    ) -> None:
        self.executor: Executor = executor or execute
        self.progress: Any = progress_callback or self._default_progress
        self.host_probe = host_probe or capture_host_info

    def run(self, spec: CommandSpec, warmup: int, repeat: int) -> RunOutcome:
        """Execute ``warmup + repeat`` invocations of *spec*.

        Raises:
            ExecutorError: If an invocation cannot be started or reaped.
                The iteration number is included in the message.
        """
        outcome = RunOutcome()
        total = warmup + repeat
        for i in range(total):
            n = i + 1
            is_warmup = i < warmup
            try:
                result = self.executor(spec)
            except ExecutionFailed as exc:
                raise ExecutionFailed(f"failed to run command (iteration {n}): {exc}") from exc

            outcome.samples.append(
                Sample(
                    wall_ms=result.wall_ms,
                    exit_code=result.exit_code,
                    warmup=is_warmup,
                    timed_out=result.timed_out,
                    max_rss_kb=result.max_rss_kb,
                    stdout=_decode(result.stdout),
                    stderr=_decode(result.stderr),
                )
            )

            status = ""
            if result.timed_out:
                status = "timeout"
            elif result.exit_code != 0:
                status = f"exit {result.exit_code}"

            if not is_warmup:
                if result.timed_out:
                    outcome.reasons.append(f"iteration {n} timed out")
                if result.exit_code != 0:
                    outcome.reasons.append(f"iteration {n} exit code {result.exit_code}")

            self.progress(
                BenchProgress(
                    phase="warmup" if is_warmup else "measure",
                    iteration=n,
                    total_iterations=total,
                    wall_ms=result.wall_ms,
                    status=status,
                )
            )

        outcome.failed = bool(outcome.reasons)
        return outcome

    def run_bench(self, request: RunRequest) -> RunBenchOutcome:
        """Run *request* and wrap the samples into a run receipt.

        Raises:
            ValueError: If the request is invalid.
            ExecutorError: If an invocation cannot be started or reaped.
        """
        request.validate()
        log.info(
            "Running %s: %d warmup + %d measured iteration(s)",
            request.name,
            request.warmup,
            request.repeat,
        )

        started_at = utc_now_iso()
        host = self.host_probe(include_hostname_hash=request.include_hostname_hash)
        outcome = self.run(request.command_spec(), request.warmup, request.repeat)
        ended_at = utc_now_iso()

        stats = compute_stats(outcome.samples, request.work_units)
        receipt = RunReceipt(
            tool=tool_info(),
            run=RunMeta(
                id=str(uuid.uuid4()),
                started_at=started_at,
                ended_at=ended_at,
                host=host,
            ),
            bench=request.bench_meta(),
            samples=outcome.samples,
            stats=stats,
        )
        for reason in outcome.reasons:
            log.warning("%s: %s", request.name, reason)
        return RunBenchOutcome(receipt=receipt, failed=outcome.failed, reasons=outcome.reasons)

    @staticmethod
    def _default_progress(progress: BenchProgress) -> None:
        """Default progress callback: one log line per iteration."""
        marker = "W" if progress.phase == "warmup" else "M"
        line = (
            f"  {marker}{progress.iteration}/{progress.total_iterations} "
            f"{progress.wall_ms:8d} ms"
        )
        if progress.status:
            line += f" [{progress.status}]"
        log.info(line)
