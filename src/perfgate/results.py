"""Receipt data structures and JSON persistence.

Hierarchy::

    RunReceipt (one ``perfgate run``)
      → tool: ToolInfo
      → run: RunMeta → host: HostInfo
      → bench: BenchMeta
      → samples: list[Sample]
      → stats: Stats → IntSummary / FloatSummary

    CompareReceipt (one ``perfgate compare``)
      → baseline_ref / current_ref: CompareRef
      → budgets: dict[Metric, Budget]
      → deltas: dict[Metric, Delta]
      → verdict: Verdict → VerdictCounts

Every record serializes with ``to_dict()`` and deserializes with
``from_dict()``.  Optional fields are omitted from the JSON when unset.
Metric-keyed mappings are always written in metric-key order.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from perfgate import __version__

log = logging.getLogger("perfgate")

RUN_SCHEMA_V1 = "perfgate.run.v1"
COMPARE_SCHEMA_V1 = "perfgate.compare.v1"
REPORT_SCHEMA_V1 = "perfgate.report.v1"

NORMALIZED_RUN_ID = "baseline"
NORMALIZED_TIMESTAMP = "1970-01-01T00:00:00Z"


def utc_now_iso() -> str:
    """Current UTC time as an RFC 3339 string with a ``Z`` suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _put(data: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        data[key] = value


# ---------------------------------------------------------------------------
# Metric vocabulary
# ---------------------------------------------------------------------------


class Direction(enum.StrEnum):
    """Which way a metric is allowed to move."""

    LOWER = "lower"  # lower is better
    HIGHER = "higher"  # higher is better


class MetricStatus(enum.StrEnum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]


_STATUS_SEVERITY = {MetricStatus.PASS: 0, MetricStatus.WARN: 1, MetricStatus.FAIL: 2}


class Metric(enum.StrEnum):
    """Compared metrics, declared in metric-key order."""

    WALL_MS = "wall_ms"
    MAX_RSS_KB = "max_rss_kb"
    THROUGHPUT_PER_S = "throughput_per_s"

    @property
    def default_direction(self) -> Direction:
        if self is Metric.THROUGHPUT_PER_S:
            return Direction.HIGHER
        return Direction.LOWER

    @property
    def default_warn_factor(self) -> float:
        return 0.9

    @property
    def display_unit(self) -> str:
        return _METRIC_UNITS[self]

    @property
    def order(self) -> int:
        return _METRIC_ORDER.index(self)

    @classmethod
    def parse(cls, name: str) -> Metric:
        """Look up a metric by its key, raising ValueError for unknown names."""
        try:
            return cls(name)
        except ValueError:
            known = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown metric {name!r} (expected one of: {known})") from None


_METRIC_ORDER = list(Metric)
_METRIC_UNITS = {
    Metric.WALL_MS: "ms",
    Metric.MAX_RSS_KB: "KB",
    Metric.THROUGHPUT_PER_S: "/s",
}


def sorted_metrics(metrics: Any) -> list[Metric]:
    """Return *metrics* in metric-key order."""
    return sorted(metrics, key=lambda m: m.order)


# ---------------------------------------------------------------------------
# Samples and summaries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Sample:
    """One invocation as recorded in a run receipt."""

    wall_ms: int
    exit_code: int
    warmup: bool = False
    timed_out: bool = False
    max_rss_kb: int | None = None
    stdout: str | None = None
    stderr: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "wall_ms": self.wall_ms,
            "exit_code": self.exit_code,
            "warmup": self.warmup,
            "timed_out": self.timed_out,
        }
        _put(data, "max_rss_kb", self.max_rss_kb)
        _put(data, "stdout", self.stdout)
        _put(data, "stderr", self.stderr)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Sample:
        """Deserialize from a dict, ignoring unknown fields."""
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class IntSummary:
    median: int
    min: int
    max: int

    def to_dict(self) -> dict[str, Any]:
        return {"median": self.median, "min": self.min, "max": self.max}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntSummary:
        return cls(median=int(data["median"]), min=int(data["min"]), max=int(data["max"]))


@dataclass(frozen=True)
class FloatSummary:
    median: float
    min: float
    max: float

    def to_dict(self) -> dict[str, Any]:
        return {"median": self.median, "min": self.min, "max": self.max}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FloatSummary:
        return cls(
            median=float(data["median"]),
            min=float(data["min"]),
            max=float(data["max"]),
        )


@dataclass(frozen=True)
class Stats:
    """Summary statistics over the measured samples of one run."""

    wall_ms: IntSummary
    max_rss_kb: IntSummary | None = None
    throughput_per_s: FloatSummary | None = None

    def value(self, metric: Metric) -> float | None:
        """The compared value (the median) of *metric*, or None if absent."""
        if metric is Metric.WALL_MS:
            return float(self.wall_ms.median)
        if metric is Metric.MAX_RSS_KB:
            return float(self.max_rss_kb.median) if self.max_rss_kb is not None else None
        if metric is Metric.THROUGHPUT_PER_S:
            if self.throughput_per_s is None:
                return None
            return self.throughput_per_s.median
        raise ValueError(f"Unhandled metric {metric!r}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"wall_ms": self.wall_ms.to_dict()}
        if self.max_rss_kb is not None:
            data["max_rss_kb"] = self.max_rss_kb.to_dict()
        if self.throughput_per_s is not None:
            data["throughput_per_s"] = self.throughput_per_s.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stats:
        rss = data.get("max_rss_kb")
        tput = data.get("throughput_per_s")
        return cls(
            wall_ms=IntSummary.from_dict(data["wall_ms"]),
            max_rss_kb=IntSummary.from_dict(rss) if rss is not None else None,
            throughput_per_s=FloatSummary.from_dict(tput) if tput is not None else None,
        )


# ---------------------------------------------------------------------------
# Budgets, deltas and verdicts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Budget:
    """Regression tolerance for one metric, as fractions (0.20 = 20%)."""

    threshold: float
    warn_threshold: float
    direction: Direction

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "warn_threshold": self.warn_threshold,
            "direction": self.direction.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Budget:
        return cls(
            threshold=float(data["threshold"]),
            warn_threshold=float(data["warn_threshold"]),
            direction=Direction(data["direction"]),
        )


@dataclass(frozen=True)
class Delta:
    baseline: float
    current: float
    ratio: float
    pct: float
    regression: float
    status: MetricStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "baseline": self.baseline,
            "current": self.current,
            "ratio": self.ratio,
            "pct": self.pct,
            "regression": self.regression,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Delta:
        return cls(
            baseline=float(data["baseline"]),
            current=float(data["current"]),
            ratio=float(data["ratio"]),
            pct=float(data["pct"]),
            regression=float(data["regression"]),
            status=MetricStatus(data["status"]),
        )


@dataclass
class VerdictCounts:
    passed: int = 0
    warned: int = 0
    failed: int = 0

    def add(self, status: MetricStatus) -> None:
        if status is MetricStatus.PASS:
            self.passed += 1
        elif status is MetricStatus.WARN:
            self.warned += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, int]:
        return {"pass": self.passed, "warn": self.warned, "fail": self.failed}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerdictCounts:
        return cls(
            passed=int(data.get("pass", 0)),
            warned=int(data.get("warn", 0)),
            failed=int(data.get("fail", 0)),
        )


@dataclass
class Verdict:
    status: MetricStatus
    counts: VerdictCounts = field(default_factory=VerdictCounts)
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "counts": self.counts.to_dict(),
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Verdict:
        return cls(
            status=MetricStatus(data["status"]),
            counts=VerdictCounts.from_dict(data.get("counts", {})),
            reasons=list(data.get("reasons", [])),
        )


# ---------------------------------------------------------------------------
# Receipt metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolInfo:
    name: str
    version: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolInfo:
        return cls(name=str(data["name"]), version=str(data["version"]))


def tool_info() -> ToolInfo:
    return ToolInfo(name="perfgate", version=__version__)


@dataclass(frozen=True)
class HostInfo:
    """Machine characteristics recorded alongside a run."""

    os: str
    arch: str
    cpu_count: int | None = None
    memory_bytes: int | None = None
    hostname_hash: str | None = None  # SHA-256 hex, opt-in

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"os": self.os, "arch": self.arch}
        _put(data, "cpu_count", self.cpu_count)
        _put(data, "memory_bytes", self.memory_bytes)
        _put(data, "hostname_hash", self.hostname_hash)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HostInfo:
        """Deserialize from a dict, ignoring unknown fields."""
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class RunMeta:
    id: str
    started_at: str
    ended_at: str
    host: HostInfo

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "host": self.host.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunMeta:
        return cls(
            id=str(data["id"]),
            started_at=str(data["started_at"]),
            ended_at=str(data["ended_at"]),
            host=HostInfo.from_dict(data["host"]),
        )


@dataclass(frozen=True)
class BenchMeta:
    """What was benchmarked and how."""

    name: str
    command: list[str]
    repeat: int
    warmup: int
    cwd: str | None = None
    work_units: int | None = None
    timeout_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        _put(data, "cwd", self.cwd)
        data["command"] = list(self.command)
        data["repeat"] = self.repeat
        data["warmup"] = self.warmup
        _put(data, "work_units", self.work_units)
        _put(data, "timeout_ms", self.timeout_ms)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchMeta:
        """Deserialize from a dict, ignoring unknown fields."""
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        filtered["command"] = list(filtered.get("command", []))
        return cls(**filtered)


@dataclass(frozen=True)
class CompareRef:
    """Where a compared receipt came from."""

    path: str | None = None
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        _put(data, "path", self.path)
        _put(data, "run_id", self.run_id)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompareRef:
        return cls(path=data.get("path"), run_id=data.get("run_id"))


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


def _check_schema(data: dict[str, Any], expected: str) -> None:
    schema = data.get("schema")
    if schema != expected:
        raise ValueError(f"Unsupported schema {schema!r} (expected {expected!r})")


@dataclass(frozen=True)
class RunReceipt:
    tool: ToolInfo
    run: RunMeta
    bench: BenchMeta
    samples: list[Sample]
    stats: Stats
    schema: str = RUN_SCHEMA_V1

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.schema,
            "tool": self.tool.to_dict(),
            "run": self.run.to_dict(),
            "bench": self.bench.to_dict(),
            "samples": [s.to_dict() for s in self.samples],
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunReceipt:
        _check_schema(data, RUN_SCHEMA_V1)
        return cls(
            schema=data["schema"],
            tool=ToolInfo.from_dict(data["tool"]),
            run=RunMeta.from_dict(data["run"]),
            bench=BenchMeta.from_dict(data["bench"]),
            samples=[Sample.from_dict(s) for s in data.get("samples", [])],
            stats=Stats.from_dict(data["stats"]),
        )


@dataclass(frozen=True)
class CompareReceipt:
    tool: ToolInfo
    bench: BenchMeta
    baseline_ref: CompareRef
    current_ref: CompareRef
    budgets: dict[Metric, Budget]
    deltas: dict[Metric, Delta]
    verdict: Verdict
    schema: str = COMPARE_SCHEMA_V1

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.schema,
            "tool": self.tool.to_dict(),
            "bench": self.bench.to_dict(),
            "baseline_ref": self.baseline_ref.to_dict(),
            "current_ref": self.current_ref.to_dict(),
            "budgets": {m.value: self.budgets[m].to_dict() for m in sorted_metrics(self.budgets)},
            "deltas": {m.value: self.deltas[m].to_dict() for m in sorted_metrics(self.deltas)},
            "verdict": self.verdict.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompareReceipt:
        _check_schema(data, COMPARE_SCHEMA_V1)
        budgets = {Metric.parse(k): Budget.from_dict(v) for k, v in data["budgets"].items()}
        deltas = {Metric.parse(k): Delta.from_dict(v) for k, v in data["deltas"].items()}
        return cls(
            schema=data["schema"],
            tool=ToolInfo.from_dict(data["tool"]),
            bench=BenchMeta.from_dict(data["bench"]),
            baseline_ref=CompareRef.from_dict(data.get("baseline_ref", {})),
            current_ref=CompareRef.from_dict(data.get("current_ref", {})),
            budgets={m: budgets[m] for m in sorted_metrics(budgets)},
            deltas={m: deltas[m] for m in sorted_metrics(deltas)},
            verdict=Verdict.from_dict(data["verdict"]),
        )


def promote_receipt(receipt: RunReceipt, *, normalize: bool = False) -> RunReceipt:
    """Return the receipt to store as a baseline.

    With *normalize*, the run id and timestamps are replaced by fixed
    values so that committed baselines produce stable diffs.  Host, bench,
    samples and stats are kept as they are.
    """
    if not normalize:
        return receipt
    run = dataclasses.replace(
        receipt.run,
        id=NORMALIZED_RUN_ID,
        started_at=NORMALIZED_TIMESTAMP,
        ended_at=NORMALIZED_TIMESTAMP,
    )
    return dataclasses.replace(receipt, run=run)


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def write_json(path: Path, data: dict[str, Any], *, pretty: bool = False) -> None:
    """Atomically write *data* as JSON to *path*, creating parent directories.

    The content goes to a temporary file in the same directory which is
    then renamed over *path*, so readers never observe a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if pretty:
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    else:
        content = json.dumps(data, separators=(",", ":"), ensure_ascii=False)

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    log.debug("Wrote %s", path)


def read_json(path: Path) -> dict[str, Any]:
    """Read a JSON object from *path*.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the file is not valid JSON or not a JSON object.
    """
    if not path.exists():
        raise FileNotFoundError(f"No such file: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}, got {type(data).__name__}")
    return data


def _load(path: Path, loader: Any) -> Any:
    data = read_json(path)
    try:
        return loader(data)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed receipt {path}: {exc}") from exc


def load_run_receipt(path: Path) -> RunReceipt:
    """Load a ``perfgate.run.v1`` receipt."""
    return _load(path, RunReceipt.from_dict)


def load_compare_receipt(path: Path) -> CompareReceipt:
    """Load a ``perfgate.compare.v1`` receipt."""
    return _load(path, CompareReceipt.from_dict)
