"""Configuration files, CLI value parsing and budget construction.

Handles:
- Loading bench suites from YAML (``.yaml``/``.yml``) or TOML (``.toml``).
- Validating the loaded configuration before anything runs.
- Parsing duration strings (``2s``, ``500ms``, ``1m30s``) and ``KEY=VALUE``
  pairs given on the command line.
- Building per-metric budgets from global settings plus overrides.

Config format (YAML shown; TOML uses ``[defaults]`` and ``[[bench]]``)::

    defaults:
      repeat: 5
      warmup: 1
      threshold: 0.20
      warn_factor: 0.90
      out_dir: artifacts/perfgate
      baseline_dir: baselines

    bench:
      - name: startup
        command: ["python", "-c", "pass"]
        timeout: 10s
        budgets:
          wall_ms: {threshold: 0.10, direction: lower}
"""

from __future__ import annotations

import logging
import re
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from perfgate.compare import DEFAULT_THRESHOLD, DEFAULT_WARN_FACTOR, make_budget
from perfgate.results import Budget, Direction, Metric, Stats, sorted_metrics

log = logging.getLogger("perfgate")

DEFAULT_REPEAT = 5
DEFAULT_WARMUP = 0
DEFAULT_OUT_DIR = Path("artifacts/perfgate")
DEFAULT_BASELINE_DIR = Path("baselines")


class ConfigError(ValueError):
    """A configuration file or option value is invalid."""


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration such as ``2s``, ``500ms`` or ``1m30s`` into seconds.

    Raises:
        ConfigError: If *text* is empty or contains anything else.
    """
    s = text.strip()
    if not s:
        raise ConfigError("empty duration")
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(s):
        if match.start() != pos and s[pos : match.start()].strip():
            raise ConfigError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or s[pos:].strip():
        raise ConfigError(f"invalid duration {text!r} (expected e.g. 2s, 500ms, 1m30s)")
    return total


def parse_key_value(text: str) -> tuple[str, str]:
    """Split ``KEY=VALUE``; the value may itself contain ``=``."""
    if "=" not in text:
        raise ConfigError(f"expected KEY=VALUE, got {text!r}")
    key, value = text.split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigError(f"empty key in {text!r}")
    return key, value


def parse_direction(text: str) -> Direction:
    try:
        return Direction(text.strip().lower())
    except ValueError:
        raise ConfigError(f"invalid direction {text!r} (expected 'lower' or 'higher')") from None


def parse_metric(text: str) -> Metric:
    try:
        return Metric.parse(text.strip())
    except ValueError as exc:
        raise ConfigError(str(exc)) from None


def parse_metric_thresholds(pairs: Iterable[str]) -> dict[Metric, float]:
    """Parse ``--metric-threshold wall_ms=0.10`` values."""
    out: dict[Metric, float] = {}
    for pair in pairs:
        key, value = parse_key_value(pair)
        metric = parse_metric(key)
        try:
            out[metric] = float(value)
        except ValueError:
            raise ConfigError(f"invalid threshold {value!r} for {key}") from None
    return out


def parse_directions(pairs: Iterable[str]) -> dict[Metric, Direction]:
    """Parse ``--direction throughput_per_s=higher`` values."""
    return {parse_metric(k): parse_direction(v) for k, v in map(parse_key_value, pairs)}


# ---------------------------------------------------------------------------
# Config model
# ---------------------------------------------------------------------------


@dataclass
class BudgetOverride:
    """Per-bench, per-metric budget settings; unset fields fall back."""

    threshold: float | None = None
    warn_factor: float | None = None
    direction: Direction | None = None


@dataclass
class BenchConfigFile:
    """One ``[[bench]]`` entry."""

    name: str
    command: list[str]
    cwd: str | None = None
    work: int | None = None
    timeout: str | None = None
    repeat: int | None = None
    warmup: int | None = None
    metrics: list[Metric] | None = None
    budgets: dict[Metric, BudgetOverride] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)

    def timeout_seconds(self) -> float | None:
        return parse_duration(self.timeout) if self.timeout is not None else None


@dataclass
class DefaultsConfig:
    repeat: int | None = None
    warmup: int | None = None
    threshold: float | None = None
    warn_factor: float | None = None
    out_dir: str | None = None
    baseline_dir: str | None = None


@dataclass
class ConfigFile:
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    benches: list[BenchConfigFile] = field(default_factory=list)

    def find_bench(self, name: str) -> BenchConfigFile:
        for bench in self.benches:
            if bench.name == name:
                return bench
        known = ", ".join(b.name for b in self.benches) or "none"
        raise ConfigError(f"bench {name!r} not found in config (available: {known})")

    # Resolution order for every setting: bench value, then defaults, then built-in.

    def repeat_for(self, bench: BenchConfigFile) -> int:
        return _first(bench.repeat, self.defaults.repeat, DEFAULT_REPEAT)

    def warmup_for(self, bench: BenchConfigFile) -> int:
        return _first(bench.warmup, self.defaults.warmup, DEFAULT_WARMUP)

    @property
    def threshold(self) -> float:
        return _first(self.defaults.threshold, DEFAULT_THRESHOLD)

    @property
    def warn_factor(self) -> float:
        return _first(self.defaults.warn_factor, DEFAULT_WARN_FACTOR)

    @property
    def out_dir(self) -> Path:
        if self.defaults.out_dir:
            return Path(self.defaults.out_dir)
        return DEFAULT_OUT_DIR

    @property
    def baseline_dir(self) -> Path:
        if self.defaults.baseline_dir:
            return Path(self.defaults.baseline_dir)
        return DEFAULT_BASELINE_DIR


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(path: Path) -> ConfigFile:
    """Load a config file; the format is chosen by extension.

    ``.toml`` is read with :mod:`tomllib`; anything else is read as YAML
    (which also accepts JSON).

    Raises:
        ConfigError: If the file is missing, unparseable or malformed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc

    try:
        if path.suffix.lower() == ".toml":
            data = tomllib.loads(text)
        else:
            data = yaml.safe_load(text)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot parse config {path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping, got {type(data).__name__}")
    config = config_from_dict(data)
    log.debug("Loaded %d bench(es) from %s", len(config.benches), path)
    return config


def _as_int(value: Any, where: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where} must be an integer, got {value!r}")
    return value


def _as_float(value: Any, where: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where} must be a number, got {value!r}")
    return float(value)


def _as_timeout(value: Any, where: str) -> str | None:
    if value is None:
        return None
    # Bare numbers are seconds.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{value}s"
    if not isinstance(value, str):
        raise ConfigError(f"{where} must be a duration string, got {value!r}")
    return value


def _budget_override(data: Any, where: str) -> BudgetOverride:
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a mapping")
    direction = data.get("direction")
    return BudgetOverride(
        threshold=_as_float(data.get("threshold"), f"{where}.threshold"),
        warn_factor=_as_float(data.get("warn_factor"), f"{where}.warn_factor"),
        direction=parse_direction(direction) if direction is not None else None,
    )


def _bench_from_dict(data: Any, index: int) -> BenchConfigFile:
    where = f"bench[{index}]"
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a mapping")

    command = data.get("command")
    if isinstance(command, str):
        raise ConfigError(f"{where}.command must be a list of arguments, not a string")
    if not isinstance(command, list):
        raise ConfigError(f"{where}.command is required")

    metrics = data.get("metrics")
    budgets_raw = data.get("budgets") or {}
    if not isinstance(budgets_raw, dict):
        raise ConfigError(f"{where}.budgets must be a mapping")
    env_raw = data.get("env") or {}
    if not isinstance(env_raw, dict):
        raise ConfigError(f"{where}.env must be a mapping")

    cwd = data.get("cwd")
    return BenchConfigFile(
        name=str(data.get("name", "")),
        command=[str(arg) for arg in command],
        cwd=str(cwd) if cwd is not None else None,
        work=_as_int(data.get("work"), f"{where}.work"),
        timeout=_as_timeout(data.get("timeout"), f"{where}.timeout"),
        repeat=_as_int(data.get("repeat"), f"{where}.repeat"),
        warmup=_as_int(data.get("warmup"), f"{where}.warmup"),
        metrics=[parse_metric(str(m)) for m in metrics] if metrics is not None else None,
        budgets={
            parse_metric(str(k)): _budget_override(v, f"{where}.budgets.{k}")
            for k, v in budgets_raw.items()
        },
        env={str(k): str(v) for k, v in env_raw.items()},
    )


def config_from_dict(data: dict[str, Any]) -> ConfigFile:
    """Build a ConfigFile from parsed YAML/TOML data.

    Raises:
        ConfigError: On structural problems (wrong types, unknown metrics).
    """
    defaults_raw = data.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ConfigError("defaults must be a mapping")
    defaults = DefaultsConfig(
        repeat=_as_int(defaults_raw.get("repeat"), "defaults.repeat"),
        warmup=_as_int(defaults_raw.get("warmup"), "defaults.warmup"),
        threshold=_as_float(defaults_raw.get("threshold"), "defaults.threshold"),
        warn_factor=_as_float(defaults_raw.get("warn_factor"), "defaults.warn_factor"),
        out_dir=defaults_raw.get("out_dir"),
        baseline_dir=defaults_raw.get("baseline_dir"),
    )

    benches_raw = data.get("bench", data.get("benches", []))
    if benches_raw is None:
        benches_raw = []
    if not isinstance(benches_raw, list):
        raise ConfigError("bench must be a list of bench entries")
    benches = [_bench_from_dict(b, i) for i, b in enumerate(benches_raw)]
    return ConfigFile(defaults=defaults, benches=benches)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ValidationError:
    """A single configuration validation problem."""

    field: str
    message: str
    severity: str = "error"  # "error" or "warning"


def _check_threshold(
    errors: list[ValidationError],
    where: str,
    threshold: float | None,
    warn_factor: float | None,
) -> None:
    if threshold is not None and threshold <= 0:
        errors.append(ValidationError(f"{where}.threshold", f"must be > 0 (got {threshold})"))
    if warn_factor is not None:
        if warn_factor <= 0:
            errors.append(
                ValidationError(f"{where}.warn_factor", f"must be > 0 (got {warn_factor})")
            )
        elif warn_factor > 1:
            errors.append(
                ValidationError(
                    f"{where}.warn_factor",
                    f"{warn_factor} puts the warn threshold above the fail threshold",
                    severity="warning",
                )
            )


def validate_config(config: ConfigFile) -> list[ValidationError]:
    """Validate a loaded configuration.

    Returns a list of validation errors.  Empty list means valid.
    """
    errors: list[ValidationError] = []
    d = config.defaults

    if d.repeat is not None and d.repeat < 1:
        errors.append(ValidationError("defaults.repeat", f"must be >= 1 (got {d.repeat})"))
    if d.warmup is not None and d.warmup < 0:
        errors.append(ValidationError("defaults.warmup", f"must be >= 0 (got {d.warmup})"))
    _check_threshold(errors, "defaults", d.threshold, d.warn_factor)

    if not config.benches:
        errors.append(ValidationError("bench", "no benches defined", severity="warning"))

    seen: set[str] = set()
    for i, bench in enumerate(config.benches):
        where = f"bench[{i}]"
        if not bench.name:
            errors.append(ValidationError(f"{where}.name", "must not be empty"))
        elif bench.name in seen:
            errors.append(ValidationError(f"{where}.name", f"duplicate bench {bench.name!r}"))
        else:
            seen.add(bench.name)
            where = f"bench.{bench.name}"

        if not bench.command:
            errors.append(ValidationError(f"{where}.command", "must not be empty"))
        if bench.repeat is not None and bench.repeat < 1:
            errors.append(ValidationError(f"{where}.repeat", f"must be >= 1 (got {bench.repeat})"))
        if bench.warmup is not None and bench.warmup < 0:
            errors.append(
                ValidationError(f"{where}.warmup", f"must be >= 0 (got {bench.warmup})")
            )
        if bench.work is not None and bench.work < 0:
            errors.append(ValidationError(f"{where}.work", f"must be >= 0 (got {bench.work})"))
        if bench.timeout is not None:
            try:
                if parse_duration(bench.timeout) <= 0:
                    errors.append(ValidationError(f"{where}.timeout", "must be positive"))
            except ConfigError as exc:
                errors.append(ValidationError(f"{where}.timeout", str(exc)))
        for metric, override in bench.budgets.items():
            _check_threshold(
                errors,
                f"{where}.budgets.{metric.value}",
                override.threshold,
                override.warn_factor,
            )

    return errors


def check_config(config: ConfigFile) -> None:
    """Log validation warnings and raise ConfigError if anything is fatal."""
    problems = validate_config(config)
    for w in (p for p in problems if p.severity == "warning"):
        log.warning("Config warning: %s: %s", w.field, w.message)
    fatal = [p for p in problems if p.severity == "error"]
    if fatal:
        lines = [f"  {p.field}: {p.message}" for p in fatal]
        raise ConfigError("Invalid configuration:\n" + "\n".join(lines))


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


def candidate_metrics(baseline: Stats, current: Stats) -> list[Metric]:
    """Metrics that both snapshots carry; ``wall_ms`` always qualifies."""
    return [m for m in Metric if baseline.value(m) is not None and current.value(m) is not None]


def build_budgets(
    baseline: Stats,
    current: Stats,
    *,
    threshold: float = DEFAULT_THRESHOLD,
    warn_factor: float = DEFAULT_WARN_FACTOR,
    metric_thresholds: Mapping[Metric, float] | None = None,
    directions: Mapping[Metric, Direction] | None = None,
    overrides: Mapping[Metric, BudgetOverride] | None = None,
    metrics: Iterable[Metric] | None = None,
) -> dict[Metric, Budget]:
    """Build budgets for the metrics both snapshots carry.

    Precedence for each setting: *overrides* (from a bench entry), then
    *metric_thresholds* / *directions* (from CLI flags), then the global
    *threshold* / *warn_factor* and the metric's default direction.

    Args:
        baseline: Baseline statistics.
        current: Current statistics.
        threshold: Global fail threshold as a fraction.
        warn_factor: Global warn factor (warn threshold = threshold * factor).
        metric_thresholds: Per-metric fail thresholds.
        directions: Per-metric directions.
        overrides: Per-metric bench overrides.
        metrics: Restrict budgets to these metrics.

    Returns:
        Budgets keyed by metric, in metric-key order.
    """
    metric_thresholds = metric_thresholds or {}
    directions = directions or {}
    overrides = overrides or {}
    allowed = set(metrics) if metrics is not None else None

    budgets: dict[Metric, Budget] = {}
    for metric in candidate_metrics(baseline, current):
        if allowed is not None and metric not in allowed:
            continue
        override = overrides.get(metric, BudgetOverride())
        budgets[metric] = make_budget(
            metric,
            threshold=_first(override.threshold, metric_thresholds.get(metric), threshold),
            warn_factor=_first(override.warn_factor, warn_factor),
            direction=_first(override.direction, directions.get(metric)),
        )
    return {m: budgets[m] for m in sorted_metrics(budgets)}
