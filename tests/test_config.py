"""Tests for perfgate.config: config files, value parsing and budgets."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from perfgate.config import (
    DEFAULT_BASELINE_DIR,
    DEFAULT_OUT_DIR,
    BudgetOverride,
    ConfigError,
    ConfigFile,
    build_budgets,
    check_config,
    config_from_dict,
    load_config,
    parse_directions,
    parse_duration,
    parse_key_value,
    parse_metric_thresholds,
    validate_config,
)
from perfgate.results import Direction, FloatSummary, IntSummary, Metric, Stats


def stats(with_rss: bool = True, with_tput: bool = False) -> Stats:
    return Stats(
        wall_ms=IntSummary(100, 90, 110),
        max_rss_kb=IntSummary(2048, 2000, 2100) if with_rss else None,
        throughput_per_s=FloatSummary(10.0, 9.0, 11.0) if with_tput else None,
    )


YAML_CONFIG = """\
defaults:
  repeat: 3
  warmup: 1
  threshold: 0.15
  baseline_dir: perf/baselines

bench:
  - name: startup
    command: ["python", "-c", "pass"]
    timeout: 2s
    work: 1000
    budgets:
      wall_ms: {threshold: 0.1, direction: lower}
  - name: build
    command: ["make"]
    repeat: 7
"""

TOML_CONFIG = """\
[defaults]
repeat = 2
warn_factor = 0.5

[[bench]]
name = "demo"
command = ["sleep", "0.01"]
timeout = "500ms"
metrics = ["wall_ms"]

[bench.budgets.wall_ms]
threshold = 0.3
"""


class TestParseDuration(unittest.TestCase):
    def test_units(self) -> None:
        self.assertAlmostEqual(parse_duration("2s"), 2.0)
        self.assertAlmostEqual(parse_duration("500ms"), 0.5)
        self.assertAlmostEqual(parse_duration("250us"), 0.00025)
        self.assertAlmostEqual(parse_duration("1h"), 3600.0)
        self.assertAlmostEqual(parse_duration("3m"), 180.0)

    def test_compound(self) -> None:
        self.assertAlmostEqual(parse_duration("1m30s"), 90.0)
        self.assertAlmostEqual(parse_duration("1s 500ms"), 1.5)

    def test_fractional(self) -> None:
        self.assertAlmostEqual(parse_duration("1.5s"), 1.5)

    def test_invalid(self) -> None:
        for bad in ["", "5", "abc", "2x", "s", "2s junk", "junk2s"]:
            with self.subTest(text=bad):
                with self.assertRaises(ConfigError):
                    parse_duration(bad)


class TestParseValues(unittest.TestCase):
    def test_key_value(self) -> None:
        self.assertEqual(parse_key_value("A=1"), ("A", "1"))
        self.assertEqual(parse_key_value("A=b=c"), ("A", "b=c"))
        self.assertEqual(parse_key_value("A="), ("A", ""))

    def test_key_value_invalid(self) -> None:
        with self.assertRaises(ConfigError):
            parse_key_value("novalue")
        with self.assertRaises(ConfigError):
            parse_key_value("=x")

    def test_metric_thresholds(self) -> None:
        self.assertEqual(
            parse_metric_thresholds(["wall_ms=0.1", "max_rss_kb=0.5"]),
            {Metric.WALL_MS: 0.1, Metric.MAX_RSS_KB: 0.5},
        )

    def test_metric_thresholds_invalid(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            parse_metric_thresholds(["wall_ms=fast"])
        self.assertIn("invalid threshold", str(ctx.exception))
        with self.assertRaises(ConfigError) as ctx:
            parse_metric_thresholds(["cpu=0.1"])
        self.assertIn("Unknown metric", str(ctx.exception))

    def test_directions(self) -> None:
        self.assertEqual(
            parse_directions(["wall_ms=HIGHER"]), {Metric.WALL_MS: Direction.HIGHER}
        )
        with self.assertRaises(ConfigError):
            parse_directions(["wall_ms=sideways"])


class TestLoadConfig(unittest.TestCase):
    def _write(self, name: str, content: str) -> Path:
        path = Path(self._tmp.name) / name
        path.write_text(content)
        return path

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_yaml(self) -> None:
        config = load_config(self._write("perfgate.yaml", YAML_CONFIG))
        self.assertEqual([b.name for b in config.benches], ["startup", "build"])
        startup = config.find_bench("startup")
        self.assertEqual(startup.command, ["python", "-c", "pass"])
        self.assertAlmostEqual(startup.timeout_seconds() or 0.0, 2.0)
        self.assertEqual(startup.work, 1000)
        self.assertEqual(startup.budgets[Metric.WALL_MS].threshold, 0.1)
        self.assertEqual(startup.budgets[Metric.WALL_MS].direction, Direction.LOWER)
        self.assertEqual(config.repeat_for(startup), 3)
        self.assertEqual(config.repeat_for(config.find_bench("build")), 7)
        self.assertEqual(config.warmup_for(startup), 1)
        self.assertAlmostEqual(config.threshold, 0.15)
        self.assertAlmostEqual(config.warn_factor, 0.90)
        self.assertEqual(config.baseline_dir, Path("perf/baselines"))
        self.assertEqual(config.out_dir, DEFAULT_OUT_DIR)

    def test_toml(self) -> None:
        config = load_config(self._write("perfgate.toml", TOML_CONFIG))
        demo = config.find_bench("demo")
        self.assertAlmostEqual(demo.timeout_seconds() or 0.0, 0.5)
        self.assertEqual(demo.metrics, [Metric.WALL_MS])
        self.assertEqual(demo.budgets[Metric.WALL_MS].threshold, 0.3)
        self.assertEqual(config.repeat_for(demo), 2)
        self.assertEqual(config.warmup_for(demo), 0)
        self.assertAlmostEqual(config.warn_factor, 0.5)
        self.assertEqual(config.baseline_dir, DEFAULT_BASELINE_DIR)

    def test_empty_file(self) -> None:
        config = load_config(self._write("empty.yaml", ""))
        self.assertEqual(config.benches, [])

    def test_missing_file(self) -> None:
        with self.assertRaises(ConfigError):
            load_config(Path(self._tmp.name) / "nope.toml")

    def test_unparseable(self) -> None:
        with self.assertRaises(ConfigError):
            load_config(self._write("bad.toml", "[[bench]\nname ="))
        with self.assertRaises(ConfigError):
            load_config(self._write("bad.yaml", "bench: [unclosed"))

    def test_not_a_mapping(self) -> None:
        with self.assertRaises(ConfigError):
            load_config(self._write("list.yaml", "- a\n- b\n"))

    def test_unknown_bench(self) -> None:
        config = load_config(self._write("perfgate.yaml", YAML_CONFIG))
        with self.assertRaises(ConfigError) as ctx:
            config.find_bench("missing")
        self.assertIn("startup", str(ctx.exception))


class TestConfigFromDict(unittest.TestCase):
    def test_string_command_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            config_from_dict({"bench": [{"name": "x", "command": "make all"}]})

    def test_missing_command_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            config_from_dict({"bench": [{"name": "x"}]})

    def test_unknown_budget_metric_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            config_from_dict(
                {"bench": [{"name": "x", "command": ["a"], "budgets": {"cpu": {}}}]}
            )

    def test_numeric_timeout_is_seconds(self) -> None:
        config = config_from_dict({"bench": [{"name": "x", "command": ["a"], "timeout": 3}]})
        self.assertAlmostEqual(config.benches[0].timeout_seconds() or 0.0, 3.0)

    def test_wrong_type_repeat(self) -> None:
        with self.assertRaises(ConfigError):
            config_from_dict({"defaults": {"repeat": "five"}})

    def test_benches_alias(self) -> None:
        config = config_from_dict({"benches": [{"name": "x", "command": ["a"]}]})
        self.assertEqual(config.benches[0].name, "x")


class TestValidateConfig(unittest.TestCase):
    def test_valid(self) -> None:
        config = config_from_dict({"bench": [{"name": "x", "command": ["a"]}]})
        self.assertEqual(validate_config(config), [])

    def test_problems_reported(self) -> None:
        config = config_from_dict(
            {
                "defaults": {"threshold": 0, "warn_factor": 1.5},
                "bench": [
                    {"name": "x", "command": [], "repeat": 0, "timeout": "soon"},
                    {"name": "x", "command": ["a"]},
                ],
            }
        )
        errors = validate_config(config)
        fields = {e.field for e in errors}
        self.assertIn("defaults.threshold", fields)
        self.assertIn("bench.x.command", fields)
        self.assertIn("bench.x.repeat", fields)
        self.assertIn("bench.x.timeout", fields)
        self.assertIn("bench[1].name", fields)
        warn = [e for e in errors if e.field == "defaults.warn_factor"]
        self.assertEqual(warn[0].severity, "warning")

    def test_no_benches_is_warning(self) -> None:
        errors = validate_config(ConfigFile())
        self.assertEqual([e.severity for e in errors], ["warning"])

    def test_check_config_raises_on_errors(self) -> None:
        config = config_from_dict({"bench": [{"name": "", "command": ["a"]}]})
        with self.assertRaises(ConfigError):
            check_config(config)


class TestBuildBudgets(unittest.TestCase):
    def test_candidates_need_both_sides(self) -> None:
        budgets = build_budgets(stats(with_rss=True), stats(with_rss=False))
        self.assertEqual(list(budgets), [Metric.WALL_MS])

    def test_all_metrics_in_order(self) -> None:
        budgets = build_budgets(stats(with_tput=True), stats(with_tput=True))
        self.assertEqual(list(budgets), list(Metric))
        self.assertEqual(budgets[Metric.THROUGHPUT_PER_S].direction, Direction.HIGHER)

    def test_globals(self) -> None:
        budgets = build_budgets(stats(), stats(), threshold=0.5, warn_factor=0.5)
        self.assertAlmostEqual(budgets[Metric.WALL_MS].threshold, 0.5)
        self.assertAlmostEqual(budgets[Metric.WALL_MS].warn_threshold, 0.25)

    def test_precedence(self) -> None:
        budgets = build_budgets(
            stats(),
            stats(),
            threshold=0.2,
            metric_thresholds={Metric.WALL_MS: 0.3, Metric.MAX_RSS_KB: 0.4},
            directions={Metric.MAX_RSS_KB: Direction.HIGHER},
            overrides={Metric.WALL_MS: BudgetOverride(threshold=0.05, warn_factor=0.5)},
        )
        self.assertAlmostEqual(budgets[Metric.WALL_MS].threshold, 0.05)
        self.assertAlmostEqual(budgets[Metric.WALL_MS].warn_threshold, 0.025)
        self.assertAlmostEqual(budgets[Metric.MAX_RSS_KB].threshold, 0.4)
        self.assertEqual(budgets[Metric.MAX_RSS_KB].direction, Direction.HIGHER)

    def test_metrics_filter(self) -> None:
        budgets = build_budgets(stats(), stats(), metrics=[Metric.MAX_RSS_KB])
        self.assertEqual(list(budgets), [Metric.MAX_RSS_KB])


if __name__ == "__main__":
    unittest.main()
