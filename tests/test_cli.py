"""Tests for perfgate.cli: the Click command-line interface."""

from __future__ import annotations

import csv
import io
import json
import logging
import sys
import tempfile
import unittest
from pathlib import Path

from click.testing import CliRunner

from perfgate.cli import main
from perfgate.results import write_json
from perfgate_test_helpers import make_compare_receipt, make_run_receipt


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.runner = CliRunner()

    def tearDown(self) -> None:
        logger = logging.getLogger("perfgate")
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        self._tmp.cleanup()

    def invoke(self, *args: str):
        return self.runner.invoke(main, ["-q", *args])

    def write_run(self, name: str, wall_ms: int, **kwargs) -> Path:
        path = self.root / name
        write_json(path, make_run_receipt([wall_ms], **kwargs).to_dict())
        return path

    def write_compare(self, baseline_ms: int, current_ms: int) -> Path:
        path = self.root / "compare.json"
        write_json(path, make_compare_receipt(baseline_ms, current_ms, name="startup").to_dict())
        return path


class TestHelp(CliTestCase):
    def test_group_help_lists_commands(self) -> None:
        result = self.runner.invoke(main, ["--help"])
        self.assertEqual(result.exit_code, 0)
        for command in (
            "run",
            "compare",
            "md",
            "github-annotations",
            "report",
            "promote",
            "export",
            "check",
        ):
            self.assertIn(command, result.output)

    def test_version(self) -> None:
        result = self.runner.invoke(main, ["--version"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("perfgate", result.output)

    def test_run_help(self) -> None:
        result = self.runner.invoke(main, ["run", "--help"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("--repeat", result.output)
        self.assertIn("--timeout", result.output)


class TestRunCommand(CliTestCase):
    def test_writes_receipt(self) -> None:
        out = self.root / "run.json"
        result = self.invoke(
            "run", "--name", "py", "--repeat", "2", "--warmup", "1", "--work", "10",
            "--out", str(out), "--", sys.executable, "-c", "pass",
        )
        self.assertEqual(result.exit_code, 0, result.output)
        data = json.loads(out.read_text())
        self.assertEqual(data["schema"], "perfgate.run.v1")
        self.assertEqual(data["bench"]["name"], "py")
        self.assertEqual(len(data["samples"]), 3)
        self.assertIn("throughput_per_s", data["stats"])
        self.assertIn("wall_ms", result.output)

    def test_failing_command_exits_1_but_writes_receipt(self) -> None:
        out = self.root / "run.json"
        result = self.invoke(
            "run", "--name", "bad", "--repeat", "1", "--out", str(out),
            "--", sys.executable, "-c", "raise SystemExit(3)",
        )
        self.assertEqual(result.exit_code, 1)
        self.assertTrue(out.exists())

    def test_allow_nonzero(self) -> None:
        out = self.root / "run.json"
        result = self.invoke(
            "run", "--name", "bad", "--repeat", "1", "--allow-nonzero", "--out", str(out),
            "--", sys.executable, "-c", "raise SystemExit(3)",
        )
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(out.read_text())["samples"][0]["exit_code"], 3)

    def test_bad_timeout(self) -> None:
        result = self.invoke(
            "run", "--name", "x", "--timeout", "soon", "--out", str(self.root / "r.json"),
            "--", "true",
        )
        self.assertEqual(result.exit_code, 1)
        self.assertFalse((self.root / "r.json").exists())

    def test_missing_command(self) -> None:
        result = self.invoke("run", "--name", "x")
        self.assertEqual(result.exit_code, 2)


class TestCompareCommand(CliTestCase):
    def _compare(self, current_ms: int, *extra: str):
        base = self.write_run("base.json", 1000)
        cur = self.write_run("cur.json", current_ms)
        out = self.root / "cmp.json"
        result = self.invoke(
            "compare", "--baseline", str(base), "--current", str(cur), "--out", str(out), *extra
        )
        return result, out

    def test_pass(self) -> None:
        result, out = self._compare(1050)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(out.read_text())["verdict"]["status"], "pass")

    def test_fail_exits_2(self) -> None:
        result, out = self._compare(1300)
        self.assertEqual(result.exit_code, 2)
        self.assertEqual(json.loads(out.read_text())["verdict"]["status"], "fail")

    def test_warn_exits_0_unless_fail_on_warn(self) -> None:
        result, _ = self._compare(1190)
        self.assertEqual(result.exit_code, 0)
        result, _ = self._compare(1190, "--fail-on-warn")
        self.assertEqual(result.exit_code, 3)

    def test_metric_threshold_flag(self) -> None:
        result, _ = self._compare(1300, "--metric-threshold", "wall_ms=0.5")
        self.assertEqual(result.exit_code, 0)

    def test_direction_flag(self) -> None:
        result, _ = self._compare(500, "--direction", "wall_ms=higher")
        self.assertEqual(result.exit_code, 2)

    def test_invalid_metric_flag(self) -> None:
        result, _ = self._compare(1000, "--metric-threshold", "cpu=0.5")
        self.assertEqual(result.exit_code, 1)

    def test_zero_baseline_is_error(self) -> None:
        base = self.write_run("base.json", 0)
        cur = self.write_run("cur.json", 10)
        result = self.invoke(
            "compare", "--baseline", str(base), "--current", str(cur),
            "--out", str(self.root / "cmp.json"),
        )
        self.assertEqual(result.exit_code, 1)
        self.assertFalse((self.root / "cmp.json").exists())

    def test_malformed_receipt(self) -> None:
        bad = self.root / "bad.json"
        bad.write_text("{}")
        cur = self.write_run("cur.json", 10)
        result = self.invoke("compare", "--baseline", str(bad), "--current", str(cur))
        self.assertEqual(result.exit_code, 1)


class TestRenderCommands(CliTestCase):
    def test_md_stdout(self) -> None:
        result = self.invoke("md", "--compare", str(self.write_compare(1000, 1300)))
        self.assertEqual(result.exit_code, 0)
        self.assertIn("❌ perfgate: fail", result.output)

    def test_md_out(self) -> None:
        out = self.root / "comment.md"
        result = self.invoke(
            "md", "--compare", str(self.write_compare(1000, 1000)), "--out", str(out)
        )
        self.assertEqual(result.exit_code, 0)
        self.assertTrue(out.read_text().startswith("✅ perfgate: pass"))

    def test_annotations(self) -> None:
        result = self.invoke(
            "github-annotations", "--compare", str(self.write_compare(1000, 1300))
        )
        self.assertEqual(result.exit_code, 0)
        self.assertIn("::error::perfgate startup wall_ms: +30.00%", result.output)

    def test_report(self) -> None:
        out = self.root / "report.json"
        md = self.root / "report.md"
        result = self.invoke(
            "report", "--compare", str(self.write_compare(1000, 1300)),
            "--out", str(out), "--md", str(md),
        )
        self.assertEqual(result.exit_code, 0)
        data = json.loads(out.read_text())
        self.assertEqual(data["report_type"], "perfgate.report.v1")
        self.assertEqual(data["summary"]["fail_count"], 1)
        self.assertTrue(md.exists())


class TestPromoteCommand(CliTestCase):
    def test_normalize(self) -> None:
        cur = self.write_run("cur.json", 100, run_id="abc")
        dest = self.root / "baselines" / "startup.json"
        result = self.invoke(
            "promote", "--current", str(cur), "--to", str(dest), "--normalize", "--pretty"
        )
        self.assertEqual(result.exit_code, 0)
        data = json.loads(dest.read_text())
        self.assertEqual(data["run"]["id"], "baseline")
        self.assertEqual(data["run"]["started_at"], "1970-01-01T00:00:00Z")

    def test_plain_copy_keeps_identity(self) -> None:
        cur = self.write_run("cur.json", 100, run_id="abc")
        dest = self.root / "b.json"
        result = self.invoke("promote", "--current", str(cur), "--to", str(dest))
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(dest.read_text())["run"]["id"], "abc")


class TestExportCommand(CliTestCase):
    def test_run_csv(self) -> None:
        out = self.root / "run.csv"
        result = self.invoke(
            "export", "--run", str(self.write_run("r.json", 42)), "--out", str(out)
        )
        self.assertEqual(result.exit_code, 0)
        rows = list(csv.reader(io.StringIO(out.read_text())))
        self.assertEqual(rows[1][0], "bench")
        self.assertEqual(rows[1][1], "42")

    def test_compare_jsonl(self) -> None:
        out = self.root / "cmp.jsonl"
        result = self.invoke(
            "export", "--compare", str(self.write_compare(1000, 1100)),
            "--format", "jsonl", "--out", str(out),
        )
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(out.read_text())["metric"], "wall_ms")

    def test_requires_exactly_one_source(self) -> None:
        self.assertEqual(self.invoke("export").exit_code, 2)
        run = str(self.write_run("r.json", 1))
        cmp = str(self.write_compare(1, 1))
        self.assertEqual(self.invoke("export", "--run", run, "--compare", cmp).exit_code, 2)


class TestCheckCommand(CliTestCase):
    def _config(self, command: list[str]) -> Path:
        path = self.root / "perfgate.toml"
        argv = ", ".join(json.dumps(a) for a in command)
        path.write_text(
            "[defaults]\n"
            "repeat = 1\n"
            f"out_dir = {json.dumps(str(self.root / 'out'))}\n"
            f"baseline_dir = {json.dumps(str(self.root / 'baselines'))}\n"
            "\n[[bench]]\n"
            'name = "py"\n'
            f"command = [{argv}]\n"
        )
        return path

    def test_no_baseline(self) -> None:
        config = self._config([sys.executable, "-c", "pass"])
        result = self.invoke("check", "--config", str(config), "--bench", "py")
        self.assertEqual(result.exit_code, 0, result.output)
        out = self.root / "out"
        self.assertTrue((out / "run.json").exists())
        self.assertFalse((out / "compare.json").exists())
        report = json.loads((out / "report.json").read_text())
        self.assertEqual(report["findings"][0]["code"], "baseline_missing")

    def test_require_baseline(self) -> None:
        config = self._config([sys.executable, "-c", "pass"])
        result = self.invoke(
            "check", "--config", str(config), "--bench", "py", "--require-baseline"
        )
        self.assertEqual(result.exit_code, 1)

    def test_with_generous_baseline(self) -> None:
        config = self._config([sys.executable, "-c", "pass"])
        baseline = self.root / "baselines" / "py.json"
        write_json(baseline, make_run_receipt([600000], name="py", rss_kb=None).to_dict())
        result = self.invoke("check", "--config", str(config), "--bench", "py")
        self.assertEqual(result.exit_code, 0, result.output)
        compare = json.loads((self.root / "out" / "compare.json").read_text())
        self.assertEqual(compare["verdict"]["status"], "pass")

    def test_unknown_bench(self) -> None:
        config = self._config(["true"])
        result = self.invoke("check", "--config", str(config), "--bench", "nope")
        self.assertEqual(result.exit_code, 1)

    def test_missing_config(self) -> None:
        result = self.invoke("check", "--config", str(self.root / "nope.toml"), "--bench", "x")
        self.assertEqual(result.exit_code, 2)


if __name__ == "__main__":
    unittest.main()
