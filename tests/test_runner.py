"""Tests for perfgate.runner: the warmup/measure loop and run receipts."""

from __future__ import annotations

import sys
import unittest
from pathlib import Path

from perfgate.executor import EmptyArgv, ExecutionFailed
from perfgate.runner import BenchProgress, BenchRunner, RunRequest
from perfgate_test_helpers import ScriptedExecutor, fake_host_probe, make_result


def spec_request(**kwargs: object) -> RunRequest:
    defaults: dict[str, object] = {"name": "demo", "command": ["true"]}
    defaults.update(kwargs)
    return RunRequest(**defaults)  # type: ignore[arg-type]


class TestRunLoop(unittest.TestCase):
    def _runner(self, executor: ScriptedExecutor) -> BenchRunner:
        return BenchRunner(executor=executor, progress_callback=lambda p: None)

    def test_invocation_count_and_warmup_flags(self) -> None:
        executor = ScriptedExecutor(make_result(10))
        outcome = self._runner(executor).run(spec_request().command_spec(), 2, 3)
        self.assertEqual(len(executor.calls), 5)
        self.assertEqual([s.warmup for s in outcome.samples], [True, True, False, False, False])
        self.assertFalse(outcome.failed)
        self.assertEqual(outcome.reasons, [])

    def test_same_spec_every_iteration(self) -> None:
        executor = ScriptedExecutor(make_result())
        spec = spec_request(env=[("A", "1")]).command_spec()
        self._runner(executor).run(spec, 1, 2)
        self.assertTrue(all(call == spec for call in executor.calls))

    def test_warmup_failures_ignored(self) -> None:
        executor = ScriptedExecutor(
            make_result(exit_code=1),
            make_result(timed_out=True, exit_code=-1),
            make_result(),
        )
        outcome = self._runner(executor).run(spec_request().command_spec(), 2, 1)
        self.assertFalse(outcome.failed)

    def test_measured_failures_recorded_and_loop_continues(self) -> None:
        executor = ScriptedExecutor(
            make_result(),
            make_result(exit_code=2),
            make_result(timed_out=True, exit_code=-1),
            make_result(),
        )
        outcome = self._runner(executor).run(spec_request().command_spec(), 1, 3)
        self.assertEqual(len(outcome.samples), 4)
        self.assertTrue(outcome.failed)
        self.assertEqual(
            outcome.reasons,
            [
                "iteration 2 exit code 2",
                "iteration 3 timed out",
                "iteration 3 exit code -1",
            ],
        )

    def test_output_decoded_lossily(self) -> None:
        executor = ScriptedExecutor(make_result(stdout=b"ok\xff", stderr=b""))
        outcome = self._runner(executor).run(spec_request().command_spec(), 0, 1)
        sample = outcome.samples[0]
        self.assertEqual(sample.stdout, "ok�")
        self.assertIsNone(sample.stderr)

    def test_spawn_error_aborts_with_iteration(self) -> None:
        executor = ScriptedExecutor(make_result(), ExecutionFailed("no such file"))
        with self.assertRaises(ExecutionFailed) as ctx:
            self._runner(executor).run(spec_request().command_spec(), 0, 3)
        self.assertIn("iteration 2", str(ctx.exception))
        self.assertEqual(len(executor.calls), 2)

    def test_configuration_errors_propagate_unchanged(self) -> None:
        executor = ScriptedExecutor(EmptyArgv())
        with self.assertRaises(EmptyArgv):
            self._runner(executor).run(spec_request().command_spec(), 0, 1)

    def test_progress_callback(self) -> None:
        seen: list[BenchProgress] = []
        runner = BenchRunner(
            executor=ScriptedExecutor(make_result(7)), progress_callback=seen.append
        )
        runner.run(spec_request().command_spec(), 1, 1)
        self.assertEqual([p.phase for p in seen], ["warmup", "measure"])
        self.assertEqual([p.iteration for p in seen], [1, 2])
        self.assertEqual(seen[0].wall_ms, 7)

    def test_default_progress_logs(self) -> None:
        runner = BenchRunner(executor=ScriptedExecutor(make_result(exit_code=1)))
        with self.assertLogs("perfgate", level="INFO") as logs:
            runner.run(spec_request().command_spec(), 0, 1)
        self.assertTrue(any("M1/1" in line and "exit 1" in line for line in logs.output))


class TestRunBench(unittest.TestCase):
    def _runner(self, executor: ScriptedExecutor) -> BenchRunner:
        return BenchRunner(
            executor=executor,
            progress_callback=lambda p: None,
            host_probe=fake_host_probe,
        )

    def test_receipt(self) -> None:
        executor = ScriptedExecutor(make_result(500), make_result(100), make_result(300))
        request = spec_request(
            repeat=2,
            warmup=1,
            work_units=100,
            timeout=1.5,
            cwd=Path("/tmp"),
        )
        outcome = self._runner(executor).run_bench(request)
        receipt = outcome.receipt
        self.assertEqual(receipt.schema, "perfgate.run.v1")
        self.assertEqual(receipt.tool.name, "perfgate")
        self.assertEqual(receipt.bench.name, "demo")
        self.assertEqual(receipt.bench.timeout_ms, 1500)
        self.assertEqual(receipt.bench.cwd, "/tmp")
        self.assertEqual(receipt.run.host.os, "linux")
        self.assertTrue(receipt.run.started_at.endswith("Z"))
        self.assertEqual(len(receipt.run.id), 36)
        self.assertEqual(receipt.stats.wall_ms.median, 200)
        self.assertIsNotNone(receipt.stats.throughput_per_s)
        self.assertEqual(len(receipt.samples), 3)
        self.assertFalse(outcome.failed)

    def test_timeout_forwarded_to_spec(self) -> None:
        executor = ScriptedExecutor(make_result())
        self._runner(executor).run_bench(spec_request(repeat=1, timeout=0.25))
        self.assertEqual(executor.calls[0].timeout, 0.25)

    def test_unique_run_ids(self) -> None:
        runner = self._runner(ScriptedExecutor(make_result()))
        a = runner.run_bench(spec_request(repeat=1)).receipt.run.id
        b = runner.run_bench(spec_request(repeat=1)).receipt.run.id
        self.assertNotEqual(a, b)

    def test_failed_run_still_has_receipt(self) -> None:
        executor = ScriptedExecutor(make_result(exit_code=1))
        outcome = self._runner(executor).run_bench(spec_request(repeat=2))
        self.assertTrue(outcome.failed)
        self.assertEqual(len(outcome.reasons), 2)
        self.assertEqual(outcome.receipt.stats.wall_ms.median, 10)

    def test_invalid_request(self) -> None:
        runner = self._runner(ScriptedExecutor(make_result()))
        for bad in (
            spec_request(repeat=0),
            spec_request(warmup=-1),
            spec_request(command=[]),
            spec_request(timeout=0),
        ):
            with self.subTest(request=bad):
                with self.assertRaises(ValueError):
                    runner.run_bench(bad)

    def test_rss_missing_from_executor(self) -> None:
        executor = ScriptedExecutor(make_result(max_rss_kb=None))
        receipt = self._runner(executor).run_bench(spec_request(repeat=2)).receipt
        self.assertIsNone(receipt.stats.max_rss_kb)


class TestRealProcess(unittest.TestCase):
    def test_runs_python(self) -> None:
        runner = BenchRunner(progress_callback=lambda p: None, host_probe=fake_host_probe)
        request = spec_request(command=[sys.executable, "-c", "print('hi')"], repeat=2)
        outcome = runner.run_bench(request)
        self.assertFalse(outcome.failed)
        self.assertEqual(outcome.receipt.samples[0].stdout, "hi\n")


if __name__ == "__main__":
    unittest.main()
