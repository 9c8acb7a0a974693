"""Run one external command with a deadline, bounded capture and peak RSS.

A single invocation spawns the child with stdin closed and both output
streams piped.  Each pipe is drained on its own thread into a buffer that
keeps at most ``output_cap_bytes``; anything past the cap is read and
discarded so the child never blocks on a full pipe.

Waiting is delegated to a :class:`ProcessSupervisor` chosen once at import
time.  On POSIX the ``wait4`` backend polls the child every 10 ms, kills the
whole process group once the deadline passes, and reads peak RSS from the
resource-usage record of the reap.  Elsewhere the portable backend waits
with :meth:`subprocess.Popen.wait`, cannot enforce deadlines, and reports no
RSS.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

log = logging.getLogger("perfgate")

DEFAULT_OUTPUT_CAP = 8192
READ_CHUNK = 8192
POLL_INTERVAL_S = 0.01


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ExecutorError(RuntimeError):
    """Base class for failures to run a command at all."""


class EmptyArgv(ExecutorError):
    """The command has no program to run."""

    def __init__(self) -> None:
        super().__init__("command argv must not be empty")


class TimeoutUnsupported(ExecutorError):
    """A deadline was requested on a platform that cannot enforce one."""

    def __init__(self, backend: str) -> None:
        super().__init__(f"timeouts are not supported by the {backend!r} process backend")
        self.backend = backend


class ExecutionFailed(ExecutorError):
    """Spawning or reaping the child failed."""


# ---------------------------------------------------------------------------
# Command and result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandSpec:
    """Everything needed to launch one invocation."""

    argv: list[str]
    cwd: Path | None = None
    env: list[tuple[str, str]] = field(default_factory=list)  # layered on os.environ
    timeout: float | None = None  # seconds
    output_cap_bytes: int = DEFAULT_OUTPUT_CAP


@dataclass
class RunResult:
    """Outcome of one invocation."""

    wall_ms: int
    exit_code: int  # -1 when the child was terminated by a signal
    timed_out: bool
    max_rss_kb: int | None
    stdout: bytes
    stderr: bytes


# ---------------------------------------------------------------------------
# Output draining
# ---------------------------------------------------------------------------


class _CappedDrain:
    """Read a pipe to EOF on a background thread, keeping at most *cap* bytes."""

    def __init__(self, stream: IO[bytes], cap: int, name: str) -> None:
        self._stream = stream
        self._cap = max(cap, 0)
        self._buf = bytearray()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        fd = self._stream.fileno()
        try:
            while True:
                chunk = os.read(fd, READ_CHUNK)
                if not chunk:
                    break
                room = self._cap - len(self._buf)
                if room > 0:
                    self._buf += chunk[:room]
        except (ValueError, OSError):
            # Partial output is acceptable.
            pass

    def join(self) -> bytes:
        self._thread.join()
        self._stream.close()
        return bytes(self._buf)


# ---------------------------------------------------------------------------
# Process supervisors
# ---------------------------------------------------------------------------


def peak_rss_kb(rusage: Any) -> int | None:
    """Return peak resident set size in kilobytes from a rusage record.

    ``ru_maxrss`` is reported in kilobytes on Linux and the BSDs but in
    bytes on macOS.  A missing record or a zero reading yields None.
    """
    if rusage is None:
        return None
    raw = int(rusage.ru_maxrss)
    if raw <= 0:
        return None
    if sys.platform == "darwin":
        return raw // 1024
    return raw


def _exit_code_from_status(status: int) -> int:
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    return -1


def _kill_process_group(pid: int) -> None:
    """SIGKILL the child's process group, falling back to the child alone."""
    try:
        os.killpg(pid, signal.SIGKILL)
    except OSError:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


def _abandon(proc: subprocess.Popen[bytes], out: _CappedDrain, err: _CappedDrain) -> None:
    """Kill and reap a child whose wait was cut short, then retire both drains."""
    log.debug("Abandoning pid %d", proc.pid)
    _kill_process_group(proc.pid)
    if proc.returncode is None:
        proc.wait()
    out.join()
    err.join()


class ProcessSupervisor:
    """Waits for a spawned child, optionally enforcing a deadline.

    ``wait`` returns ``(exit_code, timed_out, max_rss_kb)`` once the child
    has been reaped.
    """

    name = "abstract"
    supports_timeout = False

    def wait(
        self,
        proc: subprocess.Popen[bytes],
        timeout: float | None,
        started: float,
    ) -> tuple[int, bool, int | None]:
        raise NotImplementedError


class Wait4Supervisor(ProcessSupervisor):
    """POSIX backend built on ``os.wait4``."""

    name = "wait4"
    supports_timeout = True

    def wait(
        self,
        proc: subprocess.Popen[bytes],
        timeout: float | None,
        started: float,
    ) -> tuple[int, bool, int | None]:
        if timeout is None:
            _, status, rusage = os.wait4(proc.pid, 0)
            return self._reaped(proc, status, rusage, timed_out=False)

        deadline = started + timeout
        while True:
            # An exit observed here wins over an expired deadline.
            pid, status, rusage = os.wait4(proc.pid, os.WNOHANG)
            if pid != 0:
                return self._reaped(proc, status, rusage, timed_out=False)
            if time.monotonic() >= deadline:
                break
            time.sleep(POLL_INTERVAL_S)

        log.debug("Deadline of %.3fs reached, killing pid %d", timeout, proc.pid)
        _kill_process_group(proc.pid)
        try:
            _, status, rusage = os.wait4(proc.pid, 0)
        except OSError as exc:
            raise ExecutionFailed(f"failed to reap pid {proc.pid} after kill: {exc}") from exc
        return self._reaped(proc, status, rusage, timed_out=True)

    @staticmethod
    def _reaped(
        proc: subprocess.Popen[bytes],
        status: int,
        rusage: Any,
        *,
        timed_out: bool,
    ) -> tuple[int, bool, int | None]:
        exit_code = _exit_code_from_status(status)
        # Popen must not try to wait for a pid we already reaped.
        proc.returncode = exit_code
        return exit_code, timed_out, peak_rss_kb(rusage)


class PortableSupervisor(ProcessSupervisor):
    """Fallback backend: plain blocking wait, no deadline, no RSS."""

    name = "portable"
    supports_timeout = False

    def wait(
        self,
        proc: subprocess.Popen[bytes],
        timeout: float | None,
        started: float,
    ) -> tuple[int, bool, int | None]:
        if timeout is not None:
            raise TimeoutUnsupported(self.name)
        code = proc.wait()
        return (code if code >= 0 else -1), False, None


def select_supervisor() -> ProcessSupervisor:
    """Pick the best process backend for this platform."""
    if os.name == "posix" and hasattr(os, "wait4"):
        return Wait4Supervisor()
    return PortableSupervisor()


_SUPERVISOR = select_supervisor()


def default_supervisor() -> ProcessSupervisor:
    """The backend selected for this process at import time."""
    return _SUPERVISOR


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def execute(spec: CommandSpec, *, supervisor: ProcessSupervisor | None = None) -> RunResult:
    """Run *spec* to completion or deadline.

    Args:
        spec: The command to run.
        supervisor: Process backend; defaults to :func:`default_supervisor`.

    Returns:
        RunResult with wall time, exit status, peak RSS and capped output.

    Raises:
        EmptyArgv: If ``spec.argv`` is empty.
        TimeoutUnsupported: If a timeout is set and the backend cannot
            enforce it.
        ExecutionFailed: If the process cannot be spawned or reaped.
    """
    if not spec.argv:
        raise EmptyArgv()
    sup = supervisor or _SUPERVISOR
    if spec.timeout is not None and not sup.supports_timeout:
        raise TimeoutUnsupported(sup.name)

    run_env = dict(os.environ)
    for key, value in spec.env:
        run_env[key] = value

    log.debug(
        "Executing %s (cwd=%s, timeout=%s, backend=%s)",
        spec.argv,
        spec.cwd,
        spec.timeout,
        sup.name,
    )
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            list(spec.argv),
            cwd=str(spec.cwd) if spec.cwd is not None else None,
            env=run_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        raise ExecutionFailed(f"failed to spawn {spec.argv[0]!r}: {exc}") from exc

    assert proc.stdout is not None and proc.stderr is not None
    out = _CappedDrain(proc.stdout, spec.output_cap_bytes, f"perfgate-stdout-{proc.pid}")
    err = _CappedDrain(proc.stderr, spec.output_cap_bytes, f"perfgate-stderr-{proc.pid}")
    out.start()
    err.start()

    try:
        exit_code, timed_out, max_rss_kb = sup.wait(proc, spec.timeout, started)
    except OSError as exc:
        _abandon(proc, out, err)
        raise ExecutionFailed(f"failed to wait for pid {proc.pid}: {exc}") from exc
    except BaseException:
        # Includes KeyboardInterrupt: the child is in its own session and
        # never sees the terminal's SIGINT.
        _abandon(proc, out, err)
        raise

    stdout = out.join()
    stderr = err.join()
    wall_ms = int((time.monotonic() - started) * 1000)

    return RunResult(
        wall_ms=wall_ms,
        exit_code=exit_code,
        timed_out=timed_out,
        max_rss_kb=max_rss_kb,
        stdout=stdout,
        stderr=stderr,
    )
