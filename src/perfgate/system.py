"""Host characterization recorded in run receipts.

Everything here is best-effort: a field that cannot be determined is left
as None rather than failing the run.
"""

from __future__ import annotations

import hashlib
import logging
import os
import platform
import subprocess
import sys
from pathlib import Path

from perfgate.results import HostInfo

log = logging.getLogger("perfgate")

_OS_NAMES = {
    "linux": "linux",
    "darwin": "macos",
    "win32": "windows",
    "cygwin": "windows",
}


def os_name() -> str:
    """Short lowercase OS name (``linux``, ``macos``, ``windows``, ...)."""
    for prefix, name in _OS_NAMES.items():
        if sys.platform.startswith(prefix):
            return name
    return sys.platform.rstrip("0123456789")


def hostname_hash(hostname: str) -> str:
    """SHA-256 hex digest of *hostname*, so receipts never carry the raw name."""
    return hashlib.sha256(hostname.encode("utf-8")).hexdigest()


def capture_host_info(*, include_hostname_hash: bool = False) -> HostInfo:
    """Capture OS, architecture, CPU count and total memory of this machine."""
    return HostInfo(
        os=os_name(),
        arch=platform.machine() or "unknown",
        cpu_count=os.cpu_count(),
        memory_bytes=total_memory_bytes(),
        hostname_hash=hostname_hash(platform.node()) if include_hostname_hash else None,
    )


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


def total_memory_bytes() -> int | None:
    """Total physical memory in bytes (dispatches by platform)."""
    if sys.platform == "linux":
        return _total_memory_linux()
    if sys.platform == "darwin":
        return _sysctl_int("hw.memsize")
    log.debug("Memory capture not supported on %s", sys.platform)
    return None


def _total_memory_linux(meminfo_path: Path = Path("/proc/meminfo")) -> int | None:
    """Read ``MemTotal`` from /proc/meminfo."""
    try:
        for line in meminfo_path.read_text().splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "MemTotal:":
                # Values are in kB.
                return int(parts[1]) * 1024
    except Exception:  # noqa: BLE001
        pass
    return None


def _sysctl_int(key: str) -> int | None:
    """Read a macOS sysctl integer value. Returns None on failure."""
    try:
        proc = subprocess.run(
            ["sysctl", "-n", key],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if proc.returncode == 0 and proc.stdout.strip():
            return int(proc.stdout.strip())
    except Exception:  # noqa: BLE001
        pass
    return None
