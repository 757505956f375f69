"""Subprocess helpers: launching in a fresh process group and killing whole trees."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from typing import List, Sequence

from ..errors import ProbeTimeoutError

LOGGER = logging.getLogger(__name__)


def popen(cmd: Sequence[str], **kwargs) -> subprocess.Popen:
    """Start ``cmd`` as the leader of its own process group."""
    if sys.platform == "win32":
        kwargs.setdefault("creationflags", subprocess.CREATE_NEW_PROCESS_GROUP)
    else:
        kwargs.setdefault("start_new_session", True)
    return subprocess.Popen(list(cmd), **kwargs)


def kill_process_tree(proc: subprocess.Popen, wait_seconds: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    try:
        if sys.platform == "win32":
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                capture_output=True,
                check=False,
                timeout=wait_seconds,
            )
        else:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (OSError, subprocess.TimeoutExpired) as exc:
        LOGGER.debug("Group kill of pid %s failed (%s), killing leader only", proc.pid, exc)
        try:
            proc.kill()
        except OSError:
            pass
    try:
        proc.wait(timeout=wait_seconds)
    except subprocess.TimeoutExpired:
        LOGGER.warning("Process %s did not exit after kill", proc.pid)


def run_with_timeout(cmd: List[str], timeout: float, description: str = "process") -> subprocess.CompletedProcess:
    """Run ``cmd`` to completion, killing its whole tree once ``timeout`` elapses."""
    proc = popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        LOGGER.warning("%s exceeded %ss, killing pid %s", description, timeout, proc.pid)
        kill_process_tree(proc)
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            pass
        raise ProbeTimeoutError(f"{description} timed out")
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def kill_orphans(name: str = "iperf3") -> None:
    """Force-kill leftover instances of ``name`` from an earlier run of this service."""
    if sys.platform == "win32":
        cmd = ["taskkill", "/F", "/IM", f"{name}.exe"]
    else:
        cmd = ["pkill", "-9", name]
    try:
        completed = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as exc:
        LOGGER.warning("Could not kill orphaned %s processes: %s", name, exc)
        return
    if completed.returncode == 0:
        LOGGER.info("Killed orphaned %s processes", name)
