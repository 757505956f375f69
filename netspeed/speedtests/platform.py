"""Target operating-system detection and per-platform iperf3 command builders."""

from __future__ import annotations

import logging
import re
from typing import Optional, Union

from ..cache import ScopedCache
from ..remote import RemoteExecutor
from .models import TargetPlatform, TestTarget

LOGGER = logging.getLogger(__name__)

POSIX_MARKERS = ("linux", "darwin", "freebsd", "unix")
SERVER_LOG = "/tmp/iperf3_server.log"


class PosixCommands:
    platform = TargetPlatform.POSIX

    def kill_server(self) -> str:
        return "pkill -9 iperf3 2>/dev/null || true"

    def start_server(self, port: int, binary: Optional[str] = None) -> str:
        return f"nohup {binary or 'iperf3'} -s -p {port} > {SERVER_LOG} 2>&1 & echo $!"

    def server_log(self) -> Optional[str]:
        return f"cat {SERVER_LOG}"

    def locate_binary(self) -> Optional[str]:
        return None

    @staticmethod
    def started(output: str) -> bool:
        lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
        return bool(lines) and lines[-1].isdigit()


class WindowsCommands:
    platform = TargetPlatform.WINDOWS

    def kill_server(self) -> str:
        return "taskkill /F /IM iperf3.exe 2>nul || echo done"

    def start_server(self, port: int, binary: Optional[str] = None) -> str:
        # Win32_Process.Create detaches the server from the SSH session.
        executable = binary or "iperf3.exe"
        return (
            'pwsh -NoProfile -Command "'
            f"$r = Invoke-WmiMethod -Class Win32_Process -Name Create -ArgumentList '{executable} -s -p {port}'; "
            "if ($r.ReturnValue -eq 0) { 'started:' + $r.ProcessId } else { 'failed:' + $r.ReturnValue }\""
        )

    def server_log(self) -> Optional[str]:
        return None

    def locate_binary(self) -> Optional[str]:
        return "where iperf3 2>nul"

    @staticmethod
    def started(output: str) -> bool:
        return re.search(r"started:\d+", output) is not None


CommandSet = Union[PosixCommands, WindowsCommands]


def commands_for(platform: TargetPlatform) -> CommandSet:
    if platform is TargetPlatform.WINDOWS:
        return WindowsCommands()
    return PosixCommands()


class OsDetector:
    """Detects a target's OS family once and remembers it for the process lifetime."""

    def __init__(self, executor: RemoteExecutor, cache: ScopedCache, timeout: int = 10):
        self.executor = executor
        self.cache = cache
        self.timeout = timeout

    def detect(self, target: TestTarget) -> TargetPlatform:
        return self.cache.get_or_compute(
            target.scope_id, ("os", target.host), lambda: self._probe(target)
        )

    def _probe(self, target: TestTarget) -> TargetPlatform:
        result = self.executor.execute(target, "uname -s 2>/dev/null", self.timeout)
        if result.success and any(marker in result.output.lower() for marker in POSIX_MARKERS):
            LOGGER.debug("Detected POSIX target %s (%s)", target.host, result.output.strip())
            return TargetPlatform.POSIX

        result = self.executor.execute(target, "pwsh -Version 2>nul", self.timeout)
        if result.success and "powershell" in result.output.lower():
            LOGGER.debug("Detected Windows target %s", target.host)
            return TargetPlatform.WINDOWS

        LOGGER.warning("Could not identify OS of %s, assuming POSIX", target.host)
        return TargetPlatform.POSIX

    def binary_path(self, target: TestTarget, commands: CommandSet) -> Optional[str]:
        """Resolve the iperf3 executable, preferring a per-target override."""
        if target.binary_path:
            return target.binary_path
        locate = commands.locate_binary()
        if locate is None:
            return None
        return self.cache.get_or_compute(
            target.scope_id,
            ("iperf3-path", target.host),
            lambda: self._locate(target, locate),
        )

    def _locate(self, target: TestTarget, command: str) -> Optional[str]:
        result = self.executor.execute(target, command, self.timeout)
        if not result.success:
            return None
        for line in result.output.splitlines():
            if line.strip():
                return line.strip()
        return None
