"""Remote command execution against test targets.

The engine only composes command strings and reads back text and exit status.
``SubprocessRemoteExecutor`` delegates transport to the system OpenSSH client.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from .config import RemoteConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    success: bool
    output: str = ""


class RemoteExecutor(Protocol):
    def execute(self, target, command: str, timeout: float) -> CommandResult:
        ...

    def upload_file(self, target, local_path: Path, remote_path: str) -> CommandResult:
        ...

    def test_connection(self, target) -> CommandResult:
        ...


class SubprocessRemoteExecutor:
    """Runs commands through ``ssh`` and copies files with ``scp`` in batch mode."""

    def __init__(self, config: RemoteConfig):
        self.config = config

    def _options(self) -> List[str]:
        options = [
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.config.connect_timeout_seconds}",
        ]
        for option in self.config.extra_options:
            options.extend(["-o", option])
        return options

    def _destination(self, target) -> str:
        username = getattr(target, "username", None) or self.config.username
        return f"{username}@{target.host}" if username else target.host

    def _run(self, cmd: List[str], timeout: float) -> CommandResult:
        LOGGER.debug("Running %s", " ".join(cmd))
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
        except subprocess.TimeoutExpired:
            return CommandResult(False, f"Command timed out after {timeout}s")
        except FileNotFoundError as exc:
            return CommandResult(False, f"{cmd[0]} not available: {exc}")
        if completed.returncode != 0:
            output = (completed.stderr or completed.stdout or "").strip()
            return CommandResult(False, output or f"exit status {completed.returncode}")
        return CommandResult(True, completed.stdout or "")

    def execute(self, target, command: str, timeout: float) -> CommandResult:
        port = str(getattr(target, "ssh_port", 22))
        cmd = [self.config.ssh_binary, *self._options(), "-p", port, self._destination(target), command]
        return self._run(cmd, timeout)

    def upload_file(self, target, local_path: Path, remote_path: str, timeout: Optional[float] = None) -> CommandResult:
        port = str(getattr(target, "ssh_port", 22))
        cmd = [
            self.config.scp_binary,
            *self._options(),
            "-P", port,
            str(local_path),
            f"{self._destination(target)}:{remote_path}",
        ]
        return self._run(cmd, timeout or 120)

    def test_connection(self, target) -> CommandResult:
        result = self.execute(target, "echo ok", self.config.connect_timeout_seconds + 5)
        if result.success and "ok" in result.output:
            return result
        return CommandResult(False, result.output or "SSH connection failed")
