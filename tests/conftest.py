from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from netspeed.config import AppConfig, PathsConfig
from netspeed.db import init_db
from netspeed.remote import CommandResult
from netspeed.speedtests.models import DirectionMeasurement, NetworkPath
from netspeed.speedtests.repository import ResultRepository
from netspeed.topology import grade_path


class FakeExecutor:
    """Answers commands by the first matching substring in ``responses``."""

    def __init__(self, responses: Optional[Dict[str, CommandResult]] = None, reachable: bool = True):
        self.responses = responses or {}
        self.reachable = reachable
        self.commands: List[str] = []
        self.uploads: List[Tuple[Path, str]] = []
        self.lock = threading.Lock()

    def execute(self, target, command, timeout):
        with self.lock:
            self.commands.append(command)
        for needle, result in self.responses.items():
            if needle in command:
                return result
        return CommandResult(True, "")

    def upload_file(self, target, local_path, remote_path):
        self.uploads.append((local_path, remote_path))
        return CommandResult(True, "")

    def test_connection(self, target):
        if self.reachable:
            return CommandResult(True, "ok")
        return CommandResult(False, "Connection refused")


class FakeTopology:
    """Returns scripted paths in order, repeating the last one."""

    def __init__(self, paths: Optional[List[NetworkPath]] = None, gateway_paths: Optional[List[NetworkPath]] = None):
        self.paths = list(paths or [valid_path()])
        self.gateway_paths = list(gateway_paths or [valid_path()])
        self.compute_calls: List[Tuple[str, Optional[str]]] = []
        self.gateway_calls: List[Optional[str]] = []
        self.invalidations = 0

    def compute_path(self, peer_address, local_address):
        self.compute_calls.append((peer_address, local_address))
        return self.paths.pop(0) if len(self.paths) > 1 else self.paths[0]

    def compute_gateway_path(self, wan_group):
        self.gateway_calls.append(wan_group)
        return self.gateway_paths.pop(0) if len(self.gateway_paths) > 1 else self.gateway_paths[0]

    def invalidate_cache(self):
        self.invalidations += 1

    def grade(self, path, download_mbps, upload_mbps, download_retransmits, upload_retransmits,
              download_bytes, upload_bytes):
        return grade_path(path, download_mbps, upload_mbps, download_retransmits,
                          upload_retransmits, download_bytes, upload_bytes)


class FakeProbe:
    def __init__(self, download: DirectionMeasurement, upload: DirectionMeasurement):
        self.download = download
        self.upload = upload
        self.calls: List[dict] = []

    def run(self, host, port, duration, streams, reverse):
        self.calls.append({"host": host, "port": port, "duration": duration, "streams": streams, "reverse": reverse})
        return self.download if reverse else self.upload


def valid_path(realistic_max_mbps: float = 1000.0) -> NetworkPath:
    return NetworkPath(is_valid=True, realistic_max_mbps=realistic_max_mbps, theoretical_max_mbps=realistic_max_mbps)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    paths = PathsConfig(
        data_dir=tmp_path / "data",
        logs_dir=tmp_path / "logs",
        bin_dir=tmp_path / "tools",
    )
    for path in (paths.data_dir, paths.logs_dir, paths.bin_dir):
        path.mkdir()
    return AppConfig(root_dir=tmp_path, paths=paths)


@pytest.fixture
def session_factory(tmp_path):
    return init_db(tmp_path)


@pytest.fixture
def repository(session_factory) -> ResultRepository:
    return ResultRepository(session_factory)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def topology() -> FakeTopology:
    return FakeTopology()
