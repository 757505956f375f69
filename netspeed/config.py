"""Configuration loading helpers for the speed-test service."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import yaml


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path
    bin_dir: Path


@dataclass
class Iperf3Config:
    binary: str = "iperf3"
    port: int = 5201
    duration: int = 10
    gateway_streams: int = 3
    device_streams: int = 3
    default_streams: int = 4
    client_grace_seconds: int = 15
    connect_timeout_ms: int = 5000
    server_settle_seconds: float = 0.3
    inter_probe_seconds: float = 1.5
    command_timeout_seconds: int = 10

    def streams_for(self, device_type: Optional[str]) -> int:
        kind = (device_type or "").lower()
        if kind == "gateway":
            return self.gateway_streams
        if kind == "device":
            return self.device_streams
        return self.default_streams


@dataclass
class CollectorConfig:
    enabled: bool = True
    port: int = 5201
    fast_exit_seconds: float = 2.0
    max_fast_exits: int = 5
    default_scope: str = "default"


@dataclass
class CorrelationConfig:
    merge_window_seconds: int = 60
    retry_window_minutes: int = 30
    queue_size: int = 256
    background_delay_seconds: float = 2.0
    overlay_networks: List[str] = field(default_factory=lambda: ["100.64.0.0/10"])


@dataclass
class GatewayConfig:
    host: Optional[str] = None
    username: str = "root"
    ssh_port: int = 22
    scope: str = "default"
    remote_binary: str = "/data/cfspeedtest"
    local_binary: str = "cfspeedtest-linux-arm64"
    command_timeout_seconds: int = 120


@dataclass
class RemoteConfig:
    ssh_binary: str = "ssh"
    scp_binary: str = "scp"
    username: str = "root"
    connect_timeout_seconds: int = 10
    extra_options: List[str] = field(default_factory=list)


@dataclass
class TopologyConfig:
    base_url: str = "http://127.0.0.1:8088/api/topology"
    timeout_seconds: int = 15


@dataclass
class SchedulerConfig:
    enabled: bool = False
    interval_minutes: int = 60


@dataclass
class TargetConfig:
    host: str
    name: Optional[str] = None
    device_type: str = "device"
    scope: str = "default"
    ssh_port: int = 22
    username: Optional[str] = None
    owns_server: bool = True
    trusted: bool = False
    binary_path: Optional[str] = None


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    secret_key: str = "change-me"
    reverse_proxy_headers: bool = False
    worker_threads: int = 4


@dataclass
class ExportConfig:
    csv_name: str = "speedtests.csv"


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    iperf3: Iperf3Config = field(default_factory=Iperf3Config)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    topology: TopologyConfig = field(default_factory=TopologyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    targets: List[TargetConfig] = field(default_factory=list)
    web: WebConfig = field(default_factory=WebConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def gateway_binary_path(self) -> Path:
        return self.paths.bin_dir / self.gateway.local_binary


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths", {})
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
        bin_dir=_as_path(root_dir, paths_data.get("bin_dir", "tools")),
    )

    config = AppConfig(
        root_dir=root_dir,
        paths=paths,
        iperf3=Iperf3Config(**data.get("iperf3", {})),
        collector=CollectorConfig(**data.get("collector", {})),
        correlation=CorrelationConfig(**data.get("correlation", {})),
        gateway=GatewayConfig(**data.get("gateway", {})),
        remote=RemoteConfig(**data.get("remote", {})),
        topology=TopologyConfig(**data.get("topology", {})),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        targets=[TargetConfig(**entry) for entry in data.get("targets") or []],
        web=WebConfig(**data.get("web", {})),
        export=ExportConfig(**data.get("export", {})),
        logging=LoggingConfig(**data.get("logging", {})),
    )

    return config
