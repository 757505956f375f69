"""Shared dataclasses for speed-test results and path analysis."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Direction(str, Enum):
    DEVICE_INITIATED = "device_initiated"
    CLIENT_TO_SERVER = "client_to_server"
    BROWSER_TO_SERVER = "browser_to_server"
    GATEWAY_DIRECT = "gateway_direct"


class TestStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TargetPlatform(str, Enum):
    POSIX = "posix"
    WINDOWS = "windows"


class PerformanceGrade(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


@dataclass(frozen=True)
class DirectionMeasurement:
    """Parsed outcome of one throughput probe."""

    success: bool
    bits_per_second: float = 0.0
    bytes: int = 0
    retransmits: int = 0
    local_address: Optional[str] = None
    raw: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str, raw: Optional[str] = None) -> "DirectionMeasurement":
        return cls(success=False, error=error, raw=raw)

    @property
    def mbps(self) -> float:
        return self.bits_per_second / 1_000_000


@dataclass(frozen=True)
class PathHop:
    name: str
    kind: str
    address: Optional[str] = None
    link_speed_mbps: float = 0.0
    wireless: bool = False


@dataclass(frozen=True)
class NetworkPath:
    is_valid: bool
    hops: Tuple[PathHop, ...] = ()
    error: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    theoretical_max_mbps: float = 0.0
    realistic_max_mbps: float = 0.0

    @classmethod
    def invalid(cls, error: str, destination: Optional[str] = None) -> "NetworkPath":
        return cls(is_valid=False, error=error, destination=destination)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkPath":
        hops = tuple(
            PathHop(
                name=hop.get("name") or hop.get("device_name") or "",
                kind=hop.get("kind") or hop.get("type") or "unknown",
                address=hop.get("address"),
                link_speed_mbps=float(hop.get("link_speed_mbps") or 0),
                wireless=bool(hop.get("wireless", False)),
            )
            for hop in data.get("hops") or []
        )
        return cls(
            is_valid=bool(data.get("is_valid", False)),
            hops=hops,
            error=data.get("error"),
            source=data.get("source"),
            destination=data.get("destination"),
            theoretical_max_mbps=float(data.get("theoretical_max_mbps") or 0),
            realistic_max_mbps=float(data.get("realistic_max_mbps") or 0),
        )


@dataclass(frozen=True)
class PathAnalysisResult:
    path: NetworkPath
    measured_download_mbps: float = 0.0
    measured_upload_mbps: float = 0.0
    download_retransmits: int = 0
    upload_retransmits: int = 0
    download_bytes: int = 0
    upload_bytes: int = 0
    download_efficiency_pct: float = 0.0
    upload_efficiency_pct: float = 0.0
    download_grade: Optional[PerformanceGrade] = None
    upload_grade: Optional[PerformanceGrade] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathAnalysisResult":
        grades = {}
        for key in ("download_grade", "upload_grade"):
            grades[key] = PerformanceGrade(data[key]) if data.get(key) else None
        return cls(
            path=NetworkPath.from_dict(data.get("path") or {}),
            measured_download_mbps=data.get("measured_download_mbps", 0.0),
            measured_upload_mbps=data.get("measured_upload_mbps", 0.0),
            download_retransmits=data.get("download_retransmits", 0),
            upload_retransmits=data.get("upload_retransmits", 0),
            download_bytes=data.get("download_bytes", 0),
            upload_bytes=data.get("upload_bytes", 0),
            download_efficiency_pct=data.get("download_efficiency_pct", 0.0),
            upload_efficiency_pct=data.get("upload_efficiency_pct", 0.0),
            **grades,
        )


@dataclass(frozen=True)
class TestTarget:
    """A device the controller can drive over the remote executor."""

    host: str
    scope_id: str = "default"
    name: Optional[str] = None
    device_type: str = "device"
    ssh_port: int = 22
    username: Optional[str] = None
    owns_server: bool = True
    trusted: bool = False
    binary_path: Optional[str] = None


@dataclass(frozen=True)
class TestExecutionContext:
    target: TestTarget
    platform: TargetPlatform
    iperf_port: int


@dataclass(frozen=True)
class SpeedTestResult:
    scope_id: str
    device_host: str
    direction: Direction
    id: Optional[int] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    status: TestStatus = TestStatus.COMPLETED
    timestamp: datetime = field(default_factory=datetime.utcnow)
    download_bps: float = 0.0
    upload_bps: float = 0.0
    download_bytes: int = 0
    upload_bytes: int = 0
    download_retransmits: int = 0
    upload_retransmits: int = 0
    duration_seconds: int = 0
    parallel_streams: int = 0
    success: bool = False
    error: Optional[str] = None
    local_address: Optional[str] = None
    path_analysis: Optional[PathAnalysisResult] = None
    path_stale: bool = False
    raw_download: Optional[str] = None
    raw_upload: Optional[str] = None
    ping_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    download_latency_ms: Optional[float] = None
    upload_latency_ms: Optional[float] = None
    wan_group: Optional[str] = None
    wan_name: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.success and not self.error:
            raise ValueError("an unsuccessful result needs error text")

    @property
    def download_mbps(self) -> float:
        return self.download_bps / 1_000_000

    @property
    def upload_mbps(self) -> float:
        return self.upload_bps / 1_000_000

    @property
    def has_valid_path(self) -> bool:
        return self.path_analysis is not None and self.path_analysis.path.is_valid

    @classmethod
    def rejected(cls, target: TestTarget, direction: Direction, error: str) -> "SpeedTestResult":
        return cls(
            scope_id=target.scope_id,
            device_host=target.host,
            device_name=target.name,
            device_type=target.device_type,
            direction=direction,
            status=TestStatus.REJECTED,
            error=error,
        )

    @classmethod
    def failed(cls, target: TestTarget, direction: Direction, error: str, **extra) -> "SpeedTestResult":
        return cls(
            scope_id=target.scope_id,
            device_host=target.host,
            device_name=target.name,
            device_type=target.device_type,
            direction=direction,
            status=TestStatus.FAILED,
            error=error,
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scope_id": self.scope_id,
            "device_host": self.device_host,
            "device_name": self.device_name,
            "device_type": self.device_type,
            "direction": self.direction.value,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "download_mbps": round(self.download_mbps, 2),
            "upload_mbps": round(self.upload_mbps, 2),
            "download_bytes": self.download_bytes,
            "upload_bytes": self.upload_bytes,
            "download_retransmits": self.download_retransmits,
            "upload_retransmits": self.upload_retransmits,
            "duration_seconds": self.duration_seconds,
            "parallel_streams": self.parallel_streams,
            "success": self.success,
            "error": self.error,
            "local_address": self.local_address,
            "path_analysis": self.path_analysis.to_dict() if self.path_analysis else None,
            "path_stale": self.path_stale,
            "ping_ms": self.ping_ms,
            "jitter_ms": self.jitter_ms,
            "download_latency_ms": self.download_latency_ms,
            "upload_latency_ms": self.upload_latency_ms,
            "wan_group": self.wan_group,
            "wan_name": self.wan_name,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ClientReport:
    """One finished test observed by the passive collector."""

    peer_address: str
    scope_id: str
    download_bps: float = 0.0
    upload_bps: float = 0.0
    download_bytes: int = 0
    upload_bytes: int = 0
    download_retransmits: int = 0
    upload_retransmits: int = 0
    duration_seconds: int = 10
    parallel_streams: int = 1
    local_address: Optional[str] = None
    raw: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ProgressSnapshot:
    """Mutable progress of one gateway WAN run, polled by observers."""

    phase: str = "Idle"
    percent: int = 0
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase, "percent": self.percent, "status": self.status}
