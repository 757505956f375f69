"""Client for the external topology/path service and local efficiency grading."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import requests

from .config import TopologyConfig
from .errors import CorrelationError
from .speedtests.models import NetworkPath, PathAnalysisResult, PerformanceGrade

LOGGER = logging.getLogger(__name__)

GRADE_THRESHOLDS = (
    (90.0, PerformanceGrade.EXCELLENT),
    (75.0, PerformanceGrade.GOOD),
    (50.0, PerformanceGrade.FAIR),
    (25.0, PerformanceGrade.POOR),
)


class TopologyService(Protocol):
    def compute_path(self, peer_address: str, local_address: Optional[str]) -> NetworkPath:
        ...

    def compute_gateway_path(self, wan_group: Optional[str]) -> NetworkPath:
        ...

    def invalidate_cache(self) -> None:
        ...

    def grade(
        self,
        path: NetworkPath,
        download_mbps: float,
        upload_mbps: float,
        download_retransmits: int,
        upload_retransmits: int,
        download_bytes: int,
        upload_bytes: int,
    ) -> PathAnalysisResult:
        ...


def grade_for(efficiency_pct: float) -> PerformanceGrade:
    for threshold, grade in GRADE_THRESHOLDS:
        if efficiency_pct >= threshold:
            return grade
    return PerformanceGrade.CRITICAL


def grade_path(
    path: NetworkPath,
    download_mbps: float,
    upload_mbps: float,
    download_retransmits: int = 0,
    upload_retransmits: int = 0,
    download_bytes: int = 0,
    upload_bytes: int = 0,
) -> PathAnalysisResult:
    """Compare measured throughput with what the path can realistically carry."""
    ceiling = path.realistic_max_mbps or path.theoretical_max_mbps
    grades: Dict[str, Any] = {}
    if path.is_valid and ceiling > 0:
        if download_mbps > 0:
            pct = min(download_mbps / ceiling * 100, 100.0)
            grades["download_efficiency_pct"] = round(pct, 1)
            grades["download_grade"] = grade_for(pct)
        if upload_mbps > 0:
            pct = min(upload_mbps / ceiling * 100, 100.0)
            grades["upload_efficiency_pct"] = round(pct, 1)
            grades["upload_grade"] = grade_for(pct)
    return PathAnalysisResult(
        path=path,
        measured_download_mbps=download_mbps,
        measured_upload_mbps=upload_mbps,
        download_retransmits=download_retransmits,
        upload_retransmits=upload_retransmits,
        download_bytes=download_bytes,
        upload_bytes=upload_bytes,
        **grades,
    )


class HttpTopologyClient:
    """Talks JSON over HTTP to the topology service."""

    def __init__(self, config: TopologyConfig, session: Optional[requests.Session] = None):
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.session = session or requests.Session()

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json() if response.content else {}
        except requests.RequestException as exc:
            raise CorrelationError(f"Topology service request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise CorrelationError(f"Topology service returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise CorrelationError("Topology service returned an unexpected payload")
        return data

    def compute_path(self, peer_address: str, local_address: Optional[str]) -> NetworkPath:
        try:
            data = self._post("path", {"target": peer_address, "source": local_address})
        except CorrelationError as exc:
            LOGGER.warning("%s", exc)
            return NetworkPath.invalid(str(exc), destination=peer_address)
        return NetworkPath.from_dict(data)

    def compute_gateway_path(self, wan_group: Optional[str]) -> NetworkPath:
        try:
            data = self._post("gateway-path", {"wan_group": wan_group})
        except CorrelationError as exc:
            LOGGER.warning("%s", exc)
            return NetworkPath.invalid(str(exc))
        return NetworkPath.from_dict(data)

    def invalidate_cache(self) -> None:
        self._post("cache/invalidate", {})
        LOGGER.debug("Topology cache invalidated")

    def grade(self, path: NetworkPath, download_mbps: float, upload_mbps: float,
              download_retransmits: int, upload_retransmits: int,
              download_bytes: int, upload_bytes: int) -> PathAnalysisResult:
        return grade_path(path, download_mbps, upload_mbps, download_retransmits,
                          upload_retransmits, download_bytes, upload_bytes)
