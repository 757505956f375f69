"""Facade used by the web API and the scheduler."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from ..config import AppConfig, TargetConfig
from .correlator import PathCorrelator, is_retry_eligible
from .lifecycle import RemoteSpeedTestController
from .models import Direction, SpeedTestResult, TestTarget
from .registry import TestRegistry
from .repository import ResultRepository

LOGGER = logging.getLogger(__name__)


def target_from_config(entry: TargetConfig) -> TestTarget:
    return TestTarget(
        host=entry.host,
        scope_id=entry.scope,
        name=entry.name,
        device_type=entry.device_type,
        ssh_port=entry.ssh_port,
        username=entry.username,
        owns_server=entry.owns_server,
        trusted=entry.trusted,
        binary_path=entry.binary_path,
    )


class SpeedTestService:
    def __init__(
        self,
        config: AppConfig,
        controller: RemoteSpeedTestController,
        registry: TestRegistry,
        repository: ResultRepository,
        correlator: PathCorrelator,
        pool: ThreadPoolExecutor,
    ):
        self.config = config
        self.controller = controller
        self.registry = registry
        self.repository = repository
        self.correlator = correlator
        self.pool = pool
        self.retry_window = timedelta(minutes=config.correlation.retry_window_minutes)

    @property
    def targets(self) -> List[TestTarget]:
        return [target_from_config(entry) for entry in self.config.targets]

    def run(self, target: TestTarget, duration: Optional[int] = None, streams: Optional[int] = None) -> SpeedTestResult:
        return self.controller.run(target, duration, streams)

    def submit(self, target: TestTarget, duration: Optional[int] = None, streams: Optional[int] = None) -> Future:
        return self.pool.submit(self.controller.run, target, duration, streams)

    def is_running(self, target: TestTarget) -> bool:
        return self.registry.is_running(target.scope_id, target.host)

    def recent(
        self,
        scope_id: str,
        count: int = 50,
        hours: Optional[int] = None,
        directions: Optional[Iterable[Direction]] = None,
        host: Optional[str] = None,
    ) -> List[SpeedTestResult]:
        """Recent results for a scope, re-correlating recent ones that lack a path."""
        results = self.repository.recent(scope_id, count=count, hours=hours, directions=directions, host=host)
        now = datetime.utcnow()
        refreshed = []
        for result in results:
            if is_retry_eligible(result, now, self.retry_window, self.config.correlation.overlay_networks):
                result = self._reanalyze(result)
            refreshed.append(result)
        return refreshed

    def _reanalyze(self, result: SpeedTestResult) -> SpeedTestResult:
        LOGGER.debug("Re-analyzing path for result #%s (%s)", result.id, result.device_host)
        updated = self.correlator.analyze(result)
        if updated is result:
            return result
        stored = self.repository.update_path(result.id, updated.path_analysis, updated.path_stale)
        if stored is None:
            LOGGER.warning("Result #%s was deleted while its path was re-analyzed", result.id)
            return updated
        return stored

    def get(self, record_id: int) -> Optional[SpeedTestResult]:
        return self.repository.get(record_id)

    def delete(self, record_id: int) -> bool:
        return self.repository.delete(record_id)

    def update_notes(self, record_id: int, notes: Optional[str]) -> bool:
        return self.repository.update_notes(record_id, notes)

    def clear(self, scope_id: str) -> int:
        return self.repository.clear(scope_id)
