"""Background scheduler orchestration."""

from __future__ import annotations

import logging
from concurrent.futures import wait
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import AppConfig
from .exporter import CSVExporter
from .speedtests.models import TestStatus
from .speedtests.service import SpeedTestService

LOGGER = logging.getLogger(__name__)


class SchedulerService:
    def __init__(self, config: AppConfig, service: SpeedTestService, exporter: CSVExporter) -> None:
        self.config = config
        self.service = service
        self.exporter = exporter
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.started = False

    def start(self) -> None:
        if self.started:
            LOGGER.warning("Scheduler already started, ignoring duplicate start request")
            return
        if not self.config.scheduler.enabled:
            LOGGER.info("Scheduled speed tests are disabled")
            return
        if not self.config.targets:
            LOGGER.info("No scheduled targets configured, scheduler not started")
            return

        interval = self.config.scheduler.interval_minutes
        try:
            self.scheduler.add_job(
                self._run_cycle,
                trigger=IntervalTrigger(minutes=interval),
                id="scheduled-speedtests",
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.start()
            self.started = True
            LOGGER.info("Scheduler started with interval %s minutes for %s targets", interval, len(self.config.targets))
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Failed to start scheduler: %s", exc, exc_info=True)

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False

    def run_now(self) -> None:
        self._run_cycle()

    def _run_cycle(self) -> None:
        """Test every configured target concurrently, then refresh the CSV snapshot."""
        targets = self.service.targets
        LOGGER.info("Starting scheduled speed test cycle at %s (%s targets)", datetime.utcnow().isoformat(), len(targets))
        futures = {self.service.submit(target): target for target in targets}
        wait(futures)
        for future, target in futures.items():
            try:
                result = future.result()
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.exception("Scheduled speed test to %s failed: %s", target.host, exc)
                continue
            if result.status is TestStatus.REJECTED:
                LOGGER.info("Skipped %s, a test was already running", target.host)
        try:
            self.exporter.write_snapshot()
        except OSError as exc:
            LOGGER.warning("Could not write CSV snapshot: %s", exc)
