"""Application bootstrap helpers."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from .cache import ScopedCache
from .config import AppConfig, load_config
from .db import init_db
from .exporter import CSVExporter
from .logging_setup import configure_logging
from .remote import SubprocessRemoteExecutor
from .scheduler import SchedulerService
from .speedtests.collector import PassiveCollector
from .speedtests.correlator import CorrelationQueue, PathCorrelator
from .speedtests.gateway_wan import GatewayWanController
from .speedtests.lifecycle import RemoteSpeedTestController
from .speedtests.merger import ResultMerger
from .speedtests.platform import OsDetector
from .speedtests.probe import LocalProbeRunner
from .speedtests.registry import TestRegistry
from .speedtests.repository import ResultRepository
from .speedtests.service import SpeedTestService
from .topology import HttpTopologyClient
from .web.app import create_web_app

LOGGER = logging.getLogger(__name__)


class ApplicationContext:
    """Holds shared singletons for the service."""

    def __init__(self, config: AppConfig):
        self.config = config
        configure_logging(config)
        self.Session = init_db(config.paths.data_dir)
        self.pool = ThreadPoolExecutor(max_workers=config.web.worker_threads, thread_name_prefix="speedtest")
        self.cache = ScopedCache()
        self.executor = SubprocessRemoteExecutor(config.remote)
        self.topology = HttpTopologyClient(config.topology)
        self.repository = ResultRepository(self.Session)
        self.correlator = PathCorrelator(self.topology)
        self.correlation_queue = CorrelationQueue(
            self.correlator, self.repository, maxsize=config.correlation.queue_size
        )
        self.registry = TestRegistry()
        self.controller = RemoteSpeedTestController(
            config.iperf3,
            self.executor,
            self.registry,
            OsDetector(self.executor, self.cache, config.iperf3.command_timeout_seconds),
            LocalProbeRunner(config.iperf3),
            self.correlator,
            self.repository,
        )
        self.merger = ResultMerger(
            self.repository,
            self.correlation_queue,
            window_seconds=config.correlation.merge_window_seconds,
            background_delay=config.correlation.background_delay_seconds,
        )
        self.collector = None
        if config.collector.enabled:
            self.collector = PassiveCollector(config.collector, self.merger.record, binary=config.iperf3.binary)
        self.gateway = GatewayWanController(
            config.gateway,
            config.gateway_binary_path,
            self.executor,
            self.repository,
            self.correlation_queue,
        )
        self.service = SpeedTestService(
            config, self.controller, self.registry, self.repository, self.correlator, self.pool
        )
        self.exporter = CSVExporter(config, self.repository)
        self.scheduler = SchedulerService(config, self.service, self.exporter)
        self.web_app = create_web_app(
            config=config,
            service=self.service,
            merger=self.merger,
            collector=self.collector,
            gateway=self.gateway,
            exporter=self.exporter,
        )

    def start(self) -> None:
        self.correlation_queue.start()
        if self.collector:
            self.collector.start()
        else:
            LOGGER.info("Passive iperf3 collector disabled")
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        if self.collector:
            self.collector.stop()
        self.gateway.shutdown()
        self.correlation_queue.stop()
        self.pool.shutdown(wait=False)


def bootstrap(config_path: Optional[str] = None) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config)
