"""Remote iperf3 test lifecycle: claim, pre-check, server start, probes, cleanup."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..config import Iperf3Config
from ..errors import ConcurrencyRejection, ConnectivityError, ServerLifecycleError
from ..remote import RemoteExecutor
from .correlator import PathCorrelator
from .models import (
    Direction,
    DirectionMeasurement,
    SpeedTestResult,
    TestExecutionContext,
    TestStatus,
    TestTarget,
)
from .platform import CommandSet, OsDetector, commands_for
from .probe import LocalProbeRunner
from .registry import TestRegistry
from .repository import ResultRepository

LOGGER = logging.getLogger(__name__)


def assemble_result(
    target: TestTarget,
    download: DirectionMeasurement,
    upload: DirectionMeasurement,
    duration: int,
    streams: int,
) -> SpeedTestResult:
    """Fold the two per-direction partials into one result."""
    success = download.success or upload.success
    error = None
    if not success:
        error = f"Both tests failed. Download: {download.error}, Upload: {upload.error}"
    return SpeedTestResult(
        scope_id=target.scope_id,
        device_host=target.host,
        device_name=target.name,
        device_type=target.device_type,
        direction=Direction.DEVICE_INITIATED,
        status=TestStatus.COMPLETED if success else TestStatus.FAILED,
        download_bps=download.bits_per_second,
        upload_bps=upload.bits_per_second,
        download_bytes=download.bytes,
        upload_bytes=upload.bytes,
        download_retransmits=download.retransmits,
        upload_retransmits=upload.retransmits,
        duration_seconds=duration,
        parallel_streams=streams,
        success=success,
        error=error,
        local_address=download.local_address or upload.local_address,
        raw_download=download.raw,
        raw_upload=upload.raw,
    )


class RemoteSpeedTestController:
    """Runs a full download/upload test against a device the service can log into."""

    def __init__(
        self,
        config: Iperf3Config,
        executor: RemoteExecutor,
        registry: TestRegistry,
        detector: OsDetector,
        probe: LocalProbeRunner,
        correlator: PathCorrelator,
        repository: ResultRepository,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.executor = executor
        self.registry = registry
        self.detector = detector
        self.probe = probe
        self.correlator = correlator
        self.repository = repository
        self._sleep = sleep

    def run(self, target: TestTarget, duration: Optional[int] = None, streams: Optional[int] = None) -> SpeedTestResult:
        duration = duration or self.config.duration
        streams = streams or self.config.streams_for(target.device_type)
        try:
            with self.registry.hold(target.scope_id, target.host):
                result = self._measure(target, duration, streams)
                if result.success:
                    result = self.correlator.analyze(result)
                return self._persist(result)
        except ConcurrencyRejection as exc:
            return SpeedTestResult.rejected(target, Direction.DEVICE_INITIATED, str(exc))

    def _persist(self, result: SpeedTestResult) -> SpeedTestResult:
        try:
            return self.repository.save(result)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Could not store speed test result for %s: %s", result.device_host, exc)
            return result

    def _measure(self, target: TestTarget, duration: int, streams: int) -> SpeedTestResult:
        LOGGER.info(
            "Starting iperf3 test to %s (%s) - duration %ss, %s streams",
            target.name or target.host, target.host, duration, streams,
        )
        try:
            self._check_reachable(target)
            context = TestExecutionContext(
                target=target,
                platform=self.detector.detect(target),
                iperf_port=self.config.port,
            )
            return self._run_probes(context, duration, streams)
        except (ConnectivityError, ServerLifecycleError) as exc:
            LOGGER.error("Speed test to %s aborted: %s", target.host, exc)
            return SpeedTestResult.failed(
                target,
                Direction.DEVICE_INITIATED,
                str(exc),
                duration_seconds=duration,
                parallel_streams=streams,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Speed test to %s crashed: %s", target.host, exc)
            return SpeedTestResult.failed(target, Direction.DEVICE_INITIATED, f"Unexpected error: {exc}")

    def _check_reachable(self, target: TestTarget) -> None:
        if target.trusted:
            return
        check = self.executor.test_connection(target)
        if not check.success:
            raise ConnectivityError(f"SSH connection failed: {check.output}")

    def _run_probes(self, context: TestExecutionContext, duration: int, streams: int) -> SpeedTestResult:
        target = context.target
        commands = commands_for(context.platform)
        try:
            if target.owns_server:
                self._start_server(context, commands)
            download = self.probe.run(target.host, context.iperf_port, duration, streams, reverse=True)
            self._sleep(self.config.inter_probe_seconds)
            upload = self.probe.run(target.host, context.iperf_port, duration, streams, reverse=False)
        finally:
            if target.owns_server:
                self._stop_server(context, commands)

        result = assemble_result(target, download, upload, duration, streams)
        if result.success:
            LOGGER.info(
                "iperf3 test to %s complete: down %.1f Mbps / up %.1f Mbps",
                target.host, result.download_mbps, result.upload_mbps,
            )
        else:
            LOGGER.warning("iperf3 test to %s failed: %s", target.host, result.error)
        return result

    def _start_server(self, context: TestExecutionContext, commands: CommandSet) -> None:
        target = context.target
        timeout = self.config.command_timeout_seconds
        self.executor.execute(target, commands.kill_server(), timeout)

        binary = self.detector.binary_path(target, commands)
        started = self.executor.execute(target, commands.start_server(context.iperf_port, binary), timeout)
        if not started.success or not commands.started(started.output):
            detail = started.output.strip()
            log_command = commands.server_log()
            if log_command:
                log = self.executor.execute(target, log_command, timeout)
                if log.success and log.output.strip():
                    detail = log.output.strip()
            raise ServerLifecycleError(f"Failed to start iperf3 server: {detail or 'no output'}")

        LOGGER.debug("iperf3 server started on %s: %s", target.host, started.output.strip())
        self._sleep(self.config.server_settle_seconds)

    def _stop_server(self, context: TestExecutionContext, commands: CommandSet) -> None:
        result = self.executor.execute(context.target, commands.kill_server(), self.config.command_timeout_seconds)
        if not result.success:
            LOGGER.warning("Could not stop iperf3 server on %s: %s", context.target.host, result.output)
