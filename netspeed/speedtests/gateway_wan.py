"""Gateway WAN speed test with simulated phased progress and cooperative cancel."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from ..config import GatewayConfig
from ..errors import MeasurementError, ParseError, ServerLifecycleError, SpeedTestError, TestCancelled
from ..remote import CommandResult, RemoteExecutor
from .correlator import CorrelationQueue
from .models import Direction, ProgressSnapshot, SpeedTestResult, TestStatus, TestTarget
from .repository import ResultRepository

LOGGER = logging.getLogger(__name__)

WAN_HOST = "speed.cloudflare.com"
INTERFACE_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")

# (phase, percent, seconds to wait before announcing it)
PROGRESS_STEPS: Tuple[Tuple[str, int, float], ...] = (
    ("Testing latency", 15, 2.5),
    ("Testing download", 22, 1.8),
    ("Testing download", 32, 1.8),
    ("Testing download", 42, 1.8),
    ("Testing download", 52, 1.8),
    ("Testing download", 58, 1.8),
    ("Testing upload", 65, 1.8),
    ("Testing upload", 72, 1.8),
    ("Testing upload", 78, 1.8),
    ("Testing upload", 84, 1.8),
    ("Testing upload", 90, 1.8),
)
TERMINAL_PHASES = ("Complete", "Error", "Cancelled")


def is_valid_interface(name: Optional[str]) -> bool:
    return bool(name) and INTERFACE_PATTERN.match(name) is not None


def file_md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def parse_wan_output(output: str, target: TestTarget, wan_group: Optional[str], wan_name: Optional[str]) -> SpeedTestResult:
    """Decode the helper's JSON summary into a result."""
    text = (output or "").strip()
    if not text:
        raise ParseError("Speed test produced no output")
    start = text.find("{")
    try:
        data: Dict[str, Any] = json.loads(text[start:] if start >= 0 else text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Failed to parse speed test output: {exc}") from exc

    if not data.get("success", False):
        raise MeasurementError(data.get("error") or "Speed test reported failure", raw_output=text)

    metadata = data.get("metadata") or {}
    latency = data.get("latency") or {}
    download = data.get("download") or {}
    upload = data.get("upload") or {}
    colo = metadata.get("colo")
    return SpeedTestResult(
        scope_id=target.scope_id,
        device_host=WAN_HOST,
        device_name=f"Cloudflare ({colo})" if colo else "Cloudflare",
        device_type="wan",
        direction=Direction.GATEWAY_DIRECT,
        download_bps=float(download.get("bps") or 0),
        upload_bps=float(upload.get("bps") or 0),
        download_bytes=int(download.get("bytes") or 0),
        upload_bytes=int(upload.get("bytes") or 0),
        duration_seconds=int(data.get("duration_seconds") or 0),
        parallel_streams=int(data.get("streams") or 0),
        ping_ms=latency.get("unloaded_ms"),
        jitter_ms=latency.get("jitter_ms"),
        download_latency_ms=download.get("loaded_latency_ms"),
        upload_latency_ms=upload.get("loaded_latency_ms"),
        local_address=metadata.get("ip"),
        wan_group=wan_group,
        wan_name=wan_name,
        notes=metadata.get("country"),
        success=True,
        raw_download=text,
    )


class GatewayWanController:
    """
    Runs the WAN speed test helper on the gateway, one run at a time.

    The helper gives no progress feed, so the controller walks a fixed table
    of phases while the remote call is in flight and stops walking the moment
    the call returns. ``cancel`` only abandons the wait; the helper keeps
    running on the gateway until it finishes on its own.
    """

    def __init__(
        self,
        config: GatewayConfig,
        local_binary: Path,
        executor: RemoteExecutor,
        repository: ResultRepository,
        correlation_queue: CorrelationQueue,
        steps: Sequence[Tuple[str, int, float]] = PROGRESS_STEPS,
        correlation_delay: float = 1.0,
    ):
        self.config = config
        self.local_binary = local_binary
        self.executor = executor
        self.repository = repository
        self.correlation_queue = correlation_queue
        self.steps = steps
        self.correlation_delay = correlation_delay
        self.target = TestTarget(
            host=config.host or "",
            scope_id=config.scope,
            name="Gateway",
            device_type="gateway",
            ssh_port=config.ssh_port,
            username=config.username,
            owns_server=False,
            trusted=True,
        )
        self._lock = threading.Lock()
        self._running = False
        self._progress = ProgressSnapshot()
        self._last_result: Optional[SpeedTestResult] = None
        self._cancel = threading.Event()
        self._wake = threading.Event()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gateway-wan")

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def progress(self) -> ProgressSnapshot:
        with self._lock:
            return replace(self._progress)

    @property
    def last_result(self) -> Optional[SpeedTestResult]:
        with self._lock:
            return self._last_result

    def _claim(self) -> bool:
        with self._lock:
            if self._running:
                return False
            self._running = True
            self._progress = ProgressSnapshot(phase="Starting", percent=0, status=None)
            self._last_result = None
            self._cancel.clear()
            self._wake = threading.Event()
        return True

    def start(self, interface: str, wan_group: Optional[str] = None, wan_name: Optional[str] = None) -> bool:
        """Kick off a run in the background. False when one is already in flight."""
        if not self._claim():
            return False
        self._pool.submit(self._execute, interface, wan_group, wan_name)
        return True

    def run(self, interface: str, wan_group: Optional[str] = None, wan_name: Optional[str] = None) -> SpeedTestResult:
        if not self._claim():
            return SpeedTestResult.rejected(
                self.target, Direction.GATEWAY_DIRECT, "A gateway speed test is already running"
            )
        return self._execute(interface, wan_group, wan_name)

    def cancel(self) -> bool:
        with self._lock:
            if not self._running:
                return False
            self._cancel.set()
            self._wake.set()
        LOGGER.info("Gateway WAN speed test cancellation requested")
        return True

    def shutdown(self) -> None:
        self.cancel()
        self._pool.shutdown(wait=False)

    def _report(self, phase: str, percent: int, status: Optional[str] = None) -> None:
        with self._lock:
            if phase not in TERMINAL_PHASES:
                percent = max(percent, self._progress.percent)
            self._progress.phase = phase
            self._progress.percent = percent
            self._progress.status = status

    def _finish(self, result: SpeedTestResult) -> SpeedTestResult:
        with self._lock:
            self._last_result = result
            self._running = False
        return result

    def _execute(self, interface: str, wan_group: Optional[str], wan_name: Optional[str]) -> SpeedTestResult:
        try:
            if not self.target.host:
                raise SpeedTestError("No gateway configured")
            if not is_valid_interface(interface):
                raise SpeedTestError(f"Invalid interface name: {interface!r}")

            self._report("Preparing", 2, "Checking speed test binary...")
            self._ensure_binary()
            self._report("Preparing", 10, "Binary ready")
            self._check_cancelled()

            self._report("Testing latency", 12, "Starting WAN speed test...")
            command = f"{self.config.remote_binary} --interface {interface} 2>/dev/null"
            LOGGER.info("Running gateway WAN speed test on %s via %s", self.target.host, interface)
            outcome = self._run_with_progress(command)
            if not outcome.success:
                raise MeasurementError(f"Speed test failed: {outcome.output.strip() or 'no output'}")

            self._report("Parsing", 95, "Parsing results...")
            result = parse_wan_output(outcome.output, self.target, wan_group, wan_name)
            self._report("Saving", 98, "Saving results...")
            stored = self.repository.save(result)
            self._report(
                "Complete", 100, f"Down: {stored.download_mbps:.1f} / Up: {stored.upload_mbps:.1f} Mbps"
            )
            self.correlation_queue.submit(stored.id, delay=self.correlation_delay)
            return self._finish(stored)
        except TestCancelled:
            LOGGER.info("Gateway WAN speed test cancelled")
            self._report("Cancelled", 0, "Test cancelled")
            return self._finish(
                SpeedTestResult(
                    scope_id=self.target.scope_id,
                    device_host=WAN_HOST,
                    direction=Direction.GATEWAY_DIRECT,
                    status=TestStatus.CANCELLED,
                    wan_group=wan_group,
                    wan_name=wan_name,
                    error="Test cancelled",
                )
            )
        except Exception as exc:  # pylint: disable=broad-except
            if isinstance(exc, SpeedTestError):
                LOGGER.error("Gateway WAN speed test failed: %s", exc)
            else:
                LOGGER.exception("Gateway WAN speed test crashed: %s", exc)
            self._report("Error", 0, str(exc))
            failed = SpeedTestResult(
                scope_id=self.target.scope_id,
                device_host=WAN_HOST,
                direction=Direction.GATEWAY_DIRECT,
                status=TestStatus.FAILED,
                wan_group=wan_group,
                wan_name=wan_name,
                error=str(exc) or exc.__class__.__name__,
            )
            try:
                failed = self.repository.save(failed)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Could not store failed gateway WAN result")
            return self._finish(failed)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TestCancelled("Test cancelled")

    def _run_with_progress(self, command: str) -> CommandResult:
        wake = self._wake
        # A cancelled call keeps its own worker until the helper exits on the gateway.
        caller = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gateway-wan-call")
        try:
            future: Future = caller.submit(
                self.executor.execute, self.target, command, self.config.command_timeout_seconds
            )
        finally:
            caller.shutdown(wait=False)
        future.add_done_callback(lambda _: wake.set())

        for phase, percent, delay in self.steps:
            wake.wait(delay)
            self._check_cancelled()
            if future.done():
                break
            self._report(phase, percent, f"{phase}...")

        while not future.done():
            wake.wait()
            self._check_cancelled()
        self._check_cancelled()
        return future.result()

    def _ensure_binary(self) -> None:
        if not self.local_binary.exists():
            raise SpeedTestError(f"Speed test binary not found at {self.local_binary}")
        remote = self.config.remote_binary
        local_hash = file_md5(self.local_binary)

        version = self.executor.execute(self.target, f"{remote} -version", 15)
        if version.success:
            remote_hash = self.executor.execute(
                self.target, f"md5sum {remote} 2>/dev/null | cut -d' ' -f1", 15
            )
            if remote_hash.success and remote_hash.output.strip() == local_hash:
                LOGGER.debug("Gateway speed test binary is current (%s)", local_hash)
                return
            LOGGER.info("Gateway speed test binary is outdated, redeploying")
        else:
            LOGGER.info("Gateway speed test binary missing, deploying")

        self._report("Deploying", 5, "Deploying speed test binary...")
        upload = self.executor.upload_file(self.target, self.local_binary, remote)
        if not upload.success:
            raise ServerLifecycleError(f"Failed to deploy speed test binary: {upload.output}")
        self.executor.execute(self.target, f"chmod +x {remote}", 15)
        verify = self.executor.execute(self.target, f"{remote} -version", 15)
        if not verify.success:
            raise ServerLifecycleError(f"Deployed speed test binary failed to run: {verify.output}")
        LOGGER.info("Deployed speed test binary to %s:%s", self.target.host, remote)
