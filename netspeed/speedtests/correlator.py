"""Path correlation: map a measurement onto the topology and grade it."""

from __future__ import annotations

import ipaddress
import logging
import queue
import re
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from ..topology import TopologyService
from .models import Direction, NetworkPath, SpeedTestResult

LOGGER = logging.getLogger(__name__)

# Matches "target not found" as well as "Target '10.0.0.5' not found in network topology".
RETRYABLE_ERROR = re.compile(r"target\b.*\bnot found|not yet available", re.IGNORECASE)
DEFAULT_OVERLAY_NETWORKS = ("100.64.0.0/10",)

CompletionListener = Callable[[int, SpeedTestResult], None]


def should_retry(path: NetworkPath, is_retry: bool) -> bool:
    if path.is_valid or is_retry:
        return False
    return RETRYABLE_ERROR.search(path.error or "") is not None


class PathCorrelator:
    """
    Computes the path for a result and grades it.

    An invalid path whose error says the target is unknown gets exactly one
    retry after the topology cache is dropped. If the retry is still invalid
    the result keeps it and is flagged ``path_stale``.
    """

    def __init__(self, topology: TopologyService):
        self.topology = topology

    def analyze(self, result: SpeedTestResult) -> SpeedTestResult:
        if result.direction is Direction.GATEWAY_DIRECT:
            return self.analyze_gateway(result)
        return self._correlate(
            result,
            lambda: self.topology.compute_path(result.device_host, result.local_address),
        )

    def analyze_gateway(self, result: SpeedTestResult) -> SpeedTestResult:
        return self._correlate(result, lambda: self.topology.compute_gateway_path(result.wan_group))

    def _correlate(self, result: SpeedTestResult, compute: Callable[[], NetworkPath]) -> SpeedTestResult:
        try:
            path = compute()
            stale = False
            if should_retry(path, is_retry=False):
                LOGGER.info("Path to %s unavailable (%s), refreshing topology and retrying",
                            result.device_host, path.error)
                self.topology.invalidate_cache()
                path = compute()
                stale = not path.is_valid
                if stale:
                    LOGGER.info("Path to %s still unavailable after refresh: %s",
                                result.device_host, path.error)
            analysis = self.topology.grade(
                path,
                result.download_mbps,
                result.upload_mbps,
                result.download_retransmits,
                result.upload_retransmits,
                result.download_bytes,
                result.upload_bytes,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Path analysis for %s failed: %s", result.device_host, exc)
            return result
        return replace(result, path_analysis=analysis, path_stale=stale)


def in_overlay(address: str, networks: Iterable[str] = DEFAULT_OVERLAY_NETWORKS) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in ipaddress.ip_network(network, strict=False) for network in networks)


def is_retry_eligible(
    result: SpeedTestResult,
    now: datetime,
    window: timedelta = timedelta(minutes=30),
    overlay_networks: Iterable[str] = DEFAULT_OVERLAY_NETWORKS,
) -> bool:
    """Recent successful records without a usable path are re-analyzed when read back."""
    if result.id is None or not result.success or result.has_valid_path:
        return False
    if result.timestamp < now - window:
        return False
    if result.direction is Direction.GATEWAY_DIRECT:
        return True
    return not in_overlay(result.device_host, overlay_networks)


@dataclass(frozen=True)
class CorrelationJob:
    record_id: int
    not_before: float = 0.0


class CorrelationQueue:
    """
    Bounded queue of background correlation jobs drained by one worker thread.

    Jobs name a stored record; the worker loads it, runs the correlator,
    writes the new value back and notifies listeners for that record id.
    """

    def __init__(
        self,
        correlator: PathCorrelator,
        repository,
        maxsize: int = 256,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.correlator = correlator
        self.repository = repository
        self._queue: "queue.Queue[Optional[CorrelationJob]]" = queue.Queue(maxsize=maxsize)
        self._clock = clock
        self._sleep = sleep
        self._listeners: List[CompletionListener] = []
        self._record_listeners: Dict[int, List[CompletionListener]] = {}
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.completed = 0
        self.failures = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, name="correlation-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if not self._thread:
            return
        self._queue.put(None)
        self._thread.join(timeout)
        self._thread = None

    def add_listener(self, listener: CompletionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def on_complete(self, record_id: int, listener: CompletionListener) -> None:
        """Register a one-shot listener for a single record."""
        with self._lock:
            self._record_listeners.setdefault(record_id, []).append(listener)

    def submit(self, record_id: int, delay: float = 0.0) -> bool:
        job = CorrelationJob(record_id=record_id, not_before=self._clock() + delay)
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            self.dropped += 1
            LOGGER.warning("Correlation queue full, dropping job for record %s", record_id)
            return False
        return True

    def join(self) -> None:
        self._queue.join()

    def _worker(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                self._process(job)
            finally:
                self._queue.task_done()

    def _process(self, job: CorrelationJob) -> None:
        wait = job.not_before - self._clock()
        if wait > 0:
            self._sleep(wait)
        try:
            record = self.repository.get(job.record_id)
            if record is None:
                LOGGER.debug("Record %s vanished before correlation", job.record_id)
                return
            analyzed = self.correlator.analyze(record)
            updated = self.repository.update_path(job.record_id, analyzed.path_analysis, analyzed.path_stale)
            if updated is None:
                LOGGER.debug("Record %s vanished during correlation", job.record_id)
                return
            self.completed += 1
        except Exception as exc:  # pylint: disable=broad-except
            self.failures += 1
            LOGGER.exception("Background correlation of record %s failed: %s", job.record_id, exc)
            return
        self._notify(job.record_id, updated)

    def _notify(self, record_id: int, result: SpeedTestResult) -> None:
        with self._lock:
            listeners = list(self._listeners) + self._record_listeners.pop(record_id, [])
        for listener in listeners:
            try:
                listener(record_id, result)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Correlation listener failed for record %s", record_id)
