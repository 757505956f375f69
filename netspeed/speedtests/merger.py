"""Combine single-direction client reports into bidirectional records."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from .correlator import CorrelationQueue
from .models import ClientReport, Direction, SpeedTestResult, TestStatus
from .repository import ResultRepository

LOGGER = logging.getLogger(__name__)

BROWSER_STREAMS = 6
BYTES_PER_MB = 1_048_576


def can_merge(prior: SpeedTestResult, report: ClientReport) -> bool:
    """True only when one side has download alone and the other upload alone."""
    prior_down_only = prior.download_bps > 0 and prior.upload_bps == 0
    prior_up_only = prior.upload_bps > 0 and prior.download_bps == 0
    report_down_only = report.download_bps > 0 and report.upload_bps == 0
    report_up_only = report.upload_bps > 0 and report.download_bps == 0
    return (prior_down_only and report_up_only) or (prior_up_only and report_down_only)


def merge_into(prior: SpeedTestResult, report: ClientReport) -> SpeedTestResult:
    changes = {"parallel_streams": max(prior.parallel_streams, report.parallel_streams)}
    if prior.download_bps == 0:
        changes.update(
            download_bps=report.download_bps,
            download_bytes=report.download_bytes,
            download_retransmits=report.download_retransmits,
        )
    if prior.upload_bps == 0:
        changes.update(
            upload_bps=report.upload_bps,
            upload_bytes=report.upload_bytes,
            upload_retransmits=report.upload_retransmits,
        )
    if not prior.raw_upload:
        changes["raw_upload"] = report.raw
    if not prior.local_address and report.local_address:
        changes["local_address"] = report.local_address
    return replace(prior, **changes)


def standalone_result(report: ClientReport, direction: Direction = Direction.CLIENT_TO_SERVER) -> SpeedTestResult:
    return SpeedTestResult(
        scope_id=report.scope_id,
        device_host=report.peer_address,
        direction=direction,
        status=TestStatus.COMPLETED,
        timestamp=report.timestamp,
        download_bps=report.download_bps,
        upload_bps=report.upload_bps,
        download_bytes=report.download_bytes,
        upload_bytes=report.upload_bytes,
        download_retransmits=report.download_retransmits,
        upload_retransmits=report.upload_retransmits,
        duration_seconds=report.duration_seconds,
        parallel_streams=report.parallel_streams,
        success=True,
        local_address=report.local_address,
        raw_download=report.raw,
    )


class ResultMerger:
    def __init__(
        self,
        repository: ResultRepository,
        correlation_queue: CorrelationQueue,
        window_seconds: int = 60,
        background_delay: float = 2.0,
    ):
        self.repository = repository
        self.correlation_queue = correlation_queue
        self.window = timedelta(seconds=window_seconds)
        self.background_delay = background_delay
        self._lock = threading.Lock()

    def record(self, report: ClientReport) -> SpeedTestResult:
        with self._lock:
            since = report.timestamp - self.window
            prior = self.repository.merge_candidate(report.scope_id, report.peer_address, since)
            if prior is not None and can_merge(prior, report):
                stored = self.repository.update(merge_into(prior, report))
                LOGGER.info(
                    "Merged iperf3 result: %s - down %.1f Mbps / up %.1f Mbps (%s streams)",
                    stored.device_host, stored.download_mbps, stored.upload_mbps, stored.parallel_streams,
                )
                self.correlation_queue.submit(stored.id)
                return stored

            stored = self.repository.save(standalone_result(report))
        LOGGER.info(
            "Recorded iperf3 client result: %s - down %.1f Mbps / up %.1f Mbps (%s streams)",
            stored.device_host, stored.download_mbps, stored.upload_mbps, stored.parallel_streams,
        )
        self.correlation_queue.submit(stored.id, delay=self.background_delay)
        return stored

    def record_browser(
        self,
        scope_id: str,
        peer_address: str,
        download_mbps: float,
        upload_mbps: float,
        download_mb: Optional[float] = None,
        upload_mb: Optional[float] = None,
        ping_ms: Optional[float] = None,
        jitter_ms: Optional[float] = None,
    ) -> SpeedTestResult:
        """
        Store a browser-based test. The browser's upload is what the server
        received, so it lands in the download fields and vice versa.
        """
        result = SpeedTestResult(
            scope_id=scope_id,
            device_host=peer_address,
            direction=Direction.BROWSER_TO_SERVER,
            download_bps=upload_mbps * 1_000_000,
            upload_bps=download_mbps * 1_000_000,
            download_bytes=int((upload_mb or 0) * BYTES_PER_MB),
            upload_bytes=int((download_mb or 0) * BYTES_PER_MB),
            parallel_streams=BROWSER_STREAMS,
            ping_ms=ping_ms,
            jitter_ms=jitter_ms,
            success=True,
        )
        stored = self.repository.save(result)
        LOGGER.info(
            "Recorded browser speed test: %s - down %.1f Mbps / up %.1f Mbps",
            peer_address, download_mbps, upload_mbps,
        )
        self.correlation_queue.submit(stored.id, delay=self.background_delay)
        return stored
