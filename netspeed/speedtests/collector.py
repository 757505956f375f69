"""Passive collector: a supervised ``iperf3 -s -J`` whose output becomes client reports."""

from __future__ import annotations

import codecs
import logging
import subprocess
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import CollectorConfig
from .iperf_parser import BraceStreamParser, decode_server_record
from .models import ClientReport
from .process import kill_orphans, kill_process_tree, popen

LOGGER = logging.getLogger(__name__)

READ_CHUNK = 4096
CRASH_RESTART_SECONDS = 5.0
ORPHAN_SETTLE_SECONDS = 0.5


class CollectorState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED_FAST = "exited_fast"
    EXITED_NORMAL = "exited_normal"
    STOPPED = "stopped"


def backoff_delay(consecutive_fast_exits: int) -> float:
    """1, 2, 4, 8, 16 seconds for the first through fifth fast exit."""
    return float(2 ** max(consecutive_fast_exits - 1, 0))


def _default_launcher(cmd: List[str]) -> subprocess.Popen:
    return popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)


class PassiveCollector:
    """
    Keeps an iperf3 server listening for client-initiated tests.

    A run shorter than ``fast_exit_seconds`` counts as a fast exit and the
    next launch waits 1, 2, 4... seconds. After ``max_fast_exits`` in a row
    the collector gives up; the port is almost always held by something else.
    A longer run resets the counter and restarts at once.
    """

    def __init__(
        self,
        config: CollectorConfig,
        on_report: Callable[[ClientReport], Any],
        binary: str = "iperf3",
        launcher: Callable[[List[str]], Any] = _default_launcher,
        orphan_killer: Callable[[], None] = kill_orphans,
        clock: Callable[[], float] = time.monotonic,
        waiter: Optional[Callable[[float], bool]] = None,
    ):
        self.config = config
        self.on_report = on_report
        self.binary = binary
        self._launcher = launcher
        self._kill_orphans = orphan_killer
        self._clock = clock
        self._stop = threading.Event()
        self._wait = waiter or self._stop.wait
        self._thread: Optional[threading.Thread] = None
        self._process = None
        self.state = CollectorState.STOPPED
        self.fast_exits = 0
        self.gave_up = False
        self.restart_delays: List[float] = []
        self.reports_received = 0
        self.started_at: Optional[datetime] = None

    @property
    def command(self) -> List[str]:
        return [self.binary, "-s", "-p", str(self.config.port), "-J"]

    @property
    def is_running(self) -> bool:
        return self.state is CollectorState.RUNNING

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            LOGGER.warning("iperf3 collector already running")
            return
        self._stop.clear()
        self.gave_up = False
        self.fast_exits = 0
        self._kill_orphans()
        self._wait(ORPHAN_SETTLE_SECONDS)
        self._thread = threading.Thread(target=self._supervise, name="iperf3-collector", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        process = self._process
        if process is not None:
            kill_process_tree(process)
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self.state = CollectorState.STOPPED
        LOGGER.info("iperf3 collector stopped")

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "port": self.config.port,
            "fast_exits": self.fast_exits,
            "gave_up": self.gave_up,
            "reports_received": self.reports_received,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }

    def _supervise(self) -> None:
        while not self._stop.is_set():
            try:
                runtime = self._run_once()
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.exception("iperf3 collector crashed: %s", exc)
                if self._wait(CRASH_RESTART_SECONDS):
                    break
                continue

            if self._stop.is_set():
                break

            if runtime >= self.config.fast_exit_seconds:
                self.state = CollectorState.EXITED_NORMAL
                self.fast_exits = 0
                LOGGER.info("iperf3 server exited after %.1fs, restarting", runtime)
                continue

            self.state = CollectorState.EXITED_FAST
            self.fast_exits += 1
            if self.fast_exits == 1:
                self._kill_orphans()
            if self.fast_exits >= self.config.max_fast_exits:
                LOGGER.critical(
                    "iperf3 server exited immediately %s times in a row, giving up. "
                    "Is port %s already in use?",
                    self.fast_exits, self.config.port,
                )
                self.gave_up = True
                break

            delay = backoff_delay(self.fast_exits)
            self.restart_delays.append(delay)
            LOGGER.warning(
                "iperf3 server exited after %.1fs, retrying in %ss (attempt %s/%s)",
                runtime, delay, self.fast_exits, self.config.max_fast_exits,
            )
            if self._wait(delay):
                break

        self.state = CollectorState.STOPPED

    def _run_once(self) -> float:
        self.state = CollectorState.STARTING
        started = self._clock()
        try:
            process = self._launcher(self.command)
        except OSError as exc:
            LOGGER.error("Could not launch %s: %s", self.binary, exc)
            return self._clock() - started

        self._process = process
        self.state = CollectorState.RUNNING
        self.started_at = datetime.utcnow()
        LOGGER.info("iperf3 server listening on port %s (pid %s)", self.config.port, process.pid)
        try:
            self._pump(process)
            exit_code = process.wait()
        finally:
            self._process = None
        runtime = self._clock() - started
        LOGGER.debug("iperf3 server exited with code %s after %.1fs", exit_code, runtime)
        return runtime

    def _pump(self, process) -> None:
        parser = BraceStreamParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = process.stdout
        while True:
            data = stream.read1(READ_CHUNK)
            if not data:
                break
            for raw in parser.feed(decoder.decode(data)):
                self._dispatch(raw)
        for raw in parser.feed(decoder.decode(b"", final=True)):
            self._dispatch(raw)

    def _dispatch(self, raw: str) -> None:
        try:
            report = decode_server_record(raw, self.config.default_scope)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Discarding malformed iperf3 server record: %s", exc)
            return
        if report is None:
            return
        self.reports_received += 1
        LOGGER.info(
            "iperf3 client test from %s: from device %.1f Mbps / to device %.1f Mbps",
            report.peer_address, report.download_bps / 1_000_000, report.upload_bps / 1_000_000,
        )
        try:
            self.on_report(report)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Failed to record iperf3 client result from %s: %s", report.peer_address, exc)
