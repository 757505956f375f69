"""Local iperf3 client invocations, one per direction."""

from __future__ import annotations

import logging
from typing import List

from ..config import Iperf3Config
from ..errors import MeasurementError, ParseError
from .iperf_parser import parse_client_output
from .models import DirectionMeasurement
from .process import run_with_timeout

LOGGER = logging.getLogger(__name__)


class LocalProbeRunner:
    def __init__(self, config: Iperf3Config):
        self.config = config

    def build_command(self, host: str, port: int, duration: int, streams: int, reverse: bool) -> List[str]:
        cmd = [
            self.config.binary,
            "-c", host,
            "-p", str(port),
            "-t", str(duration),
            "-P", str(streams),
            "-J",
            "--connect-timeout", str(self.config.connect_timeout_ms),
        ]
        if reverse:
            cmd.append("-R")
        return cmd

    def run(self, host: str, port: int, duration: int, streams: int, reverse: bool) -> DirectionMeasurement:
        label = "download" if reverse else "upload"
        cmd = self.build_command(host, port, duration, streams, reverse)
        timeout = duration + self.config.client_grace_seconds
        LOGGER.info("Running iperf3 %s probe: %s", label, " ".join(cmd))

        try:
            completed = run_with_timeout(cmd, timeout, description="iperf3 client")
        except MeasurementError as exc:
            LOGGER.warning("iperf3 %s probe against %s failed: %s", label, host, exc)
            return DirectionMeasurement.failed(str(exc))
        except FileNotFoundError:
            return DirectionMeasurement.failed(f"iperf3 binary not found: {self.config.binary}")

        if completed.returncode != 0:
            message = (completed.stderr or "").strip() or (completed.stdout or "").strip()
            LOGGER.warning("iperf3 %s probe exited with %s: %s", label, completed.returncode, message)
            return DirectionMeasurement.failed(message or f"iperf3 exited with {completed.returncode}", raw=completed.stdout)

        try:
            return parse_client_output(completed.stdout, reverse=reverse)
        except MeasurementError as exc:
            return DirectionMeasurement.failed(str(exc), raw=exc.raw_output)
        except ParseError as exc:
            LOGGER.warning("Unreadable iperf3 %s output from %s: %s", label, host, exc)
            return DirectionMeasurement.failed(str(exc), raw=completed.stdout)
