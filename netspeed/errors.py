"""Exception types raised by the speed-test engine."""

from __future__ import annotations

from typing import Optional


class SpeedTestError(Exception):
    """Base class for every failure the engine reports."""


class ConnectivityError(SpeedTestError):
    """The target did not answer the reachability pre-check."""


class ServerLifecycleError(SpeedTestError):
    """The remote iperf3 server could not be started or stopped."""


class MeasurementError(SpeedTestError):
    """One probe direction failed. Recorded on the result, never fatal."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class ProbeTimeoutError(MeasurementError):
    """A subprocess overran its wall-clock budget and was killed."""


class ParseError(SpeedTestError):
    """Structured tool output could not be decoded."""


class CorrelationError(SpeedTestError):
    """The topology service was unreachable or answered garbage."""


class ConcurrencyRejection(SpeedTestError):
    """A test is already in flight for the same scope and host."""

    def __init__(self, scope_id: str, host: str):
        super().__init__("A speed test is already running for this device")
        self.scope_id = scope_id
        self.host = host


class TestCancelled(SpeedTestError):
    """Cooperative cancellation of a gateway WAN run."""
