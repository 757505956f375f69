"""iperf3 JSON decoding and brace-depth record extraction."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..errors import MeasurementError, ParseError
from .models import ClientReport, DirectionMeasurement

LOGGER = logging.getLogger(__name__)

SITE_PATTERN = re.compile(r"^(?:site(?:id)?\s*=\s*)?(\d+)$", re.IGNORECASE)


class BraceStreamParser:
    """
    Splits an unframed character stream into complete top-level JSON objects.

    Depth and the in-object flag persist across ``feed`` calls, so records may
    span any number of chunks and diagnostic text between records is dropped.
    """

    def __init__(self) -> None:
        self._depth = 0
        self._in_object = False
        self._buffer: List[str] = []

    @property
    def pending(self) -> bool:
        return self._in_object

    def feed(self, chunk: str) -> List[str]:
        records: List[str] = []
        for char in chunk:
            if char == "{":
                if self._depth == 0:
                    self._buffer = []
                    self._in_object = True
                self._depth += 1
            if self._in_object:
                self._buffer.append(char)
            if char == "}" and self._in_object:
                self._depth -= 1
                if self._depth == 0:
                    records.append("".join(self._buffer))
                    self._buffer = []
                    self._in_object = False
        return records

    def reset(self) -> None:
        self._depth = 0
        self._in_object = False
        self._buffer = []


def _load(raw: str) -> Dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid iperf3 JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ParseError("iperf3 output is not a JSON object")
    return payload


def _summary(end: Dict[str, Any], key: str) -> Dict[str, Any]:
    section = end.get(key)
    return section if isinstance(section, dict) else {}


def parse_client_output(raw: str, reverse: bool) -> DirectionMeasurement:
    """
    Decode the JSON written by ``iperf3 -c ... -J``.

    In reverse mode the controller is the receiver, so the bitrate comes from
    ``sum_received``; retransmits are only counted by the sender and are read
    from ``sum_sent`` in both modes.
    """
    payload = _load(raw)
    error = payload.get("error")
    if error:
        raise MeasurementError(str(error), raw_output=raw)

    end = payload.get("end") or {}
    sent = _summary(end, "sum_sent")
    received = _summary(end, "sum_received")
    primary = received if reverse else sent
    if not primary:
        raise ParseError("iperf3 output has no end summary")

    local_address = None
    connected = (payload.get("start") or {}).get("connected") or []
    if connected:
        local_address = connected[0].get("local_host")

    return DirectionMeasurement(
        success=True,
        bits_per_second=float(primary.get("bits_per_second") or 0),
        bytes=int(primary.get("bytes") or 0),
        retransmits=int(sent.get("retransmits") or 0),
        local_address=local_address,
        raw=raw,
    )


def parse_site_id(extra_data: Optional[str]) -> Optional[str]:
    """Accepts ``1001``, ``siteId=1001`` or ``site=1001``."""
    if not extra_data:
        return None
    match = SITE_PATTERN.match(extra_data.strip())
    return match.group(1) if match else None


def decode_server_record(raw: str, default_scope: str) -> Optional[ClientReport]:
    """
    Turn one completed ``iperf3 -s -J`` document into a client report.

    Directions are named from the server's side: ``sum_received`` is data
    coming from the device, ``sum_sent`` is data going to it. In bidirectional
    runs a non-zero ``sum_sent_bidir_reverse`` replaces ``sum_sent``.
    Returns ``None`` for records that carry nothing worth storing.
    """
    try:
        payload = _load(raw)
    except ParseError as exc:
        LOGGER.warning("Discarding unreadable iperf3 server record: %s", exc)
        return None

    if payload.get("error"):
        LOGGER.info("iperf3 server reported error: %s", payload["error"])
        return None

    start = payload.get("start") or {}
    connected = start.get("connected") or []
    peer = connected[0].get("remote_host") if connected else None
    if not peer:
        LOGGER.debug("Discarding iperf3 record without a peer address")
        return None
    local = connected[0].get("local_host")

    test_start = start.get("test_start") or {}
    duration = int(test_start.get("duration") or 10)
    streams = int(test_start.get("num_streams") or 1)
    scope = parse_site_id(payload.get("extra_data")) or default_scope

    end = payload.get("end") or {}
    received = _summary(end, "sum_received")
    sent = _summary(end, "sum_sent")
    reverse = _summary(end, "sum_sent_bidir_reverse")
    if float(reverse.get("bits_per_second") or 0) > 0:
        sent = reverse

    download_bps = float(received.get("bits_per_second") or 0)
    upload_bps = float(sent.get("bits_per_second") or 0)
    if download_bps <= 0 and upload_bps <= 0:
        LOGGER.debug("Discarding empty iperf3 record from %s", peer)
        return None

    return ClientReport(
        peer_address=peer,
        scope_id=scope,
        download_bps=download_bps,
        upload_bps=upload_bps,
        download_bytes=int(received.get("bytes") or 0),
        upload_bytes=int(sent.get("bytes") or 0),
        download_retransmits=int(received.get("retransmits") or 0),
        upload_retransmits=int(sent.get("retransmits") or 0),
        duration_seconds=duration,
        parallel_streams=streams,
        local_address=local,
        raw=raw,
    )
