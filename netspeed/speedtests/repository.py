"""Persistence of speed-test results."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import sessionmaker

from ..db import SpeedTestRecord, get_session
from .models import Direction, PathAnalysisResult, SpeedTestResult, TestStatus

LOGGER = logging.getLogger(__name__)

_COLUMNS = (
    "scope_id", "device_host", "device_name", "device_type", "timestamp",
    "download_bps", "upload_bps", "download_bytes", "upload_bytes",
    "download_retransmits", "upload_retransmits", "duration_seconds",
    "parallel_streams", "success", "error", "local_address", "path_stale",
    "raw_download", "raw_upload", "ping_ms", "jitter_ms",
    "download_latency_ms", "upload_latency_ms", "wan_group", "wan_name", "notes",
)


def _apply(record: SpeedTestRecord, result: SpeedTestResult) -> None:
    for column in _COLUMNS:
        setattr(record, column, getattr(result, column))
    record.direction = result.direction.value
    record.status = result.status.value
    record.path_json = json.dumps(result.path_analysis.to_dict()) if result.path_analysis else None


def to_result(record: SpeedTestRecord) -> SpeedTestResult:
    analysis = None
    if record.path_json:
        try:
            analysis = PathAnalysisResult.from_dict(json.loads(record.path_json))
        except (ValueError, TypeError, KeyError) as exc:
            LOGGER.warning("Ignoring unreadable path analysis on record %s: %s", record.id, exc)
    values = {column: getattr(record, column) for column in _COLUMNS}
    if not values["success"] and not values["error"]:
        values["error"] = "Unknown error"
    return SpeedTestResult(
        id=record.id,
        direction=Direction(record.direction),
        status=TestStatus(record.status),
        path_analysis=analysis,
        **values,
    )


class ResultRepository:
    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory

    def save(self, result: SpeedTestResult) -> SpeedTestResult:
        with get_session(self.Session) as session:
            record = SpeedTestRecord()
            _apply(record, result)
            session.add(record)
            session.flush()
            stored = to_result(record)
        LOGGER.info(
            "Stored %s result #%s for %s (down %.1f Mbps / up %.1f Mbps)",
            result.direction.value,
            stored.id,
            result.device_host,
            result.download_mbps,
            result.upload_mbps,
        )
        return stored

    def update(self, result: SpeedTestResult) -> SpeedTestResult:
        if result.id is None:
            raise ValueError("cannot update a result that was never saved")
        with get_session(self.Session) as session:
            record = session.get(SpeedTestRecord, result.id)
            if record is None:
                raise KeyError(result.id)
            _apply(record, result)
            session.flush()
            return to_result(record)

    def update_path(
        self, record_id: int, analysis: Optional[PathAnalysisResult], stale: bool
    ) -> Optional[SpeedTestResult]:
        """Write only the path columns; measurement fields and notes are left as stored."""
        with get_session(self.Session) as session:
            record = session.get(SpeedTestRecord, record_id)
            if record is None:
                return None
            record.path_json = json.dumps(analysis.to_dict()) if analysis else None
            record.path_stale = stale
            session.flush()
            return to_result(record)

    def get(self, record_id: int) -> Optional[SpeedTestResult]:
        with get_session(self.Session) as session:
            record = session.get(SpeedTestRecord, record_id)
            return to_result(record) if record else None

    def recent(
        self,
        scope_id: str,
        count: int = 50,
        hours: Optional[int] = None,
        directions: Optional[Iterable[Direction]] = None,
        host: Optional[str] = None,
    ) -> List[SpeedTestResult]:
        with get_session(self.Session) as session:
            query = session.query(SpeedTestRecord).filter(SpeedTestRecord.scope_id == scope_id)
            if hours:
                since = datetime.utcnow() - timedelta(hours=hours)
                query = query.filter(SpeedTestRecord.timestamp >= since)
            if directions:
                query = query.filter(SpeedTestRecord.direction.in_([d.value for d in directions]))
            if host:
                query = query.filter(SpeedTestRecord.device_host.contains(host))
            rows = query.order_by(desc(SpeedTestRecord.timestamp)).limit(count).all()
            return [to_result(row) for row in rows]

    def between(self, start: Optional[datetime], end: Optional[datetime], scope_id: Optional[str] = None) -> List[SpeedTestResult]:
        with get_session(self.Session) as session:
            query = session.query(SpeedTestRecord).order_by(SpeedTestRecord.timestamp)
            if scope_id:
                query = query.filter(SpeedTestRecord.scope_id == scope_id)
            if start:
                query = query.filter(SpeedTestRecord.timestamp >= start)
            if end:
                query = query.filter(SpeedTestRecord.timestamp <= end)
            return [to_result(row) for row in query.all()]

    def merge_candidate(self, scope_id: str, peer_address: str, since: datetime) -> Optional[SpeedTestResult]:
        """Most recent client-to-server record from ``peer_address`` newer than ``since``."""
        with get_session(self.Session) as session:
            record = (
                session.query(SpeedTestRecord)
                .filter(
                    SpeedTestRecord.scope_id == scope_id,
                    SpeedTestRecord.device_host == peer_address,
                    SpeedTestRecord.direction == Direction.CLIENT_TO_SERVER.value,
                    SpeedTestRecord.timestamp > since,
                )
                .order_by(desc(SpeedTestRecord.timestamp))
                .first()
            )
            return to_result(record) if record else None

    def update_notes(self, record_id: int, notes: Optional[str]) -> bool:
        with get_session(self.Session) as session:
            record = session.get(SpeedTestRecord, record_id)
            if record is None:
                return False
            record.notes = notes or None
            return True

    def delete(self, record_id: int) -> bool:
        with get_session(self.Session) as session:
            record = session.get(SpeedTestRecord, record_id)
            if record is None:
                return False
            session.delete(record)
            return True

    def clear(self, scope_id: str) -> int:
        with get_session(self.Session) as session:
            deleted = (
                session.query(SpeedTestRecord)
                .filter(SpeedTestRecord.scope_id == scope_id)
                .delete(synchronize_session=False)
            )
        LOGGER.info("Cleared %s results for scope %s", deleted, scope_id)
        return deleted
