"""CSV export helpers for speed-test results."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import AppConfig
from .speedtests.models import SpeedTestResult
from .speedtests.repository import ResultRepository


class CSVExporter:
    def __init__(self, config: AppConfig, repository: ResultRepository):
        self.config = config
        self.repository = repository

    def build_csv(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        scope_id: Optional[str] = None,
    ) -> io.StringIO:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self._header())

        for result in self.repository.between(start, end, scope_id):
            writer.writerow(self._row_for_result(result))

        buffer.seek(0)
        return buffer

    def _header(self) -> list:
        return [
            "timestamp",
            "scope",
            "direction",
            "device_host",
            "device_name",
            "success",
            "download_mbps",
            "upload_mbps",
            "download_retransmits",
            "upload_retransmits",
            "parallel_streams",
            "duration_seconds",
            "ping_ms",
            "jitter_ms",
            "download_efficiency_pct",
            "upload_efficiency_pct",
            "download_grade",
            "upload_grade",
            "error",
        ]

    @staticmethod
    def _row_for_result(result: SpeedTestResult) -> list:
        analysis = result.path_analysis
        graded = analysis is not None and analysis.path.is_valid
        cells = [
            result.device_name,
            result.success,
            round(result.download_mbps, 2),
            round(result.upload_mbps, 2),
            result.download_retransmits,
            result.upload_retransmits,
            result.parallel_streams,
            result.duration_seconds,
            result.ping_ms,
            result.jitter_ms,
            analysis.download_efficiency_pct if graded else None,
            analysis.upload_efficiency_pct if graded else None,
            analysis.download_grade.value if graded and analysis.download_grade else None,
            analysis.upload_grade.value if graded and analysis.upload_grade else None,
            result.error,
        ]
        normalized = [CSVExporter._blank_if_none(value) for value in cells]
        return [
            result.timestamp.isoformat(),
            result.scope_id,
            result.direction.value,
            result.device_host,
            *normalized,
        ]

    @staticmethod
    def _blank_if_none(value):
        return "" if value is None else value

    def write_snapshot(self) -> Path:
        buffer = self.build_csv()
        target = self.config.paths.data_dir / self.config.export.csv_name
        target.write_text(buffer.getvalue(), encoding="utf-8")
        return target
