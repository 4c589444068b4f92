"""
tests/helpers.py

Log line builders and in-memory doubles shared by the ingestion tests.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from app.domain.membership_log import (
    CorrelatedRecord,
    FileProgress,
    ProcessingWatermark,
    UpsertResult,
)
from app.parsing.stream_correlator import REQUEST_MARKER, RESPONSE_MARKER

BASE_NAME = "JieLink_Center_Comm"


def request_line(timestamp: str, plate: str) -> str:
    return (
        f"{timestamp} [12] INFO  CenterComm - {REQUEST_MARKER}"
        f'http://members.local/api/member?data={{"licensePlateNbr":"{plate}","parkCode":"P001"}}'
    )


def response_line(timestamp: str, free_parking: bool, reason: str = "") -> str:
    flag = "true" if free_parking else "false"
    return (
        f"{timestamp} [12] INFO  CenterComm - {RESPONSE_MARKER}"
        f'{{"success":true,"data":{{"freeParking": {flag},"rejectReason":"{reason}"}}}}'
    )


def error_line(timestamp: str, **overrides: Any) -> str:
    payload: dict[str, Any] = {
        "code": "ERROR",
        "appName": "members-parking-service",
        "message": "会员服务超时",
        "returnCode": "E504",
        "responseTime": 3012,
        "traceId": "7f3a9c21",
    }
    payload.update(overrides)
    return f"{timestamp} [12] ERROR CenterComm - {RESPONSE_MARKER}{json.dumps(payload, ensure_ascii=False)}"


def gbk_bytes(lines: Iterable[str]) -> bytes:
    return ("\r\n".join(lines) + "\r\n").encode("gbk")


def write_log(path: Path, lines: Sequence[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(gbk_bytes(lines))
    return path


def log_file_path(root: Path, date_token: str, index: int = 0) -> Path:
    name = f"{BASE_NAME}_{date_token}.log"
    if index:
        name = f"{name}.{index}"
    return root / date_token / name


class InMemoryGateway:
    """
    Natural-key store with the same upsert semantics as the PostgreSQL gateway.
    """

    def __init__(
        self,
        *,
        last_processing_time: datetime | None = None,
        last_record_time: datetime | None = None,
    ) -> None:
        self.records: dict[tuple[str, datetime], CorrelatedRecord] = {}
        self.progress: dict[str, FileProgress] = {}
        self.progress_history: list[FileProgress] = []
        self.last_processing_time = last_processing_time
        self.seed_last_record_time = last_record_time
        self.upsert_calls = 0

    def batch_upsert(self, records: Sequence[CorrelatedRecord]) -> UpsertResult:
        self.upsert_calls += 1
        inserted = updated = 0
        for record in records:
            key = (record.plate_number, record.request_datetime)
            if key in self.records:
                updated += 1
            else:
                inserted += 1
            self.records[key] = record
        return UpsertResult(inserted=inserted, updated=updated)

    def get_watermark(self) -> ProcessingWatermark:
        times = [call_time for _, call_time in self.records]
        if self.seed_last_record_time is not None:
            times.append(self.seed_last_record_time)
        return ProcessingWatermark(
            last_processing_time=self.last_processing_time,
            last_record_time=max(times) if times else None,
        )

    def record_file_progress(self, progress: FileProgress) -> None:
        self.progress[progress.file_name] = progress
        self.progress_history.append(progress)

    def get_file_progress(self, file_name: str) -> FileProgress | None:
        return self.progress.get(file_name)
