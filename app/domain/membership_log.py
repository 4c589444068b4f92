"""
app/domain/membership_log.py

Domain models for membership-verification log ingestion.

Timestamps inside the log files are local wall-clock times written by the
car-park controller (``YYYY-MM-DD HH:MM:SS[,mmm]``). They are kept both as the
raw string (the correlation key inside one file) and as naive ``datetime``
values (the natural key at the storage boundary).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

LOG_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
UNMATCHED_PLATE = "UNMATCHED"


def parse_log_timestamp(raw: str) -> datetime:
    """
    Parse ``YYYY-MM-DD HH:MM:SS[,mmm]`` into a naive datetime.

    Raises ValueError on any other shape.
    """

    base, _, millis = raw.partition(",")
    parsed = datetime.strptime(base, LOG_TIMESTAMP_FORMAT)
    if millis:
        if not millis.isdigit() or len(millis) != 3:
            raise ValueError(f"Invalid millisecond component: {raw!r}")
        parsed = parsed.replace(microsecond=int(millis) * 1000)
    return parsed


class RecordKind:
    NORMAL = "normal"
    JSON_ERROR = "json_error"


class FileKind:
    CURRENT = "current"
    SLICE = "slice"


class FileProgressStatus:
    COMPLETED = "completed"
    FAILED = "failed"


class RunMode:
    REALTIME = "realtime"
    RECENT = "recent"
    DAILY = "daily"
    MANUAL = "manual"
    LATEST = "latest"


@dataclass(frozen=True)
class LogLine:
    """
    One decoded log line carrying a parseable leading timestamp.
    """

    text: str
    line_number: int
    timestamp: str
    logged_at: datetime


@dataclass(frozen=True)
class RequestEvent:
    """
    Outbound membership query awaiting its response.
    """

    timestamp: str
    plate_number: str
    line_number: int


@dataclass(frozen=True)
class CorrelatedRecord:
    """
    A response paired with its request, ready for persistence.
    """

    plate_number: str
    request_timestamp: str
    response_timestamp: str
    free_parking: bool
    reject_reason: str
    file_source: str
    record_kind: str = RecordKind.NORMAL
    request_line: int | None = None
    response_line: int | None = None
    error_code: str | None = None
    trace_id: str | None = None
    response_time_ms: int | None = None

    @property
    def request_datetime(self) -> datetime:
        return parse_log_timestamp(self.request_timestamp)

    @property
    def response_datetime(self) -> datetime:
        return parse_log_timestamp(self.response_timestamp)

    @property
    def is_matched(self) -> bool:
        return self.plate_number != UNMATCHED_PLATE


@dataclass(frozen=True)
class FileDescriptor:
    """
    One log file on the share: the current file (index 0) or a rotation slice.
    """

    path: str
    name: str
    kind: str
    sequence_index: int
    size_bytes: int = 0


@dataclass(frozen=True)
class ProcessingWatermark:
    """
    Derived view over persisted state used as the incremental cutoff.
    """

    last_processing_time: datetime | None
    last_record_time: datetime | None

    def cutoff(self, *, now: datetime | None = None) -> datetime:
        """
        Return the later of both times, or one day before ``now`` when the
        store is empty.
        """

        candidates = [
            value
            for value in (self.last_processing_time, self.last_record_time)
            if value is not None
        ]
        if candidates:
            return max(candidates)
        return (now or datetime.now()) - timedelta(days=1)


@dataclass(frozen=True)
class FileProgress:
    """
    Per-file processing history row.
    """

    file_name: str
    file_path: str
    size_bytes: int
    total_records: int
    processed_records: int
    status: str
    last_processed_at: datetime | None = None


@dataclass(frozen=True)
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass(frozen=True)
class RunState:
    """
    Snapshot of the scheduler's single-flight state.
    """

    is_running: bool
    last_process_time: datetime | None
    scheduled_trigger_names: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunSummary:
    """
    End-of-run summary returned to manual callers.
    """

    mode: str
    dates: list[str]
    processed_files: int
    failed_files: int
    total_records: int
    total_new_records: int
    time_range_from: datetime | None
    time_range_to: datetime
    used_fixture: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "dates": list(self.dates),
            "processed_files": self.processed_files,
            "failed_files": self.failed_files,
            "total_records": self.total_records,
            "total_new_records": self.total_new_records,
            "time_range": {
                "from": self.time_range_from.isoformat() if self.time_range_from else None,
                "to": self.time_range_to.isoformat(),
            },
            "used_fixture": self.used_fixture,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """
    Step-by-step notification emitted while a run executes.
    """

    event: str
    message: str
    step: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.event in {"completed", "error"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "step": self.step,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }
