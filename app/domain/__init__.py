"""
app/domain package marker.
"""

from app.domain.membership_log import (
    UNMATCHED_PLATE,
    CorrelatedRecord,
    FileDescriptor,
    FileKind,
    FileProgress,
    FileProgressStatus,
    LogLine,
    ProcessingWatermark,
    ProgressEvent,
    RecordKind,
    RequestEvent,
    RunMode,
    RunState,
    RunSummary,
    UpsertResult,
    parse_log_timestamp,
)

__all__ = [
    "UNMATCHED_PLATE",
    "CorrelatedRecord",
    "FileDescriptor",
    "FileKind",
    "FileProgress",
    "FileProgressStatus",
    "LogLine",
    "ProcessingWatermark",
    "ProgressEvent",
    "RecordKind",
    "RequestEvent",
    "RunMode",
    "RunState",
    "RunSummary",
    "UpsertResult",
    "parse_log_timestamp",
]
