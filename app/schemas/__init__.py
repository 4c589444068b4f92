"""
app/schemas package marker.
"""

from app.schemas.log_ingestion import (
    FileProgressResponse,
    ManualProcessRequest,
    ManualProcessResponse,
    ProcessingStatusResponse,
    ProcessingSummaryResponse,
    SchedulerStatusResponse,
    TimeRangeResponse,
)

__all__ = [
    "FileProgressResponse",
    "ManualProcessRequest",
    "ManualProcessResponse",
    "ProcessingStatusResponse",
    "ProcessingSummaryResponse",
    "SchedulerStatusResponse",
    "TimeRangeResponse",
]
