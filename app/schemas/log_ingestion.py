"""
Schemas for log ingestion trigger and status endpoints.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ManualProcessRequest(BaseModel):
    date: str | None = Field(
        default=None,
        pattern=r"^\d{8}$",
        description="Log folder date as YYYYMMDD; today when omitted",
    )


class TimeRangeResponse(BaseModel):
    from_: datetime | None = Field(default=None, alias="from")
    to: datetime

    model_config = {"populate_by_name": True}


class ManualProcessResponse(BaseModel):
    processed_files: int
    failed_files: int
    total_records: int
    total_new_records: int
    dates: list[str] = Field(default_factory=list)
    time_range: TimeRangeResponse


class SchedulerStatusResponse(BaseModel):
    is_running: bool
    last_process_time: datetime | None = None
    scheduled_trigger_names: list[str] = Field(default_factory=list)


class FileProgressResponse(BaseModel):
    file_name: str
    file_path: str
    size_bytes: int
    total_records: int
    processed_records: int
    status: str
    last_processed_at: datetime | None = None


class ProcessingSummaryResponse(BaseModel):
    total_files: int
    completed_files: int
    failed_files: int
    last_processed_at: datetime | None = None


class ProcessingStatusResponse(BaseModel):
    summary: ProcessingSummaryResponse
    recent_files: list[FileProgressResponse] = Field(default_factory=list)
