"""
Log ingestion trigger and status endpoints.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from app.api.dependencies import get_ingestion_scheduler, get_persistence_gateway
from app.connectors.base import ShareConnectionError
from app.domain.membership_log import FileProgress, ProgressEvent
from app.repositories.persistence_gateway import SQLAlchemyPersistenceGateway
from app.scheduler.jobs import IngestionAlreadyRunningError, IngestionScheduler
from app.schemas.log_ingestion import (
    FileProgressResponse,
    ManualProcessRequest,
    ManualProcessResponse,
    ProcessingStatusResponse,
    ProcessingSummaryResponse,
    SchedulerStatusResponse,
    TimeRangeResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["log-ingestion"])


@router.post("/process", response_model=ManualProcessResponse)
def trigger_manual_process(
    payload: ManualProcessRequest | None = None,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> ManualProcessResponse:
    date_token = payload.date if payload is not None else None
    try:
        summary = scheduler.trigger_manual(date_token)
    except IngestionAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ShareConnectionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Manual log processing failed date=%s", date_token)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Log processing failed: {exc}",
        ) from exc

    return ManualProcessResponse(
        processed_files=summary.processed_files,
        failed_files=summary.failed_files,
        total_records=summary.total_records,
        total_new_records=summary.total_new_records,
        dates=summary.dates,
        time_range=TimeRangeResponse(from_=summary.time_range_from, to=summary.time_range_to),
    )


@router.get("/scheduler-status", response_model=SchedulerStatusResponse)
def get_scheduler_status(
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> SchedulerStatusResponse:
    state = scheduler.status()
    return SchedulerStatusResponse(
        is_running=state.is_running,
        last_process_time=state.last_process_time,
        scheduled_trigger_names=state.scheduled_trigger_names,
    )


@router.get("/processing-status", response_model=ProcessingStatusResponse)
def get_processing_status(
    limit: int = Query(default=20, ge=1, le=200, description="Most recent files returned"),
    gateway: SQLAlchemyPersistenceGateway = Depends(get_persistence_gateway),
) -> ProcessingStatusResponse:
    return ProcessingStatusResponse(
        summary=ProcessingSummaryResponse(**gateway.progress_summary()),
        recent_files=[_to_file_progress_response(row) for row in gateway.list_file_progress(limit=limit)],
    )


@router.get("/process-latest")
def stream_latest_process(
    date: str | None = Query(default=None, pattern=r"^\d{8}$", description="Optional YYYYMMDD date"),
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> StreamingResponse:
    return StreamingResponse(
        _server_sent_events(scheduler.trigger_manual_stream(date)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _server_sent_events(events: Iterator[ProgressEvent]) -> Iterator[str]:
    for event in events:
        payload = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        yield f"event: {event.event}\ndata: {payload}\n\n"


def _to_file_progress_response(progress: FileProgress) -> FileProgressResponse:
    return FileProgressResponse(
        file_name=progress.file_name,
        file_path=progress.file_path,
        size_bytes=progress.size_bytes,
        total_records=progress.total_records,
        processed_records=progress.processed_records,
        status=progress.status,
        last_processed_at=progress.last_processed_at,
    )
