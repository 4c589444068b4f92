"""
app/repositories/persistence_gateway.py

Storage boundary used by ingestion runs.

Each gateway call opens its own short-lived session and commits on success,
so a run never holds a transaction open while it reads from the share.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.domain.membership_log import (
    CorrelatedRecord,
    FileProgress,
    ProcessingWatermark,
    UpsertResult,
)
from app.repositories.membership_record_repository import MembershipRecordRepository
from db.models.file_processing_log import FileProcessingLog
from db.repositories.errors import PersistenceError
from db.repositories.file_progress_repository import FileProgressRepository

logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    def batch_upsert(self, records: Sequence[CorrelatedRecord]) -> UpsertResult:
        ...

    def get_watermark(self) -> ProcessingWatermark:
        ...

    def record_file_progress(self, progress: FileProgress) -> None:
        ...

    def get_file_progress(self, file_name: str) -> FileProgress | None:
        ...


class SQLAlchemyPersistenceGateway:
    """
    PostgreSQL-backed gateway over the record and file-progress repositories.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] | None = None,
        timezone_name: str = "Asia/Shanghai",
        batch_size: int = 500,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory
        self._zone = ZoneInfo(timezone_name)
        self._batch_size = batch_size

    def batch_upsert(self, records: Sequence[CorrelatedRecord]) -> UpsertResult:
        if not records:
            return UpsertResult()
        try:
            with self._session_factory() as db:
                with db.begin():
                    result = MembershipRecordRepository(db).batch_upsert(
                        records,
                        batch_size=self._batch_size,
                    )
        except SQLAlchemyError as exc:
            logger.error("Record batch persistence failed size=%d error=%s", len(records), exc)
            raise PersistenceError(f"Failed to persist {len(records)} records: {exc}") from exc

        logger.info(
            "Record batch persisted size=%d inserted=%d updated=%d failed=%d",
            len(records),
            result.inserted,
            result.updated,
            result.failed,
        )
        return result

    def get_watermark(self) -> ProcessingWatermark:
        try:
            with self._session_factory() as db:
                last_processing_time = FileProgressRepository(db).last_completed_at()
                last_record_time = MembershipRecordRepository(db).last_record_time()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read processing watermark: {exc}") from exc
        return ProcessingWatermark(
            last_processing_time=self._to_local_naive(last_processing_time),
            last_record_time=last_record_time,
        )

    def record_file_progress(self, progress: FileProgress) -> None:
        try:
            with self._session_factory() as db:
                with db.begin():
                    FileProgressRepository(db).upsert_progress(
                        file_name=progress.file_name,
                        file_path=progress.file_path,
                        size_bytes=progress.size_bytes,
                        total_records=progress.total_records,
                        processed_records=progress.processed_records,
                        status=progress.status,
                    )
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to record progress for {progress.file_name}: {exc}"
            ) from exc

    def get_file_progress(self, file_name: str) -> FileProgress | None:
        try:
            with self._session_factory() as db:
                row = FileProgressRepository(db).get_progress(file_name)
                return self._to_file_progress(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read progress for {file_name}: {exc}") from exc

    def list_file_progress(self, *, limit: int = 20) -> list[FileProgress]:
        try:
            with self._session_factory() as db:
                rows = FileProgressRepository(db).list_progress(limit=limit)
                return [self._to_file_progress(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to list file progress: {exc}") from exc

    def progress_summary(self) -> dict[str, Any]:
        try:
            with self._session_factory() as db:
                return FileProgressRepository(db).summary()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to summarize file progress: {exc}") from exc

    def _to_local_naive(self, value: datetime | None) -> datetime | None:
        # Log timestamps are naive local wall-clock times; compare like with like.
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(self._zone).replace(tzinfo=None)

    def _to_file_progress(self, row: FileProcessingLog) -> FileProgress:
        return FileProgress(
            file_name=row.file_name,
            file_path=row.file_path,
            size_bytes=row.size_bytes,
            total_records=row.total_records,
            processed_records=row.processed_records,
            status=row.status,
            last_processed_at=row.last_processed_at,
        )
