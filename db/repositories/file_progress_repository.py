"""
Repository for per-file processing history.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.domain.membership_log import FileProgressStatus
from db.models.file_processing_log import FILE_NAME_CONSTRAINT, FileProcessingLog


class FileProgressRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert_progress(
        self,
        *,
        file_name: str,
        file_path: str,
        size_bytes: int,
        total_records: int,
        processed_records: int,
        status: str,
    ) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "file_name": file_name,
            "file_path": file_path,
            "size_bytes": size_bytes,
            "total_records": total_records,
            "processed_records": processed_records,
            "status": status,
            "last_processed_at": now,
        }
        stmt = insert(FileProcessingLog).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint=FILE_NAME_CONSTRAINT,
            set_={
                **{key: stmt.excluded[key] for key in values if key != "file_name"},
                "updated_at": func.now(),
            },
        )
        self._session.execute(stmt)

    def get_progress(self, file_name: str) -> FileProcessingLog | None:
        stmt = select(FileProcessingLog).where(FileProcessingLog.file_name == file_name)
        return self._session.scalars(stmt).first()

    def list_progress(
        self,
        *,
        limit: int = 100,
        status: str | None = None,
    ) -> list[FileProcessingLog]:
        stmt: Select[tuple[FileProcessingLog]] = select(FileProcessingLog)
        if status:
            stmt = stmt.where(FileProcessingLog.status == status)
        stmt = stmt.order_by(FileProcessingLog.last_processed_at.desc().nulls_last()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def last_completed_at(self) -> datetime | None:
        stmt = select(func.max(FileProcessingLog.last_processed_at)).where(
            FileProcessingLog.status == FileProgressStatus.COMPLETED
        )
        return self._session.scalar(stmt)

    def summary(self) -> dict[str, Any]:
        rows = self._session.execute(
            select(FileProcessingLog.status, func.count()).group_by(FileProcessingLog.status)
        ).all()
        counts = {status: int(count) for status, count in rows}
        last_processed_at = self._session.scalar(select(func.max(FileProcessingLog.last_processed_at)))
        return {
            "total_files": sum(counts.values()),
            "completed_files": counts.get(FileProgressStatus.COMPLETED, 0),
            "failed_files": counts.get(FileProgressStatus.FAILED, 0),
            "last_processed_at": last_processed_at,
        }
