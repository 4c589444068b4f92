"""
app/repositories/membership_record_repository.py

Persistence layer for correlated membership records.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, literal_column, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.domain.membership_log import CorrelatedRecord, UpsertResult
from db.models.membership_record import NATURAL_KEY_CONSTRAINT, MembershipRecord

logger = logging.getLogger(__name__)

_DEFAULT_BATCH_SIZE = 500
_UPDATABLE_COLUMNS = (
    "response_time",
    "free_parking",
    "reject_reason",
    "file_source",
    "record_kind",
    "error_code",
    "trace_id",
    "response_time_ms",
)


def record_to_payload(record: CorrelatedRecord) -> dict[str, Any]:
    return {
        "plate_number": record.plate_number,
        "call_time": record.request_datetime,
        "response_time": record.response_datetime,
        "free_parking": record.free_parking,
        "reject_reason": record.reject_reason,
        "file_source": record.file_source,
        "record_kind": record.record_kind,
        "error_code": record.error_code,
        "trace_id": record.trace_id,
        "response_time_ms": record.response_time_ms,
    }


def build_upsert_statement(payloads: Sequence[dict[str, Any]]) -> Any:
    """
    INSERT ... ON CONFLICT (plate_number, call_time) DO UPDATE, returning one
    flag per row that is true for fresh inserts.
    """

    stmt = insert(MembershipRecord).values(list(payloads))
    update_columns = {column: stmt.excluded[column] for column in _UPDATABLE_COLUMNS}
    update_columns["updated_at"] = func.now()
    # xmax is 0 only for rows created by this statement.
    return stmt.on_conflict_do_update(
        constraint=NATURAL_KEY_CONSTRAINT,
        set_=update_columns,
    ).returning(literal_column("(xmax = 0)"))


class MembershipRecordRepository:
    """
    Repository for idempotent batch upserts keyed on (plate_number, call_time).
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def batch_upsert(
        self,
        records: Sequence[CorrelatedRecord],
        *,
        batch_size: int = _DEFAULT_BATCH_SIZE,
    ) -> UpsertResult:
        """
        Insert new rows and replace existing ones on the natural key.

        A chunk that fails as a whole is retried row by row so one bad record
        never aborts the batch; rows that still fail are logged and counted.
        The caller owns the transaction.
        """

        if not records:
            return UpsertResult()

        payloads = self._deduplicate_payloads([record_to_payload(record) for record in records])
        size = max(1, batch_size)
        inserted = updated = failed = 0

        for start in range(0, len(payloads), size):
            chunk = payloads[start : start + size]
            try:
                with self._session.begin_nested():
                    chunk_inserted, chunk_updated = self._upsert_chunk(chunk)
            except SQLAlchemyError as exc:
                logger.warning(
                    "Record chunk upsert failed, retrying per record size=%d error=%s",
                    len(chunk),
                    exc,
                )
                chunk_inserted, chunk_updated, chunk_failed = self._upsert_one_by_one(chunk)
                failed += chunk_failed
            inserted += chunk_inserted
            updated += chunk_updated

        return UpsertResult(inserted=inserted, updated=updated, failed=failed)

    def last_record_time(self) -> datetime | None:
        return self._session.scalar(select(func.max(MembershipRecord.call_time)))

    def _upsert_chunk(self, chunk: Sequence[dict[str, Any]]) -> tuple[int, int]:
        flags = self._session.execute(build_upsert_statement(chunk)).scalars().all()
        chunk_inserted = sum(1 for flag in flags if flag)
        return chunk_inserted, len(flags) - chunk_inserted

    def _upsert_one_by_one(self, chunk: Sequence[dict[str, Any]]) -> tuple[int, int, int]:
        inserted = updated = failed = 0
        for payload in chunk:
            try:
                with self._session.begin_nested():
                    row_inserted, row_updated = self._upsert_chunk([payload])
            except SQLAlchemyError as exc:
                failed += 1
                logger.error(
                    "Record upsert failed plate=%s call_time=%s error=%s",
                    payload["plate_number"],
                    payload["call_time"],
                    exc,
                )
                continue
            inserted += row_inserted
            updated += row_updated
        return inserted, updated, failed

    def _deduplicate_payloads(
        self,
        payloads: Sequence[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        # ON CONFLICT cannot touch one row twice per statement; the last occurrence wins.
        by_key: dict[tuple[str, datetime], dict[str, Any]] = {}
        for payload in payloads:
            by_key[(payload["plate_number"], payload["call_time"])] = payload
        return list(by_key.values())
