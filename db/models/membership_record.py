"""
db/models/membership_record.py

One correlated membership query (request + response or error) per row.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin

NATURAL_KEY_CONSTRAINT = "uq_membership_records_plate_call_time"


class MembershipRecord(Base, TimestampMixin):
    __tablename__ = "membership_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    plate_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Licence plate from the request, or UNMATCHED",
    )
    call_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        comment="Request timestamp as written in the log (local time)",
    )
    response_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=False),
        nullable=True,
    )
    free_parking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    record_kind: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="normal",
        comment="normal, json_error",
    )
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("plate_number", "call_time", name=NATURAL_KEY_CONSTRAINT),
        Index("ix_membership_records_call_time", "call_time"),
        Index("ix_membership_records_record_kind", "record_kind"),
        Index("ix_membership_records_file_source", "file_source"),
    )
