"""
db/base.py

Declarative base and the audit-column mixin shared by the ingestion tables.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Declarative base for membership records and file processing history.
    """


class TimestampMixin:
    """
    Adds created_at/updated_at. Upserts issued through Core set updated_at
    explicitly because onupdate only fires for ORM flushes.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )
