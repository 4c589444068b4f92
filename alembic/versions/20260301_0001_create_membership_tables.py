"""create membership_records and file_processing_logs tables

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "membership_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "plate_number",
            sa.String(length=32),
            nullable=False,
            comment="Licence plate from the request, or UNMATCHED",
        ),
        sa.Column(
            "call_time",
            sa.DateTime(timezone=False),
            nullable=False,
            comment="Request timestamp as written in the log (local time)",
        ),
        sa.Column("response_time", sa.DateTime(timezone=False), nullable=True),
        sa.Column("free_parking", sa.Boolean(), nullable=False),
        sa.Column("reject_reason", sa.Text(), nullable=True),
        sa.Column("file_source", sa.String(length=255), nullable=True),
        sa.Column("record_kind", sa.String(length=16), nullable=False, comment="normal, json_error"),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("trace_id", sa.String(length=128), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plate_number", "call_time", name="uq_membership_records_plate_call_time"),
    )
    op.create_index("ix_membership_records_call_time", "membership_records", ["call_time"], unique=False)
    op.create_index("ix_membership_records_record_kind", "membership_records", ["record_kind"], unique=False)
    op.create_index("ix_membership_records_file_source", "membership_records", ["file_source"], unique=False)

    op.create_table(
        "file_processing_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("total_records", sa.Integer(), nullable=False),
        sa.Column("processed_records", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, comment="completed, failed"),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("file_name", name="uq_file_processing_logs_file_name"),
    )
    op.create_index("ix_file_processing_logs_status", "file_processing_logs", ["status"], unique=False)
    op.create_index(
        "ix_file_processing_logs_last_processed_at",
        "file_processing_logs",
        ["last_processed_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_file_processing_logs_last_processed_at", table_name="file_processing_logs")
    op.drop_index("ix_file_processing_logs_status", table_name="file_processing_logs")
    op.drop_table("file_processing_logs")
    op.drop_index("ix_membership_records_file_source", table_name="membership_records")
    op.drop_index("ix_membership_records_record_kind", table_name="membership_records")
    op.drop_index("ix_membership_records_call_time", table_name="membership_records")
    op.drop_table("membership_records")
