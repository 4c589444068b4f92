"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.file_processing_log import FileProcessingLog
from db.models.membership_record import MembershipRecord

__all__ = [
    "FileProcessingLog",
    "MembershipRecord",
]
