"""
Repository layer exports.
"""

from db.repositories.errors import PersistenceError
from db.repositories.file_progress_repository import FileProgressRepository

__all__ = [
    "FileProgressRepository",
    "PersistenceError",
]
