"""
app/parsing package marker.
"""

from app.parsing.file_locator import FileLocator
from app.parsing.stream_correlator import (
    LogFileReadError,
    ParseStats,
    StreamCorrelator,
    format_error_reason,
    format_records,
)

__all__ = [
    "FileLocator",
    "LogFileReadError",
    "ParseStats",
    "StreamCorrelator",
    "format_error_reason",
    "format_records",
]
