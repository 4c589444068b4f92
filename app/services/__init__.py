"""
app/services package marker.
"""

from app.services.ingestion_run import IngestionRun, ProgressCallback, dates_for_mode

__all__ = [
    "IngestionRun",
    "ProgressCallback",
    "dates_for_mode",
]
