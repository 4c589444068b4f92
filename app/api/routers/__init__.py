"""
app/api/routers package marker.
"""

from app.api.routers.log_ingestion import router as log_ingestion_router

__all__ = [
    "log_ingestion_router",
]
