"""
app/api/dependencies.py

Shared FastAPI dependencies for the log ingestion endpoints.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException, Request, status

from app.config import get_ingestion_settings, get_scheduler_settings
from app.repositories.persistence_gateway import SQLAlchemyPersistenceGateway
from app.scheduler.jobs import IngestionScheduler


def get_ingestion_scheduler(request: Request) -> IngestionScheduler:
    """
    Return the scheduler owned by the running application.
    """

    scheduler = getattr(request.app.state, "ingestion_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Log ingestion is not initialised.",
        )
    return scheduler


@lru_cache(maxsize=1)
def get_persistence_gateway() -> SQLAlchemyPersistenceGateway:
    return SQLAlchemyPersistenceGateway(
        timezone_name=get_scheduler_settings().timezone,
        batch_size=get_ingestion_settings().batch_size,
    )
