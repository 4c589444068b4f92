from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI


def _validate_env() -> None:
    """
    Validate all required environment variables at startup.

    Runs before any service or database connection is initialised.
    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.

    Rules:
    - A PostgreSQL database URL must be configured.
    - The share backend must be known; net_use needs host and credentials.
    - Every scheduler crontab expression must parse.
    """

    from app.config import collect_settings_errors, get_scheduler_settings, get_share_settings
    from db.config import load_env_files, resolve_database_url

    load_env_files()

    errors: list[str] = []

    # --- Database URL ---------------------------------------------------
    try:
        database_url = resolve_database_url()
    except RuntimeError as exc:
        errors.append(str(exc))
    else:
        if not database_url.startswith("postgresql"):
            errors.append("Only PostgreSQL database URLs are supported; SQLite is not permitted.")

    # --- Share and scheduler --------------------------------------------
    errors.extend(
        collect_settings_errors(
            share=get_share_settings(),
            scheduler=get_scheduler_settings(),
        )
    )

    if errors:
        raise RuntimeError(
            "Startup validation failed. Missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _configure_logging() -> None:
    """
    Configure root logging once for the API process.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _check_db() -> None:
    """Open a session and run SELECT 1. Raises RuntimeError if the DB is unreachable."""
    from sqlalchemy import text

    from db.session import SessionLocal

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except Exception as exc:
        raise RuntimeError("Database unavailable.") from exc


def _check_schema() -> None:
    """
    Compare Base.metadata table names against the live DB schema.

    Every table registered on Base.metadata must exist in the database.
    If any are missing, log a critical error and abort startup so that
    the operator is forced to run migrations before serving traffic.

    Does NOT auto-migrate.
    """
    from sqlalchemy import inspect as sa_inspect

    import db.models  # noqa: F401 registers all ORM models on Base.metadata
    from db.base import Base
    from db.session import get_engine

    inspector = sa_inspect(get_engine())
    actual: set[str] = set(inspector.get_table_names())
    expected: set[str] = set(Base.metadata.tables.keys())
    missing = expected - actual

    if missing:
        log = logging.getLogger(__name__)
        log.critical(
            "Schema mismatch: %d table(s) defined in ORM metadata are absent from "
            "the database: %s. Run 'alembic upgrade head' and restart.",
            len(missing),
            ", ".join(sorted(missing)),
        )
        raise RuntimeError(
            f"Schema mismatch: {len(missing)} table(s) missing from the database "
            f"({', '.join(sorted(missing))}). Run migrations and restart."
        )


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Validate DB connectivity and schema, start the scheduler on boot; shut it down on exit."""
    _check_db()
    logging.getLogger(__name__).info("Database connectivity confirmed")
    _check_schema()
    logging.getLogger(__name__).info("Database schema validated")

    from app.config import get_scheduler_settings
    from app.scheduler.jobs import build_scheduler

    scheduler = build_scheduler()
    application.state.ingestion_scheduler = scheduler
    if get_scheduler_settings().enabled:
        scheduler.start()
    else:
        logging.getLogger(__name__).info("Recurring ingestion disabled; manual triggers only")
    try:
        yield
    finally:
        scheduler.shutdown(wait=True)
        application.state.ingestion_scheduler = None


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Membership Log Ingest API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import log_ingestion_router

    application.include_router(log_ingestion_router)

    @application.get("/health")
    def healthcheck() -> dict[str, object]:
        scheduler = getattr(application.state, "ingestion_scheduler", None)
        return {
            "status": "ok",
            "scheduler_running": bool(scheduler and scheduler.status().scheduled_trigger_names),
            "ingestion_running": bool(scheduler and scheduler.status().is_running),
        }

    return application


app = create_app()
