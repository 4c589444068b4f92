"""
Environment-driven configuration helpers shared by the app, Alembic and scripts.
"""

from __future__ import annotations

import os
from pathlib import Path

_DATABASE_URL_VARIABLES = ("DATABASE_URL", "CLOUD_DATABASE_URL", "LOCAL_DATABASE_URL")


def load_env_files() -> None:
    """
    Load simple KEY=VALUE pairs from `.env` and `.env.local` (if present).
    Existing process environment variables are not overwritten.
    """

    project_root = Path(__file__).resolve().parents[1]
    for filename in (".env", ".env.local"):
        env_path = project_root / filename
        if not env_path.exists():
            continue

        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = value


def normalize_postgres_url(url: str) -> str:
    """
    Normalize postgres URLs to SQLAlchemy's psycopg driver form.
    """

    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def resolve_database_url() -> str:
    """
    Resolve the database URL from the first non-empty of DATABASE_URL,
    CLOUD_DATABASE_URL and LOCAL_DATABASE_URL.
    """

    load_env_files()

    for name in _DATABASE_URL_VARIABLES:
        value = os.getenv(name, "").strip()
        if value:
            return normalize_postgres_url(value)

    raise RuntimeError(
        "No database URL configured. Set DATABASE_URL, CLOUD_DATABASE_URL or LOCAL_DATABASE_URL."
    )
