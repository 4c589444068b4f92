from __future__ import annotations

import unittest
from unittest.mock import patch

from db.config import normalize_postgres_url, resolve_database_url


class TestDatabaseUrl(unittest.TestCase):
    def test_normalizes_to_psycopg_driver(self) -> None:
        self.assertEqual(
            normalize_postgres_url("postgres://u:p@db:5432/logs"),
            "postgresql+psycopg://u:p@db:5432/logs",
        )
        self.assertEqual(
            normalize_postgres_url("postgresql://u:p@db:5432/logs"),
            "postgresql+psycopg://u:p@db:5432/logs",
        )
        self.assertEqual(
            normalize_postgres_url("postgresql+psycopg://u:p@db/logs"),
            "postgresql+psycopg://u:p@db/logs",
        )

    def test_first_configured_variable_wins(self) -> None:
        env = {
            "DATABASE_URL": "  ",
            "CLOUD_DATABASE_URL": "postgresql://cloud/logs",
            "LOCAL_DATABASE_URL": "postgresql://local/logs",
        }
        with patch.dict("os.environ", env, clear=True), patch("db.config.load_env_files"):
            self.assertEqual(resolve_database_url(), "postgresql+psycopg://cloud/logs")

    def test_missing_url_raises(self) -> None:
        with patch.dict("os.environ", {}, clear=True), patch("db.config.load_env_files"):
            with self.assertRaises(RuntimeError):
                resolve_database_url()


if __name__ == "__main__":
    unittest.main()
