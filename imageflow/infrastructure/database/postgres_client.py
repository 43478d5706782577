"""PostgreSQL client for the self-hosted lineage store.

Provides a connection pool and small query helpers. Multi-statement writes go
through `transaction()` so they commit or roll back as one unit.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Generator

from psycopg2 import pool
from psycopg2.extras import Json, RealDictCursor


class PostgresClient:
    """PostgreSQL database client with connection pooling."""

    def __init__(self) -> None:
        self.enabled = os.getenv("USE_LOCAL_DB", "0") == "1"
        self._pool: Any = None

        if self.enabled:
            try:
                self._pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=int(os.getenv("POSTGRES_POOL_SIZE", "10")),
                    host=os.getenv("POSTGRES_HOST", "localhost"),
                    port=int(os.getenv("POSTGRES_PORT", "5432")),
                    database=os.getenv("POSTGRES_DB", "imageflow"),
                    user=os.getenv("POSTGRES_USER", "imageflow"),
                    password=os.getenv("POSTGRES_PASSWORD", "imageflow_dev_password"),
                )
            except Exception as exc:  # pragma: no cover
                raise RuntimeError(f"Failed to initialize PostgreSQL connection pool: {exc}") from exc

    @contextmanager
    def get_connection(self) -> Generator[Any, None, None]:
        """Get a pooled connection, committed on success and rolled back on error.

        Raises:
            RuntimeError: If the local database is not enabled.
        """
        if not self.enabled or self._pool is None:
            raise RuntimeError("Local PostgreSQL database is not enabled")

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
            conn.commit()
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """Dict cursor whose statements share one transaction."""
        with self.get_connection() as conn:
            cursor = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def execute_one(self, query: str, params: tuple = ()) -> dict[str, Any] | None:
        with self.transaction() as cursor:
            cursor.execute(query, params)
            result = cursor.fetchone()
            return dict(result) if result else None

    def execute_many(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self.transaction() as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]


def as_json(value: Any) -> Json:
    return Json(value)


_POSTGRES_CLIENT: PostgresClient | None = None


def get_postgres_client() -> PostgresClient | None:
    """PostgreSQL client singleton, or None when USE_LOCAL_DB is off."""
    global _POSTGRES_CLIENT
    if os.getenv("USE_LOCAL_DB", "0") != "1":
        return None
    if _POSTGRES_CLIENT is None:
        _POSTGRES_CLIENT = PostgresClient()
    return _POSTGRES_CLIENT
