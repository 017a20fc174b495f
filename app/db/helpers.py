# app/db/helpers.py
"""
Query helpers shared by the drip campaign repositories.

Every helper accepts an optional ``connection`` so several statements can run
inside one transaction opened by the caller. psycopg failures and an unusable
pool are both surfaced as DatabaseError.
"""

import asyncio
import functools
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import get_db_connection, get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Raised when the relational store rejects or cannot serve a query."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _store_errors(operation: str, query: str = "") -> AsyncGenerator[None, None]:
    try:
        yield
    except psycopg.Error as e:
        logger.error("Database query failed", operation=operation, query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation=operation) from e
    except RuntimeError as e:
        # Pool not initialized or already closed
        raise DatabaseError(f"Store unavailable: {e}", operation=operation) from e


@asynccontextmanager
async def _connection(
    connection: psycopg.AsyncConnection | None,
) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    if connection is not None:
        yield connection
        return
    async with await get_db_connection() as conn:
        yield conn


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """Run a query and return its first row, or None."""
    async with _store_errors("fetch_one", query):
        async with _connection(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    async with _store_errors("fetch_all", query):
        async with _connection(connection) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row, or None when nothing matched."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write statement and return the affected row count."""
    async with _store_errors("execute", query):
        async with _connection(connection) as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount


async def execute_transaction(queries_and_params: list[tuple[str, tuple]]) -> list[int]:
    """
    Run several statements atomically.

    Returns the affected row count of each statement, in order, so callers can
    tell whether a conditional UPDATE matched.
    """
    rowcounts: list[int] = []
    async with _store_errors("transaction"):
        async with await get_db_transaction() as conn:
            for query, params in queries_and_params:
                cursor = await conn.execute(query, params)
                rowcounts.append(cursor.rowcount)

    logger.debug("Transaction committed", statements=len(rowcounts))
    return rowcounts


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a coroutine when it fails with a transient (operational) store error.

    Constraint violations and programming errors are raised immediately.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not isinstance(e.__cause__, psycopg.OperationalError):
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation gave up",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise

                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Transient database failure, retrying",
                        operation=func.__name__,
                        attempt=attempt,
                        delay=delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
