# app/db/pool.py
"""
Async PostgreSQL pool holding the durable drip campaign state:
users, their program week, and the email history.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib import resources
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "database_pool"


class DatabasePoolManager:
    """Owns the psycopg pool for the lifetime of the API process or worker."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        """Open the pool, verify one round trip and optionally apply the schema."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info("Opening database pool", **pool_config)

        self.pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await self.pool.open(wait=True)
            self._initialized = True
            await self._ping()
            if settings.DB_APPLY_SCHEMA:
                await self.apply_schema()
        except Exception as e:
            logger.error("Database pool failed to start", error=str(e))
            self._initialized = False
            await self.pool.close()
            self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready")

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        # Autocommit keeps idle pooled connections out of INTRANS state
        await conn.set_autocommit(True)
        app_name = f"go-leadership-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '60s'")

    async def _ping(self) -> float:
        """Round trip a trivial query and return its latency in milliseconds."""
        started = time.perf_counter()
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError(f"Unexpected ping result: {row!r}")
        return (time.perf_counter() - started) * 1000

    async def apply_schema(self) -> None:
        """Create the drip campaign tables and indexes when missing."""
        ddl = resources.files("app.db").joinpath("schema.sql").read_text(encoding="utf-8")
        async with self.connection() as conn:
            await conn.execute(ddl)
        logger.info("Database schema applied")

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database pool")
        try:
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
        except TimeoutError:
            logger.warning("Database pool close timed out")
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection from the pool.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if self._closed:
            raise RuntimeError("Database pool is closed")
        if not self._initialized or self.pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection inside a transaction; commits on success, rolls back on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if self._closed:
            return {"healthy": False, "service": SERVICE_NAME, "error": "Pool is closed"}
        if not self._initialized:
            return {"healthy": False, "service": SERVICE_NAME, "error": "Pool not initialized"}

        try:
            latency_ms = await self._ping()
        except (psycopg.Error, RuntimeError) as e:
            logger.error("Database health check failed", error=str(e))
            return {
                "healthy": False,
                "service": SERVICE_NAME,
                "error": f"Connection test failed: {e}",
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        waiting = stats.get("requests_waiting", 0)
        utilization = (size - available) / size * 100 if size else 0.0

        health: dict[str, Any] = {
            "healthy": True,
            "service": SERVICE_NAME,
            "connection_time_ms": round(latency_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "pool_available": available,
                "pool_utilization_percent": round(utilization, 2),
                "requests_waiting": waiting,
            },
        }
        if utilization > 80 or waiting:
            health["warnings"] = [
                f"utilization {utilization:.1f}%, {waiting} request(s) waiting for a connection"
            ]
        return health


db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def get_db_transaction():
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
