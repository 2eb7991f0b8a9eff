"""
PostgreSQL connection pool for the persistent storage adapter.

One process-wide AsyncConnectionPool. The sync job opens it before building
the service and closes it on the way out; the storage adapter only checks
``db_pool.is_initialized`` and goes through the helpers in ``db.helpers``.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from workspace_sync.config import Settings, settings
from workspace_sync.infrastructure.observability.logging import get_logger, log_health_check

logger = get_logger(__name__)

POOL_CLOSE_TIMEOUT = 30.0  # seconds
STATEMENT_TIMEOUT = "60s"


class DatabasePoolManager:
    """Owns the sync engine's connection pool and the per-connection session setup."""

    def __init__(self, app_settings: Settings = settings):
        self.pool: AsyncConnectionPool | None = None
        self._settings = app_settings
        self._initialized = False
        self._closed = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self, conninfo: str | None = None) -> None:
        """
        Open the pool against ``conninfo`` (default: SUPABASE_DB_URL) and ping it.

        Raises:
            RuntimeError: no database URL, a closed manager, or a failed ping
        """
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        conninfo = conninfo or self._settings.SUPABASE_DB_URL
        if not conninfo:
            raise RuntimeError("Database pool initialization failed: SUPABASE_DB_URL is not set")

        pool_config = self._settings.get_db_pool_config()
        logger.info(
            "Opening sync database pool",
            environment=self._settings.environment,
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
        )

        self.pool = AsyncConnectionPool(
            conninfo=conninfo,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await self.pool.open()
            await self.pool.wait()
            # connection() refuses to run until this flag is set
            self._initialized = True
            latency_ms = await self._ping()
        except Exception as e:
            logger.error("Failed to open sync database pool", error=str(e))
            self._initialized = False
            await self._discard_pool()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Sync database pool ready", ping_ms=latency_ms)

    async def _discard_pool(self) -> None:
        if self.pool is None:
            return
        try:
            await self.pool.close()
        except Exception as close_error:
            logger.debug("Ignoring pool close error during cleanup", error=str(close_error))
        self.pool = None

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Session setup for every pooled connection: dict rows, autocommit, UTC."""
        conn.row_factory = dict_row
        # pooled connections must not linger in INTRANS
        await conn.set_autocommit(True)

        app_name = f"workspace-sync-{self._settings.environment}"
        # SET cannot be parameterized
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(STATEMENT_TIMEOUT))
        )

    async def _ping(self) -> float:
        """Run SELECT 1 through the pool and return the round trip in milliseconds."""
        start = time.perf_counter()
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError(f"Unexpected ping result: {row!r}")
        return round((time.perf_counter() - start) * 1000, 2)

    async def close(self) -> None:
        """Close the pool; a second call is a no-op."""
        if not self._initialized or self._closed:
            return

        logger.info("Closing sync database pool")
        self._initialized = False
        self._closed = True
        try:
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=POOL_CLOSE_TIMEOUT)
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection from the pool."""
        if not self.is_initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection inside a transaction: commit on success, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Ping the pool; the sync job refuses to start when ``healthy`` is False."""
        if not self.is_initialized:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        start = time.perf_counter()
        try:
            latency_ms = await self._ping()
        except Exception as e:
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            log_health_check("database_pool", False, latency_ms, error=str(e))
            return {"healthy": False, "service": "database_pool", "error": str(e)}

        stats = self.pool.get_stats()
        log_health_check("database_pool", True, latency_ms)
        return {
            "healthy": True,
            "service": "database_pool",
            "connection_time_ms": latency_ms,
            "pool_size": stats.get("pool_size", 0),
            "pool_available": stats.get("pool_available", 0),
            "requests_waiting": stats.get("requests_waiting", 0),
        }


# Global pool instance
db_pool = DatabasePoolManager()


async def get_db_connection():
    """Get database connection from pool."""
    return db_pool.connection()


async def get_db_transaction():
    """Get database connection with transaction."""
    return db_pool.transaction()
