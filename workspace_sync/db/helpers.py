"""
Query helpers used by the Postgres storage adapter.

Every helper borrows a pooled connection unless one is passed in, and turns
``psycopg.Error`` into ``DatabaseError`` carrying the failed operation name.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from workspace_sync.db.pool import get_db_connection, get_db_transaction
from workspace_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _borrow(connection: psycopg.AsyncConnection | None) -> AsyncIterator[psycopg.AsyncConnection]:
    if connection is not None:
        yield connection
        return
    async with await get_db_connection() as conn:
        yield conn


def _wrap(operation: str, query: str, error: psycopg.Error, **context: Any) -> DatabaseError:
    logger.error(
        "Database query failed",
        operation=operation,
        query=" ".join(query.split())[:100],
        error=str(error),
        **context,
    )
    return DatabaseError(f"Query failed: {error}", operation=operation)


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """Run ``query`` and return its first row as a dict, or None."""
    try:
        async with _borrow(connection) as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()
    except psycopg.Error as e:
        raise _wrap("fetch_one", query, e) from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """Run ``query`` and return every row as a dict."""
    try:
        async with _borrow(connection) as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()
    except psycopg.Error as e:
        raise _wrap("fetch_all", query, e) from e


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write statement and return the affected row count."""
    try:
        async with _borrow(connection) as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
    except psycopg.Error as e:
        raise _wrap("execute", query, e) from e


async def execute_many(query: str, params_seq: Sequence[tuple]) -> int:
    """
    Execute one statement for every parameter tuple inside a single transaction.

    Either every row of the call is written or none is, so a failed call
    leaves rows written by earlier calls untouched.

    Returns:
        Number of parameter tuples executed
    """
    if not params_seq:
        return 0

    try:
        async with await get_db_transaction() as conn:
            async with conn.cursor() as cur:
                await cur.executemany(query, params_seq)
    except psycopg.Error as e:
        raise _wrap("execute_many", query, e, row_count=len(params_seq)) from e

    logger.debug("Batch statement completed", row_count=len(params_seq))
    return len(params_seq)
