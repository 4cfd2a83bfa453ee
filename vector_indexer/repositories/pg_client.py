"""Shared PostgreSQL client for the vector indexer repositories.

Owns a single psycopg3 async connection pool used by both the pgvector
document store and the read-only business entity source.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..server.services.vector.exceptions import StorageError

logger = logging.getLogger(__name__)


class PostgresClient:
    """Async connection pool wrapper with dict rows.

    Environment Variables:
        DATABASE_URL: libpq connection string (used when conninfo is omitted)

    Example:
        >>> client = PostgresClient("postgresql://localhost/oceanic")
        >>> await client.connect()
        >>> rows = await client.fetch_all("SELECT 1 AS one")
    """

    def __init__(
        self,
        conninfo: Optional[str] = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.conninfo = conninfo or os.getenv("DATABASE_URL", "")
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @retry(
        retry=retry_if_exception_type(psycopg.OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _open_pool(self) -> AsyncConnectionPool:
        pool = AsyncConnectionPool(
            conninfo=self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        await pool.open(wait=True)
        return pool

    async def connect(self) -> None:
        """Open the connection pool (retries transient connection failures).

        Raises:
            StorageError: If the database cannot be reached
        """
        if self._pool:
            return

        try:
            self._pool = await self._open_pool()
        except (psycopg.Error, OSError) as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise StorageError(f"PostgreSQL connection failed: {e}") from e

        logger.info(
            "postgresql_connected",
            extra={"min_size": self.min_size, "max_size": self.max_size}
        )

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        if not self._pool:
            raise StorageError("Not connected to database")
        async with self._pool.connection() as conn:
            yield conn

    async def fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        try:
            async with self.connection() as conn:
                result = await conn.execute(query, params)
                return list(await result.fetchall())
        except psycopg.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    async def fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[dict[str, Any]]:
        try:
            async with self.connection() as conn:
                result = await conn.execute(query, params)
                return await result.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"Query failed: {e}") from e

    async def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count."""
        try:
            async with self.connection() as conn:
                result = await conn.execute(query, params)
                return result.rowcount
        except psycopg.Error as e:
            raise StorageError(f"Statement failed: {e}") from e

    async def test_connection(self) -> bool:
        """Test if the connection pool is healthy."""
        if not self._pool:
            return False

        try:
            async with self._pool.connection() as conn:
                await conn.execute("SELECT 1")
            return True
        except psycopg.Error:
            return False

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("postgresql_disconnected")
