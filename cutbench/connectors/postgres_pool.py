"""
Postgres Connection Pool Manager

Async connection pool shared by every workload actor of a run. Implements the
query-execution interface consumed by ``cutbench.core.query_executor``:
``run(statement, params, *, timeout, session_settings)`` and ``ping()``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import asyncpg
from asyncpg import Pool
from asyncpg.exceptions import (
    CannotConnectNowError,
    TooManyConnectionsError,
)

from cutbench.config import Settings
from cutbench.core.errors import PoolExhaustedError

logger = logging.getLogger(__name__)


class PostgresConnectionPool:
    """
    Async connection pool for Postgres with connect retries.

    The pool is bounded by ``max_size``; callers that cannot acquire a
    connection within their own deadline get ``PoolExhaustedError``.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_size: int = 5,
        max_size: int = 20,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        command_timeout: float = 60.0,
        pool_name: str = "default",
    ):
        """
        Initialize Postgres connection pool.

        Args:
            host: Database host
            port: Database port
            database: Database name
            user: Username
            password: Password
            min_size: Minimum pool size
            max_size: Maximum pool size
            max_retries: Max retry attempts for transient connect failures
            retry_delay: Delay between retries in seconds
            command_timeout: Default command timeout in seconds
            pool_name: Descriptive name for logging (e.g., "workload", "sampler")
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout
        self.pool_name = pool_name

        self._pool: Optional[Pool] = None
        self._initialized = False

        logger.info(
            f"[{pool_name}] Postgres pool configured: {user}@{host}:{port}/{database}, "
            f"size={min_size}-{max_size}"
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        pool_name: str = "workload",
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> "PostgresConnectionPool":
        """Build a pool from application settings."""
        return cls(
            host=settings.POSTGRES_HOST,
            port=settings.POSTGRES_PORT,
            database=settings.POSTGRES_DATABASE,
            user=settings.POSTGRES_USER,
            password=settings.POSTGRES_PASSWORD,
            min_size=settings.POSTGRES_POOL_MIN_SIZE if min_size is None else min_size,
            max_size=settings.POSTGRES_POOL_MAX_SIZE if max_size is None else max_size,
            command_timeout=settings.POSTGRES_COMMAND_TIMEOUT,
            pool_name=pool_name,
        )

    async def initialize(self):
        """Initialize the connection pool."""
        if self._initialized:
            return

        logger.info(f"[{self.pool_name}] Creating Postgres connection pool...")

        for attempt in range(self.max_retries):
            try:
                self._pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    database=self.database,
                    user=self.user,
                    password=self.password,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                )

                self._initialized = True
                logger.info(
                    f"[{self.pool_name}] Postgres pool ready "
                    f"(size: {self.min_size}-{self.max_size})"
                )
                return

            except (CannotConnectNowError, TooManyConnectionsError) as e:
                if attempt < self.max_retries - 1:
                    logger.warning(
                        f"Pool creation attempt {attempt + 1} failed, retrying: {e}"
                    )
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                else:
                    logger.error(
                        f"Failed to create pool after {self.max_retries} attempts"
                    )
                    raise
            except Exception as e:
                logger.error(f"Unexpected error creating pool: {e}")
                raise

    @asynccontextmanager
    async def get_connection(self):
        """
        Get a connection from the pool (async context manager).

        Usage:
            async with pool.get_connection() as conn:
                result = await conn.fetch("SELECT 1")

        Yields:
            Connection: Connection from pool
        """
        if not self._initialized:
            await self.initialize()

        if self._pool is None:
            raise RuntimeError("Pool not initialized")

        async with self._pool.acquire() as conn:
            yield conn

    async def run(
        self,
        statement: str,
        params: Sequence[Any] = (),
        *,
        timeout: float,
        session_settings: Optional[Mapping[str, str]] = None,
    ) -> int:
        """
        Execute one statement and return the number of rows it produced.

        The whole call (pool acquire included) shares one deadline. Session
        settings are applied with ``set_config(..., is_local => true)`` inside
        a transaction so nothing leaks to the next borrower of the connection.

        Raises:
            PoolExhaustedError: no connection became free before the deadline
        """
        if not self._initialized:
            await self.initialize()
        if self._pool is None:
            raise RuntimeError("Pool not initialized")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            conn = await self._pool.acquire(timeout=timeout)
        except asyncio.TimeoutError as e:
            raise PoolExhaustedError(
                f"[{self.pool_name}] no connection free within {timeout:.3f}s "
                f"(max_size={self.max_size})"
            ) from e

        try:
            if session_settings:
                async with conn.transaction():
                    for name, value in session_settings.items():
                        await conn.execute(
                            "SELECT set_config($1, $2, true)",
                            name,
                            str(value),
                            timeout=max(deadline - loop.time(), 0.001),
                        )
                    rows = await conn.fetch(
                        statement, *params, timeout=max(deadline - loop.time(), 0.001)
                    )
            else:
                rows = await conn.fetch(
                    statement, *params, timeout=max(deadline - loop.time(), 0.001)
                )
            return len(rows)
        finally:
            await self._pool.release(conn)

    async def fetch_all(
        self,
        query: str,
        *args,
        timeout: Optional[float] = None,
    ) -> List[asyncpg.Record]:
        """
        Fetch all rows from a query.

        Args:
            query: SQL query to execute
            *args: Query parameters
            timeout: Optional query timeout

        Returns:
            List of records
        """
        async with self.get_connection() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def fetch_val(
        self,
        query: str,
        *args,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Fetch a single value from a query.

        Args:
            query: SQL query to execute
            *args: Query parameters
            timeout: Optional query timeout

        Returns:
            Single value
        """
        async with self.get_connection() as conn:
            return await conn.fetchval(query, *args, timeout=timeout)

    async def ping(self, timeout: float = 5.0) -> None:
        """Round-trip ``SELECT 1``; raises if the server is unreachable."""
        result = await self.fetch_val("SELECT 1", timeout=timeout)
        if result != 1:
            raise RuntimeError(f"[{self.pool_name}] unexpected ping result: {result!r}")

    async def missing_tables(self, names: Iterable[str], timeout: float = 5.0) -> List[str]:
        """Return the subset of ``names`` that do not resolve to a relation."""
        missing: List[str] = []
        for name in names:
            oid = await self.fetch_val("SELECT to_regclass($1::text)::oid", name, timeout=timeout)
            if oid is None:
                missing.append(name)
        return missing

    async def get_pool_stats(self) -> Dict[str, Any]:
        """
        Get connection pool statistics.

        Returns:
            Dict with pool statistics
        """
        if not self._initialized or self._pool is None:
            return {
                "initialized": False,
                "size": 0,
                "free": 0,
            }

        return {
            "initialized": True,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "size": self._pool.get_size(),
            "free": self._pool.get_idle_size(),
            "in_use": self._pool.get_size() - self._pool.get_idle_size(),
        }

    async def close(self):
        """Close the connection pool."""
        if self._pool is not None:
            logger.info(f"[{self.pool_name}] Closing Postgres connection pool...")
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info(f"[{self.pool_name}] Postgres pool closed")
