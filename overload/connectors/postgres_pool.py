"""
Postgres Connection Management

Exclusive per-worker connections for the database under test, plus a small
async pool for the history store.
"""

import asyncio
import logging
import random
import socket
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import asyncpg
from asyncpg import Pool
from asyncpg.exceptions import (
    CannotConnectNowError,
    TooManyConnectionsError,
)

from overload.config import settings

logger = logging.getLogger(__name__)


async def connect_worker(
    dsn: str,
    *,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
) -> asyncpg.Connection:
    """
    Open one dedicated connection to the database under test.

    Only transient refusals (server busy, too many connections, DNS/network)
    are retried; anything else is raised immediately.

    Args:
        dsn: Connection URI
        timeout: Connect timeout in seconds
        max_retries: Attempts for transient failures
        retry_delay: Base delay between attempts in seconds

    Returns:
        asyncpg.Connection owned by the caller
    """
    timeout = settings.WORKER_CONNECT_TIMEOUT if timeout is None else timeout
    max_retries = max(
        1, settings.WORKER_CONNECT_RETRIES if max_retries is None else max_retries
    )
    retry_delay = (
        settings.WORKER_CONNECT_RETRY_DELAY if retry_delay is None else retry_delay
    )

    for attempt in range(max_retries):
        try:
            return await asyncpg.connect(dsn, timeout=timeout)
        except (CannotConnectNowError, TooManyConnectionsError) as e:
            if attempt >= max_retries - 1:
                raise
            logger.warning(
                f"Connect attempt {attempt + 1} refused by server, retrying: {e}"
            )
            await asyncio.sleep(retry_delay * (attempt + 1))
        except (socket.gaierror, OSError) as e:
            # Many workers resolving the host at once can hit transient DNS errors.
            if attempt >= max_retries - 1:
                raise
            delay = retry_delay * (attempt + 1) + random.uniform(0, 0.5)
            logger.warning(
                f"Connect attempt {attempt + 1} failed (DNS/network error: {e}), "
                f"retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable: connect retries exhausted")


class PostgresConnectionPool:
    """
    Async connection pool for Postgres with retry on creation.
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 5,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        command_timeout: float = 60.0,
        pool_name: str = "default",
    ):
        """
        Initialize Postgres connection pool.

        Args:
            dsn: Connection URI
            min_size: Minimum pool size
            max_size: Maximum pool size
            max_retries: Max retry attempts for transient failures
            retry_delay: Delay between retries in seconds
            command_timeout: Command timeout in seconds
            pool_name: Descriptive name for logging (e.g., "history")
        """
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout
        self.pool_name = pool_name

        self._pool: Optional[Pool] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self):
        """Initialize the connection pool."""
        async with self._init_lock:
            if self._initialized:
                return

            logger.info(f"[{self.pool_name}] Creating Postgres connection pool...")

            for attempt in range(self.max_retries):
                try:
                    self._pool = await asyncpg.create_pool(
                        self.dsn,
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
                except (CannotConnectNowError, TooManyConnectionsError, OSError) as e:
                    if attempt < self.max_retries - 1:
                        logger.warning(
                            f"[{self.pool_name}] Pool creation attempt {attempt + 1} "
                            f"failed, retrying: {e}"
                        )
                        await asyncio.sleep(self.retry_delay * (attempt + 1))
                    else:
                        logger.error(
                            f"[{self.pool_name}] Failed to create pool after "
                            f"{self.max_retries} attempts"
                        )
                        raise

    @asynccontextmanager
    async def get_connection(self):
        """
        Get a connection from the pool (async context manager).

        Usage:
            async with pool.get_connection() as conn:
                result = await conn.fetch("SELECT 1")
        """
        if not self._initialized:
            await self.initialize()

        if self._pool is None:
            raise RuntimeError(f"[{self.pool_name}] pool not initialized")

        async with self._pool.acquire() as conn:
            yield conn

    async def execute_query(
        self,
        query: str,
        *args,
        timeout: Optional[float] = None,
    ) -> str:
        """Execute a statement that doesn't return rows. Returns the status tag."""
        async with self.get_connection() as conn:
            return await conn.execute(query, *args, timeout=timeout)

    async def fetch_all(
        self,
        query: str,
        *args,
        timeout: Optional[float] = None,
    ) -> List[asyncpg.Record]:
        async with self.get_connection() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def close(self):
        """Close the connection pool."""
        if self._pool is not None:
            logger.info(f"[{self.pool_name}] Closing Postgres connection pool...")
            await self._pool.close()
            self._pool = None
            self._initialized = False


# History pools keyed by DSN, created lazily.
_history_pools: Dict[str, PostgresConnectionPool] = {}


def get_history_pool(dsn: Optional[str] = None) -> PostgresConnectionPool:
    """
    Get or create the pool used for persisting run results.

    Args:
        dsn: Override; defaults to HISTORY_CONNSTR (or CONNSTR)
    """
    dsn = dsn or settings.history_connstr
    if not dsn:
        raise ValueError("no history connection string configured")

    pool = _history_pools.get(dsn)
    if pool is None:
        pool = PostgresConnectionPool(
            dsn,
            min_size=settings.HISTORY_POOL_MIN_SIZE,
            max_size=settings.HISTORY_POOL_MAX_SIZE,
            pool_name="history",
        )
        _history_pools[dsn] = pool
    return pool


async def close_all_pools():
    """Close every pool created through get_history_pool."""
    global _history_pools

    for pool in list(_history_pools.values()):
        await pool.close()

    _history_pools = {}
