"""
Connection pool management for the ingest function.

Owns the process-wide psycopg ``AsyncConnectionPool``. The pool is built lazily on
the first invocation of a cold process and reused by every warm invocation after
it; only a new process builds a new pool.

Checkout is deadline-bounded and liveness-checked: a connection that fails a
``SELECT 1`` is closed and handed back so the pool replaces it, up to a bounded
number of times. Connections go back to the pool on every exit path, including
cancellation when the invocation deadline fires mid-write.
"""

from __future__ import annotations

import contextlib
import threading
import uuid
from typing import Any, AsyncIterator, Callable, Optional

import psycopg
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool
from psycopg_pool import PoolTimeout as _LibPoolTimeout

from pm_ingest.config import Settings
from pm_ingest.errors import PoolExhausted, PoolTimeout
from pm_ingest.utils.deadline import Deadline
from pm_ingest.utils.logging import get_logger

log = get_logger(__name__)

PoolFactory = Callable[..., Any]

# Connection errors meaning "this socket is dead", as opposed to a bad query.
_DEAD_CONNECTION_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)


class PoolManager:
    """
    Lifecycle owner of one async connection pool.

    Create one manager per process and inject it wherever a connection is
    needed. A second manager means a second pool, which is how tests simulate a
    fresh cold start.
    """

    def __init__(self, settings: Settings, pool_factory: PoolFactory = AsyncConnectionPool) -> None:
        self._settings = settings
        self._pool_factory = pool_factory
        self._pool: Optional[Any] = None
        self._opened = False
        self._lock = threading.Lock()
        self.pool_id: Optional[str] = None
        self.constructed = 0
        self.in_use = 0

    def _build(self) -> Any:
        """
        Get or create the pool object without opening it.
        """
        with self._lock:
            if self._pool is None:
                settings = self._settings
                self._pool = self._pool_factory(
                    conninfo=settings.database_url,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    max_idle=settings.db_pool_max_idle_s,
                    kwargs={"sslmode": settings.db_sslmode, "autocommit": True},
                    name="pm-ingest",
                    open=False,
                )
                self.pool_id = uuid.uuid4().hex
                self.constructed += 1
                log.info(
                    "Connection pool created",
                    extra={
                        "pool_id": self.pool_id,
                        "min_size": settings.db_pool_min_size,
                        "max_size": settings.db_pool_max_size,
                    },
                )
            return self._pool

    async def get_pool(self) -> Any:
        """
        Return the process-wide pool, creating and opening it on first use.

        Opening does not wait for the minimum number of connections; the pool
        fills in the background and the first checkout waits as needed.
        """
        pool = self._build()
        if not self._opened:
            await pool.open(wait=False)
            self._opened = True
        return pool

    @property
    def is_open(self) -> bool:
        return self._opened

    async def _ping(self, conn: AsyncConnection) -> None:
        await conn.execute("SELECT 1")

    async def _release(self, conn: AsyncConnection) -> None:
        self.in_use -= 1
        await self._pool.putconn(conn)

    async def _discard(self, conn: AsyncConnection) -> None:
        # A closed connection handed back is dropped and replaced by the pool.
        try:
            await conn.close()
        finally:
            await self._release(conn)

    async def checkout(self, deadline: Deadline) -> AsyncConnection:
        """
        Check out a live connection. The caller must ``release`` it.

        Prefer the ``connection`` context manager, which always releases.

        Raises
        ------
        PoolTimeout
            No connection became available before the deadline.
        PoolExhausted
            Every connection handed out failed the liveness check.
        """
        pool = await self.get_pool()
        attempts = self._settings.db_checkout_max_retries + 1
        for attempt in range(1, attempts + 1):
            wait = deadline.remaining()
            if wait <= 0:
                raise PoolTimeout("no time left to wait for a connection")
            try:
                conn = await pool.getconn(timeout=wait)
            except _LibPoolTimeout as exc:
                raise PoolTimeout(f"no connection available within {wait:.3f}s") from exc
            self.in_use += 1

            try:
                await self._ping(conn)
            except _DEAD_CONNECTION_ERRORS as exc:
                log.warning(
                    "Discarding dead pooled connection",
                    extra={"pool_id": self.pool_id, "attempt": attempt, "error": str(exc)},
                )
                await self._discard(conn)
                continue
            except BaseException:
                await self._release(conn)
                raise
            return conn

        raise PoolExhausted(f"no live connection after {attempts} attempts")

    async def release(self, conn: AsyncConnection) -> None:
        await self._release(conn)

    @contextlib.asynccontextmanager
    async def connection(self, deadline: Deadline) -> AsyncIterator[AsyncConnection]:
        """
        Context manager for an exclusively owned connection.

        Example
        -------
            async with manager.connection(deadline) as conn:
                await conn.execute("SELECT 1")
        """
        conn = await self.checkout(deadline)
        try:
            yield conn
        finally:
            await self._release(conn)

    async def close(self) -> None:
        """
        Close the pool. Only called on process shutdown (CLI, tests).
        """
        pool, self._pool = self._pool, None
        self._opened = False
        if pool is not None:
            await pool.close()
            log.info("Connection pool closed", extra={"pool_id": self.pool_id})


__all__ = ["PoolManager"]
