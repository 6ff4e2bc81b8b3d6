from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    pg_exc.InterfaceError,
    pg_exc.PostgresConnectionError,
    pg_exc.CannotConnectNowError,
)


class DatabaseUnavailableError(Exception):
    """Raised when the database is not configured or cannot be reached."""


class Database:
    """Process-scoped asyncpg pool shared by the record store and the queue."""

    def __init__(
        self,
        dsn: str | None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.dsn = dsn
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def get_pool(self) -> asyncpg.Pool:
        if not self.dsn:
            raise DatabaseUnavailableError("database URL is not configured")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=self.command_timeout_seconds,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise DatabaseUnavailableError("database unavailable") from exc
            return self._pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self.get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as exc:
            logger.warning("database connection error: %s", exc)
            raise DatabaseUnavailableError("database unavailable") from exc

    async def ping(self) -> None:
        async with self.connection() as conn:
            await conn.fetchval("select 1")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
