"""PostgreSQL adapter backed by an asyncpg connection pool."""

from __future__ import annotations

import asyncio
from typing import Any

import asyncpg

from relkit.adapters.base import DbAdapter, QueryResult


def _row_count(status: str | None) -> int:
    # Command tags look like "INSERT 0 3", "UPDATE 2", "SELECT 5", "BEGIN"
    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


class PostgresAdapter(DbAdapter):
    """Adapter running statements on an asyncpg pool.

    The pool is created lazily on first use.

    Example:
        >>> adapter = PostgresAdapter("postgresql://localhost/app", max_size=20)
        >>> conn = await adapter.acquire()
        >>> result = await adapter.query(conn, "SELECT * FROM users WHERE id = $1", [1])
    """

    def __init__(
        self,
        url: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float | None = None,
        schema: str | None = None,
        **pool_kwargs: Any,
    ) -> None:
        self.url = url
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.schema = schema
        self._pool_kwargs = pool_kwargs
        self._pool: asyncpg.Pool | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            async with self._lock:
                if self._pool is None:
                    kwargs = dict(self._pool_kwargs)
                    if self.schema:
                        settings = dict(kwargs.pop("server_settings", {}))
                        settings["search_path"] = self.schema
                        kwargs["server_settings"] = settings
                    self._pool = await asyncpg.create_pool(
                        self.url,
                        min_size=self.min_size,
                        max_size=self.max_size,
                        command_timeout=self.command_timeout,
                        **kwargs,
                    )
        assert self._pool is not None
        return self._pool

    async def acquire(self) -> asyncpg.Connection:
        pool = await self._get_pool()
        return await pool.acquire()

    async def release(self, conn: asyncpg.Connection) -> None:
        if self._pool is not None:
            await self._pool.release(conn)

    async def shutdown(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def query(self, conn: asyncpg.Connection, sql: str, params: list[Any] | None = None) -> QueryResult:
        stmt = await conn.prepare(sql)
        rows = await stmt.fetch(*(params or []))
        return QueryResult(rows=list(rows), row_count=_row_count(stmt.get_statusmsg()))
