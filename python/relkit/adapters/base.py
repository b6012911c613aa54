"""Adapter interface consumed by sessions and transactions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

ISOLATION_LEVELS = frozenset({"SERIALIZABLE", "REPEATABLE READ", "READ COMMITTED", "READ UNCOMMITTED"})


@dataclass
class QueryResult:
    """Rows returned by a statement and the number of rows it affected."""

    rows: list[Mapping[str, Any]] = field(default_factory=list)
    row_count: int = 0


def begin_statement(
    isolation_level: str | None = None,
    read_only: bool | None = None,
    deferrable: bool | None = None,
) -> str:
    """Build the ``BEGIN`` statement for the given transaction options.

    Example:
        >>> begin_statement("SERIALIZABLE", read_only=True, deferrable=True)
        'BEGIN ISOLATION LEVEL SERIALIZABLE READ ONLY DEFERRABLE'
    """
    sql = "BEGIN"
    if isolation_level is not None:
        level = isolation_level.upper()
        if level not in ISOLATION_LEVELS:
            raise ValueError(f"Unknown isolation level: {isolation_level}")
        sql += f" ISOLATION LEVEL {level}"
    if read_only is not None:
        sql += " READ ONLY" if read_only else " READ WRITE"
    if deferrable is not None:
        sql += " DEFERRABLE" if deferrable else " NOT DEFERRABLE"
    return sql


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    Connection model:
    - acquire(): returns a connection from the pool
    - release(conn): returns the connection to the pool
    - shutdown(): closes the pool (application shutdown only)

    Transaction control is expressed as plain statements sent through
    :meth:`query`, so an adapter only has to implement statement execution.
    """

    @abstractmethod
    async def acquire(self) -> Any:
        """Acquire a connection."""
        ...

    @abstractmethod
    async def release(self, conn: Any) -> None:
        """Release a connection acquired with :meth:`acquire`."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Close every connection held by the adapter."""
        ...

    @abstractmethod
    async def query(self, conn: Any, sql: str, params: list[Any] | None = None) -> QueryResult:
        """Run one statement with ``$n`` placeholders on ``conn``."""
        ...

    # -------------------------------------------------------------------------
    # Transaction control
    # -------------------------------------------------------------------------

    async def begin(
        self,
        conn: Any,
        *,
        isolation_level: str | None = None,
        read_only: bool | None = None,
        deferrable: bool | None = None,
    ) -> None:
        await self.query(conn, begin_statement(isolation_level, read_only, deferrable))

    async def commit(self, conn: Any) -> None:
        await self.query(conn, "COMMIT")

    async def rollback(self, conn: Any) -> None:
        await self.query(conn, "ROLLBACK")

    async def savepoint(self, conn: Any, name: str) -> None:
        await self.query(conn, f'SAVEPOINT "{name}"')

    async def release_savepoint(self, conn: Any, name: str) -> None:
        await self.query(conn, f'RELEASE SAVEPOINT "{name}"')

    async def rollback_to_savepoint(self, conn: Any, name: str) -> None:
        await self.query(conn, f'ROLLBACK TO SAVEPOINT "{name}"')
