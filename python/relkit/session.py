"""Async session: queries, execution and transactions on one adapter."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager, nullcontext
from typing import TYPE_CHECKING, Any

from relkit.adapters.base import DbAdapter, QueryResult
from relkit.adapters.postgres import PostgresAdapter
from relkit.config import DatabaseConfig
from relkit.errors import DatabaseError, RelkitError
from relkit.log import QueryLogger
from relkit.query import Query
from relkit.relationships import configure_relationships, get_model
from relkit.result import apply_shape, returning_query
from relkit.transaction import AfterCommitHook, TransactionManager, TransactionState

if TYPE_CHECKING:
    from relkit.base import Base


class AsyncSession:
    """Entry point for building and running queries.

    Queries are bound to the session and run when awaited:
        >>> users = await session.query(User).where(age__gt=18)
        >>> user = await session.query(User).create({"name": "Alice"})

    Statements awaited inside a transaction block share its connection:
        >>> async with session.transaction():
        ...     await session.query(User).find(1).decrement(balance=10)
        ...     await session.query(User).find(2).increment(balance=10)
    """

    def __init__(
        self,
        adapter: DbAdapter,
        *,
        tables: list[type[Base]] | None = None,
        config: DatabaseConfig | None = None,
        log_queries: bool | None = None,
    ) -> None:
        self.adapter = adapter
        self.config = config
        if log_queries is None:
            log_queries = config.log_queries if config is not None else False
        self.logger = QueryLogger()
        self.transactions = TransactionManager(adapter, log_queries=log_queries, logger=self.logger)
        self.tables: dict[str, type[Base]] = {}
        for model in tables or []:
            self.tables[model.__tablename__] = model
        if tables:
            configure_relationships(tables)

    async def __aenter__(self) -> AsyncSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # ========== Query Construction ==========

    def query(self, model: type[Base]) -> Query:
        """Start a query on a model.

        Example:
            >>> await session.query(User).where(name="Alice").take()
        """
        return Query.for_model(model, session=self)

    def table(self, name: str) -> Query:
        """Start a query on a registered table, or on a bare table without a model."""
        model = self.tables.get(name) or get_model(name)
        if model is not None:
            return Query.for_model(model, session=self)
        return Query.for_table(name, session=self)

    # ========== Transactions ==========

    def transaction(
        self,
        isolation_level: str | None = None,
        *,
        read_only: bool | None = None,
        deferrable: bool | None = None,
        log: bool | None = None,
    ) -> AbstractAsyncContextManager[TransactionState]:
        """Run a block in a transaction; nested blocks use savepoints.

        Example:
            >>> async with session.transaction("SERIALIZABLE"):
            ...     await session.query(User).create({"name": "Alice"})
        """
        return self.transactions.transaction(
            isolation_level, read_only=read_only, deferrable=deferrable, log=log
        )

    def in_transaction(self) -> bool:
        return self.transactions.in_transaction()

    async def after_commit(self, hook: AfterCommitHook) -> None:
        """Run ``hook`` after the active transaction commits (immediately outside one)."""
        await self.transactions.after_commit(hook)

    # ========== Execution ==========

    async def execute(self, query: Query) -> Any:
        """Run a query and return its result in the query's shape.

        Writes without a select list or ``returning`` return the affected
        row count.
        """
        result = await self.run_query(query)
        if query.write is not None:
            if query.returning_columns is None and not query.selects:
                return result.row_count
            return apply_shape(returning_query(query), result.rows, result.row_count)
        return apply_shape(query, result.rows, result.row_count)

    async def run_query(self, query: Query) -> QueryResult:
        """Compile and run a query, returning the raw adapter result."""
        sql, params = query.to_sql()
        return await self._run(sql, params, table=query.table)

    async def execute_raw(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        """Execute raw SQL and return results."""
        return await self._run(sql, params or [])

    async def _run(self, sql: str, params: list[Any], *, table: str | None = None) -> QueryResult:
        state = self.transactions.current()
        log = state.log if state is not None else self.transactions.log_queries
        logged = self.logger.statement(sql, params) if log else nullcontext()

        conn = state.conn if state is not None else await self.adapter.acquire()
        try:
            with logged:
                try:
                    return await self.adapter.query(conn, sql, params)
                except RelkitError:
                    raise
                except Exception as exc:
                    raise DatabaseError(str(exc), sql=sql, params=params, table=table) from exc
        finally:
            if state is None:
                await self.adapter.release(conn)

    async def close(self) -> None:
        """Close the adapter's connections."""
        await self.adapter.shutdown()


def create_session(
    target: DatabaseConfig | DbAdapter | str,
    *,
    tables: list[type[Base]] | None = None,
    **kwargs: Any,
) -> AsyncSession:
    """Create a session from a config, a database URL or an adapter.

    Example:
        >>> session = create_session("postgresql://localhost/app", tables=[User, Message])
        >>> session = create_session(DatabaseConfig.from_env())
    """
    if isinstance(target, DbAdapter):
        return AsyncSession(target, tables=tables, **kwargs)

    config = DatabaseConfig.from_url(target) if isinstance(target, str) else target
    adapter = PostgresAdapter(
        config.url,
        min_size=config.min_connections,
        max_size=config.max_connections,
        command_timeout=config.command_timeout,
        schema=config.schema,
    )
    return AsyncSession(adapter, tables=tables, config=config, **kwargs)


@asynccontextmanager
async def session_context(
    target: DatabaseConfig | DbAdapter | str,
    **kwargs: Any,
) -> AsyncIterator[AsyncSession]:
    """Create a session whose block runs in one transaction.

    Commits on success, rolls back on error and closes the session.

    Example:
        >>> async with session_context(url, tables=[User]) as session:
        ...     await session.query(User).create({"name": "Alice"})
    """
    session = create_session(target, **kwargs)
    try:
        async with session.transaction():
            yield session
    finally:
        await session.close()
