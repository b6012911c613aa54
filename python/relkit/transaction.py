"""Transactions, savepoints and after-commit hooks.

The active transaction is held in a :class:`contextvars.ContextVar`, so every
query awaited inside ``async with session.transaction():`` runs on the same
connection without passing it around, while unrelated tasks get their own
transactions and connections.

Nested ``transaction()`` blocks use savepoints named after their depth::

    async with session.transaction():          # BEGIN
        async with session.transaction():      # SAVEPOINT "1"
            ...                                # RELEASE SAVEPOINT "1"
                                               # COMMIT
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, nullcontext
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from relkit.adapters.base import begin_statement
from relkit.errors import AfterCommitError
from relkit.log import QueryLogger

if TYPE_CHECKING:
    from relkit.adapters.base import DbAdapter

AfterCommitHook = Callable[[], Awaitable[Any] | Any]


@dataclass
class TransactionState:
    """State shared by every level of one transaction."""

    conn: Any
    depth: int = 0
    after_commit: list[AfterCommitHook] = field(default_factory=list)
    log: bool = False


class TransactionManager:
    """Opens transactions on an adapter and tracks the active one per context."""

    def __init__(self, adapter: DbAdapter, *, log_queries: bool = False, logger: QueryLogger | None = None) -> None:
        self.adapter = adapter
        self.log_queries = log_queries
        self.logger = logger or QueryLogger()
        self._current: ContextVar[TransactionState | None] = ContextVar(
            f"relkit_transaction_{id(self)}", default=None
        )

    def current(self) -> TransactionState | None:
        return self._current.get()

    def in_transaction(self) -> bool:
        return self._current.get() is not None

    def _logged(self, state: TransactionState, sql: str) -> Any:
        return self.logger.statement(sql, []) if state.log else nullcontext()

    @asynccontextmanager
    async def transaction(
        self,
        isolation_level: str | None = None,
        *,
        read_only: bool | None = None,
        deferrable: bool | None = None,
        log: bool | None = None,
    ) -> AsyncIterator[TransactionState]:
        """Run a block in a transaction, or in a savepoint when one is active.

        Leaving the block normally commits (or releases the savepoint);
        leaving it with an exception rolls back (or rolls back to the
        savepoint) and re-raises. Options only apply to the outermost level.

        Raises:
            AfterCommitError: If after-commit hooks failed; the data is committed
        """
        state = self._current.get()
        if state is not None:
            async with self._savepoint(state) as nested:
                yield nested
            return

        conn = await self.adapter.acquire()
        state = TransactionState(conn, log=self.log_queries if log is None else log)
        token = self._current.set(state)
        try:
            begin = begin_statement(isolation_level, read_only, deferrable)
            with self._logged(state, begin):
                await self.adapter.begin(
                    conn, isolation_level=isolation_level, read_only=read_only, deferrable=deferrable
                )
            try:
                yield state
            except BaseException:
                with self._logged(state, "ROLLBACK"):
                    await self.adapter.rollback(conn)
                raise
            with self._logged(state, "COMMIT"):
                await self.adapter.commit(conn)
        finally:
            self._current.reset(token)
            await self.adapter.release(conn)

        await run_after_commit(state.after_commit)

    @asynccontextmanager
    async def _savepoint(self, state: TransactionState) -> AsyncIterator[TransactionState]:
        state.depth += 1
        depth = state.depth
        name = str(depth)
        hooks_before = len(state.after_commit)
        try:
            with self._logged(state, f'SAVEPOINT "{name}"'):
                await self.adapter.savepoint(state.conn, name)
            try:
                yield state
            except BaseException:
                with self._logged(state, f'ROLLBACK TO SAVEPOINT "{name}"'):
                    await self.adapter.rollback_to_savepoint(state.conn, name)
                # hooks of rolled back work never run
                del state.after_commit[hooks_before:]
                raise
            with self._logged(state, f'RELEASE SAVEPOINT "{name}"'):
                await self.adapter.release_savepoint(state.conn, name)
        finally:
            state.depth = depth - 1

    async def after_commit(self, hook: AfterCommitHook) -> None:
        """Run ``hook`` after the active transaction commits, or now outside one."""
        state = self._current.get()
        if state is not None:
            state.after_commit.append(hook)
            return
        result = hook()
        if inspect.isawaitable(result):
            await result


async def run_after_commit(hooks: list[AfterCommitHook], result: Any = None) -> None:
    """Run every hook, collecting failures into one :class:`AfterCommitError`."""
    if not hooks:
        return
    errors: list[BaseException] = []
    pending: list[Awaitable[Any]] = []
    for hook in hooks:
        try:
            outcome = hook()
        except Exception as exc:
            errors.append(exc)
            continue
        if inspect.isawaitable(outcome):
            pending.append(outcome)

    for outcome in await asyncio.gather(*pending, return_exceptions=True):
        if isinstance(outcome, BaseException):
            errors.append(outcome)
    if errors:
        raise AfterCommitError(errors, result)
