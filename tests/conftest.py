"""Pytest configuration and fixtures."""

import os
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from relkit import AsyncSession, create_session
from relkit.adapters import DbAdapter, QueryResult

_CONTROL = ("BEGIN", "COMMIT", "ROLLBACK", "SAVEPOINT", "RELEASE")


@dataclass
class Call:
    sql: str
    params: list[Any]
    conn: Any


@dataclass
class RecordingAdapter(DbAdapter):
    """Adapter that records statements and answers with scripted results.

    Transaction control statements always succeed with an empty result;
    every other statement consumes the next scripted result (an empty one
    when the script is exhausted).
    """

    results: list[QueryResult] = field(default_factory=list)
    calls: list[Call] = field(default_factory=list)
    fail_on: str | None = None
    acquired: int = 0
    released: int = 0
    closed: bool = False

    def add(self, rows: list[dict[str, Any]] | None = None, row_count: int | None = None) -> None:
        rows = rows or []
        self.results.append(QueryResult(rows=rows, row_count=len(rows) if row_count is None else row_count))

    @property
    def sql(self) -> list[str]:
        return [call.sql for call in self.calls]

    @property
    def params(self) -> list[list[Any]]:
        return [call.params for call in self.calls]

    async def acquire(self) -> Any:
        self.acquired += 1
        return object()

    async def release(self, conn: Any) -> None:
        self.released += 1

    async def shutdown(self) -> None:
        self.closed = True

    async def query(self, conn: Any, sql: str, params: list[Any] | None = None) -> QueryResult:
        self.calls.append(Call(sql, list(params or []), conn))
        if self.fail_on is not None and self.fail_on in sql:
            raise RuntimeError(f"statement failed: {sql}")
        if sql.startswith(_CONTROL) or not self.results:
            return QueryResult()
        return self.results.pop(0)


@pytest.fixture
def adapter():
    return RecordingAdapter()


@pytest.fixture
def session(adapter):
    return AsyncSession(adapter)


@pytest_asyncio.fixture
async def pg_session():
    """Session on a real PostgreSQL database.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    session = create_session(url)
    yield session
    await session.close()
