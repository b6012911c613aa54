"""Exception hierarchy for relkit.

Errors fall in three groups:

- build errors (``QueryBuildError`` and subclasses) signal a defect in how a
  query was put together and are never retried;
- cardinality errors (``NotFoundError``, ``MoreThanOneRowError``) are raised
  when a query expecting one row gets zero or several;
- ``DatabaseError`` wraps whatever the adapter raised, together with the SQL
  that caused it.
"""

from __future__ import annotations

from typing import Any


class RelkitError(Exception):
    """Base class for every error raised by relkit."""


# ========== Build errors ==========


class QueryBuildError(RelkitError):
    """A query was constructed in a way that can never produce valid SQL."""


class UnresolvedAliasError(QueryBuildError):
    """A column reference points at an alias that is not in scope."""

    def __init__(self, alias: str, column: str | None = None, in_scope: list[str] | None = None) -> None:
        self.alias = alias
        self.column = column
        self.in_scope = in_scope or []
        ref = f"{alias}.{column}" if column else alias
        message = f"Unresolved alias in column reference '{ref}'"
        if self.in_scope:
            message += f" (aliases in scope: {', '.join(self.in_scope)})"
        super().__init__(message)


class UnknownRelationError(QueryBuildError):
    """A relation name is not declared on the table it is used with."""

    def __init__(self, table: str, relation: str) -> None:
        self.table = table
        self.relation = relation
        super().__init__(f"Relation '{relation}' is not defined on table '{table}'")


class RelationCycleError(QueryBuildError):
    """A ``through`` relation chain loops back onto itself."""

    def __init__(self, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(f"Cyclic through relation: {' -> '.join(chain)}")


class ConflictingIntent(QueryBuildError):
    """A query already carries a write intent and a second one was requested."""

    def __init__(self, table: str, existing: str, attempted: str) -> None:
        self.table = table
        self.existing = existing
        self.attempted = attempted
        super().__init__(
            f"Query on '{table}' is already an {existing}, cannot turn it into an {attempted}"
        )


ConflictingIntentError = ConflictingIntent


class EmptyWriteSetError(QueryBuildError):
    """An update has nothing to set."""

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"Update on '{table}' has no assignments")


class UnsupportedReturnShapeError(QueryBuildError):
    """A sub-select was requested with a result shape that cannot be embedded."""

    def __init__(self, shape: str) -> None:
        self.shape = shape
        super().__init__(f"Cannot embed a sub-select returning '{shape}'")


class QueryShapeError(QueryBuildError):
    """An operation is not valid for the result shape of the query."""


class UnsupportedBatchJoinCreateError(QueryBuildError):
    """Several has-and-belongs-to-many records were created in one call."""

    def __init__(self, table: str, relation: str) -> None:
        self.table = table
        self.relation = relation
        super().__init__(
            f"Creating multiple `{relation}` records of '{table}' through a "
            "has-and-belongs-to-many relation in one call is not supported"
        )


class InvalidNestedWriteError(QueryBuildError):
    """A nested relation operation is not allowed for the relation."""

    def __init__(self, table: str, relation: str, operation: str, reason: str) -> None:
        self.table = table
        self.relation = relation
        self.operation = operation
        super().__init__(f"Cannot {operation} '{table}.{relation}': {reason}")


# ========== Cardinality errors ==========


class CardinalityError(RelkitError):
    """Base class for errors about the number of returned rows."""

    def __init__(self, message: str, *, table: str | None = None, sql: str | None = None) -> None:
        self.table = table
        self.sql = sql
        super().__init__(message)


class NotFoundError(CardinalityError):
    """A query expected exactly one row and found none."""

    def __init__(self, table: str | None = None, *, sql: str | None = None) -> None:
        target = f" in '{table}'" if table else ""
        super().__init__(f"Record is not found{target}", table=table, sql=sql)


class MoreThanOneRowError(CardinalityError):
    """A query expected at most one row and found several."""

    def __init__(self, table: str | None = None, *, count: int | None = None, sql: str | None = None) -> None:
        self.count = count
        target = f" in '{table}'" if table else ""
        found = f", got {count}" if count is not None else ""
        super().__init__(f"Expected at most one row{target}{found}", table=table, sql=sql)


# ========== Runtime errors ==========


class DatabaseError(RelkitError):
    """The database rejected a statement.

    The adapter exception is available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        sql: str,
        params: list[Any],
        table: str | None = None,
    ) -> None:
        self.sql = sql
        self.params = params
        self.table = table
        target = f" on '{table}'" if table else ""
        super().__init__(f"{message}{target}\nSQL: {sql}")


class AfterCommitError(RelkitError):
    """One or more after-commit hooks failed after the data was committed."""

    def __init__(self, errors: list[BaseException], result: Any = None) -> None:
        self.errors = errors
        self.result = result
        details = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"{len(errors)} after-commit hook(s) failed: {details}")
