"""relkit - an async PostgreSQL query builder with relation-aware nested writes."""

from __future__ import annotations

from relkit.adapters import DbAdapter, PostgresAdapter, QueryResult
from relkit.base import Base
from relkit.compiler import CompiledQuery, compile_query
from relkit.config import DatabaseConfig
from relkit.errors import (
    AfterCommitError,
    CardinalityError,
    ConflictingIntent,
    ConflictingIntentError,
    DatabaseError,
    EmptyWriteSetError,
    InvalidNestedWriteError,
    MoreThanOneRowError,
    NotFoundError,
    QueryBuildError,
    QueryShapeError,
    RelationCycleError,
    RelkitError,
    UnknownRelationError,
    UnresolvedAliasError,
    UnsupportedBatchJoinCreateError,
    UnsupportedReturnShapeError,
)
from relkit.expressions import (
    And,
    BinaryOp,
    Case,
    Column,
    Compare,
    Exists,
    Func,
    In,
    Not,
    Or,
    Q,
    Raw,
    Value,
    and_,
    or_,
)
from relkit.fields import JSON, ForeignKey, Mapped, mapped_column
from relkit.mixins import TimestampsMixin
from relkit.query import Query, select
from relkit.relationships import (
    belongs_to,
    configure_relationships,
    has_and_belongs_to_many,
    has_many,
    has_one,
)
from relkit.session import AsyncSession, create_session, session_context

__version__ = "0.1.0"

__all__ = [
    # Core
    "create_session",
    "session_context",
    "AsyncSession",
    "DatabaseConfig",
    "DbAdapter",
    "PostgresAdapter",
    "QueryResult",
    "Query",
    "select",
    "compile_query",
    "CompiledQuery",
    # Model definition
    "Base",
    "Mapped",
    "mapped_column",
    "ForeignKey",
    "JSON",
    "TimestampsMixin",
    "belongs_to",
    "has_one",
    "has_many",
    "has_and_belongs_to_many",
    "configure_relationships",
    # Expressions
    "Q",
    "Column",
    "Value",
    "Raw",
    "Func",
    "BinaryOp",
    "Case",
    "Compare",
    "And",
    "Or",
    "Not",
    "In",
    "Exists",
    "and_",
    "or_",
    # Errors
    "RelkitError",
    "QueryBuildError",
    "UnresolvedAliasError",
    "UnknownRelationError",
    "RelationCycleError",
    "ConflictingIntent",
    "ConflictingIntentError",
    "EmptyWriteSetError",
    "UnsupportedReturnShapeError",
    "QueryShapeError",
    "UnsupportedBatchJoinCreateError",
    "InvalidNestedWriteError",
    "CardinalityError",
    "NotFoundError",
    "MoreThanOneRowError",
    "DatabaseError",
    "AfterCommitError",
]
