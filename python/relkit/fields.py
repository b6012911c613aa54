"""Column declarations: database names, codecs, defaults and foreign keys."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Generic, TypeVar, Union
from uuid import UUID

T = TypeVar("T")


class JSON:
    """Marks a column holding JSON.

    Values are dumped before binding and parsed when read, including inside
    relation sub-selects, unless the column has its own ``encode``/``decode``:
        >>> settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    """


class Mapped(Generic[T]):
    """Annotation for model attributes stored in a column.

    The inner type drives nullability (``Mapped[str | None]``) and the cast
    type of bound parameters.
    """


@dataclass(frozen=True)
class ForeignKey:
    """Reference to ``"table.column"``, written with database names.

    belongs_to and has_many infer their keys from these references:
        >>> chat_id: Mapped[int] = mapped_column(ForeignKey("chats.id"))
    """

    target: str

    @property
    def table(self) -> str:
        return self.target.partition(".")[0]

    @property
    def column(self) -> str:
        return self.target.partition(".")[2] or "id"


def _load_json(value: Any) -> Any:
    # nested results already arrive parsed
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


@dataclass
class ColumnInfo:
    """Metadata of one model column.

    ``key`` is the attribute name used by application code, ``name`` the
    column name in the database. They differ when ``mapped_column(name=...)``
    renames the column.
    """

    key: str | None = None
    name: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    default: Any = None
    onupdate: Callable[[], Any] | None = None
    max_length: int | None = None
    foreign_key: ForeignKey | None = None
    is_json: bool = False
    db_type: str | None = None
    encode: Callable[[Any], Any] | None = None
    decode: Callable[[Any], Any] | None = None

    @property
    def db_name(self) -> str:
        return self.name or self.key or ""

    @property
    def renamed(self) -> bool:
        return self.name is not None and self.name != self.key

    @property
    def has_default(self) -> bool:
        return self.default is not None

    def make_default(self) -> Any:
        """Produce the runtime default, calling it when it is callable."""
        return self.default() if callable(self.default) else self.default

    def encode_value(self, value: Any) -> Any:
        """Convert an application value to the value bound as a parameter."""
        if value is None:
            return None
        if self.encode is not None:
            return self.encode(value)
        if self.is_json:
            return json.dumps(value)
        return value

    def decode_value(self, value: Any) -> Any:
        """Convert a value read from the database to its application value."""
        if value is None:
            return None
        if self.decode is not None:
            return self.decode(value)
        if self.is_json:
            return _load_json(value)
        return value

    def sql_type(self) -> str:
        """PostgreSQL type used when a parameter needs an explicit cast."""
        if self.db_type:
            return self.db_type
        if self.is_json:
            return "jsonb"

        python_type = self.python_type
        origin = getattr(python_type, "__origin__", None)
        if origin is Union:
            args = getattr(python_type, "__args__", ())
            non_none = [a for a in args if a is not type(None)]
            python_type = non_none[0] if non_none else str

        if python_type is dict or python_type is list:
            return "jsonb"
        if python_type is bool:
            return "boolean"
        if python_type is int:
            return "integer"
        if python_type is float:
            return "double precision"
        if python_type is str:
            return f"varchar({self.max_length})" if self.max_length else "text"
        if python_type is bytes:
            return "bytea"
        if python_type is datetime:
            return "timestamptz"
        if python_type is date:
            return "date"
        if python_type is time:
            return "time"
        if python_type is UUID:
            return "uuid"
        return "text"


def mapped_column(
    marker: type | ForeignKey | None = None,
    /,
    *,
    name: str | None = None,
    primary_key: bool = False,
    nullable: bool = False,
    default: Any = None,
    onupdate: Callable[[], Any] | None = None,
    max_length: int | None = None,
    db_type: str | None = None,
    encode: Callable[[Any], Any] | None = None,
    decode: Callable[[Any], Any] | None = None,
) -> Any:
    """Declare a column on a model.

    Args:
        marker: ``ForeignKey(...)`` or ``JSON``
        name: Database column name when it differs from the attribute name
        primary_key: Part of the primary key; never nullable
        nullable: Whether NULL is allowed; also inferred from ``Mapped[X | None]``
        default: Value or zero-argument callable used on insert
        onupdate: Zero-argument callable whose value is written on every update
        max_length: Length of ``varchar`` casts
        db_type: PostgreSQL type name used for casts
        encode: Converts application values before binding
        decode: Converts values read from the database

    Example:
        >>> author_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), name="authorId")
        >>> updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
    """
    return ColumnInfo(
        name=name,
        primary_key=primary_key,
        nullable=nullable and not primary_key,
        default=default,
        onupdate=onupdate,
        max_length=max_length,
        foreign_key=marker if isinstance(marker, ForeignKey) else None,
        is_json=isinstance(marker, type) and issubclass(marker, JSON),
        db_type=db_type,
        encode=encode,
        decode=decode,
    )
