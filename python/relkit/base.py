"""Declarative base for table models."""

from __future__ import annotations

import inspect
import types
import typing
from collections.abc import Callable
from dataclasses import replace
from typing import Any, ClassVar

from relkit.fields import ColumnInfo, Mapped
from relkit.query import HOOK_EVENTS
from relkit.relationships import Relation, register_model


class ModelMeta(type):
    """Collects columns and relations of a model class and registers it."""

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)
        if not bases:
            return cls

        cls.__tablename__ = namespace.get("__tablename__") or f"{name.lower()}s"  # type: ignore[attr-defined]
        cls.__schema__ = getattr(cls, "__schema__", None)  # type: ignore[attr-defined]
        cls.__hooks__ = dict(getattr(cls, "__hooks__", {}))  # type: ignore[attr-defined]

        hints = _collect_hints(cls)
        declared = dict(namespace)
        # columns inherited from mixins and parent models
        for klass in cls.__mro__[1:]:
            for key, value in vars(klass).items():
                if isinstance(value, ColumnInfo):
                    declared.setdefault(key, value)

        columns: dict[str, ColumnInfo] = {}
        relationships: dict[str, Relation] = {}
        for key, value in declared.items():
            if key.startswith("_"):
                continue
            if isinstance(value, ColumnInfo):
                columns[key] = _apply_hint(replace(value, key=key), hints.get(key))
            elif isinstance(value, Relation):
                relationships[key] = value.bind(cls, key)  # type: ignore[arg-type]
                delattr(cls, key)

        for key, hint in hints.items():
            if key.startswith("_") or key in columns or key in relationships:
                continue
            if typing.get_origin(hint) is Mapped:
                columns[key] = _apply_hint(ColumnInfo(key=key), hint)

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]
        cls.__primary_key__ = tuple(k for k, c in columns.items() if c.primary_key)  # type: ignore[attr-defined]
        cls.__relationships_resolved__ = False  # type: ignore[attr-defined]

        register_model(cls)  # type: ignore[arg-type]
        return cls

    def _resolve_relationships(cls) -> None:
        """Resolve relation targets and keys once all models are defined."""
        if cls.__relationships_resolved__:  # type: ignore[attr-defined]
            return
        from relkit.relationships import resolve_relationships

        resolve_relationships(cls)  # type: ignore[arg-type]


def _collect_hints(cls: type) -> dict[str, Any]:
    """Resolve the annotations of ``cls`` and its bases.

    Each class is resolved in its own module. A class whose annotations
    reference names not defined yet (forward references to other models)
    is skipped; relations carry their target explicitly.
    """
    localns = {"Mapped": Mapped, "ClassVar": ClassVar, "Any": Any}
    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        own = inspect.get_annotations(klass)
        if not own:
            continue
        try:
            resolved = typing.get_type_hints(klass, localns=localns)
        except NameError:
            continue
        hints.update((attr_name, resolved[attr_name]) for attr_name in own if attr_name in resolved)
    return hints


def _extract_mapped_type(hint: Any) -> tuple[type | None, bool]:
    """Extract the inner type from ``Mapped[T]`` and whether it is optional."""
    args = typing.get_args(hint)
    if not args:
        return (hint if isinstance(hint, type) else None), False

    inner = args[0]
    nullable = False
    if typing.get_origin(inner) in (typing.Union, types.UnionType):
        non_none = [a for a in typing.get_args(inner) if a is not type(None)]
        nullable = len(non_none) < len(typing.get_args(inner))
        inner = non_none[0] if len(non_none) == 1 else None

    origin = typing.get_origin(inner)
    if origin is not None:
        inner = origin
    return (inner if isinstance(inner, type) else None), nullable


def _apply_hint(column: ColumnInfo, hint: Any) -> ColumnInfo:
    if hint is None or typing.get_origin(hint) is not Mapped:
        return column
    python_type, nullable = _extract_mapped_type(hint)
    column.python_type = python_type
    if nullable and not column.primary_key:
        column.nullable = True
    if python_type is dict or python_type is list:
        column.is_json = True
    return column


class Base(metaclass=ModelMeta):
    """Base class for all table models.

    Models describe tables; queries return plain dicts keyed by column keys
    and relation names.

    Example:
        >>> class Message(Base):
        ...     __tablename__ = "messages"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     chat_id: Mapped[int] = mapped_column(ForeignKey("chats.id"))
        ...     text: Mapped[str]
        ...     chat = belongs_to("Chat")
    """

    __tablename__: ClassVar[str]
    __schema__: ClassVar[str | None] = None
    __hooks__: ClassVar[dict[str, list[Any]]] = {}
    __columns__: ClassVar[dict[str, ColumnInfo]]
    __relationships__: ClassVar[dict[str, Relation]]
    __primary_key__: ClassVar[tuple[str, ...]]
    __relationships_resolved__: ClassVar[bool]

    @classmethod
    def column_by_db_name(cls, db_name: str) -> ColumnInfo | None:
        """Find a column by its database name."""
        for column in cls.__columns__.values():
            if column.db_name == db_name:
                return column
        return None

    @classmethod
    def add_hook(cls, event: str, hook: Callable[..., Any]) -> Callable[..., Any]:
        """Run ``hook`` for ``event`` on every query started from this model.

        Subclasses inherit the hooks registered on their parents at class
        creation; registering on a subclass never changes the parent.

        Example:
            >>> User.add_hook("before_create", lambda rows: rows[0].setdefault("email", None))
        """
        if event not in HOOK_EVENTS:
            raise ValueError(f"Unknown hook event '{event}'")
        cls.__hooks__[event] = [*cls.__hooks__.get(event, ()), hook]
        return hook
