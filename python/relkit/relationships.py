"""Relation definitions between table models.

Every relation kind answers two questions:

- ``join_query(parent_alias, child_alias)``: the condition correlating a
  child row with a parent row, usable in ``JOIN ... ON``, ``WHERE EXISTS``
  and correlated sub-selects;
- ``method_query(query, record)``: a query for the related rows of one
  concrete parent record.

Relations are declared on models with :func:`belongs_to`, :func:`has_one`,
:func:`has_many` and :func:`has_and_belongs_to_many`::

    class User(Base):
        __tablename__ = "users"
        id: Mapped[int] = mapped_column(primary_key=True)

        profile = has_one("Profile")
        messages = has_many("Message", foreign_key="author_id")
        roles = has_and_belongs_to_many("Role", join_table="user_roles")
        chats = has_many(through="messages", source="chat")
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, ClassVar

from relkit.errors import QueryBuildError, RelationCycleError, UnknownRelationError
from relkit.expressions import Column, Compare, Condition, Exists, Raw, combine
from relkit.query import Query

if TYPE_CHECKING:
    from relkit.base import Base


# Global model registry - maps table names and class names to model classes
_model_registry: dict[str, type[Base]] = {}


def register_model(model_cls: type[Base]) -> None:
    """Register a model class for relationship resolution."""
    _model_registry[model_cls.__tablename__] = model_cls
    _model_registry[model_cls.__name__] = model_cls


def get_model(name: str) -> type[Base] | None:
    """Get a model class by table name or class name."""
    return _model_registry.get(name)


def _keys(value: str | tuple[str, ...] | list[str] | None) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _singular(table: str) -> str:
    return table[:-1] if table.endswith("s") else table


def _key_for_db_name(model: type[Base], db_name: str) -> str:
    column = model.column_by_db_name(db_name)
    return column.key if column is not None and column.key else db_name


def _correlate(
    left_alias: str, left_keys: tuple[str, ...], right_alias: str, right_keys: tuple[str, ...]
) -> Condition:
    return combine(
        "AND",
        [
            Compare(Column(left, left_alias), "=", Column(right, right_alias))
            for left, right in zip(left_keys, right_keys, strict=True)
        ],
    )


def _literal(alias: str | None, keys: tuple[str, ...], record: dict[str, Any], source: tuple[str, ...]) -> dict[str, Any]:
    prefix = f"{alias}." if alias else ""
    return {f"{prefix}{key}": record.get(src) for key, src in zip(keys, source, strict=True)}


@dataclass
class Relation:
    """Common state of every relation kind."""

    target: str | type[Base] | None = None
    name: str | None = None
    owner: type[Base] | None = field(default=None, repr=False)
    resolved: bool = field(default=False, repr=False)

    kind: ClassVar[str] = ""
    many: ClassVar[bool] = False

    def bind(self, owner: type[Base], name: str) -> Relation:
        return replace(self, owner=owner, name=name)

    @property
    def owner_model(self) -> type[Base]:
        if self.owner is None:
            raise QueryBuildError(f"Relation '{self.name}' is not attached to a model")
        return self.owner

    @property
    def target_model(self) -> type[Base]:
        target = self.target
        if isinstance(target, str):
            model = get_model(target)
            if model is None:
                raise UnknownRelationError(
                    self.owner_model.__tablename__, f"{self.name} (unknown table '{target}')"
                )
            return model
        if target is None:
            raise UnknownRelationError(self.owner_model.__tablename__, str(self.name))
        return target

    def resolve(self, stack: tuple[str, ...] = ()) -> None:
        """Fill in inferred keys; called once when the owner's relations are resolved."""
        self.resolved = True

    def join_query(self, parent_alias: str, child_alias: str) -> Condition:
        raise NotImplementedError

    def method_query(self, query: Query, record: dict[str, Any]) -> Query:
        raise NotImplementedError

    def default_shape(self, query: Query) -> Query:
        if self.many:
            return query
        return query.take_optional()


@dataclass
class BelongsTo(Relation):
    """The owner row holds the foreign key: ``owner.foreign_key = target.primary_key``."""

    foreign_key: str | tuple[str, ...] | None = None
    primary_key: str | tuple[str, ...] | None = None

    kind: ClassVar[str] = "belongs_to"
    many: ClassVar[bool] = False

    def resolve(self, stack: tuple[str, ...] = ()) -> None:
        target = self.target_model
        owner = self.owner_model
        fk = _keys(self.foreign_key)
        pk = _keys(self.primary_key)
        if fk is None:
            for key, column in owner.__columns__.items():
                if column.foreign_key and column.foreign_key.table == target.__tablename__:
                    fk = (key,)
                    if pk is None:
                        pk = (_key_for_db_name(target, column.foreign_key.column),)
                    break
        if fk is None:
            raise QueryBuildError(
                f"Cannot infer the foreign key of '{owner.__tablename__}.{self.name}'"
            )
        self.foreign_key = fk
        self.primary_key = pk or target.__primary_key__
        self.resolved = True

    @property
    def foreign_keys(self) -> tuple[str, ...]:
        return _keys(self.foreign_key) or ()

    @property
    def primary_keys(self) -> tuple[str, ...]:
        return _keys(self.primary_key) or ()

    @property
    def nullable(self) -> bool:
        columns = self.owner_model.__columns__
        return all(columns[key].nullable for key in self.foreign_keys if key in columns)

    def join_query(self, parent_alias: str, child_alias: str) -> Condition:
        return _correlate(child_alias, self.primary_keys, parent_alias, self.foreign_keys)

    def method_query(self, query: Query, record: dict[str, Any]) -> Query:
        filters = _literal(query.alias, self.primary_keys, record, self.foreign_keys)
        return query.where(filters).take_optional()


@dataclass
class HasMany(Relation):
    """The target rows hold the foreign key: ``target.foreign_key = owner.primary_key``."""

    foreign_key: str | tuple[str, ...] | None = None
    primary_key: str | tuple[str, ...] | None = None

    kind: ClassVar[str] = "has_many"
    many: ClassVar[bool] = True

    def resolve(self, stack: tuple[str, ...] = ()) -> None:
        target = self.target_model
        owner = self.owner_model
        fk = _keys(self.foreign_key)
        pk = _keys(self.primary_key)
        if fk is None:
            for key, column in target.__columns__.items():
                if column.foreign_key and column.foreign_key.table == owner.__tablename__:
                    fk = (key,)
                    if pk is None:
                        pk = (_key_for_db_name(owner, column.foreign_key.column),)
                    break
        if fk is None:
            raise QueryBuildError(
                f"Cannot infer the foreign key of '{owner.__tablename__}.{self.name}'"
            )
        self.foreign_key = fk
        self.primary_key = pk or owner.__primary_key__
        self.resolved = True

    @property
    def foreign_keys(self) -> tuple[str, ...]:
        return _keys(self.foreign_key) or ()

    @property
    def primary_keys(self) -> tuple[str, ...]:
        return _keys(self.primary_key) or ()

    @property
    def nullable(self) -> bool:
        columns = self.target_model.__columns__
        return all(columns[key].nullable for key in self.foreign_keys if key in columns)

    def join_query(self, parent_alias: str, child_alias: str) -> Condition:
        return _correlate(child_alias, self.foreign_keys, parent_alias, self.primary_keys)

    def method_query(self, query: Query, record: dict[str, Any]) -> Query:
        filters = _literal(query.alias, self.foreign_keys, record, self.primary_keys)
        return self.default_shape(query.where(filters))


@dataclass
class HasOne(HasMany):
    kind: ClassVar[str] = "has_one"
    many: ClassVar[bool] = False


@dataclass
class HasAndBelongsToMany(Relation):
    """Rows are linked through a join table holding both foreign keys.

    ``foreign_key`` is the join table column pointing at the owner's
    ``primary_key``; ``association_foreign_key`` is the join table column
    pointing at the target's ``association_primary_key``.
    """

    join_table: str | None = None
    foreign_key: str | tuple[str, ...] | None = None
    primary_key: str | tuple[str, ...] | None = None
    association_foreign_key: str | tuple[str, ...] | None = None
    association_primary_key: str | tuple[str, ...] | None = None

    kind: ClassVar[str] = "has_and_belongs_to_many"
    many: ClassVar[bool] = True

    def resolve(self, stack: tuple[str, ...] = ()) -> None:
        owner = self.owner_model
        target = self.target_model
        if self.join_table is None:
            raise QueryBuildError(f"Relation '{owner.__tablename__}.{self.name}' needs a join_table")
        # Join table columns default to {table}_id, e.g. users -> user_id
        self.primary_key = _keys(self.primary_key) or owner.__primary_key__
        self.association_primary_key = _keys(self.association_primary_key) or target.__primary_key__
        self.foreign_key = _keys(self.foreign_key) or (f"{_singular(owner.__tablename__)}_id",)
        self.association_foreign_key = _keys(self.association_foreign_key) or (
            f"{_singular(target.__tablename__)}_id",
        )
        self.resolved = True

    @property
    def foreign_keys(self) -> tuple[str, ...]:
        return _keys(self.foreign_key) or ()

    @property
    def primary_keys(self) -> tuple[str, ...]:
        return _keys(self.primary_key) or ()

    @property
    def association_foreign_keys(self) -> tuple[str, ...]:
        return _keys(self.association_foreign_key) or ()

    @property
    def association_primary_keys(self) -> tuple[str, ...]:
        return _keys(self.association_primary_key) or ()

    def join_table_query(self, session: Any = None) -> Query:
        return Query.for_table(str(self.join_table), session=session, schema=self.owner_model.__schema__)

    def join_query(self, parent_alias: str, child_alias: str) -> Condition:
        jt = str(self.join_table)
        inner = self.join_table_query()._mutate(
            selects=((None, Raw("1")),),
            conditions=(
                _correlate(jt, self.association_foreign_keys, child_alias, self.association_primary_keys),
                _correlate(jt, self.foreign_keys, parent_alias, self.primary_keys),
            ),
            outer_aliases=(parent_alias, child_alias),
        )
        return Exists(inner)

    def method_query(self, query: Query, record: dict[str, Any]) -> Query:
        jt = str(self.join_table)
        inner = self.join_table_query()._mutate(
            selects=((None, Raw("1")),),
            conditions=(
                _correlate(jt, self.association_foreign_keys, str(query.alias), self.association_primary_keys),
            ),
            outer_aliases=(str(query.alias),),
        )
        inner = inner.where(_literal(jt, self.foreign_keys, record, self.primary_keys))
        return query.where(Exists(inner))


@dataclass
class Through(Relation):
    """A relation reached through another relation of the owner.

    ``through`` names a relation on the owner, ``source`` a relation on that
    relation's target. Either may itself be a through relation.
    """

    through: str | None = None
    source: str | None = None
    through_relation: Relation | None = field(default=None, repr=False)
    source_relation: Relation | None = field(default=None, repr=False)

    kind: ClassVar[str] = "through"

    @property
    def many(self) -> bool:  # type: ignore[override]
        return bool(
            (self.through_relation and self.through_relation.many)
            or (self.source_relation and self.source_relation.many)
        )

    @property
    def target_model(self) -> type[Base]:
        if self.source_relation is None:
            self.resolve()
        assert self.source_relation is not None
        return self.source_relation.target_model

    def resolve(self, stack: tuple[str, ...] = ()) -> None:
        owner = self.owner_model
        link = f"{owner.__tablename__}.{self.name}"
        if link in stack:
            raise RelationCycleError([*stack, link])
        stack = (*stack, link)

        through = owner.__relationships__.get(str(self.through))
        if through is None:
            raise UnknownRelationError(owner.__tablename__, str(self.through))
        if not through.resolved:
            through.resolve(stack)

        intermediate = through.target_model
        source = intermediate.__relationships__.get(str(self.source))
        if source is None:
            raise UnknownRelationError(intermediate.__tablename__, str(self.source))
        if not source.resolved:
            source.resolve(stack)

        self.through_relation = through
        self.source_relation = source
        self.target = source.target_model
        self.resolved = True

    def _parts(self) -> tuple[Relation, Relation]:
        if self.through_relation is None or self.source_relation is None:
            self.resolve()
        assert self.through_relation is not None and self.source_relation is not None
        return self.through_relation, self.source_relation

    def join_query(self, parent_alias: str, child_alias: str) -> Condition:
        through, source = self._parts()
        alias = str(self.through)
        inner = Query.for_model(through.target_model, alias=alias)._mutate(
            selects=((None, Raw("1")),),
            conditions=(
                through.join_query(parent_alias, alias),
                source.join_query(alias, child_alias),
            ),
            outer_aliases=(parent_alias, child_alias),
        )
        return Exists(inner)

    def method_query(self, query: Query, record: dict[str, Any]) -> Query:
        through, source = self._parts()
        alias = str(self.through)
        base = Query.for_model(through.target_model, session=query.session, alias=alias)
        inner = through.method_query(base, record)._mutate(
            selects=((None, Raw("1")),),
            shape="all",
            limit_value=None,
            outer_aliases=(str(query.alias),),
        )
        inner = inner._mutate(conditions=inner.conditions + (source.join_query(alias, str(query.alias)),))
        return self.default_shape(query.where(Exists(inner)))


# ========== Declaration helpers ==========


def belongs_to(
    target: str | type[Base],
    *,
    foreign_key: str | tuple[str, ...] | None = None,
    primary_key: str | tuple[str, ...] | None = None,
) -> Any:
    """Declare that the owner row references one ``target`` row.

    Example:
        >>> author = belongs_to("User", foreign_key="author_id")
    """
    return BelongsTo(target=target, foreign_key=foreign_key, primary_key=primary_key)


def has_one(
    target: str | type[Base] | None = None,
    *,
    foreign_key: str | tuple[str, ...] | None = None,
    primary_key: str | tuple[str, ...] | None = None,
    through: str | None = None,
    source: str | None = None,
) -> Any:
    """Declare that at most one ``target`` row references the owner row."""
    if through is not None:
        return Through(through=through, source=source or str(target))
    return HasOne(target=target, foreign_key=foreign_key, primary_key=primary_key)


def has_many(
    target: str | type[Base] | None = None,
    *,
    foreign_key: str | tuple[str, ...] | None = None,
    primary_key: str | tuple[str, ...] | None = None,
    through: str | None = None,
    source: str | None = None,
) -> Any:
    """Declare that many ``target`` rows reference the owner row.

    Example:
        >>> messages = has_many("Message", foreign_key="author_id")
        >>> chats = has_many(through="messages", source="chat")
    """
    if through is not None:
        return Through(through=through, source=source or str(target))
    return HasMany(target=target, foreign_key=foreign_key, primary_key=primary_key)


def has_and_belongs_to_many(
    target: str | type[Base],
    *,
    join_table: str,
    foreign_key: str | tuple[str, ...] | None = None,
    primary_key: str | tuple[str, ...] | None = None,
    association_foreign_key: str | tuple[str, ...] | None = None,
    association_primary_key: str | tuple[str, ...] | None = None,
) -> Any:
    """Declare a many-to-many relation through ``join_table``.

    Example:
        >>> roles = has_and_belongs_to_many("Role", join_table="user_roles")
    """
    return HasAndBelongsToMany(
        target=target,
        join_table=join_table,
        foreign_key=foreign_key,
        primary_key=primary_key,
        association_foreign_key=association_foreign_key,
        association_primary_key=association_primary_key,
    )


# ========== Resolution ==========


def resolve_relationships(model: type[Base]) -> None:
    """Resolve every relation of ``model``.

    Through chains are validated here, recursively, so a dangling or cyclic
    chain fails when the model is first used rather than at query time.
    """
    for relation in model.__relationships__.values():
        if not relation.resolved:
            relation.resolve()
    model.__relationships_resolved__ = True  # type: ignore[misc]


def configure_relationships(models: list[type[Base]] | None = None) -> None:
    """Resolve relations of the given models, or of every registered model."""
    targets = models if models is not None else list({id(m): m for m in _model_registry.values()}.values())
    for model in targets:
        resolve_relationships(model)
