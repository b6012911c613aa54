"""Query descriptor and fluent query builder.

A :class:`Query` is an immutable description of one statement. Every fluent
method returns a new query; nothing touches the database until the query is
awaited or one of the async terminal methods is called.

Example:
    >>> users = await session.query(User).where(age__gt=18).order_by("-name").limit(10)
    >>> user = await session.query(User).find(1).select(
    ...     "id", "name", messages=lambda q: q.related("messages").select("text")
    ... )
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from relkit.errors import (
    ConflictingIntent,
    QueryBuildError,
    UnknownRelationError,
    UnresolvedAliasError,
)
from relkit.expressions import (
    And,
    BinaryOp,
    Column,
    Compare,
    Condition,
    Exists,
    Func,
    In,
    Not,
    Or,
    Raw,
    combine,
    filters_to_conditions,
    with_default_alias,
)

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.compiler import CompiledQuery
    from relkit.relationships import Relation
    from relkit.session import AsyncSession

SHAPES = frozenset(
    {
        "all",
        "one",
        "one_or_throw",
        "rows",
        "pluck",
        "value",
        "value_or_throw",
        "exists",
        "row_count",
        "void",
    }
)

HOOK_EVENTS = frozenset(
    {
        "before_create",
        "after_create",
        "after_create_commit",
        "before_update",
        "after_update",
        "after_update_commit",
        "before_delete",
        "after_delete",
        "after_delete_commit",
    }
)


@dataclass(frozen=True)
class Join:
    """One JOIN clause; ``alias`` is the name the joined table is known by."""

    kind: str
    target: Query | str
    alias: str
    on: Condition | None = None
    relation: Relation | None = None


@dataclass(frozen=True)
class InsertIntent:
    """Rows to insert, or an ``INSERT ... SELECT`` source query."""

    rows: tuple[dict[str, Any], ...] = ()
    source: Query | None = None
    columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class UpdateIntent:
    data: dict[str, Any]


@dataclass(frozen=True)
class DeleteIntent:
    pass


@dataclass(frozen=True)
class OnConflict:
    columns: tuple[str, ...]
    action: str  # "ignore" or "merge"
    merge: tuple[str, ...] | dict[str, Any] | None = None


@dataclass(frozen=True)
class RelationLink:
    """Ties a relation query to the query of its parent records."""

    relation: Relation
    parent: Query


SelectItem = tuple[str | None, Any]


@dataclass
class Query:
    """Describes a single SQL statement against one table."""

    table: str
    model: type[Base] | None = None
    alias: str | None = None
    schema: str | None = None
    session: AsyncSession | None = field(default=None, repr=False, compare=False)
    selects: tuple[SelectItem, ...] = ()
    conditions: tuple[Condition, ...] = ()
    joins: tuple[Join, ...] = ()
    ctes: tuple[tuple[str, Query], ...] = ()
    group: tuple[Any, ...] = ()
    having_conditions: tuple[Condition, ...] = ()
    order: tuple[tuple[Any, str], ...] = ()
    limit_value: int | None = None
    offset_value: int | None = None
    is_distinct: bool = False
    shape: str = "all"
    write: InsertIntent | UpdateIntent | DeleteIntent | None = None
    returning_columns: tuple[Any, ...] | None = None
    conflict: OnConflict | None = None
    link: RelationLink | None = None
    outer_aliases: tuple[str, ...] = ()
    hooks: tuple[tuple[str, Callable[..., Any]], ...] = ()

    def __post_init__(self) -> None:
        if self.alias is None:
            self.alias = self.table
        if self.shape not in SHAPES:
            raise QueryBuildError(f"Unknown result shape '{self.shape}'")

    # ========== Construction ==========

    @classmethod
    def for_model(
        cls,
        model: type[Base],
        *,
        session: AsyncSession | None = None,
        alias: str | None = None,
    ) -> Query:
        """Start a query on a model's table, picking up the model's hooks."""
        hooks = tuple(
            (event, hook)
            for event, registered in model.__hooks__.items()
            for hook in registered
        )
        return cls(
            table=model.__tablename__,
            model=model,
            alias=alias,
            schema=model.__schema__,
            session=session,
            hooks=hooks,
        )

    @classmethod
    def for_table(
        cls,
        table: str,
        *,
        session: AsyncSession | None = None,
        alias: str | None = None,
        schema: str | None = None,
    ) -> Query:
        """Start a query on a table that has no model, such as a join table."""
        return cls(table=table, alias=alias, schema=schema, session=session)

    def _clone(self, **changes: Any) -> Query:
        return replace(self, **changes)

    def _mutate(self, **changes: Any) -> Query:
        """Change the query in place; only for queries the library owns."""
        for name, value in changes.items():
            setattr(self, name, value)
        return self

    # ========== Scope ==========

    def aliases(self) -> tuple[str, ...]:
        """Every alias a column reference in this query may point at."""
        own = [self.alias or self.table]
        own.extend(join.alias for join in self.joins)
        own.extend(name for name, _ in self.ctes)
        own.extend(self.outer_aliases)
        return tuple(own)

    def _check_column(self, column: Column) -> None:
        if column.alias is not None and column.alias not in self.aliases():
            raise UnresolvedAliasError(column.alias, column.name, list(self.aliases()))

    def _check_refs(self, node: Any) -> None:
        match node:
            case Column():
                self._check_column(node)
            case Compare(left=left, right=right) | BinaryOp(left=left, right=right):
                self._check_refs(left)
                self._check_refs(right)
            case And(items=items) | Or(items=items):
                for item in items:
                    self._check_refs(item)
            case Not(item=item):
                self._check_refs(item)
            case In(columns=columns, values=values):
                for column in columns:
                    self._check_refs(column)
                if isinstance(values, list):
                    for value in values:
                        self._check_refs(value)
            case Func(args=args):
                for arg in args:
                    self._check_refs(arg)
            case str() if "." in node and not node.endswith(".*"):
                self._check_column(Column.parse(node))

    def _to_conditions(self, args: tuple[Any, ...], filters: dict[str, Any]) -> list[Condition]:
        conditions: list[Condition] = []
        for arg in args:
            if isinstance(arg, dict):
                conditions.extend(filters_to_conditions(arg))
            elif isinstance(arg, Condition):
                conditions.append(arg)
            elif callable(arg):
                conditions.append(arg(self))
            else:
                raise QueryBuildError(f"Cannot use {arg!r} as a condition")
        conditions.extend(filters_to_conditions(filters))
        for condition in conditions:
            self._check_refs(condition)
        return conditions

    # ========== Relations ==========

    def relation(self, name: str) -> Relation:
        """Look up a relation declared on this query's model."""
        if self.model is None:
            raise UnknownRelationError(self.table, name)
        self.model._resolve_relationships()  # type: ignore[attr-defined]
        try:
            return self.model.__relationships__[name]
        except KeyError:
            raise UnknownRelationError(self.table, name) from None

    def related(self, name: str, record: dict[str, Any] | None = None) -> Query:
        """Query the records related through relation ``name``.

        Without ``record`` the result is correlated with this query: used in
        ``select`` it becomes a sub-select per row, used on its own it matches
        records related to any row this query returns. With ``record`` it
        loads the related records of that concrete row.

        Example:
            >>> await session.query(User).find(1).related("messages").where(text="hi")
            >>> await session.query(User).related("messages", user_row)
        """
        rel = self.relation(name)
        base = Query.for_model(rel.target_model, session=self.session, alias=name)
        if record is not None:
            return rel.method_query(base, record)
        return base._mutate(
            link=RelationLink(rel, self),
            outer_aliases=self.aliases(),
            shape="all" if rel.many else "one",
        )

    # ========== Select ==========

    def select(self, *items: Any, **sub_selects: Any) -> Query:
        """Set the select list.

        Positional items are column keys (``"name"``, ``"users.name"``,
        ``"*"``), relation names, or expressions. Keyword items give the output
        key of a column, an expression, or a relation sub-select callback.

        Example:
            >>> query.select("id", "name", messages=lambda q: q.related("messages").pluck("text"))
            >>> query.select("id", "messages")
            >>> query.select(total=Func("count", ("*",)))
        """
        selects = list(self.selects)
        for item in items:
            if isinstance(item, str) and self._is_relation_name(item):
                selects.append((item, self.related(item)))
                continue
            self._check_refs(item)
            selects.append((None, item))
        for key, item in sub_selects.items():
            if callable(item) and not isinstance(item, Query):
                item = item(self)
            self._check_refs(item)
            selects.append((key, item))
        return self._clone(selects=tuple(selects))

    def _is_relation_name(self, name: str) -> bool:
        if self.model is None or "." in name or name in self.model.__columns__:
            return False
        return name in self.model.__relationships__

    def returning(self, *columns: Any) -> Query:
        """Columns returned by a write; defaults to every column."""
        return self._clone(returning_columns=tuple(columns) or ("*",))

    # ========== Conditions ==========

    def where(self, *conditions: Any, **filters: Any) -> Query:
        """Add conditions, ANDed with the existing ones.

        Example:
            >>> query.where(name="Alice", age__gt=18)
            >>> query.where(Q(age__gt=18) | Q(vip=True))
            >>> query.where({"users.active": True})
        """
        added = self._to_conditions(conditions, filters)
        return self._clone(conditions=self.conditions + tuple(added))

    filter = where

    def where_not(self, *conditions: Any, **filters: Any) -> Query:
        added = self._to_conditions(conditions, filters)
        return self._clone(conditions=self.conditions + (Not(combine("AND", added)),))

    def or_(self, *conditions: Any) -> Query:
        """Add a group of conditions joined by OR; each dict argument is one branch.

        Example:
            >>> query.or_({"name": "a"}, {"name": "b"})
        """
        branches = [combine("AND", self._to_conditions((c,), {})) for c in conditions]
        return self._clone(conditions=self.conditions + (combine("OR", branches),))

    def or_where(self, *conditions: Any, **filters: Any) -> Query:
        """OR the given conditions with everything added so far."""
        added = combine("AND", self._to_conditions(conditions, filters))
        current = combine("AND", list(self.conditions))
        return self._clone(conditions=(combine("OR", [current, added]),))

    def where_in(self, column: str | tuple[str, ...], values: Any) -> Query:
        columns = (column,) if isinstance(column, str) else column
        refs = tuple(Column.parse(c) for c in columns)
        for ref in refs:
            self._check_column(ref)
        if isinstance(values, (tuple, set)):
            values = list(values)
        return self._clone(conditions=self.conditions + (In(refs, values),))

    def where_exists(self, target: str | Query, *conditions: Any, **filters: Any) -> Query:
        """Require a related record (by relation name) or a sub-query row to exist.

        Example:
            >>> query.where_exists("messages", text__contains="hello")
        """
        sub = self.related(target) if isinstance(target, str) else target
        if conditions or filters:
            sub = sub.where(*conditions, **filters)
        return self._clone(conditions=self.conditions + (Exists(sub),))

    # ========== Joins ==========

    def join(self, target: Any, *conditions: Any, kind: str = "JOIN", **filters: Any) -> Query:
        """Join a table, a CTE or a relation.

        ``target`` may be a relation name, the name of a CTE added with
        :meth:`with_`, a model class or a query. A CTE name wins over a
        relation of the same name. Keyword filters refer to the joined alias
        unless qualified.

        Example:
            >>> query.join("messages", text="hi").select("users.name", "messages.text")
            >>> query.join(Message, Compare(Column("author_id", "messages"), "=", Column("id", "users")))
        """
        relation = None
        on_parts: list[Condition] = []
        cte_names = {name for name, _ in self.ctes}

        if isinstance(target, str) and target in cte_names:
            alias = target
            join_target: Query | str = target
        elif isinstance(target, str):
            relation = self.relation(target)
            alias = target
            join_target = Query.for_model(relation.target_model, alias=alias)
            on_parts.append(relation.join_query(self.alias, alias))
        elif isinstance(target, Query):
            alias = target.alias or target.table
            join_target = target
            on_parts.extend(with_default_alias(c, alias) for c in target.conditions)
        elif isinstance(target, type) and hasattr(target, "__tablename__"):
            alias = target.__tablename__
            join_target = Query.for_model(target)
        else:
            raise QueryBuildError(f"Cannot join {target!r}")

        if alias in self.aliases():
            raise QueryBuildError(f"Alias '{alias}' is already used in this query")

        scoped = self._clone(joins=self.joins + (Join(kind, join_target, alias),))
        extra = scoped._to_conditions(conditions, {})
        extra.extend(with_default_alias(c, alias) for c in filters_to_conditions(filters))
        for condition in extra:
            scoped._check_refs(condition)
        on_parts.extend(extra)

        on = combine("AND", on_parts) if on_parts else None
        join = Join(kind, join_target, alias, on, relation)
        return self._clone(joins=self.joins + (join,))

    def left_join(self, target: Any, *conditions: Any, **filters: Any) -> Query:
        return self.join(target, *conditions, kind="LEFT JOIN", **filters)

    def right_join(self, target: Any, *conditions: Any, **filters: Any) -> Query:
        return self.join(target, *conditions, kind="RIGHT JOIN", **filters)

    def full_join(self, target: Any, *conditions: Any, **filters: Any) -> Query:
        return self.join(target, *conditions, kind="FULL JOIN", **filters)

    def with_(self, name: str, query: Query) -> Query:
        """Add a common table expression that can be joined by name."""
        return self._clone(ctes=self.ctes + ((name, query),))

    # ========== Ordering, grouping, paging ==========

    def order_by(self, *columns: Any, desc: bool = False) -> Query:
        """Add ORDER BY; a leading ``-`` on a column key sorts descending."""
        direction = "DESC" if desc else "ASC"
        order = list(self.order)
        for column in columns:
            if isinstance(column, str) and column.startswith("-"):
                order.append((column[1:], "DESC"))
            else:
                order.append((column, direction))
            self._check_refs(order[-1][0])
        return self._clone(order=tuple(order))

    def group_by(self, *columns: Any) -> Query:
        for column in columns:
            self._check_refs(column)
        return self._clone(group=self.group + columns)

    def having(self, *conditions: Any, **filters: Any) -> Query:
        added = self._to_conditions(conditions, filters)
        return self._clone(having_conditions=self.having_conditions + tuple(added))

    def limit(self, n: int | None) -> Query:
        return self._clone(limit_value=n)

    def offset(self, n: int | None) -> Query:
        return self._clone(offset_value=n)

    def distinct(self) -> Query:
        return self._clone(is_distinct=True)

    def as_(self, alias: str) -> Query:
        return self._clone(alias=alias)

    # ========== Result shapes ==========

    def _primary_key_conditions(self, values: tuple[Any, ...]) -> dict[str, Any]:
        if self.model is None or not self.model.__primary_key__:
            raise QueryBuildError(f"Table '{self.table}' has no primary key")
        keys = self.model.__primary_key__
        if len(values) != len(keys):
            raise QueryBuildError(
                f"Table '{self.table}' has {len(keys)} primary key column(s), got {len(values)} value(s)"
            )
        return dict(zip(keys, values, strict=True))

    def take(self) -> Query:
        """Return one record; awaiting raises NotFoundError when there is none."""
        return self._clone(shape="one_or_throw", limit_value=1)

    def take_optional(self) -> Query:
        return self._clone(shape="one", limit_value=1)

    def find(self, *pk: Any) -> Query:
        """Return the record with the given primary key or raise NotFoundError."""
        return self.where(**self._primary_key_conditions(pk)).take()

    def find_optional(self, *pk: Any) -> Query:
        return self.where(**self._primary_key_conditions(pk)).take_optional()

    def find_by(self, *conditions: Any, **filters: Any) -> Query:
        return self.where(*conditions, **filters).take()

    def find_by_optional(self, *conditions: Any, **filters: Any) -> Query:
        return self.where(*conditions, **filters).take_optional()

    def rows(self) -> Query:
        """Return rows as tuples of values."""
        return self._clone(shape="rows")

    def pluck(self, column: Any) -> Query:
        """Return a flat list of one column."""
        self._check_refs(column)
        return self._clone(shape="pluck", selects=((None, column),))

    def get(self, column: Any) -> Query:
        """Return a single value or raise NotFoundError."""
        self._check_refs(column)
        return self._clone(shape="value_or_throw", selects=((None, column),), limit_value=1)

    def get_optional(self, column: Any) -> Query:
        self._check_refs(column)
        return self._clone(shape="value", selects=((None, column),), limit_value=1)

    def count(self, column: str = "*", *, distinct: bool = False) -> Query:
        arg: Any = Raw("*") if column == "*" else Column.parse(column)
        return self._aggregate("count", arg, distinct=distinct)

    def sum(self, column: str) -> Query:
        return self._aggregate("sum", Column.parse(column))

    def avg(self, column: str) -> Query:
        return self._aggregate("avg", Column.parse(column))

    def min(self, column: str) -> Query:
        return self._aggregate("min", Column.parse(column))

    def max(self, column: str) -> Query:
        return self._aggregate("max", Column.parse(column))

    def _aggregate(self, name: str, arg: Any, *, distinct: bool = False) -> Query:
        self._check_refs(arg)
        func = Func(name, (arg,), distinct=distinct)
        return self._clone(shape="value", selects=((None, func),), order=())

    def exists(self) -> Query:
        """Return True when at least one row matches."""
        return self._clone(shape="exists", selects=(), order=())

    # ========== Write intents ==========

    def _write_kind(self) -> str:
        match self.write:
            case InsertIntent():
                return "insert"
            case UpdateIntent():
                return "update"
            case DeleteIntent():
                return "delete"
        return "select"

    def _with_write(self, write: InsertIntent | UpdateIntent | DeleteIntent) -> Query:
        if self.write is not None:
            attempted = type(write).__name__.removesuffix("Intent").lower()
            raise ConflictingIntent(self.table, self._write_kind(), attempted)
        return self._clone(write=write)

    def for_insert(self, rows: dict[str, Any] | list[dict[str, Any]]) -> Query:
        """Turn the query into an INSERT of one or more rows."""
        if isinstance(rows, dict):
            rows = [rows]
        return self._with_write(InsertIntent(rows=tuple(rows)))

    def for_insert_from(self, source: Query, values: dict[str, Any] | None = None) -> Query:
        """Turn the query into ``INSERT ... SELECT`` reading from ``source``.

        The select list of ``source`` provides the leading columns; ``values``
        are appended as bound parameters.
        """
        values = values or {}
        columns = tuple(key for key, _ in source.selects if key is not None)
        return self._with_write(
            InsertIntent(rows=(values,), source=source, columns=columns)
        )

    def for_update(self, data: dict[str, Any]) -> Query:
        return self._with_write(UpdateIntent(dict(data)))

    def for_delete(self) -> Query:
        return self._with_write(DeleteIntent())

    def on_conflict(self, *columns: str) -> OnConflictBuilder:
        """Start an ON CONFLICT clause for an insert.

        Example:
            >>> query.for_insert(row).on_conflict("email").merge()
            >>> query.for_insert(row).on_conflict("email").merge({"name": "new"})
            >>> query.for_insert(row).on_conflict().ignore()
        """
        return OnConflictBuilder(self, columns)

    # ========== Hooks ==========

    def _add_hook(self, event: str, hook: Callable[..., Any]) -> Query:
        return self._clone(hooks=self.hooks + ((event, hook),))

    def hooks_for(self, event: str) -> list[Callable[..., Any]]:
        return [hook for name, hook in self.hooks if name == event]

    def before_create(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("before_create", hook)

    def after_create(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("after_create", hook)

    def after_create_commit(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("after_create_commit", hook)

    def before_update(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("before_update", hook)

    def after_update(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("after_update", hook)

    def after_update_commit(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("after_update_commit", hook)

    def before_delete(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("before_delete", hook)

    def after_delete(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("after_delete", hook)

    def after_delete_commit(self, hook: Callable[..., Any]) -> Query:
        return self._add_hook("after_delete_commit", hook)

    # ========== Compilation ==========

    def to_sql(self) -> CompiledQuery:
        """Render the query to ``(text, params)``."""
        from relkit.compiler import compile_query

        return compile_query(self)

    # ========== Execution ==========

    def _session(self) -> AsyncSession:
        if self.session is None:
            raise QueryBuildError(f"Query on '{self.table}' is not bound to a session")
        return self.session

    def __await__(self) -> Generator[Any, None, Any]:
        return self._session().execute(self).__await__()

    async def all(self) -> list[dict[str, Any]]:
        """Execute query and return all records."""
        return await self._session().execute(self._clone(shape="all"))

    async def first(self) -> dict[str, Any] | None:
        """Execute query and return the first record or None."""
        return await self.take_optional()

    async def one(self) -> dict[str, Any]:
        """Execute query and return exactly one record."""
        from relkit.errors import MoreThanOneRowError, NotFoundError

        records = await self._session().execute(self._clone(shape="all", limit_value=2))
        if not records:
            raise NotFoundError(self.table)
        if len(records) > 1:
            raise MoreThanOneRowError(self.table)
        return records[0]

    async def one_or_none(self) -> dict[str, Any] | None:
        """Execute query and return one record or None."""
        from relkit.errors import MoreThanOneRowError

        records = await self._session().execute(self._clone(shape="all", limit_value=2))
        if len(records) > 1:
            raise MoreThanOneRowError(self.table)
        return records[0] if records else None

    # ========== Writes ==========

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert one record, including nested relation operations.

        Example:
            >>> await session.query(User).create(
            ...     {"name": "Alice", "messages": {"create": [{"text": "a"}, {"text": "b"}]}}
            ... )
        """
        from relkit.nested import create_records

        records = await create_records(self, [data])
        return records[0]

    async def create_many(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert several records in one batch."""
        from relkit.nested import create_records

        if not rows:
            return []
        return await create_records(self, rows)

    async def update(self, data: dict[str, Any]) -> Any:
        """Update matching rows, including nested relation operations.

        Returns the number of updated rows, or the updated records when the
        query has a select list.
        """
        from relkit.nested import update_records

        return await update_records(self, data)

    async def increment(self, **columns: Any) -> Any:
        """Add to numeric columns: ``increment(views=1)``."""
        data = {key: BinaryOp(Column(key), "+", by) for key, by in columns.items()}
        return await self.update(data)

    async def decrement(self, **columns: Any) -> Any:
        data = {key: BinaryOp(Column(key), "-", by) for key, by in columns.items()}
        return await self.update(data)

    async def delete(self) -> Any:
        """Delete matching rows and return their count."""
        from relkit.nested import delete_records

        return await delete_records(self)

    async def upsert(
        self,
        *,
        update: dict[str, Any],
        create: dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]:
        """Update the single matching record, or create it when nothing matched.

        Example:
            >>> await session.query(User).find_by(email="a@b.c").upsert(
            ...     update={"name": "A"}, create={"email": "a@b.c", "name": "A"}
            ... )
        """
        from relkit.nested import upsert_record

        return await upsert_record(self, update, create)

    async def or_create(
        self, data: dict[str, Any] | Callable[[], dict[str, Any]]
    ) -> dict[str, Any]:
        """Return the single matching record, or create it from ``data``."""
        from relkit.nested import or_create_record

        return await or_create_record(self, data)


class OnConflictBuilder:
    """Completes an ``ON CONFLICT`` clause started by :meth:`Query.on_conflict`."""

    def __init__(self, query: Query, columns: tuple[str, ...]) -> None:
        self._query = query
        self._columns = columns

    def ignore(self) -> Query:
        """``ON CONFLICT ... DO NOTHING``."""
        return self._query._clone(conflict=OnConflict(self._columns, "ignore"))

    def merge(self, *columns: str, **values: Any) -> Query:
        """``ON CONFLICT ... DO UPDATE``.

        With no arguments every inserted column except the conflict target is
        taken from ``EXCLUDED``; column names limit that set; keyword values
        are assigned as given.
        """
        merge: tuple[str, ...] | dict[str, Any] | None
        if values:
            merge = dict(values)
        elif columns:
            merge = columns
        else:
            merge = None
        return self._query._clone(conflict=OnConflict(self._columns, "merge", merge))


def select(model_or_table: type[Base] | str, *, alias: str | None = None) -> Query:
    """Create an unbound query, mostly useful for compiling SQL.

    Example:
        >>> sql, params = select(User).where(name="Alice").to_sql()
    """
    if isinstance(model_or_table, str):
        return Query.for_table(model_or_table, alias=alias)
    return Query.for_model(model_or_table, alias=alias)
