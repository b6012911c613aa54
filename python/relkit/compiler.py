"""SQL compiler: turns a :class:`~relkit.query.Query` into ``(text, params)``.

Compilation is deterministic: the same query always renders the same text
and the same parameter list. One parameter list is threaded through every
nested sub-select, so ``$n`` placeholders are numbered across the whole
statement.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NamedTuple

from relkit.errors import EmptyWriteSetError, QueryBuildError, UnresolvedAliasError, UnsupportedReturnShapeError
from relkit.expressions import (
    And,
    BinaryOp,
    Case,
    Column,
    Compare,
    Condition,
    Exists,
    Func,
    In,
    Not,
    Or,
    Raw,
    Value,
    combine,
)
from relkit.query import DeleteIntent, InsertIntent, Query, UpdateIntent

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.fields import ColumnInfo

_RAW_PLACEHOLDER = re.compile(r"\$(\d+)")

# Values compared with these operators are not run through column encoders
_UNENCODED_OPS = frozenset({"LIKE", "ILIKE", "NOT LIKE", "NOT ILIKE", "?", "IS", "IS NOT"})


class CompiledQuery(NamedTuple):
    text: str
    params: list[Any]


def quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


@dataclass
class _Scope:
    own: str
    aliases: dict[str, type[Base] | None]


class Compiler:
    """Renders one statement; not reusable across statements."""

    def __init__(self) -> None:
        self.params: list[Any] = []
        self._value_slots: dict[int, int] = {}
        self._scopes: list[_Scope] = []

    # ========== Entry point ==========

    def statement(self, query: Query) -> str:
        match query.write:
            case InsertIntent():
                return self.insert_statement(query)
            case UpdateIntent():
                return self.update_statement(query)
            case DeleteIntent():
                return self.delete_statement(query)
        return self.select_statement(query)

    # ========== Parameters ==========

    def param(self, value: Any, column: ColumnInfo | None = None, *, cast: bool = False) -> str:
        if isinstance(value, Value):
            slot = self._value_slots.get(id(value))
            if slot is None:
                self.params.append(column.encode_value(value.value) if column else value.value)
                slot = len(self.params)
                self._value_slots[id(value)] = slot
        else:
            self.params.append(column.encode_value(value) if column else value)
            slot = len(self.params)
        placeholder = f"${slot}"
        if cast and column is not None:
            placeholder += f"::{column.sql_type()}"
        return placeholder

    def raw(self, node: Raw) -> str:
        offset = len(self.params)
        self.params.extend(node.params)
        return _RAW_PLACEHOLDER.sub(lambda m: f"${int(m.group(1)) + offset}", node.text)

    # ========== Scope ==========

    def _push(self, query: Query) -> None:
        aliases: dict[str, type[Base] | None] = {str(query.alias): query.model}
        for join in query.joins:
            aliases[join.alias] = join.target.model if isinstance(join.target, Query) else None
        for name, _ in query.ctes:
            aliases.setdefault(name, None)
        self._scopes.append(_Scope(str(query.alias), aliases))

    def _pop(self) -> None:
        self._scopes.pop()

    def _in_enclosing_scope(self, alias: str) -> bool:
        return any(alias in scope.aliases for scope in self._scopes[:-1])

    def resolve(self, column: Column) -> tuple[str, str, ColumnInfo | None]:
        """Map a column reference to ``(alias, db_name, column_info)``."""
        if not self._scopes:
            raise UnresolvedAliasError(column.alias or "", column.name)
        alias = column.alias or self._scopes[-1].own
        for scope in reversed(self._scopes):
            if alias in scope.aliases:
                model = scope.aliases[alias]
                info = None
                if model is not None:
                    info = model.__columns__.get(column.name) or model.column_by_db_name(column.name)
                return alias, info.db_name if info else column.name, info
        in_scope = [a for scope in self._scopes for a in scope.aliases]
        raise UnresolvedAliasError(alias, column.name, in_scope)

    def column(self, column: Column, *, qualify: bool = True) -> str:
        alias, db_name, _ = self.resolve(column)
        return f"{quote(alias)}.{quote(db_name)}" if qualify else quote(db_name)

    def _column_info(self, node: Any) -> ColumnInfo | None:
        if isinstance(node, Column):
            return self.resolve(node)[2]
        return None

    # ========== Expressions ==========

    def expr(self, node: Any, column: ColumnInfo | None = None, *, cast: bool = False) -> str:
        match node:
            case None:
                return "NULL"
            case Column():
                return self.column(node)
            case Raw():
                return self.raw(node)
            case Func():
                if len(node.args) == 1 and isinstance(node.args[0], Raw) and node.args[0].text == "*":
                    args = "*"
                else:
                    args = ", ".join(self.expr(arg) for arg in node.args)
                distinct = "DISTINCT " if node.distinct else ""
                return f"{node.name}({distinct}{args})"
            case BinaryOp():
                info = self._column_info(node.left) or column
                return f"{self.expr(node.left)} {node.op} {self.expr(node.right, info, cast=cast)}"
            case Case():
                whens = " ".join(
                    f"WHEN {self.condition(cond)} THEN {self.expr(value, column, cast=True)}"
                    for cond, value in node.whens
                )
                tail = f" ELSE {self.expr(node.else_, column, cast=True)}" if node.else_ is not None else ""
                return f"CASE {whens}{tail} END"
            case Query():
                return f"({self.select_statement(node)})"
            case Condition():
                return self.condition(node)
        return self.param(node, column, cast=cast)

    # ========== Conditions ==========

    def condition(self, node: Condition) -> str:
        match node:
            case Compare():
                return self._compare(node)
            case And(items=items):
                parts = [self._grouped(item, Or) for item in items]
                return " AND ".join(p for p in parts if p)
            case Or(items=items):
                parts = [self._grouped(item, And) for item in items]
                return " OR ".join(p for p in parts if p)
            case Not(item=item):
                inner = self.condition(item)
                if not inner:
                    return ""
                if isinstance(item, Raw) or (isinstance(item, (And, Or)) and len(item.items) > 1):
                    return f"NOT ({inner})"
                return f"NOT {inner}"
            case In():
                return self._in(node)
            case Exists(query=query):
                return f"EXISTS ({self._exists_select(query)})"
            case Raw():
                return self.raw(node)
        raise QueryBuildError(f"Cannot render {node!r} as a condition")

    def _grouped(self, item: Condition, wrap_kind: type) -> str:
        text = self.condition(item)
        if not text:
            return text
        # raw fragments may carry their own AND/OR
        if isinstance(item, Raw) or (isinstance(item, wrap_kind) and len(item.items) > 1):
            return f"({text})"
        return text

    def _compare(self, node: Compare) -> str:
        op = node.op.upper()
        info = self._column_info(node.left)
        left = self.expr(node.left)
        if node.right is None and op in ("IS", "IS NOT"):
            return f"{left} {op} NULL"
        if op in _UNENCODED_OPS:
            info = None
        if isinstance(node.right, Query):
            return f"{left} {op} ({self.select_statement(node.right)})"
        return f"{left} {op} {self.expr(node.right, info)}"

    def _in(self, node: In) -> str:
        infos = [self._column_info(c) for c in node.columns]
        if len(node.columns) == 1:
            target = self.expr(node.columns[0])
        else:
            target = "(" + ", ".join(self.expr(c) for c in node.columns) + ")"
        keyword = "NOT IN" if node.negated else "IN"
        values = node.values

        if isinstance(values, Query):
            return f"{target} {keyword} ({self.select_statement(values)})"
        if isinstance(values, Raw):
            return f"{target} {keyword} ({self.raw(values)})"
        if not values:
            return "TRUE" if node.negated else "FALSE"
        if len(node.columns) == 1:
            rendered = ", ".join(self.expr(v, infos[0]) for v in values)
        else:
            rendered = ", ".join(
                "(" + ", ".join(self.expr(v, info) for v, info in zip(row, infos, strict=True)) + ")"
                for row in values
            )
        return f"{target} {keyword} ({rendered})"

    def _where(self, query: Query) -> str:
        conditions: list[Condition | None] = []
        if query.link is not None:
            conditions.append(self._link_condition(query))
        conditions.extend(query.conditions)
        text = self.condition(combine("AND", conditions))
        return f" WHERE {text}" if text else ""

    def _link_condition(self, query: Query) -> Condition:
        """Correlate a relation query with its parent query.

        Inside the parent's scope (a sub-select or EXISTS of the parent) only
        the correlation is needed; otherwise the parent query is embedded in
        an EXISTS so its own conditions apply.
        """
        assert query.link is not None
        relation, parent = query.link.relation, query.link.parent
        parent_alias = str(parent.alias)
        correlation = relation.join_query(parent_alias, str(query.alias))
        if self._in_enclosing_scope(parent_alias):
            return correlation
        outer = parent._clone(
            selects=((None, Raw("1")),),
            conditions=(correlation, *parent.conditions),
            order=(),
            limit_value=None,
            offset_value=None,
            shape="exists",
        )
        return Exists(outer)

    # ========== SELECT ==========

    def select_statement(
        self,
        query: Query,
        *,
        single_alias: str | None = None,
        extra_values: list[tuple[ColumnInfo | None, Any]] | None = None,
        force_limit_one: bool = False,
    ) -> str:
        parts: list[str] = []
        if query.ctes:
            ctes = ", ".join(f"{quote(name)} AS ({self.statement(cte)})" for name, cte in query.ctes)
            parts.append(f"WITH {ctes} ")

        self._push(query)
        try:
            parts.append("SELECT DISTINCT " if query.is_distinct else "SELECT ")
            parts.append(self._select_list(query, single_alias=single_alias))
            if extra_values:
                parts.append(", " + ", ".join(self.expr(v, info, cast=True) for info, v in extra_values))
            parts.append(" FROM " + self._table_ref(query))
            parts.append(self._joins(query))
            parts.append(self._where(query))
            if query.group:
                parts.append(" GROUP BY " + ", ".join(self._ref_expr(g) for g in query.group))
            if query.having_conditions:
                having = self.condition(combine("AND", list(query.having_conditions)))
                if having:
                    parts.append(f" HAVING {having}")
            if query.order:
                order = ", ".join(f"{self._ref_expr(col)} {direction}" for col, direction in query.order)
                parts.append(f" ORDER BY {order}")
            if query.shape == "exists" or force_limit_one:
                parts.append(" LIMIT 1")
            elif query.limit_value is not None:
                parts.append(f" LIMIT {self.param(query.limit_value)}")
            if query.offset_value is not None and query.shape != "exists":
                parts.append(f" OFFSET {self.param(query.offset_value)}")
        finally:
            self._pop()
        return "".join(parts)

    def _exists_select(self, query: Query) -> str:
        if query.shape == "exists":
            query = query._clone(selects=((None, Raw("1")),), shape="all", limit_value=None, offset_value=None)
            return self.select_statement(query, force_limit_one=True)
        if not query.selects:
            query = query._clone(selects=((None, Raw("1")),))
        return self.select_statement(query)

    def _table_ref(self, query: Query) -> str:
        ref = quote(query.table)
        if query.schema:
            ref = f"{quote(query.schema)}.{ref}"
        if query.alias and query.alias != query.table:
            ref += f" AS {quote(query.alias)}"
        return ref

    def _joins(self, query: Query) -> str:
        rendered = []
        for join in query.joins:
            if isinstance(join.target, Query):
                target = join.target._clone(alias=join.alias)
                ref = self._table_ref(target)
            else:
                ref = quote(join.target)
            on = self.condition(join.on) if join.on is not None else ""
            rendered.append(f" {join.kind} {ref} ON {on or 'true'}")
        return "".join(rendered)

    def _ref_expr(self, ref: Any) -> str:
        if isinstance(ref, str):
            return self.column(Column.parse(ref))
        return self.expr(ref)

    def _select_list(self, query: Query, *, single_alias: str | None = None) -> str:
        if query.shape == "exists":
            return "true"
        qualify = bool(query.joins)
        if not query.selects:
            return self._default_columns(query, qualify)
        items = []
        for key, item in query.selects:
            if single_alias is not None:
                key = single_alias
            items.append(self._select_item(key, item, qualify))
        return ", ".join(items)

    def _default_columns(self, query: Query, qualify: bool) -> str:
        model = query.model
        alias = quote(str(query.alias))
        if model is not None and any(c.renamed for c in model.__columns__.values()):
            return ", ".join(
                self._select_item(None, Column(key, query.alias if qualify else None), qualify)
                for key in model.__columns__
            )
        return f"{alias}.*" if qualify else "*"

    def _select_item(self, key: str | None, item: Any, qualify: bool) -> str:
        if isinstance(item, str):
            if item == "*":
                return self._default_columns(self._current_query_stub(), qualify)
            if item.endswith(".*"):
                alias = item[:-2]
                self.resolve(Column("*", alias))
                return f"{quote(alias)}.*"
            item = Column.parse(item)

        if isinstance(item, Column):
            alias, db_name, info = self.resolve(item)
            rendered = f"{quote(alias)}.{quote(db_name)}" if qualify or item.alias else quote(db_name)
            output = key or (info.key if info and info.key else item.name)
            return rendered if output == db_name else f"{rendered} AS {quote(output)}"

        if isinstance(item, Query):
            return f"{self.sub_select(item)} AS {quote(key or str(item.alias))}"

        rendered = self.expr(item)
        return f"{rendered} AS {quote(key)}" if key else rendered

    def _current_query_stub(self) -> Query:
        scope = self._scopes[-1]
        model = scope.aliases.get(scope.own)
        if model is not None:
            return Query.for_model(model, alias=scope.own)
        return Query.for_table(scope.own)

    def sub_select(self, query: Query) -> str:
        """Embed a relation or sub-query in a select list, wrapped by its shape."""
        shape = query.shape
        if shape == "all":
            inner = self.select_statement(query)
            return f"(SELECT COALESCE(json_agg(row_to_json(\"t\".*)), '[]') FROM ({inner}) AS \"t\")"
        if shape in ("one", "one_or_throw"):
            inner = self.select_statement(query, force_limit_one=query.limit_value is None)
            return f'(SELECT row_to_json("t".*) FROM ({inner}) AS "t")'
        if shape == "pluck":
            inner = self.select_statement(query, single_alias="c")
            return f"(SELECT COALESCE(json_agg(\"c\"), '[]') FROM ({inner}) AS \"t\")"
        if shape in ("value", "value_or_throw"):
            return f"({self.select_statement(query)})"
        if shape == "exists":
            return f"COALESCE(({self.select_statement(query)}), false)"
        raise UnsupportedReturnShapeError(shape)

    # ========== INSERT ==========

    def _returning(self, query: Query) -> str:
        if query.returning_columns is not None:
            items = ", ".join(self._select_item(None, c, False) for c in query.returning_columns)
            return f" RETURNING {items}"
        if query.selects:
            return f" RETURNING {self._select_list(query)}"
        return ""

    def _insert_columns(self, query: Query, rows: tuple[dict[str, Any], ...]) -> list[str]:
        keys: list[str] = []
        for row in rows:
            for key in row:
                if key not in keys:
                    keys.append(key)
        if query.model is not None:
            for key, info in query.model.__columns__.items():
                if key not in keys and info.has_default:
                    keys.append(key)
        return keys

    def _column_for_key(self, query: Query, key: str) -> tuple[str, ColumnInfo | None]:
        if query.model is None:
            return key, None
        info = query.model.__columns__.get(key)
        if info is None:
            info = query.model.column_by_db_name(key)
        if info is None:
            raise QueryBuildError(f"Unknown column '{key}' for table '{query.table}'")
        return info.db_name, info

    def insert_statement(self, query: Query) -> str:
        intent = query.write
        assert isinstance(intent, InsertIntent)
        self._push(query)
        try:
            head = f"INSERT INTO {self._table_ref(query)}"
            if intent.source is not None:
                body = self._insert_select(query, intent)
                columns: list[str] = []
            else:
                columns = self._insert_columns(query, intent.rows)
                body = self._insert_values(query, intent.rows, columns)
            text = head + body
            if query.conflict is not None:
                text += self._on_conflict(query, columns)
            text += self._returning(query)
        finally:
            self._pop()
        return text

    def _insert_values(self, query: Query, rows: tuple[dict[str, Any], ...], keys: list[str]) -> str:
        if not keys:
            if len(rows) <= 1:
                return " DEFAULT VALUES"
            if query.model is None or not query.model.__primary_key__:
                raise QueryBuildError(f"Cannot insert empty rows into '{query.table}'")
            keys = [query.model.__primary_key__[0]]
        resolved = [self._column_for_key(query, key) for key in keys]
        column_list = ", ".join(quote(db_name) for db_name, _ in resolved)

        groups = []
        for row in rows:
            values = []
            for key, (_, info) in zip(keys, resolved, strict=True):
                if key in row:
                    values.append(self.expr(row[key], info))
                elif info is not None and info.has_default:
                    values.append(self.param(info.make_default(), info))
                else:
                    values.append("DEFAULT")
            groups.append("(" + ", ".join(values) + ")")
        return f" ({column_list}) VALUES " + ", ".join(groups)

    def _insert_select(self, query: Query, intent: InsertIntent) -> str:
        assert intent.source is not None
        values = dict(intent.rows[0]) if intent.rows else {}
        keys = list(intent.columns) + [k for k in values if k not in intent.columns]
        if query.model is not None:
            for key, info in query.model.__columns__.items():
                if key not in keys and info.has_default:
                    keys.append(key)
                    values[key] = info.make_default()
        resolved = [self._column_for_key(query, key) for key in keys]
        column_list = ", ".join(quote(db_name) for db_name, _ in resolved)
        extra = [(info, values[key]) for key, (_, info) in zip(keys, resolved, strict=True) if key in values]
        select = self.select_statement(intent.source, extra_values=extra)
        return f" ({column_list}) {select}"

    def _on_conflict(self, query: Query, inserted: list[str]) -> str:
        conflict = query.conflict
        assert conflict is not None
        target = ""
        if conflict.columns:
            target = " (" + ", ".join(quote(self._column_for_key(query, c)[0]) for c in conflict.columns) + ")"
        if conflict.action == "ignore":
            return f" ON CONFLICT{target} DO NOTHING"
        if not conflict.columns:
            raise QueryBuildError("ON CONFLICT ... DO UPDATE requires conflict columns")

        if isinstance(conflict.merge, dict):
            assignments = []
            for key, value in conflict.merge.items():
                db_name, info = self._column_for_key(query, key)
                assignments.append(f"{quote(db_name)} = {self.expr(value, info)}")
            return f" ON CONFLICT{target} DO UPDATE SET " + ", ".join(assignments)

        merge_keys = list(conflict.merge) if conflict.merge else [k for k in inserted if k not in conflict.columns]
        if not merge_keys:
            # keeps the row in RETURNING when there is nothing else to update
            merge_keys = [conflict.columns[0]]
        db_names = [self._column_for_key(query, k)[0] for k in merge_keys]
        assignments = [f"{quote(n)} = excluded.{quote(n)}" for n in db_names]
        return f" ON CONFLICT{target} DO UPDATE SET " + ", ".join(assignments)

    # ========== UPDATE / DELETE ==========

    def update_statement(self, query: Query) -> str:
        intent = query.write
        assert isinstance(intent, UpdateIntent)
        if not intent.data:
            raise EmptyWriteSetError(query.table)
        if query.joins:
            raise QueryBuildError(f"Update on '{query.table}' cannot have joins")
        self._push(query)
        try:
            assignments = []
            for key, value in intent.data.items():
                db_name, info = self._column_for_key(query, key)
                assignments.append(f"{quote(db_name)} = {self.expr(value, info)}")
            text = f"UPDATE {self._table_ref(query)} SET " + ", ".join(assignments)
            text += self._where(query)
            text += self._returning(query)
        finally:
            self._pop()
        return text

    def delete_statement(self, query: Query) -> str:
        if query.joins:
            raise QueryBuildError(f"Delete on '{query.table}' cannot have joins")
        self._push(query)
        try:
            text = f"DELETE FROM {self._table_ref(query)}"
            text += self._where(query)
            text += self._returning(query)
        finally:
            self._pop()
        return text


def compile_query(query: Query) -> CompiledQuery:
    """Render ``query`` to SQL text and its parameter list.

    Example:
        >>> compile_query(select(User).where(name="Alice"))
        CompiledQuery(text='SELECT * FROM "users" WHERE "users"."name" = $1', params=['Alice'])
    """
    compiler = Compiler()
    text = compiler.statement(query)
    return CompiledQuery(text, compiler.params)
