"""Expression and condition nodes.

Everything in this module is plain immutable data. Nodes are rendered to SQL
by :mod:`relkit.compiler`; nothing here knows about placeholders or aliases
in scope.

Conditions can be built directly::

    Compare(Column("age"), ">", 18)

from Django-style keyword filters::

    Q(age__gt=18, name__startswith="A")

and combined with ``&``, ``|`` and ``~``::

    (Q(age__gt=18) | Q(vip=True)) & ~Q(banned=True)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal


class Expression:
    """Base class for nodes that render to a SQL value."""


class Condition:
    """Base class for nodes that render to a SQL boolean."""

    def __and__(self, other: Condition) -> Condition:
        return combine("AND", [self, other])

    def __or__(self, other: Condition) -> Condition:
        return combine("OR", [self, other])

    def __invert__(self) -> Condition:
        return negate(self)


# ========== Value nodes ==========


@dataclass(frozen=True)
class Column(Expression):
    """Reference to a column, optionally qualified by a table alias.

    ``name`` is the application-facing key; the compiler maps it to the
    database name through the table the alias points to. A missing alias
    means the alias of the query that owns the reference.
    """

    name: str
    alias: str | None = None

    @classmethod
    def parse(cls, ref: str) -> Column:
        """Build a column from ``"name"`` or ``"alias.name"``."""
        if "." in ref:
            alias, name = ref.split(".", 1)
            return cls(name, alias)
        return cls(ref)

    def __str__(self) -> str:
        return f"{self.alias}.{self.name}" if self.alias else self.name


@dataclass(frozen=True, eq=False)
class Value(Expression):
    """A bound parameter.

    Rendering the same ``Value`` instance more than once in one statement
    reuses a single placeholder.
    """

    value: Any


@dataclass(frozen=True)
class Raw(Expression, Condition):
    """A raw SQL fragment.

    Placeholders inside ``text`` are numbered locally (``$1``, ``$2``...)
    and renumbered when the fragment is embedded into a statement.

    Example:
        >>> Raw("lower($1) = lower(name)", ("Alice",))
    """

    text: str
    params: tuple[Any, ...] = ()


@dataclass(frozen=True)
class Func(Expression):
    """A SQL function call such as ``count(*)`` or ``max("age")``."""

    name: str
    args: tuple[Any, ...] = ()
    distinct: bool = False


@dataclass(frozen=True)
class BinaryOp(Expression):
    """An infix operation such as ``"views" + $1``."""

    left: Any
    op: str
    right: Any


@dataclass(frozen=True)
class Case(Expression):
    """``CASE WHEN ... THEN ... END``; ``else_`` of ``None`` renders no ELSE."""

    whens: tuple[tuple[Condition, Any], ...]
    else_: Any = None


# ========== Condition nodes ==========


@dataclass(frozen=True)
class Compare(Condition):
    left: Any
    op: str
    right: Any


@dataclass(frozen=True)
class And(Condition):
    items: tuple[Condition, ...] = ()


@dataclass(frozen=True)
class Or(Condition):
    items: tuple[Condition, ...] = ()


@dataclass(frozen=True)
class Not(Condition):
    item: Condition


@dataclass(frozen=True)
class In(Condition):
    """``columns IN values``.

    ``values`` is a list of scalars (single column), a list of tuples
    (several columns), a sub-query or a :class:`Raw` fragment.
    """

    columns: tuple[Any, ...]
    values: Any
    negated: bool = False


@dataclass(frozen=True)
class Exists(Condition):
    query: Any


def negate(node: Condition) -> Condition:
    """Wrap a condition in ``Not``, unwrapping a double negation."""
    if isinstance(node, Not):
        return node.item
    return Not(node)


def combine(kind: Literal["AND", "OR"], nodes: list[Condition | None]) -> Condition:
    """Join conditions with AND or OR, flattening nested nodes of the same kind.

    Empty combinators and ``None`` entries are dropped. A single remaining
    node is returned as is.
    """
    node_cls = And if kind == "AND" else Or
    flat: list[Condition] = []
    for node in nodes:
        if node is None:
            continue
        if isinstance(node, node_cls):
            flat.extend(node.items)
        elif isinstance(node, (And, Or)) and not node.items:
            continue
        else:
            flat.append(node)
    if len(flat) == 1:
        return flat[0]
    return node_cls(tuple(flat))


def with_default_alias(node: Any, alias: str) -> Any:
    """Qualify every unqualified column in ``node`` with ``alias``."""
    match node:
        case Column(alias=None):
            return Column(node.name, alias)
        case Compare():
            return Compare(with_default_alias(node.left, alias), node.op, with_default_alias(node.right, alias))
        case BinaryOp():
            return BinaryOp(with_default_alias(node.left, alias), node.op, with_default_alias(node.right, alias))
        case And():
            return And(tuple(with_default_alias(item, alias) for item in node.items))
        case Or():
            return Or(tuple(with_default_alias(item, alias) for item in node.items))
        case Not():
            return Not(with_default_alias(node.item, alias))
        case In():
            columns = tuple(with_default_alias(column, alias) for column in node.columns)
            return In(columns, node.values, node.negated)
    return node


def and_(*nodes: Condition | None) -> Condition:
    return combine("AND", list(nodes))


def or_(*nodes: Condition | None) -> Condition:
    return combine("OR", list(nodes))


# ========== Keyword filters ==========

_OPERATORS = {
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "ne": "<>",
    "like": "LIKE",
    "ilike": "ILIKE",
    "in": "IN",
    "notin": "NOT IN",
    "isnull": "IS NULL",
    "contains": "LIKE",
    "icontains": "ILIKE",
    "startswith": "LIKE",
    "istartswith": "ILIKE",
    "endswith": "LIKE",
    "iendswith": "ILIKE",
    "has_key": "?",
    "json_contains": "@>",
}


def parse_filter_key(key: str) -> tuple[str, str]:
    """Split a Django-style filter key into a column reference and an operator name.

    Example:
        >>> parse_filter_key("age__gte")
        ('age', 'gte')
        >>> parse_filter_key("author.name")
        ('author.name', 'eq')
    """
    if "__" in key:
        column, op = key.rsplit("__", 1)
        if op in _OPERATORS:
            return column, op
    return key, "eq"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def filter_condition(key: str, value: Any) -> Condition:
    """Build a condition from a single keyword filter."""
    ref, op = parse_filter_key(key)
    column = Column.parse(ref)

    if op == "eq":
        if value is None:
            return Compare(column, "IS", None)
        return Compare(column, "=", value)
    if op == "ne":
        if value is None:
            return Compare(column, "IS NOT", None)
        return Compare(column, "<>", value)
    if op in ("in", "notin"):
        if isinstance(value, (tuple, set, frozenset)):
            value = list(value)
        return In((column,), value, negated=op == "notin")
    if op == "isnull":
        return Compare(column, "IS" if value else "IS NOT", None)
    if op in ("contains", "icontains"):
        return Compare(column, _OPERATORS[op], f"%{_escape_like(value)}%")
    if op in ("startswith", "istartswith"):
        return Compare(column, _OPERATORS[op], f"{_escape_like(value)}%")
    if op in ("endswith", "iendswith"):
        return Compare(column, _OPERATORS[op], f"%{_escape_like(value)}")
    return Compare(column, _OPERATORS[op], value)


def filters_to_conditions(filters: dict[str, Any]) -> list[Condition]:
    return [filter_condition(key, value) for key, value in filters.items()]


def Q(*conditions: Condition, **filters: Any) -> Condition:  # noqa: N802
    """Build a condition from keyword filters, ANDed with any given conditions.

    Supported operators:
        - field=value: exact match (``IS NULL`` for None)
        - field__gt / __gte / __lt / __lte / __ne
        - field__like / __ilike: raw LIKE pattern
        - field__in / __notin: list or sub-query
        - field__isnull=True/False
        - field__contains / __icontains / __startswith / __endswith (and i- variants)
        - field__has_key / __json_contains: JSONB operators

    Example:
        >>> query.where(Q(age__gt=18) | Q(vip=True))
    """
    return combine("AND", [*conditions, *filters_to_conditions(filters)])
