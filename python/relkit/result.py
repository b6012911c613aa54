"""Turning driver rows into the shape a query asked for."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from relkit.errors import NotFoundError
from relkit.expressions import Column
from relkit.fields import _load_json

if TYPE_CHECKING:
    from relkit.base import Base
    from relkit.fields import ColumnInfo
    from relkit.query import Query

Decoder = Callable[[Any], Any]
RowParser = Callable[[Mapping[str, Any]], dict[str, Any]]


def _identity(value: Any) -> Any:
    return value


def _model_for_alias(query: Query, alias: str | None) -> type[Base] | None:
    if alias is None or alias == query.alias:
        return query.model
    for join in query.joins:
        if join.alias == alias:
            return getattr(join.target, "model", None)
    return None


def _column_decoders(model: type[Base] | None) -> dict[str, Decoder]:
    if model is None:
        return {}
    return {key: info.decode_value for key, info in model.__columns__.items()}


def _lookup(model: type[Base] | None, name: str) -> ColumnInfo | None:
    if model is None:
        return None
    return model.__columns__.get(name) or model.column_by_db_name(name)


def _item_decoders(query: Query, key: str | None, item: Any) -> dict[str, Decoder]:
    from relkit.query import Query

    if isinstance(item, str):
        if item == "*":
            return _column_decoders(query.model)
        if item.endswith(".*"):
            return _column_decoders(_model_for_alias(query, item[:-2]))
        item = Column.parse(item)
    if isinstance(item, Column):
        info = _lookup(_model_for_alias(query, item.alias), item.name)
        output = key or (info.key if info and info.key else item.name)
        return {output: info.decode_value if info else _identity}
    if isinstance(item, Query):
        return {key or str(item.alias): sub_select_decoder(item)}
    if key:
        return {key: _identity}
    return {}


def value_decoder(query: Query) -> Decoder:
    """Decoder for the single selected column of a pluck or value query."""
    if len(query.selects) != 1:
        return _identity
    decoders = _item_decoders(query, None, query.selects[0][1])
    return next(iter(decoders.values()), _identity)


def build_parser(query: Query) -> RowParser:
    """Build a function converting one raw row of ``query`` into a dict."""
    if not query.selects:
        decoders = _column_decoders(query.model)
    else:
        decoders = {}
        for key, item in query.selects:
            decoders.update(_item_decoders(query, key, item))

    def parse(row: Mapping[str, Any]) -> dict[str, Any]:
        return {key: decoders.get(key, _identity)(value) for key, value in row.items()}

    return parse


def sub_select_decoder(query: Query) -> Decoder:
    """Decode the JSON produced by a relation sub-select."""
    shape = query.shape
    if shape == "all":
        parse = build_parser(query)
        return lambda value: [parse(row) for row in (_load_json(value) or [])]
    if shape in ("one", "one_or_throw"):
        parse = build_parser(query)

        def decode_one(value: Any) -> dict[str, Any] | None:
            record = _load_json(value)
            if record is None:
                if shape == "one_or_throw":
                    raise NotFoundError(query.table)
                return None
            return parse(record)

        return decode_one
    if shape == "pluck":
        decode = value_decoder(query)
        return lambda value: [decode(v) for v in (_load_json(value) or [])]
    if shape in ("value", "value_or_throw"):
        decode = value_decoder(query)

        def decode_value(value: Any) -> Any:
            if value is None and shape == "value_or_throw":
                raise NotFoundError(query.table)
            return decode(value)

        return decode_value
    if shape == "exists":
        return bool
    return _identity


def apply_shape(query: Query, rows: list[Mapping[str, Any]], row_count: int) -> Any:
    """Convert the rows returned for ``query`` into its result shape.

    Raises:
        NotFoundError: ``one_or_throw`` and ``value_or_throw`` with no rows
    """
    shape = query.shape
    if shape == "void":
        return None
    if shape == "row_count":
        return row_count
    if shape == "exists":
        return bool(rows)
    if shape in ("pluck", "value", "value_or_throw"):
        decode = value_decoder(query)
        values = [decode(next(iter(row.values()), None)) for row in rows]
        if shape == "pluck":
            return values
        if not values:
            if shape == "value_or_throw":
                raise NotFoundError(query.table)
            return None
        return values[0]

    parse = build_parser(query)
    records = [parse(row) for row in rows]
    if shape == "all":
        return records
    if shape == "rows":
        return [tuple(record.values()) for record in records]
    if not records:
        if shape == "one_or_throw":
            raise NotFoundError(query.table)
        return None
    return records[0]


def returning_query(query: Query) -> Query:
    """The query whose select list describes the rows a write returns."""
    if query.returning_columns is None:
        return query
    return query._clone(selects=tuple((None, column) for column in query.returning_columns))
