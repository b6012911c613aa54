"""Create, update and delete with nested relation operations.

A create or update payload may carry, under a relation name, a mapping of
nested operations::

    await session.query(User).create({
        "name": "Alice",
        "messages": {"create": [{"text": "a"}, {"text": "b"}]},
        "profile": {"connect_or_create": {"where": {"id": 1}, "create": {"bio": "hi"}}},
    })

    await session.query(User).find(1).update({
        "messages": {"update": {"where": {"id": 3}, "data": {"text": "c"}}, "delete": [{"id": 4}]},
        "roles": {"set": [{"name": "admin"}, {"name": "dev"}]},
    })

Statements run in dependency order inside one transaction: records the
parent points at (belongs-to) first, then the parent, then the records
pointing at the parent. Every step is issued once per batch, so
``create_many`` with nested children still inserts all children in one
statement.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from contextlib import nullcontext
from functools import partial
from typing import TYPE_CHECKING, Any

from relkit.errors import (
    EmptyWriteSetError,
    InvalidNestedWriteError,
    MoreThanOneRowError,
    NotFoundError,
    QueryBuildError,
    QueryShapeError,
    UnsupportedBatchJoinCreateError,
)
from relkit.expressions import Case, Column, Condition, In, Value, combine, filters_to_conditions
from relkit.query import Query
from relkit.relationships import BelongsTo, HasAndBelongsToMany, HasMany, Relation, Through
from relkit.result import apply_shape, build_parser, returning_query

if TYPE_CHECKING:
    from relkit.adapters.base import QueryResult


CREATE_OPS = frozenset({"create", "connect", "connect_or_create"})
UPDATE_OPS = {
    "belongs_to": frozenset({"create", "connect", "set", "disconnect", "update", "delete"}),
    "has_one": frozenset({"create", "connect", "disconnect", "set", "update", "delete"}),
    "has_many": frozenset({"create", "connect", "disconnect", "set", "update", "delete"}),
    "has_and_belongs_to_many": frozenset({"create", "connect", "disconnect", "set", "update", "delete"}),
}

# ========== Helpers ==========


async def _call(hook: Callable[..., Any], *args: Any) -> None:
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


def _fresh(query: Query) -> Query:
    """A query on the same table without any read clauses."""
    if query.model is not None:
        fresh = Query.for_model(query.model, session=query.session)
    else:
        fresh = Query.for_table(query.table, session=query.session, schema=query.schema)
    return fresh._mutate(hooks=query.hooks, conflict=query.conflict)


def _target(relation: Relation, query: Query) -> Query:
    return Query.for_model(relation.target_model, session=query.session)


async def _run(query: Query) -> QueryResult:
    return await query._session().run_query(query)


def _parse(query: Query, result: QueryResult) -> list[dict[str, Any]]:
    parse = build_parser(returning_query(query))
    return [parse(row) for row in result.rows]


async def _fetch(query: Query) -> list[dict[str, Any]]:
    return _parse(query, await _run(query))


def _conditions(value: Any) -> list[Condition]:
    """Normalize a nested ``where``: a mapping, a condition, or a list of them (OR'ed)."""
    items = value if isinstance(value, list) else [value]
    conditions: list[Condition] = []
    for item in items:
        if isinstance(item, dict):
            conditions.append(combine("AND", filters_to_conditions(item)))
        elif isinstance(item, Condition):
            conditions.append(item)
        else:
            raise QueryBuildError(f"Cannot use {item!r} as a nested where condition")
    return conditions


def _key_tuple(record: dict[str, Any], keys: tuple[str, ...]) -> tuple[Any, ...]:
    return tuple(record[key] for key in keys)


def _keys_in(keys: tuple[str, ...], values: list[tuple[Any, ...]]) -> Condition:
    if len(keys) == 1:
        return In((Column(keys[0]),), [value[0] for value in values])
    return In(tuple(Column(key) for key in keys), values)


def _assign(target_keys: tuple[str, ...], record: dict[str, Any] | None, source_keys: tuple[str, ...]) -> dict[str, Any]:
    if record is None:
        return dict.fromkeys(target_keys)
    return {target: record[source] for target, source in zip(target_keys, source_keys, strict=True)}


def _select_keys(query: Query, keys: tuple[str, ...]) -> Query:
    return query._clone(selects=tuple((None, Column(key)) for key in keys))


async def _lookup(query: Query, where: Any, keys: tuple[str, ...], *, strict: bool) -> dict[str, Any] | None:
    found = _select_keys(query.where(*_conditions(where)), keys)
    found = found.take() if strict else found.take_optional()
    return await query._session().execute(found)


def _many(relation: Relation, operation: str, value: Any, table: str) -> list[Any]:
    items = value if isinstance(value, list) else [value]
    if not relation.many and len(items) > 1:
        raise InvalidNestedWriteError(table, str(relation.name), operation, "accepts a single record")
    return items


def _split(
    query: Query, rows: list[dict[str, Any]], operation: str
) -> tuple[list[dict[str, Any]], dict[str, list[dict[str, Any] | None]]]:
    """Separate column values from nested relation payloads."""
    model = query.model
    if model is None:
        return rows, {}
    model._resolve_relationships()  # type: ignore[attr-defined]
    relations = model.__relationships__

    plain_rows: list[dict[str, Any]] = []
    payloads: dict[str, list[dict[str, Any] | None]] = {}
    for index, row in enumerate(rows):
        plain: dict[str, Any] = {}
        for key, value in row.items():
            if key in model.__columns__ or key not in relations:
                plain[key] = value
                continue
            relation = relations[key]
            if isinstance(relation, Through):
                raise InvalidNestedWriteError(query.table, key, operation, "through relations are read-only")
            if not isinstance(value, dict):
                raise InvalidNestedWriteError(query.table, key, operation, "expected a mapping of nested operations")
            allowed = CREATE_OPS if operation == "create" else UPDATE_OPS[relation.kind]
            unknown = sorted(set(value) - allowed)
            if unknown:
                raise InvalidNestedWriteError(query.table, key, unknown[0], "unsupported nested operation")
            if isinstance(relation, BelongsTo) and len(value) > 1:
                raise InvalidNestedWriteError(
                    query.table, key, operation, "belongs-to accepts one nested operation at a time"
                )
            payloads.setdefault(key, [None] * len(rows))[index] = value
        plain_rows.append(plain)
    return plain_rows, payloads


def _has_nested(query: Query, rows: list[dict[str, Any]]) -> bool:
    if query.model is None:
        return False
    relations = query.model.__relationships__
    return any(key in relations and key not in query.model.__columns__ for row in rows for key in row)


# ========== Create ==========


async def create_records(query: Query, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Insert ``rows`` with their nested relation operations."""
    session = query._session()
    if query.link is not None:
        async with session.transaction():
            return await _create_from_parent(query, rows)

    if query.model is not None:
        query.model._resolve_relationships()  # type: ignore[attr-defined]
    ctx = session.transaction() if _has_nested(query, rows) else nullcontext()
    async with ctx:
        return await _create(_fresh(query), rows)


async def _create(query: Query, rows: list[dict[str, Any]], source: Query | None = None) -> list[dict[str, Any]]:
    rows = [dict(row) for row in rows]
    for hook in query.hooks_for("before_create"):
        await _call(hook, rows)

    plain, payloads = _split(query, rows, "create")
    relations = query.model.__relationships__ if query.model is not None else {}

    for name, items in payloads.items():
        relation = relations[name]
        if isinstance(relation, BelongsTo):
            await _create_belongs_to(query, relation, plain, items)

    if source is not None:
        insert = query.for_insert_from(source, plain[0]).returning()
    else:
        insert = query.for_insert(plain).returning()
    records = await _fetch(insert)

    for name, items in payloads.items():
        relation = relations[name]
        if isinstance(relation, HasAndBelongsToMany):
            await _create_habtm(query, relation, records, items)
        elif isinstance(relation, HasMany):
            await _create_has(query, relation, records, items)

    await _after(query, "create", records)
    return records


async def _after(query: Query, event: str, records: list[dict[str, Any]]) -> None:
    for hook in query.hooks_for(f"after_{event}"):
        await _call(hook, records)
    session = query._session()
    for hook in query.hooks_for(f"after_{event}_commit"):
        await session.after_commit(partial(hook, records))


async def _create_belongs_to(
    query: Query, relation: BelongsTo, plain: list[dict[str, Any]], items: list[dict[str, Any] | None]
) -> None:
    target = _target(relation, query)
    fks, pks = relation.foreign_keys, relation.primary_keys
    pending: list[tuple[int, dict[str, Any]]] = []

    for index, payload in enumerate(items):
        if payload is None:
            continue
        if "create" in payload:
            pending.append((index, payload["create"]))
        elif "connect" in payload:
            record = await _lookup(target, payload["connect"], pks, strict=True)
            plain[index].update(_assign(fks, record, pks))
        elif "connect_or_create" in payload:
            item = payload["connect_or_create"]
            record = await _lookup(target, item["where"], pks, strict=False)
            if record is None:
                pending.append((index, item["create"]))
            else:
                plain[index].update(_assign(fks, record, pks))

    if pending:
        created = await _create(target, [data for _, data in pending])
        for (index, _), record in zip(pending, created, strict=True):
            plain[index].update(_assign(fks, record, pks))


async def _create_has(
    query: Query, relation: HasMany, records: list[dict[str, Any]], items: list[dict[str, Any] | None]
) -> None:
    target = _target(relation, query)
    fks, pks = relation.foreign_keys, relation.primary_keys
    name = str(relation.name)

    child_rows: list[dict[str, Any]] = []
    owners: list[int] = []
    connects: list[tuple[int, list[Condition]]] = []
    attached: dict[int, list[Any]] = {}

    for index, payload in enumerate(items):
        if payload is None:
            continue
        parent = records[index]
        # one bound parameter per parent key, shared by all its children
        keys = {fk: Value(parent[pk]) for fk, pk in zip(fks, pks, strict=True)}
        for data in _many(relation, "create", payload.get("create", []), query.table):
            child_rows.append({**keys, **data})
            owners.append(index)
        if "connect" in payload:
            conditions = _conditions(payload["connect"])
            if conditions:
                connects.append((index, conditions))

    if child_rows:
        created = await _create(target, child_rows)
        for index, record in zip(owners, created, strict=True):
            attached.setdefault(index, []).append(record)

    if connects:
        await _connect_has(target, relation, records, connects)

    for index, payload in enumerate(items):
        if payload is not None and "connect_or_create" in payload:
            items_ = _many(relation, "connect_or_create", payload["connect_or_create"], query.table)
            results = await _connect_or_create_has(target, relation, records[index], items_)
            attached.setdefault(index, []).extend(results)

    for index, found in attached.items():
        records[index][name] = found if relation.many else found[0]


async def _connect_has(
    target: Query, relation: HasMany, records: list[dict[str, Any]], connects: list[tuple[int, list[Condition]]]
) -> None:
    """Point matched children at their parents in one UPDATE.

    Children that match nothing are silently skipped.
    """
    fks, pks = relation.foreign_keys, relation.primary_keys
    matched = [combine("OR", conditions) for _, conditions in connects]
    if len(connects) == 1:
        data = _assign(fks, records[connects[0][0]], pks)
    else:
        data = {
            fk: Case(tuple((cond, records[index][pk]) for (index, _), cond in zip(connects, matched, strict=True)))
            for fk, pk in zip(fks, pks, strict=True)
        }
    await _run(target.where(combine("OR", matched)).for_update(data))


async def _connect_or_create_has(
    target: Query, relation: HasMany, parent: dict[str, Any], items: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Connect each item or create it, keeping the order of ``items``."""
    keys = _assign(relation.foreign_keys, parent, relation.primary_keys)
    results: list[dict[str, Any] | None] = []
    missing: list[int] = []
    for item in items:
        update = target.where(*_conditions(item["where"])).for_update(keys).returning()
        found = await _fetch(update)
        results.append(found[0] if found else None)
        if not found:
            missing.append(len(results) - 1)

    if missing:
        shared = {key: Value(value) for key, value in keys.items()}
        created = await _create(target, [{**shared, **items[i]["create"]} for i in missing])
        for position, record in zip(missing, created, strict=True):
            results[position] = record
    return [record for record in results if record is not None]


async def _create_habtm(
    query: Query, relation: HasAndBelongsToMany, records: list[dict[str, Any]], items: list[dict[str, Any] | None]
) -> None:
    target = _target(relation, query)
    apks = relation.association_primary_keys
    name = str(relation.name)

    # (parent index, target record, attach to the returned parent)
    links: list[tuple[int, dict[str, Any] | None, bool]] = []
    pending: list[tuple[int, dict[str, Any]]] = []

    for index, payload in enumerate(items):
        if payload is None:
            continue
        creates = payload.get("create", [])
        creates = creates if isinstance(creates, list) else [creates]
        if len(creates) > 1:
            raise UnsupportedBatchJoinCreateError(query.table, name)
        for data in creates:
            pending.append((len(links), data))
            links.append((index, None, True))
        connects = payload.get("connect", [])
        for where in connects if isinstance(connects, list) else [connects]:
            links.append((index, await _lookup(target, where, apks, strict=True), False))
        coc = payload.get("connect_or_create", [])
        for item in coc if isinstance(coc, list) else [coc]:
            record = await _lookup(target, item["where"], (), strict=False)
            if record is None:
                pending.append((len(links), item["create"]))
            links.append((index, record, True))

    if pending:
        created = await _create(target, [data for _, data in pending])
        for (position, _), record in zip(pending, created, strict=True):
            index, _, attach = links[position]
            links[position] = (index, record, attach)

    await _link(query, relation, [(records[index], record) for index, record, _ in links if record is not None])
    for index, record, attach in links:
        if attach and record is not None:
            records[index].setdefault(name, []).append(record)


async def _link(
    query: Query, relation: HasAndBelongsToMany, pairs: list[tuple[dict[str, Any], dict[str, Any]]]
) -> None:
    """Insert join table rows for ``(owner, target)`` pairs."""
    if not pairs:
        return
    rows = [
        {
            **_assign(relation.foreign_keys, owner, relation.primary_keys),
            **_assign(relation.association_foreign_keys, target, relation.association_primary_keys),
        }
        for owner, target in pairs
    ]
    await _run(relation.join_table_query(query.session).for_insert(rows))


async def _create_from_parent(query: Query, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Create records related to the single record selected by the parent query."""
    assert query.link is not None
    relation, parent = query.link.relation, query.link.parent
    name = str(relation.name)
    target = _fresh(query)

    if parent.shape not in ("one", "one_or_throw"):
        raise QueryShapeError(
            f"Cannot create '{name}' records from a query on '{parent.table}' that returns many rows"
        )
    if isinstance(relation, Through):
        raise InvalidNestedWriteError(parent.table, name, "create", "through relations are read-only")

    if isinstance(relation, BelongsTo):
        if len(rows) > 1:
            raise InvalidNestedWriteError(parent.table, name, "create", "accepts a single record")
        created = await _create(target, rows)
        update = parent._clone(selects=(), returning_columns=None, shape="one_or_throw")
        await update_records(update, _assign(relation.foreign_keys, created[0], relation.primary_keys))
        return created

    if isinstance(relation, HasAndBelongsToMany):
        if len(rows) > 1:
            raise UnsupportedBatchJoinCreateError(parent.table, name)
        owner = await _parent_keys(parent, relation.primary_keys)
        created = await _create(target, rows)
        await _link(query, relation, [(owner, created[0])])
        return created

    assert isinstance(relation, HasMany)
    if len(rows) > 1 and not relation.many:
        raise InvalidNestedWriteError(parent.table, name, "create", "accepts a single record")
    if len(rows) == 1 and not _has_nested(target, rows):
        # INSERT ... SELECT reads the key straight from the parent query
        source = parent._clone(
            selects=tuple(
                (fk, Column(pk, str(parent.alias)))
                for fk, pk in zip(relation.foreign_keys, relation.primary_keys, strict=True)
            ),
            shape="all",
            order=(),
        )
        created = await _create(target, rows, source=source)
        if not created:
            raise NotFoundError(parent.table)
        return created

    owner = await _parent_keys(parent, relation.primary_keys)
    keys = {key: Value(value) for key, value in _assign(relation.foreign_keys, owner, relation.primary_keys).items()}
    return await _create(target, [{**keys, **row} for row in rows])


async def _parent_keys(parent: Query, keys: tuple[str, ...]) -> dict[str, Any]:
    lookup = _select_keys(parent, keys)._clone(shape="one_or_throw", limit_value=1)
    return await parent._session().execute(lookup)


# ========== Update ==========


async def update_records(query: Query, data: dict[str, Any]) -> Any:
    """Update the rows matched by ``query``, running nested relation operations.

    Returns the number of updated rows, or the updated records (in the
    query's result shape) when the query has a select list or ``returning``.
    """
    session = query._session()
    data = dict(data)
    for hook in query.hooks_for("before_update"):
        await _call(hook, data)

    plain_rows, payloads = _split(query, [data], "update")
    nested = {name: items[0] for name, items in payloads.items() if items[0] is not None}
    ctx = session.transaction() if nested else nullcontext()
    async with ctx:
        return await _update(query, plain_rows[0], nested)


async def _update(query: Query, plain: dict[str, Any], nested: dict[str, dict[str, Any]]) -> Any:
    model = query.model
    relations = model.__relationships__ if model is not None else {}
    deferred: list[Callable[[], Any]] = []

    for name, payload in nested.items():
        relation = relations[name]
        if isinstance(relation, BelongsTo):
            await _update_belongs_to(query, relation, plain, payload, deferred)

    if plain and model is not None:
        for key, column in model.__columns__.items():
            if column.onupdate is not None and key not in plain:
                plain[key] = column.onupdate()

    has_kinds = {name: p for name, p in nested.items() if not isinstance(relations[name], BelongsTo)}
    wants_records = bool(query.selects or query.returning_columns is not None)
    needs_parents = bool(has_kinds) or bool(query.hooks_for("after_update") or query.hooks_for("after_update_commit"))
    parents: list[dict[str, Any]] = []
    shaped: Any = None

    if plain:
        update = query.for_update(plain)
        if needs_parents:
            update = update._clone(returning_columns=("*",))
            result = await _run(update)
            parents = _parse(update, result)
        else:
            result = await _run(update)
            if wants_records:
                shaped = apply_shape(returning_query(update), result.rows, result.row_count)
        row_count = result.row_count
    elif nested:
        if model is not None and model.__primary_key__:
            parents = await _fetch(_select_keys(query, model.__primary_key__)._clone(shape="all"))
        row_count = len(parents)
    else:
        raise EmptyWriteSetError(query.table)

    if row_count == 0 and query.shape in ("one_or_throw", "value_or_throw"):
        raise NotFoundError(query.table)

    for action in deferred:
        await action()

    for name, payload in has_kinds.items():
        relation = relations[name]
        if isinstance(relation, HasAndBelongsToMany):
            await _update_habtm(query, relation, parents, payload)
        elif isinstance(relation, HasMany):
            await _update_has(query, relation, parents, payload)

    await _after(query, "update", parents)

    if not wants_records:
        return row_count
    if plain and not needs_parents:
        return shaped
    assert model is not None
    keys = model.__primary_key__
    reload = query._clone(conditions=(), link=None).where(_keys_in(keys, [_key_tuple(p, keys) for p in parents]))
    return await query._session().execute(reload)


async def _update_belongs_to(
    query: Query,
    relation: BelongsTo,
    plain: dict[str, Any],
    payload: dict[str, Any],
    deferred: list[Callable[[], Any]],
) -> None:
    target = _target(relation, query)
    fks, pks = relation.foreign_keys, relation.primary_keys
    name = str(relation.name)
    op, value = next(iter(payload.items()))

    match op:
        case "create":
            created = await _create(target, [value])
            plain.update(_assign(fks, created[0], pks))
        case "connect" | "set":
            record = await _lookup(target, value, pks, strict=True)
            plain.update(_assign(fks, record, pks))
        case "disconnect":
            if not value:
                return
            if not relation.nullable:
                raise InvalidNestedWriteError(query.table, name, op, "the foreign key is not nullable")
            plain.update(dict.fromkeys(fks))
        case "update":
            related = query.related(name)._clone(shape="all")
            await update_records(related, value)
        case "delete":
            if not value:
                return
            if not relation.nullable:
                raise InvalidNestedWriteError(query.table, name, op, "the foreign key is not nullable")
            related = _select_keys(query.related(name), pks)._clone(shape="all")
            keys = [_key_tuple(record, pks) for record in await query._session().execute(related)]
            plain.update(dict.fromkeys(fks))
            if keys:
                deferred.append(partial(delete_records, target.where(_keys_in(pks, keys))))


async def _update_has(
    query: Query, relation: HasMany, parents: list[dict[str, Any]], payload: dict[str, Any]
) -> None:
    if not parents:
        return
    target = _target(relation, query)
    fks, pks = relation.foreign_keys, relation.primary_keys
    name = str(relation.name)
    owned = _keys_in(fks, [_key_tuple(parent, pks) for parent in parents])

    def single_parent(op: str) -> dict[str, Any]:
        if len(parents) > 1:
            raise InvalidNestedWriteError(query.table, name, op, "requires a query matching a single record")
        return parents[0]

    for op, value in payload.items():
        match op:
            case "create":
                rows = []
                for parent in parents:
                    keys = {fk: Value(parent[pk]) for fk, pk in zip(fks, pks, strict=True)}
                    rows.extend({**keys, **data} for data in _many(relation, op, value, query.table))
                if rows:
                    await _create(target, rows)
            case "connect":
                conditions = _conditions(value)
                if conditions:
                    parent = single_parent(op)
                    await _run(target.where(combine("OR", conditions)).for_update(_assign(fks, parent, pks)))
            case "disconnect":
                if not relation.nullable:
                    raise InvalidNestedWriteError(query.table, name, op, "the foreign key is not nullable")
                if relation.many:
                    conditions = _conditions(value)
                    if not conditions:
                        continue
                    matched = target.where(owned, combine("OR", conditions))
                elif value:
                    matched = target.where(owned)
                else:
                    continue
                await _run(matched.for_update(dict.fromkeys(fks)))
            case "set":
                if not relation.nullable:
                    raise InvalidNestedWriteError(query.table, name, op, "the foreign key is not nullable")
                conditions = _conditions(value)
                if not conditions:
                    continue
                parent = single_parent(op)
                await _run(target.where(owned).for_update(dict.fromkeys(fks)))
                await _run(target.where(combine("OR", conditions)).for_update(_assign(fks, parent, pks)))
            case "update":
                if relation.many:
                    conditions = _conditions(value["where"])
                    if not conditions:
                        continue
                    await update_records(target.where(owned, combine("OR", conditions)), value["data"])
                else:
                    await update_records(target.where(owned), value)
            case "delete":
                if relation.many:
                    conditions = _conditions(value)
                    if not conditions:
                        continue
                    await delete_records(target.where(owned, combine("OR", conditions)))
                elif value:
                    await delete_records(target.where(owned))


async def _update_habtm(
    query: Query, relation: HasAndBelongsToMany, parents: list[dict[str, Any]], payload: dict[str, Any]
) -> None:
    if not parents:
        return
    target = _target(relation, query)
    join_table = relation.join_table_query(query.session)
    apks = relation.association_primary_keys
    owners = _keys_in(relation.foreign_keys, [_key_tuple(parent, relation.primary_keys) for parent in parents])
    linked = In(
        tuple(Column(key) for key in apks),
        join_table.where(owners).select(*relation.association_foreign_keys),
    )

    for op, value in payload.items():
        match op:
            case "create":
                items = value if isinstance(value, list) else [value]
                if items:
                    created = await _create(target, items)
                    await _link(query, relation, [(p, record) for p in parents for record in created])
            case "connect":
                conditions = _conditions(value)
                records = [await _lookup(target, where, apks, strict=True) for where in conditions]
                await _link(query, relation, [(p, record) for p in parents for record in records if record])
            case "disconnect":
                conditions = _conditions(value)
                if not conditions:
                    continue
                matched = _select_keys(target.where(combine("OR", conditions)), apks)
                unlinked = In(tuple(Column(key) for key in relation.association_foreign_keys), matched)
                await _run(join_table.where(owners, unlinked).for_delete())
            case "set":
                conditions = _conditions(value)
                if not conditions:
                    continue
                await _run(join_table.where(owners).for_delete())
                records = await _fetch(_select_keys(target.where(combine("OR", conditions)), apks))
                await _link(query, relation, [(p, record) for p in parents for record in records])
            case "update":
                conditions = _conditions(value["where"])
                if not conditions:
                    continue
                await update_records(target.where(linked, combine("OR", conditions)), value["data"])
            case "delete":
                conditions = _conditions(value)
                if not conditions:
                    continue
                doomed = await _fetch(_select_keys(target.where(linked, combine("OR", conditions)), apks))
                if not doomed:
                    continue
                keys = [_key_tuple(record, apks) for record in doomed]
                await _run(join_table.where(_keys_in(relation.association_foreign_keys, keys)).for_delete())
                await delete_records(target.where(_keys_in(apks, keys)))


# ========== Delete ==========


async def delete_records(query: Query) -> Any:
    """Delete the rows matched by ``query``.

    Returns the number of deleted rows, or the deleted records when the query
    has a select list or ``returning``.
    """
    for hook in query.hooks_for("before_delete"):
        await _call(hook, query)

    wants_records = bool(query.selects or query.returning_columns is not None)
    has_after = bool(query.hooks_for("after_delete") or query.hooks_for("after_delete_commit"))
    delete = query.for_delete()
    if has_after and not wants_records:
        delete = delete._clone(returning_columns=("*",))

    result = await _run(delete)
    if result.row_count == 0 and query.shape in ("one_or_throw", "value_or_throw"):
        raise NotFoundError(query.table)

    records = _parse(delete, result) if (has_after or wants_records) else []
    await _after(query, "delete", records)
    if wants_records:
        return apply_shape(returning_query(delete), result.rows, result.row_count)
    return result.row_count


# ========== Upsert ==========


def _require_single(query: Query, operation: str) -> None:
    if query.shape not in ("one", "one_or_throw"):
        raise QueryShapeError(
            f"{operation} on '{query.table}' requires a query returning one record (find, find_by, take)"
        )


async def upsert_record(
    query: Query,
    update: dict[str, Any],
    create: dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any]],
) -> dict[str, Any]:
    """Update the record matched by ``query`` or create it when none matched.

    ``create`` may be a callable receiving the update data.

    Raises:
        MoreThanOneRowError: If the query matched several records
    """
    _require_single(query, "upsert")
    session = query._session()
    async with session.transaction():
        updated = await update_records(query._clone(shape="all", limit_value=None).returning(), update)
        if len(updated) > 1:
            raise MoreThanOneRowError(query.table, count=len(updated))
        if updated:
            return updated[0]
        data = create(update) if callable(create) else create
        return (await _create(_fresh(query), [data]))[0]


async def or_create_record(query: Query, data: dict[str, Any] | Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Return the record matched by ``query`` or create it from ``data``.

    Raises:
        MoreThanOneRowError: If the query matched several records
    """
    _require_single(query, "or_create")
    session = query._session()
    async with session.transaction():
        found = await session.execute(query._clone(shape="all", limit_value=2))
        if len(found) > 1:
            raise MoreThanOneRowError(query.table, count=len(found))
        if found:
            return found[0]
        values = data() if callable(data) else data
        return (await _create(_fresh(query), [values]))[0]

