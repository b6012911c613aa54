"""Tests for nested creates, updates, deletes and upserts."""

from datetime import datetime

import pytest
from models import MESSAGE_RETURNING, Article, Message, User

from relkit import (
    EmptyWriteSetError,
    InvalidNestedWriteError,
    MoreThanOneRowError,
    NotFoundError,
    QueryShapeError,
    UnsupportedBatchJoinCreateError,
)

PARENT_LOOKUP = 'SELECT "id" FROM "users" WHERE "users"."id" = $1 LIMIT $2'
USER_ROLE_IDS = 'SELECT "role_id" FROM "user_roles" WHERE "user_roles"."user_id" IN'

# ========== Create ==========


async def test_plain_create_has_no_transaction(session, adapter):
    """Test that a create without nested data is a single statement."""
    adapter.add([{"id": 1, "name": "a", "email": None, "settings": None}])

    user = await session.query(User).create({"name": "a"})

    assert user == {"id": 1, "name": "a", "email": None, "settings": None}
    assert adapter.sql == ['INSERT INTO "users" ("name") VALUES ($1) RETURNING *']
    assert adapter.params == [["a"]]


async def test_create_with_has_many(session, adapter):
    """Test that children are inserted after the parent with its key."""
    adapter.add([{"id": 1, "name": "a"}])
    adapter.add([{"id": 10, "chat_id": 1, "author_id": 1, "text": "x"}])

    user = await session.query(User).create(
        {"name": "a", "messages": {"create": [{"text": "x", "chat_id": 1}]}}
    )

    assert adapter.sql == [
        "BEGIN",
        'INSERT INTO "users" ("name") VALUES ($1) RETURNING *',
        f'INSERT INTO "messages" ("authorId", "text", "chat_id") VALUES ($1, $2, $3) RETURNING {MESSAGE_RETURNING}',
        "COMMIT",
    ]
    assert adapter.params[2] == [1, "x", 1]
    assert user["messages"] == [{"id": 10, "chat_id": 1, "author_id": 1, "text": "x"}]


async def test_create_many_batches_children(session, adapter):
    """Test that children of several parents go into one INSERT."""
    adapter.add([{"id": 1, "name": "u1"}, {"id": 2, "name": "u2"}])
    adapter.add(
        [
            {"id": 10, "author_id": 1, "text": "a"},
            {"id": 11, "author_id": 1, "text": "b"},
            {"id": 12, "author_id": 2, "text": "c"},
            {"id": 13, "author_id": 2, "text": "d"},
        ]
    )

    users = await session.query(User).create_many(
        [
            {"name": "u1", "messages": {"create": [{"text": "a"}, {"text": "b"}]}},
            {"name": "u2", "messages": {"create": [{"text": "c"}, {"text": "d"}]}},
        ]
    )

    assert adapter.sql[1] == 'INSERT INTO "users" ("name") VALUES ($1), ($2) RETURNING *'
    assert adapter.sql[2] == (
        'INSERT INTO "messages" ("authorId", "text") VALUES ($1, $2), ($1, $3), ($4, $5), ($4, $6) '
        f"RETURNING {MESSAGE_RETURNING}"
    )
    assert adapter.params[2] == [1, "a", "b", 2, "c", "d"]
    assert [m["text"] for m in users[0]["messages"]] == ["a", "b"]
    assert [m["text"] for m in users[1]["messages"]] == ["c", "d"]


async def test_create_many_empty(session, adapter):
    assert await session.query(User).create_many([]) == []
    assert adapter.calls == []


async def test_create_with_has_one(session, adapter):
    adapter.add([{"id": 1, "name": "a"}])
    adapter.add([{"id": 3, "user_id": 1, "bio": "hi"}])

    user = await session.query(User).create({"name": "a", "profile": {"create": {"bio": "hi"}}})

    assert adapter.sql[2] == 'INSERT INTO "profiles" ("user_id", "bio") VALUES ($1, $2) RETURNING *'
    assert user["profile"] == {"id": 3, "user_id": 1, "bio": "hi"}


async def test_create_with_belongs_to(session, adapter):
    """Test that the referenced record is created before the parent."""
    adapter.add([{"id": 5, "title": "t"}])
    adapter.add([{"id": 9, "chat_id": 5, "author_id": None, "text": "hi"}])

    message = await session.query(Message).create({"text": "hi", "chat": {"create": {"title": "t"}}})

    assert adapter.sql == [
        "BEGIN",
        'INSERT INTO "chats" ("title") VALUES ($1) RETURNING *',
        f'INSERT INTO "messages" ("text", "chat_id") VALUES ($1, $2) RETURNING {MESSAGE_RETURNING}',
        "COMMIT",
    ]
    assert adapter.params[2] == ["hi", 5]
    assert message["chat_id"] == 5


async def test_belongs_to_connect(session, adapter):
    adapter.add([{"id": 5}])
    adapter.add([{"id": 9, "chat_id": 5, "text": "hi"}])

    await session.query(Message).create({"text": "hi", "chat": {"connect": {"id": 5}}})

    assert adapter.sql[1] == 'SELECT "id" FROM "chats" WHERE "chats"."id" = $1 LIMIT $2'
    assert adapter.params[2] == ["hi", 5]


async def test_belongs_to_connect_not_found(session, adapter):
    """Test that connecting to a missing record aborts the write."""
    with pytest.raises(NotFoundError):
        await session.query(Message).create({"text": "hi", "chat": {"connect": {"id": 99}}})

    assert adapter.sql[1] == 'SELECT "id" FROM "chats" WHERE "chats"."id" = $1 LIMIT $2'
    assert adapter.sql[-1] == "ROLLBACK"
    assert not any(sql.startswith("INSERT") for sql in adapter.sql)


async def test_belongs_to_connect_or_create(session, adapter):
    adapter.add([])
    adapter.add([{"id": 6, "title": "new"}])
    adapter.add([{"id": 9, "chat_id": 6, "text": "hi"}])

    message = await session.query(Message).create(
        {"text": "hi", "chat": {"connect_or_create": {"where": {"title": "new"}, "create": {"title": "new"}}}}
    )

    assert adapter.sql[2] == 'INSERT INTO "chats" ("title") VALUES ($1) RETURNING *'
    assert message["chat_id"] == 6


async def test_has_many_connect_on_create(session, adapter):
    """Test that connected children are re-pointed in one UPDATE."""
    adapter.add([{"id": 1, "name": "a"}])

    await session.query(User).create({"name": "a", "messages": {"connect": [{"id": 3}, {"id": 4}]}})

    assert adapter.sql[2] == (
        'UPDATE "messages" SET "authorId" = $1 WHERE "messages"."id" = $2 OR "messages"."id" = $3'
    )
    assert adapter.params[2] == [1, 3, 4]


async def test_habtm_create(session, adapter):
    """Test that a created target is linked through the join table."""
    adapter.add([{"id": 1, "name": "a"}])
    adapter.add([{"id": 2, "name": "admin"}])

    user = await session.query(User).create({"name": "a", "roles": {"create": {"name": "admin"}}})

    assert adapter.sql == [
        "BEGIN",
        'INSERT INTO "users" ("name") VALUES ($1) RETURNING *',
        'INSERT INTO "roles" ("name") VALUES ($1) RETURNING *',
        'INSERT INTO "user_roles" ("user_id", "role_id") VALUES ($1, $2)',
        "COMMIT",
    ]
    assert adapter.params[3] == [1, 2]
    assert user["roles"] == [{"id": 2, "name": "admin"}]


async def test_habtm_batch_create_is_rejected(session, adapter):
    adapter.add([{"id": 1, "name": "a"}])
    with pytest.raises(UnsupportedBatchJoinCreateError):
        await session.query(User).create(
            {"name": "a", "roles": {"create": [{"name": "admin"}, {"name": "dev"}]}}
        )
    assert adapter.sql[-1] == "ROLLBACK"


async def test_has_many_connect_or_create_keeps_order(session, adapter):
    """Test that connected and created children come back in the order given."""
    adapter.add([{"id": 1, "name": "a"}])
    adapter.add([])
    adapter.add([{"id": 2, "author_id": 1, "text": "w2"}])
    adapter.add([{"id": 10, "author_id": 1, "text": "c1"}])

    user = await session.query(User).create(
        {
            "name": "a",
            "messages": {
                "connect_or_create": [
                    {"where": {"id": 1}, "create": {"text": "c1"}},
                    {"where": {"id": 2}, "create": {"text": "c2"}},
                ]
            },
        }
    )

    reassign = f'UPDATE "messages" SET "authorId" = $1 WHERE "messages"."id" = $2 RETURNING {MESSAGE_RETURNING}'
    assert adapter.sql == [
        "BEGIN",
        'INSERT INTO "users" ("name") VALUES ($1) RETURNING *',
        reassign,
        reassign,
        f'INSERT INTO "messages" ("authorId", "text") VALUES ($1, $2) RETURNING {MESSAGE_RETURNING}',
        "COMMIT",
    ]
    assert adapter.params[2:5] == [[1, 1], [1, 2], [1, "c1"]]
    assert [m["text"] for m in user["messages"]] == ["c1", "w2"]


async def test_nested_create_inside_transaction_uses_savepoint(session, adapter):
    """Test that a failed nested create leaves the outer transaction without its rows."""
    adapter.add([{"id": 1, "name": "a"}])

    async with session.transaction():
        with pytest.raises(NotFoundError):
            await session.query(User).create({"name": "a", "roles": {"connect": {"id": 999}}})

    assert adapter.sql == [
        "BEGIN",
        'SAVEPOINT "1"',
        'INSERT INTO "users" ("name") VALUES ($1) RETURNING *',
        'SELECT "id" FROM "roles" WHERE "roles"."id" = $1 LIMIT $2',
        'ROLLBACK TO SAVEPOINT "1"',
        "COMMIT",
    ]


async def test_nested_update_inside_transaction_releases_savepoint(session, adapter):
    adapter.add([{"id": 1, "name": "b"}])
    adapter.add(row_count=1)

    async with session.transaction():
        await session.query(User).find(1).update({"name": "b", "messages": {"delete": {"id": 3}}})

    assert adapter.sql[:2] == ["BEGIN", 'SAVEPOINT "1"']
    assert adapter.sql[-2:] == ['RELEASE SAVEPOINT "1"', "COMMIT"]


async def test_through_is_read_only(session):
    with pytest.raises(InvalidNestedWriteError) as exc_info:
        await session.query(User).create({"name": "a", "chats": {"create": [{"title": "t"}]}})
    assert exc_info.value.relation == "chats"


async def test_unknown_nested_operation(session):
    with pytest.raises(InvalidNestedWriteError) as exc_info:
        await session.query(User).create({"name": "a", "messages": {"explode": []}})
    assert exc_info.value.operation == "explode"


async def test_create_from_related_query(session, adapter):
    """Test that creating through a relation reads the key from the parent."""
    adapter.add([{"id": 10, "chat_id": 1, "author_id": 1, "text": "x"}])

    message = await session.query(User).find(1).related("messages").create({"text": "x"})

    insert = adapter.sql[1]
    assert insert.startswith('INSERT INTO "messages" ("authorId", "text") SELECT "users"."id" AS "author_id"')
    assert 'FROM "users" WHERE "users"."id" = $2' in insert
    assert insert.endswith(f"RETURNING {MESSAGE_RETURNING}")
    assert adapter.params[1] == ["x", 1, 1]
    assert message["author_id"] == 1


async def test_create_from_missing_parent(session, adapter):
    with pytest.raises(NotFoundError):
        await session.query(User).find(1).related("messages").create({"text": "x"})
    assert adapter.sql[-1] == "ROLLBACK"


async def test_create_from_many_parents_is_rejected(session):
    with pytest.raises(QueryShapeError):
        await session.query(User).related("messages").create({"text": "x"})


# ========== Hooks ==========


async def test_create_hooks(session, adapter):
    """Test that before hooks may change the rows and after hooks see records."""
    seen = []

    def before(rows):
        rows[0]["email"] = "a@example.com"

    adapter.add([{"id": 1, "name": "a", "email": "a@example.com"}])
    await session.query(User).before_create(before).after_create(seen.append).create({"name": "a"})

    assert adapter.params[0] == ["a", "a@example.com"]
    assert seen == [[{"id": 1, "name": "a", "email": "a@example.com"}]]


async def test_after_create_commit_waits_for_commit(session, adapter):
    seen = []
    adapter.add([{"id": 1, "name": "a"}])

    async with session.transaction():
        await session.query(User).after_create_commit(seen.append).create({"name": "a"})
        assert seen == []

    assert seen == [[{"id": 1, "name": "a"}]]


# ========== Update ==========


async def test_update_with_nested_delete(session, adapter):
    """Test that has-many children are deleted within the parent's scope."""
    adapter.add([{"id": 1, "name": "b"}])
    adapter.add(row_count=1)

    count = await session.query(User).find(1).update({"name": "b", "messages": {"delete": {"id": 3}}})

    assert count == 1
    assert adapter.sql == [
        "BEGIN",
        'UPDATE "users" SET "name" = $1 WHERE "users"."id" = $2 RETURNING *',
        'DELETE FROM "messages" WHERE "messages"."authorId" IN ($1) AND "messages"."id" = $2',
        "COMMIT",
    ]
    assert adapter.params[2] == [1, 3]


async def test_update_has_many_operations(session, adapter):
    """Test create, connect, disconnect and update of has-many children."""
    adapter.add([{"id": 1}])
    adapter.add([{"id": 10, "author_id": 1, "text": "a"}, {"id": 11, "author_id": 1, "text": "b"}])

    count = await session.query(User).find(1).update(
        {
            "messages": {
                "create": [{"text": "a"}, {"text": "b"}],
                "connect": [{"id": 3}, {"id": 4}],
                "disconnect": {"id": 5},
                "update": {"where": {"id": 6}, "data": {"text": "c"}},
            }
        }
    )

    assert count == 1
    assert adapter.sql == [
        "BEGIN",
        PARENT_LOOKUP,
        f'INSERT INTO "messages" ("authorId", "text") VALUES ($1, $2), ($1, $3) RETURNING {MESSAGE_RETURNING}',
        'UPDATE "messages" SET "authorId" = $1 WHERE "messages"."id" = $2 OR "messages"."id" = $3',
        'UPDATE "messages" SET "authorId" = NULL WHERE "messages"."authorId" IN ($1) AND "messages"."id" = $2',
        'UPDATE "messages" SET "text" = $1 WHERE "messages"."authorId" IN ($2) AND "messages"."id" = $3',
        "COMMIT",
    ]
    assert adapter.params[1:] == [[1, 1], [1, "a", "b"], [1, 3, 4], [1, 5], ["c", 1, 6]]


async def test_update_habtm_set(session, adapter):
    """Test that set replaces every join row of the record."""
    adapter.add([{"id": 1}])
    adapter.add(row_count=2)
    adapter.add([{"id": 3}, {"id": 4}])
    adapter.add(row_count=2)

    await session.query(User).find(1).update({"roles": {"set": [{"id": 3}, {"id": 4}]}})

    assert adapter.sql == [
        "BEGIN",
        PARENT_LOOKUP,
        'DELETE FROM "user_roles" WHERE "user_roles"."user_id" IN ($1)',
        'SELECT "id" FROM "roles" WHERE "roles"."id" = $1 OR "roles"."id" = $2',
        'INSERT INTO "user_roles" ("user_id", "role_id") VALUES ($1, $2), ($3, $4)',
        "COMMIT",
    ]
    assert adapter.params[2:] == [[1], [3, 4], [1, 3, 1, 4]]


async def test_update_habtm_operations(session, adapter):
    """Test connect, disconnect, update and delete through the join table."""
    adapter.add([{"id": 1}])
    adapter.add([{"id": 3}])
    adapter.add(row_count=1)
    adapter.add(row_count=1)
    adapter.add(row_count=1)
    adapter.add([{"id": 5}])

    await session.query(User).find(1).update(
        {
            "roles": {
                "connect": {"id": 3},
                "disconnect": {"id": 4},
                "update": {"where": {"name": "dev"}, "data": {"name": "ops"}},
                "delete": {"id": 5},
            }
        }
    )

    assert adapter.sql == [
        "BEGIN",
        PARENT_LOOKUP,
        'SELECT "id" FROM "roles" WHERE "roles"."id" = $1 LIMIT $2',
        'INSERT INTO "user_roles" ("user_id", "role_id") VALUES ($1, $2)',
        'DELETE FROM "user_roles" WHERE "user_roles"."user_id" IN ($1) '
        'AND "user_roles"."role_id" IN (SELECT "id" FROM "roles" WHERE "roles"."id" = $2)',
        f'UPDATE "roles" SET "name" = $1 WHERE "roles"."id" IN ({USER_ROLE_IDS} ($2)) AND "roles"."name" = $3',
        f'SELECT "id" FROM "roles" WHERE "roles"."id" IN ({USER_ROLE_IDS} ($1)) AND "roles"."id" = $2',
        'DELETE FROM "user_roles" WHERE "user_roles"."role_id" IN ($1)',
        'DELETE FROM "roles" WHERE "roles"."id" IN ($1)',
        "COMMIT",
    ]
    assert adapter.params[2:] == [[3, 1], [1, 3], [1, 4], ["ops", 1, "dev"], [1, 5], [5], [5]]


async def test_update_not_found(session, adapter):
    adapter.add(row_count=0)
    with pytest.raises(NotFoundError):
        await session.query(User).find(1).update({"name": "b"})


async def test_update_returning_records(session, adapter):
    adapter.add([{"id": 1, "name": "b"}])
    records = await session.query(User).where(name="a").returning("id", "name").update({"name": "b"})
    assert records == [{"id": 1, "name": "b"}]
    assert adapter.sql == ['UPDATE "users" SET "name" = $1 WHERE "users"."name" = $2 RETURNING "id", "name"']


async def test_empty_update(session, adapter):
    with pytest.raises(EmptyWriteSetError):
        await session.query(User).find(1).update({})
    assert adapter.calls == []


async def test_set_requires_single_parent(session, adapter):
    """Test that set across several parents is refused."""
    adapter.add([{"id": 1}, {"id": 2}])

    with pytest.raises(InvalidNestedWriteError):
        await session.query(User).where(name="x").update({"messages": {"set": [{"id": 1}]}})

    assert adapter.sql[1] == 'SELECT "id" FROM "users" WHERE "users"."name" = $1'
    assert adapter.sql[-1] == "ROLLBACK"


async def test_disconnect_required_belongs_to(session):
    with pytest.raises(InvalidNestedWriteError):
        await session.query(Message).find(1).update({"chat": {"disconnect": True}})


async def test_empty_nested_where_is_a_no_op(session, adapter):
    """Test that an empty list of conditions issues no child statements."""
    adapter.add([{"id": 1}])
    await session.query(User).find(1).update({"messages": {"delete": []}})
    assert not any(sql.startswith("DELETE") for sql in adapter.sql)


async def test_increment(session, adapter):
    adapter.add(row_count=1)
    assert await session.query(User).find(1).increment(id=1) == 1
    assert adapter.sql[0].startswith('UPDATE "users" SET "id" = ')
    assert " + $1 WHERE " in adapter.sql[0]
    assert adapter.params == [[1, 1]]


# ========== Delete ==========


async def test_delete_returns_count(session, adapter):
    adapter.add(row_count=2)
    assert await session.query(User).where(name="a").delete() == 2
    assert adapter.sql == ['DELETE FROM "users" WHERE "users"."name" = $1']


async def test_delete_with_after_hook(session, adapter):
    """Test that after-delete hooks receive the deleted rows."""
    seen = []
    adapter.add([{"id": 1, "name": "a"}])

    count = await session.query(User).where(name="a").after_delete(seen.append).delete()

    assert count == 1
    assert adapter.sql == ['DELETE FROM "users" WHERE "users"."name" = $1 RETURNING *']
    assert seen == [[{"id": 1, "name": "a"}]]


async def test_delete_not_found(session):
    with pytest.raises(NotFoundError):
        await session.query(User).find(1).delete()


# ========== Upsert ==========


async def test_upsert_creates_when_missing(session, adapter):
    """Test that upsert inserts when the update matched nothing."""
    adapter.add([])
    adapter.add([{"id": 1, "email": "e", "name": "n"}])

    user = await session.query(User).find_by(email="e").upsert(
        update={"name": "n"}, create=lambda data: {"email": "e", **data}
    )

    assert user == {"id": 1, "email": "e", "name": "n"}
    assert adapter.sql == [
        "BEGIN",
        'UPDATE "users" SET "name" = $1 WHERE "users"."email" = $2 RETURNING *',
        'INSERT INTO "users" ("email", "name") VALUES ($1, $2) RETURNING *',
        "COMMIT",
    ]


async def test_upsert_updates_existing(session, adapter):
    adapter.add([{"id": 1, "email": "e", "name": "n"}])

    user = await session.query(User).find_by(email="e").upsert(update={"name": "n"}, create={"email": "e"})

    assert user["id"] == 1
    assert not any(sql.startswith("INSERT") for sql in adapter.sql)


async def test_upsert_matching_several(session, adapter):
    adapter.add([{"id": 1}, {"id": 2}])
    with pytest.raises(MoreThanOneRowError):
        await session.query(User).find_by(name="n").upsert(update={"name": "m"}, create={"name": "m"})
    assert adapter.sql[-1] == "ROLLBACK"


async def test_upsert_requires_single_record_query(session):
    with pytest.raises(QueryShapeError):
        await session.query(User).where(name="n").upsert(update={"name": "m"}, create={"name": "m"})


async def test_or_create_returns_existing(session, adapter):
    adapter.add([{"id": 1, "email": "e"}])

    user = await session.query(User).find_by(email="e").or_create({"email": "e"})

    assert user == {"id": 1, "email": "e"}
    assert not any(sql.startswith("INSERT") for sql in adapter.sql)


async def test_or_create_inserts(session, adapter):
    adapter.add([])
    adapter.add([{"id": 2, "email": "e"}])

    user = await session.query(User).find_by_optional(email="e").or_create(lambda: {"email": "e"})

    assert user == {"id": 2, "email": "e"}
    assert adapter.sql[2] == 'INSERT INTO "users" ("email") VALUES ($1) RETURNING *'


# ========== Timestamps ==========


async def test_timestamps_are_filled(session, adapter):
    """Test that created_at and updated_at get defaults and refreshes."""
    adapter.add([{"id": 1, "title": "t"}])
    await session.query(Article).create({"title": "t"})

    assert adapter.sql[0] == 'INSERT INTO "articles" ("title", "created_at", "updated_at") VALUES ($1, $2, $3) RETURNING *'
    title, created_at, updated_at = adapter.params[0]
    assert title == "t"
    assert isinstance(created_at, datetime)
    assert created_at.tzinfo is not None
    assert isinstance(updated_at, datetime)

    adapter.add(row_count=1)
    await session.query(Article).find(1).update({"title": "u"})

    assert adapter.sql[1] == 'UPDATE "articles" SET "title" = $1, "updated_at" = $2 WHERE "articles"."id" = $3'
    assert isinstance(adapter.params[1][1], datetime)
