"""Integration tests against a real PostgreSQL database.

Skipped unless DATABASE_URL is set.
"""

import pytest
import pytest_asyncio
from models import Chat, Message, Role, User

from relkit import DatabaseError, NotFoundError

SCHEMA = [
    "CREATE TABLE users (id serial PRIMARY KEY, name text NOT NULL, email text, settings json)",
    "CREATE TABLE profiles (id serial PRIMARY KEY, user_id integer REFERENCES users (id), bio text)",
    "CREATE TABLE chats (id serial PRIMARY KEY, title text NOT NULL)",
    'CREATE TABLE messages (id serial PRIMARY KEY, chat_id integer NOT NULL REFERENCES chats (id), '
    '"authorId" integer REFERENCES users (id), text text NOT NULL)',
    "CREATE TABLE roles (id serial PRIMARY KEY, name text NOT NULL UNIQUE)",
    "CREATE TABLE user_roles (user_id integer REFERENCES users (id), role_id integer REFERENCES roles (id))",
]
TABLES = ["user_roles", "roles", "messages", "chats", "profiles", "users"]


@pytest_asyncio.fixture
async def db(pg_session):
    """Session with freshly created tables."""
    for table in TABLES:
        await pg_session.execute_raw(f"DROP TABLE IF EXISTS {table}")
    for statement in SCHEMA:
        await pg_session.execute_raw(statement)
    yield pg_session
    for table in TABLES:
        await pg_session.execute_raw(f"DROP TABLE IF EXISTS {table}")


async def test_create_and_load_relations(db):
    """Test a nested create and reading it back through sub-selects."""
    chat = await db.query(Chat).create({"title": "general"})
    user = await db.query(User).create(
        {
            "name": "alice",
            "settings": {"theme": "dark"},
            "messages": {"create": [{"text": "hi", "chat_id": chat["id"]}, {"text": "bye", "chat_id": chat["id"]}]},
            "profile": {"create": {"bio": "hello"}},
        }
    )
    assert [m["text"] for m in user["messages"]] == ["hi", "bye"]

    loaded = await db.query(User).select(
        "id",
        "settings",
        "profile",
        texts=lambda q: q.related("messages").order_by("id").pluck("text"),
        chats=lambda q: q.related("chats").pluck("title"),
    ).find(user["id"])

    assert loaded["settings"] == {"theme": "dark"}
    assert loaded["profile"]["bio"] == "hello"
    assert loaded["texts"] == ["hi", "bye"]
    assert loaded["chats"] == ["general"]


async def test_renamed_column_round_trip(db):
    chat = await db.query(Chat).create({"title": "t"})
    user = await db.query(User).create({"name": "bob"})
    message = await db.query(Message).create({"text": "x", "chat_id": chat["id"], "author_id": user["id"]})

    assert message["author_id"] == user["id"]
    assert await db.query(Message).where(author_id=user["id"]).pluck("text") == ["x"]


async def test_create_from_related_query(db):
    chat = await db.query(Chat).create({"title": "t"})
    user = await db.query(User).create({"name": "carol"})

    message = await db.query(User).find(user["id"]).related("messages").create({"text": "x", "chat_id": chat["id"]})

    assert message["author_id"] == user["id"]
    with pytest.raises(NotFoundError):
        await db.query(User).find(-1).related("messages").create({"text": "x", "chat_id": chat["id"]})


async def test_habtm_and_where_exists(db):
    """Test linking roles and filtering by them."""
    admin = await db.query(Role).create({"name": "admin"})
    await db.query(User).create({"name": "dave", "roles": {"connect": {"id": admin["id"]}}})
    await db.query(User).create({"name": "erin", "roles": {"create": {"name": "dev"}}})

    admins = await db.query(User).where_exists("roles", name="admin").pluck("name")
    assert admins == ["dave"]

    erin = db.query(User).find_by(name="erin")
    await erin.update({"roles": {"set": [{"name": "admin"}]}})
    roles = await erin.select(names=lambda q: q.related("roles").order_by("name").pluck("name"))
    assert roles["names"] == ["admin"]


async def test_transaction_rollback(db):
    with pytest.raises(RuntimeError):
        async with db.transaction():
            await db.query(User).create({"name": "frank"})
            raise RuntimeError("abort")

    assert await db.query(User).count() == 0


async def test_savepoint_rollback_keeps_outer_work(db):
    async with db.transaction():
        await db.query(User).create({"name": "gina"})
        with pytest.raises(DatabaseError):
            async with db.transaction():
                await db.execute_raw("SELECT * FROM missing_table")
        await db.query(User).create({"name": "hank"})

    assert await db.query(User).order_by("name").pluck("name") == ["gina", "hank"]


async def test_upsert_and_counts(db):
    first = await db.query(User).find_by(email="i@example.com").upsert(
        update={"name": "ivy"}, create=lambda data: {"email": "i@example.com", **data}
    )
    second = await db.query(User).find_by(email="i@example.com").upsert(
        update={"name": "ivy2"}, create={"email": "i@example.com", "name": "never"}
    )

    assert first["id"] == second["id"]
    assert second["name"] == "ivy2"
    assert await db.query(User).count() == 1
    assert await db.query(User).where(name="ivy2").exists()
    assert await db.query(User).where(name="ivy2").delete() == 1
