"""Models shared by the test suite."""

from datetime import datetime

from relkit import (
    JSON,
    Base,
    ForeignKey,
    Mapped,
    TimestampsMixin,
    belongs_to,
    has_and_belongs_to_many,
    has_many,
    has_one,
    mapped_column,
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column()
    email: Mapped[str | None] = mapped_column(nullable=True)
    settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    profile = has_one("Profile")
    messages = has_many("Message", foreign_key="author_id")
    roles = has_and_belongs_to_many("Role", join_table="user_roles")
    chats = has_many(through="messages", source="chat")


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    bio: Mapped[str] = mapped_column()

    user = belongs_to("User")


class Chat(Base):
    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column()

    messages = has_many("Message")


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(ForeignKey("chats.id"))
    author_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), name="authorId", nullable=True)
    text: Mapped[str] = mapped_column()

    author = belongs_to("User", foreign_key="author_id")
    chat = belongs_to("Chat")


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column()


class Article(Base, TimestampsMixin):
    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column()
    published_at: Mapped[datetime | None] = mapped_column(nullable=True)


MESSAGE_RETURNING = '"id", "chat_id", "authorId" AS "author_id", "text"'
