"""Mixins for common model patterns."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from relkit.fields import mapped_column

if TYPE_CHECKING:
    from relkit.fields import Mapped


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimestampsMixin:
    """Mixin that adds ``created_at`` and ``updated_at`` columns.

    Both are filled on insert when not given; ``updated_at`` is refreshed by
    every update that sets at least one column.

    Example:
        >>> class Article(Base, TimestampsMixin):
        ...     __tablename__ = "articles"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
        >>>
        >>> article = await session.query(Article).create({"title": "Hello"})
        >>> article["created_at"]
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """

    created_at: Mapped[datetime] = mapped_column(default=utcnow, db_type="timestamptz")
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, db_type="timestamptz")
