"""Database adapters.

The core only talks to a :class:`DbAdapter`; :class:`PostgresAdapter` is the
asyncpg implementation.
"""

from relkit.adapters.base import DbAdapter, QueryResult, begin_statement
from relkit.adapters.postgres import PostgresAdapter

__all__ = ["DbAdapter", "PostgresAdapter", "QueryResult", "begin_statement"]
