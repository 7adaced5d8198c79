"""
Database Adapters

- SQLiteAdapter: default, file-based or in-memory (local development, tests)
- PostgreSQLAdapter: production, selected by a postgresql+asyncpg:// URL

SQLite notes:
- Single writer at a time (file locking)
- Foreign keys are off unless enabled per connection
- RETURNING needs SQLite 3.35+
"""

from typing import Any

from sqlalchemy.pool import NullPool, StaticPool

from zhort.db.interface import DatabaseAdapter


class SQLiteAdapter(DatabaseAdapter):
    """
    In-memory URLs get a StaticPool so every session shares one connection
    (and therefore one database); file URLs use NullPool.
    """

    dialect = "sqlite"

    def __init__(self, in_memory: bool = False):
        self.in_memory = in_memory

    def get_pool_class(self) -> type:
        return StaticPool if self.in_memory else NullPool

    def get_connect_args(self) -> dict[str, Any]:
        return {"check_same_thread": False}

    def get_engine_kwargs(self) -> dict[str, Any]:
        return {"echo": False}

    def on_connect(self, dbapi_connection: Any, connection_record: Any) -> None:
        # per-link configuration relies on ON DELETE CASCADE
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class PostgreSQLAdapter(DatabaseAdapter):
    dialect = "postgresql"

    def __init__(self, pool_size: int = 10, max_overflow: int = 20):
        self.pool_size = pool_size
        self.max_overflow = max_overflow

    def get_pool_class(self) -> None:
        return None

    def get_connect_args(self) -> dict[str, Any]:
        return {}

    def get_engine_kwargs(self) -> dict[str, Any]:
        return {
            "echo": False,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_pre_ping": True,
        }


def get_database_adapter(database_url: str) -> DatabaseAdapter:
    """PostgreSQLAdapter for postgresql URLs, SQLiteAdapter otherwise."""
    if database_url.startswith("postgresql"):
        return PostgreSQLAdapter()
    return SQLiteAdapter(in_memory=":memory:" in database_url)
