"""
Persistence layer: SQLModel tables, backend adapters and the async session.

The engine backend is picked from ``settings.DATABASE_URL`` by
``get_database_adapter``.
"""

from zhort.db.adapters import PostgreSQLAdapter, SQLiteAdapter, get_database_adapter
from zhort.db.interface import DatabaseAdapter
from zhort.db.session import async_session_maker, create_tables, engine, get_session

__all__ = [
    "DatabaseAdapter",
    "SQLiteAdapter",
    "PostgreSQLAdapter",
    "get_database_adapter",
    "async_session_maker",
    "create_tables",
    "engine",
    "get_session",
]
