"""Tests for backend selection and engine construction."""

import pytest
from sqlalchemy import text
from sqlalchemy.pool import NullPool, StaticPool

from zhort.db.adapters import PostgreSQLAdapter, SQLiteAdapter, get_database_adapter


def test_adapter_chosen_from_url():
    assert isinstance(get_database_adapter("postgresql+asyncpg://u:p@db/zhort"), PostgreSQLAdapter)

    memory = get_database_adapter("sqlite+aiosqlite:///:memory:")
    assert isinstance(memory, SQLiteAdapter)
    assert memory.in_memory is True
    assert memory.get_pool_class() is StaticPool

    on_disk = get_database_adapter("sqlite+aiosqlite:///./zhort.db")
    assert on_disk.in_memory is False
    assert on_disk.get_pool_class() is NullPool


def test_postgres_pool_sizing():
    adapter = PostgreSQLAdapter(pool_size=5, max_overflow=2)
    kwargs = adapter.get_engine_kwargs()
    assert kwargs["pool_size"] == 5
    assert kwargs["max_overflow"] == 2
    assert kwargs["pool_pre_ping"] is True
    assert adapter.dialect == "postgresql"


@pytest.mark.asyncio
async def test_sqlite_connections_enforce_foreign_keys():
    engine = SQLiteAdapter(in_memory=True).create_engine("sqlite+aiosqlite:///:memory:")
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("PRAGMA foreign_keys"))
            assert result.scalar() == 1
    finally:
        await engine.dispose()
