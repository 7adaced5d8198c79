"""
Shared test fixtures.

Every test gets a fresh in-memory SQLite database (StaticPool, so all
sessions share one connection) with the full schema created.
"""

from datetime import datetime
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from zhort.db import models  # noqa: F401
from zhort.db.adapters import SQLiteAdapter
from zhort.db.models import ShortLink, Team


@pytest_asyncio.fixture
async def engine():
    engine = SQLiteAdapter(in_memory=True).create_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=SQLModelAsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_link(session):
    """Factory inserting a ShortLink with sensible defaults."""

    async def _make_link(
        short_code: str = "abc123",
        long_url: str = "https://example.com/landing",
        **fields
    ) -> ShortLink:
        link = ShortLink(short_code=short_code, long_url=long_url, **fields)
        session.add(link)
        await session.commit()
        await session.refresh(link)
        return link

    return _make_link


@pytest.fixture
def make_team(session):
    async def _make_team(
        usage_quota: Optional[int] = None,
        current_usage: int = 0,
        usage_reset_date: Optional[datetime] = None
    ) -> Team:
        team = Team(
            name="Acme",
            usage_quota=usage_quota,
            current_usage=current_usage,
            usage_reset_date=usage_reset_date,
        )
        session.add(team)
        await session.commit()
        await session.refresh(team)
        return team

    return _make_team
