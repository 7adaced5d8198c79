"""
Database Abstraction Interface

Every backend the pipeline runs on has to offer UPDATE ... RETURNING (atomic
quota and variant counters) and cascading deletes of per-link configuration.
Adapters only describe how to reach such a backend; engine construction is
shared here.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import Pool


class DatabaseAdapter(ABC):
    """
    Base class for database adapters.

    Subclasses set ``dialect`` and fill in the pool/connect/engine hooks;
    ``create_engine`` wires them together and registers ``on_connect``.
    """

    dialect: ClassVar[str]

    def create_engine(self, database_url: str, **overrides: Any) -> AsyncEngine:
        options = self.get_engine_kwargs()
        options.update(overrides)

        pool_class = self.get_pool_class()
        if pool_class is not None:
            options["poolclass"] = pool_class

        engine = create_async_engine(
            database_url,
            connect_args=self.get_connect_args(),
            **options,
        )
        event.listen(engine.sync_engine, "connect", self.on_connect)
        return engine

    @abstractmethod
    def get_pool_class(self) -> Optional[type[Pool]]:
        """Pool class for this backend, or None for SQLAlchemy's default."""

    @abstractmethod
    def get_connect_args(self) -> dict[str, Any]:
        """DBAPI ``connect()`` arguments."""

    @abstractmethod
    def get_engine_kwargs(self) -> dict[str, Any]:
        """Extra ``create_async_engine`` options (echo, pool sizing)."""

    def on_connect(self, dbapi_connection: Any, connection_record: Any) -> None:
        """Per-connection setup; no-op unless the backend needs pragmas."""
