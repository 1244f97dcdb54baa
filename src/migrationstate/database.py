"""
Database handle wiring an engine, its dialect and every store.

Example:
    >>> config = DatabaseConfig(type="sqlite", dsn="migrator.db")
    >>> async with Database(config) as db:
    ...     await db.migrate()
    ...     await db.repositories.save_repository(Repository(full_name="acme/api"))
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from migrationstate.cascade import SourceCascade
from migrationstate.config import DatabaseConfig
from migrationstate.dialects import Dialect
from migrationstate.migrations import get_statements
from migrationstate.observability import ATTR_DB_SYSTEM, ATTR_ITEM_COUNT, Tracer, create_tracer
from migrationstate.reconciler import MappingReconciler
from migrationstate.stores import (
    BatchStore,
    DependencyStore,
    DiscoveryStore,
    MannequinStore,
    RepositoryStore,
    SourceStore,
    TeamMappingStore,
    TeamStore,
    UserMappingStore,
    UserStore,
)
from migrationstate.stores._connection import execute_with_connection

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


def _is_sqlite_memory(url: str) -> bool:
    return url.endswith(":memory:") or url.rstrip("/").endswith("sqlite+aiosqlite:")


def _configure_sqlite(engine: AsyncEngine, wal_mode: bool) -> None:
    """Apply per-connection PRAGMAs to every new SQLite connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        if wal_mode:
            cursor.execute("PRAGMA journal_mode = WAL")
        cursor.close()


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Build the async engine for a configuration.

    The pool keeps ``max_idle_conns`` connections and may grow to
    ``max_open_conns``. Connections are recycled after
    ``conn_max_lifetime``. In-memory SQLite shares one static
    connection, since every new connection would see an empty database.

    Args:
        config: Validated database configuration

    Returns:
        Configured AsyncEngine
    """
    dialect = config.dialect
    url = config.async_url()
    max_open, max_idle = config.pool_limits()

    if dialect.name == "sqlite" and _is_sqlite_memory(url):
        engine = create_async_engine(
            url,
            echo=config.echo,
            poolclass=StaticPool,
        )
        _configure_sqlite(engine, wal_mode=False)
        return engine

    kwargs: dict[str, Any] = {
        "echo": config.echo,
        "pool_size": max_idle,
        "max_overflow": max_open - max_idle,
        "pool_recycle": int(config.conn_max_lifetime.total_seconds()),
    }
    if dialect.name != "sqlite":
        kwargs["pool_pre_ping"] = True
    engine = create_async_engine(url, **kwargs)
    if dialect.name == "sqlite":
        _configure_sqlite(engine, wal_mode=True)
    return engine


class Database:
    """
    Entry point to the migration state store.

    Resolves the dialect before building the engine, so an unsupported
    engine identifier fails without opening anything. All stores share
    the engine and the tracer.

    Attributes:
        repositories: RepositoryStore
        batches: BatchStore
        dependencies: DependencyStore
        sources: SourceStore
        discovery: DiscoveryStore
        teams: TeamStore
        users: UserStore
        user_mappings: UserMappingStore
        team_mappings: TeamMappingStore
        mannequins: MannequinStore
        reconciler: MappingReconciler
        cascade: SourceCascade
    """

    def __init__(
        self,
        config: DatabaseConfig,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._config = config
        self._dialect = config.dialect
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._engine = create_engine(config)

        args = (self._engine, self._dialect)
        self.repositories = RepositoryStore(*args, tracer=self._tracer)
        self.batches = BatchStore(*args, tracer=self._tracer)
        self.dependencies = DependencyStore(*args, tracer=self._tracer)
        self.sources = SourceStore(*args, tracer=self._tracer)
        self.discovery = DiscoveryStore(*args, tracer=self._tracer)
        self.teams = TeamStore(*args, tracer=self._tracer)
        self.users = UserStore(*args, tracer=self._tracer)
        self.user_mappings = UserMappingStore(*args, tracer=self._tracer)
        self.team_mappings = TeamMappingStore(*args, tracer=self._tracer)
        self.mannequins = MannequinStore(*args, tracer=self._tracer)
        self.reconciler = MappingReconciler(*args, tracer=self._tracer)
        self.cascade = SourceCascade(*args, tracer=self._tracer)

        logger.debug("Created %s database handle", self._dialect.name)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    async def migrate(self) -> None:
        """
        Create every table and index that does not exist yet.

        Safe to run on every start. All statements run in one
        transaction.
        """
        statements = get_statements(self._dialect.name)
        with self._tracer.span(
            "migrationstate.database.migrate",
            {ATTR_DB_SYSTEM: self._dialect.name, ATTR_ITEM_COUNT: len(statements)},
        ):
            async with execute_with_connection(self._engine, operation="migrate") as conn:
                for statement in statements:
                    await conn.execute(text(statement))
        logger.info("Applied %s schema (%d statements)", self._dialect.name, len(statements))

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections. Safe to call twice."""
        await self._engine.dispose()
        logger.debug("Closed %s database handle", self._dialect.name)

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"Database(dialect={self._dialect.name})"


__all__ = ["Database", "create_engine"]
