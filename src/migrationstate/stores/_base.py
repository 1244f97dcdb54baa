"""
Shared plumbing for the entity stores.

Every store takes the same constructor arguments as the rest of the
package: a connection or engine, the resolved Dialect, and an optional
Tracer. Passing an AsyncConnection makes the store join the caller's
transaction, which is how multi-store operations stay atomic.
"""

from __future__ import annotations

import json
from contextlib import AbstractAsyncContextManager, AbstractContextManager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from migrationstate.dialects import Dialect
from migrationstate.observability import ATTR_DB_SYSTEM, Tracer, create_tracer
from migrationstate.stores._connection import execute_with_connection


class BaseStore:
    """Connection, dialect and tracer handling common to all stores."""

    span_prefix = "store"

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        dialect: Dialect,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            conn: Database connection or engine
            dialect: Dialect of the engine behind ``conn``
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(type(self).__module__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn
        self._dialect = dialect

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    def _span(self, operation: str, **attributes: Any) -> AbstractContextManager[Any]:
        return self._tracer.span(
            f"migrationstate.{self.span_prefix}.{operation}",
            {ATTR_DB_SYSTEM: self._dialect.name, **attributes},
        )

    def _connect(
        self,
        operation: str,
        key: Any = None,
        transactional: bool = True,
    ) -> AbstractAsyncContextManager[AsyncConnection]:
        return execute_with_connection(
            self._conn,
            transactional=transactional,
            operation=f"{self.span_prefix}.{operation}",
            key=key,
        )

    def _bind_now(self) -> Any:
        return self._dialect.bind_datetime(utcnow())

    def _bind_dt(self, value: datetime | None) -> Any:
        return self._dialect.bind_datetime(value)

    def __repr__(self) -> str:
        tracing = "enabled" if self._enable_tracing else "disabled"
        return f"{type(self).__name__}(dialect={self._dialect.name}, tracing={tracing})"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_datetime(value: Any) -> datetime | None:
    """
    Normalise a timestamp column value to an aware UTC datetime.

    SQLite returns text, SQL Server returns naive UTC, PostgreSQL
    returns aware datetimes.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def as_bool(value: Any) -> bool:
    return bool(value) if value is not None else False


def dump_json(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value) if value is not None else None


def load_json(value: Any) -> dict[str, Any] | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    return json.loads(value)
