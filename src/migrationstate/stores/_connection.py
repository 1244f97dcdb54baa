"""
Connection handling helper for database operations.

The `execute_with_connection` async context manager:
- Handles AsyncEngine inputs by creating a connection or transaction
- Passes through AsyncConnection inputs directly
- Translates driver failures into StorageError once the transaction
  has been rolled back
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from migrationstate.exceptions import StorageError


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
    operation: str = "database operation",
    key: Any = None,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.
        operation: Operation name reported in StorageError
        key: Entity key reported in StorageError

    Yields:
        AsyncConnection ready for execute() calls

    Raises:
        StorageError: If SQLAlchemy raises inside the block

    Example:
        >>> async with execute_with_connection(self._conn, operation="delete_batch") as conn:
        ...     await conn.execute(query, params)

    Note:
        - Any exception leaving the block rolls back a transaction opened
          here, including cancellation and typed domain errors
        - When passing an existing AsyncConnection, the transactional
          parameter has no effect; the caller owns the transaction
    """
    try:
        if isinstance(conn, AsyncEngine):
            if transactional:
                async with conn.begin() as connection:
                    yield connection
            else:
                async with conn.connect() as connection:
                    yield connection
        else:
            yield conn
    except SQLAlchemyError as exc:
        raise StorageError(operation, key) from exc
