"""
Unit tests for the connection handling helper.

Tests the execute_with_connection async context manager for:
- Handling AsyncEngine inputs in transactional mode
- Handling AsyncEngine inputs in read-only mode
- Passing through AsyncConnection inputs directly
- Rolling back on error
- Translating SQLAlchemy failures into StorageError
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from migrationstate.exceptions import NotFoundError, StorageError
from migrationstate.stores._connection import execute_with_connection

_ISINSTANCE = "migrationstate.stores._connection.isinstance"


def _engine_with(method: str, connection: AsyncMock) -> MagicMock:
    engine = MagicMock()
    context = AsyncMock()
    context.__aenter__.return_value = connection
    context.__aexit__.return_value = None
    getattr(engine, method).return_value = context
    return engine


class TestExecuteWithConnection:
    """Tests for execute_with_connection context manager."""

    @pytest.mark.asyncio
    async def test_with_async_engine_transactional(self):
        """AsyncEngine input with transactional=True uses begin()."""
        mock_connection = AsyncMock()
        mock_engine = _engine_with("begin", mock_connection)

        with patch(_ISINSTANCE, side_effect=lambda obj, cls: obj is mock_engine):
            async with execute_with_connection(mock_engine, transactional=True) as conn:
                assert conn is mock_connection

        mock_engine.begin.assert_called_once()
        assert not mock_engine.connect.called

    @pytest.mark.asyncio
    async def test_with_async_engine_read_only(self):
        """AsyncEngine input with transactional=False uses connect()."""
        mock_connection = AsyncMock()
        mock_engine = _engine_with("connect", mock_connection)

        with patch(_ISINSTANCE, side_effect=lambda obj, cls: obj is mock_engine):
            async with execute_with_connection(mock_engine, transactional=False) as conn:
                assert conn is mock_connection

        mock_engine.connect.assert_called_once()
        assert not mock_engine.begin.called

    @pytest.mark.asyncio
    async def test_with_async_connection(self):
        """AsyncConnection input is used directly without creating a new connection."""
        mock_connection = AsyncMock()

        async with execute_with_connection(mock_connection, transactional=False) as conn:
            assert conn is mock_connection

        assert not mock_connection.begin.called
        assert not mock_connection.connect.called

    @pytest.mark.asyncio
    async def test_default_transactional_is_true(self):
        """Default transactional parameter is True (uses begin())."""
        mock_connection = AsyncMock()
        mock_engine = _engine_with("begin", mock_connection)

        with patch(_ISINSTANCE, side_effect=lambda obj, cls: obj is mock_engine):
            async with execute_with_connection(mock_engine) as conn:
                assert conn is mock_connection

        mock_engine.begin.assert_called_once()

    @pytest.mark.asyncio
    async def test_transaction_rollback_on_error(self):
        """The transaction context sees the exception, so it rolls back."""
        mock_connection = AsyncMock()
        mock_engine = MagicMock()
        exit_called = []

        async def mock_aexit(self, exc_type, exc_val, exc_tb):
            exit_called.append((exc_type, exc_val))
            return False

        mock_begin_context = AsyncMock()
        mock_begin_context.__aenter__.return_value = mock_connection
        mock_begin_context.__aexit__ = mock_aexit
        mock_engine.begin.return_value = mock_begin_context

        error = NotFoundError("batch", 7)
        with (
            patch(_ISINSTANCE, side_effect=lambda obj, cls: obj is mock_engine),
            pytest.raises(NotFoundError),
        ):
            async with execute_with_connection(mock_engine) as _:
                raise error

        assert len(exit_called) == 1
        assert exit_called[0][0] is NotFoundError
        assert exit_called[0][1] is error


class TestStorageErrorTranslation:
    """SQLAlchemy failures surface as StorageError with context."""

    @pytest.mark.asyncio
    async def test_sqlalchemy_error_becomes_storage_error(self):
        """A driver failure is re-raised as StorageError chained to the cause."""
        mock_connection = AsyncMock()
        cause = OperationalError("SELECT 1", {}, Exception("database is locked"))
        mock_connection.execute.side_effect = cause

        with pytest.raises(StorageError) as exc_info:
            async with execute_with_connection(
                mock_connection, operation="batch_store.get_batch", key=3
            ) as conn:
                await conn.execute("SELECT 1")

        assert exc_info.value.operation == "batch_store.get_batch"
        assert exc_info.value.key == 3
        assert exc_info.value.__cause__ is cause
        assert "key=3" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self):
        """Errors that are not from SQLAlchemy are not wrapped."""
        mock_connection = AsyncMock()

        with pytest.raises(NotFoundError):
            async with execute_with_connection(mock_connection, operation="x") as _:
                raise NotFoundError("repository", "acme/api")

    @pytest.mark.asyncio
    async def test_engine_failure_on_begin_is_translated(self):
        """Failing to open a transaction is also a StorageError."""
        mock_engine = MagicMock()
        mock_begin_context = AsyncMock()
        mock_begin_context.__aenter__.side_effect = OperationalError(
            "BEGIN", {}, Exception("connection refused")
        )
        mock_engine.begin.return_value = mock_begin_context

        with (
            patch(_ISINSTANCE, side_effect=lambda obj, cls: obj is mock_engine),
            pytest.raises(StorageError, match="migrate failed"),
        ):
            async with execute_with_connection(mock_engine, operation="migrate") as _:
                pass
