"""
Shared pytest fixtures for the migrationstate library tests.

This module provides:
- Tracer fixtures (mock_tracer)
- Database fixtures (database, backed by a file SQLite database with
  the full schema applied)
- Entity factories (make_repository, make_source, make_team)
- The AIOSQLITE_AVAILABLE flag and skip_if_no_aiosqlite marker

All fixtures are function scoped so every test starts from an empty
database.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from migrationstate import Database, DatabaseConfig
from migrationstate.models import Repository, RepositoryStatus, Source, Team
from migrationstate.observability import MockTracer

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass

skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line(
        "markers", "sqlite: marks tests that run against a real SQLite database"
    )


# ============================================================================
# Tracer Fixtures
# ============================================================================


@pytest.fixture
def mock_tracer() -> MockTracer:
    """Tracer that records span names and attributes."""
    return MockTracer()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def sqlite_config(tmp_path: Path) -> DatabaseConfig:
    """Configuration for a throwaway SQLite file."""
    return DatabaseConfig(type="sqlite", dsn=str(tmp_path / "state.db"))


@pytest_asyncio.fixture
async def database(
    sqlite_config: DatabaseConfig, mock_tracer: MockTracer
) -> AsyncGenerator[Database, None]:
    """
    Migrated SQLite database handle.

    The schema is applied before the test and the engine is disposed
    afterwards.
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    db = Database(sqlite_config, tracer=mock_tracer)
    await db.migrate()
    yield db
    await db.close()


# ============================================================================
# Entity Factories
# ============================================================================


@pytest.fixture
def make_repository() -> Callable[..., Repository]:
    """
    Factory for repositories.

    Example:
        def test_something(make_repository):
            repo = make_repository("acme/api", status=RepositoryStatus.COMPLETE)
    """

    def _make(full_name: str, **kwargs: Any) -> Repository:
        kwargs.setdefault("source_url", f"https://github.example.com/{full_name}")
        kwargs.setdefault("status", RepositoryStatus.PENDING)
        return Repository(full_name=full_name, **kwargs)

    return _make


@pytest.fixture
def make_source() -> Callable[..., Source]:
    """Factory for GitHub sources with a valid token."""

    def _make(name: str = "primary", **kwargs: Any) -> Source:
        kwargs.setdefault("type", "github")
        kwargs.setdefault("base_url", "https://api.github.com")
        kwargs.setdefault("token", "ghp_0123456789abcdef")
        return Source(name=name, **kwargs)

    return _make


@pytest.fixture
def make_team() -> Callable[..., Team]:
    """Factory for teams; the display name defaults to the slug."""

    def _make(organization: str, slug: str, **kwargs: Any) -> Team:
        kwargs.setdefault("name", slug.replace("-", " ").title())
        return Team(organization=organization, slug=slug, **kwargs)

    return _make
