"""
Unit tests for the SQL the reconciler sends to server engines.

SQLite tolerates a negative SUBSTR length, so these checks run the
reconciler against a mocked connection and inspect the statements for
PostgreSQL and SQL Server instead.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from migrationstate.dialects import get_dialect
from migrationstate.reconciler import MappingReconciler

MANNEQUIN_ROW = {
    "id": 1,
    "source_login": "octocat",
    "mannequin_id": "M_1",
    "mannequin_login": None,
    "mannequin_org": "acme-emu",
    "reclaim_status": None,
    "reclaim_error": None,
    "created_at": None,
    "updated_at": None,
}


def _connection() -> AsyncMock:
    mannequins = MagicMock()
    mannequins.mappings.return_value = [MANNEQUIN_ROW]
    reachable = MagicMock()
    reachable.scalar_one.return_value = 2
    conn = AsyncMock()
    conn.execute.side_effect = [mannequins, reachable, [("acme-emu", 1)]]
    return conn


class TestUserCompletenessQueries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("engine", "slash_guard"),
        [
            ("postgresql", "POSITION('/' IN r.destination_full_name) > 0"),
            ("sqlserver", "CHARINDEX('/', r.destination_full_name) > 0"),
        ],
    )
    async def test_org_extraction_skips_names_without_slash(self, engine, slash_guard):
        """Only destination names containing a slash reach the SUBSTRING expression."""
        conn = _connection()
        reconciler = MappingReconciler(conn, get_dialect(engine), enable_tracing=False)

        entries = await reconciler.get_user_completeness("octocat")

        migrated_query = str(conn.execute.await_args_list[2].args[0])
        assert slash_guard in migrated_query
        assert [(e.repos_reachable, e.repos_migrated_to_org) for e in entries] == [(2, 1)]
