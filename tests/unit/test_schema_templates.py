"""Unit tests for the schema templates."""

import pytest

from migrationstate.migrations import (
    get_schema,
    get_statements,
    get_template_path,
    list_backends,
    split_statements,
)

TABLES = [
    "sources",
    "batches",
    "repositories",
    "migration_history",
    "migration_logs",
    "repository_dependencies",
    "github_teams",
    "github_team_repositories",
    "github_team_members",
    "github_users",
    "user_org_memberships",
    "user_mappings",
    "user_mannequins",
    "team_mappings",
    "discovery_progress",
]


class TestTemplates:
    def test_backends(self):
        assert list_backends() == ["postgresql", "sqlite", "sqlserver"]

    def test_missing_template(self):
        with pytest.raises(FileNotFoundError):
            get_template_path("oracle")  # type: ignore[arg-type]

    @pytest.mark.parametrize("backend", ["postgresql", "sqlite", "sqlserver"])
    def test_every_table_defined(self, backend: str):
        schema = get_schema(backend)  # type: ignore[arg-type]
        for table in TABLES:
            assert f" {table} (" in schema or f" {table}(" in schema, table

    def test_sqlite_statements_are_idempotent(self):
        for statement in get_statements("sqlite"):
            assert "IF NOT EXISTS" in statement


class TestSplitStatements:
    def test_strips_comments_and_blanks(self):
        sql = """
            -- header comment
            CREATE TABLE a (id INTEGER);

            -- another
            CREATE INDEX i ON a(id);
            ;
        """
        assert split_statements(sql) == ["CREATE TABLE a (id INTEGER)", "CREATE INDEX i ON a(id)"]

    def test_empty(self):
        assert split_statements("-- nothing here\n") == []
