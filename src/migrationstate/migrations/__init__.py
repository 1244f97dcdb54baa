"""
Schema templates for the migration state tables.

One template per engine lives in ``templates/``. Every statement is
idempotent (``IF NOT EXISTS`` on SQLite and PostgreSQL, ``sys.tables`` /
``sys.indexes`` guards on SQL Server), so applying the full template on
every process start is safe.

Tables:
    - sources, batches, repositories
    - migration_history, migration_logs, repository_dependencies
    - github_teams, github_team_repositories, github_team_members
    - github_users, user_org_memberships
    - user_mappings, user_mannequins, team_mappings
    - discovery_progress

Usage:
    from migrationstate.migrations import get_schema, get_statements

    sql = get_schema("postgresql")

    async with engine.begin() as conn:
        for statement in get_statements("sqlite"):
            await conn.execute(text(statement))
"""

from pathlib import Path

from migrationstate.dialects import EngineName

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def get_template_path(backend: EngineName) -> Path:
    """
    Get the path to the schema template for a backend.

    Raises:
        FileNotFoundError: If no template exists for the backend
    """
    path = _TEMPLATES_DIR / f"{backend}.sql"
    if not path.exists():
        raise FileNotFoundError(f"Schema template not found: {path}")
    return path


def get_schema(backend: EngineName) -> str:
    """
    Load the full schema template for a backend.

    Args:
        backend: Canonical engine name (sqlite, postgresql, sqlserver)

    Returns:
        SQL schema definition as a string
    """
    return get_template_path(backend).read_text()


def split_statements(sql: str) -> list[str]:
    """
    Split a template into individual statements.

    Drivers such as aiosqlite execute one statement per call. Templates
    contain no semicolons inside statements and use only full-line
    ``--`` comments.
    """
    lines = [line for line in sql.splitlines() if not line.lstrip().startswith("--")]
    statements = "\n".join(lines).split(";")
    return [statement.strip() for statement in statements if statement.strip()]


def get_statements(backend: EngineName) -> list[str]:
    """Load a backend's template as a list of executable statements."""
    return split_statements(get_schema(backend))


def list_backends() -> list[str]:
    return sorted(path.stem for path in _TEMPLATES_DIR.glob("*.sql"))


__all__ = [
    "get_schema",
    "get_statements",
    "get_template_path",
    "list_backends",
    "split_statements",
]
