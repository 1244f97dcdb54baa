"""
Standard span attributes for migrationstate.

Database attributes follow OpenTelemetry semantic conventions; the
remaining names identify the migration entity a span operates on.
"""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database engine (sqlite, postgresql, sqlserver)."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'INSERT', 'UPDATE', 'DELETE')."""

ATTR_DB_ROWS_AFFECTED = "migrationstate.db.rows_affected"
"""Rows touched by a bulk statement (integer)."""

# =============================================================================
# Entity Attributes
# =============================================================================

ATTR_REPOSITORY_ID = "migrationstate.repository.id"
"""Repository row id (integer)."""

ATTR_REPOSITORY_FULL_NAME = "migrationstate.repository.full_name"
"""Repository natural key, e.g. 'org/name'."""

ATTR_BATCH_ID = "migrationstate.batch.id"
"""Batch row id (integer)."""

ATTR_SOURCE_ID = "migrationstate.source.id"
"""Source row id (integer)."""

ATTR_DISCOVERY_ID = "migrationstate.discovery.id"
"""Discovery progress row id (integer)."""

ATTR_ORGANIZATION = "migrationstate.organization"
"""Organization a team, mapping or mannequin belongs to."""

ATTR_TEAM_SLUG = "migrationstate.team.slug"
"""Team slug within its organization."""

ATTR_USER_LOGIN = "migrationstate.user.login"
"""Source-side user login."""

ATTR_ITEM_COUNT = "migrationstate.item_count"
"""Number of items passed to a bulk operation (integer)."""

__all__ = [
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_ROWS_AFFECTED",
    "ATTR_REPOSITORY_ID",
    "ATTR_REPOSITORY_FULL_NAME",
    "ATTR_BATCH_ID",
    "ATTR_SOURCE_ID",
    "ATTR_DISCOVERY_ID",
    "ATTR_ORGANIZATION",
    "ATTR_TEAM_SLUG",
    "ATTR_USER_LOGIN",
    "ATTR_ITEM_COUNT",
]
