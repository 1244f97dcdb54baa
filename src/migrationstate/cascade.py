"""
Cascading source deletion.

Deleting a source removes everything discovered through it. The preview
runs the same row selections as the delete, so the counts a caller
confirms are the counts that get removed.

Deletion order, all in one transaction:

    migration_logs -> migration_history -> repository_dependencies
    -> github_team_repositories -> repositories (batches refreshed)
    -> github_team_members -> github_teams
    -> github_users -> user_mappings -> team_mappings
    -> sources
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from migrationstate.exceptions import NotFoundError
from migrationstate.models import SourceDeletionPreview
from migrationstate.observability import ATTR_DB_ROWS_AFFECTED, ATTR_SOURCE_ID
from migrationstate.stores._base import BaseStore
from migrationstate.stores.batches import BatchStore

logger = logging.getLogger(__name__)

_SOURCE_REPOSITORIES = "SELECT id FROM repositories WHERE source_id = :source_id"
_SOURCE_TEAMS = "SELECT id FROM github_teams WHERE source_id = :source_id"

# Edges are removed when either end belongs to the source.
_TEAM_REPOSITORY_EDGES = (
    f"repository_id IN ({_SOURCE_REPOSITORIES}) OR team_id IN ({_SOURCE_TEAMS})"
)

# (preview field, table, predicate) in deletion order
_CASCADE_STEPS: tuple[tuple[str, str, str], ...] = (
    ("migration_log_count", "migration_logs", f"repository_id IN ({_SOURCE_REPOSITORIES})"),
    (
        "migration_history_count",
        "migration_history",
        f"repository_id IN ({_SOURCE_REPOSITORIES})",
    ),
    (
        "dependency_count",
        "repository_dependencies",
        f"repository_id IN ({_SOURCE_REPOSITORIES})",
    ),
    ("team_repository_count", "github_team_repositories", _TEAM_REPOSITORY_EDGES),
    ("repository_count", "repositories", "source_id = :source_id"),
    ("team_member_count", "github_team_members", f"team_id IN ({_SOURCE_TEAMS})"),
    ("team_count", "github_teams", "source_id = :source_id"),
    ("user_count", "github_users", "source_id = :source_id"),
    ("user_mapping_count", "user_mappings", "source_id = :source_id"),
    ("team_mapping_count", "team_mappings", "source_id = :source_id"),
)


class SourceCascade(BaseStore):
    """Preview and execute the removal of a source with all its data."""

    span_prefix = "source_cascade"

    async def get_source_deletion_preview(self, source_id: int) -> SourceDeletionPreview:
        """
        Count what ``delete_source_cascade`` would remove, without writing.

        Raises:
            NotFoundError: If the source does not exist
        """
        with self._span("get_source_deletion_preview", **{ATTR_SOURCE_ID: source_id}):
            async with self._connect(
                "get_source_deletion_preview", source_id, transactional=False
            ) as conn:
                return await self._preview(conn, source_id)

    async def _preview(self, conn: AsyncConnection, source_id: int) -> SourceDeletionPreview:
        params = {"source_id": source_id}
        result = await conn.execute(text("SELECT name FROM sources WHERE id = :source_id"), params)
        name = result.scalar_one_or_none()
        if name is None:
            raise NotFoundError("source", source_id)

        counts: dict[str, int] = {}
        for field_name, table, predicate in _CASCADE_STEPS:
            result = await conn.execute(
                text(f"SELECT COUNT(*) FROM {table} WHERE {predicate}"), params
            )
            counts[field_name] = int(result.scalar_one())
        result = await conn.execute(
            text(
                "SELECT COUNT(*) FROM repositories "
                "WHERE source_id = :source_id AND batch_id IS NOT NULL"
            ),
            params,
        )
        counts["batch_repository_count"] = int(result.scalar_one())
        return SourceDeletionPreview(source_id=source_id, source_name=name, **counts)

    async def delete_source_cascade(self, source_id: int) -> SourceDeletionPreview:
        """
        Delete a source and everything discovered through it.

        Batches are kept; every batch that loses members has its count
        and readiness recomputed before the transaction commits. If any
        step fails, nothing is deleted.

        Returns:
            The counts of what was removed

        Raises:
            NotFoundError: If the source does not exist
        """
        with self._span("delete_source_cascade", **{ATTR_SOURCE_ID: source_id}) as span:
            params = {"source_id": source_id}
            async with self._connect("delete_source_cascade", source_id) as conn:
                preview = await self._preview(conn, source_id)
                result = await conn.execute(
                    text(
                        "SELECT DISTINCT batch_id FROM repositories "
                        "WHERE source_id = :source_id AND batch_id IS NOT NULL"
                    ),
                    params,
                )
                batch_ids = [row[0] for row in result]

                for _field, table, predicate in _CASCADE_STEPS:
                    await conn.execute(text(f"DELETE FROM {table} WHERE {predicate}"), params)
                    if table == "repositories" and batch_ids:
                        await BatchStore(conn, self._dialect, tracer=self._tracer).refresh_batches(
                            conn, batch_ids
                        )

                result = await conn.execute(
                    text("DELETE FROM sources WHERE id = :source_id"), params
                )
                if result.rowcount == 0:
                    raise NotFoundError("source", source_id)

            if span is not None:
                span.set_attribute(ATTR_DB_ROWS_AFFECTED, preview.total_affected_records + 1)
            logger.info(
                "Deleted source %s (%s): %d repositories, %d teams, %d users, %d records total",
                source_id,
                preview.source_name,
                preview.repository_count,
                preview.team_count,
                preview.user_count,
                preview.total_affected_records,
            )
            return preview


__all__ = ["SourceCascade"]
