"""
Read-time reconciliation of identity mappings against repository state.

Nothing here is stored. Team repository counts, eligibility and user
completeness are recounted from the repository table on every call, so
they stay correct when repositories finish migrating after a team or a
user was processed. Only ``repos_synced`` and ``team_created_in_dest``
come from the stored mapping, because the migration executor owns them.

Team sync status is derived in this order:

    pending     migration status empty or pending
    failed      migration status failed
    team_only   team created at destination, nothing eligible
    needs_sync  nothing synced yet, something eligible
    partial     synced < eligible
    complete    synced >= eligible > 0
    pending     otherwise
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from migrationstate.dialects import Dialect
from migrationstate.models import (
    RepositoryStatus,
    TeamDetail,
    TeamMapping,
    TeamMigrationStatus,
    TeamRepositoryStatus,
    TeamSyncStatus,
    TeamWithMapping,
    UserOrgCompleteness,
)
from migrationstate.observability import (
    ATTR_ORGANIZATION,
    ATTR_TEAM_SLUG,
    ATTR_USER_LOGIN,
    Tracer,
)
from migrationstate.stores._base import BaseStore
from migrationstate.stores.mannequins import MANNEQUIN_COLUMNS, row_to_mannequin
from migrationstate.stores.mappings import TEAM_MAPPING_COLUMNS, row_to_team_mapping
from migrationstate.stores.teams import TEAM_COLUMNS, TeamStore, row_to_team

logger = logging.getLogger(__name__)


def calculate_sync_status(mapping: TeamMapping, repos_eligible: int) -> TeamSyncStatus:
    """
    Derive a team's repository-permission sync status.

    Args:
        mapping: The team's stored mapping
        repos_eligible: Live count of the team's repositories that have
            completed migration

    Returns:
        The derived TeamSyncStatus
    """
    status = mapping.migration_status
    if not status or status is TeamMigrationStatus.PENDING:
        return TeamSyncStatus.PENDING
    if status is TeamMigrationStatus.FAILED:
        return TeamSyncStatus.FAILED
    if mapping.team_created_in_dest and repos_eligible == 0:
        return TeamSyncStatus.TEAM_ONLY
    if mapping.repos_synced == 0 and repos_eligible > 0:
        return TeamSyncStatus.NEEDS_SYNC
    if mapping.repos_synced < repos_eligible:
        return TeamSyncStatus.PARTIAL
    if repos_eligible > 0:
        return TeamSyncStatus.COMPLETE
    return TeamSyncStatus.PENDING


class MappingReconciler(BaseStore):
    """Joins teams, users and their mappings with live repository state."""

    span_prefix = "reconciler"

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        dialect: Dialect,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(conn, dialect, tracer=tracer, enable_tracing=enable_tracing)
        self._teams = TeamStore(conn, dialect, tracer=self._tracer)

    async def get_team_detail(self, organization: str, slug: str) -> TeamDetail | None:
        """
        Build the full picture of one team.

        Returns:
            The TeamDetail, or None if the team does not exist
        """
        with self._span(
            "get_team_detail", **{ATTR_ORGANIZATION: organization, ATTR_TEAM_SLUG: slug}
        ):
            key = f"{organization}/{slug}"
            async with self._connect("get_team_detail", key, transactional=False) as conn:
                team = await self._teams.fetch_team(conn, organization, slug)
                if team is None:
                    return None
                assert team.id is not None
                members = await self._teams.fetch_members(conn, team.id)
                result = await conn.execute(
                    text("""
                        SELECT r.full_name, tr.permission, r.status
                        FROM github_team_repositories tr
                        INNER JOIN repositories r ON r.id = tr.repository_id
                        WHERE tr.team_id = :team_id
                        ORDER BY r.full_name
                    """),
                    {"team_id": team.id},
                )
                repositories = [
                    TeamRepositoryStatus(
                        full_name=row["full_name"],
                        permission=row["permission"],
                        status=RepositoryStatus(row["status"]) if row["status"] else None,
                    )
                    for row in result.mappings()
                ]
                mapping = await self._fetch_team_mapping(conn, organization, slug)

        eligible = sum(1 for repo in repositories if repo.status is RepositoryStatus.COMPLETE)
        return TeamDetail(
            team=team,
            members=members,
            repositories=repositories,
            mapping=mapping,
            total_source_repos=len(repositories),
            repos_eligible=eligible,
            repos_synced=mapping.repos_synced if mapping else 0,
            team_created_in_dest=mapping.team_created_in_dest if mapping else False,
            sync_status=calculate_sync_status(mapping, eligible) if mapping else None,
        )

    async def _fetch_team_mapping(
        self, conn: AsyncConnection, organization: str, slug: str
    ) -> TeamMapping | None:
        result = await conn.execute(
            text(f"""
                SELECT {TEAM_MAPPING_COLUMNS} FROM team_mappings
                WHERE source_org = :source_org AND source_team_slug = :slug
            """),
            {"source_org": organization, "slug": slug},
        )
        row = result.mappings().fetchone()
        return row_to_team_mapping(row) if row else None

    async def list_teams_with_mappings(
        self, organization: str | None = None
    ) -> list[TeamWithMapping]:
        """
        Every team with its mapping and live repository counts.

        Teams without a mapping are included with ``mapping`` and
        ``sync_status`` set to None.
        """
        with self._span("list_teams_with_mappings"):
            params: dict[str, Any] = {}
            team_where = mapping_where = "1=1"
            if organization:
                team_where = "t.organization = :organization"
                mapping_where = "source_org = :organization"
                params["organization"] = organization
            teams_query = text(f"""
                SELECT {TEAM_COLUMNS},
                    (SELECT COUNT(*) FROM github_team_repositories tr
                     INNER JOIN repositories r ON r.id = tr.repository_id
                     WHERE tr.team_id = t.id) AS total_source_repos,
                    (SELECT COUNT(*) FROM github_team_repositories tr
                     INNER JOIN repositories r ON r.id = tr.repository_id
                     WHERE tr.team_id = t.id AND r.status = :complete) AS repos_eligible
                FROM github_teams t
                WHERE {team_where}
                ORDER BY t.organization, t.slug
            """)
            mappings_query = text(
                f"SELECT {TEAM_MAPPING_COLUMNS} FROM team_mappings WHERE {mapping_where}"
            )
            async with self._connect(
                "list_teams_with_mappings", organization, transactional=False
            ) as conn:
                result = await conn.execute(
                    teams_query, {**params, "complete": RepositoryStatus.COMPLETE.value}
                )
                team_rows = result.mappings().fetchall()
                result = await conn.execute(mappings_query, params)
                mappings = {
                    (m.source_org, m.source_team_slug): m
                    for m in (row_to_team_mapping(row) for row in result.mappings())
                }

        teams = []
        for row in team_rows:
            team = row_to_team(row)
            eligible = int(row["repos_eligible"])
            mapping = mappings.get((team.organization, team.slug))
            teams.append(
                TeamWithMapping(
                    team=team,
                    mapping=mapping,
                    total_source_repos=int(row["total_source_repos"]),
                    repos_eligible=eligible,
                    sync_status=calculate_sync_status(mapping, eligible) if mapping else None,
                )
            )
        return teams

    async def get_user_completeness(self, source_login: str) -> list[UserOrgCompleteness]:
        """
        Per-organization migration progress for one source user.

        One entry is returned per mannequin the user has. Reachable
        repositories are those any of the user's teams has access to;
        a reachable repository counts as migrated to an organization when
        it is complete and its destination full name lies in that
        organization.

        Returns:
            Entries ordered by mannequin organization; empty if the user
            has no mannequins
        """
        with self._span("get_user_completeness", **{ATTR_USER_LOGIN: source_login}):
            destination_org = self._dialect.extract_org_from_full_name("r.destination_full_name")
            slash = self._dialect.find_char_position("r.destination_full_name", "/")
            reachable = """
                SELECT DISTINCT tr.repository_id
                FROM github_team_members m
                INNER JOIN github_team_repositories tr ON tr.team_id = m.team_id
                WHERE m.login = :login
            """
            async with self._connect(
                "get_user_completeness", source_login, transactional=False
            ) as conn:
                result = await conn.execute(
                    text(f"""
                        SELECT {MANNEQUIN_COLUMNS} FROM user_mannequins
                        WHERE source_login = :login
                        ORDER BY mannequin_org
                    """),
                    {"login": source_login},
                )
                mannequins = [row_to_mannequin(row) for row in result.mappings()]
                if not mannequins:
                    return []

                result = await conn.execute(
                    text(f"""
                        SELECT COUNT(*) FROM repositories r
                        WHERE r.id IN ({reachable})
                    """),
                    {"login": source_login},
                )
                repos_reachable = int(result.scalar_one())

                result = await conn.execute(
                    text(f"""
                        SELECT {destination_org} AS organization, COUNT(*) AS migrated
                        FROM repositories r
                        WHERE r.id IN ({reachable})
                          AND r.status = :complete
                          AND r.destination_full_name IS NOT NULL
                          AND {slash} > 0
                        GROUP BY {destination_org}
                    """),
                    {"login": source_login, "complete": RepositoryStatus.COMPLETE.value},
                )
                migrated = {row[0]: int(row[1]) for row in result}

        return [
            UserOrgCompleteness(
                source_login=source_login,
                mannequin_org=mannequin.mannequin_org,
                mannequin_id=mannequin.mannequin_id,
                mannequin_login=mannequin.mannequin_login,
                reclaim_status=mannequin.reclaim_status,
                repos_reachable=repos_reachable,
                repos_migrated_to_org=migrated.get(mannequin.mannequin_org, 0),
            )
            for mannequin in mannequins
        ]


__all__ = ["MappingReconciler", "calculate_sync_status"]
