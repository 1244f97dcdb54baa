"""
Team store: teams, their members and their repository permissions.

Teams are keyed by ``(organization, slug)``. Member and repository edges
are upserted idempotently, so re-discovery only updates the mutable
attribute (role or permission) when it changed.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from migrationstate.models import Team, TeamMember
from migrationstate.observability import (
    ATTR_ORGANIZATION,
    ATTR_REPOSITORY_ID,
    ATTR_TEAM_SLUG,
    ATTR_USER_LOGIN,
)
from migrationstate.stores._base import BaseStore, as_datetime, utcnow

logger = logging.getLogger(__name__)

TEAM_COLUMNS = (
    "t.id, t.source_id, t.organization, t.slug, t.name, t.description, t.privacy, "
    "t.discovered_at, t.updated_at"
)


def row_to_team(row: Any) -> Team:
    return Team(
        id=row["id"],
        source_id=row["source_id"],
        organization=row["organization"],
        slug=row["slug"],
        name=row["name"],
        description=row["description"],
        privacy=row["privacy"],
        discovered_at=as_datetime(row["discovered_at"]),
        updated_at=as_datetime(row["updated_at"]),
    )


def row_to_member(row: Any) -> TeamMember:
    return TeamMember(
        id=row["id"],
        team_id=row["team_id"],
        login=row["login"],
        role=row["role"],
        discovered_at=as_datetime(row["discovered_at"]),
    )


class TeamStore(BaseStore):
    span_prefix = "team_store"

    async def save_team(self, team: Team) -> int:
        """
        Insert or update a team by ``(organization, slug)``.

        Name, description and privacy are refreshed on update; id and
        ``discovered_at`` are kept.

        Returns:
            The team id
        """
        with self._span(
            "save_team", **{ATTR_ORGANIZATION: team.organization, ATTR_TEAM_SLUG: team.slug}
        ):
            key = f"{team.organization}/{team.slug}"
            async with self._connect("save_team", key) as conn:
                result = await conn.execute(
                    text("""
                        SELECT id, discovered_at FROM github_teams
                        WHERE organization = :organization AND slug = :slug
                    """),
                    {"organization": team.organization, "slug": team.slug},
                )
                row = result.fetchone()
                now = self._bind_now()
                if row is None:
                    columns = (
                        "source_id",
                        "organization",
                        "slug",
                        "name",
                        "description",
                        "privacy",
                        "discovered_at",
                        "updated_at",
                    )
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("github_teams", columns)),
                        {
                            "source_id": team.source_id,
                            "organization": team.organization,
                            "slug": team.slug,
                            "name": team.name,
                            "description": team.description,
                            "privacy": team.privacy or "closed",
                            "discovered_at": self._bind_dt(team.discovered_at or utcnow()),
                            "updated_at": now,
                        },
                    )
                    team.id = int(result.scalar_one())
                else:
                    team.id = int(row[0])
                    team.discovered_at = as_datetime(row[1])
                    await conn.execute(
                        text("""
                            UPDATE github_teams
                            SET name = :name,
                                description = :description,
                                privacy = :privacy,
                                source_id = COALESCE(:source_id, source_id),
                                updated_at = :now
                            WHERE id = :id
                        """),
                        {
                            "id": team.id,
                            "name": team.name,
                            "description": team.description,
                            "privacy": team.privacy or "closed",
                            "source_id": team.source_id,
                            "now": now,
                        },
                    )
            logger.debug("Saved team %s (id=%s)", key, team.id)
            return team.id

    async def get_team(self, organization: str, slug: str) -> Team | None:
        with self._span("get_team", **{ATTR_ORGANIZATION: organization, ATTR_TEAM_SLUG: slug}):
            async with self._connect(
                "get_team", f"{organization}/{slug}", transactional=False
            ) as conn:
                return await self.fetch_team(conn, organization, slug)

    async def fetch_team(self, conn: AsyncConnection, organization: str, slug: str) -> Team | None:
        """Look up a team on an already-open connection."""
        result = await conn.execute(
            text(f"""
                SELECT {TEAM_COLUMNS} FROM github_teams t
                WHERE t.organization = :organization AND t.slug = :slug
            """),
            {"organization": organization, "slug": slug},
        )
        row = result.mappings().fetchone()
        return row_to_team(row) if row else None

    async def list_teams(self, organization: str | None = None) -> list[Team]:
        """List teams ordered by organization, then slug."""
        with self._span("list_teams"):
            where = "t.organization = :organization" if organization else "1=1"
            query = text(
                f"SELECT {TEAM_COLUMNS} FROM github_teams t WHERE {where} "
                "ORDER BY t.organization, t.slug"
            )
            async with self._connect("list_teams", organization, transactional=False) as conn:
                result = await conn.execute(
                    query, {"organization": organization} if organization else {}
                )
                return [row_to_team(row) for row in result.mappings()]

    async def save_team_repository(
        self, team_id: int, repository_full_name: str, permission: str
    ) -> bool:
        """
        Record that a team has ``permission`` on a repository.

        Repositories that are not in the store are ignored.

        Returns:
            True if the edge was written or already matched, False if the
            repository is unknown
        """
        with self._span("save_team_repository"):
            async with self._connect("save_team_repository", repository_full_name) as conn:
                result = await conn.execute(
                    text("SELECT id FROM repositories WHERE full_name = :full_name"),
                    {"full_name": repository_full_name},
                )
                repository_id = result.scalar_one_or_none()
                if repository_id is None:
                    logger.debug(
                        "Skipping team permission for unknown repository %s",
                        repository_full_name,
                    )
                    return False

                result = await conn.execute(
                    text("""
                        SELECT id, permission FROM github_team_repositories
                        WHERE team_id = :team_id AND repository_id = :repository_id
                    """),
                    {"team_id": team_id, "repository_id": repository_id},
                )
                row = result.fetchone()
                if row is None:
                    await conn.execute(
                        text("""
                            INSERT INTO github_team_repositories
                                (team_id, repository_id, permission, discovered_at)
                            VALUES (:team_id, :repository_id, :permission, :now)
                        """),
                        {
                            "team_id": team_id,
                            "repository_id": repository_id,
                            "permission": permission,
                            "now": self._bind_now(),
                        },
                    )
                elif row[1] != permission:
                    await conn.execute(
                        text(
                            "UPDATE github_team_repositories SET permission = :permission "
                            "WHERE id = :id"
                        ),
                        {"id": row[0], "permission": permission},
                    )
            return True

    async def save_team_member(self, member: TeamMember) -> int:
        """
        Insert or update a membership by ``(team_id, login)``.

        Returns:
            The membership row id
        """
        with self._span("save_team_member", **{ATTR_USER_LOGIN: member.login}):
            async with self._connect("save_team_member", member.login) as conn:
                result = await conn.execute(
                    text("""
                        SELECT id, role FROM github_team_members
                        WHERE team_id = :team_id AND login = :login
                    """),
                    {"team_id": member.team_id, "login": member.login},
                )
                row = result.fetchone()
                if row is None:
                    columns = ("team_id", "login", "role", "discovered_at")
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("github_team_members", columns)),
                        {
                            "team_id": member.team_id,
                            "login": member.login,
                            "role": member.role,
                            "discovered_at": self._bind_dt(member.discovered_at or utcnow()),
                        },
                    )
                    member.id = int(result.scalar_one())
                else:
                    member.id = int(row[0])
                    if row[1] != member.role:
                        await conn.execute(
                            text("UPDATE github_team_members SET role = :role WHERE id = :id"),
                            {"id": member.id, "role": member.role},
                        )
            return member.id

    async def get_team_members(self, team_id: int) -> list[TeamMember]:
        with self._span("get_team_members"):
            async with self._connect("get_team_members", team_id, transactional=False) as conn:
                return await self.fetch_members(conn, team_id)

    async def fetch_members(self, conn: AsyncConnection, team_id: int) -> list[TeamMember]:
        result = await conn.execute(
            text("""
                SELECT id, team_id, login, role, discovered_at
                FROM github_team_members
                WHERE team_id = :team_id
                ORDER BY login
            """),
            {"team_id": team_id},
        )
        return [row_to_member(row) for row in result.mappings()]

    async def get_teams_for_repository(self, repository_id: int) -> list[Team]:
        with self._span("get_teams_for_repository", **{ATTR_REPOSITORY_ID: repository_id}):
            query = text(f"""
                SELECT {TEAM_COLUMNS}
                FROM github_teams t
                INNER JOIN github_team_repositories tr ON tr.team_id = t.id
                WHERE tr.repository_id = :repository_id
                ORDER BY t.organization, t.slug
            """)
            async with self._connect(
                "get_teams_for_repository", repository_id, transactional=False
            ) as conn:
                result = await conn.execute(query, {"repository_id": repository_id})
                return [row_to_team(row) for row in result.mappings()]

    async def get_teams_for_user(self, login: str) -> list[Team]:
        with self._span("get_teams_for_user", **{ATTR_USER_LOGIN: login}):
            query = text(f"""
                SELECT {TEAM_COLUMNS}
                FROM github_teams t
                INNER JOIN github_team_members m ON m.team_id = t.id
                WHERE m.login = :login
                ORDER BY t.organization, t.slug
            """)
            async with self._connect("get_teams_for_user", login, transactional=False) as conn:
                result = await conn.execute(query, {"login": login})
                return [row_to_team(row) for row in result.mappings()]

    async def delete_team_members(self, team_id: int) -> int:
        """Remove every member of a team. Returns the number removed."""
        with self._span("delete_team_members"):
            async with self._connect("delete_team_members", team_id) as conn:
                result = await conn.execute(
                    text("DELETE FROM github_team_members WHERE team_id = :team_id"),
                    {"team_id": team_id},
                )
                return result.rowcount

    async def delete_teams_for_organization(self, organization: str) -> int:
        """
        Remove an organization's teams with their members and repository edges.

        Returns:
            Number of teams removed
        """
        with self._span("delete_teams_for_organization", **{ATTR_ORGANIZATION: organization}):
            team_ids = "SELECT id FROM github_teams WHERE organization = :organization"
            params = {"organization": organization}
            async with self._connect("delete_teams_for_organization", organization) as conn:
                await conn.execute(
                    text(f"DELETE FROM github_team_members WHERE team_id IN ({team_ids})"), params
                )
                await conn.execute(
                    text(f"DELETE FROM github_team_repositories WHERE team_id IN ({team_ids})"),
                    params,
                )
                result = await conn.execute(
                    text("DELETE FROM github_teams WHERE organization = :organization"), params
                )
                deleted = result.rowcount
            logger.info("Deleted %d teams for organization %s", deleted, organization)
            return deleted
