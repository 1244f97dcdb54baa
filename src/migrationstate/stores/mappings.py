"""
Identity mapping stores: source users and teams to their destinations.

A mapping row is created for every discovered user or team (see the
``sync_*`` operations) and then filled in as the destination identity
becomes known. Mapping status is the operator-facing state; for teams
the migration status and sync counters are owned by the migration
executor and written through ``update_team_migration_status``.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text

from migrationstate.exceptions import NotFoundError
from migrationstate.models import (
    MappingStats,
    MappingStatus,
    TeamMapping,
    TeamMigrationStatus,
    UserMapping,
)
from migrationstate.observability import (
    ATTR_DB_ROWS_AFFECTED,
    ATTR_ORGANIZATION,
    ATTR_TEAM_SLUG,
    ATTR_USER_LOGIN,
)
from migrationstate.stores._base import BaseStore, as_bool, as_datetime

logger = logging.getLogger(__name__)

USER_MAPPING_COLUMNS = (
    "id, source_id, source_login, source_email, source_name, source_org, destination_login, "
    "destination_email, mapping_status, mannequin_id, mannequin_login, mannequin_org, "
    "reclaim_status, reclaim_error, match_confidence, match_reason, created_at, updated_at"
)

TEAM_MAPPING_COLUMNS = (
    "id, source_id, source_org, source_team_slug, source_team_name, destination_org, "
    "destination_team_slug, destination_team_name, mapping_status, auto_created, "
    "migration_status, migrated_at, error_message, repos_synced, total_source_repos, "
    "repos_eligible, team_created_in_dest, last_synced_at, created_at, updated_at"
)

# Mapped, linked to a mannequin, has a destination and is not already
# invited or reclaimed.
_INVITABLE = """
    mapping_status = 'mapped'
    AND mannequin_id IS NOT NULL AND mannequin_id <> ''
    AND destination_login IS NOT NULL AND destination_login <> ''
    AND (reclaim_status IS NULL OR reclaim_status IN ('pending', 'failed'))
"""


def row_to_user_mapping(row: Any) -> UserMapping:
    return UserMapping(
        id=row["id"],
        source_id=row["source_id"],
        source_login=row["source_login"],
        source_email=row["source_email"],
        source_name=row["source_name"],
        source_org=row["source_org"],
        destination_login=row["destination_login"],
        destination_email=row["destination_email"],
        mapping_status=MappingStatus(row["mapping_status"]),
        mannequin_id=row["mannequin_id"],
        mannequin_login=row["mannequin_login"],
        mannequin_org=row["mannequin_org"],
        reclaim_status=row["reclaim_status"],
        reclaim_error=row["reclaim_error"],
        match_confidence=row["match_confidence"],
        match_reason=row["match_reason"],
        created_at=as_datetime(row["created_at"]),
        updated_at=as_datetime(row["updated_at"]),
    )


def row_to_team_mapping(row: Any) -> TeamMapping:
    return TeamMapping(
        id=row["id"],
        source_id=row["source_id"],
        source_org=row["source_org"],
        source_team_slug=row["source_team_slug"],
        source_team_name=row["source_team_name"],
        destination_org=row["destination_org"],
        destination_team_slug=row["destination_team_slug"],
        destination_team_name=row["destination_team_name"],
        mapping_status=MappingStatus(row["mapping_status"]),
        auto_created=as_bool(row["auto_created"]),
        migration_status=TeamMigrationStatus(row["migration_status"] or "pending"),
        migrated_at=as_datetime(row["migrated_at"]),
        error_message=row["error_message"],
        repos_synced=row["repos_synced"] or 0,
        total_source_repos=row["total_source_repos"] or 0,
        repos_eligible=row["repos_eligible"] or 0,
        team_created_in_dest=as_bool(row["team_created_in_dest"]),
        last_synced_at=as_datetime(row["last_synced_at"]),
        created_at=as_datetime(row["created_at"]),
        updated_at=as_datetime(row["updated_at"]),
    )


class UserMappingStore(BaseStore):
    """Source user to destination user mappings, keyed by source login."""

    span_prefix = "user_mapping_store"

    async def save_user_mapping(self, mapping: UserMapping) -> int:
        """
        Insert or fully update a mapping by ``source_login``.

        ``created_at`` of an existing row is kept.

        Returns:
            The mapping id
        """
        with self._span("save_user_mapping", **{ATTR_USER_LOGIN: mapping.source_login}):
            params: dict[str, Any] = {
                "source_id": mapping.source_id,
                "source_login": mapping.source_login,
                "source_email": mapping.source_email,
                "source_name": mapping.source_name,
                "source_org": mapping.source_org,
                "destination_login": mapping.destination_login,
                "destination_email": mapping.destination_email,
                "mapping_status": (mapping.mapping_status or MappingStatus.UNMAPPED).value,
                "mannequin_id": mapping.mannequin_id,
                "mannequin_login": mapping.mannequin_login,
                "mannequin_org": mapping.mannequin_org,
                "reclaim_status": mapping.reclaim_status,
                "reclaim_error": mapping.reclaim_error,
                "match_confidence": mapping.match_confidence,
                "match_reason": mapping.match_reason,
                "updated_at": self._bind_now(),
            }
            async with self._connect("save_user_mapping", mapping.source_login) as conn:
                result = await conn.execute(
                    text("SELECT id FROM user_mappings WHERE source_login = :source_login"),
                    {"source_login": mapping.source_login},
                )
                existing_id = result.scalar_one_or_none()
                if existing_id is None:
                    params["created_at"] = params["updated_at"]
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("user_mappings", tuple(params))),
                        params,
                    )
                    mapping.id = int(result.scalar_one())
                else:
                    mapping.id = int(existing_id)
                    params["id"] = mapping.id
                    await conn.execute(
                        text("""
                            UPDATE user_mappings
                            SET source_id = :source_id,
                                source_email = :source_email,
                                source_name = :source_name,
                                source_org = :source_org,
                                destination_login = :destination_login,
                                destination_email = :destination_email,
                                mapping_status = :mapping_status,
                                mannequin_id = :mannequin_id,
                                mannequin_login = :mannequin_login,
                                mannequin_org = :mannequin_org,
                                reclaim_status = :reclaim_status,
                                reclaim_error = :reclaim_error,
                                match_confidence = :match_confidence,
                                match_reason = :match_reason,
                                updated_at = :updated_at
                            WHERE id = :id AND source_login = :source_login
                        """),
                        params,
                    )
            return mapping.id

    async def get_user_mapping(self, source_login: str) -> UserMapping | None:
        with self._span("get_user_mapping", **{ATTR_USER_LOGIN: source_login}):
            query = text(
                f"SELECT {USER_MAPPING_COLUMNS} FROM user_mappings WHERE source_login = :login"
            )
            async with self._connect("get_user_mapping", source_login, transactional=False) as conn:
                result = await conn.execute(query, {"login": source_login})
                row = result.mappings().fetchone()
            return row_to_user_mapping(row) if row else None

    async def list_user_mappings(
        self,
        status: MappingStatus | None = None,
        source_org: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[UserMapping]:
        """List mappings ordered by source login."""
        with self._span("list_user_mappings"):
            clauses = ["1=1"]
            params: dict[str, Any] = {}
            if status is not None:
                clauses.append("mapping_status = :status")
                params["status"] = status.value
            if source_org:
                clauses.append("source_org = :source_org")
                params["source_org"] = source_org
            query = text(
                f"SELECT {USER_MAPPING_COLUMNS} FROM user_mappings "
                f"WHERE {' AND '.join(clauses)} "
                f"ORDER BY source_login {self._dialect.paginate(limit, offset)}"
            )
            async with self._connect("list_user_mappings", transactional=False) as conn:
                result = await conn.execute(query, params)
                return [row_to_user_mapping(row) for row in result.mappings()]

    async def update_user_mapping_status(self, source_login: str, status: MappingStatus) -> None:
        with self._span("update_user_mapping_status", **{ATTR_USER_LOGIN: source_login}):
            query = text("""
                UPDATE user_mappings
                SET mapping_status = :status, updated_at = :now
                WHERE source_login = :login
            """)
            params = {"login": source_login, "status": status.value, "now": self._bind_now()}
            async with self._connect("update_user_mapping_status", source_login) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("user mapping", source_login)

    async def update_user_mapping_destination(
        self,
        source_login: str,
        destination_login: str,
        destination_email: str | None = None,
    ) -> None:
        """
        Set the destination identity and mark the mapping as mapped.

        The stored destination email is only replaced when one is given.

        Raises:
            NotFoundError: If no mapping exists for ``source_login``
        """
        with self._span("update_user_mapping_destination", **{ATTR_USER_LOGIN: source_login}):
            assignments = [
                "destination_login = :destination_login",
                "mapping_status = :status",
                "updated_at = :now",
            ]
            params: dict[str, Any] = {
                "login": source_login,
                "destination_login": destination_login,
                "status": MappingStatus.MAPPED.value,
                "now": self._bind_now(),
            }
            if destination_email:
                assignments.append("destination_email = :destination_email")
                params["destination_email"] = destination_email
            query = text(
                f"UPDATE user_mappings SET {', '.join(assignments)} WHERE source_login = :login"
            )
            async with self._connect("update_user_mapping_destination", source_login) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("user mapping", source_login)

    async def delete_user_mapping(self, source_login: str) -> None:
        with self._span("delete_user_mapping", **{ATTR_USER_LOGIN: source_login}):
            async with self._connect("delete_user_mapping", source_login) as conn:
                result = await conn.execute(
                    text("DELETE FROM user_mappings WHERE source_login = :login"),
                    {"login": source_login},
                )
                if result.rowcount == 0:
                    raise NotFoundError("user mapping", source_login)

    async def get_user_mapping_stats(self, source_org: str | None = None) -> MappingStats:
        """
        Count mappings per status, optionally within one source organization.

        ``invitable`` counts mappings ready for a reclaim invitation: mapped,
        linked to a mannequin, with a destination login, and whose reclaim
        has not started or has failed.
        """
        with self._span("get_user_mapping_stats"):
            where = "source_org = :source_org" if source_org else "1=1"
            query = text(f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN mapping_status = 'mapped' THEN 1 ELSE 0 END) AS mapped,
                    SUM(CASE WHEN mapping_status = 'unmapped' THEN 1 ELSE 0 END) AS unmapped,
                    SUM(CASE WHEN mapping_status = 'skipped' THEN 1 ELSE 0 END) AS skipped,
                    SUM(CASE WHEN mapping_status = 'reclaimed' THEN 1 ELSE 0 END) AS reclaimed,
                    SUM(CASE WHEN {_INVITABLE} THEN 1 ELSE 0 END) AS invitable
                FROM user_mappings
                WHERE {where}
            """)
            params = {"source_org": source_org} if source_org else {}
            async with self._connect("get_user_mapping_stats", transactional=False) as conn:
                result = await conn.execute(query, params)
                row = result.mappings().one()
            return MappingStats(
                total=int(row["total"] or 0),
                mapped=int(row["mapped"] or 0),
                unmapped=int(row["unmapped"] or 0),
                skipped=int(row["skipped"] or 0),
                reclaimed=int(row["reclaimed"] or 0),
                invitable=int(row["invitable"] or 0),
            )

    async def sync_user_mappings_from_users(self) -> int:
        """
        Create an unmapped mapping for every user that has none.

        The new mapping's ``source_org`` is the user's alphabetically
        first organization membership.

        Returns:
            Number of mappings created
        """
        with self._span("sync_user_mappings_from_users") as span:
            query = text("""
                INSERT INTO user_mappings
                    (source_id, source_login, source_email, source_name, source_org,
                     mapping_status, created_at, updated_at)
                SELECT u.source_id, u.login, u.email, u.name,
                       (SELECT MIN(o.organization) FROM user_org_memberships o
                        WHERE o.user_login = u.login),
                       'unmapped', :now, :now
                FROM github_users u
                LEFT JOIN user_mappings m ON m.source_login = u.login
                WHERE m.id IS NULL
            """)
            async with self._connect("sync_user_mappings_from_users") as conn:
                result = await conn.execute(query, {"now": self._bind_now()})
                created = max(result.rowcount, 0)
            if span is not None:
                span.set_attribute(ATTR_DB_ROWS_AFFECTED, created)
            if created:
                logger.info("Created %d user mappings from discovered users", created)
            return created


class TeamMappingStore(BaseStore):
    """Source team to destination team mappings, keyed by ``(source_org, slug)``."""

    span_prefix = "team_mapping_store"

    async def save_team_mapping(self, mapping: TeamMapping) -> int:
        """
        Insert or fully update a mapping by ``(source_org, source_team_slug)``.

        Returns:
            The mapping id
        """
        with self._span(
            "save_team_mapping",
            **{ATTR_ORGANIZATION: mapping.source_org, ATTR_TEAM_SLUG: mapping.source_team_slug},
        ):
            key = f"{mapping.source_org}/{mapping.source_team_slug}"
            params: dict[str, Any] = {
                "source_id": mapping.source_id,
                "source_org": mapping.source_org,
                "source_team_slug": mapping.source_team_slug,
                "source_team_name": mapping.source_team_name,
                "destination_org": mapping.destination_org,
                "destination_team_slug": mapping.destination_team_slug,
                "destination_team_name": mapping.destination_team_name,
                "mapping_status": (mapping.mapping_status or MappingStatus.UNMAPPED).value,
                "auto_created": mapping.auto_created,
                "migration_status": (
                    mapping.migration_status or TeamMigrationStatus.PENDING
                ).value,
                "migrated_at": self._bind_dt(mapping.migrated_at),
                "error_message": mapping.error_message,
                "repos_synced": mapping.repos_synced,
                "total_source_repos": mapping.total_source_repos,
                "repos_eligible": mapping.repos_eligible,
                "team_created_in_dest": mapping.team_created_in_dest,
                "last_synced_at": self._bind_dt(mapping.last_synced_at),
                "updated_at": self._bind_now(),
            }
            async with self._connect("save_team_mapping", key) as conn:
                result = await conn.execute(
                    text("""
                        SELECT id FROM team_mappings
                        WHERE source_org = :source_org AND source_team_slug = :source_team_slug
                    """),
                    {
                        "source_org": mapping.source_org,
                        "source_team_slug": mapping.source_team_slug,
                    },
                )
                existing_id = result.scalar_one_or_none()
                if existing_id is None:
                    params["created_at"] = params["updated_at"]
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("team_mappings", tuple(params))),
                        params,
                    )
                    mapping.id = int(result.scalar_one())
                else:
                    mapping.id = int(existing_id)
                    params["id"] = mapping.id
                    await conn.execute(
                        text("""
                            UPDATE team_mappings
                            SET source_id = :source_id,
                                source_org = :source_org,
                                source_team_slug = :source_team_slug,
                                source_team_name = :source_team_name,
                                destination_org = :destination_org,
                                destination_team_slug = :destination_team_slug,
                                destination_team_name = :destination_team_name,
                                mapping_status = :mapping_status,
                                auto_created = :auto_created,
                                migration_status = :migration_status,
                                migrated_at = :migrated_at,
                                error_message = :error_message,
                                repos_synced = :repos_synced,
                                total_source_repos = :total_source_repos,
                                repos_eligible = :repos_eligible,
                                team_created_in_dest = :team_created_in_dest,
                                last_synced_at = :last_synced_at,
                                updated_at = :updated_at
                            WHERE id = :id
                        """),
                        params,
                    )
            return mapping.id

    async def get_team_mapping(self, source_org: str, source_team_slug: str) -> TeamMapping | None:
        attributes = {ATTR_ORGANIZATION: source_org, ATTR_TEAM_SLUG: source_team_slug}
        with self._span("get_team_mapping", **attributes):
            query = text(f"""
                SELECT {TEAM_MAPPING_COLUMNS} FROM team_mappings
                WHERE source_org = :source_org AND source_team_slug = :slug
            """)
            key = f"{source_org}/{source_team_slug}"
            async with self._connect("get_team_mapping", key, transactional=False) as conn:
                result = await conn.execute(
                    query, {"source_org": source_org, "slug": source_team_slug}
                )
                row = result.mappings().fetchone()
            return row_to_team_mapping(row) if row else None

    async def list_team_mappings(
        self,
        source_org: str | None = None,
        status: MappingStatus | None = None,
    ) -> list[TeamMapping]:
        """List mappings ordered by source organization, then slug."""
        with self._span("list_team_mappings"):
            clauses = ["1=1"]
            params: dict[str, Any] = {}
            if source_org:
                clauses.append("source_org = :source_org")
                params["source_org"] = source_org
            if status is not None:
                clauses.append("mapping_status = :status")
                params["status"] = status.value
            query = text(
                f"SELECT {TEAM_MAPPING_COLUMNS} FROM team_mappings "
                f"WHERE {' AND '.join(clauses)} ORDER BY source_org, source_team_slug"
            )
            async with self._connect("list_team_mappings", transactional=False) as conn:
                result = await conn.execute(query, params)
                return [row_to_team_mapping(row) for row in result.mappings()]

    async def update_team_mapping_destination(
        self,
        source_org: str,
        source_team_slug: str,
        destination_org: str,
        destination_team_slug: str,
        destination_team_name: str | None = None,
    ) -> None:
        """
        Point a team mapping at its destination team and mark it mapped.

        Raises:
            NotFoundError: If the mapping does not exist
        """
        assignments = [
            "destination_org = :destination_org",
            "destination_team_slug = :destination_team_slug",
            "mapping_status = :status",
        ]
        params: dict[str, Any] = {
            "destination_org": destination_org,
            "destination_team_slug": destination_team_slug,
            "status": MappingStatus.MAPPED.value,
        }
        if destination_team_name:
            assignments.append("destination_team_name = :destination_team_name")
            params["destination_team_name"] = destination_team_name
        await self._update(
            "update_team_mapping_destination", source_org, source_team_slug, assignments, params
        )

    async def update_team_mapping_status(
        self, source_org: str, source_team_slug: str, status: MappingStatus
    ) -> None:
        await self._update(
            "update_team_mapping_status",
            source_org,
            source_team_slug,
            ["mapping_status = :status"],
            {"status": status.value},
        )

    async def update_team_migration_status(
        self,
        source_org: str,
        source_team_slug: str,
        migration_status: TeamMigrationStatus,
        error_message: str | None = None,
        repos_synced: int | None = None,
        team_created_in_dest: bool | None = None,
    ) -> None:
        """
        Record the executor's progress on a team.

        ``error_message`` is always overwritten, so a successful run clears
        a previous failure. Counters are only written when given.
        ``migrated_at`` is stamped when the status is ``completed``, and
        ``last_synced_at`` whenever ``repos_synced`` is reported.

        Raises:
            NotFoundError: If the mapping does not exist
        """
        now = self._bind_now()
        assignments = ["migration_status = :migration_status", "error_message = :error_message"]
        params: dict[str, Any] = {
            "migration_status": migration_status.value,
            "error_message": error_message,
        }
        if migration_status is TeamMigrationStatus.COMPLETED:
            assignments.append("migrated_at = :migrated_at")
            params["migrated_at"] = now
        if repos_synced is not None:
            assignments.extend(["repos_synced = :repos_synced", "last_synced_at = :last_synced_at"])
            params["repos_synced"] = repos_synced
            params["last_synced_at"] = now
        if team_created_in_dest is not None:
            assignments.append("team_created_in_dest = :team_created_in_dest")
            params["team_created_in_dest"] = team_created_in_dest
        await self._update(
            "update_team_migration_status", source_org, source_team_slug, assignments, params
        )

    async def _update(
        self,
        operation: str,
        source_org: str,
        source_team_slug: str,
        assignments: list[str],
        params: dict[str, Any],
    ) -> None:
        attributes = {ATTR_ORGANIZATION: source_org, ATTR_TEAM_SLUG: source_team_slug}
        with self._span(operation, **attributes):
            query = text(f"""
                UPDATE team_mappings
                SET {", ".join(assignments)}, updated_at = :now
                WHERE source_org = :source_org AND source_team_slug = :slug
            """)
            params = {
                **params,
                "source_org": source_org,
                "slug": source_team_slug,
                "now": self._bind_now(),
            }
            key = f"{source_org}/{source_team_slug}"
            async with self._connect(operation, key) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("team mapping", key)

    async def delete_team_mapping(self, source_org: str, source_team_slug: str) -> None:
        key = f"{source_org}/{source_team_slug}"
        attributes = {ATTR_ORGANIZATION: source_org, ATTR_TEAM_SLUG: source_team_slug}
        with self._span("delete_team_mapping", **attributes):
            async with self._connect("delete_team_mapping", key) as conn:
                result = await conn.execute(
                    text(
                        "DELETE FROM team_mappings "
                        "WHERE source_org = :source_org AND source_team_slug = :slug"
                    ),
                    {"source_org": source_org, "slug": source_team_slug},
                )
                if result.rowcount == 0:
                    raise NotFoundError("team mapping", key)

    async def get_team_mapping_stats(self) -> MappingStats:
        """Count team mappings per status. ``reclaimed`` and ``invitable`` stay 0."""
        with self._span("get_team_mapping_stats"):
            query = text("""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN mapping_status = 'mapped' THEN 1 ELSE 0 END) AS mapped,
                    SUM(CASE WHEN mapping_status = 'unmapped' THEN 1 ELSE 0 END) AS unmapped,
                    SUM(CASE WHEN mapping_status = 'skipped' THEN 1 ELSE 0 END) AS skipped
                FROM team_mappings
            """)
            async with self._connect("get_team_mapping_stats", transactional=False) as conn:
                result = await conn.execute(query)
                row = result.mappings().one()
            return MappingStats(
                total=int(row["total"] or 0),
                mapped=int(row["mapped"] or 0),
                unmapped=int(row["unmapped"] or 0),
                skipped=int(row["skipped"] or 0),
            )

    async def sync_team_mappings_from_teams(self) -> int:
        """
        Create an unmapped mapping for every discovered team that has none.

        Returns:
            Number of mappings created
        """
        with self._span("sync_team_mappings_from_teams") as span:
            query = text("""
                INSERT INTO team_mappings
                    (source_id, source_org, source_team_slug, source_team_name,
                     mapping_status, migration_status, created_at, updated_at)
                SELECT t.source_id, t.organization, t.slug, t.name,
                       'unmapped', 'pending', :now, :now
                FROM github_teams t
                LEFT JOIN team_mappings m
                    ON m.source_org = t.organization AND m.source_team_slug = t.slug
                WHERE m.id IS NULL
            """)
            async with self._connect("sync_team_mappings_from_teams") as conn:
                result = await conn.execute(query, {"now": self._bind_now()})
                created = max(result.rowcount, 0)
            if span is not None:
                span.set_attribute(ATTR_DB_ROWS_AFFECTED, created)
            if created:
                logger.info("Created %d team mappings from discovered teams", created)
            return created
