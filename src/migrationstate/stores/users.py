"""
User store: source-side users and their organization memberships.

Re-discovery merges instead of overwriting. A later scan may see only
part of a user's history, so each contribution counter keeps the larger
of the stored and incoming values, and profile fields are only replaced
when the incoming value is present.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text

from migrationstate.exceptions import NotFoundError
from migrationstate.models import User, UserOrgMembership, UserStats
from migrationstate.observability import ATTR_ORGANIZATION, ATTR_USER_LOGIN
from migrationstate.stores._base import BaseStore, as_datetime, utcnow

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("commit_count", "issue_count", "pr_count", "comment_count", "repository_count")

_USER_COLUMNS = (
    "id, source_id, login, name, email, avatar_url, source_instance, commit_count, "
    "issue_count, pr_count, comment_count, repository_count, discovered_at, updated_at"
)


def _row_to_user(row: Any) -> User:
    return User(
        id=row["id"],
        source_id=row["source_id"],
        login=row["login"],
        name=row["name"],
        email=row["email"],
        avatar_url=row["avatar_url"],
        source_instance=row["source_instance"],
        commit_count=row["commit_count"],
        issue_count=row["issue_count"],
        pr_count=row["pr_count"],
        comment_count=row["comment_count"],
        repository_count=row["repository_count"],
        discovered_at=as_datetime(row["discovered_at"]),
        updated_at=as_datetime(row["updated_at"]),
    )


def _row_to_membership(row: Any) -> UserOrgMembership:
    return UserOrgMembership(
        id=row["id"],
        user_login=row["user_login"],
        organization=row["organization"],
        role=row["role"],
        discovered_at=as_datetime(row["discovered_at"]),
    )


def merge_user(existing: User, incoming: User) -> User:
    """
    Combine a stored user with a freshly discovered one.

    Counters take the maximum of both sides; name, email and avatar keep
    the stored value when the incoming one is None. Identity fields come
    from the stored user.
    """
    merged = User(
        login=existing.login,
        source_instance=incoming.source_instance or existing.source_instance,
        name=incoming.name if incoming.name is not None else existing.name,
        email=incoming.email if incoming.email is not None else existing.email,
        avatar_url=incoming.avatar_url if incoming.avatar_url is not None else existing.avatar_url,
        source_id=incoming.source_id if incoming.source_id is not None else existing.source_id,
        id=existing.id,
        discovered_at=existing.discovered_at,
    )
    for name in COUNTER_FIELDS:
        setattr(merged, name, max(getattr(existing, name), getattr(incoming, name)))
    return merged


class UserStore(BaseStore):
    span_prefix = "user_store"

    async def save_user(self, user: User) -> int:
        """
        Insert a user or merge it into the stored one by login.

        Returns:
            The user id
        """
        with self._span("save_user", **{ATTR_USER_LOGIN: user.login}):
            async with self._connect("save_user", user.login) as conn:
                result = await conn.execute(
                    text(f"SELECT {_USER_COLUMNS} FROM github_users WHERE login = :login"),
                    {"login": user.login},
                )
                row = result.mappings().fetchone()
                now = self._bind_now()
                if row is None:
                    columns = (
                        "source_id",
                        "login",
                        "name",
                        "email",
                        "avatar_url",
                        "source_instance",
                        *COUNTER_FIELDS,
                        "discovered_at",
                        "updated_at",
                    )
                    params: dict[str, Any] = {
                        "source_id": user.source_id,
                        "login": user.login,
                        "name": user.name,
                        "email": user.email,
                        "avatar_url": user.avatar_url,
                        "source_instance": user.source_instance,
                        "discovered_at": self._bind_dt(user.discovered_at or utcnow()),
                        "updated_at": now,
                    }
                    params.update({name: getattr(user, name) for name in COUNTER_FIELDS})
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("github_users", columns)), params
                    )
                    user.id = int(result.scalar_one())
                    return user.id

                merged = merge_user(_row_to_user(row), user)
                params = {
                    "id": merged.id,
                    "name": merged.name,
                    "email": merged.email,
                    "avatar_url": merged.avatar_url,
                    "source_instance": merged.source_instance,
                    "source_id": merged.source_id,
                    "now": now,
                }
                params.update({name: getattr(merged, name) for name in COUNTER_FIELDS})
                await conn.execute(
                    text("""
                        UPDATE github_users
                        SET name = :name,
                            email = :email,
                            avatar_url = :avatar_url,
                            source_instance = :source_instance,
                            source_id = :source_id,
                            commit_count = :commit_count,
                            issue_count = :issue_count,
                            pr_count = :pr_count,
                            comment_count = :comment_count,
                            repository_count = :repository_count,
                            updated_at = :now
                        WHERE id = :id
                    """),
                    params,
                )
            assert merged.id is not None
            user.id = merged.id
            return merged.id

    async def get_user_by_login(self, login: str) -> User | None:
        with self._span("get_user_by_login", **{ATTR_USER_LOGIN: login}):
            return await self._fetch_one("get_user_by_login", "login = :value", login)

    async def get_user_by_email(self, email: str) -> User | None:
        with self._span("get_user_by_email"):
            return await self._fetch_one("get_user_by_email", "email = :value", email)

    async def _fetch_one(self, operation: str, where: str, value: str) -> User | None:
        query = text(f"SELECT {_USER_COLUMNS} FROM github_users WHERE {where} ORDER BY id")
        async with self._connect(operation, value, transactional=False) as conn:
            result = await conn.execute(query, {"value": value})
            row = result.mappings().first()
        return _row_to_user(row) if row else None

    async def list_users(
        self,
        source_instance: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[User]:
        """List users ordered by login."""
        with self._span("list_users"):
            where = "source_instance = :source_instance" if source_instance else "1=1"
            params = {"source_instance": source_instance} if source_instance else {}
            query = text(
                f"SELECT {_USER_COLUMNS} FROM github_users WHERE {where} "
                f"ORDER BY login {self._dialect.paginate(limit, offset)}"
            )
            async with self._connect("list_users", transactional=False) as conn:
                result = await conn.execute(query, params)
                return [_row_to_user(row) for row in result.mappings()]

    async def increment_user_repository_count(self, login: str) -> None:
        with self._span("increment_user_repository_count", **{ATTR_USER_LOGIN: login}):
            query = text("""
                UPDATE github_users
                SET repository_count = repository_count + 1, updated_at = :now
                WHERE login = :login
            """)
            async with self._connect("increment_user_repository_count", login) as conn:
                result = await conn.execute(query, {"login": login, "now": self._bind_now()})
                if result.rowcount == 0:
                    raise NotFoundError("user", login)

    async def get_user_stats(self) -> UserStats:
        """
        Totals over all users.

        A user has activity when any of its commit, issue, pull request
        or comment counters is positive.
        """
        with self._span("get_user_stats"):
            query = text("""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN email IS NOT NULL AND email <> ''
                             THEN 1 ELSE 0 END) AS with_email,
                    SUM(CASE WHEN commit_count > 0 OR issue_count > 0 OR pr_count > 0
                             OR comment_count > 0 THEN 1 ELSE 0 END) AS with_activity
                FROM github_users
            """)
            async with self._connect("get_user_stats", transactional=False) as conn:
                result = await conn.execute(query)
                row = result.mappings().one()
            return UserStats(
                total=int(row["total"] or 0),
                with_email=int(row["with_email"] or 0),
                with_activity=int(row["with_activity"] or 0),
            )

    async def save_user_org_membership(self, membership: UserOrgMembership) -> int:
        """Insert or update a membership by ``(user_login, organization)``."""
        with self._span(
            "save_user_org_membership",
            **{ATTR_USER_LOGIN: membership.user_login, ATTR_ORGANIZATION: membership.organization},
        ):
            key = f"{membership.user_login}@{membership.organization}"
            async with self._connect("save_user_org_membership", key) as conn:
                result = await conn.execute(
                    text("""
                        SELECT id, role FROM user_org_memberships
                        WHERE user_login = :user_login AND organization = :organization
                    """),
                    {"user_login": membership.user_login, "organization": membership.organization},
                )
                row = result.fetchone()
                if row is None:
                    columns = ("user_login", "organization", "role", "discovered_at")
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("user_org_memberships", columns)),
                        {
                            "user_login": membership.user_login,
                            "organization": membership.organization,
                            "role": membership.role,
                            "discovered_at": self._bind_dt(membership.discovered_at or utcnow()),
                        },
                    )
                    membership.id = int(result.scalar_one())
                else:
                    membership.id = int(row[0])
                    if row[1] != membership.role:
                        await conn.execute(
                            text("UPDATE user_org_memberships SET role = :role WHERE id = :id"),
                            {"id": membership.id, "role": membership.role},
                        )
            return membership.id

    async def get_user_org_memberships(self, login: str) -> list[UserOrgMembership]:
        with self._span("get_user_org_memberships", **{ATTR_USER_LOGIN: login}):
            return await self._memberships(
                "get_user_org_memberships", "user_login = :value ORDER BY organization", login
            )

    async def get_org_members(self, organization: str) -> list[UserOrgMembership]:
        with self._span("get_org_members", **{ATTR_ORGANIZATION: organization}):
            return await self._memberships(
                "get_org_members", "organization = :value ORDER BY user_login", organization
            )

    async def _memberships(self, operation: str, where: str, value: str) -> list[UserOrgMembership]:
        query = text(f"""
            SELECT id, user_login, organization, role, discovered_at
            FROM user_org_memberships
            WHERE {where}
        """)
        async with self._connect(operation, value, transactional=False) as conn:
            result = await conn.execute(query, {"value": value})
            return [_row_to_membership(row) for row in result.mappings()]
