"""
Mannequin store.

A mannequin is the placeholder identity a destination organization holds
for a source user until the user reclaims it. One source login has at
most one mannequin per destination organization.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text

from migrationstate.exceptions import NotFoundError
from migrationstate.models import MappingStatus, MappingWithMannequin, UserMannequin
from migrationstate.observability import ATTR_ORGANIZATION, ATTR_USER_LOGIN
from migrationstate.stores._base import BaseStore, as_datetime

logger = logging.getLogger(__name__)

MANNEQUIN_COLUMNS = (
    "id, source_login, mannequin_id, mannequin_login, mannequin_org, reclaim_status, "
    "reclaim_error, created_at, updated_at"
)


def row_to_mannequin(row: Any) -> UserMannequin:
    return UserMannequin(
        id=row["id"],
        source_login=row["source_login"],
        mannequin_id=row["mannequin_id"],
        mannequin_login=row["mannequin_login"],
        mannequin_org=row["mannequin_org"],
        reclaim_status=row["reclaim_status"],
        reclaim_error=row["reclaim_error"],
        created_at=as_datetime(row["created_at"]),
        updated_at=as_datetime(row["updated_at"]),
    )


class MannequinStore(BaseStore):
    span_prefix = "mannequin_store"

    async def save_user_mannequin(self, mannequin: UserMannequin) -> int:
        """
        Insert or update a mannequin by ``(source_login, mannequin_org)``.

        Returns:
            The mannequin row id
        """
        with self._span(
            "save_user_mannequin",
            **{ATTR_USER_LOGIN: mannequin.source_login, ATTR_ORGANIZATION: mannequin.mannequin_org},
        ):
            key = f"{mannequin.source_login}@{mannequin.mannequin_org}"
            params: dict[str, Any] = {
                "source_login": mannequin.source_login,
                "mannequin_id": mannequin.mannequin_id,
                "mannequin_login": mannequin.mannequin_login,
                "mannequin_org": mannequin.mannequin_org,
                "reclaim_status": mannequin.reclaim_status,
                "reclaim_error": mannequin.reclaim_error,
                "updated_at": self._bind_now(),
            }
            async with self._connect("save_user_mannequin", key) as conn:
                result = await conn.execute(
                    text("""
                        SELECT id FROM user_mannequins
                        WHERE source_login = :source_login AND mannequin_org = :mannequin_org
                    """),
                    {
                        "source_login": mannequin.source_login,
                        "mannequin_org": mannequin.mannequin_org,
                    },
                )
                existing_id = result.scalar_one_or_none()
                if existing_id is None:
                    params["created_at"] = params["updated_at"]
                    result = await conn.execute(
                        text(self._dialect.insert_returning_id("user_mannequins", tuple(params))),
                        params,
                    )
                    mannequin.id = int(result.scalar_one())
                else:
                    mannequin.id = int(existing_id)
                    params["id"] = mannequin.id
                    await conn.execute(
                        text("""
                            UPDATE user_mannequins
                            SET mannequin_id = :mannequin_id,
                                mannequin_login = :mannequin_login,
                                reclaim_status = :reclaim_status,
                                reclaim_error = :reclaim_error,
                                updated_at = :updated_at
                            WHERE id = :id
                        """),
                        params,
                    )
            return mannequin.id

    async def get_user_mannequin(
        self, source_login: str, mannequin_org: str
    ) -> UserMannequin | None:
        with self._span(
            "get_user_mannequin",
            **{ATTR_USER_LOGIN: source_login, ATTR_ORGANIZATION: mannequin_org},
        ):
            query = text(f"""
                SELECT {MANNEQUIN_COLUMNS} FROM user_mannequins
                WHERE source_login = :source_login AND mannequin_org = :mannequin_org
            """)
            params = {"source_login": source_login, "mannequin_org": mannequin_org}
            async with self._connect(
                "get_user_mannequin", f"{source_login}@{mannequin_org}", transactional=False
            ) as conn:
                result = await conn.execute(query, params)
                row = result.mappings().fetchone()
            return row_to_mannequin(row) if row else None

    async def get_user_mannequins_by_source_login(self, source_login: str) -> list[UserMannequin]:
        """All mannequins of one source user, ordered by organization."""
        with self._span("get_user_mannequins_by_source_login", **{ATTR_USER_LOGIN: source_login}):
            query = text(f"""
                SELECT {MANNEQUIN_COLUMNS} FROM user_mannequins
                WHERE source_login = :source_login
                ORDER BY mannequin_org
            """)
            async with self._connect(
                "get_user_mannequins_by_source_login", source_login, transactional=False
            ) as conn:
                result = await conn.execute(query, {"source_login": source_login})
                return [row_to_mannequin(row) for row in result.mappings()]

    async def list_user_mannequins(
        self,
        mannequin_org: str | None = None,
        reclaim_status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[UserMannequin]:
        with self._span("list_user_mannequins"):
            clauses = ["1=1"]
            params: dict[str, Any] = {}
            if mannequin_org:
                clauses.append("mannequin_org = :mannequin_org")
                params["mannequin_org"] = mannequin_org
            if reclaim_status:
                clauses.append("reclaim_status = :reclaim_status")
                params["reclaim_status"] = reclaim_status
            query = text(
                f"SELECT {MANNEQUIN_COLUMNS} FROM user_mannequins "
                f"WHERE {' AND '.join(clauses)} "
                f"ORDER BY source_login, mannequin_org {self._dialect.paginate(limit, offset)}"
            )
            async with self._connect("list_user_mannequins", transactional=False) as conn:
                result = await conn.execute(query, params)
                return [row_to_mannequin(row) for row in result.mappings()]

    async def update_mannequin_reclaim_status(
        self,
        source_login: str,
        mannequin_org: str,
        reclaim_status: str,
        reclaim_error: str | None = None,
    ) -> None:
        """
        Record reclaim progress for one mannequin.

        The stored error is only replaced when ``reclaim_error`` is given.

        Raises:
            NotFoundError: If the mannequin does not exist
        """
        key = f"{source_login}@{mannequin_org}"
        with self._span(
            "update_mannequin_reclaim_status",
            **{ATTR_USER_LOGIN: source_login, ATTR_ORGANIZATION: mannequin_org},
        ):
            assignments = ["reclaim_status = :reclaim_status", "updated_at = :now"]
            params: dict[str, Any] = {
                "source_login": source_login,
                "mannequin_org": mannequin_org,
                "reclaim_status": reclaim_status,
                "now": self._bind_now(),
            }
            if reclaim_error is not None:
                assignments.append("reclaim_error = :reclaim_error")
                params["reclaim_error"] = reclaim_error
            query = text(f"""
                UPDATE user_mannequins
                SET {", ".join(assignments)}
                WHERE source_login = :source_login AND mannequin_org = :mannequin_org
            """)
            async with self._connect("update_mannequin_reclaim_status", key) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("mannequin", key)

    async def get_mannequin_orgs(self) -> list[str]:
        """Distinct destination organizations holding mannequins, sorted."""
        with self._span("get_mannequin_orgs"):
            query = text(
                "SELECT DISTINCT mannequin_org FROM user_mannequins ORDER BY mannequin_org"
            )
            async with self._connect("get_mannequin_orgs", transactional=False) as conn:
                result = await conn.execute(query)
                return [row[0] for row in result]

    async def delete_user_mannequin(self, source_login: str, mannequin_org: str) -> None:
        key = f"{source_login}@{mannequin_org}"
        with self._span(
            "delete_user_mannequin",
            **{ATTR_USER_LOGIN: source_login, ATTR_ORGANIZATION: mannequin_org},
        ):
            async with self._connect("delete_user_mannequin", key) as conn:
                result = await conn.execute(
                    text("""
                        DELETE FROM user_mannequins
                        WHERE source_login = :source_login AND mannequin_org = :mannequin_org
                    """),
                    {"source_login": source_login, "mannequin_org": mannequin_org},
                )
                if result.rowcount == 0:
                    raise NotFoundError("mannequin", key)

    async def list_mappings_with_mannequins(
        self,
        mannequin_org: str,
        status: MappingStatus | None = None,
    ) -> list[MappingWithMannequin]:
        """
        User mappings joined with their mannequin in one organization.

        Mappings without a mannequin in ``mannequin_org`` are left out.
        This is the row set for a reclaim CSV.

        Args:
            mannequin_org: Destination organization holding the mannequins
            status: Only mappings with this mapping status

        Returns:
            Rows ordered by source login
        """
        with self._span("list_mappings_with_mannequins", **{ATTR_ORGANIZATION: mannequin_org}):
            params: dict[str, Any] = {"mannequin_org": mannequin_org}
            where = "1=1"
            if status is not None:
                where = "um.mapping_status = :status"
                params["status"] = status.value
            query = text(f"""
                SELECT um.source_login, um.source_email, um.source_name,
                       um.destination_login, um.destination_email, um.mapping_status,
                       um.match_confidence, um.match_reason,
                       mq.mannequin_id, mq.mannequin_login, mq.mannequin_org,
                       mq.reclaim_status, mq.reclaim_error
                FROM user_mappings um
                INNER JOIN user_mannequins mq
                    ON um.source_login = mq.source_login AND mq.mannequin_org = :mannequin_org
                WHERE {where}
                ORDER BY um.source_login
            """)
            async with self._connect(
                "list_mappings_with_mannequins", mannequin_org, transactional=False
            ) as conn:
                result = await conn.execute(query, params)
                return [
                    MappingWithMannequin(
                        source_login=row["source_login"],
                        mapping_status=MappingStatus(row["mapping_status"]),
                        mannequin_id=row["mannequin_id"],
                        mannequin_org=row["mannequin_org"],
                        source_email=row["source_email"],
                        source_name=row["source_name"],
                        destination_login=row["destination_login"],
                        destination_email=row["destination_email"],
                        match_confidence=row["match_confidence"],
                        match_reason=row["match_reason"],
                        mannequin_login=row["mannequin_login"],
                        reclaim_status=row["reclaim_status"],
                        reclaim_error=row["reclaim_error"],
                    )
                    for row in result.mappings()
                ]
