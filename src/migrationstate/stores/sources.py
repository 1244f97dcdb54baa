"""
Source store.

Sources are validated through the pydantic ``Source`` model before every
write, so a source that would fail validation never reaches the
database. Plain deletion refuses while repositories still reference the
source; see ``migrationstate.cascade`` for the cascading delete.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import text

from migrationstate.exceptions import InvalidEntityError, NotFoundError, SourceInUseError
from migrationstate.models import Repository, Source
from migrationstate.observability import ATTR_REPOSITORY_ID, ATTR_SOURCE_ID
from migrationstate.stores._base import BaseStore, as_bool, as_datetime
from migrationstate.stores.repositories import REPOSITORY_COLUMNS, row_to_repository

logger = logging.getLogger(__name__)

_SOURCE_COLUMNS = (
    "id, name, type, base_url, token, organization, enterprise_slug, app_id, "
    "app_private_key, app_installation_id, is_active, repository_count, "
    "last_sync_at, created_at, updated_at"
)


def _row_to_source(row: Any) -> Source:
    return Source.model_construct(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        base_url=row["base_url"],
        token=row["token"],
        organization=row["organization"],
        enterprise_slug=row["enterprise_slug"],
        app_id=row["app_id"],
        app_private_key=row["app_private_key"],
        app_installation_id=row["app_installation_id"],
        is_active=as_bool(row["is_active"]),
        repository_count=row["repository_count"],
        last_sync_at=as_datetime(row["last_sync_at"]),
        created_at=as_datetime(row["created_at"]),
        updated_at=as_datetime(row["updated_at"]),
    )


def validate_source(source: Source) -> Source:
    """
    Re-run model validation on a source.

    Sources are mutable, so fields may have been edited after
    construction; this normalises them again before a write.

    Raises:
        InvalidEntityError: If the source fails validation
    """
    try:
        return Source.model_validate(source.model_dump())
    except ValidationError as exc:
        raise InvalidEntityError("source", exc.errors(include_url=False)) from exc


class SourceStore(BaseStore):
    """CRUD for migration sources."""

    span_prefix = "source_store"

    async def create_source(self, source: Source) -> int:
        """
        Validate and insert a source.

        Returns:
            The new source id

        Raises:
            InvalidEntityError: If the source fails validation
        """
        with self._span("create_source"):
            valid = validate_source(source)
            now = self._bind_now()
            columns = (
                "name",
                "type",
                "base_url",
                "token",
                "organization",
                "enterprise_slug",
                "app_id",
                "app_private_key",
                "app_installation_id",
                "is_active",
                "repository_count",
                "created_at",
                "updated_at",
            )
            params = self._params(valid)
            params.update({"repository_count": 0, "created_at": now, "updated_at": now})
            query = text(self._dialect.insert_returning_id("sources", columns))
            async with self._connect("create_source", valid.name) as conn:
                result = await conn.execute(query, params)
                source_id = int(result.scalar_one())
            source.id = source_id
            logger.debug("Created source %s (%s)", source_id, valid.name)
            return source_id

    def _params(self, source: Source) -> dict[str, Any]:
        return {
            "name": source.name,
            "type": source.type,
            "base_url": source.base_url,
            "token": source.token,
            "organization": source.organization,
            "enterprise_slug": source.enterprise_slug,
            "app_id": source.app_id,
            "app_private_key": source.app_private_key,
            "app_installation_id": source.app_installation_id,
            "is_active": source.is_active,
        }

    async def get_source(self, source_id: int) -> Source | None:
        with self._span("get_source", **{ATTR_SOURCE_ID: source_id}):
            return await self._fetch_one("get_source", "id = :key", source_id)

    async def get_source_by_name(self, name: str) -> Source | None:
        with self._span("get_source_by_name"):
            return await self._fetch_one("get_source_by_name", "name = :key", name)

    async def _fetch_one(self, operation: str, where: str, key: Any) -> Source | None:
        query = text(f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE {where}")
        async with self._connect(operation, key, transactional=False) as conn:
            result = await conn.execute(query, {"key": key})
            row = result.mappings().fetchone()
        return _row_to_source(row) if row else None

    async def _fetch_all(self, operation: str, where: str, params: dict[str, Any]) -> list[Source]:
        query = text(f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE {where} ORDER BY name")
        async with self._connect(operation, transactional=False) as conn:
            result = await conn.execute(query, params)
            return [_row_to_source(row) for row in result.mappings()]

    async def list_sources(self) -> list[Source]:
        with self._span("list_sources"):
            return await self._fetch_all("list_sources", "1=1", {})

    async def list_active_sources(self) -> list[Source]:
        with self._span("list_active_sources"):
            return await self._fetch_all(
                "list_active_sources", f"is_active = {self._dialect.true_literal}", {}
            )

    async def get_sources_by_type(self, source_type: str) -> list[Source]:
        with self._span("get_sources_by_type"):
            return await self._fetch_all(
                "get_sources_by_type", "type = :type", {"type": source_type.strip().lower()}
            )

    async def update_source(self, source: Source) -> None:
        """
        Validate and update a source's configuration.

        Raises:
            InvalidEntityError: If the source fails validation
            NotFoundError: If the source does not exist
        """
        if source.id is None:
            raise NotFoundError("source", None)
        with self._span("update_source", **{ATTR_SOURCE_ID: source.id}):
            valid = validate_source(source)
            params = self._params(valid)
            params.update({"id": source.id, "updated_at": self._bind_now()})
            query = text("""
                UPDATE sources
                SET name = :name,
                    type = :type,
                    base_url = :base_url,
                    token = :token,
                    organization = :organization,
                    enterprise_slug = :enterprise_slug,
                    app_id = :app_id,
                    app_private_key = :app_private_key,
                    app_installation_id = :app_installation_id,
                    is_active = :is_active,
                    updated_at = :updated_at
                WHERE id = :id
            """)
            async with self._connect("update_source", source.id) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("source", source.id)

    async def delete_source(self, source_id: int) -> None:
        """
        Delete a source that no repository references.

        Raises:
            SourceInUseError: If repositories still reference the source
            NotFoundError: If the source does not exist
        """
        with self._span("delete_source", **{ATTR_SOURCE_ID: source_id}):
            async with self._connect("delete_source", source_id) as conn:
                result = await conn.execute(
                    text("SELECT COUNT(*) FROM repositories WHERE source_id = :id"),
                    {"id": source_id},
                )
                count = int(result.scalar_one())
                if count > 0:
                    raise SourceInUseError(source_id, count)
                result = await conn.execute(
                    text("DELETE FROM sources WHERE id = :id"), {"id": source_id}
                )
                if result.rowcount == 0:
                    raise NotFoundError("source", source_id)
            logger.info("Deleted source %s", source_id)

    async def set_source_active(self, source_id: int, is_active: bool) -> None:
        with self._span("set_source_active", **{ATTR_SOURCE_ID: source_id}):
            query = text(
                "UPDATE sources SET is_active = :is_active, updated_at = :now WHERE id = :id"
            )
            params = {"id": source_id, "is_active": is_active, "now": self._bind_now()}
            async with self._connect("set_source_active", source_id) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("source", source_id)

    async def update_source_last_sync(self, source_id: int) -> None:
        with self._span("update_source_last_sync", **{ATTR_SOURCE_ID: source_id}):
            query = text(
                "UPDATE sources SET last_sync_at = :now, updated_at = :now WHERE id = :id"
            )
            async with self._connect("update_source_last_sync", source_id) as conn:
                result = await conn.execute(query, {"id": source_id, "now": self._bind_now()})
                if result.rowcount == 0:
                    raise NotFoundError("source", source_id)

    async def update_source_repository_count(self, source_id: int) -> int:
        """
        Write the live repository count back onto the source.

        Also stamps ``last_sync_at``.

        Returns:
            The count that was written
        """
        with self._span("update_source_repository_count", **{ATTR_SOURCE_ID: source_id}):
            async with self._connect("update_source_repository_count", source_id) as conn:
                result = await conn.execute(
                    text("SELECT COUNT(*) FROM repositories WHERE source_id = :id"),
                    {"id": source_id},
                )
                count = int(result.scalar_one())
                now = self._bind_now()
                result = await conn.execute(
                    text("""
                        UPDATE sources
                        SET repository_count = :count, last_sync_at = :now, updated_at = :now
                        WHERE id = :id
                    """),
                    {"id": source_id, "count": count, "now": now},
                )
                if result.rowcount == 0:
                    raise NotFoundError("source", source_id)
            return count

    async def get_repositories_by_source_id(self, source_id: int) -> list[Repository]:
        with self._span("get_repositories_by_source_id", **{ATTR_SOURCE_ID: source_id}):
            query = text(
                f"SELECT {REPOSITORY_COLUMNS} FROM repositories "
                "WHERE source_id = :source_id ORDER BY full_name"
            )
            async with self._connect(
                "get_repositories_by_source_id", source_id, transactional=False
            ) as conn:
                result = await conn.execute(query, {"source_id": source_id})
                return [row_to_repository(row) for row in result.mappings()]

    async def count_repositories_by_source_id(self, source_id: int) -> int:
        with self._span("count_repositories_by_source_id", **{ATTR_SOURCE_ID: source_id}):
            query = text("SELECT COUNT(*) FROM repositories WHERE source_id = :source_id")
            async with self._connect(
                "count_repositories_by_source_id", source_id, transactional=False
            ) as conn:
                result = await conn.execute(query, {"source_id": source_id})
                return int(result.scalar_one())

    async def assign_repository_to_source(self, repository_id: int, source_id: int) -> None:
        """
        Point a repository at a source.

        Raises:
            NotFoundError: If the repository does not exist
        """
        with self._span(
            "assign_repository_to_source",
            **{ATTR_REPOSITORY_ID: repository_id, ATTR_SOURCE_ID: source_id},
        ):
            query = text("""
                UPDATE repositories
                SET source_id = :source_id, updated_at = :now
                WHERE id = :id
            """)
            params = {"id": repository_id, "source_id": source_id, "now": self._bind_now()}
            async with self._connect("assign_repository_to_source", repository_id) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("repository", repository_id)
