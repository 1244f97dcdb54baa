"""
Dependency graph store.

Edges run from a repository (by id) to a dependency full name. An edge
is *local* when its target names a repository this store knows about.
Locality is not maintained per write: after a discovery pass callers run
``recompute_locality_flags()`` to re-derive every flag in one statement,
since a target repository may be discovered after the edge pointing at
it.

Example:
    >>> store = DependencyStore(engine, dialect)
    >>> await store.replace_dependencies(repo_id, [
    ...     RepositoryDependency("acme/shared-workflows", "workflow"),
    ... ])
    >>> await store.recompute_locality_flags()
    1
    >>> await store.get_dependents("acme/shared-workflows")
    [Repository(full_name='acme/api', ...)]
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import bindparam, text

from migrationstate.exceptions import NotFoundError, StorageError
from migrationstate.models import DependencyPair, Repository, RepositoryDependency
from migrationstate.observability import (
    ATTR_DB_ROWS_AFFECTED,
    ATTR_ITEM_COUNT,
    ATTR_REPOSITORY_FULL_NAME,
    ATTR_REPOSITORY_ID,
    ATTR_SOURCE_ID,
)
from migrationstate.stores._base import (
    BaseStore,
    as_bool,
    as_datetime,
    dump_json,
    load_json,
    utcnow,
)
from migrationstate.stores.repositories import REPOSITORY_COLUMNS, row_to_repository

logger = logging.getLogger(__name__)


def _row_to_dependency(row: Any) -> RepositoryDependency:
    return RepositoryDependency(
        id=row["id"],
        repository_id=row["repository_id"],
        dependency_full_name=row["dependency_full_name"],
        dependency_type=row["dependency_type"],
        dependency_url=row["dependency_url"],
        is_local=as_bool(row["is_local"]),
        discovered_at=as_datetime(row["discovered_at"]),
        metadata=load_json(row["metadata"]),
    )


class DependencyStore(BaseStore):
    """Directed dependency edges between repositories."""

    span_prefix = "dependency_store"

    async def replace_dependencies(
        self,
        repository_id: int,
        dependencies: Sequence[RepositoryDependency],
    ) -> None:
        """
        Replace a repository's outgoing edges with ``dependencies``.

        The delete and every insert share one transaction: if any insert
        fails the previous edge set is left intact.

        Args:
            repository_id: Repository owning the edges
            dependencies: The complete new edge set (may be empty)
        """
        with self._span(
            "replace_dependencies",
            **{ATTR_REPOSITORY_ID: repository_id, ATTR_ITEM_COUNT: len(dependencies)},
        ):
            insert = text("""
                INSERT INTO repository_dependencies
                    (repository_id, dependency_full_name, dependency_type,
                     dependency_url, is_local, discovered_at, metadata)
                VALUES
                    (:repository_id, :dependency_full_name, :dependency_type,
                     :dependency_url, :is_local, :discovered_at, :metadata)
            """)
            now = utcnow()
            rows = [
                {
                    "repository_id": repository_id,
                    "dependency_full_name": dep.dependency_full_name,
                    "dependency_type": dep.dependency_type,
                    "dependency_url": dep.dependency_url or "",
                    "is_local": dep.is_local,
                    "discovered_at": self._bind_dt(dep.discovered_at or now),
                    "metadata": dump_json(dep.metadata),
                }
                for dep in dependencies
            ]
            async with self._connect("replace_dependencies", repository_id) as conn:
                await conn.execute(
                    text("DELETE FROM repository_dependencies WHERE repository_id = :id"),
                    {"id": repository_id},
                )
                if rows:
                    await conn.execute(insert, rows)
            logger.debug(
                "Replaced dependencies for repository %s (%d edges)",
                repository_id,
                len(rows),
            )

    async def get_dependencies(self, repository_id: int) -> list[RepositoryDependency]:
        """Get a repository's outgoing edges ordered by type, then target."""
        with self._span("get_dependencies", **{ATTR_REPOSITORY_ID: repository_id}):
            query = text("""
                SELECT id, repository_id, dependency_full_name, dependency_type,
                       dependency_url, is_local, discovered_at, metadata
                FROM repository_dependencies
                WHERE repository_id = :repository_id
                ORDER BY dependency_type, dependency_full_name
            """)
            async with self._connect(
                "get_dependencies", repository_id, transactional=False
            ) as conn:
                result = await conn.execute(query, {"repository_id": repository_id})
                return [_row_to_dependency(row) for row in result.mappings()]

    async def get_dependencies_by_full_name(self, full_name: str) -> list[RepositoryDependency]:
        """
        Get a repository's outgoing edges by repository name.

        Raises:
            NotFoundError: If no repository has this full name
        """
        with self._span(
            "get_dependencies_by_full_name", **{ATTR_REPOSITORY_FULL_NAME: full_name}
        ):
            async with self._connect(
                "get_dependencies_by_full_name", full_name, transactional=False
            ) as conn:
                result = await conn.execute(
                    text("SELECT id FROM repositories WHERE full_name = :full_name"),
                    {"full_name": full_name},
                )
                repository_id = result.scalar_one_or_none()
            if repository_id is None:
                raise NotFoundError("repository", full_name)
            return await self.get_dependencies(repository_id)

    async def get_dependents(self, dependency_full_name: str) -> list[Repository]:
        """
        Reverse lookup: repositories that depend on ``dependency_full_name``.

        Each repository appears once however many edges it has to the
        target. Ordered by full name.
        """
        with self._span(
            "get_dependents", **{ATTR_REPOSITORY_FULL_NAME: dependency_full_name}
        ):
            columns = ", ".join(f"r.{c.strip()}" for c in REPOSITORY_COLUMNS.split(","))
            query = text(f"""
                SELECT DISTINCT {columns}
                FROM repositories r
                INNER JOIN repository_dependencies rd ON r.id = rd.repository_id
                WHERE rd.dependency_full_name = :dependency_full_name
                ORDER BY r.full_name
            """)
            async with self._connect(
                "get_dependents", dependency_full_name, transactional=False
            ) as conn:
                result = await conn.execute(
                    query, {"dependency_full_name": dependency_full_name}
                )
                return [row_to_repository(row) for row in result.mappings()]

    async def clear_dependencies(self, repository_id: int) -> None:
        with self._span("clear_dependencies", **{ATTR_REPOSITORY_ID: repository_id}):
            async with self._connect("clear_dependencies", repository_id) as conn:
                await conn.execute(
                    text("DELETE FROM repository_dependencies WHERE repository_id = :id"),
                    {"id": repository_id},
                )

    async def recompute_locality_flags(self) -> int:
        """
        Re-derive ``is_local`` on every edge.

        An edge is local exactly when its target full name currently
        exists in the repositories table.

        Returns:
            Number of edge rows the update touched
        """
        with self._span("recompute_locality_flags") as span:
            query = text(f"""
                UPDATE repository_dependencies
                SET is_local = CASE
                    WHEN dependency_full_name IN (SELECT full_name FROM repositories)
                    THEN {self._dialect.true_literal}
                    ELSE {self._dialect.false_literal}
                END
            """)
            async with self._connect("recompute_locality_flags") as conn:
                result = await conn.execute(query)
                updated = result.rowcount
            if span is not None:
                span.set_attribute(ATTR_DB_ROWS_AFFECTED, updated)
            logger.debug("Recomputed locality on %d dependency edges", updated)
            return updated

    async def get_local_dependency_pairs(
        self,
        dependency_types: Sequence[str] | None = None,
        source_id: int | None = None,
    ) -> list[DependencyPair]:
        """
        Edges whose both endpoints are known repositories.

        Each pair is enriched with both repositories' source URLs. The
        enrichment is best effort: if that lookup fails the pairs are
        returned without URLs.

        Args:
            dependency_types: Only edges of these types (all when empty)
            source_id: Only edges whose depending repository came from
                this source

        Returns:
            Pairs ordered by depending repository, then target
        """
        attributes: dict[str, Any] = {}
        if source_id is not None:
            attributes[ATTR_SOURCE_ID] = source_id
        with self._span("get_local_dependency_pairs", **attributes):
            clauses = ["1=1"]
            params: dict[str, Any] = {}
            binds = []
            if dependency_types:
                clauses.append("rd.dependency_type IN :types")
                params["types"] = list(dependency_types)
                binds.append(bindparam("types", expanding=True))
            if source_id is not None:
                clauses.append("r.source_id = :source_id")
                params["source_id"] = source_id
            query = text(f"""
                SELECT DISTINCT r.full_name AS source_repo,
                       rd.dependency_full_name AS target_repo,
                       rd.dependency_type,
                       rd.dependency_url
                FROM repository_dependencies rd
                INNER JOIN repositories r ON r.id = rd.repository_id
                INNER JOIN repositories t ON t.full_name = rd.dependency_full_name
                WHERE {" AND ".join(clauses)}
                ORDER BY r.full_name, rd.dependency_full_name, rd.dependency_type
            """)
            if binds:
                query = query.bindparams(*binds)
            async with self._connect("get_local_dependency_pairs", transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.mappings().fetchall()

            if not rows:
                return []

            names = sorted(
                {row["source_repo"] for row in rows} | {row["target_repo"] for row in rows}
            )
            urls = await self._source_urls(names)
            return [
                DependencyPair(
                    source_repo=row["source_repo"],
                    target_repo=row["target_repo"],
                    dependency_type=row["dependency_type"],
                    dependency_url=row["dependency_url"],
                    source_repo_url=urls.get(row["source_repo"]),
                    target_repo_url=urls.get(row["target_repo"]),
                )
                for row in rows
            ]

    async def _source_urls(self, full_names: Sequence[str]) -> dict[str, str]:
        query = text(
            "SELECT full_name, source_url FROM repositories WHERE full_name IN :names"
        ).bindparams(bindparam("names", expanding=True))
        try:
            async with self._connect("dependency_pair_urls", transactional=False) as conn:
                result = await conn.execute(query, {"names": list(full_names)})
                return {row[0]: row[1] for row in result if row[1]}
        except StorageError as e:
            logger.warning(
                "Could not load repository URLs for dependency pairs: %s",
                e,
                exc_info=True,
            )
            return {}
