"""
Repository store.

Repositories are keyed by ``full_name``. Saving an existing repository
keeps its id and ``discovered_at``; re-discovery of a repository that has
already progressed (or joined a batch) keeps its migration state.

Migration history and logs are child rows of a repository and live here
as well.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection

from migrationstate.exceptions import NotFoundError
from migrationstate.models import (
    MigrationHistory,
    MigrationLog,
    OrgCompletionStats,
    Repository,
    RepositoryStatus,
)
from migrationstate.observability import (
    ATTR_ITEM_COUNT,
    ATTR_REPOSITORY_FULL_NAME,
    ATTR_REPOSITORY_ID,
)
from migrationstate.stores._base import BaseStore, as_bool, as_datetime, utcnow
from migrationstate.stores.batches import BatchStore

logger = logging.getLogger(__name__)

REPOSITORY_COLUMNS = (
    "id, full_name, source, source_url, source_id, status, batch_id, priority, "
    "visibility, is_archived, is_fork, destination_url, destination_full_name, "
    "is_source_locked, discovered_at, updated_at, migrated_at, last_discovery_at, "
    "last_dry_run_at"
)

_COMPLETED = {RepositoryStatus.COMPLETE, RepositoryStatus.MIGRATION_COMPLETE}
_FAILED = {
    RepositoryStatus.MIGRATION_FAILED,
    RepositoryStatus.DRY_RUN_FAILED,
    RepositoryStatus.ROLLED_BACK,
}
_IN_PROGRESS = {
    RepositoryStatus.QUEUED_FOR_MIGRATION,
    RepositoryStatus.MIGRATING_CONTENT,
    RepositoryStatus.DRY_RUN_IN_PROGRESS,
    RepositoryStatus.DRY_RUN_QUEUED,
    RepositoryStatus.PRE_MIGRATION,
    RepositoryStatus.ARCHIVE_GENERATING,
    RepositoryStatus.POST_MIGRATION,
}


def row_to_repository(row: Any) -> Repository:
    return Repository(
        id=row["id"],
        full_name=row["full_name"],
        source=row["source"],
        source_url=row["source_url"],
        source_id=row["source_id"],
        status=RepositoryStatus(row["status"]),
        batch_id=row["batch_id"],
        priority=row["priority"],
        visibility=row["visibility"],
        is_archived=as_bool(row["is_archived"]),
        is_fork=as_bool(row["is_fork"]),
        destination_url=row["destination_url"],
        destination_full_name=row["destination_full_name"],
        is_source_locked=as_bool(row["is_source_locked"]),
        discovered_at=as_datetime(row["discovered_at"]),
        updated_at=as_datetime(row["updated_at"]),
        migrated_at=as_datetime(row["migrated_at"]),
        last_discovery_at=as_datetime(row["last_discovery_at"]),
        last_dry_run_at=as_datetime(row["last_dry_run_at"]),
    )


def _row_to_history(row: Any) -> MigrationHistory:
    return MigrationHistory(
        id=row["id"],
        repository_id=row["repository_id"],
        status=row["status"],
        phase=row["phase"],
        message=row["message"],
        error_message=row["error_message"],
        started_at=as_datetime(row["started_at"]),
        completed_at=as_datetime(row["completed_at"]),
        duration_seconds=row["duration_seconds"],
    )


def _row_to_log(row: Any) -> MigrationLog:
    return MigrationLog(
        id=row["id"],
        repository_id=row["repository_id"],
        history_id=row["history_id"],
        level=row["level"],
        phase=row["phase"],
        operation=row["operation"],
        message=row["message"],
        details=row["details"],
        initiated_by=row["initiated_by"],
        timestamp=as_datetime(row["timestamp"]),
    )


class RepositoryStore(BaseStore):
    """
    Repository persistence plus migration history and logs.

    Status changes made here do not recompute batch readiness; callers
    that change a batched repository's status follow up with
    BatchStore.update_batch_status(). Operations that move a repository
    out of a batch (rollback, delete) refresh that batch themselves.
    """

    span_prefix = "repository_store"

    async def save_repository(self, repo: Repository) -> int:
        """
        Insert or update a repository by ``full_name``.

        When the incoming status is PENDING and the stored repository has
        already progressed or belongs to a batch, the stored status,
        batch, priority and destination are kept.

        Args:
            repo: Repository to save

        Returns:
            The repository id (existing or newly assigned)
        """
        with self._span("save_repository", **{ATTR_REPOSITORY_FULL_NAME: repo.full_name}):
            async with self._connect("save_repository", repo.full_name) as conn:
                result = await conn.execute(
                    text(
                        f"SELECT {REPOSITORY_COLUMNS} FROM repositories "
                        "WHERE full_name = :full_name"
                    ),
                    {"full_name": repo.full_name},
                )
                row = result.mappings().fetchone()
                if row is None:
                    repo_id = await self._insert(conn, repo)
                    if repo.batch_id is not None:
                        await BatchStore(conn, self._dialect, tracer=self._tracer).refresh_batches(
                            conn, [repo.batch_id]
                        )
                    logger.debug("Inserted repository %s (id=%s)", repo.full_name, repo_id)
                    return repo_id

                existing = row_to_repository(row)
                await self._update(conn, existing, repo)
                if existing.batch_id != repo.batch_id:
                    touched = [b for b in (existing.batch_id, repo.batch_id) if b is not None]
                    await BatchStore(conn, self._dialect, tracer=self._tracer).refresh_batches(
                        conn, touched
                    )
                logger.debug("Updated repository %s (id=%s)", repo.full_name, existing.id)
                return int(row["id"])

    async def _insert(self, conn: AsyncConnection, repo: Repository) -> int:
        now = utcnow()
        columns = (
            "full_name",
            "source",
            "source_url",
            "source_id",
            "status",
            "batch_id",
            "priority",
            "visibility",
            "is_archived",
            "is_fork",
            "destination_url",
            "destination_full_name",
            "is_source_locked",
            "discovered_at",
            "updated_at",
            "migrated_at",
            "last_discovery_at",
            "last_dry_run_at",
        )
        params = self._params(repo)
        params["discovered_at"] = self._bind_dt(repo.discovered_at or now)
        params["updated_at"] = self._bind_dt(now)
        result = await conn.execute(
            text(self._dialect.insert_returning_id("repositories", columns)), params
        )
        repo_id = int(result.scalar_one())
        repo.id = repo_id
        return repo_id

    async def _update(self, conn: AsyncConnection, existing: Repository, repo: Repository) -> None:
        repo.id = existing.id
        repo.discovered_at = existing.discovered_at
        keep_state = repo.status is RepositoryStatus.PENDING and (
            existing.status is not RepositoryStatus.PENDING or existing.batch_id is not None
        )
        if keep_state:
            repo.status = existing.status
            repo.batch_id = existing.batch_id
            repo.priority = existing.priority
            repo.destination_url = existing.destination_url
            repo.destination_full_name = existing.destination_full_name

        params = self._params(repo)
        params["id"] = existing.id
        params["updated_at"] = self._bind_now()
        await conn.execute(
            text("""
                UPDATE repositories
                SET source = :source,
                    source_url = :source_url,
                    source_id = :source_id,
                    status = :status,
                    batch_id = :batch_id,
                    priority = :priority,
                    visibility = :visibility,
                    is_archived = :is_archived,
                    is_fork = :is_fork,
                    destination_url = :destination_url,
                    destination_full_name = :destination_full_name,
                    is_source_locked = :is_source_locked,
                    updated_at = :updated_at,
                    migrated_at = :migrated_at,
                    last_discovery_at = :last_discovery_at,
                    last_dry_run_at = :last_dry_run_at
                WHERE id = :id
            """),
            params,
        )

    def _params(self, repo: Repository) -> dict[str, Any]:
        return {
            "full_name": repo.full_name,
            "source": repo.source,
            "source_url": repo.source_url,
            "source_id": repo.source_id,
            "status": repo.status.value,
            "batch_id": repo.batch_id,
            "priority": repo.priority,
            "visibility": repo.visibility,
            "is_archived": repo.is_archived,
            "is_fork": repo.is_fork,
            "destination_url": repo.destination_url,
            "destination_full_name": repo.destination_full_name,
            "is_source_locked": repo.is_source_locked,
            "migrated_at": self._bind_dt(repo.migrated_at),
            "last_discovery_at": self._bind_dt(repo.last_discovery_at),
            "last_dry_run_at": self._bind_dt(repo.last_dry_run_at),
        }

    async def get_repository(self, full_name: str) -> Repository | None:
        with self._span("get_repository", **{ATTR_REPOSITORY_FULL_NAME: full_name}):
            query = text(
                f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE full_name = :full_name"
            )
            async with self._connect("get_repository", full_name, transactional=False) as conn:
                result = await conn.execute(query, {"full_name": full_name})
                row = result.mappings().fetchone()
            return row_to_repository(row) if row else None

    async def get_repository_by_id(self, repository_id: int) -> Repository | None:
        with self._span("get_repository_by_id", **{ATTR_REPOSITORY_ID: repository_id}):
            query = text(f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE id = :id")
            async with self._connect(
                "get_repository_by_id", repository_id, transactional=False
            ) as conn:
                result = await conn.execute(query, {"id": repository_id})
                row = result.mappings().fetchone()
            return row_to_repository(row) if row else None

    async def get_repositories_by_ids(self, repository_ids: Sequence[int]) -> list[Repository]:
        """Fetch several repositories at once, ordered by full_name."""
        if not repository_ids:
            return []
        with self._span("get_repositories_by_ids", **{ATTR_ITEM_COUNT: len(repository_ids)}):
            query = text(
                f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE id IN :ids ORDER BY full_name"
            ).bindparams(bindparam("ids", expanding=True))
            async with self._connect("get_repositories_by_ids", transactional=False) as conn:
                result = await conn.execute(query, {"ids": list(repository_ids)})
                return [row_to_repository(row) for row in result.mappings()]

    def _filters(
        self,
        status: RepositoryStatus | Sequence[RepositoryStatus] | None,
        batch_id: int | None,
        source_id: int | None,
        organization: str | None,
    ) -> tuple[str, dict[str, Any], list[Any]]:
        clauses = ["1=1"]
        params: dict[str, Any] = {}
        expanding = []
        if isinstance(status, RepositoryStatus):
            clauses.append("status = :status")
            params["status"] = status.value
        elif status:
            clauses.append("status IN :statuses")
            params["statuses"] = [s.value for s in status]
            expanding.append(bindparam("statuses", expanding=True))
        if batch_id is not None:
            clauses.append("batch_id = :batch_id")
            params["batch_id"] = batch_id
        if source_id is not None:
            clauses.append("source_id = :source_id")
            params["source_id"] = source_id
        if organization:
            org_expr = self._dialect.extract_org_from_full_name("full_name")
            clauses.append(f"{org_expr} = :organization")
            params["organization"] = organization
        return " AND ".join(clauses), params, expanding

    async def list_repositories(
        self,
        status: RepositoryStatus | Sequence[RepositoryStatus] | None = None,
        batch_id: int | None = None,
        source_id: int | None = None,
        organization: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Repository]:
        """
        List repositories ordered by full_name.

        Args:
            status: One status or several to match
            batch_id: Only members of this batch
            source_id: Only repositories from this source
            organization: Only repositories whose full_name starts with "org/"
            limit: Maximum rows to return
            offset: Rows to skip

        Returns:
            Matching repositories (empty list when none match)
        """
        with self._span("list_repositories"):
            where, params, expanding = self._filters(status, batch_id, source_id, organization)
            query = text(
                f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE {where} "
                f"ORDER BY full_name {self._dialect.paginate(limit, offset)}"
            )
            if expanding:
                query = query.bindparams(*expanding)
            async with self._connect("list_repositories", transactional=False) as conn:
                result = await conn.execute(query, params)
                return [row_to_repository(row) for row in result.mappings()]

    async def count_repositories(
        self,
        status: RepositoryStatus | Sequence[RepositoryStatus] | None = None,
        batch_id: int | None = None,
        source_id: int | None = None,
        organization: str | None = None,
    ) -> int:
        with self._span("count_repositories"):
            where, params, expanding = self._filters(status, batch_id, source_id, organization)
            query = text(f"SELECT COUNT(*) FROM repositories WHERE {where}")
            if expanding:
                query = query.bindparams(*expanding)
            async with self._connect("count_repositories", transactional=False) as conn:
                result = await conn.execute(query, params)
                return int(result.scalar_one())

    async def update_repository_status(self, full_name: str, status: RepositoryStatus) -> None:
        """
        Set a repository's status.

        Raises:
            NotFoundError: If the repository does not exist
        """
        with self._span(
            "update_repository_status", **{ATTR_REPOSITORY_FULL_NAME: full_name}
        ):
            params: dict[str, Any] = {
                "full_name": full_name,
                "status": status.value,
                "now": self._bind_now(),
            }
            migrated = ""
            if status is RepositoryStatus.COMPLETE:
                migrated = ", migrated_at = COALESCE(migrated_at, :now)"
            query = text(
                f"UPDATE repositories SET status = :status, updated_at = :now{migrated} "
                "WHERE full_name = :full_name"
            )
            async with self._connect("update_repository_status", full_name) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("repository", full_name)
            logger.debug("Repository %s status -> %s", full_name, status.value)

    async def update_repository_dry_run_timestamp(self, full_name: str) -> None:
        with self._span(
            "update_repository_dry_run_timestamp", **{ATTR_REPOSITORY_FULL_NAME: full_name}
        ):
            query = text("""
                UPDATE repositories
                SET last_dry_run_at = :now, updated_at = :now
                WHERE full_name = :full_name
            """)
            async with self._connect("update_repository_dry_run_timestamp", full_name) as conn:
                params = {"full_name": full_name, "now": self._bind_now()}
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("repository", full_name)

    async def rollback_repository(self, full_name: str, reason: str = "") -> None:
        """
        Mark a repository rolled back and take it out of its batch.

        The status change, the former batch's recomputation and the
        rollback history entry commit together.

        Raises:
            NotFoundError: If the repository does not exist
        """
        with self._span("rollback_repository", **{ATTR_REPOSITORY_FULL_NAME: full_name}):
            async with self._connect("rollback_repository", full_name) as conn:
                result = await conn.execute(
                    text("SELECT id, batch_id FROM repositories WHERE full_name = :full_name"),
                    {"full_name": full_name},
                )
                row = result.fetchone()
                if row is None:
                    raise NotFoundError("repository", full_name)
                repo_id, old_batch_id = row[0], row[1]

                now = self._bind_now()
                await conn.execute(
                    text("""
                        UPDATE repositories
                        SET status = :status, batch_id = NULL, updated_at = :now
                        WHERE id = :id
                    """),
                    {"id": repo_id, "status": RepositoryStatus.ROLLED_BACK.value, "now": now},
                )
                if old_batch_id is not None:
                    await BatchStore(conn, self._dialect, tracer=self._tracer).refresh_batches(
                        conn, [old_batch_id]
                    )
                await conn.execute(
                    text("""
                        INSERT INTO migration_history
                            (repository_id, status, phase, message, started_at, completed_at)
                        VALUES (:repository_id, 'rolled_back', 'rollback', :message, :now, :now)
                    """),
                    {
                        "repository_id": repo_id,
                        "message": reason or "Repository rolled back",
                        "now": now,
                    },
                )
            logger.info("Rolled back repository %s", full_name)

    async def delete_repository(self, full_name: str) -> None:
        """
        Delete a repository and every row that hangs off it.

        Logs, history, outgoing dependencies and team associations are
        removed before the repository itself; its batch is refreshed.

        Raises:
            NotFoundError: If the repository does not exist
        """
        with self._span("delete_repository", **{ATTR_REPOSITORY_FULL_NAME: full_name}):
            async with self._connect("delete_repository", full_name) as conn:
                result = await conn.execute(
                    text("SELECT id, batch_id FROM repositories WHERE full_name = :full_name"),
                    {"full_name": full_name},
                )
                row = result.fetchone()
                if row is None:
                    raise NotFoundError("repository", full_name)
                repo_id, batch_id = row[0], row[1]

                for table in (
                    "migration_logs",
                    "migration_history",
                    "repository_dependencies",
                    "github_team_repositories",
                ):
                    await conn.execute(
                        text(f"DELETE FROM {table} WHERE repository_id = :id"), {"id": repo_id}
                    )
                await conn.execute(text("DELETE FROM repositories WHERE id = :id"), {"id": repo_id})
                if batch_id is not None:
                    await BatchStore(conn, self._dialect, tracer=self._tracer).refresh_batches(
                        conn, [batch_id]
                    )
            logger.info("Deleted repository %s", full_name)

    async def get_repository_stats_by_status(self) -> dict[str, int]:
        with self._span("get_repository_stats_by_status"):
            query = text("SELECT status, COUNT(*) AS count FROM repositories GROUP BY status")
            async with self._connect(
                "get_repository_stats_by_status", transactional=False
            ) as conn:
                result = await conn.execute(query)
                return {row[0]: int(row[1]) for row in result}

    async def get_completion_stats_by_org(self) -> list[OrgCompletionStats]:
        """
        Per-organization migration progress.

        Repositories marked WONT_MIGRATE and names without an "org/"
        prefix are left out. Results are ordered by organization.
        """
        with self._span("get_completion_stats_by_org"):
            org = self._dialect.extract_org_from_full_name("full_name")
            slash = self._dialect.find_char_position("full_name", "/")
            query = text(f"""
                SELECT {org} AS organization, status, COUNT(*) AS count
                FROM repositories
                WHERE {slash} > 0 AND status <> :wont_migrate
                GROUP BY {org}, status
            """)
            async with self._connect("get_completion_stats_by_org", transactional=False) as conn:
                result = await conn.execute(
                    query, {"wont_migrate": RepositoryStatus.WONT_MIGRATE.value}
                )
                rows = result.fetchall()

        totals: dict[str, dict[str, int]] = {}
        for organization, status_value, count in rows:
            bucket = totals.setdefault(
                organization,
                {"total": 0, "completed": 0, "in_progress": 0, "pending": 0, "failed": 0},
            )
            status = RepositoryStatus(status_value)
            bucket["total"] += count
            if status in _COMPLETED:
                bucket["completed"] += count
            elif status in _FAILED:
                bucket["failed"] += count
            elif status in _IN_PROGRESS:
                bucket["in_progress"] += count
            else:
                bucket["pending"] += count

        return [
            OrgCompletionStats(
                organization=organization,
                total_repos=bucket["total"],
                completed_count=bucket["completed"],
                in_progress_count=bucket["in_progress"],
                pending_count=bucket["pending"],
                failed_count=bucket["failed"],
            )
            for organization, bucket in sorted(totals.items())
        ]

    # Migration history

    async def create_migration_history(self, history: MigrationHistory) -> int:
        with self._span(
            "create_migration_history", **{ATTR_REPOSITORY_ID: history.repository_id}
        ):
            columns = ("repository_id", "status", "phase", "message", "error_message", "started_at")
            params = {
                "repository_id": history.repository_id,
                "status": history.status,
                "phase": history.phase,
                "message": history.message,
                "error_message": history.error_message,
                "started_at": self._bind_dt(history.started_at or utcnow()),
            }
            query = text(self._dialect.insert_returning_id("migration_history", columns))
            async with self._connect("create_migration_history", history.repository_id) as conn:
                result = await conn.execute(query, params)
                history_id = int(result.scalar_one())
            history.id = history_id
            return history_id

    async def update_migration_history(
        self, history_id: int, status: str, error_message: str | None = None
    ) -> None:
        """
        Close a history entry.

        ``completed_at`` is set to now and ``duration_seconds`` computed
        from the stored ``started_at``.

        Raises:
            NotFoundError: If the history entry does not exist
        """
        with self._span("update_migration_history"):
            async with self._connect("update_migration_history", history_id) as conn:
                result = await conn.execute(
                    text("SELECT started_at FROM migration_history WHERE id = :id"),
                    {"id": history_id},
                )
                started = result.scalar_one_or_none()
                if started is None:
                    raise NotFoundError("migration_history", history_id)
                completed_at = utcnow()
                duration = int((completed_at - as_datetime(started)).total_seconds())
                await conn.execute(
                    text("""
                        UPDATE migration_history
                        SET status = :status,
                            error_message = :error_message,
                            completed_at = :completed_at,
                            duration_seconds = :duration
                        WHERE id = :id
                    """),
                    {
                        "id": history_id,
                        "status": status,
                        "error_message": error_message,
                        "completed_at": self._bind_dt(completed_at),
                        "duration": max(duration, 0),
                    },
                )

    async def get_migration_history(self, repository_id: int) -> list[MigrationHistory]:
        """Get a repository's history entries, newest first."""
        with self._span("get_migration_history", **{ATTR_REPOSITORY_ID: repository_id}):
            query = text("""
                SELECT id, repository_id, status, phase, message, error_message,
                       started_at, completed_at, duration_seconds
                FROM migration_history
                WHERE repository_id = :repository_id
                ORDER BY started_at DESC, id DESC
            """)
            async with self._connect(
                "get_migration_history", repository_id, transactional=False
            ) as conn:
                result = await conn.execute(query, {"repository_id": repository_id})
                return [_row_to_history(row) for row in result.mappings()]

    # Migration logs

    async def create_migration_log(self, log: MigrationLog) -> int:
        with self._span("create_migration_log", **{ATTR_REPOSITORY_ID: log.repository_id}):
            columns = (
                "repository_id",
                "history_id",
                "level",
                "phase",
                "operation",
                "message",
                "details",
                "initiated_by",
                "timestamp",
            )
            params = {
                "repository_id": log.repository_id,
                "history_id": log.history_id,
                "level": log.level,
                "phase": log.phase,
                "operation": log.operation,
                "message": log.message,
                "details": log.details,
                "initiated_by": log.initiated_by,
                "timestamp": self._bind_dt(log.timestamp or utcnow()),
            }
            query = text(self._dialect.insert_returning_id("migration_logs", columns))
            async with self._connect("create_migration_log", log.repository_id) as conn:
                result = await conn.execute(query, params)
                log_id = int(result.scalar_one())
            log.id = log_id
            return log_id

    async def get_migration_logs(
        self,
        repository_id: int,
        level: str | None = None,
        phase: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[MigrationLog]:
        """Get a repository's log lines in chronological order."""
        with self._span("get_migration_logs", **{ATTR_REPOSITORY_ID: repository_id}):
            clauses = ["repository_id = :repository_id"]
            params: dict[str, Any] = {"repository_id": repository_id}
            if level:
                clauses.append("level = :level")
                params["level"] = level
            if phase:
                clauses.append("phase = :phase")
                params["phase"] = phase
            query = text(f"""
                SELECT id, repository_id, history_id, level, phase, operation,
                       message, details, initiated_by, timestamp
                FROM migration_logs
                WHERE {" AND ".join(clauses)}
                ORDER BY timestamp ASC, id ASC
                {self._dialect.paginate(limit, offset)}
            """)
            async with self._connect(
                "get_migration_logs", repository_id, transactional=False
            ) as conn:
                result = await conn.execute(query, params)
                return [_row_to_log(row) for row in result.mappings()]

    async def get_median_migration_duration(self) -> float | None:
        """
        Median ``duration_seconds`` of completed migration runs.

        Uses the engine's percentile aggregate where available and an
        ordered row-number scan otherwise.

        Returns:
            Median duration in seconds, or None when nothing has completed
        """
        with self._span("get_median_migration_duration"):
            base = """
                FROM repositories r
                INNER JOIN migration_history mh ON r.id = mh.repository_id
                WHERE mh.status = 'completed'
                    AND mh.phase = 'migration'
                    AND mh.duration_seconds IS NOT NULL
                    AND r.status <> 'wont_migrate'
            """
            if self._dialect.supports_percentile:
                median = self._dialect.median("mh.duration_seconds")
                query = text(f"SELECT DISTINCT {median} AS median_duration {base}")
            else:
                query = text(f"""
                    WITH ordered AS (
                        SELECT mh.duration_seconds,
                               ROW_NUMBER() OVER (ORDER BY mh.duration_seconds) AS row_num,
                               COUNT(*) OVER () AS total_count
                        {base}
                    )
                    SELECT AVG(duration_seconds) AS median_duration
                    FROM ordered
                    WHERE row_num IN ((total_count + 1) / 2, (total_count + 2) / 2)
                """)
            async with self._connect(
                "get_median_migration_duration", transactional=False
            ) as conn:
                result = await conn.execute(query)
                value = result.scalar()
            return float(value) if value is not None else None

    async def count_recent_migrations(self, days: int) -> int:
        """Count migration runs completed successfully in the last ``days`` days."""
        with self._span("count_recent_migrations"):
            query = text(f"""
                SELECT COUNT(*) FROM migration_history
                WHERE status = 'completed'
                    AND completed_at IS NOT NULL
                    AND completed_at >= {self._dialect.date_interval_ago_param("days")}
            """)
            async with self._connect("count_recent_migrations", transactional=False) as conn:
                result = await conn.execute(query, {"days": days})
                count = int(result.scalar_one())
            return count
