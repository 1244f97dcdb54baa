"""
Discovery progress store.

At most one discovery run may be IN_PROGRESS at any time. The rule is
enforced when a run is created: the active-run check, the clean-up of
finished runs and the insert of the new run share one transaction, which
first takes the dialect's writer lock on the table so that concurrent
creations are serialised on server engines.
The slot is released by ``force_reset_discovery()`` and by time-based
recovery of runs whose process died.

Lifecycle:
    create_discovery_progress()      -> IN_PROGRESS / listing_repos
    update_discovery_phase() etc.    -> progress updates
    mark_discovery_complete()        -> COMPLETED / completed
    mark_discovery_failed()          -> FAILED (last_error set)
    mark_discovery_cancelled()       -> CANCELLED / cancelling
    force_reset_discovery()          -> any IN_PROGRESS row -> CANCELLED
    recover_stuck_discoveries(t)     -> IN_PROGRESS rows older than t -> CANCELLED
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from migrationstate.exceptions import DiscoveryInProgressError, NotFoundError
from migrationstate.models import DiscoveryPhase, DiscoveryProgress, DiscoveryStatus
from migrationstate.observability import ATTR_DB_ROWS_AFFECTED, ATTR_DISCOVERY_ID
from migrationstate.stores._base import BaseStore, as_datetime, utcnow

logger = logging.getLogger(__name__)

FORCE_RESET_MESSAGE = "Force reset: discovery was stuck in progress state"

_COLUMNS = (
    "id, discovery_type, target, status, started_at, completed_at, total_orgs, "
    "processed_orgs, current_org, total_repos, processed_repos, phase, error_count, "
    "last_error"
)


def _row_to_progress(row: Any) -> DiscoveryProgress:
    return DiscoveryProgress(
        id=row["id"],
        discovery_type=row["discovery_type"],
        target=row["target"],
        status=DiscoveryStatus(row["status"]),
        phase=DiscoveryPhase(row["phase"]),
        started_at=as_datetime(row["started_at"]),
        completed_at=as_datetime(row["completed_at"]),
        total_orgs=row["total_orgs"],
        processed_orgs=row["processed_orgs"],
        current_org=row["current_org"],
        total_repos=row["total_repos"],
        processed_repos=row["processed_repos"],
        error_count=row["error_count"],
        last_error=row["last_error"],
    )


class DiscoveryStore(BaseStore):
    """Single-active-run bookkeeping for discovery."""

    span_prefix = "discovery_store"

    async def create_discovery_progress(self, progress: DiscoveryProgress) -> int:
        """
        Claim the discovery slot and record a new run.

        Finished runs (completed, failed, cancelled) are removed so only
        the newest history is kept. The new row always starts
        IN_PROGRESS in the listing_repos phase.

        Args:
            progress: Run to record; status, phase and started_at are
                overwritten

        Returns:
            The new run id

        Raises:
            DiscoveryInProgressError: If another run is IN_PROGRESS
        """
        with self._span("create_discovery_progress"):
            async with self._connect("create_discovery_progress", progress.target) as conn:
                lock = self._dialect.lock_table_for_writers("discovery_progress")
                if lock:
                    await conn.execute(text(lock))
                active = await self._active(conn)
                if active is not None:
                    assert active.id is not None
                    raise DiscoveryInProgressError(active.id, active.target)

                await conn.execute(
                    text("""
                        DELETE FROM discovery_progress
                        WHERE status IN ('completed', 'failed', 'cancelled')
                    """)
                )

                progress.status = DiscoveryStatus.IN_PROGRESS
                progress.phase = DiscoveryPhase.LISTING_REPOS
                progress.started_at = utcnow()
                progress.completed_at = None
                columns = (
                    "discovery_type",
                    "target",
                    "status",
                    "phase",
                    "started_at",
                    "total_orgs",
                    "processed_orgs",
                    "current_org",
                    "total_repos",
                    "processed_repos",
                    "error_count",
                    "last_error",
                )
                result = await conn.execute(
                    text(self._dialect.insert_returning_id("discovery_progress", columns)),
                    {
                        "discovery_type": progress.discovery_type,
                        "target": progress.target,
                        "status": progress.status.value,
                        "phase": progress.phase.value,
                        "started_at": self._bind_dt(progress.started_at),
                        "total_orgs": progress.total_orgs,
                        "processed_orgs": progress.processed_orgs,
                        "current_org": progress.current_org,
                        "total_repos": progress.total_repos,
                        "processed_repos": progress.processed_repos,
                        "error_count": progress.error_count,
                        "last_error": progress.last_error,
                    },
                )
                progress.id = int(result.scalar_one())
            logger.info(
                "Started %s discovery %s for %s",
                progress.discovery_type,
                progress.id,
                progress.target,
            )
            return progress.id

    async def update_discovery_progress(self, progress: DiscoveryProgress) -> None:
        """
        Write every field of an existing run.

        Raises:
            NotFoundError: If ``progress.id`` is unset or matches no row
        """
        if progress.id is None:
            raise NotFoundError("discovery_progress", None)
        with self._span("update_discovery_progress", **{ATTR_DISCOVERY_ID: progress.id}):
            query = text("""
                UPDATE discovery_progress
                SET discovery_type = :discovery_type,
                    target = :target,
                    status = :status,
                    phase = :phase,
                    started_at = :started_at,
                    completed_at = :completed_at,
                    total_orgs = :total_orgs,
                    processed_orgs = :processed_orgs,
                    current_org = :current_org,
                    total_repos = :total_repos,
                    processed_repos = :processed_repos,
                    error_count = :error_count,
                    last_error = :last_error
                WHERE id = :id
            """)
            params = {
                "id": progress.id,
                "discovery_type": progress.discovery_type,
                "target": progress.target,
                "status": progress.status.value,
                "phase": progress.phase.value,
                "started_at": self._bind_dt(progress.started_at or utcnow()),
                "completed_at": self._bind_dt(progress.completed_at),
                "total_orgs": progress.total_orgs,
                "processed_orgs": progress.processed_orgs,
                "current_org": progress.current_org,
                "total_repos": progress.total_repos,
                "processed_repos": progress.processed_repos,
                "error_count": progress.error_count,
                "last_error": progress.last_error,
            }
            await self._update_one("update_discovery_progress", progress.id, query, params)

    async def get_active_discovery(self) -> DiscoveryProgress | None:
        with self._span("get_active_discovery"):
            async with self._connect("get_active_discovery", transactional=False) as conn:
                return await self._active(conn)

    async def get_latest_discovery(self) -> DiscoveryProgress | None:
        """The active run if there is one, otherwise the most recent run."""
        with self._span("get_latest_discovery"):
            async with self._connect("get_latest_discovery", transactional=False) as conn:
                active = await self._active(conn)
                if active is not None:
                    return active
                result = await conn.execute(
                    text(f"""
                        SELECT {_COLUMNS} FROM discovery_progress
                        WHERE id = (SELECT MAX(id) FROM discovery_progress)
                    """)
                )
                row = result.mappings().fetchone()
            return _row_to_progress(row) if row else None

    async def _active(self, conn: AsyncConnection) -> DiscoveryProgress | None:
        result = await conn.execute(
            text(f"""
                SELECT {_COLUMNS} FROM discovery_progress
                WHERE status = :status
                ORDER BY id
            """),
            {"status": DiscoveryStatus.IN_PROGRESS.value},
        )
        row = result.mappings().first()
        return _row_to_progress(row) if row else None

    async def mark_discovery_complete(self, progress_id: int) -> None:
        with self._span("mark_discovery_complete", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET status = :status, completed_at = :now, phase = :phase
                WHERE id = :id
            """)
            params = {
                "id": progress_id,
                "status": DiscoveryStatus.COMPLETED.value,
                "phase": DiscoveryPhase.COMPLETED.value,
                "now": self._bind_now(),
            }
            await self._update_one("mark_discovery_complete", progress_id, query, params)

    async def mark_discovery_failed(self, progress_id: int, error: str) -> None:
        with self._span("mark_discovery_failed", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET status = :status, completed_at = :now, last_error = :error
                WHERE id = :id
            """)
            params = {
                "id": progress_id,
                "status": DiscoveryStatus.FAILED.value,
                "error": error,
                "now": self._bind_now(),
            }
            await self._update_one("mark_discovery_failed", progress_id, query, params)

    async def mark_discovery_cancelled(self, progress_id: int) -> None:
        with self._span("mark_discovery_cancelled", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET status = :status, completed_at = :now, phase = :phase
                WHERE id = :id
            """)
            params = {
                "id": progress_id,
                "status": DiscoveryStatus.CANCELLED.value,
                "phase": DiscoveryPhase.CANCELLING.value,
                "now": self._bind_now(),
            }
            await self._update_one("mark_discovery_cancelled", progress_id, query, params)

    async def increment_discovery_error(self, progress_id: int, error: str) -> None:
        with self._span("increment_discovery_error", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET error_count = error_count + 1, last_error = :error
                WHERE id = :id
            """)
            await self._update_one(
                "increment_discovery_error", progress_id, query, {"id": progress_id, "error": error}
            )

    async def update_discovery_phase(self, progress_id: int, phase: DiscoveryPhase) -> None:
        with self._span("update_discovery_phase", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("UPDATE discovery_progress SET phase = :phase WHERE id = :id")
            await self._update_one(
                "update_discovery_phase",
                progress_id,
                query,
                {"id": progress_id, "phase": phase.value},
            )

    async def update_discovery_org_progress(
        self,
        progress_id: int,
        current_org: str,
        processed_orgs: int,
        total_orgs: int | None = None,
    ) -> None:
        """Record which organization is being crawled; ``total_orgs`` is kept when None."""
        with self._span("update_discovery_org_progress", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET current_org = :current_org,
                    processed_orgs = :processed_orgs,
                    total_orgs = COALESCE(:total_orgs, total_orgs)
                WHERE id = :id
            """)
            params = {
                "id": progress_id,
                "current_org": current_org,
                "processed_orgs": processed_orgs,
                "total_orgs": total_orgs,
            }
            await self._update_one("update_discovery_org_progress", progress_id, query, params)

    async def update_discovery_repo_progress(
        self, progress_id: int, processed_repos: int, total_repos: int
    ) -> None:
        with self._span("update_discovery_repo_progress", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET processed_repos = :processed_repos, total_repos = :total_repos
                WHERE id = :id
            """)
            params = {
                "id": progress_id,
                "processed_repos": processed_repos,
                "total_repos": total_repos,
            }
            await self._update_one("update_discovery_repo_progress", progress_id, query, params)

    async def increment_processed_repos(self, progress_id: int, count: int = 1) -> None:
        with self._span("increment_processed_repos", **{ATTR_DISCOVERY_ID: progress_id}):
            query = text("""
                UPDATE discovery_progress
                SET processed_repos = processed_repos + :count
                WHERE id = :id
            """)
            await self._update_one(
                "increment_processed_repos", progress_id, query, {"id": progress_id, "count": count}
            )

    async def force_reset_discovery(self) -> int:
        """
        Cancel whatever run holds the discovery slot.

        Returns:
            Rows cancelled: 0 when the slot was free, otherwise 1
        """
        with self._span("force_reset_discovery") as span:
            query = text("""
                UPDATE discovery_progress
                SET status = :cancelled, completed_at = :now, phase = :phase, last_error = :error
                WHERE status = :in_progress
            """)
            params = {
                "cancelled": DiscoveryStatus.CANCELLED.value,
                "in_progress": DiscoveryStatus.IN_PROGRESS.value,
                "phase": DiscoveryPhase.CANCELLING.value,
                "error": FORCE_RESET_MESSAGE,
                "now": self._bind_now(),
            }
            async with self._connect("force_reset_discovery") as conn:
                result = await conn.execute(query, params)
                affected = result.rowcount
            if span is not None:
                span.set_attribute(ATTR_DB_ROWS_AFFECTED, affected)
            if affected:
                logger.info("Force reset %d in-progress discovery run(s)", affected)
            return affected

    async def recover_stuck_discoveries(self, timeout: timedelta) -> int:
        """
        Cancel IN_PROGRESS runs started before ``now - timeout``.

        Meant to run at process start, when any run still marked in
        progress belonged to a process that no longer exists. Finished
        runs are never touched, however old.

        Returns:
            Number of runs cancelled
        """
        with self._span("recover_stuck_discoveries") as span:
            now = utcnow()
            query = text("""
                UPDATE discovery_progress
                SET status = :cancelled, completed_at = :now, phase = :phase, last_error = :error
                WHERE status = :in_progress AND started_at < :cutoff
            """)
            params = {
                "cancelled": DiscoveryStatus.CANCELLED.value,
                "in_progress": DiscoveryStatus.IN_PROGRESS.value,
                "phase": DiscoveryPhase.CANCELLING.value,
                "error": f"Auto-recovered: discovery was stuck for more than {timeout}",
                "now": self._bind_dt(now),
                "cutoff": self._bind_dt(now - timeout),
            }
            async with self._connect("recover_stuck_discoveries") as conn:
                result = await conn.execute(query, params)
                recovered = result.rowcount
            if span is not None:
                span.set_attribute(ATTR_DB_ROWS_AFFECTED, recovered)
            if recovered:
                logger.warning(
                    "Recovered %d discovery run(s) stuck for more than %s", recovered, timeout
                )
            return recovered

    async def _update_one(
        self, operation: str, progress_id: int, query: Any, params: dict[str, Any]
    ) -> None:
        async with self._connect(operation, progress_id) as conn:
            result = await conn.execute(query, params)
            if result.rowcount == 0:
                raise NotFoundError("discovery_progress", progress_id)
