"""
Batch store.

Batches group repositories for coordinated migration. A batch's
``repository_count`` and, while it is PENDING or READY, its ``status``
are derived from its members; every membership change recomputes both
inside the same transaction as the change. Batches in an execution or
terminal status are not written at all; reads report the live member
count.

Example:
    >>> store = BatchStore(engine, get_dialect("sqlite"))
    >>> batch_id = await store.create_batch(Batch(name="wave-1"))
    >>> await store.add_repositories_to_batch(batch_id, [repo.id])
    >>> await store.update_batch_status(batch_id)
    <BatchStatus.PENDING: 'pending'>
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection

from migrationstate.exceptions import NotFoundError
from migrationstate.models import Batch, BatchStatus, RepositoryStatus
from migrationstate.observability import ATTR_BATCH_ID, ATTR_ITEM_COUNT
from migrationstate.readiness import FROZEN_BATCH_STATUSES, next_batch_status
from migrationstate.stores._base import BaseStore, as_datetime

logger = logging.getLogger(__name__)

_BATCH_COLUMNS = """
    b.id, b.name, b.description, b.type, b.status, b.destination_org,
    b.migration_api, b.scheduled_at, b.started_at, b.completed_at,
    b.last_dry_run_at, b.last_migration_attempt_at, b.created_at,
    (SELECT COUNT(*) FROM repositories r WHERE r.batch_id = b.id) AS live_count
"""

_FINISHED_BATCH_STATUSES = (
    BatchStatus.COMPLETED,
    BatchStatus.COMPLETED_WITH_ERRORS,
    BatchStatus.FAILED,
    BatchStatus.CANCELLED,
)


def _row_to_batch(row: Any) -> Batch:
    return Batch(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        type=row["type"] or "",
        status=BatchStatus(row["status"]),
        destination_org=row["destination_org"],
        migration_api=row["migration_api"],
        repository_count=row["live_count"],
        scheduled_at=as_datetime(row["scheduled_at"]),
        started_at=as_datetime(row["started_at"]),
        completed_at=as_datetime(row["completed_at"]),
        last_dry_run_at=as_datetime(row["last_dry_run_at"]),
        last_migration_attempt_at=as_datetime(row["last_migration_attempt_at"]),
        created_at=as_datetime(row["created_at"]),
    )


class BatchStore(BaseStore):
    """Batch CRUD, membership and readiness recomputation."""

    span_prefix = "batch_store"

    async def create_batch(self, batch: Batch) -> int:
        """
        Insert a new batch.

        ``migration_api`` defaults to GEI and the status to PENDING when
        left empty.

        Returns:
            The new batch id
        """
        with self._span("create_batch"):
            now = self._bind_now()
            columns = (
                "name",
                "description",
                "type",
                "repository_count",
                "status",
                "destination_org",
                "migration_api",
                "scheduled_at",
                "created_at",
            )
            query = text(self._dialect.insert_returning_id("batches", columns))
            params = {
                "name": batch.name,
                "description": batch.description,
                "type": batch.type or "",
                "repository_count": 0,
                "status": (batch.status or BatchStatus.PENDING).value,
                "destination_org": batch.destination_org,
                "migration_api": batch.migration_api or "GEI",
                "scheduled_at": self._bind_dt(batch.scheduled_at),
                "created_at": now,
            }
            async with self._connect("create_batch", batch.name) as conn:
                result = await conn.execute(query, params)
                batch_id = int(result.scalar_one())
            logger.debug("Created batch %s (%s)", batch_id, batch.name)
            return batch_id

    async def get_batch(self, batch_id: int) -> Batch | None:
        """Get a batch with its live repository count, or None."""
        with self._span("get_batch", **{ATTR_BATCH_ID: batch_id}):
            query = text(f"SELECT {_BATCH_COLUMNS} FROM batches b WHERE b.id = :id")
            async with self._connect("get_batch", batch_id, transactional=False) as conn:
                result = await conn.execute(query, {"id": batch_id})
                row = result.mappings().fetchone()
            return _row_to_batch(row) if row else None

    async def list_batches(self) -> list[Batch]:
        """List all batches, newest first."""
        with self._span("list_batches"):
            query = text(
                f"SELECT {_BATCH_COLUMNS} FROM batches b ORDER BY b.created_at DESC, b.id DESC"
            )
            async with self._connect("list_batches", transactional=False) as conn:
                result = await conn.execute(query)
                return [_row_to_batch(row) for row in result.mappings()]

    async def update_batch(self, batch: Batch) -> None:
        """
        Update a batch's descriptive fields.

        Status, counts and execution timestamps are left untouched.

        Raises:
            NotFoundError: If the batch does not exist
        """
        if batch.id is None:
            raise NotFoundError("batch", None)
        with self._span("update_batch", **{ATTR_BATCH_ID: batch.id}):
            query = text("""
                UPDATE batches
                SET name = :name,
                    description = :description,
                    type = :type,
                    destination_org = :destination_org,
                    migration_api = :migration_api,
                    scheduled_at = :scheduled_at
                WHERE id = :id
            """)
            params = {
                "id": batch.id,
                "name": batch.name,
                "description": batch.description,
                "type": batch.type or "",
                "destination_org": batch.destination_org,
                "migration_api": batch.migration_api or "GEI",
                "scheduled_at": self._bind_dt(batch.scheduled_at),
            }
            async with self._connect("update_batch", batch.id) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("batch", batch.id)

    async def delete_batch(self, batch_id: int) -> None:
        """
        Delete a batch, detaching its members first.

        Raises:
            NotFoundError: If the batch does not exist
        """
        with self._span("delete_batch", **{ATTR_BATCH_ID: batch_id}):
            async with self._connect("delete_batch", batch_id) as conn:
                await conn.execute(
                    text("UPDATE repositories SET batch_id = NULL WHERE batch_id = :id"),
                    {"id": batch_id},
                )
                result = await conn.execute(
                    text("DELETE FROM batches WHERE id = :id"), {"id": batch_id}
                )
                if result.rowcount == 0:
                    raise NotFoundError("batch", batch_id)
            logger.debug("Deleted batch %s", batch_id)

    async def add_repositories_to_batch(
        self, batch_id: int, repository_ids: Sequence[int]
    ) -> None:
        """
        Assign repositories to a batch.

        Repositories already in another batch are moved, and the batch
        they left is refreshed as well.

        Raises:
            NotFoundError: If the batch does not exist
        """
        if not repository_ids:
            return
        with self._span(
            "add_repositories_to_batch",
            **{ATTR_BATCH_ID: batch_id, ATTR_ITEM_COUNT: len(repository_ids)},
        ):
            async with self._connect("add_repositories_to_batch", batch_id) as conn:
                await self._require_status(conn, batch_id)
                previous = await conn.execute(
                    text("""
                        SELECT DISTINCT batch_id FROM repositories
                        WHERE id IN :ids AND batch_id IS NOT NULL AND batch_id <> :batch_id
                    """).bindparams(bindparam("ids", expanding=True)),
                    {"ids": list(repository_ids), "batch_id": batch_id},
                )
                previous_ids = [row[0] for row in previous]
                await conn.execute(
                    text("""
                        UPDATE repositories
                        SET batch_id = :batch_id, updated_at = :now
                        WHERE id IN :ids
                    """).bindparams(bindparam("ids", expanding=True)),
                    {"batch_id": batch_id, "now": self._bind_now(), "ids": list(repository_ids)},
                )
                await self.refresh_batches(conn, [batch_id, *previous_ids])
            logger.debug("Added %d repositories to batch %s", len(repository_ids), batch_id)

    async def remove_repositories_from_batch(
        self, batch_id: int, repository_ids: Sequence[int]
    ) -> None:
        """
        Detach repositories from a batch.

        Only repositories currently in ``batch_id`` are touched.

        Raises:
            NotFoundError: If the batch does not exist
        """
        if not repository_ids:
            return
        with self._span(
            "remove_repositories_from_batch",
            **{ATTR_BATCH_ID: batch_id, ATTR_ITEM_COUNT: len(repository_ids)},
        ):
            async with self._connect("remove_repositories_from_batch", batch_id) as conn:
                await self._require_status(conn, batch_id)
                await conn.execute(
                    text("""
                        UPDATE repositories
                        SET batch_id = NULL, updated_at = :now
                        WHERE batch_id = :batch_id AND id IN :ids
                    """).bindparams(bindparam("ids", expanding=True)),
                    {"batch_id": batch_id, "now": self._bind_now(), "ids": list(repository_ids)},
                )
                await self.refresh_batches(conn, [batch_id])
            logger.debug(
                "Removed %d repositories from batch %s", len(repository_ids), batch_id
            )

    async def update_batch_status(self, batch_id: int) -> BatchStatus:
        """
        Recompute a batch's repository count and readiness.

        The count is always rewritten from a live COUNT(*). The status is
        only written when the batch is PENDING or READY and the derived
        status differs from the stored one.

        Returns:
            The batch status after recomputation

        Raises:
            NotFoundError: If the batch does not exist
        """
        with self._span("update_batch_status", **{ATTR_BATCH_ID: batch_id}):
            async with self._connect("update_batch_status", batch_id) as conn:
                return await self._recompute(conn, batch_id)

    async def refresh_batches(self, conn: AsyncConnection, batch_ids: Iterable[int]) -> None:
        """
        Recompute count and readiness for several batches on ``conn``.

        Used by operations that change membership as part of a larger
        transaction. Batches that no longer exist are skipped.
        """
        for batch_id in sorted(set(batch_ids)):
            status = await self._current_status(conn, batch_id)
            if status is not None:
                await self._recompute(conn, batch_id, status)

    async def update_batch_progress(
        self,
        batch_id: int,
        status: BatchStatus,
        started_at: datetime | None = None,
        last_dry_run_at: datetime | None = None,
        last_migration_attempt_at: datetime | None = None,
    ) -> None:
        """
        Record execution progress for a batch.

        Sets the status unconditionally. Each timestamp is written only if
        the stored one is still empty.

        Raises:
            NotFoundError: If the batch does not exist
        """
        with self._span("update_batch_progress", **{ATTR_BATCH_ID: batch_id}):
            query = text("""
                UPDATE batches
                SET status = :status,
                    started_at = COALESCE(started_at, :started_at),
                    last_dry_run_at = COALESCE(last_dry_run_at, :last_dry_run_at),
                    last_migration_attempt_at =
                        COALESCE(last_migration_attempt_at, :last_migration_attempt_at),
                    completed_at = COALESCE(completed_at, :completed_at)
                WHERE id = :id
            """)
            # Terminal statuses stamp completed_at once
            finished = status in _FINISHED_BATCH_STATUSES
            params = {
                "id": batch_id,
                "status": status.value,
                "started_at": self._bind_dt(started_at),
                "last_dry_run_at": self._bind_dt(last_dry_run_at),
                "last_migration_attempt_at": self._bind_dt(last_migration_attempt_at),
                "completed_at": self._bind_now() if finished else None,
            }
            async with self._connect("update_batch_progress", batch_id) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise NotFoundError("batch", batch_id)

    async def update_batch_dry_run_timestamp(self, batch_id: int) -> None:
        with self._span("update_batch_dry_run_timestamp", **{ATTR_BATCH_ID: batch_id}):
            await self._touch(batch_id, "last_dry_run_at")

    async def update_batch_migration_attempt_timestamp(self, batch_id: int) -> None:
        with self._span(
            "update_batch_migration_attempt_timestamp", **{ATTR_BATCH_ID: batch_id}
        ):
            await self._touch(batch_id, "last_migration_attempt_at")

    async def _touch(self, batch_id: int, column: str) -> None:
        query = text(f"UPDATE batches SET {column} = :now WHERE id = :id")
        async with self._connect(f"touch_{column}", batch_id) as conn:
            result = await conn.execute(query, {"id": batch_id, "now": self._bind_now()})
            if result.rowcount == 0:
                raise NotFoundError("batch", batch_id)

    async def _current_status(self, conn: AsyncConnection, batch_id: int) -> BatchStatus | None:
        result = await conn.execute(
            text("SELECT status FROM batches WHERE id = :id"), {"id": batch_id}
        )
        value = result.scalar_one_or_none()
        return BatchStatus(value) if value is not None else None

    async def _require_status(self, conn: AsyncConnection, batch_id: int) -> BatchStatus:
        status = await self._current_status(conn, batch_id)
        if status is None:
            raise NotFoundError("batch", batch_id)
        return status

    async def _recompute(
        self,
        conn: AsyncConnection,
        batch_id: int,
        current: BatchStatus | None = None,
    ) -> BatchStatus:
        if current is None:
            current = await self._require_status(conn, batch_id)
        if current in FROZEN_BATCH_STATUSES:
            return current

        await conn.execute(
            text("""
                UPDATE batches
                SET repository_count = (
                    SELECT COUNT(*) FROM repositories WHERE batch_id = :id
                )
                WHERE id = :id
            """),
            {"id": batch_id},
        )

        result = await conn.execute(
            text("SELECT status FROM repositories WHERE batch_id = :id"), {"id": batch_id}
        )
        member_statuses = [RepositoryStatus(row[0]) for row in result]
        new_status = next_batch_status(current, member_statuses)
        if new_status is None:
            return current

        await conn.execute(
            text("UPDATE batches SET status = :status WHERE id = :id"),
            {"id": batch_id, "status": new_status.value},
        )
        logger.debug(
            "Batch %s status %s -> %s", batch_id, current.value, new_status.value
        )
        return new_status
