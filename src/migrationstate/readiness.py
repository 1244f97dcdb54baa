"""
Batch readiness derivation.

A batch's status is a pure function of its members' statuses while the
batch is PENDING or READY. Once execution starts the status belongs to
the executor and is never recomputed.

    PENDING <-> READY          recomputed on every membership/status change
    IN_PROGRESS, COMPLETED,
    COMPLETED_WITH_ERRORS,
    FAILED, CANCELLED          frozen
"""

from __future__ import annotations

from collections.abc import Iterable

from migrationstate.models import BatchStatus, RepositoryStatus

FROZEN_BATCH_STATUSES: frozenset[BatchStatus] = frozenset(
    status for status in BatchStatus if status.is_frozen
)

# Members in these statuses hold a batch at PENDING
BLOCKING_REPOSITORY_STATUSES: frozenset[RepositoryStatus] = frozenset(
    {
        RepositoryStatus.PENDING,
        RepositoryStatus.DRY_RUN_FAILED,
        RepositoryStatus.MIGRATION_FAILED,
        RepositoryStatus.ROLLED_BACK,
    }
)


def calculate_batch_readiness(statuses: Iterable[RepositoryStatus]) -> BatchStatus:
    """
    Derive batch readiness from member repository statuses.

    A batch is READY only when it has at least one member and every
    member has completed its dry run. Anything else is PENDING.

    Args:
        statuses: Status of every member repository

    Returns:
        BatchStatus.READY or BatchStatus.PENDING
    """
    seen = False
    for status in statuses:
        seen = True
        if status in BLOCKING_REPOSITORY_STATUSES:
            return BatchStatus.PENDING
        if status is not RepositoryStatus.DRY_RUN_COMPLETE:
            return BatchStatus.PENDING
    return BatchStatus.READY if seen else BatchStatus.PENDING


def next_batch_status(
    current: BatchStatus,
    member_statuses: Iterable[RepositoryStatus],
) -> BatchStatus | None:
    """
    Decide whether a batch status write is needed.

    Args:
        current: Status currently stored for the batch
        member_statuses: Status of every member repository

    Returns:
        The new status to store, or None when the batch is frozen or the
        derived status equals the current one.
    """
    if current in FROZEN_BATCH_STATUSES:
        return None
    derived = calculate_batch_readiness(member_statuses)
    if derived is current:
        return None
    return derived


__all__ = [
    "BLOCKING_REPOSITORY_STATUSES",
    "FROZEN_BATCH_STATUSES",
    "calculate_batch_readiness",
    "next_batch_status",
]
