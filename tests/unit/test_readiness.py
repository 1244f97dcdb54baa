"""Unit tests for batch readiness derivation."""

import pytest

from migrationstate.models import BatchStatus, RepositoryStatus
from migrationstate.readiness import (
    FROZEN_BATCH_STATUSES,
    calculate_batch_readiness,
    next_batch_status,
)

DONE = RepositoryStatus.DRY_RUN_COMPLETE


class TestCalculateBatchReadiness:
    def test_empty_batch_is_pending(self):
        """A batch with no members is never ready."""
        assert calculate_batch_readiness([]) is BatchStatus.PENDING

    def test_all_dry_runs_complete(self):
        assert calculate_batch_readiness([DONE, DONE, DONE]) is BatchStatus.READY

    @pytest.mark.parametrize(
        "blocker",
        [
            RepositoryStatus.PENDING,
            RepositoryStatus.DRY_RUN_QUEUED,
            RepositoryStatus.DRY_RUN_IN_PROGRESS,
            RepositoryStatus.DRY_RUN_FAILED,
            RepositoryStatus.MIGRATION_FAILED,
            RepositoryStatus.ROLLED_BACK,
            RepositoryStatus.COMPLETE,
        ],
    )
    def test_one_member_not_dry_run_complete(self, blocker: RepositoryStatus):
        """Any member that has not just finished its dry run keeps the batch pending."""
        assert calculate_batch_readiness([DONE, blocker, DONE]) is BatchStatus.PENDING

    def test_accepts_generators(self):
        assert calculate_batch_readiness(s for s in [DONE]) is BatchStatus.READY


class TestNextBatchStatus:
    def test_pending_to_ready(self):
        assert next_batch_status(BatchStatus.PENDING, [DONE]) is BatchStatus.READY

    def test_ready_back_to_pending(self):
        statuses = [DONE, RepositoryStatus.DRY_RUN_FAILED]
        assert next_batch_status(BatchStatus.READY, statuses) is BatchStatus.PENDING

    def test_unchanged_returns_none(self):
        assert next_batch_status(BatchStatus.READY, [DONE]) is None
        assert next_batch_status(BatchStatus.PENDING, []) is None

    @pytest.mark.parametrize("status", sorted(FROZEN_BATCH_STATUSES, key=lambda s: s.value))
    def test_frozen_statuses_never_change(self, status: BatchStatus):
        """Execution and terminal statuses are left alone."""
        assert next_batch_status(status, [DONE]) is None
        assert next_batch_status(status, []) is None

    def test_frozen_set(self):
        assert FROZEN_BATCH_STATUSES == {
            BatchStatus.IN_PROGRESS,
            BatchStatus.COMPLETED,
            BatchStatus.COMPLETED_WITH_ERRORS,
            BatchStatus.FAILED,
            BatchStatus.CANCELLED,
        }
