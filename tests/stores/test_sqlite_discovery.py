"""
SQLite integration tests for DiscoveryStore.

Covers the single-active-run rule, progress updates, terminal
transitions and recovery of runs left behind by a dead process.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import text

from migrationstate import Database
from migrationstate.exceptions import DiscoveryInProgressError, NotFoundError
from migrationstate.models import DiscoveryPhase, DiscoveryProgress, DiscoveryStatus
from migrationstate.stores.discovery import FORCE_RESET_MESSAGE

pytestmark = [pytest.mark.sqlite]


def _run(target: str = "acme") -> DiscoveryProgress:
    return DiscoveryProgress(discovery_type="organization", target=target, total_orgs=1)


async def _age(database: Database, progress_id: int) -> None:
    async with database.engine.begin() as conn:
        await conn.execute(
            text("UPDATE discovery_progress SET started_at = :old WHERE id = :id"),
            {"id": progress_id, "old": "2000-01-01 00:00:00.000000"},
        )


class TestActiveRun:
    @pytest.mark.asyncio
    async def test_create_starts_listing(self, database: Database):
        progress = _run()
        progress.status = DiscoveryStatus.FAILED

        progress_id = await database.discovery.create_discovery_progress(progress)

        active = await database.discovery.get_active_discovery()
        assert active is not None
        assert active.id == progress_id
        assert active.status is DiscoveryStatus.IN_PROGRESS
        assert active.phase is DiscoveryPhase.LISTING_REPOS
        assert active.started_at is not None
        assert active.completed_at is None

    @pytest.mark.asyncio
    async def test_second_run_rejected(self, database: Database):
        """Only one run may be in progress."""
        first = await database.discovery.create_discovery_progress(_run("acme"))

        with pytest.raises(DiscoveryInProgressError) as exc_info:
            await database.discovery.create_discovery_progress(_run("globex"))

        assert exc_info.value.progress_id == first
        assert exc_info.value.target == "acme"

    @pytest.mark.asyncio
    async def test_new_run_clears_finished(self, database: Database):
        first = await database.discovery.create_discovery_progress(_run("acme"))
        await database.discovery.mark_discovery_complete(first)

        second = await database.discovery.create_discovery_progress(_run("globex"))

        latest = await database.discovery.get_latest_discovery()
        assert latest is not None and latest.id == second
        async with database.engine.connect() as conn:
            result = await conn.execute(text("SELECT COUNT(*) FROM discovery_progress"))
            assert result.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_latest_without_active(self, database: Database):
        assert await database.discovery.get_latest_discovery() is None
        progress_id = await database.discovery.create_discovery_progress(_run())
        await database.discovery.mark_discovery_failed(progress_id, "rate limited")

        latest = await database.discovery.get_latest_discovery()

        assert await database.discovery.get_active_discovery() is None
        assert latest is not None
        assert latest.status is DiscoveryStatus.FAILED
        assert latest.last_error == "rate limited"
        assert latest.completed_at is not None


class TestProgressUpdates:
    @pytest.mark.asyncio
    async def test_counters(self, database: Database):
        progress_id = await database.discovery.create_discovery_progress(_run())
        store = database.discovery

        await store.update_discovery_phase(progress_id, DiscoveryPhase.PROFILING_REPOS)
        await store.update_discovery_org_progress(progress_id, "acme", 1, total_orgs=3)
        await store.update_discovery_org_progress(progress_id, "globex", 2)
        await store.update_discovery_repo_progress(progress_id, 10, 40)
        await store.increment_processed_repos(progress_id)
        await store.increment_processed_repos(progress_id, 4)
        await store.increment_discovery_error(progress_id, "timeout on acme/api")
        await store.increment_discovery_error(progress_id, "timeout on acme/web")

        progress = await store.get_active_discovery()
        assert progress is not None
        assert progress.phase is DiscoveryPhase.PROFILING_REPOS
        assert (progress.current_org, progress.processed_orgs, progress.total_orgs) == (
            "globex",
            2,
            3,
        )
        assert (progress.processed_repos, progress.total_repos) == (15, 40)
        assert progress.error_count == 2
        assert progress.last_error == "timeout on acme/web"

    @pytest.mark.asyncio
    async def test_full_update(self, database: Database):
        progress = _run()
        await database.discovery.create_discovery_progress(progress)
        progress.phase = DiscoveryPhase.DISCOVERING_TEAMS
        progress.total_repos = 12

        await database.discovery.update_discovery_progress(progress)

        stored = await database.discovery.get_active_discovery()
        assert stored is not None
        assert stored.phase is DiscoveryPhase.DISCOVERING_TEAMS
        assert stored.total_repos == 12

    @pytest.mark.asyncio
    async def test_missing_run(self, database: Database):
        with pytest.raises(NotFoundError):
            await database.discovery.update_discovery_phase(99, DiscoveryPhase.COMPLETED)
        with pytest.raises(NotFoundError):
            await database.discovery.mark_discovery_complete(99)
        with pytest.raises(NotFoundError):
            await database.discovery.update_discovery_progress(_run())

    @pytest.mark.asyncio
    async def test_cancel(self, database: Database):
        progress_id = await database.discovery.create_discovery_progress(_run())

        await database.discovery.mark_discovery_cancelled(progress_id)

        latest = await database.discovery.get_latest_discovery()
        assert latest is not None
        assert latest.status is DiscoveryStatus.CANCELLED
        assert latest.phase is DiscoveryPhase.CANCELLING


class TestReset:
    @pytest.mark.asyncio
    async def test_force_reset(self, database: Database):
        await database.discovery.create_discovery_progress(_run())

        assert await database.discovery.force_reset_discovery() == 1
        assert await database.discovery.force_reset_discovery() == 0

        latest = await database.discovery.get_latest_discovery()
        assert latest is not None
        assert latest.status is DiscoveryStatus.CANCELLED
        assert latest.last_error == FORCE_RESET_MESSAGE
        await database.discovery.create_discovery_progress(_run("globex"))

    @pytest.mark.asyncio
    async def test_recover_stuck(self, database: Database):
        progress_id = await database.discovery.create_discovery_progress(_run())
        await _age(database, progress_id)

        recovered = await database.discovery.recover_stuck_discoveries(timedelta(hours=1))

        assert recovered == 1
        latest = await database.discovery.get_latest_discovery()
        assert latest is not None
        assert latest.status is DiscoveryStatus.CANCELLED
        assert latest.last_error is not None
        assert latest.last_error.startswith("Auto-recovered")

    @pytest.mark.asyncio
    async def test_recent_run_not_recovered(self, database: Database):
        await database.discovery.create_discovery_progress(_run())

        assert await database.discovery.recover_stuck_discoveries(timedelta(hours=1)) == 0
        assert await database.discovery.get_active_discovery() is not None

    @pytest.mark.asyncio
    async def test_finished_runs_untouched(self, database: Database):
        progress_id = await database.discovery.create_discovery_progress(_run())
        await database.discovery.mark_discovery_complete(progress_id)
        await _age(database, progress_id)

        assert await database.discovery.recover_stuck_discoveries(timedelta(minutes=1)) == 0
        latest = await database.discovery.get_latest_discovery()
        assert latest is not None
        assert latest.status is DiscoveryStatus.COMPLETED
