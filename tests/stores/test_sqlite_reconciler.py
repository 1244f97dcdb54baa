"""SQLite integration tests for MappingReconciler."""

from __future__ import annotations

import pytest

from migrationstate import Database
from migrationstate.models import (
    RepositoryStatus,
    TeamMapping,
    TeamMember,
    TeamMigrationStatus,
    TeamSyncStatus,
    UserMannequin,
)

pytestmark = [pytest.mark.sqlite]


async def seed_team(database: Database, make_team, make_repository) -> int:
    """acme/platform with one complete and one pending repository."""
    team_id = await database.teams.save_team(make_team("acme", "platform"))
    await database.repositories.save_repository(
        make_repository(
            "acme/api",
            status=RepositoryStatus.COMPLETE,
            destination_full_name="acme-emu/api",
        )
    )
    await database.repositories.save_repository(make_repository("acme/web"))
    await database.teams.save_team_repository(team_id, "acme/api", "push")
    await database.teams.save_team_repository(team_id, "acme/web", "pull")
    return team_id


class TestTeamDetail:
    @pytest.mark.asyncio
    async def test_missing_team(self, database: Database):
        assert await database.reconciler.get_team_detail("acme", "ghost") is None

    @pytest.mark.asyncio
    async def test_without_mapping(self, database: Database, make_team, make_repository):
        team_id = await seed_team(database, make_team, make_repository)
        await database.teams.save_team_member(TeamMember(team_id=team_id, login="octocat"))

        detail = await database.reconciler.get_team_detail("acme", "platform")

        assert detail is not None
        assert detail.team.slug == "platform"
        assert [m.login for m in detail.members] == ["octocat"]
        assert [(r.full_name, r.status) for r in detail.repositories] == [
            ("acme/api", RepositoryStatus.COMPLETE),
            ("acme/web", RepositoryStatus.PENDING),
        ]
        assert (detail.total_source_repos, detail.repos_eligible) == (2, 1)
        assert detail.mapping is None
        assert detail.sync_status is None

    @pytest.mark.asyncio
    async def test_counts_follow_repository_state(
        self, database: Database, make_team, make_repository
    ):
        """Eligibility is recounted on read, so stored counters never go stale."""
        await seed_team(database, make_team, make_repository)
        await database.team_mappings.save_team_mapping(
            TeamMapping(
                source_org="acme",
                source_team_slug="platform",
                repos_eligible=0,
                total_source_repos=0,
            )
        )
        await database.team_mappings.update_team_migration_status(
            "acme", "platform", TeamMigrationStatus.COMPLETED, repos_synced=1
        )

        detail = await database.reconciler.get_team_detail("acme", "platform")
        assert detail is not None
        assert detail.repos_eligible == 1
        assert detail.repos_synced == 1
        assert detail.sync_status is TeamSyncStatus.COMPLETE
        assert detail.completion_percent == 100.0

        await database.repositories.update_repository_status(
            "acme/web", RepositoryStatus.COMPLETE
        )

        detail = await database.reconciler.get_team_detail("acme", "platform")
        assert detail is not None
        assert detail.repos_eligible == 2
        assert detail.sync_status is TeamSyncStatus.PARTIAL
        assert detail.completion_percent == 50.0


class TestListTeamsWithMappings:
    @pytest.mark.asyncio
    async def test_joins_mappings(self, database: Database, make_team, make_repository):
        await seed_team(database, make_team, make_repository)
        await database.teams.save_team(make_team("acme", "web"))
        await database.teams.save_team(make_team("globex", "ops"))
        await database.team_mappings.save_team_mapping(
            TeamMapping(
                source_org="acme",
                source_team_slug="platform",
                migration_status=TeamMigrationStatus.COMPLETED,
            )
        )

        teams = await database.reconciler.list_teams_with_mappings()
        acme = await database.reconciler.list_teams_with_mappings("acme")

        assert [(t.team.organization, t.team.slug) for t in teams] == [
            ("acme", "platform"),
            ("acme", "web"),
            ("globex", "ops"),
        ]
        platform = teams[0]
        assert (platform.total_source_repos, platform.repos_eligible) == (2, 1)
        assert platform.mapping is not None
        assert platform.sync_status is TeamSyncStatus.NEEDS_SYNC
        assert teams[1].mapping is None
        assert teams[1].sync_status is None
        assert (teams[1].total_source_repos, teams[1].repos_eligible) == (0, 0)
        assert [t.team.slug for t in acme] == ["platform", "web"]


class TestUserCompleteness:
    @pytest.mark.asyncio
    async def test_no_mannequins(self, database: Database):
        assert await database.reconciler.get_user_completeness("octocat") == []

    @pytest.mark.asyncio
    async def test_one_entry_per_mannequin(
        self, database: Database, make_team, make_repository
    ):
        team_id = await seed_team(database, make_team, make_repository)
        other_id = await database.teams.save_team(make_team("acme", "infra"))
        await database.repositories.save_repository(
            make_repository(
                "acme/tools",
                status=RepositoryStatus.COMPLETE,
                destination_full_name="globex-emu/tools",
            )
        )
        await database.teams.save_team_repository(other_id, "acme/tools", "pull")
        await database.teams.save_team_repository(other_id, "acme/api", "pull")
        await database.teams.save_team_member(TeamMember(team_id=team_id, login="octocat"))
        await database.teams.save_team_member(TeamMember(team_id=other_id, login="octocat"))
        for org in ("initech", "acme-emu"):
            await database.mannequins.save_user_mannequin(
                UserMannequin(
                    source_login="octocat",
                    mannequin_org=org,
                    mannequin_id=f"M_{org}",
                    reclaim_status="invited" if org == "acme-emu" else None,
                )
            )

        entries = await database.reconciler.get_user_completeness("octocat")

        assert [e.mannequin_org for e in entries] == ["acme-emu", "initech"]
        assert all(e.repos_reachable == 3 for e in entries)
        assert [e.repos_migrated_to_org for e in entries] == [1, 0]
        assert entries[0].mannequin_id == "M_acme-emu"
        assert entries[0].reclaim_status == "invited"

    @pytest.mark.asyncio
    async def test_destination_without_organization(
        self, database: Database, make_team, make_repository
    ):
        """A complete repository whose destination name has no slash counts as reachable only."""
        team_id = await database.teams.save_team(make_team("acme", "platform"))
        for name, destination in [("acme/api", "acme-emu"), ("acme/web", "")]:
            await database.repositories.save_repository(
                make_repository(
                    name, status=RepositoryStatus.COMPLETE, destination_full_name=destination
                )
            )
            await database.teams.save_team_repository(team_id, name, "push")
        await database.teams.save_team_member(TeamMember(team_id=team_id, login="octocat"))
        await database.mannequins.save_user_mannequin(
            UserMannequin(source_login="octocat", mannequin_org="acme-emu", mannequin_id="M_1")
        )

        entries = await database.reconciler.get_user_completeness("octocat")

        assert [(e.repos_reachable, e.repos_migrated_to_org) for e in entries] == [(2, 0)]
