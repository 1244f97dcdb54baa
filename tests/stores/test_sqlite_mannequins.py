"""SQLite integration tests for MannequinStore."""

from __future__ import annotations

import pytest

from migrationstate import Database
from migrationstate.exceptions import NotFoundError
from migrationstate.models import MappingStatus, UserMannequin, UserMapping

pytestmark = [pytest.mark.sqlite]


def mannequin(login: str, org: str, **kwargs) -> UserMannequin:
    kwargs.setdefault("mannequin_id", f"MDQ_{login}_{org}")
    return UserMannequin(source_login=login, mannequin_org=org, **kwargs)


class TestMannequinStore:
    @pytest.mark.asyncio
    async def test_one_per_org(self, database: Database):
        first = await database.mannequins.save_user_mannequin(mannequin("octocat", "acme"))
        again = await database.mannequins.save_user_mannequin(
            mannequin("octocat", "acme", mannequin_id="MDQ_new", mannequin_login="octocat-m")
        )
        other = await database.mannequins.save_user_mannequin(mannequin("octocat", "globex"))

        assert again == first
        assert other != first
        stored = await database.mannequins.get_user_mannequin("octocat", "acme")
        assert stored is not None
        assert (stored.mannequin_id, stored.mannequin_login) == ("MDQ_new", "octocat-m")
        owned = await database.mannequins.get_user_mannequins_by_source_login("octocat")
        assert [m.mannequin_org for m in owned] == ["acme", "globex"]
        assert await database.mannequins.get_user_mannequin("octocat", "initech") is None

    @pytest.mark.asyncio
    async def test_list_and_orgs(self, database: Database):
        await database.mannequins.save_user_mannequin(mannequin("b", "globex"))
        await database.mannequins.save_user_mannequin(
            mannequin("a", "acme", reclaim_status="invited")
        )
        await database.mannequins.save_user_mannequin(mannequin("a", "globex"))

        everyone = await database.mannequins.list_user_mannequins()
        globex = await database.mannequins.list_user_mannequins(mannequin_org="globex")
        invited = await database.mannequins.list_user_mannequins(reclaim_status="invited")

        assert [(m.source_login, m.mannequin_org) for m in everyone] == [
            ("a", "acme"),
            ("a", "globex"),
            ("b", "globex"),
        ]
        assert [m.source_login for m in globex] == ["a", "b"]
        assert [m.mannequin_org for m in invited] == ["acme"]
        assert await database.mannequins.get_mannequin_orgs() == ["acme", "globex"]

    @pytest.mark.asyncio
    async def test_reclaim_status(self, database: Database):
        await database.mannequins.save_user_mannequin(mannequin("octocat", "acme"))

        await database.mannequins.update_mannequin_reclaim_status(
            "octocat", "acme", "failed", "user declined"
        )
        await database.mannequins.update_mannequin_reclaim_status("octocat", "acme", "invited")

        stored = await database.mannequins.get_user_mannequin("octocat", "acme")
        assert stored is not None
        assert stored.reclaim_status == "invited"
        assert stored.reclaim_error == "user declined"
        with pytest.raises(NotFoundError):
            await database.mannequins.update_mannequin_reclaim_status("ghost", "acme", "invited")

    @pytest.mark.asyncio
    async def test_delete(self, database: Database):
        await database.mannequins.save_user_mannequin(mannequin("octocat", "acme"))

        await database.mannequins.delete_user_mannequin("octocat", "acme")

        assert await database.mannequins.get_user_mannequin("octocat", "acme") is None
        with pytest.raises(NotFoundError):
            await database.mannequins.delete_user_mannequin("octocat", "acme")

    @pytest.mark.asyncio
    async def test_mappings_with_mannequins(self, database: Database):
        """Only mappings holding a mannequin in the requested org are returned."""
        await database.user_mappings.save_user_mapping(
            UserMapping(
                source_login="octocat",
                source_email="octo@acme.io",
                destination_login="octo-emu",
                mapping_status=MappingStatus.MAPPED,
            )
        )
        await database.user_mappings.save_user_mapping(UserMapping(source_login="hubot"))
        await database.user_mappings.save_user_mapping(UserMapping(source_login="nomad"))
        await database.mannequins.save_user_mannequin(
            mannequin("octocat", "acme", mannequin_login="octocat-m")
        )
        await database.mannequins.save_user_mannequin(mannequin("hubot", "acme"))
        await database.mannequins.save_user_mannequin(mannequin("nomad", "globex"))

        rows = await database.mannequins.list_mappings_with_mannequins("acme")
        mapped = await database.mannequins.list_mappings_with_mannequins(
            "acme", status=MappingStatus.MAPPED
        )

        assert [r.source_login for r in rows] == ["hubot", "octocat"]
        assert len(mapped) == 1
        row = mapped[0]
        assert row.destination_login == "octo-emu"
        assert row.mannequin_login == "octocat-m"
        assert row.mannequin_org == "acme"
        assert row.source_email == "octo@acme.io"
