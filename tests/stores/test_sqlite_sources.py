"""SQLite integration tests for SourceStore."""

from __future__ import annotations

import pytest

from migrationstate import Database
from migrationstate.exceptions import (
    InvalidEntityError,
    NotFoundError,
    SourceInUseError,
    StorageError,
)

pytestmark = [pytest.mark.sqlite]


class TestSourceCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, database: Database, make_source):
        source = make_source("GHES", base_url="https://ghe.acme.io/api/v3/")

        source_id = await database.sources.create_source(source)

        assert source.id == source_id
        stored = await database.sources.get_source(source_id)
        assert stored is not None
        assert stored.name == "GHES"
        assert stored.base_url == "https://ghe.acme.io/api/v3"
        assert stored.is_active is True
        assert stored.repository_count == 0
        assert stored.created_at is not None
        by_name = await database.sources.get_source_by_name("GHES")
        assert by_name is not None and by_name.id == source_id

    @pytest.mark.asyncio
    async def test_missing(self, database: Database):
        assert await database.sources.get_source(99) is None
        assert await database.sources.get_source_by_name("nope") is None

    @pytest.mark.asyncio
    async def test_invalid_source_not_written(self, database: Database, make_source):
        source = make_source()
        source.type = "gitlab"

        with pytest.raises(InvalidEntityError):
            await database.sources.create_source(source)

        assert await database.sources.list_sources() == []

    @pytest.mark.asyncio
    async def test_duplicate_name(self, database: Database, make_source):
        """Engine constraint violations surface as StorageError."""
        await database.sources.create_source(make_source("primary"))

        with pytest.raises(StorageError) as exc_info:
            await database.sources.create_source(make_source("primary"))
        assert exc_info.value.operation == "source_store.create_source"

    @pytest.mark.asyncio
    async def test_update(self, database: Database, make_source):
        source_id = await database.sources.create_source(make_source())
        source = await database.sources.get_source(source_id)
        assert source is not None
        source.token = "ghp_rotated_token_value"
        source.enterprise_slug = "acme"

        await database.sources.update_source(source)

        stored = await database.sources.get_source(source_id)
        assert stored is not None
        assert stored.token == "ghp_rotated_token_value"
        assert stored.enterprise_slug == "acme"

    @pytest.mark.asyncio
    async def test_update_invalid_or_missing(self, database: Database, make_source):
        source_id = await database.sources.create_source(make_source())
        source = await database.sources.get_source(source_id)
        assert source is not None
        source.name = ""
        with pytest.raises(InvalidEntityError):
            await database.sources.update_source(source)

        ghost = make_source("ghost", id=404)
        with pytest.raises(NotFoundError):
            await database.sources.update_source(ghost)

    @pytest.mark.asyncio
    async def test_listing(self, database: Database, make_source):
        github = await database.sources.create_source(make_source("b-github"))
        await database.sources.create_source(
            make_source("a-azure", type="azuredevops", organization="contoso")
        )
        await database.sources.set_source_active(github, False)

        assert [s.name for s in await database.sources.list_sources()] == ["a-azure", "b-github"]
        assert [s.name for s in await database.sources.list_active_sources()] == ["a-azure"]
        by_type = await database.sources.get_sources_by_type("AzureDevOps")
        assert [s.name for s in by_type] == ["a-azure"]


class TestSourceRepositories:
    @pytest.mark.asyncio
    async def test_delete_in_use(self, database: Database, make_source, make_repository):
        source_id = await database.sources.create_source(make_source())
        await database.repositories.save_repository(
            make_repository("acme/api", source_id=source_id)
        )

        with pytest.raises(SourceInUseError) as exc_info:
            await database.sources.delete_source(source_id)

        assert exc_info.value.repository_count == 1
        assert await database.sources.get_source(source_id) is not None

    @pytest.mark.asyncio
    async def test_delete(self, database: Database, make_source):
        source_id = await database.sources.create_source(make_source())

        await database.sources.delete_source(source_id)

        assert await database.sources.get_source(source_id) is None
        with pytest.raises(NotFoundError):
            await database.sources.delete_source(source_id)

    @pytest.mark.asyncio
    async def test_counts_and_assignment(self, database: Database, make_source, make_repository):
        source_id = await database.sources.create_source(make_source())
        repo_id = await database.repositories.save_repository(make_repository("acme/api"))
        await database.repositories.save_repository(
            make_repository("acme/web", source_id=source_id)
        )

        await database.sources.assign_repository_to_source(repo_id, source_id)

        assert await database.sources.count_repositories_by_source_id(source_id) == 2
        repos = await database.sources.get_repositories_by_source_id(source_id)
        assert [r.full_name for r in repos] == ["acme/api", "acme/web"]
        assert await database.sources.update_source_repository_count(source_id) == 2
        stored = await database.sources.get_source(source_id)
        assert stored is not None
        assert stored.repository_count == 2
        assert stored.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_assign_missing_repository(self, database: Database, make_source):
        source_id = await database.sources.create_source(make_source())
        with pytest.raises(NotFoundError):
            await database.sources.assign_repository_to_source(999, source_id)

    @pytest.mark.asyncio
    async def test_last_sync_missing(self, database: Database):
        with pytest.raises(NotFoundError):
            await database.sources.update_source_last_sync(999)
        with pytest.raises(NotFoundError):
            await database.sources.set_source_active(999, True)
