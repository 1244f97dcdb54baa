"""SQLite integration tests for DependencyStore."""

from __future__ import annotations

import pytest

from migrationstate import Database
from migrationstate.exceptions import NotFoundError, StorageError
from migrationstate.models import RepositoryDependency

pytestmark = [pytest.mark.sqlite]


def _dep(target: str, dep_type: str = "submodule", **kwargs) -> RepositoryDependency:
    kwargs.setdefault("dependency_url", f"https://github.example.com/{target}")
    return RepositoryDependency(dependency_full_name=target, dependency_type=dep_type, **kwargs)


class TestReplaceDependencies:
    @pytest.mark.asyncio
    async def test_replace_is_complete(self, database: Database, make_repository):
        """The new edge set fully replaces the old one."""
        repo_id = await database.repositories.save_repository(make_repository("acme/api"))
        await database.dependencies.replace_dependencies(
            repo_id, [_dep("acme/lib"), _dep("acme/old")]
        )

        await database.dependencies.replace_dependencies(
            repo_id,
            [
                _dep("acme/lib"),
                _dep("actions/checkout", "action", metadata={"version": "v4"}),
            ],
        )

        deps = await database.dependencies.get_dependencies(repo_id)
        assert [(d.dependency_type, d.dependency_full_name) for d in deps] == [
            ("action", "actions/checkout"),
            ("submodule", "acme/lib"),
        ]
        assert deps[0].metadata == {"version": "v4"}
        assert deps[1].metadata is None

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_previous_edges(self, database: Database, make_repository):
        """An edge violating NOT NULL aborts the whole replacement."""
        repo_id = await database.repositories.save_repository(make_repository("acme/api"))
        await database.dependencies.replace_dependencies(repo_id, [_dep("acme/old")])

        with pytest.raises(StorageError):
            await database.dependencies.replace_dependencies(
                repo_id, [_dep("acme/lib"), _dep("acme/broken", None)]
            )

        deps = await database.dependencies.get_dependencies(repo_id)
        assert [d.dependency_full_name for d in deps] == ["acme/old"]

    @pytest.mark.asyncio
    async def test_replace_with_empty(self, database: Database, make_repository):
        repo_id = await database.repositories.save_repository(make_repository("acme/api"))
        await database.dependencies.replace_dependencies(repo_id, [_dep("acme/lib")])

        await database.dependencies.replace_dependencies(repo_id, [])

        assert await database.dependencies.get_dependencies(repo_id) == []

    @pytest.mark.asyncio
    async def test_clear(self, database: Database, make_repository):
        repo_id = await database.repositories.save_repository(make_repository("acme/api"))
        await database.dependencies.replace_dependencies(repo_id, [_dep("acme/lib")])

        await database.dependencies.clear_dependencies(repo_id)

        assert await database.dependencies.get_dependencies(repo_id) == []

    @pytest.mark.asyncio
    async def test_by_full_name(self, database: Database, make_repository):
        repo_id = await database.repositories.save_repository(make_repository("acme/api"))
        await database.dependencies.replace_dependencies(repo_id, [_dep("acme/lib")])

        deps = await database.dependencies.get_dependencies_by_full_name("acme/api")

        assert [d.dependency_full_name for d in deps] == ["acme/lib"]
        with pytest.raises(NotFoundError):
            await database.dependencies.get_dependencies_by_full_name("acme/ghost")


class TestReverseLookup:
    @pytest.mark.asyncio
    async def test_dependents_distinct(self, database: Database, make_repository):
        """A repository with several edges to the target is listed once."""
        web = await database.repositories.save_repository(make_repository("acme/web"))
        api = await database.repositories.save_repository(make_repository("acme/api"))
        await database.repositories.save_repository(make_repository("acme/docs"))
        await database.dependencies.replace_dependencies(
            web, [_dep("acme/lib"), _dep("acme/lib", "package")]
        )
        await database.dependencies.replace_dependencies(api, [_dep("acme/lib")])

        dependents = await database.dependencies.get_dependents("acme/lib")

        assert [r.full_name for r in dependents] == ["acme/api", "acme/web"]
        assert await database.dependencies.get_dependents("acme/none") == []


class TestLocality:
    @pytest.mark.asyncio
    async def test_recompute_flags(self, database: Database, make_repository):
        api = await database.repositories.save_repository(make_repository("acme/api"))
        await database.dependencies.replace_dependencies(
            api, [_dep("acme/lib", is_local=True), _dep("external/tool", "package")]
        )
        await database.repositories.save_repository(make_repository("external/tool"))

        updated = await database.dependencies.recompute_locality_flags()

        assert updated == 2
        deps = {
            d.dependency_full_name: d.is_local
            for d in await database.dependencies.get_dependencies(api)
        }
        assert deps == {"acme/lib": False, "external/tool": True}

    @pytest.mark.asyncio
    async def test_local_pairs(self, database: Database, make_repository, make_source):
        source_id = await database.sources.create_source(make_source())
        api = await database.repositories.save_repository(
            make_repository("acme/api", source_id=source_id)
        )
        web = await database.repositories.save_repository(make_repository("acme/web"))
        await database.repositories.save_repository(make_repository("acme/lib"))
        await database.dependencies.replace_dependencies(
            api,
            [_dep("acme/lib"), _dep("acme/web", "workflow"), _dep("external/tool", "package")],
        )
        await database.dependencies.replace_dependencies(web, [_dep("acme/lib")])

        pairs = await database.dependencies.get_local_dependency_pairs()

        assert [(p.source_repo, p.target_repo, p.dependency_type) for p in pairs] == [
            ("acme/api", "acme/lib", "submodule"),
            ("acme/api", "acme/web", "workflow"),
            ("acme/web", "acme/lib", "submodule"),
        ]
        assert pairs[0].source_repo_url == "https://github.example.com/acme/api"
        assert pairs[0].target_repo_url == "https://github.example.com/acme/lib"

        workflows = await database.dependencies.get_local_dependency_pairs(["workflow"])
        assert [p.target_repo for p in workflows] == ["acme/web"]

        scoped = await database.dependencies.get_local_dependency_pairs(source_id=source_id)
        assert {p.source_repo for p in scoped} == {"acme/api"}

    @pytest.mark.asyncio
    async def test_no_pairs(self, database: Database):
        assert await database.dependencies.get_local_dependency_pairs() == []
