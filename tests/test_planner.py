"""Tests for sync planning."""

from pathlib import Path

import pytest

from git_flotilla.errors import ErrorKind, FlotillaError
from git_flotilla.forge import ForgeFilters, ForgeRepository
from git_flotilla.models import RepositoryHandle, SyncActionKind, SyncManifestEntry
from git_flotilla.planner import (
    ForgeListing,
    SubgroupLayout,
    entries_from_forge,
    forge_target_path,
    plan,
    strip_org_prefix,
    valid_separator,
)


def entry(root: Path, name: str) -> SyncManifestEntry:
    return SyncManifestEntry(
        name=name, source_url=f"https://example.com/acme/{name}.git", local_path=root / name
    )


def forge_repo(full_name: str, **kwargs) -> ForgeRepository:
    name = full_name.rsplit("/", 1)[-1]
    return ForgeRepository(
        name=name,
        full_name=full_name,
        clone_url=f"https://gitlab.example.com/{full_name}.git",
        ssh_url=f"git@gitlab.example.com:{full_name}.git",
        **kwargs,
    )


class FakeProvider:
    def __init__(self, repos):
        self.repos = repos
        self.requests = []

    def list_organization_repositories(self, org, filters=None):
        self.requests.append((org, filters))
        return [r for r in self.repos if filters is None or filters.accepts(r)]


class TestPlanFromEntries:
    def test_clone_missing_and_update_present(self, tmp_path):
        (tmp_path / "b" / ".git").mkdir(parents=True)

        actions = plan([entry(tmp_path, "b"), entry(tmp_path, "a")], local=[])

        assert [(a.repository.name, a.kind) for a in actions] == [
            ("a", SyncActionKind.CLONE),
            ("b", SyncActionKind.UPDATE),
        ]

    def test_non_repository_directory_is_cloned_with_note(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "stray.txt").write_text("x")

        actions = plan([entry(tmp_path, "a")])

        assert actions[0].kind == SyncActionKind.CLONE
        assert "not a repository" in actions[0].reason

    def test_orphans_follow_entries(self, tmp_path):
        (tmp_path / "a" / ".git").mkdir(parents=True)
        local = [
            RepositoryHandle(path=tmp_path / "zz-old", relative_path="zz-old", depth=1),
            RepositoryHandle(path=tmp_path / "a", relative_path="a", depth=1),
            RepositoryHandle(path=tmp_path / "legacy", relative_path="legacy", depth=1),
        ]

        actions = plan([entry(tmp_path, "a"), entry(tmp_path, "m")], local)

        assert [(a.repository.name, a.kind) for a in actions] == [
            ("a", SyncActionKind.UPDATE),
            ("m", SyncActionKind.CLONE),
            ("legacy", SyncActionKind.ORPHAN),
            ("zz-old", SyncActionKind.ORPHAN),
        ]
        assert actions[2].repository.source_url == ""

    def test_ancestor_of_an_entry_is_not_an_orphan(self, tmp_path):
        local = [RepositoryHandle(path=tmp_path, relative_path=".", depth=0)]

        actions = plan([entry(tmp_path, "a")], local)

        assert [a.kind for a in actions] == [SyncActionKind.CLONE]

    def test_duplicate_paths_rejected(self, tmp_path):
        first = entry(tmp_path, "a")
        second = SyncManifestEntry(name="b", source_url=first.source_url, local_path=tmp_path / "a")

        with pytest.raises(FlotillaError) as exc_info:
            plan([first, second])
        assert exc_info.value.kind == ErrorKind.MANIFEST


class TestForgeLayout:
    def test_strip_org_prefix(self):
        assert strip_org_prefix("acme/platform/api") == "platform/api"
        assert strip_org_prefix("api") == "api"

    @pytest.mark.parametrize("separator", ["", "/", "a:b", "x|y"])
    def test_invalid_separators(self, separator):
        assert not valid_separator(separator)

    def test_layouts(self, tmp_path):
        repo = forge_repo("acme/platform/api")

        assert forge_target_path(repo, tmp_path) == tmp_path / "api"
        assert forge_target_path(repo, tmp_path, SubgroupLayout.FLAT) == tmp_path / "platform-api"
        assert forge_target_path(repo, tmp_path, SubgroupLayout.FLAT, "__") == (
            tmp_path / "platform__api"
        )
        assert forge_target_path(repo, tmp_path, SubgroupLayout.NESTED) == (
            tmp_path / "platform" / "api"
        )

    def test_invalid_separator_falls_back_to_dash(self, tmp_path):
        entries = entries_from_forge(
            [forge_repo("acme/platform/api")],
            tmp_path,
            layout=SubgroupLayout.FLAT,
            flat_separator="/",
        )
        assert entries[0].local_path.name == "platform-api"

    def test_flat_collision_names_both_repositories(self, tmp_path):
        repos = [forge_repo("acme/a-b/c"), forge_repo("acme/a/b-c")]

        with pytest.raises(FlotillaError) as exc_info:
            entries_from_forge(repos, tmp_path, layout=SubgroupLayout.FLAT)

        assert exc_info.value.kind == ErrorKind.MANIFEST
        assert "acme/a-b/c" in exc_info.value.message
        assert "acme/a/b-c" in exc_info.value.message

    def test_ssh_protocol_and_default_branch(self, tmp_path):
        repo = forge_repo("acme/api", default_branch="develop")

        entries = entries_from_forge([repo], tmp_path, protocol="ssh")

        assert entries[0].source_url == "git@gitlab.example.com:acme/api.git"
        assert entries[0].target_branch == "develop"


class TestPlanFromForge:
    def test_listing_is_filtered_and_planned(self, tmp_path):
        provider = FakeProvider(
            [
                forge_repo("acme/api"),
                forge_repo("acme/old", is_archived=True),
                forge_repo("acme/fork", is_fork=True),
            ]
        )
        listing = ForgeListing(provider=provider, organization="acme", filters=ForgeFilters())

        actions = plan(listing, local=[], sync_root=tmp_path)

        assert [a.repository.name for a in actions] == ["api"]
        assert provider.requests[0][0] == "acme"

    def test_forge_listing_needs_sync_root(self):
        listing = ForgeListing(provider=FakeProvider([]), organization="acme")

        with pytest.raises(FlotillaError, match="sync root"):
            plan(listing)
