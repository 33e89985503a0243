"""Tests for repository discovery."""

import pytest

from git_flotilla.errors import ErrorKind, FlotillaError
from git_flotilla.models import BulkOperationOptions
from git_flotilla.scanner import is_submodule, scan, scan_with_options


def fake_repo(path):
    """A directory the scanner treats as a repository (no git needed)."""
    (path / ".git").mkdir(parents=True)
    return path


class TestScanDepth:
    def test_finds_repositories_one_level_down(self, tmp_path):
        fake_repo(tmp_path / "a")
        fake_repo(tmp_path / "b")
        (tmp_path / "c").mkdir()

        handles = scan(tmp_path, max_depth=1)

        assert [h.relative_path for h in handles] == ["a", "b"]
        assert all(h.depth == 1 for h in handles)
        assert handles[0].name == "a"

    def test_depth_zero_only_inspects_root(self, tmp_path):
        fake_repo(tmp_path / "a")
        assert scan(tmp_path, max_depth=0) == []

        fake_repo(tmp_path / "root")
        handles = scan(tmp_path / "root", max_depth=0)
        assert [h.relative_path for h in handles] == ["."]

    def test_respects_max_depth(self, tmp_path):
        fake_repo(tmp_path / "group" / "deep")

        assert scan(tmp_path, max_depth=1) == []
        assert [h.relative_path for h in scan(tmp_path, max_depth=2)] == ["group/deep"]

    def test_descends_into_nested_repositories(self, tmp_path):
        fake_repo(tmp_path / "outer")
        fake_repo(tmp_path / "outer" / "inner")

        paths = [h.relative_path for h in scan(tmp_path, max_depth=2)]

        assert paths == ["outer", "outer/inner"]

    def test_negative_depth_is_rejected(self, tmp_path):
        with pytest.raises(FlotillaError) as exc_info:
            scan(tmp_path, max_depth=-1)
        assert exc_info.value.kind == ErrorKind.SCAN


class TestScanFiltering:
    def test_exclude_wins_over_include(self, tmp_path):
        fake_repo(tmp_path / "api")
        fake_repo(tmp_path / "api-legacy")
        fake_repo(tmp_path / "web")

        handles = scan(tmp_path, include="^api", exclude="legacy")

        assert [h.relative_path for h in handles] == ["api"]

    def test_hidden_and_build_directories_are_skipped(self, tmp_path):
        fake_repo(tmp_path / ".cache" / "repo")
        fake_repo(tmp_path / "node_modules" / "pkg")
        fake_repo(tmp_path / "kept")

        handles = scan(tmp_path, max_depth=2)

        assert [h.relative_path for h in handles] == ["kept"]

    def test_invalid_pattern_fails_before_scanning(self, tmp_path):
        with pytest.raises(FlotillaError) as exc_info:
            scan(tmp_path, include="(")
        assert exc_info.value.kind == ErrorKind.SCAN

    def test_missing_root_is_a_scan_error(self, tmp_path):
        with pytest.raises(FlotillaError) as exc_info:
            scan(tmp_path / "nope")
        assert exc_info.value.kind == ErrorKind.SCAN

    def test_file_root_is_a_scan_error(self, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("x")
        with pytest.raises(FlotillaError, match="not a directory"):
            scan(target)

    def test_symlinked_directories_are_not_followed(self, tmp_path):
        real = fake_repo(tmp_path / "real")
        (tmp_path / "link").symlink_to(real, target_is_directory=True)

        assert [h.relative_path for h in scan(tmp_path)] == ["real"]


class TestSubmodules:
    def make_submodule(self, tmp_path):
        parent = fake_repo(tmp_path / "parent")
        sub = parent / "libs" / "sub"
        sub.mkdir(parents=True)
        (sub / ".git").write_text("gitdir: ../../.git/modules/sub\n")
        return parent, sub

    def test_pointer_file_marks_a_submodule(self, tmp_path):
        _, sub = self.make_submodule(tmp_path)
        assert is_submodule(sub)

    def test_submodules_skipped_by_default(self, tmp_path):
        self.make_submodule(tmp_path)

        paths = [h.relative_path for h in scan(tmp_path, max_depth=3)]

        assert paths == ["parent"]

    def test_submodules_included_on_request(self, tmp_path):
        self.make_submodule(tmp_path)

        handles = scan(tmp_path, max_depth=3, recursive_submodules=True)

        assert [h.relative_path for h in handles] == ["parent", "parent/libs/sub"]
        assert handles[1].is_submodule


class TestScanWithOptions:
    def test_options_map_onto_scan(self, tmp_path):
        fake_repo(tmp_path / "one")
        fake_repo(tmp_path / "two")
        options = BulkOperationOptions(scan_depth=1, exclude_pattern="two")

        assert [h.relative_path for h in scan_with_options(tmp_path, options)] == ["one"]
