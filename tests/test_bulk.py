"""Tests for gated bulk operations against real repositories."""

import shutil

import pytest

from git_flotilla.bulk import FleetManager, PullMode
from git_flotilla.models import BulkOperationOptions, InProgressOperation, Outcome
from git_flotilla.state import inspect

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def interrupted(workspace, git, commit, upstream_commit):
    """``service`` stopped in a conflicted rebase."""
    repo = workspace / "service"
    upstream_commit({"app.txt": "remote\n"})
    commit(repo, {"app.txt": "local\n"})
    git(repo, "fetch", "-q")
    git(repo, "rebase", "origin/main", check=False)
    return repo


class TestInterruptedRepository:
    def test_pull_skips_rebase_in_progress(self, workspace, interrupted):
        results = FleetManager(workspace).pull()

        assert len(results) == 1
        assert results[0].outcome == Outcome.SKIPPED
        assert "rebase" in results[0].message
        assert inspect(interrupted).in_progress_operation == InProgressOperation.REBASE

    def test_recover_aborts_rebase(self, workspace, interrupted):
        results = FleetManager(workspace).recover()

        assert results[0].outcome == Outcome.SUCCEEDED
        assert results[0].message == "aborted rebase"
        state = inspect(interrupted)
        assert state.in_progress_operation == InProgressOperation.NONE
        assert not state.has_unresolved_conflicts

    def test_recover_dry_run_changes_nothing(self, workspace, interrupted):
        options = BulkOperationOptions(dry_run=True)

        results = FleetManager(workspace, options).recover()

        assert results[0].message == "would abort rebase"
        assert inspect(interrupted).in_progress_operation == InProgressOperation.REBASE

    def test_recover_on_clean_repository_is_skipped(self, workspace):
        results = FleetManager(workspace).recover()

        assert results[0].outcome == Outcome.SKIPPED

    def test_auto_recover_then_runs_the_operation(self, workspace, interrupted, git):
        results = FleetManager(workspace, auto_recover=True).switch("hotfix", create=True)

        assert results[0].message == "aborted rebase; created and switched to hotfix"
        assert inspect(interrupted).in_progress_operation == InProgressOperation.NONE
        assert git(interrupted, "branch", "--show-current") == "hotfix"


class TestPull:
    def test_pull_fast_forwards(self, workspace, git, upstream_commit):
        sha = upstream_commit({"remote.txt": "r\n"})

        results = FleetManager(workspace).pull(PullMode.FF_ONLY)

        assert results[0].success
        assert results[0].message.startswith("updated ")
        assert git(workspace / "service", "rev-parse", "HEAD") == sha

    def test_pull_when_current(self, workspace):
        results = FleetManager(workspace).pull()

        assert results[0].message == "already up to date"

    def test_dry_run_does_not_pull(self, workspace, git, upstream_commit):
        repo = workspace / "service"
        before = git(repo, "rev-parse", "HEAD")
        upstream_commit({"remote.txt": "r\n"})

        results = FleetManager(workspace, BulkOperationOptions(dry_run=True)).pull()

        assert results[0].message == "would pull (merge) from origin/main"
        assert git(repo, "rev-parse", "HEAD") == before

    def test_no_upstream_is_skipped(self, tmp_path, make_repo):
        make_repo(tmp_path / "fleet" / "local-only")

        results = FleetManager(tmp_path / "fleet").pull()

        assert results[0].outcome == Outcome.SKIPPED
        assert results[0].message == "no upstream configured"

    def test_conflicting_rebase_is_aborted(self, workspace, git, commit, upstream_commit):
        repo = workspace / "service"
        upstream_commit({"app.txt": "remote\n"})
        local = commit(repo, {"app.txt": "local\n"})

        results = FleetManager(workspace).pull(PullMode.REBASE)

        assert results[0].outcome == Outcome.FAILED
        assert results[0].message == "pull produced 1 conflicting file(s); rebase aborted"
        state = inspect(repo)
        assert state.in_progress_operation == InProgressOperation.NONE
        assert not state.has_unresolved_conflicts
        assert git(repo, "rev-parse", "HEAD") == local


class TestPush:
    def test_nothing_to_push_is_skipped(self, workspace):
        results = FleetManager(workspace).push()

        assert results[0].outcome == Outcome.SKIPPED
        assert results[0].message == "nothing to push"

    def test_pushes_local_commits(self, workspace, git, commit, origin):
        sha = commit(workspace / "service", {"feature.txt": "f\n"})

        results = FleetManager(workspace).push()

        assert results[0].message == "pushed 1 commit(s)"
        assert git(origin, "rev-parse", "main") == sha

    def test_dirty_tree_is_not_pushed(self, workspace, commit):
        repo = workspace / "service"
        commit(repo, {"feature.txt": "f\n"})
        (repo / "app.txt").write_text("uncommitted\n")

        results = FleetManager(workspace).push()

        assert results[0].outcome == Outcome.SKIPPED
        assert "uncommitted" in results[0].message


class TestSwitch:
    def test_create_branch(self, workspace, git):
        results = FleetManager(workspace).switch("feature/x", create=True)

        assert results[0].message == "created and switched to feature/x"
        assert git(workspace / "service", "branch", "--show-current") == "feature/x"

    def test_already_on_branch(self, workspace):
        results = FleetManager(workspace).switch("main")

        assert results[0].message == "already on main"

    def test_dirty_tree_is_skipped(self, workspace):
        (workspace / "service" / "app.txt").write_text("dirty\n")

        results = FleetManager(workspace).switch("other", create=True)

        assert results[0].outcome == Outcome.SKIPPED

    def test_invalid_branch_name_fails_fast(self, workspace):
        with pytest.raises(ValueError):
            FleetManager(workspace).switch("--force")


class TestStatusAndFetch:
    def test_status_messages(self, workspace, make_repo):
        make_repo(workspace / "local-only")
        (workspace / "service" / "app.txt").write_text("dirty\n")

        results = FleetManager(workspace).status()

        messages = {r.repository.relative_path: r.message for r in results}
        assert messages == {"local-only": "no upstream", "service": "1 modified"}

    def test_states_returns_one_row_per_repository(self, workspace):
        rows = FleetManager(workspace).states()

        assert len(rows) == 1
        handle, state, error = rows[0]
        assert handle.relative_path == "service"
        assert state is not None and state.current_branch == "main"
        assert error == ""

    def test_fetch(self, workspace, upstream_commit):
        upstream_commit({"remote.txt": "r\n"})

        results = FleetManager(workspace).fetch()

        assert results[0].message == "fetched"
        assert inspect(workspace / "service").behind_count == 1

    def test_summary_counts(self, workspace, make_repo):
        make_repo(workspace / "local-only")
        fleet = FleetManager(workspace)

        summary = fleet.summarize(fleet.push())

        assert summary.total == 2
        assert summary.skipped == 2
