"""Tests for the command line interface."""

import json
import shutil

import pytest
from typer.testing import CliRunner

from git_flotilla import __version__
from git_flotilla.cli import app

runner = CliRunner()

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def invoke_json(*args):
    result = runner.invoke(app, [*args, "--json"])
    return result, json.loads(result.stdout)


class TestGlobalOptions:
    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert result.stdout.strip() == f"git-flotilla {__version__}"

    def test_no_arguments_shows_help(self):
        result = runner.invoke(app, [])

        assert "sync" in result.output
        assert "doctor" in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "absent.yaml"), "list", str(tmp_path)])

        assert result.exit_code == 1


class TestList:
    def test_json(self, tmp_path):
        for name in ("api", "web", "notes"):
            (tmp_path / name).mkdir()
        (tmp_path / "api" / ".git").mkdir()
        (tmp_path / "web" / ".git").mkdir()

        result, data = invoke_json("list", str(tmp_path))

        assert result.exit_code == 0
        assert data["count"] == 2
        assert [r["relative_path"] for r in data["repositories"]] == ["api", "web"]
        assert data["repositories"][0]["display_name"] == "api"

    def test_exclude(self, tmp_path):
        (tmp_path / "api" / ".git").mkdir(parents=True)
        (tmp_path / "archive-api" / ".git").mkdir(parents=True)

        _, data = invoke_json("list", str(tmp_path), "--exclude", "^archive")

        assert [r["name"] for r in data["repositories"]] == ["api"]

    def test_invalid_pattern(self, tmp_path):
        result = runner.invoke(app, ["list", str(tmp_path), "--include", "("])

        assert result.exit_code == 1

    def test_missing_root(self, tmp_path):
        result = runner.invoke(app, ["list", str(tmp_path / "nope")])

        assert result.exit_code == 1


@requires_git
class TestFleetCommands:
    def test_status_json(self, workspace):
        (workspace / "service" / "app.txt").write_text("dirty\n")

        result, data = invoke_json("status", str(workspace))

        assert result.exit_code == 0
        (row,) = data["repositories"]
        assert row["repository"]["relative_path"] == "service"
        assert row["state"]["current_branch"] == "main"
        assert row["state"]["modified_files"] == ["app.txt"]
        assert row["error"] is None

    def test_push_with_nothing_to_push(self, workspace):
        result, data = invoke_json("push", str(workspace))

        assert result.exit_code == 0
        assert data["operation"] == "push"
        assert data["results"][0]["outcome"] == "skipped"
        assert data["summary"]["skipped"] == 1

    def test_pull_ff_only(self, workspace, upstream_commit):
        upstream_commit({"remote.txt": "r\n"})

        result, data = invoke_json("pull", str(workspace), "--mode", "ff-only")

        assert result.exit_code == 0
        assert data["results"][0]["outcome"] == "succeeded"

    def test_switch_dry_run(self, workspace, git):
        result, data = invoke_json("switch", "feature", str(workspace), "--create", "--dry-run")

        assert result.exit_code == 0
        assert data["results"][0]["message"].startswith("would")
        assert git(workspace / "service", "branch", "--show-current") == "main"

    def test_doctor(self, workspace):
        result, data = invoke_json("doctor", str(workspace), "--skip-fetch")

        assert result.exit_code == 0
        assert data["summary"]["healthy"] == 1
        assert data["records"][0]["fetch_status"] == "skipped"

    def test_watch_single_tick(self, workspace):
        result, data = invoke_json(
            "watch", str(workspace), "--operation", "status", "--max-ticks", "1"
        )

        assert result.exit_code == 0
        assert data["operation"] == "status"
        assert data["results"][0]["message"] == "clean"


@requires_git
class TestSync:
    def manifest(self, tmp_path, origin):
        path = tmp_path / "fleet.yaml"
        path.write_text(
            f"root: synced\nrepositories:\n  - name: service\n    url: {origin}\n"
        )
        return path

    def test_plan_only(self, tmp_path, origin):
        result, data = invoke_json("sync", "--manifest", str(self.manifest(tmp_path, origin)), "--plan")

        assert result.exit_code == 0
        assert [(a["repository"]["name"], a["kind"]) for a in data["plan"]] == [("service", "clone")]
        assert not (tmp_path / "synced").exists()

    def test_clone(self, tmp_path, origin):
        result, data = invoke_json("sync", "--manifest", str(self.manifest(tmp_path, origin)))

        assert result.exit_code == 0
        assert data["summary"]["cloned"] == 1
        assert (tmp_path / "synced" / "service" / "app.txt").exists()

    def test_sync_root_overrides_manifest_root(self, tmp_path, origin):
        manifests = tmp_path / "manifests"
        manifests.mkdir()
        path = self.manifest(manifests, origin)
        work = tmp_path / "work"
        (work / "service" / ".git").mkdir(parents=True)

        result, data = invoke_json("sync", "--manifest", str(path), "--sync-root", str(work), "--plan")

        assert result.exit_code == 0
        assert [(a["repository"]["local_path"], a["kind"]) for a in data["plan"]] == [
            (str(work.resolve() / "service"), "update")
        ]

    def test_needs_a_source(self):
        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 1

    def test_forge_needs_org(self):
        result = runner.invoke(app, ["sync", "--forge", "github"])

        assert result.exit_code == 1


@requires_git
class TestConflicts:
    def test_predicts_content_conflict(self, make_repo, commit, git, tmp_path):
        repo = make_repo(tmp_path / "repo", {"app.txt": "base\n"})
        git(repo, "switch", "-q", "-c", "feature")
        commit(repo, {"app.txt": "feature\n"})
        git(repo, "switch", "-q", "main")
        commit(repo, {"app.txt": "main\n"})

        result, data = invoke_json("conflicts", "feature", "--repo", str(repo))

        assert result.exit_code == 0
        assert data["target_ref"] == "HEAD"
        assert data["total_conflicts"] == 1
        assert data["entries"][0]["path"] == "app.txt"

    def test_fail_fast_exit_code(self, make_repo, commit, git, tmp_path):
        repo = make_repo(tmp_path / "repo", {"app.txt": "base\n"})
        git(repo, "switch", "-q", "-c", "feature")
        commit(repo, {"app.txt": "feature\n"})
        git(repo, "switch", "-q", "main")
        commit(repo, {"app.txt": "main\n"})

        result = runner.invoke(app, ["conflicts", "feature", "main", "--repo", str(repo), "--fail-fast"])

        assert result.exit_code == 1

    def test_unknown_ref(self, make_repo, tmp_path):
        repo = make_repo(tmp_path / "repo")

        result = runner.invoke(app, ["conflicts", "nope", "--repo", str(repo)])

        assert result.exit_code == 1
