"""
Pytest configuration and shared fixtures.

Provides real git repositories built in temp directories: standalone repos,
a bare "origin" with working clones, and helpers to run git and commit files.
"""

import subprocess
from pathlib import Path

import pytest


# ==============================================================================
# Environment isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep the user's git and git-flotilla configuration out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    for name in (
        "GIT_FLOTILLA_CONFIG",
        "GIT_FLOTILLA_PARALLELISM",
        "GIT_FLOTILLA_SCAN_DEPTH",
        "GITHUB_TOKEN",
        "GITLAB_TOKEN",
        "GITEA_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


# ==============================================================================
# Git helpers
# ==============================================================================


def run_git(cwd: Path, *args: str, check: bool = True) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    if check and result.returncode != 0:
        raise AssertionError(f"git {' '.join(args)} failed: {result.stderr}")
    return result.stdout.strip()


def init_repo(path: Path, files: dict[str, str] | None = None) -> Path:
    """Create a repository on ``main`` with one commit of ``files``."""
    path.mkdir(parents=True, exist_ok=True)
    run_git(path, "init", "-q", "-b", "main")
    run_git(path, "config", "user.name", "Test User")
    run_git(path, "config", "user.email", "test@example.com")
    commit_files(path, files or {"README.md": "hello\n"}, "initial commit")
    return path


def commit_files(path: Path, files: dict[str, str], message: str = "update") -> str:
    for name, content in files.items():
        target = path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        run_git(path, "add", name)
    run_git(path, "commit", "-q", "-m", message)
    return run_git(path, "rev-parse", "HEAD")


def clone(origin: Path, target: Path) -> Path:
    run_git(origin.parent, "clone", "-q", str(origin), str(target))
    run_git(target, "config", "user.name", "Test User")
    run_git(target, "config", "user.email", "test@example.com")
    return target


@pytest.fixture
def git():
    """Run a git command in a directory and return stripped stdout."""
    return run_git


@pytest.fixture
def make_repo():
    return init_repo


@pytest.fixture
def commit():
    return commit_files


@pytest.fixture
def origin(tmp_path):
    """A bare repository with one commit on ``main``."""
    seed = init_repo(tmp_path / "seed", {"README.md": "hello\n", "app.txt": "line 1\n"})
    bare = tmp_path / "origin.git"
    run_git(tmp_path, "clone", "-q", "--bare", str(seed), str(bare))
    return bare


@pytest.fixture
def workspace(tmp_path, origin):
    """A directory holding a clone of ``origin`` that tracks ``origin/main``."""
    root = tmp_path / "workspace"
    root.mkdir()
    clone(origin, root / "service")
    return root


@pytest.fixture
def upstream_commit(tmp_path, origin):
    """Push a new commit to ``origin`` from a separate clone; returns a committer."""
    other = clone(origin, tmp_path / "other")

    def push(files: dict[str, str], message: str = "upstream change") -> str:
        sha = commit_files(other, files, message)
        run_git(other, "push", "-q", "origin", "main")
        return sha

    return push
