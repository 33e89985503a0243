"""Working-tree and history state of a single repository."""

from __future__ import annotations

import logging
from pathlib import Path

from .gitcmd import GitExecutor
from .models import InProgressOperation, RepositoryHandle, RepositoryState

logger = logging.getLogger(__name__)

# Marker files in the git dir, checked in reporting priority order.
OPERATION_MARKERS: tuple[tuple[InProgressOperation, tuple[str, ...]], ...] = (
    (InProgressOperation.MERGE, ("MERGE_HEAD",)),
    (InProgressOperation.REBASE, ("rebase-merge", "rebase-apply")),
    (InProgressOperation.CHERRY_PICK, ("CHERRY_PICK_HEAD",)),
)


def git_dir(repo_path: Path, executor: GitExecutor | None = None) -> Path:
    """Absolute git directory, following ``.git`` pointer files."""
    git = executor or GitExecutor()
    output = git.output(repo_path, "rev-parse", "--absolute-git-dir")
    return Path(output)


def detect_in_progress(git_directory: Path) -> InProgressOperation:
    for operation, markers in OPERATION_MARKERS:
        if any((git_directory / marker).exists() for marker in markers):
            return operation
    return InProgressOperation.NONE


def parse_porcelain_v2(output: str, state: RepositoryState) -> RepositoryState:
    """Fill ``state`` from ``git status --porcelain=v2 --branch`` output."""
    for line in output.splitlines():
        if line.startswith("# branch.oid "):
            oid = line[len("# branch.oid ") :]
            state.head_commit = "" if oid == "(initial)" else oid
        elif line.startswith("# branch.head "):
            state.current_branch = line[len("# branch.head ") :]
        elif line.startswith("# branch.upstream "):
            state.upstream = line[len("# branch.upstream ") :]
        elif line.startswith("# branch.ab "):
            # Format: # branch.ab +<ahead> -<behind>
            parts = line.split()
            if len(parts) == 4:
                state.ahead_count = abs(int(parts[2]))
                state.behind_count = abs(int(parts[3]))
        elif line.startswith("1 "):
            # 1 XY sub mH mI mW hH hI path
            parts = line.split(" ", 8)
            _record_change(state, parts[1], parts[8])
        elif line.startswith("2 "):
            # 2 XY sub mH mI mW hH hI Xscore path<TAB>origPath
            parts = line.split(" ", 9)
            _record_change(state, parts[1], parts[9].split("\t", 1)[0])
        elif line.startswith("u "):
            # u XY sub m1 m2 m3 mW h1 h2 h3 path
            parts = line.split(" ", 10)
            state.conflicted_paths.append(parts[10])
        elif line.startswith("? "):
            state.untracked_files.append(line[2:])

    state.has_unresolved_conflicts = bool(state.conflicted_paths)
    state.is_clean = not (
        state.staged_files
        or state.modified_files
        or state.untracked_files
        or state.conflicted_paths
    )
    return state


def _record_change(state: RepositoryState, xy: str, path: str) -> None:
    if xy[0] != ".":
        state.staged_files.append(path)
    if xy[1] != ".":
        state.modified_files.append(path)


def inspect(
    repository: RepositoryHandle | Path,
    executor: GitExecutor | None = None,
) -> RepositoryState:
    """Compute the current state of one repository.

    Always recomputed; callers must not cache the result across commands.
    Raises FlotillaError(PROCESS) when git cannot read the repository.
    """
    git = executor or GitExecutor()
    repo_path = repository.path if isinstance(repository, RepositoryHandle) else repository

    result = git.run(repo_path, "status", "--porcelain=v2", "--branch").check()
    state = parse_porcelain_v2(result.stdout, RepositoryState(path=repo_path))
    state.in_progress_operation = detect_in_progress(git_dir(repo_path, git))
    if state.current_branch == "(detached)":
        state.current_branch = ""

    logger.debug(
        "%s: branch=%s op=%s conflicts=%d clean=%s",
        repo_path,
        state.current_branch or "(detached)",
        state.in_progress_operation.value,
        len(state.conflicted_paths),
        state.is_clean,
    )
    return state
