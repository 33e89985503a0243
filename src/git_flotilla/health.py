"""Fleet health diagnostics: reachability and divergence per repository."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence

from .errors import ErrorKind, FlotillaError, NetworkErrorKind
from .gitcmd import GitExecutor
from .models import (
    Divergence,
    DivergenceKind,
    FetchStatus,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    RepositoryHandle,
    RepositoryState,
)
from .pool import map_bounded
from .retry import RetryConfig, RetryExhausted, call_with_retry
from .state import inspect

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0

_FETCH_STATUS = {
    NetworkErrorKind.TIMEOUT: FetchStatus.TIMEOUT,
    NetworkErrorKind.UNREACHABLE: FetchStatus.UNREACHABLE,
    NetworkErrorKind.AUTH_FAILED: FetchStatus.AUTH_FAILED,
}


def classify_health(
    fetch_status: FetchStatus,
    divergence: Divergence,
    dirty: bool,
) -> HealthStatus:
    if fetch_status in (FetchStatus.TIMEOUT, FetchStatus.UNREACHABLE):
        return HealthStatus.UNREACHABLE
    if fetch_status == FetchStatus.AUTH_FAILED:
        return HealthStatus.ERROR
    if divergence.kind == DivergenceKind.CONFLICT:
        return HealthStatus.ERROR
    if dirty and divergence.behind > 0:
        return HealthStatus.ERROR
    if divergence.kind in (
        DivergenceKind.DIVERGED,
        DivergenceKind.BEHIND,
        DivergenceKind.AHEAD,
        DivergenceKind.NO_UPSTREAM,
    ):
        return HealthStatus.WARNING
    if dirty:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def recommend(
    health: HealthStatus,
    fetch_status: FetchStatus,
    divergence: Divergence,
    state: RepositoryState | None = None,
) -> str:
    """Actionable next step derived only from the classification."""
    modified = len(state.staged_files) + len(state.modified_files) if state else 0
    untracked = len(state.untracked_files) if state else 0
    branch = state.current_branch if state and state.current_branch else "<branch>"

    match health:
        case HealthStatus.UNREACHABLE:
            if fetch_status == FetchStatus.TIMEOUT:
                return "Fetch timed out: check network connectivity and that the remote host is up"
            return "Check network connectivity and verify the remote URL is accessible"
        case HealthStatus.ERROR:
            if fetch_status == FetchStatus.AUTH_FAILED:
                return "Authentication failed: check credentials or SSH keys for the remote"
            if divergence.kind == DivergenceKind.CONFLICT:
                return "Resolve merge conflicts and commit, or abort with: git-flotilla recover"
            if divergence.behind > 0:
                return (
                    f"Commit or stash {modified} modified file(s), then pull "
                    f"{divergence.behind} commit(s) from upstream"
                )
            return "Manual intervention required"
        case HealthStatus.WARNING:
            match divergence.kind:
                case DivergenceKind.BEHIND:
                    return (
                        f"Pull {divergence.behind} commit(s) from upstream (fast-forward): "
                        "git-flotilla pull --mode ff-only"
                    )
                case DivergenceKind.DIVERGED:
                    return (
                        f"Diverged: {divergence.ahead} ahead, {divergence.behind} behind. "
                        "Use 'git pull --rebase' or 'git merge' to reconcile"
                    )
                case DivergenceKind.AHEAD:
                    return f"Push {divergence.ahead} local commit(s) to upstream: git-flotilla push"
                case DivergenceKind.NO_UPSTREAM:
                    return (
                        "No upstream branch configured. Set it with: "
                        f"git branch --set-upstream-to=origin/{branch}"
                    )
            if modified and untracked:
                return (
                    f"Uncommitted changes: {modified} modified, {untracked} untracked file(s). "
                    "Commit or stash before syncing"
                )
            if modified:
                return f"Uncommitted changes: {modified} modified file(s). Commit or stash before syncing"
            return "Uncommitted changes detected. Commit or stash before syncing"
        case _:
            return "No action needed, repository is up to date"


def check_repository(
    repository: RepositoryHandle,
    executor: GitExecutor | None = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    skip_fetch: bool = False,
    retry: RetryConfig | None = None,
) -> HealthRecord:
    """Diagnose one repository. Never raises for per-repository problems."""
    git = executor or GitExecutor()
    start = time.monotonic()

    def elapsed() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        state = inspect(repository, git)
    except FlotillaError as e:
        return HealthRecord(
            repository=repository,
            branch="",
            fetch_status=FetchStatus.SKIPPED,
            divergence=Divergence(DivergenceKind.NO_UPSTREAM),
            working_tree_dirty=False,
            recommendation="Repository could not be read: " + e.message,
            health=HealthStatus.ERROR,
            error=e,
            duration_ms=elapsed(),
        )

    fetch_status = FetchStatus.SKIPPED
    fetch_error: Exception | None = None
    if not skip_fetch:
        fetch_status, fetch_error = _fetch(repository, git, timeout, retry)
        if fetch_status == FetchStatus.OK:
            state = inspect(repository, git)

    divergence = Divergence.classify(
        state.ahead_count,
        state.behind_count,
        has_upstream=state.has_upstream,
        conflicted=state.has_unresolved_conflicts,
    )
    dirty = bool(state.staged_files or state.modified_files or state.conflicted_paths)
    health = classify_health(fetch_status, divergence, dirty)
    record = HealthRecord(
        repository=repository,
        branch=state.current_branch or "(detached)",
        fetch_status=fetch_status,
        divergence=divergence,
        working_tree_dirty=dirty,
        recommendation=recommend(health, fetch_status, divergence, state),
        health=health,
        error=fetch_error,
        duration_ms=elapsed(),
    )
    logger.debug("%s: %s %s", repository.relative_path, health.value, divergence)
    return record


def _fetch(
    repository: RepositoryHandle,
    git: GitExecutor,
    timeout: float,
    retry: RetryConfig | None,
) -> tuple[FetchStatus, Exception | None]:
    def fetch() -> None:
        git.run(repository.path, "fetch", "--all", "--prune", timeout=timeout).check()

    try:
        call_with_retry(fetch, retry or RetryConfig(max_retries=0), label=f"fetch {repository.name}")
    except RetryExhausted as exhausted:
        error = exhausted.error
        logger.warning("%s: fetch failed: %s", repository.relative_path, error)
        if isinstance(error, FlotillaError) and error.kind == ErrorKind.NETWORK and error.network:
            return _FETCH_STATUS[error.network], error
        # Non-network fetch failures count as unreachable.
        return FetchStatus.UNREACHABLE, error if isinstance(error, Exception) else None
    return FetchStatus.OK, None


def diagnose(
    repositories: Sequence[RepositoryHandle],
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    skip_fetch: bool = False,
    *,
    executor: GitExecutor | None = None,
    parallelism: int = 4,
    max_retries: int = 0,
    cancel_event: threading.Event | None = None,
    progress: Callable[[HealthRecord], None] | None = None,
) -> list[HealthRecord]:
    """Diagnose every repository with bounded parallelism, sorted by relative path.

    Each fetch is bounded by ``timeout`` independently; one slow remote does
    not affect the others.
    """
    git = executor or GitExecutor()
    retry = RetryConfig(max_retries=max_retries)
    records = map_bounded(
        list(repositories),
        lambda repo: check_repository(repo, git, timeout, skip_fetch, retry),
        parallelism,
        cancel_event=cancel_event,
        on_cancel=lambda repo: HealthRecord(
            repository=repo,
            branch="",
            fetch_status=FetchStatus.SKIPPED,
            divergence=Divergence(DivergenceKind.NO_UPSTREAM),
            working_tree_dirty=False,
            recommendation="Not checked: cancelled before start",
            health=HealthStatus.WARNING,
        ),
        progress=progress,
    )
    records.sort(key=lambda r: r.repository.relative_path)
    return records


def summarize(records: Sequence[HealthRecord]) -> HealthSummary:
    return HealthSummary.from_records(records)
