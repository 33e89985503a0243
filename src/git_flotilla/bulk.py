"""Bulk operations: one command applied across every scanned repository."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path

from .errors import FlotillaError
from .gitcmd import GitExecutor, validate_ref
from .models import (
    BulkOperationOptions,
    BulkOperationResult,
    BulkSummary,
    InProgressOperation,
    RepositoryHandle,
    RepositoryState,
)
from .pool import ProgressCallback, run_bulk
from .safety import RepoAction, authorize, recovery_argv
from .scanner import scan_with_options
from .state import inspect

logger = logging.getLogger(__name__)


class PullMode(StrEnum):
    """How ``pull`` integrates upstream changes."""

    MERGE = "merge"
    REBASE = "rebase"
    FF_ONLY = "ff-only"

    @property
    def argv(self) -> tuple[str, ...]:
        match self:
            case PullMode.MERGE:
                return ("pull", "--no-rebase", "--no-edit")
            case PullMode.REBASE:
                return ("pull", "--rebase")
            case PullMode.FF_ONLY:
                return ("pull", "--ff-only")


class FleetManager:
    """Run gated git operations over the repositories below one root."""

    def __init__(
        self,
        root_path: Path,
        options: BulkOperationOptions | None = None,
        *,
        executor: GitExecutor | None = None,
        fetch_timeout: float | None = None,
        auto_recover: bool = False,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ):
        self.root_path = root_path.expanduser().resolve()
        self.options = options or BulkOperationOptions()
        self.git = executor or GitExecutor()
        self.fetch_timeout = fetch_timeout
        self.auto_recover = auto_recover
        self.cancel_event = cancel_event
        self.progress = progress
        self._repositories: list[RepositoryHandle] | None = None

    def discover_repositories(self, refresh: bool = False) -> list[RepositoryHandle]:
        """Scan once per manager; ``refresh`` forces a new scan."""
        if self._repositories is None or refresh:
            self._repositories = scan_with_options(self.root_path, self.options)
        return self._repositories

    def run_bulk(
        self,
        operation: Callable[[RepositoryHandle], str],
        repositories: list[RepositoryHandle] | None = None,
    ) -> list[BulkOperationResult]:
        """Apply ``operation`` to every discovered repository."""
        repos = self.discover_repositories() if repositories is None else repositories
        return run_bulk(
            repos,
            operation,
            self.options.parallelism,
            cancel_event=self.cancel_event,
            progress=self.progress,
        )

    @staticmethod
    def summarize(results: list[BulkOperationResult]) -> BulkSummary:
        return BulkSummary.from_results(results)

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    def _gated(
        self,
        repo: RepositoryHandle,
        action: RepoAction,
        body: Callable[[RepositoryState], str],
    ) -> str:
        """Inspect, authorize, optionally recover, then run ``body``."""
        state = inspect(repo, self.git)
        decision = authorize(state, action, auto_recover=self.auto_recover)

        if decision.skipped:
            raise FlotillaError.blocked(decision.reason, path=repo.path)

        if decision.recover:
            label = decision.recovery.value.replace("_", "-")
            if self.options.dry_run:
                suffix = f", then {decision.then.value}" if decision.then else ""
                return f"would abort {label}{suffix}"
            self._abort(repo, decision.recovery)
            if decision.then is None:
                return f"aborted {label}"
            state = inspect(repo, self.git)
            follow_up = authorize(state, decision.then)
            if not follow_up.proceed:
                raise FlotillaError.blocked(
                    f"aborted {label}; {follow_up.reason}", path=repo.path
                )
            return f"aborted {label}; {body(state)}"

        return body(state)

    def _abort(self, repo: RepositoryHandle, operation: InProgressOperation) -> None:
        result = self.git.run(repo.path, *recovery_argv(operation))
        if not result.ok:
            raise FlotillaError.process(
                f"recovery failed: {result.stderr.strip() or result.stdout.strip()}",
                stderr=result.stderr,
                path=repo.path,
            )
        logger.info("%s: aborted %s", repo.relative_path, operation.value)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def status(self) -> list[BulkOperationResult]:
        return self.run_bulk(lambda repo: inspect(repo, self.git).describe())

    def states(self) -> list[tuple[RepositoryHandle, RepositoryState | None, str]]:
        """Inspect every repository, returning ``(handle, state, error)`` triples."""
        repos = self.discover_repositories()
        by_path: dict[Path, RepositoryState] = {}
        lock = threading.Lock()

        def operation(repo: RepositoryHandle) -> str:
            state = inspect(repo, self.git)
            with lock:
                by_path[repo.path] = state
            return state.describe()

        results = self.run_bulk(operation, repos)
        return [
            (
                result.repository,
                by_path.get(result.repository.path),
                "" if result.success else result.message,
            )
            for result in results
        ]

    def fetch(self) -> list[BulkOperationResult]:
        def operation(repo: RepositoryHandle) -> str:
            self.git.run(repo.path, "fetch", "--all", "--prune", timeout=self.fetch_timeout).check()
            return "fetched"

        return self.run_bulk(operation)

    def pull(self, mode: PullMode = PullMode.MERGE) -> list[BulkOperationResult]:
        def operation(repo: RepositoryHandle) -> str:
            return self._gated(repo, RepoAction.PULL, lambda state: self._pull(repo, state, mode))

        return self.run_bulk(operation)

    def _pull(self, repo: RepositoryHandle, state: RepositoryState, mode: PullMode) -> str:
        if state.is_detached:
            raise FlotillaError.blocked("detached HEAD", path=repo.path)
        if not state.has_upstream:
            raise FlotillaError.blocked("no upstream configured", path=repo.path)
        if self.options.dry_run:
            return f"would pull ({mode.value}) from {state.upstream}"

        before = state.head_commit
        result = self.git.run(repo.path, *mode.argv, timeout=self.fetch_timeout)
        if not result.ok:
            after_state = inspect(repo, self.git)
            if after_state.has_unresolved_conflicts:
                count = len(after_state.conflicted_paths)
                if after_state.in_progress_operation == InProgressOperation.REBASE:
                    self._abort(repo, InProgressOperation.REBASE)
                    raise FlotillaError.process(
                        f"pull produced {count} conflicting file(s); rebase aborted",
                        stderr=result.stderr,
                        path=repo.path,
                    )
                raise FlotillaError.process(
                    f"{count} conflicting file(s) - resolve manually or run recovery",
                    stderr=result.stderr,
                    path=repo.path,
                )
            result.check()

        after = self.git.output(repo.path, "rev-parse", "HEAD")
        if after == before:
            return "already up to date"
        return f"updated {before[:7]}..{after[:7]}" if before else "updated"

    def push(self) -> list[BulkOperationResult]:
        def body(repo: RepositoryHandle, state: RepositoryState) -> str:
            if not state.has_upstream:
                raise FlotillaError.blocked("no upstream configured", path=repo.path)
            if state.ahead_count == 0:
                raise FlotillaError.blocked("nothing to push", path=repo.path)
            if self.options.dry_run:
                return f"would push {state.ahead_count} commit(s)"
            self.git.run(repo.path, "push", timeout=self.fetch_timeout).check()
            return f"pushed {state.ahead_count} commit(s)"

        def operation(repo: RepositoryHandle) -> str:
            return self._gated(repo, RepoAction.PUSH, lambda state: body(repo, state))

        return self.run_bulk(operation)

    def switch(self, branch: str, create: bool = False) -> list[BulkOperationResult]:
        """Switch every repository to ``branch``. Raises ValueError for a bad name."""
        validate_ref(branch)

        def body(repo: RepositoryHandle, state: RepositoryState) -> str:
            if state.current_branch == branch:
                return f"already on {branch}"
            if state.is_dirty:
                raise FlotillaError.blocked("working tree has uncommitted changes", path=repo.path)
            exists = self.git.run(
                repo.path, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"
            ).ok
            if self.options.dry_run:
                return f"would switch to {branch}"
            if create and not exists:
                self.git.run(repo.path, "switch", "-c", branch).check()
                return f"created and switched to {branch}"
            self.git.run(repo.path, "switch", branch).check()
            return f"switched to {branch}"

        def operation(repo: RepositoryHandle) -> str:
            state = inspect(repo, self.git)
            if state.current_branch == branch and not state.is_interrupted:
                return f"already on {branch}"
            return self._gated(repo, RepoAction.SWITCH, lambda s: body(repo, s))

        return self.run_bulk(operation)

    def recover(self) -> list[BulkOperationResult]:
        def operation(repo: RepositoryHandle) -> str:
            return self._gated(repo, RepoAction.RECOVER, lambda state: "nothing to recover")

        return self.run_bulk(operation)
