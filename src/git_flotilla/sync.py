"""Applying a sync plan: clone missing repositories, update existing ones."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from .errors import FlotillaError
from .gitcmd import GitExecutor, validate_path_argument, validate_ref, validate_url
from .models import (
    InProgressOperation,
    SyncAction,
    SyncActionKind,
    SyncOutcome,
    SyncStrategy,
    SyncSummary,
)
from .pool import CANCELLED_REASON, map_bounded
from .retry import RetryConfig, RetryExhausted, call_with_retry
from .safety import RepoAction, authorize, recovery_argv
from .state import inspect

logger = logging.getLogger(__name__)

ORPHAN_MESSAGE = "not in manifest, left in place"

_GATE_ACTIONS = {
    SyncStrategy.RESET: RepoAction.RESET,
    SyncStrategy.PULL: RepoAction.PULL,
    SyncStrategy.FETCH_ONLY: RepoAction.FETCH,
}


class _Skip(Exception):
    """Terminal, non-failure stop for one action."""


class SyncExecutor:
    """Apply planned SyncActions with bounded parallelism and network retries."""

    def __init__(
        self,
        executor: GitExecutor | None = None,
        *,
        parallelism: int = 4,
        retry: RetryConfig | None = None,
        fetch_timeout: float | None = None,
        clone_timeout: float | None = None,
        auto_recover: bool = False,
        cancel_event: threading.Event | None = None,
        progress: Callable[[SyncOutcome], None] | None = None,
    ):
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")
        self.git = executor or GitExecutor()
        self.parallelism = parallelism
        self.retry = retry or RetryConfig()
        self.fetch_timeout = fetch_timeout
        self.clone_timeout = clone_timeout
        self.auto_recover = auto_recover
        self.cancel_event = cancel_event
        self.progress = progress

    def apply(
        self,
        plan: Sequence[SyncAction],
        strategy: SyncStrategy = SyncStrategy.RESET,
        dry_run: bool = False,
        max_retries: int | None = None,
    ) -> list[SyncOutcome]:
        """Apply every action; one outcome per action, in plan order.

        ``dry_run`` performs the same reads and safety checks but never
        fetches, clones or changes a working tree.
        """
        retry = self.retry
        if max_retries is not None:
            retry = RetryConfig(
                max_retries=max_retries,
                base_delay=self.retry.base_delay,
                multiplier=self.retry.multiplier,
                jitter=self.retry.jitter,
                jitter_ratio=self.retry.jitter_ratio,
                sleep=self.retry.sleep,
            )

        order = {id(action): index for index, action in enumerate(plan)}
        outcomes = map_bounded(
            list(plan),
            lambda action: (action, self._apply_one(action, strategy, dry_run, retry)),
            self.parallelism,
            cancel_event=self.cancel_event,
            on_cancel=lambda action: (
                action,
                SyncOutcome(
                    repository=action.repository,
                    action_applied=action.kind,
                    strategy_used=strategy,
                    skipped=True,
                    message=CANCELLED_REASON,
                ),
            ),
            progress=(lambda pair: self.progress(pair[1])) if self.progress else None,
        )
        outcomes.sort(key=lambda pair: order[id(pair[0])])
        return [outcome for _, outcome in outcomes]

    @staticmethod
    def summarize(outcomes: list[SyncOutcome]) -> SyncSummary:
        return SyncSummary.from_outcomes(outcomes)

    # -------------------------------------------------------------------------
    # Per-action
    # -------------------------------------------------------------------------

    def _apply_one(
        self,
        action: SyncAction,
        strategy: SyncStrategy,
        dry_run: bool,
        retry: RetryConfig,
    ) -> SyncOutcome:
        start = time.monotonic()
        outcome = SyncOutcome(
            repository=action.repository,
            action_applied=action.kind,
            strategy_used=strategy,
        )
        try:
            match action.kind:
                case SyncActionKind.ORPHAN:
                    outcome.message = ORPHAN_MESSAGE
                case SyncActionKind.CLONE:
                    outcome.message = self._clone(action, dry_run, retry, outcome)
                case SyncActionKind.UPDATE | SyncActionKind.UP_TO_DATE:
                    outcome.message = self._update(action, strategy, dry_run, retry, outcome)
            outcome.succeeded = True
        except _Skip as skip:
            outcome.skipped = True
            outcome.message = str(skip)
            logger.info("%s: skipped: %s", action.repository.name, skip)
        except RetryExhausted as exhausted:
            outcome.retry_count += exhausted.retries
            outcome.error = exhausted.error
            outcome.message = _describe(exhausted.error)
            if exhausted.retries:
                outcome.message += f" (after {exhausted.retries} retries)"
            logger.warning("%s: %s", action.repository.name, outcome.message)
        except Exception as e:
            outcome.error = e
            outcome.message = _describe(e)
            logger.warning("%s: %s", action.repository.name, outcome.message)
        outcome.duration_ms = int((time.monotonic() - start) * 1000)
        return outcome

    def _with_retry(
        self,
        func: Callable[[], object],
        retry: RetryConfig,
        outcome: SyncOutcome,
        label: str,
    ) -> None:
        _, retries = call_with_retry(func, retry, label=label)
        outcome.retry_count += retries

    def _clone(
        self,
        action: SyncAction,
        dry_run: bool,
        retry: RetryConfig,
        outcome: SyncOutcome,
    ) -> str:
        entry = action.repository
        url = validate_url(entry.source_url)
        target = validate_path_argument(entry.local_path)
        argv = ["clone"]
        if entry.target_branch:
            argv += ["--branch", validate_ref(entry.target_branch)]
        argv += ["--", url, target]

        if dry_run:
            return f"would clone {url} into {entry.local_path}"

        entry.local_path.parent.mkdir(parents=True, exist_ok=True)
        self._with_retry(
            lambda: self.git.execute(None, argv, timeout=self.clone_timeout).check(),
            retry,
            outcome,
            f"clone {entry.name}",
        )
        return f"cloned {entry.target_branch or 'default branch'}"

    def _update(
        self,
        action: SyncAction,
        strategy: SyncStrategy,
        dry_run: bool,
        retry: RetryConfig,
        outcome: SyncOutcome,
    ) -> str:
        entry = action.repository
        path = entry.local_path
        branch = validate_ref(entry.target_branch or "main")
        remote_ref = f"refs/remotes/origin/{branch}"

        state = inspect(path, self.git)
        decision = authorize(state, _GATE_ACTIONS[strategy], auto_recover=self.auto_recover)
        if decision.skipped:
            raise _Skip(decision.reason)
        if decision.recover:
            if dry_run:
                return f"would abort {decision.recovery.value} and {strategy.value}"
            self._abort(path, decision.recovery)
            state = inspect(path, self.git)

        mutating = strategy != SyncStrategy.FETCH_ONLY
        if mutating and state.is_dirty:
            raise _Skip("working tree has uncommitted changes")

        if dry_run:
            remote_head = self._rev(path, remote_ref)
            if remote_head and remote_head == state.head_commit and state.current_branch == branch:
                outcome.action_applied = SyncActionKind.UP_TO_DATE
                return "already up to date (as of last fetch)"
            return f"would {strategy.value} from origin/{branch}"

        self._with_retry(
            lambda: self.git.run(
                path, "fetch", "origin", "--prune", timeout=self.fetch_timeout
            ).check(),
            retry,
            outcome,
            f"fetch {entry.name}",
        )
        remote_head = self._rev(path, remote_ref)
        if not remote_head:
            raise FlotillaError.process(f"origin/{branch} not found after fetch", path=path)

        if not mutating:
            if state.head_commit == remote_head and state.current_branch == branch:
                outcome.action_applied = SyncActionKind.UP_TO_DATE
                return "already up to date"
            return "fetched origin"

        switched = ""
        if state.current_branch != branch:
            logger.debug("%s: on %r, switching to %s", entry.name, state.current_branch, branch)
            self.git.run(path, "switch", branch).check()
            switched = f"switched to {branch}; "
            state = inspect(path, self.git)

        if state.head_commit == remote_head:
            outcome.action_applied = SyncActionKind.UP_TO_DATE
            return f"{switched}already up to date"

        outcome.action_applied = SyncActionKind.UPDATE
        if strategy == SyncStrategy.RESET:
            self.git.run(path, "reset", "--hard", f"origin/{branch}").check()
            return f"{switched}reset to origin/{branch} ({remote_head[:7]})"

        result = self.git.run(
            path, "pull", "--no-rebase", "--no-edit", "origin", branch, timeout=self.fetch_timeout
        )
        if not result.ok:
            after = inspect(path, self.git)
            if after.in_progress_operation == InProgressOperation.MERGE:
                count = len(after.conflicted_paths)
                self._abort(path, InProgressOperation.MERGE)
                raise FlotillaError.process(
                    f"pull produced {count} conflicting file(s); merge aborted",
                    stderr=result.stderr,
                    path=path,
                )
            result.check()
        return f"{switched}pulled origin/{branch}"

    def _rev(self, path: Path, ref: str) -> str:
        result = self.git.run(path, "rev-parse", "--verify", "--quiet", ref)
        return result.stdout.strip() if result.ok else ""

    def _abort(self, path: Path, operation: InProgressOperation) -> None:
        result = self.git.run(path, *recovery_argv(operation))
        if not result.ok:
            raise FlotillaError.process(
                f"recovery failed: {result.stderr.strip()}", stderr=result.stderr, path=path
            )


def _describe(error: BaseException) -> str:
    if isinstance(error, FlotillaError):
        return error.message
    return str(error) or type(error).__name__
