"""Pre-flight gate for mutating repository actions.

:func:`authorize` is pure: it reads a :class:`RepositoryState` and returns a
:class:`Decision`. Executing a recovery is the caller's job, via
:func:`recovery_argv`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from .models import InProgressOperation, RepositoryState


class RepoAction(StrEnum):
    STATUS = "status"
    FETCH = "fetch"
    PULL = "pull"
    PUSH = "push"
    SWITCH = "switch"
    RESET = "reset"
    RECOVER = "recover"

    @property
    def is_mutating(self) -> bool:
        return self not in (RepoAction.STATUS, RepoAction.FETCH)


class Verdict(StrEnum):
    PROCEED = "proceed"
    SKIP = "skip"
    RECOVER = "recover"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    reason: str = ""
    # Operation to abort when verdict is RECOVER.
    recovery: InProgressOperation = InProgressOperation.NONE
    # With auto-recovery, the action to run once the abort succeeds.
    then: RepoAction | None = None

    @property
    def proceed(self) -> bool:
        return self.verdict == Verdict.PROCEED

    @property
    def skipped(self) -> bool:
        return self.verdict == Verdict.SKIP

    @property
    def recover(self) -> bool:
        return self.verdict == Verdict.RECOVER


_RECOVERY_ARGV = {
    InProgressOperation.MERGE: ("merge", "--abort"),
    InProgressOperation.REBASE: ("rebase", "--abort"),
    InProgressOperation.CHERRY_PICK: ("cherry-pick", "--abort"),
}


def recovery_argv(operation: InProgressOperation) -> tuple[str, ...]:
    """git arguments that abort ``operation``."""
    try:
        return _RECOVERY_ARGV[operation]
    except KeyError:
        raise ValueError(f"no recovery command for {operation.value!r}") from None


def _operation_label(operation: InProgressOperation) -> str:
    return operation.value.replace("_", "-")


def _conflict_reason(state: RepositoryState) -> str:
    count = len(state.conflicted_paths)
    noun = "file" if count == 1 else "files"
    return f"{count} conflicting {noun} - resolve manually"


def authorize(
    state: RepositoryState,
    action: RepoAction,
    *,
    auto_recover: bool = False,
) -> Decision:
    """Decide whether ``action`` may run against a repository in ``state``.

    Rules are evaluated in order and the first match wins:

    1. an interrupted, conflicted operation with ``recover`` requested -> recover
    2. any interrupted operation with another mutating action -> skip, naming
       the operation (or recover-then-act when ``auto_recover`` is set and the
       operation is conflicted)
    3. unresolved conflicts with another mutating action -> skip
    4. ``push`` with a dirty working tree -> skip
    5. otherwise proceed

    An uncontested ``recover`` on an interrupted operation also proceeds to
    recovery; with nothing interrupted there is nothing to recover.
    """
    if not action.is_mutating:
        return Decision(Verdict.PROCEED)

    operation = state.in_progress_operation
    interrupted = operation != InProgressOperation.NONE

    if action == RepoAction.RECOVER:
        if interrupted:
            label = _operation_label(operation)
            return Decision(Verdict.RECOVER, f"aborting interrupted {label}", recovery=operation)
        return Decision(Verdict.SKIP, "no interrupted operation to recover")

    if interrupted:
        label = _operation_label(operation)
        if auto_recover and state.has_unresolved_conflicts:
            return Decision(
                Verdict.RECOVER,
                f"aborting conflicted {label} before {action.value}",
                recovery=operation,
                then=action,
            )
        return Decision(Verdict.SKIP, f"{label} in progress - run recovery")

    if state.has_unresolved_conflicts:
        return Decision(Verdict.SKIP, _conflict_reason(state))

    if action == RepoAction.PUSH and state.is_dirty:
        return Decision(Verdict.SKIP, "working tree has uncommitted changes")

    return Decision(Verdict.PROCEED)
