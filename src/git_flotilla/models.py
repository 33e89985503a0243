"""Domain models for fleet operations.

Everything here is plain data: the CLI layer renders it, the core never
formats it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from pathlib import Path

from .errors import FlotillaError

# =============================================================================
# Scanning
# =============================================================================


@dataclass(frozen=True)
class RepositoryHandle:
    """A repository discovered by one scan. Never persisted."""

    path: Path
    relative_path: str
    is_repository_root: bool = True
    is_submodule: bool = False
    depth: int = 0

    @property
    def name(self) -> str:
        return self.path.name

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "relative_path": self.relative_path,
            "name": self.name,
            "is_repository_root": self.is_repository_root,
            "is_submodule": self.is_submodule,
            "depth": self.depth,
        }

    @classmethod
    def for_path(cls, path: Path, root: Path | None = None) -> RepositoryHandle:
        """Build a handle for a single known repository path."""
        resolved = path.resolve()
        base = (root or resolved).resolve()
        try:
            relative = resolved.relative_to(base).as_posix()
        except ValueError:
            relative = str(resolved)
        return cls(
            path=resolved,
            relative_path=relative or ".",
            is_submodule=(resolved / ".git").is_file(),
        )


# =============================================================================
# Repository state
# =============================================================================


class InProgressOperation(StrEnum):
    """Interrupted history operation, if any."""

    NONE = "none"
    MERGE = "merge"
    REBASE = "rebase"
    CHERRY_PICK = "cherry_pick"


@dataclass
class RepositoryState:
    """Point-in-time state of one repository. Recomputed on every command."""

    path: Path
    current_branch: str = ""
    upstream: str = ""
    is_clean: bool = True
    staged_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    untracked_files: list[str] = field(default_factory=list)
    ahead_count: int = 0
    behind_count: int = 0
    in_progress_operation: InProgressOperation = InProgressOperation.NONE
    has_unresolved_conflicts: bool = False
    conflicted_paths: list[str] = field(default_factory=list)
    head_commit: str = ""

    @property
    def has_upstream(self) -> bool:
        return bool(self.upstream)

    @property
    def is_detached(self) -> bool:
        return self.current_branch in ("", "(detached)")

    @property
    def is_dirty(self) -> bool:
        return not self.is_clean

    @property
    def is_interrupted(self) -> bool:
        return self.in_progress_operation != InProgressOperation.NONE

    def describe(self) -> str:
        """Short human summary used as a status message."""
        if self.is_interrupted:
            text = f"{self.in_progress_operation.value.replace('_', '-')} in progress"
            if self.has_unresolved_conflicts:
                text += f", {len(self.conflicted_paths)} conflicting file(s)"
            return text
        if self.has_unresolved_conflicts:
            return f"{len(self.conflicted_paths)} conflicting file(s)"
        parts = []
        if self.staged_files:
            parts.append(f"{len(self.staged_files)} staged")
        if self.modified_files:
            parts.append(f"{len(self.modified_files)} modified")
        if self.untracked_files:
            parts.append(f"{len(self.untracked_files)} untracked")
        if self.ahead_count:
            parts.append(f"{self.ahead_count} ahead")
        if self.behind_count:
            parts.append(f"{self.behind_count} behind")
        if not self.has_upstream and not self.is_detached:
            parts.append("no upstream")
        return ", ".join(parts) if parts else "clean"

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "current_branch": self.current_branch,
            "upstream": self.upstream,
            "is_clean": self.is_clean,
            "staged_files": self.staged_files,
            "modified_files": self.modified_files,
            "untracked_files": self.untracked_files,
            "ahead_count": self.ahead_count,
            "behind_count": self.behind_count,
            "in_progress_operation": self.in_progress_operation.value,
            "has_unresolved_conflicts": self.has_unresolved_conflicts,
            "conflicted_paths": self.conflicted_paths,
        }


# =============================================================================
# Bulk operations
# =============================================================================


@dataclass(frozen=True)
class BulkOperationOptions:
    """Options for one bulk invocation, mapped directly from CLI flags."""

    scan_depth: int = 1
    parallelism: int = 4
    include_pattern: str = ""
    exclude_pattern: str = ""
    dry_run: bool = False
    recursive_submodules: bool = False

    def __post_init__(self):
        if self.scan_depth < 0:
            raise FlotillaError.scan(f"scan depth must be >= 0, got {self.scan_depth}")
        if self.parallelism < 1:
            raise FlotillaError.scan(f"parallelism must be >= 1, got {self.parallelism}")


class Outcome(StrEnum):
    """Per-repository outcome of a bulk operation."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class BulkOperationResult:
    """Exactly one per scanned repository per invocation."""

    repository: RepositoryHandle
    outcome: Outcome
    message: str = ""
    duration_ms: int = 0
    error: Exception | None = None

    @property
    def path(self) -> Path:
        return self.repository.path

    @property
    def name(self) -> str:
        return self.repository.name

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "path": str(self.repository.path),
            "relative_path": self.repository.relative_path,
            "name": self.repository.name,
            "outcome": self.outcome.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "error": _error_dict(self.error),
        }


@dataclass
class BulkSummary:
    """Counts by outcome; always reported alongside the detail list."""

    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_results(cls, results: Iterable[BulkOperationResult]) -> BulkSummary:
        summary = cls()
        for result in results:
            summary.total += 1
            match result.outcome:
                case Outcome.SUCCEEDED:
                    summary.succeeded += 1
                case Outcome.SKIPPED:
                    summary.skipped += 1
                case Outcome.FAILED:
                    summary.failed += 1
        return summary


# =============================================================================
# Synchronization
# =============================================================================


@dataclass(frozen=True)
class SyncManifestEntry:
    """One desired repository. Read-only once loaded."""

    name: str
    source_url: str
    local_path: Path
    target_branch: str = "main"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "source_url": self.source_url,
            "local_path": str(self.local_path),
            "target_branch": self.target_branch,
        }


class SyncActionKind(StrEnum):
    CLONE = "clone"
    UPDATE = "update"
    UP_TO_DATE = "up_to_date"
    ORPHAN = "orphan"


@dataclass(frozen=True)
class SyncAction:
    """A planned action. Produced by the planner, never mutated."""

    repository: SyncManifestEntry
    kind: SyncActionKind
    reason: str = ""

    @property
    def path(self) -> Path:
        return self.repository.local_path

    def to_dict(self) -> dict:
        return {
            "repository": self.repository.to_dict(),
            "kind": self.kind.value,
            "reason": self.reason,
        }


class SyncStrategy(StrEnum):
    """How an existing repository is reconciled with its remote."""

    RESET = "reset"
    PULL = "pull"
    FETCH_ONLY = "fetch"

    @classmethod
    def parse(cls, value: str | None) -> SyncStrategy:
        """Accept user spellings ("hard" for reset, "fetch-only" for fetch)."""
        if not value:
            return cls.RESET
        normalized = value.strip().lower()
        aliases = {"hard": "reset", "fetch-only": "fetch", "fetch_only": "fetch", "merge": "pull"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise FlotillaError.manifest(f"unknown sync strategy {value!r}") from None


@dataclass
class SyncOutcome:
    """Result of applying one SyncAction."""

    repository: SyncManifestEntry
    action_applied: SyncActionKind
    strategy_used: SyncStrategy
    retry_count: int = 0
    succeeded: bool = False
    skipped: bool = False
    message: str = ""
    error: Exception | None = None
    duration_ms: int = 0

    @property
    def path(self) -> Path:
        return self.repository.local_path

    @property
    def name(self) -> str:
        return self.repository.name

    @property
    def outcome(self) -> Outcome:
        if self.skipped:
            return Outcome.SKIPPED
        return Outcome.SUCCEEDED if self.succeeded else Outcome.FAILED

    def to_dict(self) -> dict:
        return {
            "name": self.repository.name,
            "path": str(self.repository.local_path),
            "action_applied": self.action_applied.value,
            "strategy_used": self.strategy_used.value,
            "retry_count": self.retry_count,
            "succeeded": self.succeeded,
            "outcome": self.outcome.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "error": _error_dict(self.error),
        }


@dataclass
class SyncSummary:
    """Counts of sync outcomes."""

    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cloned: int = 0
    updated: int = 0
    up_to_date: int = 0
    orphans: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[SyncOutcome]) -> SyncSummary:
        summary = cls()
        for outcome in outcomes:
            summary.total += 1
            match outcome.outcome:
                case Outcome.SUCCEEDED:
                    summary.succeeded += 1
                case Outcome.SKIPPED:
                    summary.skipped += 1
                case Outcome.FAILED:
                    summary.failed += 1
            if not outcome.succeeded:
                continue
            match outcome.action_applied:
                case SyncActionKind.CLONE:
                    summary.cloned += 1
                case SyncActionKind.UPDATE:
                    summary.updated += 1
                case SyncActionKind.UP_TO_DATE:
                    summary.up_to_date += 1
                case SyncActionKind.ORPHAN:
                    summary.orphans += 1
        return summary


# =============================================================================
# Health diagnostics
# =============================================================================


class FetchStatus(StrEnum):
    OK = "ok"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    AUTH_FAILED = "auth_failed"
    UNREACHABLE = "unreachable"


class DivergenceKind(StrEnum):
    UP_TO_DATE = "up_to_date"
    AHEAD = "ahead"
    BEHIND = "behind"
    DIVERGED = "diverged"
    CONFLICT = "conflict"
    NO_UPSTREAM = "no_upstream"


@dataclass(frozen=True)
class Divergence:
    """Ahead/behind relationship with the upstream branch."""

    kind: DivergenceKind
    ahead: int = 0
    behind: int = 0

    def __str__(self) -> str:
        match self.kind:
            case DivergenceKind.AHEAD:
                return f"ahead({self.ahead})"
            case DivergenceKind.BEHIND:
                return f"behind({self.behind})"
            case DivergenceKind.DIVERGED:
                return f"diverged({self.ahead},{self.behind})"
            case _:
                return self.kind.value

    @classmethod
    def classify(
        cls,
        ahead: int,
        behind: int,
        *,
        has_upstream: bool = True,
        conflicted: bool = False,
    ) -> Divergence:
        if conflicted:
            return cls(DivergenceKind.CONFLICT, ahead, behind)
        if not has_upstream:
            return cls(DivergenceKind.NO_UPSTREAM)
        if ahead and behind:
            return cls(DivergenceKind.DIVERGED, ahead, behind)
        if ahead:
            return cls(DivergenceKind.AHEAD, ahead, 0)
        if behind:
            return cls(DivergenceKind.BEHIND, 0, behind)
        return cls(DivergenceKind.UP_TO_DATE)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNREACHABLE = "unreachable"


@dataclass
class HealthRecord:
    """Diagnostic result for one repository."""

    repository: RepositoryHandle
    branch: str
    fetch_status: FetchStatus
    divergence: Divergence
    working_tree_dirty: bool
    recommendation: str = ""
    health: HealthStatus = HealthStatus.HEALTHY
    error: Exception | None = None
    duration_ms: int = 0

    @property
    def path(self) -> Path:
        return self.repository.path

    @property
    def name(self) -> str:
        return self.repository.name

    def to_dict(self) -> dict:
        return {
            "path": str(self.repository.path),
            "relative_path": self.repository.relative_path,
            "name": self.repository.name,
            "branch": self.branch,
            "fetch_status": self.fetch_status.value,
            "divergence": self.divergence.kind.value,
            "ahead": self.divergence.ahead,
            "behind": self.divergence.behind,
            "working_tree_dirty": self.working_tree_dirty,
            "health": self.health.value,
            "recommendation": self.recommendation,
            "duration_ms": self.duration_ms,
            "error": _error_dict(self.error),
        }


@dataclass
class HealthSummary:
    total: int = 0
    healthy: int = 0
    warning: int = 0
    error: int = 0
    unreachable: int = 0
    fetch_failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_records(cls, records: Iterable[HealthRecord]) -> HealthSummary:
        summary = cls()
        for record in records:
            summary.total += 1
            match record.health:
                case HealthStatus.HEALTHY:
                    summary.healthy += 1
                case HealthStatus.WARNING:
                    summary.warning += 1
                case HealthStatus.ERROR:
                    summary.error += 1
                case HealthStatus.UNREACHABLE:
                    summary.unreachable += 1
            if record.fetch_status not in (FetchStatus.OK, FetchStatus.SKIPPED):
                summary.fetch_failed += 1
        return summary


# =============================================================================
# Conflict detection
# =============================================================================


class ConflictType(StrEnum):
    CONTENT = "content"
    DELETE = "delete"
    RENAME = "rename"
    BINARY = "binary"

    @property
    def weight(self) -> int:
        return CONFLICT_WEIGHTS[self]


CONFLICT_WEIGHTS = {
    ConflictType.CONTENT: 1,
    ConflictType.RENAME: 2,
    ConflictType.DELETE: 3,
    ConflictType.BINARY: 4,
}


class Difficulty(StrEnum):
    TRIVIAL = "trivial"
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

    @classmethod
    def from_weight(cls, total_weight: int) -> Difficulty:
        if total_weight <= 0:
            return cls.TRIVIAL
        if total_weight <= 2:
            return cls.EASY
        if total_weight <= 6:
            return cls.MEDIUM
        return cls.HARD


@dataclass(frozen=True)
class ConflictEntry:
    path: str
    type: ConflictType
    difficulty_weight: int
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "type": self.type.value,
            "difficulty_weight": self.difficulty_weight,
            "description": self.description,
        }


@dataclass
class ConflictReport:
    """Read-only three-way comparison between two refs."""

    source_ref: str
    target_ref: str
    entries: list[ConflictEntry] = field(default_factory=list)
    merge_base: str = ""
    can_fast_forward: bool = False

    @property
    def total_weight(self) -> int:
        return sum(entry.difficulty_weight for entry in self.entries)

    @property
    def overall_difficulty(self) -> Difficulty:
        return Difficulty.from_weight(self.total_weight)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.entries)

    def to_dict(self) -> dict:
        return {
            "source_ref": self.source_ref,
            "target_ref": self.target_ref,
            "merge_base": self.merge_base,
            "can_fast_forward": self.can_fast_forward,
            "entries": [entry.to_dict() for entry in self.entries],
            "total_conflicts": len(self.entries),
            "overall_difficulty": self.overall_difficulty.value,
        }


def _error_dict(error: Exception | None) -> dict | None:
    if error is None:
        return None
    if isinstance(error, FlotillaError):
        return error.to_dict()
    return {"kind": type(error).__name__, "message": str(error)}
