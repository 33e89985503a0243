"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from .models import (
    BulkOperationResult,
    BulkSummary,
    ConflictReport,
    Difficulty,
    DivergenceKind,
    FetchStatus,
    HealthRecord,
    HealthStatus,
    HealthSummary,
    Outcome,
    RepositoryHandle,
    RepositoryState,
    SyncAction,
    SyncActionKind,
    SyncOutcome,
    SyncSummary,
)

StateRow = tuple[RepositoryHandle, RepositoryState | None, str]


def compute_unique_display_names(
    items: list[Any],
    name_attr: str = "name",
    path_attr: str = "path",
) -> dict[Path, str]:
    """Map each item's path to a display name that is unique in ``items``.

    Items whose names collide get parent directory components prepended
    until every name differs (``api`` becomes ``team-a/api`` and
    ``team-b/api``).
    """
    by_name: dict[str, list[Path]] = defaultdict(list)
    for item in items:
        by_name[getattr(item, name_attr)].append(getattr(item, path_attr))

    names: dict[Path, str] = {}
    for name, paths in by_name.items():
        if len(paths) == 1:
            names[paths[0]] = name
            continue
        for path, unique in zip(paths, _shortest_unique_suffixes(paths)):
            names[path] = unique
    return names


def _shortest_unique_suffixes(paths: list[Path]) -> list[str]:
    reversed_parts = [list(reversed(p.parts)) for p in paths]

    def suffix(parts: list[str], depth: int) -> str:
        return "/".join(reversed(parts[: min(depth, len(parts))]))

    result = []
    for i, parts in enumerate(reversed_parts):
        for depth in range(1, len(parts) + 1):
            candidate = suffix(parts, depth)
            clash = any(
                suffix(other, depth) == candidate
                for j, other in enumerate(reversed_parts)
                if j != i
            )
            if not clash:
                result.append(candidate)
                break
        else:
            result.append(str(paths[i]))
    return result


_OUTCOME_ICONS = {
    Outcome.SUCCEEDED: "[green]✓[/]",
    Outcome.SKIPPED: "[yellow]-[/]",
    Outcome.FAILED: "[red]✗[/]",
}

_HEALTH_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.WARNING: "yellow",
    HealthStatus.ERROR: "red",
    HealthStatus.UNREACHABLE: "magenta",
}

_DIFFICULTY_STYLES = {
    Difficulty.TRIVIAL: "green",
    Difficulty.EASY: "green",
    Difficulty.MEDIUM: "yellow",
    Difficulty.HARD: "red",
}


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _json(self, payload: dict) -> None:
        self.console.print(
            json.dumps(payload, indent=2, default=str),
            markup=False,
            highlight=False,
            soft_wrap=True,
        )

    # =========================================================================
    # Repository list
    # =========================================================================

    def print_repo_list(self, repos: list[RepositoryHandle], root_path: Path):
        """Print the scanned repositories."""
        display_names = compute_unique_display_names(repos)
        if self.use_json:
            self._json(
                {
                    "root": str(root_path),
                    "count": len(repos),
                    "repositories": [
                        {**r.to_dict(), "display_name": display_names.get(r.path, r.name)}
                        for r in repos
                    ],
                }
            )
            return

        self.console.print(f"[bold]Found {len(repos)} repositories in {root_path}[/]\n")
        for repo in repos:
            marker = " [dim](submodule)[/]" if repo.is_submodule else ""
            self.console.print(f"  [cyan]{repo.relative_path}[/]{marker}")

    # =========================================================================
    # Status
    # =========================================================================

    def print_status(self, rows: list[StateRow], root_path: Path):
        if self.use_json:
            self._json(
                {
                    "root": str(root_path),
                    "repositories": [
                        {
                            "repository": handle.to_dict(),
                            "state": state.to_dict() if state else None,
                            "error": error or None,
                        }
                        for handle, state, error in rows
                    ],
                }
            )
            return

        table = Table(title=f"Fleet Status: {root_path}")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Branch")
        table.add_column("Sync", justify="center")
        table.add_column("Working Tree", justify="center")

        dirty = interrupted = errors = 0
        for handle, state, error in rows:
            if state is None:
                errors += 1
                table.add_row(handle.relative_path, "", "[red]✗[/]", f"[red]{error[:40]}[/]")
                continue
            if state.is_dirty:
                dirty += 1
            name = handle.relative_path
            if state.is_interrupted:
                interrupted += 1
                name = f"[bold red]⚠ {name}[/]"
            table.add_row(
                name,
                f"[green]{state.current_branch}[/]" if state.current_branch else "[dim]detached[/]",
                self._sync_display(state),
                self._working_tree_display(state),
            )

        self.console.print(table)
        self.console.print()
        parts = [f"[bold]Total:[/] {len(rows)}"]
        if dirty:
            parts.append(f"[yellow]✎ Dirty:[/] {dirty}")
        if interrupted:
            parts.append(f"[bold red]⚠ Interrupted:[/] {interrupted}")
        if errors:
            parts.append(f"[red]✗ Errors:[/] {errors}")
        self.console.print(" | ".join(parts))

    def _sync_display(self, state: RepositoryState) -> str:
        if not state.has_upstream:
            return "[dim]no upstream[/]"
        if state.ahead_count and state.behind_count:
            return f"[red]⬆{state.ahead_count} ⬇{state.behind_count}[/]"
        if state.ahead_count:
            return f"[yellow]⬆ {state.ahead_count}[/]"
        if state.behind_count:
            return f"[blue]⬇ {state.behind_count}[/]"
        return "[green]✓[/]"

    def _working_tree_display(self, state: RepositoryState) -> str:
        if state.is_interrupted:
            conflicts = len(state.conflicted_paths)
            label = state.in_progress_operation.value.replace("_", "-")
            return f"[bold red]{label}[/]" + (f" [red]!{conflicts}[/]" if conflicts else "")
        if state.is_clean:
            return "[green]clean[/]"

        parts = []
        if state.staged_files:
            parts.append(f"[green]+{len(state.staged_files)}[/]")
        if state.modified_files:
            parts.append(f"[yellow]~{len(state.modified_files)}[/]")
        if state.untracked_files:
            parts.append(f"[red]?{len(state.untracked_files)}[/]")
        if state.conflicted_paths:
            parts.append(f"[bold red]!{len(state.conflicted_paths)}[/]")
        return " ".join(parts)

    # =========================================================================
    # Bulk operations
    # =========================================================================

    def print_operation_results(
        self,
        results: list[BulkOperationResult],
        summary: BulkSummary,
        operation: str,
    ):
        """Print per-repository results of a bulk operation."""
        if self.use_json:
            self._json(
                {
                    "operation": operation,
                    "results": [r.to_dict() for r in results],
                    "summary": summary.to_dict(),
                }
            )
            return

        if not results:
            self.console.print(f"[dim]No repositories to {operation}[/]")
            return

        table = Table(title=f"{operation.title()} Results")
        table.add_column("Repository", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Message")
        for result in results:
            message = result.message or ("OK" if result.success else "Failed")
            if result.outcome == Outcome.FAILED:
                message = f"[red]{message[:60]}[/]"
            elif result.outcome == Outcome.SKIPPED:
                message = f"[yellow]{message[:60]}[/]"
            table.add_row(result.repository.relative_path, _OUTCOME_ICONS[result.outcome], message)

        self.console.print(table)
        self.console.print(
            f"\n[bold]Total:[/] {summary.total} | [green]Succeeded:[/] {summary.succeeded}"
            f" | [yellow]Skipped:[/] {summary.skipped} | [red]Failed:[/] {summary.failed}"
        )

    # =========================================================================
    # Sync
    # =========================================================================

    def print_plan(self, actions: list[SyncAction]):
        if self.use_json:
            self._json({"plan": [a.to_dict() for a in actions]})
            return

        entries = [a.repository for a in actions]
        display_names = compute_unique_display_names(entries, path_attr="local_path")
        table = Table(title="Sync Plan")
        table.add_column("Repository", style="cyan")
        table.add_column("Action", justify="center")
        table.add_column("Reason")
        for action in actions:
            table.add_row(
                display_names.get(action.path, action.repository.name),
                _action_display(action.kind),
                action.reason,
            )
        self.console.print(table)

    def print_sync_results(self, outcomes: list[SyncOutcome], summary: SyncSummary):
        if self.use_json:
            self._json(
                {
                    "outcomes": [o.to_dict() for o in outcomes],
                    "summary": summary.to_dict(),
                }
            )
            return

        display_names = compute_unique_display_names(outcomes)
        table = Table(title="Sync Results")
        table.add_column("Repository", style="cyan")
        table.add_column("Action", justify="center")
        table.add_column("Status", justify="center")
        table.add_column("Retries", justify="right")
        table.add_column("Message")
        for outcome in outcomes:
            table.add_row(
                display_names.get(outcome.path, outcome.name),
                _action_display(outcome.action_applied),
                _OUTCOME_ICONS[outcome.outcome],
                str(outcome.retry_count) if outcome.retry_count else "",
                outcome.message[:60],
            )
        self.console.print(table)

        parts = [f"[bold]Total:[/] {summary.total}"]
        if summary.cloned:
            parts.append(f"[cyan]Cloned:[/] {summary.cloned}")
        if summary.updated:
            parts.append(f"[blue]Updated:[/] {summary.updated}")
        if summary.up_to_date:
            parts.append(f"[green]Up to date:[/] {summary.up_to_date}")
        if summary.orphans:
            parts.append(f"[dim]Orphans:[/] {summary.orphans}")
        if summary.skipped:
            parts.append(f"[yellow]Skipped:[/] {summary.skipped}")
        if summary.failed:
            parts.append(f"[red]Failed:[/] {summary.failed}")
        self.console.print("\n" + " | ".join(parts))

    # =========================================================================
    # Health
    # =========================================================================

    def print_health(self, records: list[HealthRecord], summary: HealthSummary):
        if self.use_json:
            self._json(
                {
                    "records": [r.to_dict() for r in records],
                    "summary": summary.to_dict(),
                }
            )
            return

        table = Table(title="Fleet Health")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Branch")
        table.add_column("Fetch", justify="center")
        table.add_column("Divergence", justify="center")
        table.add_column("Health", justify="center")
        table.add_column("Recommendation")
        for record in records:
            style = _HEALTH_STYLES[record.health]
            fetch = record.fetch_status.value
            if record.fetch_status not in (FetchStatus.OK, FetchStatus.SKIPPED):
                fetch = f"[red]{fetch}[/]"
            divergence = str(record.divergence)
            if record.divergence.kind == DivergenceKind.UP_TO_DATE:
                divergence = f"[green]{divergence}[/]"
            if record.working_tree_dirty:
                divergence += " [yellow]✎[/]"
            table.add_row(
                record.repository.relative_path,
                record.branch,
                fetch,
                divergence,
                f"[{style}]{record.health.value}[/]",
                record.recommendation,
            )
        self.console.print(table)
        self.console.print(
            f"\n[bold]Total:[/] {summary.total} | [green]Healthy:[/] {summary.healthy}"
            f" | [yellow]Warning:[/] {summary.warning} | [red]Error:[/] {summary.error}"
            f" | [magenta]Unreachable:[/] {summary.unreachable}"
        )

    # =========================================================================
    # Conflicts
    # =========================================================================

    def print_conflict_report(self, report: ConflictReport, repo_path: Path):
        if self.use_json:
            self._json({"repository": str(repo_path), **report.to_dict()})
            return

        style = _DIFFICULTY_STYLES[report.overall_difficulty]
        self.console.print(
            f"[bold]{report.source_ref}[/] into [bold]{report.target_ref}[/] "
            f"[dim]({repo_path})[/]"
        )
        if report.can_fast_forward:
            self.console.print("[green]Fast-forward possible, no merge needed[/]")
        if not report.has_conflicts:
            self.console.print("[green]✓ No conflicts[/]")
            return

        table = Table(title="Predicted Conflicts")
        table.add_column("Path", style="cyan")
        table.add_column("Type", justify="center")
        table.add_column("Weight", justify="right")
        table.add_column("Detail")
        for entry in report.entries:
            table.add_row(entry.path, entry.type.value, str(entry.difficulty_weight), entry.description)
        self.console.print(table)
        self.console.print(
            f"\n[bold]Conflicts:[/] {len(report.entries)} | [bold]Weight:[/] {report.total_weight}"
            f" | [bold]Difficulty:[/] [{style}]{report.overall_difficulty.value}[/]"
        )


def _action_display(kind: SyncActionKind) -> str:
    match kind:
        case SyncActionKind.CLONE:
            return "[cyan]clone[/]"
        case SyncActionKind.UPDATE:
            return "[blue]update[/]"
        case SyncActionKind.UP_TO_DATE:
            return "[green]up to date[/]"
        case _:
            return "[dim]orphan[/]"
