"""
git-flotilla command line: bulk git operations, sync, diagnostics and
conflict prediction across every repository below a directory.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import StrEnum
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .bulk import FleetManager, PullMode
from .config import FlotillaConfig, load_config
from .conflict import ConflictDetector
from .errors import FlotillaError
from .forge import ForgeFilters, available_providers, create_provider
from .formatters import OutputFormatter
from .gitcmd import GitExecutor
from .health import diagnose
from .health import summarize as summarize_health
from .manifest import load_manifest
from .models import BulkOperationOptions, BulkOperationResult, SyncStrategy
from .planner import DEFAULT_FLAT_SEPARATOR, ForgeListing, SubgroupLayout
from .planner import plan as plan_sync
from .retry import RetryConfig
from .scanner import scan, scan_with_options
from .sync import SyncExecutor
from .watch import FleetWatcher

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="git-flotilla",
    help="Run git across a whole directory of repositories, safely.",
    no_args_is_help=True,
)

# =============================================================================
# Shared options
# =============================================================================

PATH_ARGUMENT = typer.Argument(None, help="Root path to scan for repositories")
JSON_OPTION = typer.Option(False, "--json", "-j", help="Output as JSON")
DEPTH_OPTION = typer.Option(
    None, "--depth", "-d", min=0, help="Directory levels below the root to scan"
)
PARALLEL_OPTION = typer.Option(
    None, "--parallel", "-p", min=1, help="Repositories processed at the same time"
)
INCLUDE_OPTION = typer.Option(
    None, "--include", help="Only repositories whose relative path matches this regex"
)
EXCLUDE_OPTION = typer.Option(
    None, "--exclude", help="Skip repositories whose relative path matches this regex"
)
SUBMODULES_OPTION = typer.Option(
    False, "--recursive-submodules", help="Also operate on submodules"
)
DRY_RUN_OPTION = typer.Option(
    False, "--dry-run", "-n", help="Report what would happen without changing anything"
)
AUTO_RECOVER_OPTION = typer.Option(
    False,
    "--auto-recover",
    help="Abort an interrupted, conflicted merge/rebase/cherry-pick before the operation",
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-flotilla {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file (default: $GIT_FLOTILLA_CONFIG or ~/.config/git-flotilla/config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every git command"),
):
    """git-flotilla: run git across a whole directory of repositories, safely."""
    _configure_logging(verbose)
    try:
        ctx.obj = load_config(config)
    except FlotillaError as e:
        _print_error(e.message)
        raise typer.Exit(1) from None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def _print_error(message: str) -> None:
    Console(stderr=True).print(f"[red]Error: {escape(message)}[/]")


def _config(ctx: typer.Context) -> FlotillaConfig:
    if isinstance(ctx.obj, FlotillaConfig):
        return ctx.obj
    return load_config()


def _root(path: Path | None) -> Path:
    return (path if path else Path(".")).expanduser().resolve()


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Turn fail-fast errors into a red message and exit code 1."""
    try:
        yield
    except FlotillaError as e:
        _print_error(e.message)
        raise typer.Exit(1) from None
    except ValueError as e:
        _print_error(str(e))
        raise typer.Exit(1) from None


@contextmanager
def _interruptible() -> Iterator[threading.Event]:
    """First Ctrl-C stops new work and lets running git processes finish; the second aborts."""
    event = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield event
        return

    def handler(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        logger.warning("interrupted: waiting for running repositories to finish")
        event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield event
    finally:
        signal.signal(signal.SIGINT, previous)


@contextmanager
def _progress(
    console: Console, enabled: bool, description: str, total: int
) -> Iterator[Callable[[object], None] | None]:
    if not enabled:
        yield None
        return
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=total)
        yield lambda _result: progress.advance(task)


def _options(
    config: FlotillaConfig,
    depth: int | None,
    parallel: int | None,
    include: str | None,
    exclude: str | None,
    submodules: bool,
    dry_run: bool = False,
) -> BulkOperationOptions:
    return config.bulk_options(
        scan_depth=depth,
        parallelism=parallel,
        include_pattern=include,
        exclude_pattern=exclude,
        recursive_submodules=submodules or None,
        dry_run=dry_run,
    )


def _run_fleet_operation(
    ctx: typer.Context,
    name: str,
    path: Path | None,
    json_output: bool,
    options: BulkOperationOptions,
    operation: Callable[[FleetManager], list[BulkOperationResult]],
    auto_recover: bool = False,
) -> None:
    console, formatter = get_console_and_formatter(json_output)
    config = _config(ctx)
    root = _root(path)

    with _handle_errors(), _interruptible() as cancel_event:
        fleet = FleetManager(
            root,
            options,
            executor=GitExecutor(),
            fetch_timeout=config.fetch_timeout,
            auto_recover=auto_recover,
            cancel_event=cancel_event,
        )
        repos = fleet.discover_repositories()
        if not json_output:
            console.print(f"Found [bold]{len(repos)}[/] repositories\n")
        with _progress(console, not json_output, f"{name.title()}...", len(repos)) as advance:
            fleet.progress = advance
            results = operation(fleet)

    summary = FleetManager.summarize(results)
    formatter.print_operation_results(results, summary, name)
    if summary.failed:
        raise typer.Exit(1)


# =============================================================================
# Scan and inspect
# =============================================================================


@app.command("list")
def list_repositories(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    json_output: bool = JSON_OPTION,
    depth: int = DEPTH_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """List the repositories a scan finds, without running git."""
    _, formatter = get_console_and_formatter(json_output)
    root = _root(path)
    with _handle_errors():
        options = _options(_config(ctx), depth, None, include, exclude, recursive_submodules)
        repos = scan_with_options(root, options)
    formatter.print_repo_list(repos, root)


@app.command()
def status(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    json_output: bool = JSON_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Show branch, divergence and working tree state of every repository."""
    console, formatter = get_console_and_formatter(json_output)
    root = _root(path)
    with _handle_errors(), _interruptible() as cancel_event:
        options = _options(_config(ctx), depth, parallel, include, exclude, recursive_submodules)
        fleet = FleetManager(root, options, cancel_event=cancel_event)
        repos = fleet.discover_repositories()
        with _progress(console, not json_output, "Inspecting...", len(repos)) as advance:
            fleet.progress = advance
            rows = fleet.states()

    formatter.print_status(rows, root)
    if any(state is None for _, state, _ in rows):
        raise typer.Exit(1)


# =============================================================================
# Bulk operations
# =============================================================================


@app.command()
def fetch(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    json_output: bool = JSON_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Fetch all remotes of every repository."""
    with _handle_errors():
        options = _options(_config(ctx), depth, parallel, include, exclude, recursive_submodules)
    _run_fleet_operation(ctx, "fetch", path, json_output, options, FleetManager.fetch)


@app.command()
def pull(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    mode: PullMode = typer.Option(PullMode.MERGE, "--mode", "-m", help="How to integrate upstream"),
    json_output: bool = JSON_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    auto_recover: bool = AUTO_RECOVER_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Pull every repository that is safe to pull.

    Repositories with a merge, rebase or cherry-pick in progress or with
    unresolved conflicts are skipped and reported.
    """
    with _handle_errors():
        options = _options(
            _config(ctx), depth, parallel, include, exclude, recursive_submodules, dry_run
        )
    _run_fleet_operation(
        ctx, "pull", path, json_output, options, lambda fleet: fleet.pull(mode), auto_recover
    )


@app.command()
def push(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    json_output: bool = JSON_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Push every repository that has local commits and a clean working tree."""
    with _handle_errors():
        options = _options(
            _config(ctx), depth, parallel, include, exclude, recursive_submodules, dry_run
        )
    _run_fleet_operation(ctx, "push", path, json_output, options, FleetManager.push)


@app.command()
def switch(
    ctx: typer.Context,
    branch: str = typer.Argument(..., help="Branch to switch to"),
    path: Path = PATH_ARGUMENT,
    create: bool = typer.Option(False, "--create", "-c", help="Create the branch where missing"),
    json_output: bool = JSON_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Switch every repository with a clean working tree to BRANCH."""
    with _handle_errors():
        options = _options(
            _config(ctx), depth, parallel, include, exclude, recursive_submodules, dry_run
        )
    _run_fleet_operation(
        ctx, "switch", path, json_output, options, lambda fleet: fleet.switch(branch, create)
    )


@app.command()
def recover(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    json_output: bool = JSON_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Abort interrupted merges, rebases and cherry-picks."""
    with _handle_errors():
        options = _options(
            _config(ctx), depth, parallel, include, exclude, recursive_submodules, dry_run
        )
    _run_fleet_operation(ctx, "recover", path, json_output, options, FleetManager.recover)


# =============================================================================
# Sync
# =============================================================================


@app.command()
def sync(
    ctx: typer.Context,
    manifest: Path = typer.Option(None, "--manifest", "-m", help="YAML manifest of repositories"),
    forge: str = typer.Option(
        None, "--forge", help=f"List an organization instead ({', '.join(available_providers())})"
    ),
    org: str = typer.Option(None, "--org", help="Organization or group to list"),
    base_url: str = typer.Option(None, "--base-url", help="API base URL for self-hosted forges"),
    sync_root: Path = typer.Option(None, "--sync-root", help="Directory to sync into"),
    layout: SubgroupLayout = typer.Option(
        SubgroupLayout.NONE, "--layout", help="Placement of subgroup repositories"
    ),
    separator: str = typer.Option(
        DEFAULT_FLAT_SEPARATOR, "--separator", help="Joins subgroup names with --layout flat"
    ),
    protocol: str = typer.Option("https", "--protocol", help="Clone over https or ssh"),
    include_archived: bool = typer.Option(False, "--include-archived"),
    include_forks: bool = typer.Option(False, "--include-forks"),
    strategy: str = typer.Option(None, "--strategy", "-s", help="reset, pull or fetch"),
    max_retries: int = typer.Option(
        None, "--max-retries", min=0, help="Retries for network failures"
    ),
    plan_only: bool = typer.Option(False, "--plan", help="Only print the plan"),
    json_output: bool = JSON_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    auto_recover: bool = AUTO_RECOVER_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
):
    """Clone missing and update existing repositories from a manifest or a forge."""
    console, formatter = get_console_and_formatter(json_output)
    config = _config(ctx)

    with _handle_errors(), _interruptible() as cancel_event:
        if (manifest is None) == (forge is None):
            raise FlotillaError.manifest("pass either --manifest or --forge with --org")

        if manifest is not None:
            # --sync-root, then the manifest's root key, then the configured sync_root.
            loaded = load_manifest(manifest, root=sync_root)
            if loaded.root is None and config.sync_root is not None:
                loaded = load_manifest(manifest, root=config.sync_root)
            source = loaded.entries
            root = loaded.root or manifest.resolve().parent
            chosen = SyncStrategy.parse(strategy) if strategy else loaded.strategy
            provider = None
        else:
            if not org:
                raise FlotillaError.manifest("--forge needs --org")
            retries = config.max_retries if max_retries is None else max_retries
            provider = create_provider(
                forge,
                base_url=base_url,
                timeout=config.fetch_timeout,
                retry=RetryConfig(max_retries=retries, base_delay=config.retry_base_delay),
            )
            source = ForgeListing(
                provider=provider,
                organization=org,
                filters=ForgeFilters(
                    include_archived=include_archived, include_forks=include_forks
                ),
                protocol=protocol,
                layout=layout,
                flat_separator=separator,
            )
            root = sync_root or config.sync_root or Path(".")
            chosen = SyncStrategy.parse(strategy) if strategy else None
        root = root.expanduser().resolve()

        try:
            local = []
            if root.is_dir():
                scan_depth = config.scan_depth if depth is None else depth
                local = scan(root, max_depth=scan_depth)
            actions = plan_sync(source, local, root)
        finally:
            if provider is not None:
                provider.close()

        if plan_only:
            formatter.print_plan(actions)
            return

        executor = SyncExecutor(
            parallelism=parallel or config.parallelism,
            retry=RetryConfig(
                max_retries=config.max_retries, base_delay=config.retry_base_delay
            ),
            fetch_timeout=config.fetch_timeout,
            auto_recover=auto_recover,
            cancel_event=cancel_event,
        )
        with _progress(console, not json_output, "Syncing...", len(actions)) as advance:
            executor.progress = advance
            outcomes = executor.apply(
                actions, chosen or config.strategy, dry_run=dry_run, max_retries=max_retries
            )

    summary = SyncExecutor.summarize(outcomes)
    formatter.print_sync_results(outcomes, summary)
    if summary.failed:
        raise typer.Exit(1)


# =============================================================================
# Diagnostics
# =============================================================================


@app.command()
def doctor(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    timeout: float = typer.Option(None, "--timeout", "-t", min=0.1, help="Seconds per fetch"),
    skip_fetch: bool = typer.Option(False, "--skip-fetch", help="Use last fetched state"),
    max_retries: int = typer.Option(0, "--max-retries", min=0, help="Retries per fetch"),
    json_output: bool = JSON_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Fetch every repository and report reachability, divergence and next steps."""
    console, formatter = get_console_and_formatter(json_output)
    config = _config(ctx)
    root = _root(path)

    with _handle_errors(), _interruptible() as cancel_event:
        options = _options(config, depth, parallel, include, exclude, recursive_submodules)
        repos = scan_with_options(root, options)
        with _progress(console, not json_output, "Diagnosing...", len(repos)) as advance:
            records = diagnose(
                repos,
                timeout or config.fetch_timeout,
                skip_fetch,
                parallelism=options.parallelism,
                max_retries=max_retries,
                cancel_event=cancel_event,
                progress=advance,
            )

    summary = summarize_health(records)
    formatter.print_health(records, summary)
    if summary.error or summary.unreachable:
        raise typer.Exit(1)


@app.command()
def conflicts(
    source: str = typer.Argument(..., help="Ref that would be merged"),
    target: str = typer.Argument("HEAD", help="Ref that would receive the merge"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Repository to analyze"),
    fail_fast: bool = typer.Option(
        False, "--fail-fast", help="Exit with an error as soon as a conflict is predicted"
    ),
    no_merge_tree: bool = typer.Option(
        False, "--no-merge-tree", help="Use diff analysis instead of git merge-tree"
    ),
    json_output: bool = JSON_OPTION,
):
    """Predict the conflicts of merging SOURCE into TARGET without touching the working tree."""
    _, formatter = get_console_and_formatter(json_output)
    repo_path = _root(repo)
    with _handle_errors():
        detector = ConflictDetector(GitExecutor(), use_merge_tree=not no_merge_tree)
        report = detector.detect(repo_path, source, target, fail_fast=fail_fast)
    formatter.print_conflict_report(report, repo_path)


# =============================================================================
# Watch
# =============================================================================


class WatchOperation(StrEnum):
    STATUS = "status"
    FETCH = "fetch"
    PULL = "pull"


_WATCH_OPERATIONS: dict[WatchOperation, Callable[[FleetManager], list[BulkOperationResult]]] = {
    WatchOperation.STATUS: FleetManager.status,
    WatchOperation.FETCH: FleetManager.fetch,
    WatchOperation.PULL: lambda fleet: fleet.pull(PullMode.FF_ONLY),
}


@app.command()
def watch(
    ctx: typer.Context,
    path: Path = PATH_ARGUMENT,
    operation: WatchOperation = typer.Option(
        WatchOperation.FETCH, "--operation", "-o", help="Operation run on every tick"
    ),
    interval: float = typer.Option(None, "--interval", "-i", min=1, help="Seconds between ticks"),
    max_ticks: int = typer.Option(None, "--max-ticks", min=1, help="Stop after this many ticks"),
    json_output: bool = JSON_OPTION,
    depth: int = DEPTH_OPTION,
    parallel: int = PARALLEL_OPTION,
    include: str = INCLUDE_OPTION,
    exclude: str = EXCLUDE_OPTION,
    recursive_submodules: bool = SUBMODULES_OPTION,
):
    """Rescan and run an operation on a fixed interval until interrupted.

    Pulls use fast-forward only. Ctrl-C stops after the current tick.
    """
    console, formatter = get_console_and_formatter(json_output)
    config = _config(ctx)

    def on_tick(tick: int, results: list[BulkOperationResult]) -> None:
        if not json_output:
            console.rule(f"tick {tick}")
        formatter.print_operation_results(
            results, FleetManager.summarize(results), operation.value
        )

    with _handle_errors(), _interruptible() as stop_event:
        options = _options(config, depth, parallel, include, exclude, recursive_submodules)
        watcher = FleetWatcher(
            _root(path),
            _WATCH_OPERATIONS[operation],
            interval or config.watch_interval,
            options=options,
            fetch_timeout=config.fetch_timeout,
            stop_event=stop_event,
            max_ticks=max_ticks,
            on_tick=on_tick,
        )
        watcher.run()


if __name__ == "__main__":
    app()
