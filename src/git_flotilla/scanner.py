"""Repository discovery under a scan root."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .errors import FlotillaError
from .models import BulkOperationOptions, RepositoryHandle

logger = logging.getLogger(__name__)

# Never descended into, in addition to hidden directories.
IGNORED_DIRECTORIES = frozenset(
    {"node_modules", "vendor", "target", "build", "dist", "__pycache__"}
)


def compile_pattern(pattern: str, label: str) -> re.Pattern[str] | None:
    """Compile an include/exclude expression, or None when empty."""
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise FlotillaError.scan(f"invalid {label} pattern {pattern!r}: {e}") from e


def is_repository(path: Path) -> bool:
    return (path / ".git").exists()


def is_submodule(path: Path) -> bool:
    """A submodule (or linked worktree) has a ``.git`` pointer file, not a directory."""
    return (path / ".git").is_file()


def scan(
    root: Path,
    max_depth: int = 1,
    include: str = "",
    exclude: str = "",
    recursive_submodules: bool = False,
) -> list[RepositoryHandle]:
    """Find repositories at most ``max_depth`` levels below ``root``.

    Depth 0 inspects only ``root`` itself. Nested independent repositories
    are found below other repositories; submodules are skipped along with
    everything below them unless ``recursive_submodules`` is set. Include
    and exclude are regular expressions searched in the relative path, and
    exclude wins. Results are sorted by relative path.
    """
    if max_depth < 0:
        raise FlotillaError.scan(f"scan depth must be >= 0, got {max_depth}")
    include_re = compile_pattern(include, "include")
    exclude_re = compile_pattern(exclude, "exclude")

    root_path = root.expanduser()
    if not root_path.exists():
        raise FlotillaError.scan(f"scan root does not exist: {root_path}", path=root_path)
    if not root_path.is_dir():
        raise FlotillaError.scan(f"scan root is not a directory: {root_path}", path=root_path)
    root_path = root_path.resolve()

    found: list[RepositoryHandle] = []
    _walk(root_path, root_path, 0, max_depth, recursive_submodules, found)

    handles = [
        handle
        for handle in found
        if _matches(handle.relative_path, include_re, exclude_re)
    ]
    handles.sort(key=lambda h: h.relative_path)
    logger.debug("scanned %s (depth %d): %d repositories", root_path, max_depth, len(handles))
    return handles


def scan_with_options(root: Path, options: BulkOperationOptions) -> list[RepositoryHandle]:
    return scan(
        root,
        max_depth=options.scan_depth,
        include=options.include_pattern,
        exclude=options.exclude_pattern,
        recursive_submodules=options.recursive_submodules,
    )


def _walk(
    root: Path,
    directory: Path,
    depth: int,
    max_depth: int,
    recursive_submodules: bool,
    found: list[RepositoryHandle],
) -> None:
    if is_repository(directory):
        submodule = is_submodule(directory)
        if submodule and depth > 0 and not recursive_submodules:
            logger.debug("skipping submodule %s", directory)
            return
        relative = directory.relative_to(root).as_posix() if depth else "."
        found.append(
            RepositoryHandle(
                path=directory,
                relative_path=relative,
                is_repository_root=True,
                is_submodule=submodule,
                depth=depth,
            )
        )

    if depth >= max_depth:
        return

    try:
        children = sorted(directory.iterdir())
    except OSError as e:
        logger.warning("skipping unreadable directory %s: %s", directory, e)
        return

    for child in children:
        if child.name.startswith(".") or child.name in IGNORED_DIRECTORIES:
            continue
        try:
            if child.is_symlink() or not child.is_dir():
                continue
        except OSError as e:
            logger.warning("skipping unreadable directory %s: %s", child, e)
            continue
        _walk(root, child, depth + 1, max_depth, recursive_submodules, found)


def _matches(
    relative_path: str,
    include_re: re.Pattern[str] | None,
    exclude_re: re.Pattern[str] | None,
) -> bool:
    if exclude_re is not None and exclude_re.search(relative_path):
        return False
    if include_re is not None and not include_re.search(relative_path):
        return False
    return True
