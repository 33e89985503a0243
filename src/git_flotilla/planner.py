"""Sync planning: compare a desired repository list with what is on disk."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from .errors import FlotillaError
from .forge import ForgeFilters, ForgeProvider, ForgeRepository
from .models import RepositoryHandle, SyncAction, SyncActionKind, SyncManifestEntry

logger = logging.getLogger(__name__)

DEFAULT_FLAT_SEPARATOR = "-"
INVALID_SEPARATOR_CHARS = frozenset('/\\:*?"<>|')


class SubgroupLayout(StrEnum):
    """Where repositories from nested forge groups land on disk."""

    NONE = "none"  # sync_root/<name>
    FLAT = "flat"  # sync_root/<sub-group-name>
    NESTED = "nested"  # sync_root/<sub>/<group>/<name>


@dataclass(frozen=True)
class ForgeListing:
    """A live organization listing used as the sync source."""

    provider: ForgeProvider
    organization: str
    filters: ForgeFilters = field(default_factory=ForgeFilters)
    protocol: str = "https"
    layout: SubgroupLayout = SubgroupLayout.NONE
    flat_separator: str = DEFAULT_FLAT_SEPARATOR


def valid_separator(separator: str) -> bool:
    return bool(separator) and not any(ch in INVALID_SEPARATOR_CHARS for ch in separator)


def strip_org_prefix(full_name: str) -> str:
    """``acme/platform/api`` -> ``platform/api``."""
    parts = full_name.strip("/").split("/")
    if len(parts) <= 1:
        return full_name
    return "/".join(parts[1:])


def forge_target_path(
    repo: ForgeRepository,
    sync_root: Path,
    layout: SubgroupLayout = SubgroupLayout.NONE,
    separator: str = DEFAULT_FLAT_SEPARATOR,
) -> Path:
    match layout:
        case SubgroupLayout.FLAT:
            sep = separator if valid_separator(separator) else DEFAULT_FLAT_SEPARATOR
            return sync_root / strip_org_prefix(repo.full_name).replace("/", sep)
        case SubgroupLayout.NESTED:
            return sync_root.joinpath(*strip_org_prefix(repo.full_name).split("/"))
        case _:
            return sync_root / repo.name


def entries_from_forge(
    repositories: Sequence[ForgeRepository],
    sync_root: Path,
    *,
    protocol: str = "https",
    layout: SubgroupLayout = SubgroupLayout.NONE,
    flat_separator: str = DEFAULT_FLAT_SEPARATOR,
) -> list[SyncManifestEntry]:
    """Convert a forge listing to manifest entries.

    Two repositories mapping to the same local path raise
    FlotillaError(MANIFEST) naming both; no collision is resolved by guessing.
    """
    if layout == SubgroupLayout.FLAT and not valid_separator(flat_separator):
        logger.warning(
            "invalid flat separator %r, using %r", flat_separator, DEFAULT_FLAT_SEPARATOR
        )
        flat_separator = DEFAULT_FLAT_SEPARATOR

    root = sync_root.expanduser().resolve()
    entries: list[SyncManifestEntry] = []
    claimed: dict[Path, str] = {}
    for repo in repositories:
        path = forge_target_path(repo, root, layout, flat_separator)
        if path in claimed:
            raise FlotillaError.manifest(
                f"{repo.full_name!r} and {claimed[path]!r} both map to {path}; "
                "choose a different subgroup layout or separator",
                path=path,
            )
        claimed[path] = repo.full_name
        entries.append(
            SyncManifestEntry(
                name=path.name,
                source_url=repo.url_for(protocol),
                local_path=path,
                target_branch=repo.default_branch or "main",
            )
        )
    return entries


def resolve_source(
    source: Sequence[SyncManifestEntry] | ForgeListing,
    sync_root: Path | None = None,
) -> list[SyncManifestEntry]:
    if isinstance(source, ForgeListing):
        if sync_root is None:
            raise FlotillaError.manifest("a forge listing needs a sync root directory")
        repos = source.provider.list_organization_repositories(source.organization, source.filters)
        return entries_from_forge(
            repos,
            sync_root,
            protocol=source.protocol,
            layout=source.layout,
            flat_separator=source.flat_separator,
        )
    return list(source)


def plan(
    source: Sequence[SyncManifestEntry] | ForgeListing,
    local: Sequence[RepositoryHandle] | None = None,
    sync_root: Path | None = None,
) -> list[SyncAction]:
    """Produce one action per desired repository plus one per orphan.

    ``clone`` when the target has no repository, ``update`` when it does.
    Repositories in ``local`` that no entry claims become ``orphan`` actions.
    The result is ordered by path, entries first, then orphans.
    """
    entries = resolve_source(source, sync_root)

    paths: dict[Path, str] = {}
    for entry in entries:
        key = _normalize(entry.local_path)
        if key in paths:
            raise FlotillaError.manifest(
                f"{paths[key]!r} and {entry.name!r} share the path {entry.local_path}"
            )
        paths[key] = entry.name

    actions = [_plan_entry(entry) for entry in sorted(entries, key=lambda e: str(e.local_path))]

    orphans: list[SyncAction] = []
    for handle in local or ():
        handle_path = _normalize(handle.path)
        if handle_path in paths or any(_is_ancestor(handle_path, p) for p in paths):
            continue
        orphans.append(
            SyncAction(
                repository=SyncManifestEntry(
                    name=handle.name,
                    source_url="",
                    local_path=handle.path,
                    target_branch="",
                ),
                kind=SyncActionKind.ORPHAN,
                reason="present locally but not in the source listing",
            )
        )
    orphans.sort(key=lambda a: str(a.path))

    logger.debug(
        "plan: %d clone, %d update, %d orphan",
        sum(1 for a in actions if a.kind == SyncActionKind.CLONE),
        sum(1 for a in actions if a.kind == SyncActionKind.UPDATE),
        len(orphans),
    )
    return actions + orphans


def _plan_entry(entry: SyncManifestEntry) -> SyncAction:
    target = entry.local_path
    if (target / ".git").exists():
        return SyncAction(entry, SyncActionKind.UPDATE, "repository exists, will update")
    if target.is_dir() and any(target.iterdir()):
        return SyncAction(
            entry, SyncActionKind.CLONE, "target directory exists but is not a repository"
        )
    return SyncAction(entry, SyncActionKind.CLONE, "repository not present locally")


def _normalize(path: Path) -> Path:
    return path.expanduser().resolve()


def _is_ancestor(candidate: Path, path: Path) -> bool:
    return candidate != path and candidate in path.parents
