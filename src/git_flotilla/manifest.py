"""YAML manifest of repositories a fleet should contain.

Example manifest::

    root: ~/work          # optional, base for relative paths
    strategy: pull        # optional default sync strategy
    repositories:
      - name: api
        url: git@github.com:acme/api.git
        path: services/api    # optional, defaults to name
        branch: main          # optional, defaults to main

Relative paths resolve against ``root``, or the manifest's own directory
when ``root`` is absent.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import FlotillaError
from .gitcmd import validate_ref, validate_url
from .models import SyncManifestEntry, SyncStrategy

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass
class Manifest:
    entries: list[SyncManifestEntry] = field(default_factory=list)
    root: Path | None = None
    strategy: SyncStrategy | None = None
    source: Path | None = None

    def to_dict(self) -> dict:
        return {
            "root": str(self.root) if self.root else None,
            "strategy": self.strategy.value if self.strategy else None,
            "source": str(self.source) if self.source else None,
            "repositories": [entry.to_dict() for entry in self.entries],
        }


def load_manifest(path: Path, root: Path | None = None) -> Manifest:
    """Parse a manifest file. Any problem raises FlotillaError(MANIFEST).

    An explicit ``root`` replaces the manifest's own ``root`` key as the base
    for relative repository paths.
    """
    manifest_path = path.expanduser()
    try:
        content = manifest_path.read_text()
    except OSError as e:
        raise FlotillaError.manifest(
            f"cannot read manifest {manifest_path}: {e}", path=manifest_path
        ) from e
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise FlotillaError.manifest(
            f"invalid YAML in manifest {manifest_path}: {e}", path=manifest_path
        ) from e

    manifest = parse_manifest(data, base_dir=manifest_path.resolve().parent, root=root)
    manifest.source = manifest_path
    logger.debug("loaded %d manifest entries from %s", len(manifest.entries), manifest_path)
    return manifest


def parse_manifest(data: Any, base_dir: Path, root: Path | None = None) -> Manifest:
    if not isinstance(data, dict):
        raise FlotillaError.manifest("manifest must be a mapping with a 'repositories' list")

    if root is not None:
        root = root.expanduser()
        if not root.is_absolute():
            root = Path.cwd() / root
    elif data.get("root"):
        root = Path(os.path.expandvars(str(data["root"]))).expanduser()
        if not root.is_absolute():
            root = base_dir / root
    base = (root or base_dir).resolve()

    strategy = SyncStrategy.parse(str(data["strategy"])) if data.get("strategy") else None

    items = data.get("repositories")
    if not isinstance(items, list) or not items:
        raise FlotillaError.manifest("manifest 'repositories' must be a non-empty list")

    entries: list[SyncManifestEntry] = []
    seen_names: dict[str, int] = {}
    seen_paths: dict[Path, str] = {}
    for index, item in enumerate(items, start=1):
        entry = _parse_entry(item, index, base)
        if entry.name in seen_names:
            raise FlotillaError.manifest(
                f"duplicate repository name {entry.name!r} (entries {seen_names[entry.name]} and {index})"
            )
        if entry.local_path in seen_paths:
            raise FlotillaError.manifest(
                f"repositories {seen_paths[entry.local_path]!r} and {entry.name!r} "
                f"share the path {entry.local_path}"
            )
        seen_names[entry.name] = index
        seen_paths[entry.local_path] = entry.name
        entries.append(entry)

    return Manifest(entries=entries, root=root, strategy=strategy)


def _parse_entry(item: Any, index: int, base: Path) -> SyncManifestEntry:
    if not isinstance(item, dict):
        raise FlotillaError.manifest(f"repository entry {index} must be a mapping")

    url = str(item.get("url") or "").strip()
    if not url:
        raise FlotillaError.manifest(f"repository entry {index} has no url")
    try:
        validate_url(url)
    except ValueError as e:
        raise FlotillaError.manifest(f"repository entry {index}: {e}") from e

    name = str(item.get("name") or _name_from_url(url)).strip()
    if not _NAME_PATTERN.match(name):
        raise FlotillaError.manifest(f"repository entry {index}: invalid name {name!r}")

    branch = str(item.get("branch") or "main").strip()
    try:
        validate_ref(branch)
    except ValueError as e:
        raise FlotillaError.manifest(f"repository {name!r}: {e}") from e

    raw_path = Path(os.path.expandvars(str(item.get("path") or name))).expanduser()
    local_path = raw_path if raw_path.is_absolute() else base / raw_path

    return SyncManifestEntry(
        name=name,
        source_url=url,
        local_path=Path(os.path.normpath(local_path)),
        target_branch=branch,
    )


def _name_from_url(url: str) -> str:
    tail = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return tail.removesuffix(".git")
