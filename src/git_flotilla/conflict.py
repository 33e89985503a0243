"""Read-only merge conflict analysis between two refs.

The primary analysis is ``git merge-tree --write-tree`` (git 2.38+), which
performs a real three-way merge without touching the index or working tree.
On older git the detector falls back to comparing what each side changed
since the merge base; that fallback cannot see whether two edits to one file
overlap, so it reports every file changed on both sides with differing
content.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .errors import FlotillaError
from .gitcmd import GitExecutor, ProcessResult, validate_ref
from .models import (
    ConflictEntry,
    ConflictReport,
    ConflictType,
    RepositoryHandle,
)

logger = logging.getLogger(__name__)

_CONFLICT_LINE = re.compile(r"^CONFLICT \(([^)]*)\):\s*(.*)$")
_BINARY_LINE = re.compile(r"^warning: Cannot merge binary files: (.+?) \(.*\)\s*$")


def classify_conflict_kind(kind: str) -> ConflictType:
    """Map a merge-ort conflict label such as ``modify/delete`` to a type."""
    label = kind.lower()
    if "rename" in label:
        return ConflictType.RENAME
    if "delete" in label:
        return ConflictType.DELETE
    if "binary" in label:
        return ConflictType.BINARY
    return ConflictType.CONTENT


def _mentions(line: str, path: str) -> bool:
    pattern = rf"(?:^|[\s:'\"]){re.escape(path)}(?:$|[\s.,;:'\")])"
    return re.search(pattern, line) is not None


def _stronger(a: ConflictType | None, b: ConflictType) -> ConflictType:
    if a is None or b.weight > a.weight:
        return b
    return a


def parse_merge_tree(output: str) -> list[ConflictEntry]:
    """Parse ``merge-tree --write-tree --name-only --messages`` output."""
    lines = output.splitlines()
    if not lines:
        return []

    # Line 0 is the tree OID; conflicted paths follow until a blank line.
    paths: list[str] = []
    index = 1
    while index < len(lines) and lines[index].strip():
        paths.append(lines[index])
        index += 1
    messages = [line for line in lines[index + 1 :] if line.strip()]

    conflict_lines = []
    binary_paths = set()
    for message in messages:
        binary = _BINARY_LINE.match(message)
        if binary:
            binary_paths.add(binary.group(1))
            continue
        conflict = _CONFLICT_LINE.match(message)
        if conflict:
            conflict_lines.append((classify_conflict_kind(conflict.group(1)), message))

    entries: list[ConflictEntry] = []
    for path in dict.fromkeys(paths):
        kind: ConflictType | None = ConflictType.BINARY if path in binary_paths else None
        description = ""
        for conflict_type, message in conflict_lines:
            if _mentions(message, path):
                kind = _stronger(kind, conflict_type)
                description = description or message
        final = kind or ConflictType.CONTENT
        entries.append(
            ConflictEntry(
                path=path,
                type=final,
                difficulty_weight=final.weight,
                description=description,
            )
        )
    return entries


class ConflictDetector:
    """Three-way conflict analysis that never writes the index or working tree."""

    def __init__(self, executor: GitExecutor | None = None, use_merge_tree: bool = True):
        self.git = executor or GitExecutor()
        self.use_merge_tree = use_merge_tree

    def detect(
        self,
        repository: RepositoryHandle | Path,
        source_ref: str,
        target_ref: str,
        *,
        fail_fast: bool = False,
    ) -> ConflictReport:
        """Report the conflicts merging ``source_ref`` into ``target_ref`` would produce.

        Raises ValueError for a malformed ref, FlotillaError(PROCESS) for a
        ref that does not resolve, and FlotillaError(CONFLICT_DETECTED) when
        ``fail_fast`` is set and any conflict is found.
        """
        path = repository.path if isinstance(repository, RepositoryHandle) else repository
        validate_ref(source_ref)
        validate_ref(target_ref)
        source = self._resolve(path, source_ref)
        target = self._resolve(path, target_ref)

        report = ConflictReport(source_ref=source_ref, target_ref=target_ref)
        base = self.git.run(path, "merge-base", target, source)
        report.merge_base = base.stdout.strip() if base.ok else ""
        report.can_fast_forward = bool(report.merge_base) and self.git.run(
            path, "merge-base", "--is-ancestor", target, source
        ).ok

        if report.merge_base in (source, target):
            # One side contains the other: nothing to merge, or a fast-forward.
            entries: list[ConflictEntry] = []
        else:
            entries = self._merge_tree(path, target, source) if self.use_merge_tree else None
            if entries is None:
                entries = self._diff_intersection(path, report.merge_base, target, source)
        report.entries = sorted(entries, key=lambda e: e.path)

        logger.debug(
            "%s: %s into %s: %d conflict(s), %s",
            path,
            source_ref,
            target_ref,
            len(report.entries),
            report.overall_difficulty.value,
        )
        if fail_fast and report.has_conflicts:
            raise FlotillaError.conflict(
                f"merging {source_ref} into {target_ref} conflicts in "
                f"{len(report.entries)} file(s)",
                path=path,
            )
        return report

    def _resolve(self, path: Path, ref: str) -> str:
        result = self.git.run(path, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if not result.ok:
            raise FlotillaError.process(f"unknown revision: {ref}", path=path)
        return result.stdout.strip()

    def _merge_tree(self, path: Path, target: str, source: str) -> list[ConflictEntry] | None:
        result = self.git.run(
            path, "merge-tree", "--write-tree", "--name-only", "--messages", target, source
        )
        if result.exit_code == 0:
            return []
        if result.exit_code == 1:
            return parse_merge_tree(result.stdout)
        logger.debug("merge-tree unavailable (exit %d), using diff analysis", result.exit_code)
        return None

    def _diff_intersection(
        self, path: Path, base: str, target: str, source: str
    ) -> list[ConflictEntry]:
        if not base:
            raise FlotillaError.process(
                "refs share no history; cannot compute conflicts", path=path
            )
        target_changes = self._changes(path, base, target)
        source_changes = self._changes(path, base, source)
        binary = self._binary_paths(path, base, target) | self._binary_paths(path, base, source)

        entries = []
        for file_path in sorted(set(target_changes) & set(source_changes)):
            ours, theirs = target_changes[file_path], source_changes[file_path]
            conflict_type = self._classify_pair(path, file_path, ours, theirs, target, source)
            if conflict_type is None:
                continue
            if conflict_type == ConflictType.CONTENT and file_path in binary:
                conflict_type = ConflictType.BINARY
            entries.append(
                ConflictEntry(
                    path=file_path,
                    type=conflict_type,
                    difficulty_weight=conflict_type.weight,
                    description=f"{ours} in target, {theirs} in source",
                )
            )
        return entries

    def _classify_pair(
        self,
        path: Path,
        file_path: str,
        ours: str,
        theirs: str,
        target: str,
        source: str,
    ) -> ConflictType | None:
        if ours == "D" and theirs == "D":
            return None
        if "D" in (ours, theirs):
            return ConflictType.DELETE
        if "R" in (ours, theirs):
            return ConflictType.RENAME
        ours_blob = self.git.run(path, "rev-parse", "--verify", "--quiet", f"{target}:{file_path}")
        theirs_blob = self.git.run(path, "rev-parse", "--verify", "--quiet", f"{source}:{file_path}")
        if ours_blob.ok and theirs_blob.ok and ours_blob.stdout == theirs_blob.stdout:
            return None
        return ConflictType.CONTENT

    def _changes(self, path: Path, base: str, ref: str) -> dict[str, str]:
        """Changed paths since ``base`` mapped to a one-letter status."""
        result: ProcessResult = self.git.run(
            path, "diff", "--name-status", "-M", "--no-color", base, ref
        ).check()
        changes: dict[str, str] = {}
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            status = parts[0][:1]
            if status == "R" and len(parts) == 3:
                # A rename touches both the old and the new path.
                changes[parts[1]] = "R"
                changes[parts[2]] = "R"
            else:
                changes[parts[1]] = status
        return changes

    def _binary_paths(self, path: Path, base: str, ref: str) -> set[str]:
        result = self.git.run(path, "diff", "--numstat", "--no-color", base, ref).check()
        binary = set()
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 3 and parts[0] == "-" and parts[1] == "-":
                binary.add(parts[2])
        return binary


def detect(
    repository: RepositoryHandle | Path,
    source_ref: str,
    target_ref: str,
    *,
    executor: GitExecutor | None = None,
    fail_fast: bool = False,
) -> ConflictReport:
    """Module-level shorthand for :meth:`ConflictDetector.detect`."""
    return ConflictDetector(executor).detect(
        repository, source_ref, target_ref, fail_fast=fail_fast
    )
